"""Recurrence strings — build them from job options and parse them back into cron fields.

The format is a small English phrase understood by humans and by the engine::

    every 3 hours on Monday,Wednesday of December month

Each clause is optional but the order is fixed: interval, weekdays, months.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Optional

from flowrunner.scheduler.models import IntervalMeasure

MONTHS: list[str] = [
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
]

WEEK_DAYS: list[str] = [
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
]

# Days and months are deliberately singular
_UNIT_WORDS: dict[IntervalMeasure, str] = {
    IntervalMeasure.SECONDS: "seconds",
    IntervalMeasure.MINUTES: "minutes",
    IntervalMeasure.HOURS: "hours",
    IntervalMeasure.DAYS: "day",
    IntervalMeasure.MONTHS: "month",
}

# Largest step each cron field can express
_FIELD_RANGE: dict[str, int] = {"second": 59, "minute": 59, "hour": 23, "day": 31, "month": 12}

# Phrase units that map onto IntervalTrigger arguments
_INTERVAL_UNITS: dict[str, str] = {
    "second": "seconds",
    "minute": "minutes",
    "hour": "hours",
    "day": "days",
}

_RECURRENCE_RE = re.compile(
    r"^\s*(?:every\s+(?P<value>\d+)\s+(?P<unit>[a-z]+))?"
    r"(?:\s*on\s+(?P<days>[A-Za-z,\s]+?))?"
    r"(?:\s*of\s+(?P<months>[A-Za-z,\s]+?)\s+month)?\s*$",
    re.IGNORECASE,
)


def _field(options: Any, name: str) -> Any:
    if isinstance(options, Mapping):
        return options.get(name)
    return getattr(options, name, None)


def _names(indices: list[int], table: list[str], label: str) -> str:
    out = []
    for index in indices:
        if not 1 <= index <= len(table):
            raise ValueError(f"{label} index out of range: {index}")
        out.append(table[index - 1])
    return ",".join(out)


def build_recurrence(options: Any, *, normalize: bool = True) -> Optional[str]:
    """Describe a job's recurrence fields as a recurrence string.

    Args:
        options: A ``JobOptions`` or any mapping/object exposing
            ``interval_measure``, ``interval_value``, ``week_days`` and
            ``year_months``. Missing fields count as unset.
        normalize: When False, keep the stray leading space produced when
            there is no interval clause (``" on Monday"``), matching what
            existing hosts have stored.

    Returns:
        The recurrence string, or None when no recurrence field is set.
    """
    measure = _field(options, "interval_measure")
    value = _field(options, "interval_value")
    week_days = _field(options, "week_days") or []
    year_months = _field(options, "year_months") or []

    parts: list[str] = []
    if measure and value:
        parts.append(f"every {value} {_UNIT_WORDS[IntervalMeasure(measure)]}")
    if week_days:
        parts.append(f"on {_names(week_days, WEEK_DAYS, 'weekday')}")
    if year_months:
        parts.append(f"of {_names(year_months, MONTHS, 'month')} month")

    if not parts:
        return None

    text = " ".join(parts)
    if not normalize and not (measure and value):
        text = " " + text
    return text


def _lookup(names: str, table: list[str], label: str) -> list[int]:
    lowered = [t.lower() for t in table]
    out = []
    for raw in names.split(","):
        name = raw.strip().lower()
        if name not in lowered:
            raise ValueError(f"Unknown {label}: {raw.strip()!r}")
        out.append(lowered.index(name) + 1)
    return out


def recurrence_interval(text: str) -> Optional[dict[str, int]]:
    """``IntervalTrigger`` arguments for a phrase that is only an interval clause.

    ``"every 90 seconds"`` gives ``{"seconds": 90}``. Returns None when the
    phrase also lists weekdays or months, counts in months, or is not a
    recurrence string; those go through :func:`parse_recurrence`.
    """
    match = _RECURRENCE_RE.match(text or "")
    if match is None or not match.group("value") or match.group("days") or match.group("months"):
        return None
    unit = _INTERVAL_UNITS.get(match.group("unit").lower().rstrip("s"))
    if unit is None:
        return None
    step = int(match.group("value"))
    if step <= 0:
        raise ValueError("Recurrence step must be positive")
    return {unit: step}


def parse_recurrence(text: str) -> Optional[dict[str, str]]:
    """Turn a recurrence string into APScheduler ``CronTrigger`` fields.

    Returns None if ``text`` is not a recurrence string. Raises
    ``ValueError`` for a well-formed phrase with an unknown unit or name.
    """
    match = _RECURRENCE_RE.match(text or "")
    if match is None or not any(match.group("value", "days", "months")):
        return None

    fields = {
        "second": "0",
        "minute": "0",
        "hour": "0",
        "day": "*",
        "month": "*",
        "day_of_week": "*",
    }

    if match.group("value"):
        step = int(match.group("value"))
        if step <= 0:
            raise ValueError("Recurrence step must be positive")
        unit = match.group("unit").lower().rstrip("s")
        if unit not in _FIELD_RANGE:
            raise ValueError(f"Unknown recurrence unit: {match.group('unit')!r}")
        if step > _FIELD_RANGE[unit]:
            raise ValueError(
                f"every {step} {match.group('unit')} does not fit the cron {unit} field"
            )
        fields[unit] = f"*/{step}"
        if unit == "month":
            fields["day"] = "1"

    if match.group("days"):
        days = _lookup(match.group("days"), WEEK_DAYS, "weekday")
        # APScheduler counts weekdays from 0 = Monday
        fields["day_of_week"] = ",".join(str(d - 1) for d in days)

    if match.group("months"):
        months = _lookup(match.group("months"), MONTHS, "month")
        if fields["month"] != "*":
            raise ValueError("A month interval cannot be combined with a month list")
        fields["month"] = ",".join(str(m) for m in months)

    return fields
