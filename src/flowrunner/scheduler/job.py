"""Job — the runnable unit derived from a host's JobOptions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Optional, Union

from flowrunner.config.constants import DEFAULT_SCRIPT_NAME, START_RESERVE_SECONDS
from flowrunner.scheduler.engine import JobSpec, WorkerLaunch
from flowrunner.scheduler.models import JobOptions
from flowrunner.scheduler.recurrence import build_recurrence


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def is_expired(options: JobOptions, now: Optional[datetime] = None) -> bool:
    """True when the job has an end date that has already passed."""
    if not options.end_date_time:
        return False
    now = now or datetime.now(UTC)
    return parse_timestamp(options.end_date_time) < now


@dataclass
class Job:
    """A job ready to hand to the engine.

    Exactly one of ``interval`` and ``date`` is set. ``interval`` is either
    milliseconds (``0`` runs once, right away) or a recurrence/cron string.
    """

    name: str
    path: Path
    worker: WorkerLaunch
    interval: Optional[Union[int, str]] = 0
    date: Optional[datetime] = None

    @property
    def external_data(self) -> JobSpec:
        if self.date is not None:
            return JobSpec(name=self.name, path=self.path, date=self.date, worker=self.worker)
        interval = self.interval
        if isinstance(interval, str) and interval.strip().isdigit():
            interval = int(interval)
        return JobSpec(name=self.name, path=self.path, interval=interval, worker=self.worker)


def build_job(
    options: JobOptions,
    path_jobs: Path,
    python_path: str,
    script_name: str = DEFAULT_SCRIPT_NAME,
    *,
    now: Optional[datetime] = None,
) -> Job:
    """Derive a Job from options.

    A start date more than ``START_RESERVE_SECONDS`` ahead schedules a
    one-shot run at that date. Anything sooner falls back to the job's
    interval: the explicit ``interval`` field, else the recurrence built
    from its measure/weekday/month fields, else ``0``.
    """
    now = now or datetime.now(UTC)
    start = parse_timestamp(options.start_date_time)
    script_path = Path(path_jobs) / options.id / script_name
    worker = WorkerLaunch(script_path=script_path, python_path=python_path)

    if start > now + timedelta(seconds=START_RESERVE_SECONDS):
        return Job(name=options.id, path=script_path, worker=worker, interval=None, date=start)

    interval = options.interval or build_recurrence(options) or 0
    return Job(name=options.id, path=script_path, worker=worker, interval=interval)
