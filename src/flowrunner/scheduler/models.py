"""Pydantic models for job definitions supplied by the host application."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class JobStatus(StrEnum):
    """Lifecycle status tracked by the host for each job."""

    STOPPED = "stopped"
    RUNNING = "running"
    WORKING = "working"
    ERROR = "error"


class IntervalMeasure(StrEnum):
    """Units accepted for ``interval_measure``."""

    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    MONTHS = "months"


LogCategory = Literal["run", "stop", "message", "workerCreated", "workerDeleted"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class JobLog(_CamelModel):
    """One entry of a job's append-only audit trail."""

    category: LogCategory
    date: datetime = Field(default_factory=lambda: datetime.now(UTC))
    message: Optional[str] = None


class JobFlow(_CamelModel):
    """Encrypted flow payload: a display name plus the ciphertext."""

    name: str
    content: str


class JobOptions(_CamelModel):
    """A job as the host stores it.

    Accepts both snake_case and the host's camelCase keys
    (``startDateTime``, ``intervalMeasure``...), and ``_id`` for ``id``.
    """

    id: str = Field(alias="_id")
    name: str
    status: JobStatus = JobStatus.STOPPED
    logs: list[JobLog] = Field(default_factory=list)
    flow: JobFlow
    start_date_time: str = Field(alias="startDateTime")
    interval: Optional[Union[int, str]] = None
    interval_measure: Optional[IntervalMeasure] = Field(default=None, alias="intervalMeasure")
    interval_value: Optional[int] = Field(default=None, alias="intervalValue")
    week_days: Optional[list[int]] = Field(default=None, alias="weekDays")
    year_months: Optional[list[int]] = Field(default=None, alias="yearMonths")
    end_date_time: Optional[str] = Field(default=None, alias="endDateTime")

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_measure_key(cls, values: Any) -> Any:
        # Older hosts spell the key without the trailing "e"
        if isinstance(values, dict) and "intervalMeasur" in values:
            values = dict(values)
            values.setdefault("intervalMeasure", values.pop("intervalMeasur"))
        return values

    @field_validator("week_days")
    @classmethod
    def _check_week_days(cls, value: Optional[list[int]]) -> Optional[list[int]]:
        if value is not None:
            bad = [d for d in value if not 1 <= d <= 7]
            if bad:
                raise ValueError(f"week_days must be in 1..7, got {bad}")
        return value

    @field_validator("year_months")
    @classmethod
    def _check_year_months(cls, value: Optional[list[int]]) -> Optional[list[int]]:
        if value is not None:
            bad = [m for m in value if not 1 <= m <= 12]
            if bad:
                raise ValueError(f"year_months must be in 1..12, got {bad}")
        return value

    @model_validator(mode="after")
    def _check_interval_pair(self) -> JobOptions:
        has_measure = self.interval_measure is not None
        has_value = self.interval_value is not None
        if has_measure != has_value:
            raise ValueError("interval_measure and interval_value must be set together")
        if has_value and self.interval_value <= 0:
            raise ValueError("interval_value must be a positive integer")
        return self

    def add_log(self, category: LogCategory, message: Optional[str] = None) -> JobLog:
        """Append an entry to the audit trail and return it."""
        entry = JobLog(category=category, message=message)
        self.logs.append(entry)
        return entry


class WorkerMessage(BaseModel):
    """A message a worker wrote to its stdout, tagged with the job name."""

    name: str
    message: Any = None
