"""Scheduler subsystem — job options, recurrence, scripts, engine and orchestrator."""

from flowrunner.scheduler.engine import JobSpec, WorkerEngine, WorkerLaunch
from flowrunner.scheduler.job import Job, build_job
from flowrunner.scheduler.models import (
    IntervalMeasure,
    JobFlow,
    JobLog,
    JobOptions,
    JobStatus,
    WorkerMessage,
)
from flowrunner.scheduler.orchestrator import Orchestrator, StopResult
from flowrunner.scheduler.recurrence import build_recurrence, parse_recurrence, recurrence_interval

__all__ = [
    "IntervalMeasure",
    "Job",
    "JobFlow",
    "JobLog",
    "JobOptions",
    "JobSpec",
    "JobStatus",
    "Orchestrator",
    "StopResult",
    "WorkerEngine",
    "WorkerLaunch",
    "WorkerMessage",
    "build_job",
    "build_recurrence",
    "parse_recurrence",
    "recurrence_interval",
]
