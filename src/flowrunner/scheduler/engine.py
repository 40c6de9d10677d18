"""Worker engine — APScheduler triggers that launch one worker process per firing."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional, Union

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from croniter import croniter

from flowrunner.config.constants import (
    DEFAULT_STOP_TIMEOUT,
    EVENT_WORKER_CREATED,
    EVENT_WORKER_DELETED,
)
from flowrunner.errors import SchedulingEngineError, WorkerError
from flowrunner.scheduler.models import WorkerMessage
from flowrunner.scheduler.recurrence import parse_recurrence, recurrence_interval

logger = logging.getLogger("flowrunner.scheduler.engine")

# Keep this much of a failed worker's stderr in the error message
_STDERR_TAIL = 2000

# Longest stdout line a worker may write; asyncio defaults to 64 KiB
_STDOUT_LIMIT = 1024 * 1024


async def call_handler(handler: Optional[Callable[..., Any]], *args: Any) -> None:
    """Invoke an optional sync or async callback, logging anything it raises."""
    if handler is None:
        return
    try:
        result = handler(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Handler %r failed", handler)


@dataclass
class WorkerLaunch:
    """How to start a worker: interpreter plus the script it runs."""

    script_path: Path
    python_path: str


@dataclass
class JobSpec:
    """What the engine registers. Exactly one of interval, cron and date is set."""

    name: str
    path: Path
    worker: WorkerLaunch
    interval: Optional[Union[int, str]] = None
    cron: Optional[str] = None
    date: Optional[datetime] = None


class Worker:
    """A live worker process and its message channel."""

    def __init__(self, name: str, process: asyncio.subprocess.Process) -> None:
        self.name = name
        self.process = process
        self.stopping = False
        self.finished = asyncio.Event()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return self.process.returncode is None

    async def post_message(self, message: Any) -> bool:
        """Write ``message`` as one JSON line to the worker's stdin."""
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            return False
        try:
            stdin.write((json.dumps(message) + "\n").encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Worker %s closed its stdin", self.name)
            return False
        return True

    def terminate(self) -> None:
        with contextlib.suppress(ProcessLookupError):
            self.process.terminate()


def _decode(line: bytes) -> Any:
    text = line.decode("utf-8", errors="replace").rstrip("\r\n")
    try:
        return json.loads(text)
    except ValueError:
        return text


class WorkerEngine:
    """Schedules jobs with APScheduler and runs each firing in its own process.

    Only one worker per job is live at a time; a trigger that fires while
    the previous worker is still running is skipped. Lifecycle events
    (``worker created`` / ``worker deleted``) go to listeners registered
    with :meth:`on`, in the order they happen.
    """

    def __init__(
        self,
        error_handler: Optional[Callable[..., Any]] = None,
        worker_message_handler: Optional[Callable[..., Any]] = None,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self._error_handler = error_handler
        self._worker_message_handler = worker_message_handler
        self._stop_timeout = stop_timeout
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._jobs: dict[str, JobSpec] = {}
        self._armed: set[str] = set()
        self._listeners: dict[str, list[Callable[..., Any]]] = defaultdict(list)
        self.workers: dict[str, Worker] = {}

    # -- Events ----------------------------------------------------------------

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        """Subscribe ``listener`` to ``worker created`` or ``worker deleted``."""
        if event not in (EVENT_WORKER_CREATED, EVENT_WORKER_DELETED):
            raise ValueError(f"Unknown engine event: {event}")
        self._listeners[event].append(listener)

    async def emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners[event]):
            await call_handler(listener, *args)

    # -- Registration ----------------------------------------------------------

    @property
    def jobs(self) -> dict[str, JobSpec]:
        return dict(self._jobs)

    async def add(self, specs: Union[JobSpec, list[JobSpec]]) -> None:
        """Validate and register job specs. Nothing is added if any spec is invalid."""
        batch = specs if isinstance(specs, list) else [specs]
        names = [spec.name for spec in batch]
        for spec in batch:
            if not spec.name:
                raise SchedulingEngineError("Job name is required")
            if spec.name in self._jobs or names.count(spec.name) > 1:
                raise SchedulingEngineError(f"Job {spec.name!r} is already registered")
            self._build_trigger(spec)

        for spec in batch:
            self._jobs[spec.name] = spec
            logger.debug("Added job %s", spec.name)

    async def remove(self, name: str) -> None:
        """Forget a job and its trigger. Live workers are left alone."""
        self._unschedule(name)
        if self._jobs.pop(name, None) is not None:
            logger.debug("Removed job %s", name)

    # -- Lifecycle -------------------------------------------------------------

    async def start(self, name: Optional[str] = None) -> None:
        """Arm the trigger of one job, or of every job that is not armed yet."""
        if name is not None and name not in self._jobs:
            raise SchedulingEngineError(f"Job {name!r} is not registered")

        if not self._scheduler.running:
            self._scheduler.start()

        names = [name] if name is not None else [n for n in self._jobs if n not in self._armed]
        for job_name in names:
            spec = self._jobs[job_name]
            try:
                self._scheduler.add_job(
                    self._run_worker,
                    trigger=self._build_trigger(spec),
                    args=[job_name],
                    id=job_name,
                    name=job_name,
                    replace_existing=True,
                    coalesce=True,
                    max_instances=1,
                    misfire_grace_time=None,
                )
            except (ValueError, TypeError) as exc:
                raise SchedulingEngineError(f"Failed to start job {job_name!r}: {exc}") from exc
            self._armed.add(job_name)
            logger.info("Started job %s", job_name)

    async def stop(self, name: str) -> None:
        """Disarm a job's trigger and ask its live worker to exit.

        The worker gets ``{"cancel": true}`` and ``stop_timeout`` seconds to
        finish. After that it is terminated, but not waited for.
        """
        self._unschedule(name)

        worker = self.workers.get(name)
        if worker is None or not worker.is_alive:
            return

        worker.stopping = True
        await worker.post_message({"cancel": True})
        try:
            await asyncio.wait_for(worker.finished.wait(), timeout=self._stop_timeout)
        except TimeoutError:
            logger.warning("Worker %s (pid=%s) ignored cancel, terminating", name, worker.pid)
            worker.terminate()

    async def post_message(self, name: str, message: Any) -> bool:
        worker = self.workers.get(name)
        if worker is None:
            return False
        return await worker.post_message(message)

    async def shutdown(self) -> None:
        """Terminate every worker and stop the scheduler."""
        for worker in list(self.workers.values()):
            worker.stopping = True
            worker.terminate()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Worker engine stopped")

    # -- Firing ----------------------------------------------------------------

    async def _run_worker(self, name: str) -> None:
        """Called by APScheduler each time a job's trigger fires."""
        spec = self._jobs.get(name)
        if spec is None:
            logger.warning("Triggered job %s is no longer registered", name)
            return

        current = self.workers.get(name)
        if current is not None and current.is_alive:
            logger.warning("Job %s is still running (pid=%s), skipping this run", name, current.pid)
            return

        launch = spec.worker
        try:
            process = await asyncio.create_subprocess_exec(
                launch.python_path,
                str(launch.script_path),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STDOUT_LIMIT,
                cwd=str(Path(launch.script_path).parent),
            )
        except OSError as exc:
            await call_handler(
                self._error_handler,
                WorkerError(name, f"Failed to start worker: {exc}"),
            )
            return

        worker = Worker(name, process)
        self.workers[name] = worker
        logger.debug("Worker %s started (pid=%s)", name, process.pid)
        await self.emit(EVENT_WORKER_CREATED, name)

        stderr_task = asyncio.create_task(process.stderr.read())
        unreadable: Optional[str] = None
        try:
            try:
                async for line in process.stdout:
                    if line.strip():
                        await call_handler(
                            self._worker_message_handler,
                            WorkerMessage(name=name, message=_decode(line)),
                        )
            except (ValueError, asyncio.LimitOverrunError) as exc:
                unreadable = f"Worker output could not be read: {exc}"
                logger.warning("Worker %s (pid=%s): %s, terminating", name, process.pid, exc)
                worker.terminate()
            stderr = await stderr_task
            exit_code = await process.wait()
        finally:
            # The worker leaves the map only once its process is gone
            if worker.is_alive:
                worker.terminate()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()
            if self.workers.get(name) is worker:
                del self.workers[name]
            worker.finished.set()
            await self.emit(EVENT_WORKER_DELETED, name)

        if unreadable is not None:
            await call_handler(self._error_handler, WorkerError(name, unreadable, exit_code))
        elif exit_code != 0 and not worker.stopping:
            tail = stderr.decode("utf-8", errors="replace")[-_STDERR_TAIL:].strip()
            await call_handler(
                self._error_handler,
                WorkerError(name, tail or f"Worker exited with code {exit_code}", exit_code),
            )
        else:
            logger.debug("Worker %s exited with code %s", name, exit_code)

    # -- Internal helpers ------------------------------------------------------

    def _unschedule(self, name: str) -> None:
        self._armed.discard(name)
        if not self._scheduler.running:
            return
        with contextlib.suppress(JobLookupError):
            self._scheduler.remove_job(name)

    def _build_trigger(self, spec: JobSpec) -> BaseTrigger:
        """Map a spec's schedule onto an APScheduler trigger."""
        given = [v for v in (spec.interval, spec.cron, spec.date) if v is not None]
        if len(given) != 1:
            raise SchedulingEngineError(
                f"Job {spec.name!r} needs exactly one of interval, cron or date"
            )

        if spec.date is not None:
            return DateTrigger(run_date=spec.date)
        if spec.cron is not None:
            return self._cron_trigger(spec.name, spec.cron)

        interval = spec.interval
        if isinstance(interval, str):
            text = interval.strip()
            if text.isdigit():
                interval = int(text)
            elif len(text.split()) == 5 and croniter.is_valid(text):
                return CronTrigger.from_crontab(text, timezone="UTC")
            else:
                return self._recurrence_trigger(spec.name, text)

        if isinstance(interval, bool) or not isinstance(interval, int) or interval < 0:
            raise SchedulingEngineError(f"Job {spec.name!r} has an invalid interval: {interval!r}")
        if interval == 0:
            return DateTrigger(run_date=datetime.now(UTC))
        return IntervalTrigger(seconds=interval / 1000)

    @staticmethod
    def _recurrence_trigger(name: str, text: str) -> BaseTrigger:
        """Plain ``every N <unit>`` runs on a fixed interval; anything with
        weekday or month lists is matched on the calendar."""
        try:
            every = recurrence_interval(text)
            if every is not None:
                return IntervalTrigger(timezone="UTC", **every)
            fields = parse_recurrence(text)
            if fields is None:
                raise SchedulingEngineError(f"Job {name!r} has an unrecognised interval: {text!r}")
            return CronTrigger(timezone="UTC", **fields)
        except ValueError as exc:
            raise SchedulingEngineError(f"Job {name!r}: {exc}") from exc

    @staticmethod
    def _cron_trigger(name: str, expression: str) -> CronTrigger:
        if not croniter.is_valid(expression) or len(expression.split()) != 5:
            raise SchedulingEngineError(f"Job {name!r} has an invalid cron expression: {expression}")
        return CronTrigger.from_crontab(expression, timezone="UTC")
