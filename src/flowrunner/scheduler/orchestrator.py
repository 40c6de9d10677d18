"""Orchestrator — turns JobOptions into scheduled worker processes and relays their events."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from flowrunner.config.constants import EVENT_WORKER_CREATED, EVENT_WORKER_DELETED
from flowrunner.config.settings import SchedulerConfig
from flowrunner.errors import WorkerError
from flowrunner.flows.creator import PythonScriptCreator, ScriptCreator
from flowrunner.flows.models import NodeCollection
from flowrunner.scheduler.engine import WorkerEngine, call_handler
from flowrunner.scheduler.job import Job, build_job, is_expired
from flowrunner.scheduler.models import JobOptions, WorkerMessage
from flowrunner.scheduler.scripts import ScriptMaterializer


class StopResult(StrEnum):
    """Outcome of stopping a job."""

    STOPPED = "stopped"  # deregistered, no worker left
    PENDING = "pending"  # deregistered, but a worker is still shutting down
    NOT_FOUND = "not_found"  # nothing registered and nothing running


def _describe(payload: Any) -> str:
    if isinstance(payload, WorkerError):
        payload = payload.to_dict()
    elif isinstance(payload, WorkerMessage):
        payload = payload.model_dump(mode="json")
    try:
        return json.dumps(payload, default=str)
    except (TypeError, ValueError):
        return repr(payload)


class Orchestrator:
    """Schedules jobs as isolated worker processes.

    Each instance owns its own WorkerEngine, so several orchestrators can
    live side by side (e.g. in tests). Call :meth:`initialize` once before
    scheduling anything: it wipes the jobs directory.

    Not safe for concurrent run/stop/delete calls on the same job id.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        collections: Optional[list[NodeCollection]] = None,
        *,
        scheduler: Optional[AsyncIOScheduler] = None,
        creator: Optional[ScriptCreator] = None,
    ) -> None:
        self._config = config
        self._logger = config.logger or logging.getLogger("flowrunner.scheduler.orchestrator")
        self._collections = list(collections or [])
        self._custom_creator = creator is not None
        self._engine = WorkerEngine(
            error_handler=self._handle_error,
            worker_message_handler=self._handle_message,
            stop_timeout=config.stop_timeout,
            scheduler=scheduler,
        )
        self._scripts = ScriptMaterializer(
            config.path_jobs,
            config.encrypt_key,
            creator or self._make_creator(),
        )
        self._add_worker_listeners()

    # -- Properties ------------------------------------------------------------

    @property
    def path_jobs(self) -> Path:
        return self._config.path_jobs

    @property
    def engine(self) -> WorkerEngine:
        return self._engine

    @property
    def collections(self) -> list[NodeCollection]:
        return self._collections

    @collections.setter
    def collections(self, collections: list[NodeCollection]) -> None:
        self._collections = list(collections)
        if not self._custom_creator:
            self._scripts.creator = self._make_creator()

    # -- Lifecycle -------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the jobs directory, or clear it if a previous run left one."""
        await self._scripts.prepare_jobs_directory()
        self._logger.info("Jobs directory ready: %s", self.path_jobs)

    async def shutdown(self) -> None:
        """Terminate live workers and stop the engine."""
        await self._engine.shutdown()

    # -- Jobs ------------------------------------------------------------------

    async def run_job(self, options: JobOptions) -> Optional[str]:
        """Register and start one job. Returns its id, or None if it has already ended."""
        if is_expired(options):
            self._logger.info("Job %s (%s) has ended, not scheduling", options.id, options.name)
            return None

        job = self._build(options)
        await self._engine.add(job.external_data)
        await self._engine.start(job.name)
        self._logger.info("Job %s (%s) scheduled", job.name, options.name)
        return job.name

    async def run_jobs(self, options_list: list[JobOptions]) -> Optional[list[str]]:
        """Register and start several jobs as one batch.

        Jobs whose end date has passed are skipped. Returns None when no
        job is left to run.
        """
        now = datetime.now(UTC)
        jobs = [self._build(options) for options in options_list if not is_expired(options, now)]
        if not jobs:
            self._logger.info("No runnable jobs among %d submitted", len(options_list))
            return None

        await self._engine.add([job.external_data for job in jobs])
        await self._engine.start()
        names = [job.name for job in jobs]
        self._logger.info("Scheduled %d jobs: %s", len(names), ", ".join(names))
        return names

    async def stop(self, job_id: str) -> StopResult:
        """Disarm and deregister a job, then report whether its worker is gone."""
        if job_id not in self._engine.jobs and job_id not in self._engine.workers:
            return StopResult.NOT_FOUND

        await self._engine.stop(job_id)
        await self._engine.remove(job_id)

        if job_id in self._engine.workers:
            self._logger.warning("Job %s deregistered but its worker is still running", job_id)
            return StopResult.PENDING
        self._logger.info("Job %s stopped", job_id)
        return StopResult.STOPPED

    async def stop_job(self, job_id: str) -> Optional[str]:
        """Stop a job. Returns its id once no worker is left, None while one still runs."""
        result = await self.stop(job_id)
        if result is StopResult.PENDING:
            return None
        return job_id

    async def post_message_cancel_worker(self, job_id: str) -> None:
        """Ask the job's live worker, if any, to exit on its own."""
        if job_id not in self._engine.workers:
            return
        await self._engine.post_message(job_id, {"cancel": True})
        self._logger.info("Sent cancel to worker of job %s", job_id)

    # -- Scripts ---------------------------------------------------------------

    async def create_python_script(self, options: JobOptions) -> Path:
        return await self._scripts.create_python_script(options)

    async def create_python_scripts(self, options_list: list[JobOptions]) -> list[Path]:
        return await self._scripts.create_python_scripts(options_list)

    async def delete_python_script(self, job_id: str) -> Path:
        """Remove the job's script directory. Stop the job first if it is running."""
        return await self._scripts.delete_python_script(job_id)

    # -- Internal helpers ------------------------------------------------------

    def _build(self, options: JobOptions) -> Job:
        return build_job(
            options,
            self.path_jobs,
            self._config.python_path,
            self._config.script_name,
        )

    def _make_creator(self) -> ScriptCreator:
        return PythonScriptCreator(self._collections, script_name=self._config.script_name)

    def _add_worker_listeners(self) -> None:
        self._engine.on(EVENT_WORKER_CREATED, self._handle_worker_created)
        self._engine.on(EVENT_WORKER_DELETED, self._handle_worker_deleted)

    async def _handle_worker_created(self, name: str) -> None:
        self._logger.debug("Worker created for job %s", name)
        await call_handler(self._config.on_worker_created, name)

    async def _handle_worker_deleted(self, name: str) -> None:
        self._logger.debug("Worker deleted for job %s", name)
        await call_handler(self._config.on_worker_deleted, name)

    async def _handle_error(self, error: Any) -> None:
        self._logger.error("Scheduler job error: %s", _describe(error))
        await call_handler(self._config.error_handler, error)

    async def _handle_message(self, message: WorkerMessage) -> None:
        self._logger.info("Scheduler job message: %s", _describe(message))
        await call_handler(self._config.worker_message_handler, message)
