"""Script materializer — decrypts a job's flow and writes its worker script to disk."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from pathlib import Path

from pydantic import ValidationError

from flowrunner.errors import DecryptionError, DirectoryError, ScriptCreationError
from flowrunner.flows.creator import ScriptCreator
from flowrunner.flows.crypto import decrypt_flow
from flowrunner.flows.models import FlowGraph
from flowrunner.scheduler.models import JobOptions

logger = logging.getLogger("flowrunner.scheduler.scripts")


class ScriptMaterializer:
    """Owns the per-job directories under the jobs root.

    Layout: ``<path_jobs>/<job id>/<script>``. One directory per job id,
    nothing else is written.
    """

    def __init__(self, path_jobs: Path, encrypt_key: str, creator: ScriptCreator) -> None:
        self.path_jobs = Path(path_jobs)
        self._encrypt_key = encrypt_key
        self.creator = creator

    def job_dir(self, job_id: str) -> Path:
        return self.path_jobs / job_id

    def read_flow(self, options: JobOptions) -> FlowGraph:
        """Decrypt and parse a job's flow payload."""
        plaintext = decrypt_flow(options.flow.content, self._encrypt_key)
        try:
            return FlowGraph.model_validate(json.loads(plaintext))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise DecryptionError(f"Flow of job {options.id} is not a valid graph") from exc

    async def create_python_script(self, options: JobOptions) -> Path:
        """Write the worker script for one job and return its path."""
        target = self.job_dir(options.id)
        try:
            await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise DirectoryError(f"Cannot create job directory {target}: {exc}") from exc

        graph = self.read_flow(options)
        script_path = await self.creator.create_script(target, graph.nodes, graph.edges)
        if not script_path:
            raise ScriptCreationError(f"Error creating python script for job {options.id}")

        logger.info("Created script for job %s (%s): %s", options.id, options.name, script_path)
        return Path(script_path)

    async def create_python_scripts(self, options_list: list[JobOptions]) -> list[Path]:
        """Create scripts one job at a time. Stops at the first failure; earlier scripts stay."""
        paths: list[Path] = []
        for options in options_list:
            paths.append(await self.create_python_script(options))
        return paths

    async def delete_python_script(self, job_id: str) -> Path:
        """Remove a job's directory and everything in it."""
        target = self.job_dir(job_id)
        try:
            await asyncio.to_thread(shutil.rmtree, target)
        except OSError as exc:
            raise DirectoryError(f"Cannot delete job directory {target}: {exc}") from exc
        logger.info("Deleted script directory for job %s", job_id)
        return target

    async def prepare_jobs_directory(self) -> None:
        """Make sure the jobs root exists and holds nothing from a previous run."""
        try:
            if await asyncio.to_thread(self.path_jobs.exists):
                await asyncio.to_thread(shutil.rmtree, self.path_jobs)
                logger.debug("Cleared jobs directory %s", self.path_jobs)
            await asyncio.to_thread(self.path_jobs.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise DirectoryError(f"Cannot prepare jobs directory {self.path_jobs}: {exc}") from exc
