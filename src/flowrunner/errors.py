"""Exception hierarchy for the job orchestrator."""

from __future__ import annotations


class FlowRunnerError(Exception):
    """Base class for every error raised by flowrunner."""


class DirectoryError(FlowRunnerError):
    """Creating, clearing or deleting a jobs directory failed."""


class DecryptionError(FlowRunnerError):
    """A flow payload could not be decrypted or parsed into a graph."""


class ScriptCreationError(FlowRunnerError):
    """The script creator produced no artifact for a job."""


class SchedulingEngineError(FlowRunnerError):
    """A job could not be registered, started or stopped by the engine."""


class WorkerError(FlowRunnerError):
    """A worker process failed after it was started.

    Never raised to callers of the orchestrator: instances are delivered
    to the host's ``error_handler``.
    """

    def __init__(self, name: str, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.name = name
        self.exit_code = exit_code

    def to_dict(self) -> dict:
        return {"name": self.name, "message": str(self), "exit_code": self.exit_code}
