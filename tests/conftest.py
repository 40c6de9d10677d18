"""Shared test fixtures."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from flowrunner.config.settings import SchedulerConfig
from flowrunner.flows.crypto import encrypt_flow
from flowrunner.scheduler.models import JobOptions

ENCRYPT_KEY = "test-encrypt-key"


def iso(delta_seconds: float = 0) -> str:
    """An ISO timestamp ``delta_seconds`` from now (negative = in the past)."""
    return (datetime.now(UTC) + timedelta(seconds=delta_seconds)).isoformat()


@pytest.fixture
def encrypt_key() -> str:
    return ENCRYPT_KEY


@pytest.fixture
def flow_graph() -> dict[str, Any]:
    return {
        "nodes": [
            {"id": "n1", "type": "start"},
            {"id": "n2", "type": "log", "data": {"message": "hello"}},
            {"id": "n3", "type": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "n1", "target": "n2"},
            {"id": "e2", "source": "n2", "target": "n3"},
        ],
    }


@pytest.fixture
def make_options(flow_graph):
    """Factory for JobOptions with an encrypted copy of ``flow_graph``."""

    def _make(job_id: str = "job-1", **overrides: Any) -> JobOptions:
        data: dict[str, Any] = {
            "_id": job_id,
            "name": f"Job {job_id}",
            "flow": {
                "name": "flow",
                "content": encrypt_flow(json.dumps(flow_graph), ENCRYPT_KEY),
            },
            "startDateTime": iso(-60),
        }
        data.update(overrides)
        return JobOptions.model_validate(data)

    return _make


@pytest.fixture
def mock_scheduler() -> MagicMock:
    scheduler = MagicMock(spec=AsyncIOScheduler)
    scheduler.running = False
    return scheduler


@pytest.fixture
def scheduler_config(tmp_path: Path) -> SchedulerConfig:
    """Config with a throwaway jobs directory and no callbacks."""
    return SchedulerConfig(
        encrypt_key=ENCRYPT_KEY,
        path_jobs=tmp_path / "jobs",
        stop_timeout=1.0,
    )
