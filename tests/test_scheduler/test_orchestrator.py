"""Tests for the Orchestrator."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from flowrunner.config.settings import SchedulerConfig
from flowrunner.errors import DecryptionError, SchedulingEngineError, WorkerError
from flowrunner.flows.models import NodeCollection
from flowrunner.scheduler.models import WorkerMessage
from flowrunner.scheduler.orchestrator import Orchestrator, StopResult


def iso(delta_seconds: float) -> str:
    return (datetime.now(UTC) + timedelta(seconds=delta_seconds)).isoformat()


@pytest.fixture
def orchestrator(scheduler_config: SchedulerConfig, mock_scheduler) -> Orchestrator:
    return Orchestrator(scheduler_config, scheduler=mock_scheduler)


# -- initialize ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initialize_creates_directory(orchestrator: Orchestrator):
    assert not orchestrator.path_jobs.exists()
    await orchestrator.initialize()
    assert orchestrator.path_jobs.is_dir()


@pytest.mark.asyncio
async def test_initialize_twice_leaves_directory_empty(orchestrator: Orchestrator):
    await orchestrator.initialize()
    assert list(orchestrator.path_jobs.iterdir()) == []
    await orchestrator.initialize()
    assert list(orchestrator.path_jobs.iterdir()) == []


@pytest.mark.asyncio
async def test_initialize_clears_previous_run(orchestrator: Orchestrator, make_options):
    await orchestrator.initialize()
    await orchestrator.create_python_script(make_options("left-over"))

    await orchestrator.initialize()

    assert list(orchestrator.path_jobs.iterdir()) == []


# -- run_job ---------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_job_registers_and_starts(orchestrator: Orchestrator, make_options, mock_scheduler):
    result = await orchestrator.run_job(make_options("job-1"))

    assert result == "job-1"
    assert "job-1" in orchestrator.engine.jobs
    mock_scheduler.add_job.assert_called_once()
    assert mock_scheduler.add_job.call_args.kwargs["id"] == "job-1"


@pytest.mark.asyncio
async def test_run_job_expired_returns_none(orchestrator: Orchestrator, make_options, mock_scheduler):
    """An end date one second in the past means nothing is registered."""
    result = await orchestrator.run_job(make_options(endDateTime=iso(-1)))

    assert result is None
    assert orchestrator.engine.jobs == {}
    mock_scheduler.add_job.assert_not_called()


@pytest.mark.asyncio
async def test_run_job_future_end_date_runs(orchestrator: Orchestrator, make_options):
    assert await orchestrator.run_job(make_options(endDateTime=iso(3600))) == "job-1"


@pytest.mark.asyncio
async def test_run_job_start_20s_ahead_is_date_trigger(
    orchestrator: Orchestrator, make_options, mock_scheduler
):
    await orchestrator.run_job(make_options(startDateTime=iso(20), interval=60000))

    spec = orchestrator.engine.jobs["job-1"]
    assert spec.date is not None
    assert spec.interval is None
    assert isinstance(mock_scheduler.add_job.call_args.kwargs["trigger"], DateTrigger)


@pytest.mark.asyncio
async def test_run_job_start_5s_ahead_is_interval(orchestrator: Orchestrator, make_options):
    await orchestrator.run_job(make_options(startDateTime=iso(5), interval=60000))

    spec = orchestrator.engine.jobs["job-1"]
    assert spec.date is None
    assert spec.interval == 60000


@pytest.mark.asyncio
async def test_run_job_worker_paths(orchestrator: Orchestrator, make_options, scheduler_config):
    await orchestrator.run_job(make_options("job-1"))
    worker = orchestrator.engine.jobs["job-1"].worker
    assert worker.script_path == scheduler_config.path_jobs / "job-1" / "script.py"
    assert worker.python_path == scheduler_config.python_path


@pytest.mark.asyncio
async def test_run_job_propagates_engine_errors(orchestrator: Orchestrator, make_options):
    await orchestrator.run_job(make_options("job-1"))
    with pytest.raises(SchedulingEngineError):
        await orchestrator.run_job(make_options("job-1"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("measure", "value", "every"),
    [
        ("seconds", 90, timedelta(seconds=90)),
        ("hours", 25, timedelta(hours=25)),
        ("minutes", 7, timedelta(minutes=7)),
    ],
)
async def test_run_job_recurrence_interval_runs_evenly(
    orchestrator: Orchestrator, make_options, mock_scheduler, measure, value, every
):
    """Plain recurrence intervals beyond a cron field's range still schedule."""
    options = make_options(intervalMeasure=measure, intervalValue=value)

    assert await orchestrator.run_job(options) == "job-1"

    trigger = mock_scheduler.add_job.call_args.kwargs["trigger"]
    assert isinstance(trigger, IntervalTrigger)
    assert trigger.interval == every


@pytest.mark.asyncio
async def test_run_job_recurrence_with_weekdays_uses_calendar(
    orchestrator: Orchestrator, make_options, mock_scheduler
):
    await orchestrator.run_job(make_options(intervalMeasure="hours", intervalValue=6, weekDays=[1]))
    assert isinstance(mock_scheduler.add_job.call_args.kwargs["trigger"], CronTrigger)


@pytest.mark.asyncio
async def test_run_job_oversized_step_with_weekdays_rejected(
    orchestrator: Orchestrator, make_options, mock_scheduler
):
    options = make_options(intervalMeasure="seconds", intervalValue=90, weekDays=[1])
    with pytest.raises(SchedulingEngineError, match="does not fit"):
        await orchestrator.run_job(options)
    assert orchestrator.engine.jobs == {}
    mock_scheduler.add_job.assert_not_called()


@pytest.mark.asyncio
async def test_run_job_bad_interval(orchestrator: Orchestrator, make_options):
    with pytest.raises(SchedulingEngineError):
        await orchestrator.run_job(make_options(interval="whenever"))


# -- run_jobs --------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_jobs_batch(orchestrator: Orchestrator, make_options, mock_scheduler):
    result = await orchestrator.run_jobs([make_options("a"), make_options("b")])

    assert result == ["a", "b"]
    assert set(orchestrator.engine.jobs) == {"a", "b"}
    assert mock_scheduler.add_job.call_count == 2


@pytest.mark.asyncio
async def test_run_jobs_filters_expired(orchestrator: Orchestrator, make_options):
    result = await orchestrator.run_jobs(
        [make_options("old", endDateTime=iso(-1)), make_options("new")]
    )
    assert result == ["new"]
    assert set(orchestrator.engine.jobs) == {"new"}


@pytest.mark.asyncio
async def test_run_jobs_all_expired_returns_none(
    orchestrator: Orchestrator, make_options, mock_scheduler
):
    result = await orchestrator.run_jobs(
        [make_options("a", endDateTime=iso(-1)), make_options("b", endDateTime=iso(-10))]
    )
    assert result is None
    assert orchestrator.engine.jobs == {}
    mock_scheduler.add_job.assert_not_called()


@pytest.mark.asyncio
async def test_run_jobs_empty_list_returns_none(orchestrator: Orchestrator):
    assert await orchestrator.run_jobs([]) is None


# -- stop ------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stop_job_without_worker_returns_id(orchestrator: Orchestrator, make_options):
    await orchestrator.run_job(make_options("job-1"))

    assert await orchestrator.stop_job("job-1") == "job-1"
    assert "job-1" not in orchestrator.engine.jobs


@pytest.mark.asyncio
async def test_stop_job_with_live_worker_returns_none(orchestrator: Orchestrator, make_options):
    """If the worker is still around after removal the stop is unconfirmed."""
    await orchestrator.run_job(make_options("job-1"))
    orchestrator.engine.workers["job-1"] = MagicMock(is_alive=True)

    with patch.object(orchestrator.engine, "stop", new=AsyncMock()) as stop:
        assert await orchestrator.stop_job("job-1") is None
        stop.assert_awaited_once_with("job-1")

    assert "job-1" not in orchestrator.engine.jobs


@pytest.mark.asyncio
async def test_stop_reports_pending(orchestrator: Orchestrator, make_options):
    await orchestrator.run_job(make_options("job-1"))
    orchestrator.engine.workers["job-1"] = MagicMock(is_alive=True)

    with patch.object(orchestrator.engine, "stop", new=AsyncMock()):
        assert await orchestrator.stop("job-1") is StopResult.PENDING


@pytest.mark.asyncio
async def test_stop_reports_stopped(orchestrator: Orchestrator, make_options):
    await orchestrator.run_job(make_options("job-1"))
    assert await orchestrator.stop("job-1") is StopResult.STOPPED


@pytest.mark.asyncio
async def test_stop_unknown_job(orchestrator: Orchestrator):
    assert await orchestrator.stop("ghost") is StopResult.NOT_FOUND
    assert await orchestrator.stop_job("ghost") == "ghost"


# -- scripts ---------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_and_delete_script(orchestrator: Orchestrator, make_options):
    await orchestrator.initialize()
    script = await orchestrator.create_python_script(make_options("job-1"))
    assert script == orchestrator.path_jobs / "job-1" / "script.py"

    removed = await orchestrator.delete_python_script("job-1")

    assert removed == orchestrator.path_jobs / "job-1"
    assert not removed.exists()
    again = await orchestrator.create_python_script(make_options("job-1"))
    assert again.exists()


@pytest.mark.asyncio
async def test_delete_does_not_stop_job(orchestrator: Orchestrator, make_options):
    await orchestrator.initialize()
    await orchestrator.create_python_script(make_options("job-1"))
    await orchestrator.run_job(make_options("job-1"))

    await orchestrator.delete_python_script("job-1")

    assert "job-1" in orchestrator.engine.jobs


@pytest.mark.asyncio
async def test_create_scripts_batch(orchestrator: Orchestrator, make_options):
    await orchestrator.initialize()
    paths = await orchestrator.create_python_scripts([make_options("a"), make_options("b")])
    assert [p.parent.name for p in paths] == ["a", "b"]


@pytest.mark.asyncio
async def test_wrong_key_fails_materialization(scheduler_config, mock_scheduler, make_options):
    orchestrator = Orchestrator(replace(scheduler_config, encrypt_key="wrong"), scheduler=mock_scheduler)
    await orchestrator.initialize()
    with pytest.raises(DecryptionError):
        await orchestrator.create_python_script(make_options())


@pytest.mark.asyncio
async def test_collections_feed_script_creator(orchestrator: Orchestrator, make_options):
    await orchestrator.initialize()
    orchestrator.collections = [
        NodeCollection(name="custom", actions={"log": 'emit({"custom": data["message"]})'})
    ]
    script = await orchestrator.create_python_script(make_options())
    assert '"custom"' in script.read_text(encoding="utf-8")
    assert orchestrator.collections[0].name == "custom"


@pytest.mark.asyncio
async def test_custom_creator_is_used(scheduler_config, mock_scheduler, make_options, tmp_path):
    creator = AsyncMock()
    creator.create_script.return_value = tmp_path / "made.py"
    orchestrator = Orchestrator(scheduler_config, scheduler=mock_scheduler, creator=creator)
    await orchestrator.initialize()

    assert await orchestrator.create_python_script(make_options()) == tmp_path / "made.py"
    orchestrator.collections = []
    await orchestrator.create_python_script(make_options())
    assert creator.create_script.await_count == 2


# -- cancel ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_posts_message_to_live_worker(orchestrator: Orchestrator):
    orchestrator.engine.workers["job-1"] = MagicMock()
    with patch.object(orchestrator.engine, "post_message", new=AsyncMock()) as post:
        await orchestrator.post_message_cancel_worker("job-1")
    post.assert_awaited_once_with("job-1", {"cancel": True})


@pytest.mark.asyncio
async def test_cancel_without_worker_is_noop(orchestrator: Orchestrator):
    with patch.object(orchestrator.engine, "post_message", new=AsyncMock()) as post:
        await orchestrator.post_message_cancel_worker("job-1")
    post.assert_not_called()


# -- event relay -----------------------------------------------------------------


@pytest.fixture
def relay(tmp_path: Path, mock_scheduler):
    calls: list = []
    config = SchedulerConfig(
        encrypt_key="k",
        path_jobs=tmp_path / "jobs",
        on_worker_created=lambda name: calls.append(("created", name)),
        on_worker_deleted=AsyncMock(side_effect=lambda name: calls.append(("deleted", name))),
        error_handler=lambda err: calls.append(("error", err)),
        worker_message_handler=lambda msg: calls.append(("message", msg)),
    )
    return Orchestrator(config, scheduler=mock_scheduler), calls


@pytest.mark.asyncio
async def test_relay_worker_events(relay):
    orchestrator, calls = relay
    await orchestrator.engine.emit("worker created", "a")
    await orchestrator.engine.emit("worker deleted", "a")
    assert calls == [("created", "a"), ("deleted", "a")]


@pytest.mark.asyncio
async def test_relay_error_and_message(relay, caplog):
    orchestrator, calls = relay
    error = WorkerError("a", "boom", 1)
    message = WorkerMessage(name="a", message={"status": "done"})

    with caplog.at_level(logging.INFO, logger="flowrunner.scheduler.orchestrator"):
        await orchestrator.engine._error_handler(error)
        await orchestrator.engine._worker_message_handler(message)

    assert calls == [("error", error), ("message", message)]
    assert "Scheduler job error" in caplog.text
    assert "Scheduler job message" in caplog.text


@pytest.mark.asyncio
async def test_relay_preserves_arrival_order(relay):
    orchestrator, calls = relay
    await orchestrator.engine.emit("worker created", "a")
    await orchestrator.engine.emit("worker created", "b")
    await orchestrator.engine.emit("worker deleted", "b")
    await orchestrator.engine.emit("worker deleted", "a")
    assert calls == [("created", "a"), ("created", "b"), ("deleted", "b"), ("deleted", "a")]


@pytest.mark.asyncio
async def test_missing_callbacks_are_silent(orchestrator: Orchestrator):
    await orchestrator.engine.emit("worker created", "a")
    await orchestrator.engine.emit("worker deleted", "a")
    await orchestrator.engine._error_handler(WorkerError("a", "boom"))
    await orchestrator.engine._worker_message_handler(WorkerMessage(name="a"))


@pytest.mark.asyncio
async def test_custom_logger_is_used(tmp_path, mock_scheduler):
    logger = MagicMock()
    orchestrator = Orchestrator(
        SchedulerConfig(encrypt_key="k", path_jobs=tmp_path / "jobs", logger=logger),
        scheduler=mock_scheduler,
    )
    await orchestrator.engine._error_handler(WorkerError("a", "boom"))
    logger.error.assert_called_once()


def test_orchestrators_are_independent(scheduler_config):
    first = Orchestrator(scheduler_config)
    second = Orchestrator(scheduler_config)
    assert first.engine is not second.engine


# -- end to end ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_job_end_to_end(tmp_path, make_options, encrypt_key):
    """A real scheduler fires the job once and the worker runs the generated script."""
    done = asyncio.Event()
    messages: list = []
    created: list = []

    config = SchedulerConfig(
        encrypt_key=encrypt_key,
        path_jobs=tmp_path / "jobs",
        on_worker_created=created.append,
        on_worker_deleted=lambda name: done.set(),
        worker_message_handler=lambda msg: messages.append(msg.message),
    )
    orchestrator = Orchestrator(config)
    await orchestrator.initialize()
    options = make_options("e2e")
    try:
        await orchestrator.create_python_script(options)
        assert await orchestrator.run_job(options) == "e2e"
        await asyncio.wait_for(done.wait(), timeout=15)
    finally:
        await orchestrator.shutdown()

    assert created == ["e2e"]
    assert {"log": "hello"} in messages
    assert messages[-1] == {"status": "done"}
    assert await orchestrator.stop_job("e2e") == "e2e"
