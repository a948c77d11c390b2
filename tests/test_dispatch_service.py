from __future__ import annotations

import pytest

from conftest import RecordingEndpoint, ScriptedSender, fast_config
from dispatcher.domain.errors import JobAlreadyCompletedError, ValidationError
from dispatcher.domain.states import JobPhase
from dispatcher.engine.dispatch import DispatchEngine
from dispatcher.services.activity_log import ActivityLog
from dispatcher.services.dispatch_service import DispatchService
from dispatcher.services.status_reporter import StatusReporter
from dispatcher.store.progress import AttemptSnapshot, ProgressSnapshot


class StaticBatchSource:
    def __init__(self, messages: list[dict]) -> None:
        self.messages = messages
        self.fetches = 0

    async def fetch_batch(self, job_id: str) -> list[dict]:
        self.fetches += 1
        return self.messages


def _messages(n: int) -> list[dict]:
    return [
        {"kc_id": f"u{i}", "body": "Hi <kc_username>", "kc_username": f"user{i}"}
        for i in range(1, n + 1)
    ]


def _service(engine, store, sender, n: int = 3) -> DispatchService:
    return DispatchService(
        engine=engine,
        store=store,
        batch_source=StaticBatchSource(_messages(n)),
        sender_factory=lambda token: sender,
        config=fast_config(),
        default_access_token="token-abc",
    )


@pytest.mark.asyncio
async def test_start_renders_messages_and_completes(engine, store) -> None:
    sender = ScriptedSender()
    bodies = []
    sender.on_send = lambda item, n: bodies.append(item.body)
    service = _service(engine, store, sender)

    await service.start("42")
    state = await service.wait("42")

    assert state.phase == JobPhase.COMPLETED
    assert bodies == ["Hi user1", "Hi user2", "Hi user3"]
    assert await store.is_completed("42")


@pytest.mark.asyncio
async def test_start_refuses_completed_job(engine, store) -> None:
    await store.mark_phase("42", JobPhase.COMPLETED)
    service = _service(engine, store, ScriptedSender())

    with pytest.raises(JobAlreadyCompletedError):
        await service.start("42")
    assert service.batch_source.fetches == 0


@pytest.mark.asyncio
async def test_start_requires_job_id(engine, store) -> None:
    service = _service(engine, store, ScriptedSender())

    with pytest.raises(ValidationError):
        await service.start("")


@pytest.mark.asyncio
async def test_resume_if_interrupted_skips_unknown_jobs(engine, store) -> None:
    service = _service(engine, store, ScriptedSender())

    assert await service.resume_if_interrupted("42") is False
    assert service.batch_source.fetches == 0


@pytest.mark.asyncio
async def test_resume_if_interrupted_continues_from_snapshot(engine, store) -> None:
    # A previous process got through u1 before stopping
    previous = ProgressSnapshot(
        job_id="42",
        phase=JobPhase.RUNNING,
        total=3,
        succeeded=["u1"],
        attempts={"u1": AttemptSnapshot(attempts=1)},
    )
    await store.save("42", previous)
    await store.mark_phase("42", JobPhase.RUNNING)

    sender = ScriptedSender()
    service = _service(engine, store, sender)

    assert await service.resume_if_interrupted("42") is True
    state = await service.wait("42")

    assert sender.calls == ["u2", "u3"]
    assert state.phase == JobPhase.COMPLETED
    assert state.succeeded == {"u1", "u2", "u3"}


@pytest.mark.asyncio
async def test_final_report_failure_is_recorded(store) -> None:
    engine = DispatchEngine(
        store=store,
        reporter=StatusReporter(RecordingEndpoint(always_fail=True)),
        activity=ActivityLog(),
    )
    service = _service(engine, store, ScriptedSender())

    await service.start("42")
    state = await service.wait("42")

    assert state is not None
    assert state.succeeded == {"u1", "u2", "u3"}
    assert "Failed to update status" in service.last_errors["42"]
    # Marker stays non-terminal so a later run retries the report
    assert not await store.is_completed("42")
    assert await store.is_resumable("42")


@pytest.mark.asyncio
async def test_finished_runs_are_not_retained(engine, store) -> None:
    service = _service(engine, store, ScriptedSender())

    await service.start("42")
    await service.wait("42")

    assert not service.is_running("42")
    assert await service.wait("42") is None


@pytest.mark.asyncio
async def test_clear_forgets_progress_and_last_error(store) -> None:
    engine = DispatchEngine(
        store=store,
        reporter=StatusReporter(RecordingEndpoint(always_fail=True)),
        activity=ActivityLog(),
    )
    service = _service(engine, store, ScriptedSender())
    await service.start("42")
    await service.wait("42")
    assert "42" in service.last_errors

    await service.clear("42")

    assert "42" not in service.last_errors
    assert await store.load("42") is None
    assert await store.load_phase("42") is None
