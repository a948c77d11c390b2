from __future__ import annotations

import pytest

from dispatcher.domain.models import DispatchSummary, JobState
from dispatcher.domain.states import JobPhase, SendOutcome
from dispatcher.store.backends import InMemoryBackend, SqlAlchemyBackend
from dispatcher.store.progress import PROGRESS_KEY, ProgressSnapshot, ProgressStore


def _state() -> JobState:
    state = JobState(job_id="dmsg-1", total=4, phase=JobPhase.RUNNING)
    state.record_attempt("a")
    state.mark_succeeded("a")
    state.record_attempt("b")
    state.mark_retriable("b", rate_limited=True)
    state.record_attempt("c")
    state.mark_failed("c")
    return state


@pytest.mark.asyncio
async def test_snapshot_survives_store_and_rebuilds_state() -> None:
    store = ProgressStore(InMemoryBackend())
    await store.save("dmsg-1", ProgressSnapshot.from_state(_state()))

    restored = (await store.load("dmsg-1")).to_state()

    assert restored.succeeded == {"a"}
    assert restored.failed == {"c"}
    assert restored.rate_limited_count == 1
    assert restored.attempts["b"].attempts == 1
    assert restored.attempts["b"].last_outcome == SendOutcome.RATE_LIMITED
    assert restored.total == 4


def test_rebuild_against_refetched_items_drops_unknown_ids() -> None:
    snapshot = ProgressSnapshot.from_state(_state())

    restored = snapshot.to_state({"a", "b"})

    assert restored.total == 2
    assert restored.succeeded == {"a"}
    assert restored.failed == set()
    assert set(restored.attempts) == {"a", "b"}


@pytest.mark.asyncio
async def test_phase_marker_and_completion() -> None:
    store = ProgressStore(InMemoryBackend())
    assert await store.load_phase("dmsg-2") is None
    assert not await store.is_resumable("dmsg-2")

    await store.mark_phase("dmsg-2", JobPhase.PAUSED)
    assert await store.is_resumable("dmsg-2")
    assert not await store.is_completed("dmsg-2")

    await store.mark_phase("dmsg-2", JobPhase.COMPLETED)
    assert await store.is_completed("dmsg-2")
    assert not await store.is_resumable("dmsg-2")


@pytest.mark.asyncio
async def test_clear_removes_everything_for_the_job() -> None:
    backend = InMemoryBackend()
    store = ProgressStore(backend)
    await store.save("dmsg-3", ProgressSnapshot.from_state(_state()))
    await store.mark_phase("dmsg-3", JobPhase.COMPLETED)
    await store.save_summary("dmsg-3", DispatchSummary(success=1, failed=1, rate_limited=1, retried=0))
    await store.mark_phase("other", JobPhase.RUNNING)

    await store.clear("dmsg-3")

    assert await store.load("dmsg-3") is None
    assert await store.load_phase("dmsg-3") is None
    assert await store.load_summary("dmsg-3") is None
    assert backend.keys() == ["dispatch_status_other"]


@pytest.mark.asyncio
async def test_unreadable_snapshot_is_ignored() -> None:
    backend = InMemoryBackend()
    await backend.set(PROGRESS_KEY.format(job_id="dmsg-4"), "{not json")

    assert await ProgressStore(backend).load("dmsg-4") is None


@pytest.mark.asyncio
async def test_sqlalchemy_backend_round_trip(tmp_path) -> None:
    backend = SqlAlchemyBackend(f"sqlite+aiosqlite:///{tmp_path / 'progress.db'}")
    await backend.init()
    try:
        await backend.set("k", "v1")
        await backend.set("k", "v2")
        assert await backend.get("k") == "v2"

        await backend.remove("k")
        assert await backend.get("k") is None

        store = ProgressStore(backend)
        await store.save("dmsg-5", ProgressSnapshot.from_state(_state()))
        await store.mark_phase("dmsg-5", JobPhase.RUNNING)

        assert (await store.load("dmsg-5")).succeeded == ["a"]
        assert await store.is_resumable("dmsg-5")
    finally:
        await backend.close()
