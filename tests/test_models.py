from __future__ import annotations

import pytest

from dispatcher.domain.errors import ValidationError
from dispatcher.domain.models import DispatchConfig, JobState
from dispatcher.domain.states import JobPhase, SendOutcome


def test_attempts_only_grow_and_never_imply_success() -> None:
    state = JobState(job_id="j", total=2)
    assert state.record_attempt("a") == 1
    assert state.record_attempt("a") == 2
    assert state.attempts_for("a") == 2
    assert not state.is_settled("a")
    assert state.total_attempts == 2


def test_outcomes_update_sets_and_last_outcome() -> None:
    state = JobState(job_id="j", total=3)
    state.record_attempt("a")
    state.mark_succeeded("a")
    state.record_attempt("b")
    state.mark_retriable("b", rate_limited=True)
    state.record_attempt("b")
    state.mark_failed("b")

    assert state.succeeded == {"a"}
    assert state.failed == {"b"}
    assert state.rate_limited_count == 1
    assert state.attempts["b"].last_outcome == SendOutcome.PERMANENT_FAILURE
    assert state.processed == 2


def test_succeeded_and_failed_stay_disjoint() -> None:
    state = JobState(job_id="j", total=2)
    state.mark_succeeded("a")
    with pytest.raises(ValueError):
        state.mark_failed("a")

    state.mark_failed("b")
    with pytest.raises(ValueError):
        state.mark_succeeded("b")


def test_summary_counts_retried_items() -> None:
    state = JobState(job_id="j", total=3)
    for item_id, attempts in (("a", 1), ("b", 2), ("c", 3)):
        for _ in range(attempts):
            state.record_attempt(item_id)
    state.mark_succeeded("a")
    state.mark_succeeded("b")
    state.mark_failed("c")

    summary = state.summary()
    assert (summary.success, summary.failed, summary.retried) == (2, 1, 2)


def test_terminal_phases() -> None:
    assert JobPhase.COMPLETED.is_terminal
    assert JobPhase.CANCELLED.is_terminal
    assert not JobPhase.PAUSED.is_terminal


@pytest.mark.parametrize(
    "overrides",
    [
        {"batch_size": 0},
        {"max_attempts": 0},
        {"sync_every_batches": 0},
        {"base_delay": -1.0},
        {"base_delay": 5.0, "max_delay": 1.0},
    ],
)
def test_invalid_config_is_rejected(overrides) -> None:
    with pytest.raises(ValidationError):
        DispatchConfig(**overrides)
