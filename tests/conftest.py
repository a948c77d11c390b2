from __future__ import annotations

import asyncio
from typing import Callable, Optional

import pytest

from dispatcher.domain.models import DispatchConfig, Item, SendResult, StatusAck, StatusReport
from dispatcher.engine.dispatch import DispatchEngine
from dispatcher.services.activity_log import ActivityLog
from dispatcher.services.status_reporter import StatusReporter
from dispatcher.store.backends import InMemoryBackend
from dispatcher.store.progress import ProgressStore

OK = SendResult(accepted=True)
RATE_LIMITED = SendResult(accepted=False, rate_limited=True, error_detail="HTTP 429")
FAILED = SendResult(accepted=False, error_detail="HTTP 500")


def make_items(n: int) -> list[Item]:
    return [Item(item_id=f"u{i}", body=f"hello {i}", recipient=f"u{i}") for i in range(1, n + 1)]


def fast_config(**overrides) -> DispatchConfig:
    values = dict(base_delay=0.0, max_delay=0.0, max_attempts=3, batch_size=5, exponential=True)
    values.update(overrides)
    return DispatchConfig(**values)


class ScriptedSender:
    """
    Returns scripted outcomes per item, indexed by that item's send count.
    Outcomes may be SendResult instances or exceptions to raise.
    """

    def __init__(self, script: Optional[dict] = None, default: SendResult = OK) -> None:
        self.script = script or {}
        self.default = default
        self.calls: list[str] = []
        self.on_send: Optional[Callable[[Item, int], None]] = None
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.interrupted = False

    async def send(self, item: Item, token=None) -> SendResult:
        self.calls.append(item.item_id)
        self.started.set()
        if self.on_send:
            self.on_send(item, len(self.calls))
        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.interrupted = True
                raise

        outcomes = self.script.get(item.item_id, [])
        n = self.calls.count(item.item_id)
        outcome = outcomes[n - 1] if n <= len(outcomes) else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingEndpoint:
    def __init__(self, failures: int = 0, always_fail: bool = False) -> None:
        self.reports: list[StatusReport] = []
        self.failures = failures
        self.always_fail = always_fail

    async def update_status(self, report: StatusReport) -> StatusAck:
        self.reports.append(report)
        if self.always_fail or len(self.reports) <= self.failures:
            return StatusAck(success=False, error="Failed to update status")
        return StatusAck(success=True)


@pytest.fixture
def store() -> ProgressStore:
    return ProgressStore(InMemoryBackend())


@pytest.fixture
def endpoint() -> RecordingEndpoint:
    return RecordingEndpoint()


@pytest.fixture
def engine(store: ProgressStore, endpoint: RecordingEndpoint) -> DispatchEngine:
    return DispatchEngine(store=store, reporter=StatusReporter(endpoint), activity=ActivityLog(500))
