from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from dispatcher.domain.errors import ValidationError
from dispatcher.domain.states import JobPhase, SendOutcome

@dataclass(frozen=True)
class Item:
    item_id: str
    body: str
    recipient: str

@dataclass(frozen=True)
class DispatchConfig:
    base_delay: float = 1.5
    max_delay: float = 30.0
    max_attempts: int = 3
    batch_size: int = 5
    exponential: bool = True
    sync_every_batches: int = 3

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValidationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_attempts < 1:
            raise ValidationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.sync_every_batches < 1:
            raise ValidationError(f"sync_every_batches must be >= 1, got {self.sync_every_batches}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValidationError("delays must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValidationError("max_delay must be >= base_delay")

@dataclass
class AttemptRecord:
    attempts: int = 0
    last_outcome: SendOutcome = SendOutcome.NONE

@dataclass(frozen=True)
class SendResult:
    accepted: bool
    rate_limited: bool = False
    error_detail: Optional[str] = None

@dataclass(frozen=True)
class StatusReport:
    job_id: str
    processed_count: int
    total_attempts: int
    status: int
    rate_limited_count: int

@dataclass(frozen=True)
class StatusAck:
    success: bool
    error: Optional[str] = None

@dataclass(frozen=True)
class SyncResult:
    success: bool
    complete: bool = False

@dataclass(frozen=True)
class DispatchSummary:
    success: int
    failed: int
    rate_limited: int
    retried: int

@dataclass
class JobState:
    """
    Progress of one dispatch run.

    `succeeded` is the only authority for "this item is done"; attempt
    counters never imply completion on their own.
    """
    job_id: str
    total: int
    succeeded: set[str] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)
    rate_limited_count: int = 0
    attempts: dict[str, AttemptRecord] = field(default_factory=dict)
    phase: JobPhase = JobPhase.IDLE

    batches_processed: int = 0
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def processed(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def total_attempts(self) -> int:
        return sum(r.attempts for r in self.attempts.values())

    def is_settled(self, item_id: str) -> bool:
        return item_id in self.succeeded or item_id in self.failed

    def attempts_for(self, item_id: str) -> int:
        record = self.attempts.get(item_id)
        return record.attempts if record else 0

    def record_attempt(self, item_id: str) -> int:
        record = self.attempts.setdefault(item_id, AttemptRecord())
        record.attempts += 1
        self.updated_at = datetime.now(timezone.utc)
        return record.attempts

    def mark_succeeded(self, item_id: str):
        if item_id in self.failed:
            raise ValueError(f"Item {item_id} already recorded as failed")
        self.succeeded.add(item_id)
        self.attempts.setdefault(item_id, AttemptRecord()).last_outcome = SendOutcome.SUCCESS
        self.updated_at = datetime.now(timezone.utc)

    def mark_retriable(self, item_id: str, rate_limited: bool = False):
        outcome = SendOutcome.RATE_LIMITED if rate_limited else SendOutcome.RETRIABLE_FAILURE
        self.attempts.setdefault(item_id, AttemptRecord()).last_outcome = outcome
        if rate_limited:
            self.rate_limited_count += 1
        self.updated_at = datetime.now(timezone.utc)

    def mark_failed(self, item_id: str):
        if item_id in self.succeeded:
            raise ValueError(f"Item {item_id} already recorded as succeeded")
        self.failed.add(item_id)
        self.attempts.setdefault(item_id, AttemptRecord()).last_outcome = SendOutcome.PERMANENT_FAILURE
        self.updated_at = datetime.now(timezone.utc)

    def summary(self) -> DispatchSummary:
        return DispatchSummary(
            success=len(self.succeeded),
            failed=len(self.failed),
            rate_limited=self.rate_limited_count,
            retried=sum(1 for r in self.attempts.values() if r.attempts > 1),
        )
