import json
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from dispatcher.domain.models import AttemptRecord, DispatchSummary, JobState
from dispatcher.domain.states import JobPhase, SendOutcome
from dispatcher.store.backends import KeyValueBackend

logger = logging.getLogger(__name__)

STATUS_KEY = "dispatch_status_{job_id}"
PROGRESS_KEY = "dispatch_progress_{job_id}"
ANALYTICS_KEY = "dispatch_analytics_{job_id}"

class AttemptSnapshot(BaseModel):
    attempts: int = 0
    last_outcome: SendOutcome = SendOutcome.NONE

class ProgressSnapshot(BaseModel):
    """Serialized JobState. Holds identifiers and counts only, never payloads."""
    job_id: str
    phase: JobPhase
    total: int
    succeeded: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    rate_limited_count: int = 0
    attempts: dict[str, AttemptSnapshot] = Field(default_factory=dict)
    batches_processed: int = 0
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_state(cls, state: JobState) -> "ProgressSnapshot":
        return cls(
            job_id=state.job_id,
            phase=state.phase,
            total=state.total,
            succeeded=sorted(state.succeeded),
            failed=sorted(state.failed),
            rate_limited_count=state.rate_limited_count,
            attempts={
                item_id: AttemptSnapshot(attempts=r.attempts, last_outcome=r.last_outcome)
                for item_id, r in state.attempts.items()
            },
            batches_processed=state.batches_processed,
            updated_at=state.updated_at,
        )

    def to_state(self, item_ids: Optional[set[str]] = None) -> JobState:
        """
        Rebuilds a JobState. When `item_ids` is given (the re-fetched work list),
        identifiers no longer in it are dropped and `total` follows the new list.
        """
        def keep(item_id: str) -> bool:
            return item_ids is None or item_id in item_ids

        return JobState(
            job_id=self.job_id,
            total=len(item_ids) if item_ids is not None else self.total,
            succeeded={i for i in self.succeeded if keep(i)},
            # succeeded wins if a corrupted snapshot lists an id in both
            failed={i for i in self.failed if keep(i) and i not in self.succeeded},
            rate_limited_count=self.rate_limited_count,
            attempts={
                item_id: AttemptRecord(attempts=a.attempts, last_outcome=a.last_outcome)
                for item_id, a in self.attempts.items()
                if keep(item_id)
            },
            phase=self.phase,
            batches_processed=self.batches_processed,
            updated_at=self.updated_at,
        )

class ProgressStore:
    def __init__(self, backend: KeyValueBackend):
        self.backend = backend

    async def save(self, job_id: str, snapshot: ProgressSnapshot):
        await self.backend.set(PROGRESS_KEY.format(job_id=job_id), snapshot.model_dump_json())

    async def load(self, job_id: str) -> Optional[ProgressSnapshot]:
        raw = await self.backend.get(PROGRESS_KEY.format(job_id=job_id))
        if raw is None:
            return None
        try:
            return ProgressSnapshot.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.warning("Discarding unreadable progress snapshot for job %s: %s", job_id, e)
            return None

    async def mark_phase(self, job_id: str, phase: JobPhase):
        await self.backend.set(STATUS_KEY.format(job_id=job_id), str(phase))

    async def load_phase(self, job_id: str) -> Optional[JobPhase]:
        raw = await self.backend.get(STATUS_KEY.format(job_id=job_id))
        if raw is None:
            return None
        try:
            return JobPhase(raw)
        except ValueError:
            logger.warning("Unknown stored phase %r for job %s", raw, job_id)
            return None

    async def is_completed(self, job_id: str) -> bool:
        return await self.load_phase(job_id) == JobPhase.COMPLETED

    async def is_resumable(self, job_id: str) -> bool:
        return await self.load_phase(job_id) in (JobPhase.RUNNING, JobPhase.PAUSED)

    async def save_summary(self, job_id: str, summary: DispatchSummary):
        await self.backend.set(
            ANALYTICS_KEY.format(job_id=job_id),
            json.dumps({
                "success": summary.success,
                "failed": summary.failed,
                "rate_limited": summary.rate_limited,
                "retries": summary.retried,
            }),
        )

    async def load_summary(self, job_id: str) -> Optional[DispatchSummary]:
        raw = await self.backend.get(ANALYTICS_KEY.format(job_id=job_id))
        if raw is None:
            return None
        data = json.loads(raw)
        return DispatchSummary(
            success=data["success"],
            failed=data["failed"],
            rate_limited=data["rate_limited"],
            retried=data["retries"],
        )

    async def clear(self, job_id: str):
        for key in (STATUS_KEY, PROGRESS_KEY, ANALYTICS_KEY):
            await self.backend.remove(key.format(job_id=job_id))
