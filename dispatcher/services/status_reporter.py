import logging
from typing import Protocol

from dispatcher.api.v1.metrics import STATUS_SYNC_TOTAL
from dispatcher.domain.errors import ReportingError
from dispatcher.domain.models import JobState, StatusAck, StatusReport, SyncResult
from dispatcher.domain.states import DispatchStatusCode

logger = logging.getLogger(__name__)

class StatusEndpoint(Protocol):
    async def update_status(self, report: StatusReport) -> StatusAck: ...

def is_complete(state: JobState) -> bool:
    """
    The one definition of "done" shared by every caller.

    Complete when every item succeeded, or when every item reached a
    terminal outcome (success or exhausted retries).
    """
    processed = len(state.succeeded)
    failed = len(state.failed)
    return (processed >= state.total and failed == 0) or (processed + failed >= state.total)

def build_report(state: JobState) -> StatusReport:
    status = DispatchStatusCode.COMPLETE if is_complete(state) else DispatchStatusCode.IN_PROGRESS
    return StatusReport(
        job_id=state.job_id,
        processed_count=len(state.succeeded),
        total_attempts=state.total_attempts,
        status=int(status),
        rate_limited_count=state.rate_limited_count,
    )

class StatusReporter:
    def __init__(self, endpoint: StatusEndpoint):
        self.endpoint = endpoint

    async def sync(self, state: JobState, kind: str = "periodic") -> SyncResult:
        """
        Forwards the job's completion signal to the system of record.
        Raises ReportingError when the endpoint fails, answers garbage or refuses the update;
        callers decide whether that is fatal.
        """
        report = build_report(state)

        try:
            ack = await self.endpoint.update_status(report)
        except Exception as e:
            STATUS_SYNC_TOTAL.labels(kind=kind, result="failure").inc()
            raise ReportingError(state.job_id, str(e)) from e

        if not ack.success:
            STATUS_SYNC_TOTAL.labels(kind=kind, result="failure").inc()
            raise ReportingError(state.job_id, ack.error or "Failed to update status")

        STATUS_SYNC_TOTAL.labels(kind=kind, result="success").inc()
        complete = report.status == DispatchStatusCode.COMPLETE
        logger.info(
            "Status updated for job %s: %s (processed=%s attempts=%s)",
            state.job_id,
            "complete" if complete else "in progress",
            report.processed_count,
            report.total_attempts,
        )
        return SyncResult(success=True, complete=complete)
