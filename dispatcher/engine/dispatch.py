import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

from dispatcher.api.v1.metrics import JOBS_ACTIVE, MESSAGES_TOTAL, RATE_LIMITED_TOTAL, SEND_DELAY
from dispatcher.domain.errors import (
    CancellationError,
    JobAlreadyCompletedError,
    JobNotFoundError,
    ReentrancyError,
    ReportingError,
    RetriableSendError,
    ValidationError,
)
from dispatcher.domain.models import DispatchConfig, Item, JobState, SendResult
from dispatcher.domain.retry import BackoffPolicy
from dispatcher.domain.states import JobPhase
from dispatcher.engine.cancellation import CancellationToken
from dispatcher.services.activity_log import ActivityLog
from dispatcher.services.status_reporter import StatusReporter
from dispatcher.store.progress import ProgressSnapshot, ProgressStore

logger = logging.getLogger(__name__)

class Sender(Protocol):
    async def send(self, item: Item, token: CancellationToken) -> SendResult: ...

@dataclass
class _JobRun:
    state: JobState
    token: CancellationToken
    # Set while the job may proceed, cleared while paused
    resumed: asyncio.Event = field(default_factory=asyncio.Event)
    # Past the item loop; the phase is terminal and control calls no longer apply
    finishing: bool = False

def _consume_result(task: asyncio.Task):
    # Abandoned sends may still fail later; retrieve the outcome so it is not reported as lost.
    if not task.cancelled():
        task.exception()

class DispatchEngine:
    """
    Drives one job's items through a Sender with batching, backoff and retries.

    Each job runs as a single task that owns its JobState; every state
    transition happens on that task, so concurrent callers only ever touch
    the pause flag and the cancellation token.
    """

    def __init__(
        self,
        store: ProgressStore,
        reporter: StatusReporter,
        activity: Optional[ActivityLog] = None,
    ):
        self.store = store
        self.reporter = reporter
        self.activity = activity or ActivityLog()
        self._active: dict[str, _JobRun] = {}

    # --- Control -----------------------------------------------------------

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    def active_jobs(self) -> list[str]:
        return list(self._active)

    def get_state(self, job_id: str) -> Optional[JobState]:
        run = self._active.get(job_id)
        return run.state if run else None

    def pause(self, job_id: str):
        run = self._get_run(job_id)
        run.resumed.clear()
        run.state.phase = JobPhase.PAUSED
        self.activity.warning(f"Dispatch {job_id} paused")

    def resume(self, job_id: str):
        run = self._get_run(job_id)
        run.state.phase = JobPhase.RUNNING
        run.resumed.set()
        self.activity.info(f"Dispatch {job_id} resumed")

    def cancel(self, job_id: str, reason: str = "Cancelled by operator"):
        run = self._get_run(job_id)
        self.activity.warning(f"Dispatch {job_id} cancellation requested")
        run.token.cancel(reason)

    def _get_run(self, job_id: str) -> _JobRun:
        run = self._active.get(job_id)
        if not run or run.finishing:
            raise JobNotFoundError(job_id)
        return run

    # --- Dispatch ----------------------------------------------------------

    async def dispatch(
        self,
        job_id: str,
        items: Sequence[Item],
        config: DispatchConfig,
        sender: Sender,
        token: Optional[CancellationToken] = None,
    ) -> JobState:
        """
        Sends every item not yet recorded as succeeded or failed and returns
        the terminal JobState.

        Raises:
            ValidationError: missing job id or empty item list.
            ReentrancyError: a run for `job_id` is already running or paused.
            JobAlreadyCompletedError: the store marks the job completed.
            ReportingError: the final status report failed (dispatch itself finished).
        """
        if not job_id:
            raise ValidationError("job_id is required")
        if not items:
            raise ValidationError(f"No messages available for dispatch of job {job_id}")

        # No await between the check and the insert: this is the re-entrancy guard.
        if job_id in self._active:
            raise ReentrancyError(job_id)

        items = self._unique(job_id, items)
        run = _JobRun(
            state=JobState(job_id=job_id, total=len(items)),
            token=token or CancellationToken(),
        )
        run.resumed.set()
        self._active[job_id] = run
        JOBS_ACTIVE.inc()

        try:
            if await self.store.is_completed(job_id):
                raise JobAlreadyCompletedError(job_id)

            snapshot = await self.store.load(job_id)
            if snapshot:
                run.state = snapshot.to_state({item.item_id for item in items})
                self.activity.info(
                    f"Resuming job {job_id}: {len(run.state.succeeded)} succeeded, "
                    f"{len(run.state.failed)} failed of {run.state.total}"
                )
            else:
                self.activity.info(f"Starting dispatch for job {job_id} with {len(items)} messages")

            # pause() may have been called while the snapshot was loading
            run.state.phase = JobPhase.RUNNING if run.resumed.is_set() else JobPhase.PAUSED
            await self.store.mark_phase(job_id, JobPhase.RUNNING)

            return await self._run(run, items, config, sender)
        finally:
            del self._active[job_id]
            JOBS_ACTIVE.dec()

    def _unique(self, job_id: str, items: Sequence[Item]) -> list[Item]:
        seen = set()
        unique = []
        for item in items:
            if item.item_id in seen:
                continue
            seen.add(item.item_id)
            unique.append(item)
        if len(unique) != len(items):
            self.activity.warning(
                f"Job {job_id}: dropped {len(items) - len(unique)} duplicate recipients"
            )
        return unique

    async def _run(self, run: _JobRun, items: list[Item], config: DispatchConfig, sender: Sender) -> JobState:
        state = run.state
        policy = BackoffPolicy.from_config(config)

        # Set membership is the only deduplication authority
        pending = deque(item for item in items if not state.is_settled(item.item_id))

        try:
            while pending:
                await self._wait_if_paused(run)

                batch = [pending.popleft() for _ in range(min(config.batch_size, len(pending)))]
                retries = []

                for item in batch:
                    if state.is_settled(item.item_id):
                        continue
                    if state.attempts_for(item.item_id) >= config.max_attempts:
                        # Restored from a snapshot taken between a send and its bookkeeping
                        state.mark_failed(item.item_id)
                        continue

                    await self._wait_if_paused(run)
                    delay = policy.delay(state.attempts_for(item.item_id))
                    SEND_DELAY.observe(delay)
                    await run.token.sleep(delay)
                    await self._wait_if_paused(run)

                    if self._attempt(state, item, await self._send_once(run, sender, item), config):
                        retries.append(item)

                # Failed items go ahead of untouched ones, in their original order
                pending.extendleft(reversed(retries))

                state.batches_processed += 1
                await self._persist(state)

                if state.batches_processed % config.sync_every_batches == 0:
                    await self._periodic_sync(state)

            state.phase = JobPhase.COMPLETED

        except CancellationError as e:
            state.phase = JobPhase.CANCELLED
            self.activity.warning(f"Dispatch {state.job_id} cancelled: {e}")

        except asyncio.CancelledError:
            # Task torn down (e.g. shutdown). Keep the stored marker non-terminal
            # so the job is picked up again after a restart.
            state.phase = JobPhase.CANCELLED
            logger.warning("Dispatch task for job %s interrupted", state.job_id)
            run.finishing = True
            await self._persist(state)
            raise

        run.finishing = True
        return await self._finish(state)

    async def _send_once(self, run: _JobRun, sender: Sender, item: Item) -> SendResult:
        state = run.state
        attempt = state.record_attempt(item.item_id)
        self.activity.info(f"Sending to {item.recipient} (attempt {attempt})")

        try:
            return await self._send(sender, item, run.token)
        except RetriableSendError as e:
            return SendResult(accepted=False, rate_limited=e.rate_limited, error_detail=e.detail)
        except CancellationError:
            raise
        except Exception as e:
            logger.warning("Sender raised for %s: %s", item.recipient, e, exc_info=True)
            return SendResult(accepted=False, error_detail=f"{type(e).__name__}: {e}")

    async def _send(self, sender: Sender, item: Item, token: CancellationToken) -> SendResult:
        """Runs one send, abandoning it if the token fires first."""
        token.raise_if_cancelled()

        send_task = asyncio.ensure_future(sender.send(item, token))
        cancel_wait = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({send_task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            if not send_task.done():
                send_task.cancel()
                send_task.add_done_callback(_consume_result)

        if send_task not in done:
            raise CancellationError(token.reason or "Cancelled during send")
        if send_task.cancelled():
            raise CancellationError("Send was cancelled")
        return send_task.result()

    def _attempt(self, state: JobState, item: Item, result: SendResult, config: DispatchConfig) -> bool:
        """Applies one send outcome. Returns True when the item should be retried."""
        item_id = item.item_id

        if result.accepted:
            state.mark_succeeded(item_id)
            MESSAGES_TOTAL.labels(result="success").inc()
            self.activity.success(f"Successfully sent to {item.recipient}")
            return False

        state.mark_retriable(item_id, rate_limited=result.rate_limited)
        detail = result.error_detail or "unknown error"
        if result.rate_limited:
            RATE_LIMITED_TOTAL.inc()
            MESSAGES_TOTAL.labels(result="rate_limited").inc()
            self.activity.warning(f"Rate limited sending to {item.recipient}: {detail}")
        else:
            MESSAGES_TOTAL.labels(result="retriable").inc()
            self.activity.error(f"Error sending to {item.recipient}: {detail}")

        if state.attempts_for(item_id) < config.max_attempts:
            return True

        state.mark_failed(item_id)
        MESSAGES_TOTAL.labels(result="failed").inc()
        self.activity.error(f"Max retries reached for {item.recipient}")
        return False

    async def _wait_if_paused(self, run: _JobRun):
        run.token.raise_if_cancelled()
        if run.resumed.is_set():
            return

        state = run.state
        logger.info(f"Job {state.job_id} suspended at safe point")
        await self._persist(state)
        await self.store.mark_phase(state.job_id, JobPhase.PAUSED)

        resumed_wait = asyncio.ensure_future(run.resumed.wait())
        cancel_wait = asyncio.ensure_future(run.token.wait())
        try:
            await asyncio.wait({resumed_wait, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            resumed_wait.cancel()
            cancel_wait.cancel()

        run.token.raise_if_cancelled()
        state.phase = JobPhase.RUNNING
        await self.store.mark_phase(state.job_id, JobPhase.RUNNING)

    async def _periodic_sync(self, state: JobState):
        try:
            await self.reporter.sync(state, kind="periodic")
        except ReportingError as e:
            logger.warning("Periodic status update failed for job %s: %s", state.job_id, e.detail)
            self.activity.error(f"Periodic status update failed: {e.detail}")

    async def _persist(self, state: JobState):
        await self.store.save(state.job_id, ProgressSnapshot.from_state(state))

    async def _finish(self, state: JobState) -> JobState:
        phase = state.phase
        await self._persist(state)
        if phase == JobPhase.CANCELLED:
            await self.store.mark_phase(state.job_id, JobPhase.CANCELLED)

        try:
            await self.reporter.sync(state, kind="final")
        except ReportingError as e:
            e.state = state
            logger.error("Final status update failed for job %s: %s", state.job_id, e.detail)
            self.activity.error(f"Final status update failed: {e.detail}")
            raise

        if phase == JobPhase.COMPLETED:
            summary = state.summary()
            await self.store.mark_phase(state.job_id, JobPhase.COMPLETED)
            await self.store.save_summary(state.job_id, summary)
            message = f"Dispatch completed: {summary.success} success, {summary.failed} failed"
            if summary.failed:
                self.activity.warning(message)
            else:
                self.activity.success(message)

        return state
