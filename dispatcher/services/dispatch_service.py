import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

from dispatcher.domain.errors import (
    DispatchError,
    JobAlreadyCompletedError,
    ReentrancyError,
    ValidationError,
)
from dispatcher.domain.models import DispatchConfig, JobState
from dispatcher.domain.templating import prepare_items
from dispatcher.engine.dispatch import DispatchEngine, Sender
from dispatcher.store.progress import ProgressStore

logger = logging.getLogger(__name__)

class BatchSource(Protocol):
    async def fetch_batch(self, job_id: str) -> list[dict[str, Any]]: ...

SenderFactory = Callable[[str], Sender]

class DispatchService:
    """
    Starts dispatch runs in the background: fetch batch, render messages,
    hand them to the engine. Also the entry point for resuming a job whose
    previous process stopped mid-run.
    """

    def __init__(
        self,
        engine: DispatchEngine,
        store: ProgressStore,
        batch_source: BatchSource,
        sender_factory: SenderFactory,
        config: DispatchConfig,
        default_access_token: Optional[str] = None,
    ):
        self.engine = engine
        self.store = store
        self.batch_source = batch_source
        self.sender_factory = sender_factory
        self.config = config
        self.default_access_token = default_access_token
        self.last_errors: dict[str, str] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return (task is not None and not task.done()) or self.engine.is_active(job_id)

    async def start(self, job_id: str, access_token: Optional[str] = None) -> asyncio.Task:
        if not job_id:
            raise ValidationError("job_id is required")
        if self.is_running(job_id):
            raise ReentrancyError(job_id)
        if await self.store.is_completed(job_id):
            raise JobAlreadyCompletedError(job_id)

        access_token = access_token or self.default_access_token
        if not access_token:
            raise ValidationError("An access token is required to send messages")

        messages = await self.batch_source.fetch_batch(job_id)
        items = prepare_items(messages)
        self.engine.activity.info(f"Prepared {len(items)} messages for job {job_id}")

        # Fetching awaited; another start may have won the race meanwhile.
        if self.is_running(job_id):
            raise ReentrancyError(job_id)

        sender = self.sender_factory(access_token)
        self.last_errors.pop(job_id, None)
        task = asyncio.create_task(self._run(job_id, items, sender))
        self._tasks[job_id] = task
        # Let the engine register the job before callers query it
        await asyncio.sleep(0)
        return task

    async def resume_if_interrupted(self, job_id: str, access_token: Optional[str] = None) -> bool:
        if self.is_running(job_id) or not await self.store.is_resumable(job_id):
            return False
        logger.info("Resuming interrupted dispatch for job %s", job_id)
        await self.start(job_id, access_token)
        return True

    async def wait(self, job_id: str) -> Optional[JobState]:
        task = self._tasks.get(job_id)
        if task is None:
            return None
        return await task

    async def _run(self, job_id: str, items, sender) -> Optional[JobState]:
        try:
            return await self.engine.dispatch(job_id, items, self.config, sender)
        except DispatchError as e:
            logger.error("Dispatch for job %s failed: %s", job_id, e)
            self.engine.activity.error(f"Dispatch error: {e}")
            self.last_errors[job_id] = str(e)
            return getattr(e, "state", None)
        finally:
            if self._tasks.get(job_id) is asyncio.current_task():
                del self._tasks[job_id]
            close = getattr(sender, "close", None)
            if close:
                await close()

    async def clear(self, job_id: str):
        if self.is_running(job_id):
            raise ReentrancyError(job_id)
        await self.store.clear(job_id)
        self.last_errors.pop(job_id, None)

    async def shutdown(self):
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Dispatch service stopped (%s runs interrupted).", len(tasks))
