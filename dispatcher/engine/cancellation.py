import asyncio

from dispatcher.domain.errors import CancellationError

class CancellationToken:
    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self):
        await self._event.wait()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise CancellationError(self.reason or "Cancelled")

    async def sleep(self, delay: float):
        """Sleeps for `delay` seconds, raising CancellationError as soon as the token fires."""
        self.raise_if_cancelled()
        if delay <= 0:
            await asyncio.sleep(0)
        else:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        self.raise_if_cancelled()
