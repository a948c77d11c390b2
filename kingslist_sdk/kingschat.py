import logging
from typing import Optional

import httpx

from dispatcher.domain.errors import RetriableSendError
from dispatcher.domain.models import Item, SendResult

logger = logging.getLogger(__name__)

class KingsChatSender:
    """
    Sends chat messages through the KingsChat API.

    Safe to call repeatedly for the same item. Cancellation is delivered by
    cancelling the awaiting task, which httpx honours mid-request.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://connect.kingsch.at",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not access_token:
            raise ValueError("access_token is required")
        self.access_token = access_token
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def send(self, item: Item, token=None) -> SendResult:
        logger.debug("Sending message to %s: %s...", item.recipient, item.body[:50])
        try:
            resp = await self.client.post(
                f"/api/users/{item.recipient}/new_message",
                json={"message": {"body": {"text": {"body": item.body}}}},
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except httpx.TransportError as e:
            raise RetriableSendError(f"{type(e).__name__}: {e}") from e

        if resp.is_success:
            return SendResult(accepted=True)

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            detail = "HTTP 429 Too Many Requests"
            if retry_after:
                detail += f" (retry after {retry_after}s)"
            return SendResult(accepted=False, rate_limited=True, error_detail=detail)

        log_fn = logger.warning if resp.status_code in (401, 403) else logger.info
        log_fn("Send to %s rejected with status=%s", item.recipient, resp.status_code)
        return SendResult(accepted=False, error_detail=f"HTTP {resp.status_code}: {resp.text[:200]}")

    async def close(self):
        await self.client.aclose()
