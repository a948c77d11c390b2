import logging
from typing import Any, Dict, List, Optional

import httpx

from dispatcher.domain.errors import BatchSourceError
from dispatcher.domain.models import StatusAck, StatusReport

logger = logging.getLogger(__name__)

class DispatchApiClient:
    """Client for the Kingslist dispatch API: batch source and status endpoint."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cookies: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            cookies=cookies,
        )

    async def fetch_batch(self, job_id: str) -> List[Dict[str, Any]]:
        """
        Fetches the raw messages of a dispatch batch.
        An empty or missing message list is an error, never an empty success.
        """
        try:
            resp = await self.client.get("/getDispatchBatch.php", params={"dmsg_id": job_id})
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            logger.error("Batch fetch rejected for job=%s status=%s", job_id, e.response.status_code)
            raise BatchSourceError(f"HTTP error! status: {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Batch fetch failed for job=%s: %s", job_id, e)
            raise BatchSourceError(f"Failed to fetch dispatch batch: {e}") from e

        payload = data.get("data") if isinstance(data, dict) else None
        messages = payload.get("messages") if isinstance(payload, dict) else None
        if not messages:
            raise BatchSourceError("No messages available in this batch")

        logger.info("Fetched batch for job=%s with %s messages", job_id, len(messages))
        return messages

    async def update_status(self, report: StatusReport) -> StatusAck:
        resp = await self.client.post(
            "/updateDispatchCount.php",
            json={
                "dmsg_id": report.job_id,
                "dispatch_count": report.processed_count,
                "attempts": report.total_attempts,
                "status": report.status,
                "rate_limited": report.rate_limited_count,
            },
        )
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected status response: {data!r:.200}")
        return StatusAck(success=bool(data.get("success")), error=data.get("error"))

    async def close(self):
        await self.client.aclose()
