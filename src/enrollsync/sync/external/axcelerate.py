"""Async client for the Axcelerate enrollment API.

Only the call the status bridge needs: pushing an enrollment status change.
Authenticates with the ``apitoken``/``wstoken`` header pair and retries
transient failures with the same tenacity policy as the HubSpot client.
"""

from __future__ import annotations

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.enrollsync.sync.errors import ExternalApiError

logger = structlog.get_logger(__name__)

_axcelerate_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


class AxcelerateClient:
    """Axcelerate REST client.

    Args:
        base_url: API base, e.g. https://myorg.app.axcelerate.com/api.
        api_token: Account API token.
        ws_token: Web-service token.
    """

    TIMEOUT_MUTATE = 30.0

    def __init__(self, base_url: str, api_token: str, ws_token: str) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "apitoken": api_token,
            "wstoken": ws_token,
        }

    @property
    def configured(self) -> bool:
        return bool(self._headers["apitoken"] and self._headers["wstoken"])

    @_axcelerate_retry
    async def _put(self, path: str, form: dict[str, str]) -> httpx.Response:
        async with httpx.AsyncClient(headers=self._headers, timeout=self.TIMEOUT_MUTATE) as client:
            return await client.put(f"{self._base_url}{path}", data=form)

    async def update_enrollment_status(self, enrollment_id: str, status: str) -> None:
        """PUT /course/enrolment with the new status.

        Raises:
            ExternalApiError: Not configured, unreachable, or non-2xx response.
        """
        if not self.configured:
            raise ExternalApiError("Axcelerate credentials are not configured")
        try:
            response = await self._put(
                "/course/enrolment",
                {"enrolID": enrollment_id, "status": status},
            )
        except httpx.HTTPError as exc:
            logger.error("axcelerate.unreachable", enrollment_id=enrollment_id, error=str(exc))
            raise ExternalApiError(f"Axcelerate unreachable: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "axcelerate.status_update_failed",
                enrollment_id=enrollment_id,
                status_code=response.status_code,
            )
            raise ExternalApiError(
                f"Axcelerate rejected status update ({response.status_code}): {response.text[:200]}",
                externalStatus=response.status_code,
            )
        logger.info("axcelerate.status_updated", enrollment_id=enrollment_id, status=status)
