"""Async HTTP client for the HubSpot CRM REST API.

Implements CRMGateway over the v3 objects API (contacts, deals, pipelines)
and the v4 associations API. Each call reads its bearer token from the
TokenHolder at call time, so a refresh takes effect on the next request.

Transient failures (429, 5xx, connect errors, timeouts) are retried with
tenacity, 3 attempts, exponential backoff 1-10s. Contact and deal creation
are only resent after a 429 or a failure to connect, since a timed-out or
5xx create may already exist in HubSpot. After retries, and for
every other non-2xx status, errors are translated: 401 -> AuthError,
anything else -> CrmApiError carrying HubSpot's own message.
"""

from __future__ import annotations

import re
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.enrollsync.core.monitoring import crm_api_requests_total
from src.enrollsync.sync.crm.gateway import CRMGateway
from src.enrollsync.sync.crm.token import TokenHolder
from src.enrollsync.sync.errors import AuthError, CrmApiError

logger = structlog.get_logger(__name__)

_EXISTING_ID = re.compile(r"Existing ID:\s*(\d+)")


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return isinstance(exc, (httpx.ConnectError, httpx.TimeoutException))


def _never_reached_hubspot(exc: BaseException) -> bool:
    """Failures where HubSpot cannot have acted on the request."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429
    return isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout))


_hubspot_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)

# Creates are not idempotent: a read timeout or 5xx may still have created the object
_hubspot_create_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_never_reached_hubspot),
    reraise=True,
)


def _error_message(response: httpx.Response) -> str:
    """Extract HubSpot's error text: ``message`` plus any ``errors[].message``."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if not isinstance(body, dict):
        return str(body)
    message = body.get("message") or f"HTTP {response.status_code}"
    details = [e.get("message") for e in body.get("errors", []) if isinstance(e, dict) and e.get("message")]
    if details:
        message = f"{message} ({'; '.join(details)})"
    return message


class HubSpotClient(CRMGateway):
    """HubSpot implementation of CRMGateway.

    Args:
        tokens: TokenHolder supplying the bearer token.
        base_url: API base, default https://api.hubapi.com.
    """

    # Timeouts per operation type
    TIMEOUT_MUTATE = 30.0  # create/update/associate
    TIMEOUT_READ = 10.0    # search/get

    def __init__(self, tokens: TokenHolder, base_url: str = "https://api.hubapi.com") -> None:
        self._tokens = tokens
        self._base_url = base_url.rstrip("/")

    def _client(self, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client with the current bearer token."""
        return httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {self._tokens.get()}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    async def _request(self, method: str, url: str, timeout: float, **kwargs: Any) -> httpx.Response:
        async with self._client(timeout) as client:
            response = await getattr(client, method)(url, **kwargs)
        if response.status_code == 429 or response.status_code >= 500:
            response.raise_for_status()
        return response

    @_hubspot_retry
    async def _send(self, method: str, url: str, timeout: float, **kwargs: Any) -> httpx.Response:
        return await self._request(method, url, timeout, **kwargs)

    @_hubspot_create_retry
    async def _send_create(self, method: str, url: str, timeout: float, **kwargs: Any) -> httpx.Response:
        return await self._request(method, url, timeout, **kwargs)

    async def _call(
        self,
        operation: str,
        method: str,
        path: str,
        timeout: float,
        creates: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and translate failures into domain errors.

        ``creates`` marks a non-idempotent POST; it is only resent when the
        request never reached HubSpot.
        """
        url = f"{self._base_url}{path}"
        send = self._send_create if creates else self._send
        try:
            response = await send(method, url, timeout, **kwargs)
        except httpx.HTTPStatusError as exc:
            crm_api_requests_total.labels(operation=operation, status=str(exc.response.status_code)).inc()
            logger.error(
                "hubspot.request_failed",
                operation=operation,
                status_code=exc.response.status_code,
            )
            raise CrmApiError(
                _error_message(exc.response),
                crm_status=exc.response.status_code,
                operation=operation,
            ) from exc
        except httpx.HTTPError as exc:
            crm_api_requests_total.labels(operation=operation, status="network_error").inc()
            logger.error("hubspot.unreachable", operation=operation, error=str(exc))
            raise CrmApiError(f"HubSpot unreachable: {exc}", operation=operation) from exc

        crm_api_requests_total.labels(operation=operation, status=str(response.status_code)).inc()
        if response.status_code == 401:
            logger.warning("hubspot.unauthorized", operation=operation)
            raise AuthError(f"HubSpot rejected the access token: {_error_message(response)}")
        return response

    @staticmethod
    def _raise_for_error(response: httpx.Response, operation: str) -> None:
        if response.status_code >= 400:
            raise CrmApiError(
                _error_message(response),
                crm_status=response.status_code,
                operation=operation,
            )

    # ── Contacts ────────────────────────────────────────────────────────────

    async def search_contact_by_email(self, email: str) -> str | None:
        """POST /crm/v3/objects/contacts/search with an exact email filter."""
        response = await self._call(
            "contact_search",
            "post",
            "/crm/v3/objects/contacts/search",
            self.TIMEOUT_READ,
            json={
                "filterGroups": [
                    {"filters": [{"propertyName": "email", "operator": "EQ", "value": email}]}
                ],
                "properties": ["email", "firstname", "lastname"],
                "limit": 1,
            },
        )
        self._raise_for_error(response, "contact_search")
        results = response.json().get("results") or []
        if not results:
            return None
        contact_id = str(results[0]["id"])
        logger.debug("hubspot.contact_found", contact_id=contact_id)
        return contact_id

    async def create_contact(
        self, email: str, first_name: str | None = None, last_name: str | None = None
    ) -> str:
        """POST /crm/v3/objects/contacts.

        A 409 "Contact already exists. Existing ID: N" (search index lag)
        resolves to the existing id instead of failing.
        """
        response = await self._call(
            "contact_create",
            "post",
            "/crm/v3/objects/contacts",
            self.TIMEOUT_MUTATE,
            creates=True,
            json={
                "properties": {
                    "email": email,
                    "firstname": first_name or "Unknown",
                    "lastname": last_name or "User",
                }
            },
        )
        if response.status_code == 409:
            match = _EXISTING_ID.search(_error_message(response))
            if match:
                logger.info("hubspot.contact_exists", contact_id=match.group(1))
                return match.group(1)
        self._raise_for_error(response, "contact_create")
        contact_id = str(response.json()["id"])
        logger.info("hubspot.contact_created", contact_id=contact_id)
        return contact_id

    # ── Deals ───────────────────────────────────────────────────────────────

    async def create_deal(self, properties: dict[str, str]) -> str:
        """POST /crm/v3/objects/deals."""
        response = await self._call(
            "deal_create",
            "post",
            "/crm/v3/objects/deals",
            self.TIMEOUT_MUTATE,
            creates=True,
            json={"properties": properties},
        )
        self._raise_for_error(response, "deal_create")
        deal_id = str(response.json()["id"])
        logger.info("hubspot.deal_created", deal_id=deal_id)
        return deal_id

    async def associate_deal_contact(self, deal_id: str, contact_id: str) -> None:
        """PUT /crm/v4/objects/deals/{deal}/associations/default/contacts/{contact}."""
        response = await self._call(
            "deal_associate",
            "put",
            f"/crm/v4/objects/deals/{deal_id}/associations/default/contacts/{contact_id}",
            self.TIMEOUT_MUTATE,
        )
        self._raise_for_error(response, "deal_associate")

    async def update_deal(self, deal_id: str, properties: dict[str, str]) -> None:
        """PATCH /crm/v3/objects/deals/{deal_id}."""
        response = await self._call(
            "deal_update",
            "patch",
            f"/crm/v3/objects/deals/{deal_id}",
            self.TIMEOUT_MUTATE,
            json={"properties": properties},
        )
        self._raise_for_error(response, "deal_update")
        logger.info("hubspot.deal_updated", deal_id=deal_id, properties=sorted(properties))

    # ── Account ─────────────────────────────────────────────────────────────

    async def get_pipelines(self) -> list[dict[str, Any]]:
        """GET /crm/v3/pipelines/deals, summarized to ids, labels and stages."""
        response = await self._call(
            "pipelines",
            "get",
            "/crm/v3/pipelines/deals",
            self.TIMEOUT_READ,
        )
        self._raise_for_error(response, "pipelines")
        pipelines = []
        for pipeline in response.json().get("results", []):
            pipelines.append(
                {
                    "id": pipeline.get("id"),
                    "label": pipeline.get("label"),
                    "stages": [
                        {
                            "id": stage.get("id"),
                            "label": stage.get("label"),
                            "displayOrder": stage.get("displayOrder"),
                        }
                        for stage in sorted(
                            pipeline.get("stages", []),
                            key=lambda s: s.get("displayOrder", 0),
                        )
                    ],
                }
            )
        return pipelines

    async def test_connection(self) -> int:
        """GET /crm/v3/objects/contacts?limit=1; returns the number of contacts returned."""
        response = await self._call(
            "test_connection",
            "get",
            "/crm/v3/objects/contacts",
            self.TIMEOUT_READ,
            params={"limit": 1},
        )
        self._raise_for_error(response, "test_connection")
        return len(response.json().get("results", []))
