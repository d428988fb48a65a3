"""REST API endpoints for the enrollment -> HubSpot sync.

Groups:
- Inbound: enrollment webhook, CRM and external status notifications
- Identity mapping: upsert/read external contact id -> CRM contact id
- OAuth: authorize redirect, callback, explicit refresh
- Operations: connection test, pipelines, ledger inspection and retry,
  status mapping view/reload

Components are read from app.state (populated by the lifespan); a missing
component yields 503. Domain errors become ``{"success": false, "error",
"code", ...}`` with the error's status code; outside production the
triggering payload is echoed back as ``received``.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import AliasChoices, BaseModel, Field

from src.enrollsync.api.deps import verify_webhook_secret
from src.enrollsync.config import get_settings
from src.enrollsync.sync.errors import MissingRequiredField, SyncError, UnknownSyncRecord
from src.enrollsync.sync.schemas import ContactMappingCreate, SyncStatus
from src.enrollsync.sync.status_bridge import extract_stage_changes, is_hubspot_event

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/hubspot", tags=["hubspot"])

_OAUTH_STATE_COOKIE = "hubspot_oauth_state"


# ── Request Schemas ──────────────────────────────────────────────────────────


class MappingRequest(BaseModel):
    """Request body for upserting a contact mapping."""

    external_contact_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("externalContactId", "axcContactId", "external_contact_id"),
    )
    crm_contact_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("crmContactId", "hubspotContactId", "crm_contact_id"),
    )
    email: str | None = None
    first_name: str | None = Field(
        default=None, validation_alias=AliasChoices("firstName", "first_name")
    )
    last_name: str | None = Field(
        default=None, validation_alias=AliasChoices("lastName", "last_name")
    )


class ExternalStatusRequest(BaseModel):
    """Request body for an external (Axcelerate) status change."""

    enrollment_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("enrollmentId", "enrolmentId", "enrollment_id"),
    )
    status: str = Field(min_length=1, validation_alias=AliasChoices("status", "newStatus"))


# ── App State Helpers ────────────────────────────────────────────────────────


def _require_state(request: Request, name: str, label: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return component


def _get_workflow(request: Request) -> Any:
    """Retrieve EnrollmentSyncWorkflow from app.state, 503 if not available."""
    return _require_state(request, "sync_workflow", "Sync workflow")


def _get_ledger(request: Request) -> Any:
    return _require_state(request, "sync_ledger", "Sync ledger")


def _get_mapping_repository(request: Request) -> Any:
    return _require_state(request, "contact_mapping_repository", "Contact mappings")


def _get_status_bridge(request: Request) -> Any:
    return _require_state(request, "status_bridge", "Status bridge")


def _get_token_holder(request: Request) -> Any:
    return _require_state(request, "token_holder", "HubSpot token holder")


def _get_crm_gateway(request: Request) -> Any:
    return _require_state(request, "crm_gateway", "HubSpot client")


def _get_oauth(request: Request) -> Any:
    return _require_state(request, "hubspot_oauth", "HubSpot OAuth")


# ── Response Helpers ─────────────────────────────────────────────────────────


def _error_response(exc: SyncError, received: Any = None) -> JSONResponse:
    content = exc.to_dict()
    if received is not None and not get_settings().is_production:
        content["received"] = received
    return JSONResponse(status_code=exc.status_code, content=content)


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body must be valid JSON",
        ) from exc


# ── Inbound Webhooks ─────────────────────────────────────────────────────────


@router.post("/webhook", dependencies=[Depends(verify_webhook_secret)])
async def enrollment_webhook(request: Request) -> JSONResponse:
    """Receive an enrollment and create the matching CRM deal (idempotent)."""
    workflow = _get_workflow(request)
    payload = await _read_json(request)

    try:
        outcome = await workflow.handle_webhook(payload)
    except SyncError as exc:
        return _error_response(exc, received=payload)

    return JSONResponse(status_code=status.HTTP_200_OK, content=outcome.to_api())


@router.post("/status/crm", dependencies=[Depends(verify_webhook_secret)])
async def crm_stage_changed(request: Request) -> JSONResponse:
    """CRM deal-stage change -> external enrollment status.

    Accepts ``{"dealId", "stage"}`` or a HubSpot webhook event array. For
    arrays, per-event failures are reported in ``results`` with a 200 so
    HubSpot does not redeliver the whole batch.
    """
    bridge = _get_status_bridge(request)
    payload = await _read_json(request)
    changes = extract_stage_changes(payload)

    if isinstance(payload, dict):
        if not changes and is_hubspot_event(payload):
            logger.info("status_bridge.event_ignored", property_name=payload.get("propertyName"))
            return JSONResponse(content={"success": True, "results": []})
        if not changes:
            return _error_response(MissingRequiredField(["dealId", "stage"]), received=payload)
        deal_id, stage = changes[0]
        try:
            result = await bridge.handle_crm_stage_change(deal_id, stage)
        except SyncError as exc:
            return _error_response(exc, received=payload)
        return JSONResponse(content={"success": True, "results": [result]})

    results: list[dict[str, Any]] = []
    for deal_id, stage in changes:
        try:
            results.append(await bridge.handle_crm_stage_change(deal_id, stage))
        except SyncError as exc:
            results.append({"dealId": deal_id, "stage": stage, **exc.to_dict()})
    success = all(r.get("success", True) for r in results)
    return JSONResponse(content={"success": success, "results": results})


@router.post("/status/external", dependencies=[Depends(verify_webhook_secret)])
async def external_status_changed(request: Request) -> JSONResponse:
    """External enrollment status change -> CRM deal status property."""
    bridge = _get_status_bridge(request)
    payload = await _read_json(request)

    try:
        body = ExternalStatusRequest.model_validate(payload)
    except ValueError:
        return _error_response(MissingRequiredField(["enrollmentId", "status"]), received=payload)

    try:
        result = await bridge.handle_external_status_change(body.enrollment_id, body.status)
    except SyncError as exc:
        return _error_response(exc, received=payload)
    return JSONResponse(content={"success": True, **result})


@router.get("/status/mapping")
async def get_status_mapping(request: Request) -> dict:
    bridge = _get_status_bridge(request)
    return {"success": True, "mapping": bridge.mapping.config.model_dump()}


@router.post("/status/mapping/reload")
async def reload_status_mapping(request: Request) -> JSONResponse:
    """Re-read the status mapping file; 400 with the old tables kept if invalid."""
    bridge = _get_status_bridge(request)
    try:
        config = bridge.mapping.reload()
    except (OSError, ValueError) as exc:
        logger.warning("status_mapping.reload_failed", error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": f"Status mapping reload failed: {exc}"},
        )
    return JSONResponse(content={"success": True, "mapping": config.model_dump()})


# ── Contact Mapping ──────────────────────────────────────────────────────────


@router.post("/mapping")
async def upsert_mapping(body: MappingRequest, request: Request) -> dict:
    repo = _get_mapping_repository(request)
    mapping = await repo.upsert(
        ContactMappingCreate(
            external_contact_id=body.external_contact_id,
            crm_contact_id=body.crm_contact_id,
            email=body.email.lower() if body.email else None,
            first_name=body.first_name,
            last_name=body.last_name,
        )
    )
    return {"success": True, "mapping": mapping.to_api()}


@router.get("/mapping/{external_contact_id}")
async def get_mapping(external_contact_id: str, request: Request) -> JSONResponse:
    repo = _get_mapping_repository(request)
    mapping = await repo.get(external_contact_id)
    if mapping is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={
                "success": False,
                "error": f"No mapping for external contact id {external_contact_id}",
                "code": "unmapped_contact",
            },
        )
    return JSONResponse(content={"success": True, "mapping": mapping.to_api()})


# ── OAuth ────────────────────────────────────────────────────────────────────


@router.get("/oauth/authorize")
async def oauth_authorize(request: Request) -> RedirectResponse:
    """Redirect the operator to HubSpot's consent screen."""
    oauth = _get_oauth(request)
    if not oauth.configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="HUBSPOT_CLIENT_ID / HUBSPOT_CLIENT_SECRET are not configured",
        )
    url, state = oauth.authorization_url()
    response = RedirectResponse(url=url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    response.set_cookie(
        _OAUTH_STATE_COOKIE,
        state,
        max_age=600,
        httponly=True,
        secure=get_settings().is_production,
        samesite="lax",
    )
    return response


@router.get("/oauth/callback")
async def oauth_callback(
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> JSONResponse:
    """Exchange the authorization code and persist the token."""
    tokens = _get_token_holder(request)

    if error or not code:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": error or "Missing authorization code"},
        )
    expected_state = request.cookies.get(_OAUTH_STATE_COOKIE)
    if expected_state and state != expected_state:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "OAuth state mismatch"},
        )

    try:
        token = await tokens.exchange_code(code)
    except SyncError as exc:
        return _error_response(exc)

    logger.info("oauth.connected", expires_in=token.expires_in())
    response = JSONResponse(
        content={
            "success": True,
            "message": "OAuth connection successful!",
            "accessToken": token.masked(),
            "expiresIn": token.expires_in(),
        }
    )
    response.delete_cookie(_OAUTH_STATE_COOKIE)
    return response


@router.post("/oauth/refresh")
async def oauth_refresh(request: Request) -> JSONResponse:
    tokens = _get_token_holder(request)
    try:
        token = await tokens.refresh()
    except SyncError as exc:
        return _error_response(exc)
    return JSONResponse(
        content={
            "success": True,
            "message": "Token refreshed",
            "accessToken": token.masked(),
            "expiresIn": token.expires_in(),
        }
    )


# ── Operations ───────────────────────────────────────────────────────────────


@router.get("/test-connection")
async def test_connection(request: Request) -> JSONResponse:
    gateway = _get_crm_gateway(request)
    try:
        count = await gateway.test_connection()
    except SyncError as exc:
        return _error_response(exc)
    return JSONResponse(
        content={
            "success": True,
            "message": "HubSpot connection successful",
            "contactsCount": count,
        }
    )


@router.get("/pipelines")
async def list_pipelines(request: Request) -> JSONResponse:
    gateway = _get_crm_gateway(request)
    try:
        pipelines = await gateway.get_pipelines()
    except SyncError as exc:
        return _error_response(exc)
    return JSONResponse(content={"success": True, "pipelines": pipelines})


@router.get("/sync/records")
async def list_sync_records(
    request: Request,
    status_filter: SyncStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
) -> dict:
    ledger = _get_ledger(request)
    records = await ledger.list_records(status=status_filter, limit=limit)
    return {"success": True, "records": [r.to_api() for r in records]}


@router.get("/sync/records/{enrollment_id}")
async def get_sync_record(enrollment_id: str, request: Request) -> JSONResponse:
    ledger = _get_ledger(request)
    record = await ledger.find_by_enrollment_id(enrollment_id)
    if record is None:
        return _error_response(
            UnknownSyncRecord(f"No sync record for enrollment {enrollment_id}", enrollmentId=enrollment_id)
        )
    return JSONResponse(content={"success": True, "record": record.to_api()})


@router.post("/sync/records/{enrollment_id}/retry")
async def retry_sync_record(enrollment_id: str, request: Request) -> JSONResponse:
    """Replay a failed enrollment from its stored snapshot."""
    workflow = _get_workflow(request)
    try:
        outcome = await workflow.retry(enrollment_id)
    except SyncError as exc:
        return _error_response(exc)
    return JSONResponse(content=outcome.to_api())
