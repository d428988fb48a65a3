"""Status bridge -- keeps CRM deal stages and external enrollment statuses in step.

The two vocabularies are mapped by data, not code: a JSON document
validated as StatusMappingConfig, shipped as ``status_mapping.json`` and
overridable with STATUS_MAPPING_PATH. ``StatusMapping.reload()`` re-reads
the file so operators can adjust tables without a deploy.

All lookups are case-insensitive and total: unknown input maps to the
configured default and logs a warning.

Directions:
- CRM -> external: deal id -> ledger -> enrollment id -> Axcelerate update
- external -> CRM: enrollment id -> ledger -> deal id -> PATCH status
  property only; ``dealstage`` is never written from this direction
"""

from __future__ import annotations

import json
from importlib import resources
from pathlib import Path
from typing import Any

import structlog

from src.enrollsync.core.monitoring import status_bridge_total
from src.enrollsync.sync.crm.gateway import CRMGateway
from src.enrollsync.sync.errors import UnknownSyncRecord
from src.enrollsync.sync.external.axcelerate import AxcelerateClient
from src.enrollsync.sync.ledger import SyncLedger
from src.enrollsync.sync.schemas import StatusMappingConfig

logger = structlog.get_logger(__name__)


# ── Mapping Tables ──────────────────────────────────────────────────────────


def _load_default_config() -> StatusMappingConfig:
    text = resources.files("src.enrollsync.sync").joinpath("status_mapping.json").read_text("utf-8")
    return StatusMappingConfig.model_validate(json.loads(text))


def _load_config(path: str | None) -> StatusMappingConfig:
    if not path:
        return _load_default_config()
    return StatusMappingConfig.model_validate(json.loads(Path(path).read_text("utf-8")))


class StatusMapping:
    """Reloadable bidirectional stage/status tables.

    Args:
        path: Optional JSON file overriding the packaged defaults.
        config: Explicit configuration (takes precedence over ``path``).
    """

    def __init__(self, path: str | None = None, config: StatusMappingConfig | None = None) -> None:
        self._path = path
        self._config = config or _load_config(path)

    @property
    def config(self) -> StatusMappingConfig:
        return self._config

    def reload(self) -> StatusMappingConfig:
        """Re-read the mapping file; the old tables stay in place if it is invalid."""
        self._config = _load_config(self._path)
        logger.info("status_mapping.reloaded", path=self._path or "<packaged>")
        return self._config

    @staticmethod
    def _lookup(table: dict[str, str], key: str | None, default: str, kind: str) -> str:
        normalized = (key or "").strip().lower()
        value = table.get(normalized)
        if value is None:
            logger.warning("status_mapping.unknown_value", kind=kind, value=key, default=default)
            return default
        return value

    def crm_stage_to_external_status(self, stage: str | None) -> str:
        return self._lookup(
            self._config.crm_stage_to_external_status,
            stage,
            self._config.external_status_default,
            "crm_stage",
        )

    def external_status_to_crm_stage(self, status: str | None) -> str:
        """Suggested deal stage for an external status (informational)."""
        return self._lookup(
            self._config.external_status_to_crm_stage,
            status,
            self._config.crm_stage_default,
            "external_status",
        )

    def external_status_to_crm_status(self, status: str | None) -> str:
        """Value written to the CRM's enrollment status property."""
        return self._lookup(
            self._config.external_status_to_crm_status,
            status,
            self._config.crm_status_default,
            "external_status",
        )


# ── Bridge ──────────────────────────────────────────────────────────────────


def extract_stage_changes(payload: Any) -> list[tuple[str, str]]:
    """Pull (deal_id, stage) pairs from a stage-change notification.

    Accepts ``{"dealId", "stage"}`` (``dealstage`` also accepted), a single
    HubSpot webhook event, or an array of them; events other than a
    ``dealstage`` property change are skipped.
    """
    if isinstance(payload, dict):
        if is_hubspot_event(payload):
            change = _event_stage_change(payload)
            return [change] if change else []
        deal_id = payload.get("dealId")
        stage = payload.get("stage") or payload.get("dealstage")
        if deal_id and stage:
            return [(str(deal_id), str(stage))]
        return []

    changes: list[tuple[str, str]] = []
    if isinstance(payload, list):
        for event in payload:
            if not isinstance(event, dict):
                continue
            change = _event_stage_change(event)
            if change:
                changes.append(change)
    return changes


def is_hubspot_event(payload: dict[str, Any]) -> bool:
    return any(key in payload for key in ("objectId", "propertyName", "propertyValue", "subscriptionType"))


def _event_stage_change(event: dict[str, Any]) -> tuple[str, str] | None:
    if event.get("propertyName") != "dealstage":
        return None
    if event.get("subscriptionType", "deal.propertyChange") != "deal.propertyChange":
        return None
    if event.get("objectId") is None or event.get("propertyValue") is None:
        return None
    return str(event["objectId"]), str(event["propertyValue"])


class StatusBridge:
    """Drives status updates into whichever system did not originate the change.

    Args:
        mapping: Stage/status tables.
        ledger: Sync ledger for deal id <-> enrollment id lookup.
        gateway: CRM gateway (external -> CRM direction).
        external: Axcelerate client (CRM -> external direction).
        status_property: CRM deal property holding the enrollment status.
    """

    def __init__(
        self,
        mapping: StatusMapping,
        ledger: SyncLedger,
        gateway: CRMGateway,
        external: AxcelerateClient,
        status_property: str = "enrollment_status",
    ) -> None:
        self.mapping = mapping
        self._ledger = ledger
        self._gateway = gateway
        self._external = external
        self._status_property = status_property

    async def handle_crm_stage_change(self, deal_id: str, stage: str) -> dict[str, Any]:
        """Push a CRM stage change to the external system.

        Raises:
            UnknownSyncRecord: No ledger record for ``deal_id``.
            ExternalApiError: The external update failed.
        """
        record = await self._ledger.find_by_deal_id(deal_id)
        if record is None or record.enrollment_id is None:
            status_bridge_total.labels(direction="crm_to_external", result="unknown").inc()
            raise UnknownSyncRecord(f"No sync record for deal {deal_id}", dealId=deal_id)

        external_status = self.mapping.crm_stage_to_external_status(stage)
        try:
            await self._external.update_enrollment_status(record.enrollment_id, external_status)
        except Exception:
            status_bridge_total.labels(direction="crm_to_external", result="error").inc()
            raise
        await self._ledger.record_enrollment_status(record.enrollment_id, external_status)
        status_bridge_total.labels(direction="crm_to_external", result="ok").inc()

        logger.info(
            "status_bridge.crm_to_external",
            deal_id=deal_id,
            enrollment_id=record.enrollment_id,
            stage=stage,
            external_status=external_status,
        )
        return {
            "dealId": deal_id,
            "enrollmentId": record.enrollment_id,
            "stage": stage,
            "externalStatus": external_status,
        }

    async def handle_external_status_change(self, enrollment_id: str, status: str) -> dict[str, Any]:
        """Write an external status change onto the CRM deal's status property.

        Raises:
            UnknownSyncRecord: No ledger record (or no deal) for ``enrollment_id``.
            CrmApiError / AuthError: The CRM update failed.
        """
        record = await self._ledger.find_by_enrollment_id(enrollment_id)
        if record is None or record.deal_id is None:
            status_bridge_total.labels(direction="external_to_crm", result="unknown").inc()
            raise UnknownSyncRecord(
                f"No synced deal for enrollment {enrollment_id}",
                enrollmentId=enrollment_id,
            )

        crm_status = self.mapping.external_status_to_crm_status(status)
        try:
            await self._gateway.update_deal(record.deal_id, {self._status_property: crm_status})
        except Exception:
            status_bridge_total.labels(direction="external_to_crm", result="error").inc()
            raise
        await self._ledger.record_enrollment_status(enrollment_id, status)
        status_bridge_total.labels(direction="external_to_crm", result="ok").inc()

        logger.info(
            "status_bridge.external_to_crm",
            enrollment_id=enrollment_id,
            deal_id=record.deal_id,
            status=status,
            crm_status=crm_status,
        )
        return {
            "enrollmentId": enrollment_id,
            "dealId": record.deal_id,
            "crmStatus": crm_status,
            "suggestedStage": self.mapping.external_status_to_crm_stage(status),
        }
