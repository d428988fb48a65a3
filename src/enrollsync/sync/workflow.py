"""Enrollment -> deal reconciliation workflow.

Sequences the sync components for one webhook delivery:

    normalize -> idempotency check -> claim -> resolve contact
              -> create deal -> record success

Validation failures raise before anything is written. Once the claim is
held, any failure (domain or unexpected) is recorded as an ``error`` row
and re-raised, so a later redelivery or a manual retry can pick it up.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.enrollsync.core.monitoring import enrollment_sync_total
from src.enrollsync.sync.contacts import ContactResolver
from src.enrollsync.sync.deals import DealSynthesizer
from src.enrollsync.sync.errors import (
    MissingRequiredField,
    SyncError,
    SyncInProgress,
    UnknownSyncRecord,
)
from src.enrollsync.sync.ledger import SyncLedger
from src.enrollsync.sync.normalizer import WebhookNormalizer
from src.enrollsync.sync.schemas import (
    ClaimOutcome,
    EnrollmentEvent,
    SyncOutcome,
    SyncStatus,
)

logger = structlog.get_logger(__name__)


def _error_detail(exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, SyncError):
        detail = {"code": exc.code, "message": exc.message}
        detail.update({k: v for k, v in exc.details.items() if v is not None})
        return detail
    return {"code": "unexpected_error", "message": str(exc), "type": type(exc).__name__}


class EnrollmentSyncWorkflow:
    """Orchestrates one enrollment sync end to end.

    Args:
        normalizer: Webhook payload normalizer.
        ledger: Sync ledger (idempotency + outcome log).
        contacts: Contact resolver.
        deals: Deal synthesizer.
    """

    def __init__(
        self,
        normalizer: WebhookNormalizer,
        ledger: SyncLedger,
        contacts: ContactResolver,
        deals: DealSynthesizer,
    ) -> None:
        self._normalizer = normalizer
        self._ledger = ledger
        self._contacts = contacts
        self._deals = deals

    async def handle_webhook(self, payload: Any) -> SyncOutcome:
        """Process a raw webhook body.

        Raises:
            MissingRequiredField: Payload lacks enrollment id or identity.
            SyncInProgress: Another delivery holds the claim.
            SyncError: Contact/deal step failed (recorded as error).
        """
        try:
            event = self._normalizer.normalize(payload)
        except MissingRequiredField:
            enrollment_sync_total.labels(outcome="rejected").inc()
            raise
        return await self.process(event)

    async def process(self, event: EnrollmentEvent) -> SyncOutcome:
        enrollment_id = event.enrollment_id
        log = logger.bind(enrollment_id=enrollment_id)

        existing = await self._ledger.check_idempotent(enrollment_id)
        if existing is not None:
            enrollment_sync_total.labels(outcome="duplicate").inc()
            log.info("workflow.already_processed", deal_id=existing.deal_id)
            return SyncOutcome(
                enrollment_id=enrollment_id,
                deal_id=existing.deal_id,
                contact_id=existing.contact_id,
                duplicate=True,
            )

        metadata = event.ledger_metadata()
        claim = await self._ledger.claim(enrollment_id, metadata)
        if claim.outcome == ClaimOutcome.ALREADY_PROCESSED:
            enrollment_sync_total.labels(outcome="duplicate").inc()
            return SyncOutcome(
                enrollment_id=enrollment_id,
                deal_id=claim.record.deal_id if claim.record else None,
                contact_id=claim.record.contact_id if claim.record else None,
                duplicate=True,
            )
        if claim.outcome == ClaimOutcome.IN_PROGRESS:
            enrollment_sync_total.labels(outcome="in_progress").inc()
            raise SyncInProgress(enrollment_id)

        contact_id: str | None = None
        try:
            resolution = await self._contacts.resolve(event.identity())
            contact_id = resolution.contact_id
            event = event.with_contact(resolution)
            deal = await self._deals.create_deal(contact_id, event.deal_fields())
        except Exception as exc:
            enrollment_sync_total.labels(outcome="failed").inc()
            log.error("workflow.failed", error=str(exc), error_type=type(exc).__name__)
            await self._ledger.record_failure(
                enrollment_id,
                _error_detail(exc),
                metadata=event.ledger_metadata(contact_id),
            )
            raise

        await self._ledger.record_success(
            enrollment_id,
            deal.deal_id,
            metadata=event.ledger_metadata(contact_id),
        )
        enrollment_sync_total.labels(outcome="created").inc()
        log.info(
            "workflow.deal_created",
            deal_id=deal.deal_id,
            contact_id=contact_id,
            strategy=resolution.strategy.value,
            associated=deal.associated,
        )
        return SyncOutcome(
            enrollment_id=enrollment_id,
            deal_id=deal.deal_id,
            contact_id=contact_id,
            deal_name=deal.deal_name,
        )

    async def retry(self, enrollment_id: str) -> SyncOutcome:
        """Replay a failed enrollment from its stored event snapshot.

        Raises:
            UnknownSyncRecord: No record, or the record has no snapshot.
        """
        record = await self._ledger.find_by_enrollment_id(enrollment_id)
        if record is None or not record.event_snapshot:
            raise UnknownSyncRecord(
                f"No replayable sync record for enrollment {enrollment_id}",
                enrollmentId=enrollment_id,
            )
        if record.status == SyncStatus.SUCCESS:
            return SyncOutcome(
                enrollment_id=enrollment_id,
                deal_id=record.deal_id,
                contact_id=record.contact_id,
                duplicate=True,
            )
        event = EnrollmentEvent.model_validate(record.event_snapshot)
        logger.info("workflow.retry", enrollment_id=enrollment_id, retry_count=record.retry_count)
        return await self.process(event)
