"""Sync ledger -- the single source of truth for "has this enrollment been synced".

Wraps SyncRecordRepository with the claim protocol:

- A first delivery inserts a ``pending`` row; the unique constraint on
  enrollment_id lets exactly one concurrent delivery win.
- A losing insert inspects the existing row:
    success          -> ALREADY_PROCESSED (caller replies with the stored deal id)
    error            -> atomically re-claimed, retry_count + 1
    pending, stale   -> atomically re-claimed, retry_count + 1 (crashed worker)
    pending, fresh   -> IN_PROGRESS (caller replies 409)

The CRM is never consulted to answer idempotency questions.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.enrollsync.sync.repository import SyncRecordRepository
from src.enrollsync.sync.schemas import (
    ClaimOutcome,
    ClaimResult,
    SyncMetadata,
    SyncRecordRead,
    SyncStatus,
    TokenSet,
)

logger = structlog.get_logger(__name__)


class SyncLedger:
    """Idempotency and audit log for enrollment syncs.

    Args:
        records: Repository backing the sync_records table.
        stale_after_seconds: Age after which a pending claim is presumed dead.
        clock: Injectable "now" for tests.
    """

    def __init__(
        self,
        records: SyncRecordRepository,
        stale_after_seconds: int = 120,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._records = records
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Idempotency ─────────────────────────────────────────────────────────

    async def check_idempotent(self, enrollment_id: str) -> SyncRecordRead | None:
        """Return the existing record if this enrollment already synced successfully."""
        record = await self._records.get_by_enrollment_id(enrollment_id)
        if record is not None and record.status == SyncStatus.SUCCESS:
            return record
        return None

    def _is_stale(self, record: SyncRecordRead) -> bool:
        if record.updated_at is None:
            return True
        updated_at = record.updated_at
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return self._clock() - updated_at >= self._stale_after

    async def claim(self, enrollment_id: str, metadata: SyncMetadata | None = None) -> ClaimResult:
        """Atomically take ownership of an enrollment before any CRM mutation."""
        record = await self._records.insert_pending(enrollment_id, metadata)
        if record is not None:
            logger.info("ledger.claimed", enrollment_id=enrollment_id)
            return ClaimResult(outcome=ClaimOutcome.CLAIMED, record=record)

        existing = await self._records.get_by_enrollment_id(enrollment_id)
        if existing is None:
            # Row vanished between insert and read; try once more
            record = await self._records.insert_pending(enrollment_id, metadata)
            if record is not None:
                return ClaimResult(outcome=ClaimOutcome.CLAIMED, record=record)
            existing = await self._records.get_by_enrollment_id(enrollment_id)
            if existing is None:
                return ClaimResult(outcome=ClaimOutcome.IN_PROGRESS)

        if existing.status == SyncStatus.SUCCESS:
            return ClaimResult(outcome=ClaimOutcome.ALREADY_PROCESSED, record=existing)

        if existing.status == SyncStatus.PENDING and not self._is_stale(existing):
            logger.info("ledger.claim_in_progress", enrollment_id=enrollment_id)
            return ClaimResult(outcome=ClaimOutcome.IN_PROGRESS, record=existing)

        reclaimed = await self._records.reclaim(
            enrollment_id,
            expected_status=existing.status,
            expected_retry_count=existing.retry_count,
            metadata=metadata,
        )
        if reclaimed is None:
            # Someone else re-claimed first; report whatever state they left
            latest = await self._records.get_by_enrollment_id(enrollment_id)
            if latest is not None and latest.status == SyncStatus.SUCCESS:
                return ClaimResult(outcome=ClaimOutcome.ALREADY_PROCESSED, record=latest)
            return ClaimResult(outcome=ClaimOutcome.IN_PROGRESS, record=latest)

        logger.info(
            "ledger.reclaimed",
            enrollment_id=enrollment_id,
            previous_status=existing.status.value,
            retry_count=reclaimed.retry_count,
        )
        return ClaimResult(outcome=ClaimOutcome.RECLAIMED, record=reclaimed)

    # ── Outcomes ────────────────────────────────────────────────────────────

    async def record_success(
        self,
        enrollment_id: str,
        deal_id: str,
        metadata: SyncMetadata | None = None,
    ) -> SyncRecordRead:
        record = await self._records.upsert_outcome(
            enrollment_id,
            SyncStatus.SUCCESS,
            metadata=metadata,
            deal_id=deal_id,
            error=None,
        )
        logger.info("ledger.success", enrollment_id=enrollment_id, deal_id=deal_id)
        return record

    async def record_failure(
        self,
        enrollment_id: str,
        error_detail: dict[str, Any],
        metadata: SyncMetadata | None = None,
    ) -> SyncRecordRead:
        """Persist an error outcome. retry_count is only bumped by a re-claim."""
        record = await self._records.upsert_outcome(
            enrollment_id,
            SyncStatus.ERROR,
            metadata=metadata,
            error=error_detail,
        )
        logger.warning(
            "ledger.failure",
            enrollment_id=enrollment_id,
            error_code=error_detail.get("code"),
        )
        return record

    async def record_enrollment_status(self, enrollment_id: str, enrollment_status: str) -> None:
        await self._records.set_enrollment_status(enrollment_id, enrollment_status)

    # ── Lookups ─────────────────────────────────────────────────────────────

    async def find_by_enrollment_id(self, enrollment_id: str) -> SyncRecordRead | None:
        return await self._records.get_by_enrollment_id(enrollment_id)

    async def find_by_deal_id(self, deal_id: str) -> SyncRecordRead | None:
        return await self._records.get_by_deal_id(deal_id)

    async def list_records(
        self, status: SyncStatus | None = None, limit: int = 50
    ) -> list[SyncRecordRead]:
        return await self._records.list_records(status=status, limit=limit)

    # ── OAuth Token ─────────────────────────────────────────────────────────

    async def save_token(self, token: TokenSet) -> None:
        await self._records.save_token(token)

    async def load_token(self) -> TokenSet | None:
        return await self._records.get_token()
