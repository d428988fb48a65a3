"""Tests for the sync ledger and its repositories on an in-memory SQLite database.

Covers the claim protocol (claim, in-progress, already processed, re-claim
of error and stale pending rows), outcome recording, lookups, OAuth token
persistence, and contact mapping upserts.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from src.enrollsync.core.database import Base
from src.enrollsync.sync.ledger import SyncLedger
from src.enrollsync.sync.repository import SyncRecordRepository
from src.enrollsync.sync.schemas import (
    ClaimOutcome,
    ContactMappingCreate,
    SyncMetadata,
    SyncStatus,
    TokenSet,
)


def _metadata(**overrides) -> SyncMetadata:
    defaults = {
        "student_email": "a@x.com",
        "student_name": "Ada Lovelace",
        "course_name": "JS101",
        "course_amount": Decimal("199.00"),
        "utm_source": "google",
        "event_snapshot": {"enrollment_id": "E1", "email": "a@x.com"},
    }
    defaults.update(overrides)
    return SyncMetadata(**defaults)


# ── Claim Protocol ──────────────────────────────────────────────────────────


class TestClaim:
    async def test_first_claim_inserts_pending(self, ledger):
        result = await ledger.claim("E1", _metadata())

        assert result.outcome == ClaimOutcome.CLAIMED
        assert result.acquired
        assert result.record.status == SyncStatus.PENDING
        assert result.record.retry_count == 0
        assert result.record.student_email == "a@x.com"
        assert result.record.course_amount == Decimal("199.00")

    async def test_second_claim_while_fresh_is_in_progress(self, ledger):
        await ledger.claim("E1", _metadata())
        result = await ledger.claim("E1", _metadata())

        assert result.outcome == ClaimOutcome.IN_PROGRESS
        assert not result.acquired

    async def test_claim_after_success_is_already_processed(self, ledger):
        await ledger.claim("E1", _metadata())
        await ledger.record_success("E1", "deal-9", _metadata(contact_id="c-1"))

        result = await ledger.claim("E1", _metadata())

        assert result.outcome == ClaimOutcome.ALREADY_PROCESSED
        assert result.record.deal_id == "deal-9"

    async def test_claim_after_error_reclaims_and_counts_retry(self, ledger):
        await ledger.claim("E1", _metadata())
        await ledger.record_failure("E1", {"code": "crm_api_error", "message": "boom"})

        result = await ledger.claim("E1", _metadata())

        assert result.outcome == ClaimOutcome.RECLAIMED
        assert result.record.status == SyncStatus.PENDING
        assert result.record.retry_count == 1

    async def test_stale_pending_is_reclaimed(self, record_repository):
        await SyncLedger(record_repository).claim("E1", _metadata())

        later = datetime.now(timezone.utc) + timedelta(minutes=10)
        ledger = SyncLedger(record_repository, stale_after_seconds=120, clock=lambda: later)
        result = await ledger.claim("E1", _metadata())

        assert result.outcome == ClaimOutcome.RECLAIMED
        assert result.record.retry_count == 1

    async def test_reclaim_is_guarded_by_observed_state(self, record_repository, ledger):
        await ledger.claim("E1", _metadata())
        await ledger.record_failure("E1", {"code": "x"})

        first = await record_repository.reclaim("E1", SyncStatus.ERROR, 0)
        second = await record_repository.reclaim("E1", SyncStatus.ERROR, 0)

        assert first is not None
        assert second is None


# ── Outcomes ────────────────────────────────────────────────────────────────


class TestOutcomes:
    async def test_check_idempotent_only_for_success(self, ledger):
        assert await ledger.check_idempotent("E1") is None

        await ledger.claim("E1", _metadata())
        assert await ledger.check_idempotent("E1") is None

        await ledger.record_success("E1", "deal-1")
        record = await ledger.check_idempotent("E1")
        assert record is not None
        assert record.deal_id == "deal-1"

    async def test_record_failure_does_not_increment_retry(self, ledger):
        await ledger.claim("E1", _metadata())
        record = await ledger.record_failure("E1", {"code": "crm_api_error"})
        assert record.retry_count == 0
        record = await ledger.record_failure("E1", {"code": "crm_api_error"})
        assert record.retry_count == 0
        assert record.status == SyncStatus.ERROR
        assert record.error == {"code": "crm_api_error"}

    async def test_record_failure_without_claim_inserts(self, ledger):
        record = await ledger.record_failure("E2", {"code": "unmapped_contact"}, _metadata())
        assert record.status == SyncStatus.ERROR
        assert record.enrollment_id == "E2"

    async def test_success_clears_error_and_keeps_snapshot(self, ledger):
        await ledger.claim("E1", _metadata())
        await ledger.record_failure("E1", {"code": "boom"})
        record = await ledger.record_success("E1", "deal-2", SyncMetadata(contact_id="c-7"))

        assert record.status == SyncStatus.SUCCESS
        assert record.error is None
        assert record.contact_id == "c-7"
        assert record.event_snapshot == {"enrollment_id": "E1", "email": "a@x.com"}


# ── Lookups ─────────────────────────────────────────────────────────────────


class TestLookups:
    async def test_find_by_deal_id(self, ledger):
        await ledger.record_success("E1", "deal-1")
        await ledger.record_success("E2", "deal-2")

        record = await ledger.find_by_deal_id("deal-2")
        assert record.enrollment_id == "E2"
        assert await ledger.find_by_deal_id("deal-404") is None

    async def test_list_records_filters_by_status(self, ledger):
        await ledger.record_success("E1", "deal-1")
        await ledger.record_failure("E2", {"code": "x"})

        failed = await ledger.list_records(status=SyncStatus.ERROR)
        assert [r.enrollment_id for r in failed] == ["E2"]
        assert len(await ledger.list_records()) == 2

    async def test_token_row_excluded_from_listing(self, ledger):
        await ledger.save_token(TokenSet(access_token="abc"))
        assert await ledger.list_records() == []

    async def test_record_enrollment_status(self, ledger):
        await ledger.record_success("E1", "deal-1")
        await ledger.record_enrollment_status("E1", "Confirmed")
        record = await ledger.find_by_enrollment_id("E1")
        assert record.enrollment_status == "Confirmed"


# ── OAuth Token ─────────────────────────────────────────────────────────────


class TestTokenPersistence:
    async def test_load_without_token(self, ledger):
        assert await ledger.load_token() is None

    async def test_save_then_load_upserts_single_row(self, ledger, record_repository):
        expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
        await ledger.save_token(TokenSet(access_token="first", refresh_token="r1", expires_at=expires))
        await ledger.save_token(TokenSet(access_token="second", refresh_token="r2", expires_at=expires))

        token = await ledger.load_token()
        assert token.access_token == "second"
        assert token.refresh_token == "r2"
        assert not token.is_expired()


# ── Contact Mappings ────────────────────────────────────────────────────────


class TestContactMappingRepository:
    async def test_get_missing(self, mapping_repository):
        assert await mapping_repository.get("AXC1") is None

    async def test_upsert_creates_then_updates(self, mapping_repository):
        await mapping_repository.upsert(
            ContactMappingCreate(external_contact_id="AXC1", crm_contact_id="123", email="b@x.com")
        )
        updated = await mapping_repository.upsert(
            ContactMappingCreate(external_contact_id="AXC1", crm_contact_id="456", first_name="Bea")
        )

        assert updated.crm_contact_id == "456"
        assert updated.email == "b@x.com"
        assert updated.first_name == "Bea"

    async def test_crm_contact_id_need_not_be_unique(self, mapping_repository):
        await mapping_repository.upsert(ContactMappingCreate(external_contact_id="A", crm_contact_id="1"))
        await mapping_repository.upsert(ContactMappingCreate(external_contact_id="B", crm_contact_id="1"))
        assert (await mapping_repository.get("A")).crm_contact_id == "1"
        assert (await mapping_repository.get("B")).crm_contact_id == "1"

    @pytest.mark.parametrize("blank", ["external_contact_id", "crm_contact_id"])
    def test_blank_ids_rejected(self, blank):
        data = {"external_contact_id": "AXC1", "crm_contact_id": "123", blank: ""}
        with pytest.raises(ValueError):
            ContactMappingCreate(**data)


# ── Session Lifecycle ───────────────────────────────────────────────────────


class TestSharedConnection:
    """Every session on one connection: each must be closed before the next opens."""

    @pytest_asyncio.fixture
    async def shared_ledger(self):
        engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async def factory():
            async with AsyncSession(engine, expire_on_commit=False) as session:
                yield session

        yield SyncLedger(SyncRecordRepository(session_factory=factory))
        await engine.dispose()

    async def test_read_then_claim(self, shared_ledger):
        assert await shared_ledger.check_idempotent("A5") is None

        result = await shared_ledger.claim("A5", _metadata())

        assert result.outcome == ClaimOutcome.CLAIMED
        assert (await shared_ledger.find_by_enrollment_id("A5")).status == SyncStatus.PENDING

    async def test_full_lifecycle(self, shared_ledger):
        await shared_ledger.check_idempotent("A6")
        await shared_ledger.claim("A6", _metadata())
        await shared_ledger.record_failure("A6", {"code": "crm_api_error"})
        await shared_ledger.check_idempotent("A6")
        await shared_ledger.claim("A6", _metadata())
        record = await shared_ledger.record_success("A6", "deal-6")

        assert record.status == SyncStatus.SUCCESS
        assert record.retry_count == 1
