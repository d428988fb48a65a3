"""Sync ledger repositories -- async persistence for sync records and contact mappings.

Provides SyncRecordRepository and ContactMappingRepository using the
session_factory callable pattern: each method opens its own session from
the factory, commits, and converts ORM rows into Pydantic read schemas so
no ORM object escapes the session.

Upserts are written dialect-neutrally (select, then update or insert, with
IntegrityError as the race arbiter) so the same code runs on PostgreSQL and
SQLite.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import aclosing, asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.enrollsync.sync.models import ContactMappingModel, SyncRecordModel
from src.enrollsync.sync.schemas import (
    ContactMappingCreate,
    ContactMappingRead,
    SyncMetadata,
    SyncRecordRead,
    SyncStatus,
    SyncType,
    TokenSet,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@asynccontextmanager
async def _open_session(session_factory: SessionFactory) -> AsyncIterator[AsyncSession]:
    """Take one session from the factory and close it when the block exits.

    Returning from inside ``async for`` over the factory would leave the
    generator (and its session) open until garbage collection.
    """
    async with aclosing(session_factory()) as sessions:
        async for session in sessions:
            yield session
            return
    raise RuntimeError("Session factory yielded no session")


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_record(model: SyncRecordModel) -> SyncRecordRead:
    """Convert SyncRecordModel to SyncRecordRead schema."""
    return SyncRecordRead(
        id=model.id,
        type=SyncType(model.type),
        enrollment_id=model.enrollment_id,
        deal_id=model.deal_id,
        contact_id=model.contact_id,
        student_email=model.student_email,
        student_name=model.student_name,
        course_name=model.course_name,
        course_amount=model.course_amount,
        utm_source=model.utm_source,
        utm_medium=model.utm_medium,
        utm_campaign=model.utm_campaign,
        enrolled_at=model.enrolled_at,
        status=SyncStatus(model.status),
        error=model.error,
        retry_count=model.retry_count or 0,
        enrollment_status=model.enrollment_status,
        event_snapshot=model.event_snapshot,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_mapping(model: ContactMappingModel) -> ContactMappingRead:
    """Convert ContactMappingModel to ContactMappingRead schema."""
    return ContactMappingRead(
        external_contact_id=model.external_contact_id,
        crm_contact_id=model.crm_contact_id,
        email=model.email,
        first_name=model.first_name,
        last_name=model.last_name,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _metadata_values(metadata: SyncMetadata | None) -> dict[str, Any]:
    """Column values from SyncMetadata, skipping fields that were not supplied."""
    if metadata is None:
        return {}
    return metadata.model_dump(mode="python", exclude_none=True)


# ── Sync Records ────────────────────────────────────────────────────────────


class SyncRecordRepository:
    """Async CRUD for the sync_records table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get_by_enrollment_id(self, enrollment_id: str) -> SyncRecordRead | None:
        async with _open_session(self._session_factory) as session:
            stmt = select(SyncRecordModel).where(
                SyncRecordModel.enrollment_id == enrollment_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_record(model) if model else None

    async def get_by_deal_id(self, deal_id: str) -> SyncRecordRead | None:
        """Most recently updated enrollment record pointing at a CRM deal."""
        async with _open_session(self._session_factory) as session:
            stmt = (
                select(SyncRecordModel)
                .where(
                    SyncRecordModel.type == SyncType.ENROLLMENT_TO_DEAL.value,
                    SyncRecordModel.deal_id == deal_id,
                )
                .order_by(SyncRecordModel.updated_at.desc(), SyncRecordModel.id.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            return _model_to_record(model) if model else None

    async def list_records(
        self,
        status: SyncStatus | None = None,
        limit: int = 50,
    ) -> list[SyncRecordRead]:
        async with _open_session(self._session_factory) as session:
            stmt = select(SyncRecordModel).where(
                SyncRecordModel.type == SyncType.ENROLLMENT_TO_DEAL.value,
            )
            if status is not None:
                stmt = stmt.where(SyncRecordModel.status == status.value)
            stmt = stmt.order_by(SyncRecordModel.id.desc()).limit(limit)
            result = await session.execute(stmt)
            return [_model_to_record(m) for m in result.scalars().all()]

    async def insert_pending(
        self, enrollment_id: str, metadata: SyncMetadata | None = None
    ) -> SyncRecordRead | None:
        """Insert a pending row; returns None if the enrollment already has one.

        The unique constraint on enrollment_id makes this the atomic claim.
        """
        async with _open_session(self._session_factory) as session:
            now = _utcnow()
            model = SyncRecordModel(
                type=SyncType.ENROLLMENT_TO_DEAL.value,
                enrollment_id=enrollment_id,
                status=SyncStatus.PENDING.value,
                retry_count=0,
                created_at=now,
                updated_at=now,
                **_metadata_values(metadata),
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            await session.refresh(model)
            return _model_to_record(model)

    async def reclaim(
        self,
        enrollment_id: str,
        expected_status: SyncStatus,
        expected_retry_count: int,
        metadata: SyncMetadata | None = None,
    ) -> SyncRecordRead | None:
        """Flip an existing row back to pending if nobody else got there first.

        Guarded by the status and retry_count that were observed, so exactly
        one concurrent caller wins. Increments retry_count.
        """
        async with _open_session(self._session_factory) as session:
            values = {
                "status": SyncStatus.PENDING.value,
                "retry_count": expected_retry_count + 1,
                "updated_at": _utcnow(),
                **_metadata_values(metadata),
            }
            stmt = (
                update(SyncRecordModel)
                .where(
                    SyncRecordModel.enrollment_id == enrollment_id,
                    SyncRecordModel.status == expected_status.value,
                    SyncRecordModel.retry_count == expected_retry_count,
                )
                .values(**values)
            )
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount != 1:
                return None
        return await self.get_by_enrollment_id(enrollment_id)

    async def upsert_outcome(
        self,
        enrollment_id: str,
        status: SyncStatus,
        metadata: SyncMetadata | None = None,
        deal_id: str | None = None,
        error: dict[str, Any] | None = None,
    ) -> SyncRecordRead:
        """Write the final outcome for an enrollment, inserting if needed."""
        values: dict[str, Any] = {
            "status": status.value,
            "error": error,
            "updated_at": _utcnow(),
            **_metadata_values(metadata),
        }
        if deal_id is not None:
            values["deal_id"] = deal_id

        for _attempt in range(2):
            async with _open_session(self._session_factory) as session:
                stmt = select(SyncRecordModel).where(
                    SyncRecordModel.enrollment_id == enrollment_id,
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                if model is None:
                    model = SyncRecordModel(
                        type=SyncType.ENROLLMENT_TO_DEAL.value,
                        enrollment_id=enrollment_id,
                        retry_count=0,
                        created_at=values["updated_at"],
                        **values,
                    )
                    session.add(model)
                else:
                    for key, value in values.items():
                        setattr(model, key, value)
                try:
                    await session.commit()
                except IntegrityError:
                    # Inserted concurrently; the second pass updates it
                    await session.rollback()
                    continue
                await session.refresh(model)
                return _model_to_record(model)

        raise RuntimeError(f"Could not persist sync outcome for {enrollment_id}")

    async def set_enrollment_status(
        self, enrollment_id: str, enrollment_status: str
    ) -> None:
        async with _open_session(self._session_factory) as session:
            stmt = (
                update(SyncRecordModel)
                .where(SyncRecordModel.enrollment_id == enrollment_id)
                .values(enrollment_status=enrollment_status, updated_at=_utcnow())
            )
            await session.execute(stmt)
            await session.commit()

    # ── OAuth Token ─────────────────────────────────────────────────────────

    async def get_token(self) -> TokenSet | None:
        async with _open_session(self._session_factory) as session:
            stmt = (
                select(SyncRecordModel)
                .where(SyncRecordModel.type == SyncType.OAUTH_TOKEN.value)
                .order_by(SyncRecordModel.id.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            if model is None or not model.access_token:
                return None
            return TokenSet(
                access_token=model.access_token,
                refresh_token=model.refresh_token,
                expires_at=model.expires_at,
            )

    async def save_token(self, token: TokenSet) -> None:
        """Upsert the singleton oauth_token row."""
        async with _open_session(self._session_factory) as session:
            stmt = (
                select(SyncRecordModel)
                .where(SyncRecordModel.type == SyncType.OAUTH_TOKEN.value)
                .order_by(SyncRecordModel.id.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            now = _utcnow()
            if model is None:
                model = SyncRecordModel(
                    type=SyncType.OAUTH_TOKEN.value,
                    retry_count=0,
                    created_at=now,
                )
                session.add(model)
            model.access_token = token.access_token
            model.refresh_token = token.refresh_token
            model.expires_at = token.expires_at
            model.status = SyncStatus.SUCCESS.value
            model.updated_at = now
            await session.commit()
            logger.info("ledger.token_saved", expires_at=str(token.expires_at))


# ── Contact Mappings ────────────────────────────────────────────────────────


class ContactMappingRepository:
    """Async CRUD for the contact_mappings table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, external_contact_id: str) -> ContactMappingRead | None:
        async with _open_session(self._session_factory) as session:
            stmt = select(ContactMappingModel).where(
                ContactMappingModel.external_contact_id == external_contact_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_mapping(model) if model else None

    async def upsert(self, data: ContactMappingCreate) -> ContactMappingRead:
        """Create or update the mapping for data.external_contact_id.

        Cached email/name fields are only overwritten when the new value is set.
        """
        for _attempt in range(2):
            async with _open_session(self._session_factory) as session:
                stmt = select(ContactMappingModel).where(
                    ContactMappingModel.external_contact_id == data.external_contact_id,
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                now = _utcnow()
                if model is None:
                    model = ContactMappingModel(
                        external_contact_id=data.external_contact_id,
                        crm_contact_id=data.crm_contact_id,
                        email=data.email,
                        first_name=data.first_name,
                        last_name=data.last_name,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(model)
                else:
                    model.crm_contact_id = data.crm_contact_id
                    if data.email is not None:
                        model.email = data.email
                    if data.first_name is not None:
                        model.first_name = data.first_name
                    if data.last_name is not None:
                        model.last_name = data.last_name
                    model.updated_at = now
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    continue
                await session.refresh(model)
                logger.info(
                    "mapping.upserted",
                    external_contact_id=data.external_contact_id,
                    crm_contact_id=data.crm_contact_id,
                )
                return _model_to_mapping(model)

        raise RuntimeError(f"Could not upsert contact mapping {data.external_contact_id}")
