"""Pydantic schemas for the enrollment sync workflow.

Defines the structured types passed between sync components:
- Enums: SyncType, SyncStatus, ClaimOutcome, ResolutionStrategy
- Inbound: EnrollmentEvent (canonical webhook record), ContactIdentity
- CRM: ContactResolution, DealFields, DealResult, TokenSet
- Ledger: SyncMetadata, SyncRecordRead, ClaimResult
- Identity mapping: ContactMappingCreate, ContactMappingRead
- Status bridge: StatusMappingConfig
- Workflow: SyncOutcome
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncType(str, Enum):
    """Discriminator for rows in the sync_records table."""

    OAUTH_TOKEN = "oauth_token"
    ENROLLMENT_TO_DEAL = "enrollment_to_deal"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class ClaimOutcome(str, Enum):
    """Result of attempting to claim an enrollment for processing."""

    CLAIMED = "claimed"
    RECLAIMED = "reclaimed"
    ALREADY_PROCESSED = "already_processed"
    IN_PROGRESS = "in_progress"


class ResolutionStrategy(str, Enum):
    """How a CRM contact id was obtained."""

    MAPPING = "mapping"
    SEARCH = "search"
    CREATED = "created"


# ── Inbound ─────────────────────────────────────────────────────────────────


class ContactIdentity(BaseModel):
    """Student identity as far as the inbound payload reveals it."""

    email: str | None = None
    external_contact_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class EnrollmentEvent(BaseModel):
    """Canonical enrollment record produced by the webhook normalizer."""

    enrollment_id: str
    email: str | None = None
    external_contact_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    student_name: str = "Unknown"
    course_code: str = "UNKNOWN-COURSE"
    course_name: str | None = None
    course_amount: Decimal = Decimal("0")
    enrolled_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    synthetic_id: bool = False

    def identity(self) -> ContactIdentity:
        return ContactIdentity(
            email=self.email,
            external_contact_id=self.external_contact_id,
            first_name=self.first_name,
            last_name=self.last_name,
        )

    def with_contact(self, resolution: ContactResolution) -> EnrollmentEvent:
        """Copy of the event with gaps filled from the resolved contact.

        Values carried by the webhook win; the derived student name is only
        replaced while it is still the placeholder.
        """
        first_name = self.first_name or resolution.first_name
        last_name = self.last_name or resolution.last_name
        updates: dict[str, Any] = {
            "email": self.email or resolution.email,
            "first_name": first_name,
            "last_name": last_name,
        }
        if self.student_name == "Unknown" and (first_name or last_name):
            updates["student_name"] = " ".join(p for p in (first_name, last_name) if p)
        return self.model_copy(update=updates)

    def deal_fields(self) -> DealFields:
        return DealFields(
            course_code=self.course_code,
            course_name=self.course_name,
            course_amount=self.course_amount,
            student_name=self.student_name,
            student_email=self.email,
        )

    def ledger_metadata(self, contact_id: str | None = None) -> SyncMetadata:
        return SyncMetadata(
            contact_id=contact_id,
            student_email=self.email,
            student_name=self.student_name,
            course_name=self.course_name or self.course_code,
            course_amount=self.course_amount,
            utm_source=self.utm_source,
            utm_medium=self.utm_medium,
            utm_campaign=self.utm_campaign,
            enrolled_at=self.enrolled_at.astimezone(timezone.utc),
            event_snapshot=self.model_dump(mode="json"),
        )


# ── CRM ─────────────────────────────────────────────────────────────────────


class ContactResolution(BaseModel):
    """Resolved CRM contact plus whatever student details came with it."""

    contact_id: str
    strategy: ResolutionStrategy
    created: bool = False
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class DealFields(BaseModel):
    """Inputs the deal synthesizer needs to build CRM deal properties."""

    course_code: str = "UNKNOWN-COURSE"
    course_name: str | None = None
    course_amount: Decimal = Decimal("0")
    student_name: str | None = None
    student_email: str | None = None


class DealResult(BaseModel):
    deal_id: str
    deal_name: str
    associated: bool = False


class TokenSet(BaseModel):
    """OAuth token pair with absolute expiry."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    @classmethod
    def from_token_response(
        cls,
        data: dict[str, Any],
        previous_refresh_token: str | None = None,
        now: datetime | None = None,
    ) -> TokenSet:
        """Build a TokenSet from a /oauth/v1/token response body.

        Keeps the previous refresh token when the response omits one.
        """
        now = now or datetime.now(timezone.utc)
        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=now + timedelta(seconds=int(expires_in)) if expires_in else None,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now >= expires_at

    def expires_in(self, now: datetime | None = None) -> int | None:
        if self.expires_at is None:
            return None
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(0, int((expires_at - now).total_seconds()))

    def masked(self) -> str:
        return f"{self.access_token[:10]}..."


# ── Ledger ──────────────────────────────────────────────────────────────────


class SyncMetadata(BaseModel):
    """Denormalized enrollment details stored alongside the ledger outcome."""

    contact_id: str | None = None
    student_email: str | None = None
    student_name: str | None = None
    course_name: str | None = None
    course_amount: Decimal | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    enrolled_at: datetime | None = None
    event_snapshot: dict[str, Any] | None = None


class SyncRecordRead(BaseModel):
    """Persisted sync record as returned by the repository."""

    id: int
    type: SyncType
    enrollment_id: str | None = None
    deal_id: str | None = None
    contact_id: str | None = None
    student_email: str | None = None
    student_name: str | None = None
    course_name: str | None = None
    course_amount: Decimal | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    enrolled_at: datetime | None = None
    status: SyncStatus
    error: dict[str, Any] | None = None
    retry_count: int = 0
    enrollment_status: str | None = None
    event_snapshot: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("enrolled_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # SQLite hands back naive datetimes; stored values are always UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_api(self) -> dict[str, Any]:
        """camelCase view used by the inspection endpoints."""
        return {
            "id": self.id,
            "type": self.type.value,
            "enrollmentId": self.enrollment_id,
            "dealId": self.deal_id,
            "contactId": self.contact_id,
            "studentEmail": self.student_email,
            "studentName": self.student_name,
            "courseName": self.course_name,
            "courseAmount": float(self.course_amount) if self.course_amount is not None else None,
            "utmSource": self.utm_source,
            "utmMedium": self.utm_medium,
            "utmCampaign": self.utm_campaign,
            "enrolledAt": self.enrolled_at.isoformat() if self.enrolled_at else None,
            "status": self.status.value,
            "error": self.error,
            "retryCount": self.retry_count,
            "enrollmentStatus": self.enrollment_status,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class ClaimResult(BaseModel):
    outcome: ClaimOutcome
    record: SyncRecordRead | None = None

    @property
    def acquired(self) -> bool:
        return self.outcome in (ClaimOutcome.CLAIMED, ClaimOutcome.RECLAIMED)


# ── Identity Mapping ────────────────────────────────────────────────────────


class ContactMappingCreate(BaseModel):
    external_contact_id: str = Field(min_length=1)
    crm_contact_id: str = Field(min_length=1)
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class ContactMappingRead(BaseModel):
    external_contact_id: str
    crm_contact_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_api(self) -> dict[str, Any]:
        return {
            "externalContactId": self.external_contact_id,
            "crmContactId": self.crm_contact_id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


# ── Status Bridge ───────────────────────────────────────────────────────────


class StatusMappingConfig(BaseModel):
    """Bidirectional stage/status tables, loaded from JSON.

    Keys are compared case-insensitively; they are lower-cased on load.
    """

    crm_stage_to_external_status: dict[str, str]
    external_status_default: str = "Tentative"
    external_status_to_crm_status: dict[str, str]
    crm_status_default: str = "Pending"
    external_status_to_crm_stage: dict[str, str]
    crm_stage_default: str = "appointmentscheduled"

    @field_validator(
        "crm_stage_to_external_status",
        "external_status_to_crm_status",
        "external_status_to_crm_stage",
    )
    @classmethod
    def _lower_keys(cls, value: dict[str, str]) -> dict[str, str]:
        return {k.strip().lower(): v for k, v in value.items()}


# ── Workflow ────────────────────────────────────────────────────────────────


class SyncOutcome(BaseModel):
    """Result of processing one enrollment webhook."""

    enrollment_id: str
    deal_id: str | None = None
    contact_id: str | None = None
    deal_name: str | None = None
    duplicate: bool = False

    def to_api(self) -> dict[str, Any]:
        if self.duplicate:
            return {
                "success": True,
                "message": "Already processed",
                "enrollmentId": self.enrollment_id,
                "dealId": self.deal_id,
            }
        return {
            "success": True,
            "message": "Deal created successfully",
            "enrollmentId": self.enrollment_id,
            "dealId": self.deal_id,
            "contactId": self.contact_id,
            "dealName": self.deal_name,
        }
