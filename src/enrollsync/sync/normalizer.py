"""Webhook normalizer -- heterogeneous enrollment payloads to EnrollmentEvent.

Upstream senders (Axcelerate native webhooks, Zapier-style relays, HubSpot
workflow forwards) disagree on where each field lives. Every canonical
field therefore has an ordered tuple of pure extractor functions, and a
single ``first_defined`` combinator returns the first extractor that
yields a present value. First match wins; values are never merged across
paths. The order of each tuple is part of the contract.

A value is present when it is not None and not an empty/whitespace string.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog

from src.enrollsync.sync.errors import MissingRequiredField
from src.enrollsync.sync.schemas import EnrollmentEvent

logger = structlog.get_logger(__name__)

Extractor = Callable[[dict[str, Any]], Any]

_MISSING = object()

DEFAULT_STUDENT_NAME = "Unknown"
DEFAULT_COURSE_CODE = "UNKNOWN-COURSE"
MAX_AMOUNT = Decimal("1e10")


# ── Extractor Primitives ────────────────────────────────────────────────────


def _dig(payload: Any, path: str) -> Any:
    node = payload
    for key in path.split("."):
        if not isinstance(node, dict) or key not in node:
            return _MISSING
        node = node[key]
    return node


def _is_present(value: Any) -> bool:
    if value is _MISSING or value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def path(dotted: str) -> Extractor:
    """Extractor reading a dotted key path, e.g. ``path("student.email")``."""

    def extract(payload: dict[str, Any]) -> Any:
        return _dig(payload, dotted)

    extract.__name__ = f"path({dotted})"
    return extract


def joined(*dotted: str) -> Extractor:
    """Extractor joining several string paths with spaces (skips absent parts)."""

    def extract(payload: dict[str, Any]) -> Any:
        parts = [str(_dig(payload, p)).strip() for p in dotted if _is_present(_dig(payload, p))]
        return " ".join(parts) if parts else _MISSING

    extract.__name__ = f"joined({', '.join(dotted)})"
    return extract


def first_defined(payload: dict[str, Any], extractors: Iterable[Extractor]) -> Any:
    """Return the first present value produced by ``extractors``, else None."""
    for extractor in extractors:
        value = extractor(payload)
        if _is_present(value):
            return value
    return None


def _first_parsed(
    payload: dict[str, Any],
    extractors: Iterable[Extractor],
    parse: Callable[[Any], Any],
) -> Any:
    """Like first_defined, but skips candidates the parser rejects (returns None)."""
    for extractor in extractors:
        value = extractor(payload)
        if not _is_present(value):
            continue
        parsed = parse(value)
        if parsed is not None:
            return parsed
    return None


# ── Field Tables ────────────────────────────────────────────────────────────

ENROLLMENT_ID_PATHS: tuple[Extractor, ...] = (
    path("id"),
    path("enrollmentId"),
    path("enrolmentId"),
    path("enrolment_id"),
    path("data.id"),
    path("properties.enrollment_id"),
    path("message.enrolment.id"),
    path("messageId"),
)

EMAIL_PATHS: tuple[Extractor, ...] = (
    path("email"),
    path("student.email"),
    path("contact.email"),
    path("properties.email"),
    path("properties.student_email"),
    path("message.enrolment.student.email"),
)

EXTERNAL_CONTACT_ID_PATHS: tuple[Extractor, ...] = (
    path("externalContactId"),
    path("contactId"),
    path("student.contactId"),
    path("contact.contactId"),
    path("message.enrolment.student.contactId"),
)

FIRST_NAME_PATHS: tuple[Extractor, ...] = (
    path("firstName"),
    path("student.firstName"),
    path("properties.firstname"),
    path("message.enrolment.student.givenName"),
)

LAST_NAME_PATHS: tuple[Extractor, ...] = (
    path("lastName"),
    path("student.lastName"),
    path("properties.lastname"),
    path("message.enrolment.student.surname"),
)

STUDENT_NAME_PATHS: tuple[Extractor, ...] = (
    path("studentName"),
    path("student.name"),
    path("contact.name"),
    joined("properties.firstname", "properties.lastname"),
)

COURSE_CODE_PATHS: tuple[Extractor, ...] = (
    path("courseCode"),
    path("course.code"),
    path("message.enrolment.class.qualification.code"),
    path("data.course.code"),
    path("course.name"),
    path("product.name"),
    path("data.course.name"),
    path("properties.course_name"),
)

COURSE_NAME_PATHS: tuple[Extractor, ...] = (
    path("course.name"),
    path("product.name"),
    path("data.course.name"),
    path("properties.course_name"),
    path("message.enrolment.class.name"),
)

AMOUNT_PATHS: tuple[Extractor, ...] = (
    path("amount"),
    path("course.price"),
    path("properties.amount"),
    path("data.course.price"),
    path("message.enrolment.class.cost"),
)

ENROLLED_AT_PATHS: tuple[Extractor, ...] = (
    path("enrolledAt"),
    path("enrollmentDate"),
    path("enrolmentDate"),
    path("data.createdAt"),
    path("message.enrolment.enrolmentDate"),
    path("timestamp"),
)

UTM_SOURCE_PATHS: tuple[Extractor, ...] = (
    path("utm_source"),
    path("utmSource"),
    path("properties.utm_source"),
)

UTM_MEDIUM_PATHS: tuple[Extractor, ...] = (
    path("utm_medium"),
    path("utmMedium"),
    path("properties.utm_medium"),
)

UTM_CAMPAIGN_PATHS: tuple[Extractor, ...] = (
    path("utm_campaign"),
    path("utmCampaign"),
    path("properties.utm_campaign"),
)


# ── Value Parsers ───────────────────────────────────────────────────────────


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).strip()


def parse_amount(value: Any) -> Decimal | None:
    """Parse a currency amount; strips ``$`` and thousands separators.

    Non-finite values and amounts outside the ledger's ``Numeric(12, 2)``
    column are rejected.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, Decimal)):
        amount = Decimal(value)
    elif isinstance(value, float):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        cleaned = value.strip().replace(",", "").lstrip("$").strip()
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            return None
    else:
        return None
    if not amount.is_finite() or abs(amount) >= MAX_AMOUNT:
        return None
    return amount


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return parse_timestamp(int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


# ── Normalizer ──────────────────────────────────────────────────────────────


class WebhookNormalizer:
    """Turns raw webhook JSON into an EnrollmentEvent.

    Args:
        allow_synthetic_id: Legacy mode. When True a payload without an
            enrollment id gets ``axc-enroll-<epoch ms>`` instead of being
            rejected. This defeats idempotency for such payloads.
        clock: Injectable "now" for tests.
    """

    def __init__(
        self,
        allow_synthetic_id: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._allow_synthetic_id = allow_synthetic_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def normalize(self, raw_payload: Any) -> EnrollmentEvent:
        """Normalize a webhook body.

        Raises:
            MissingRequiredField: No enrollment id (unless synthetic ids are
                allowed) or neither an email nor an external contact id.
        """
        if not isinstance(raw_payload, dict):
            raise MissingRequiredField(["enrollmentId", "email or externalContactId"])

        received_at = self._clock()
        missing: list[str] = []

        enrollment_id = _as_text(first_defined(raw_payload, ENROLLMENT_ID_PATHS))
        synthetic = False
        if enrollment_id is None:
            if self._allow_synthetic_id:
                enrollment_id = f"axc-enroll-{int(received_at.timestamp() * 1000)}"
                synthetic = True
                logger.warning("normalizer.synthetic_enrollment_id", enrollment_id=enrollment_id)
            else:
                missing.append("enrollmentId")

        email = _as_text(first_defined(raw_payload, EMAIL_PATHS))
        external_contact_id = _as_text(first_defined(raw_payload, EXTERNAL_CONTACT_ID_PATHS))
        if email is None and external_contact_id is None:
            missing.append("email or externalContactId")

        if missing:
            logger.info("normalizer.rejected", missing=missing)
            raise MissingRequiredField(missing)

        first_name = _as_text(first_defined(raw_payload, FIRST_NAME_PATHS))
        last_name = _as_text(first_defined(raw_payload, LAST_NAME_PATHS))
        student_name = _as_text(first_defined(raw_payload, STUDENT_NAME_PATHS))
        if student_name is None and (first_name or last_name):
            student_name = " ".join(p for p in (first_name, last_name) if p)

        course_code = _as_text(first_defined(raw_payload, COURSE_CODE_PATHS)) or DEFAULT_COURSE_CODE
        course_name = _as_text(first_defined(raw_payload, COURSE_NAME_PATHS)) or course_code
        amount = _first_parsed(raw_payload, AMOUNT_PATHS, parse_amount)
        enrolled_at = _first_parsed(raw_payload, ENROLLED_AT_PATHS, parse_timestamp)

        return EnrollmentEvent(
            enrollment_id=enrollment_id,
            email=email.lower() if email else None,
            external_contact_id=external_contact_id,
            first_name=first_name,
            last_name=last_name,
            student_name=student_name or DEFAULT_STUDENT_NAME,
            course_code=course_code,
            course_name=course_name,
            course_amount=amount if amount is not None else Decimal("0"),
            enrolled_at=enrolled_at or received_at,
            utm_source=_as_text(first_defined(raw_payload, UTM_SOURCE_PATHS)),
            utm_medium=_as_text(first_defined(raw_payload, UTM_MEDIUM_PATHS)),
            utm_campaign=_as_text(first_defined(raw_payload, UTM_CAMPAIGN_PATHS)),
            synthetic_id=synthetic,
        )
