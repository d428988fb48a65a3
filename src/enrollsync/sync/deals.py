"""Deal synthesizer -- builds CRM deal properties from enrollment data and creates the deal.

Property rules:
- dealname: "<student name> – <course code>" (en dash)
- amount: course amount in minor units, round half away from zero, as an
  integer string
- closedate: today (UTC) + 30 days, YYYY-MM-DD
- dealstage / pipeline: from configuration

Association to the contact is best effort: a failure is logged as an
AssociationWarning and the deal id is still returned. No idempotency here;
the sync ledger one layer up guarantees a deal is created at most once per
enrollment.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, localcontext

import structlog

from src.enrollsync.sync.crm.gateway import CRMGateway
from src.enrollsync.sync.errors import AssociationWarning, AuthError, CrmApiError
from src.enrollsync.sync.schemas import DealFields, DealResult

logger = structlog.get_logger(__name__)

CLOSE_DATE_OFFSET_DAYS = 30


def amount_to_minor_units(amount: Decimal | int | float | str) -> str:
    """Major-unit amount to an integer string of minor units (x100, half-up)."""
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, len(value.as_tuple().digits) + max(value.adjusted(), 0) + 4)
        cents = (value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return str(int(cents))


def build_deal_name(student_name: str | None, course_code: str | None) -> str:
    return f"{student_name or 'Unknown'} – {course_code or 'UNKNOWN-COURSE'}"


def close_date_for(today: date) -> str:
    return (today + timedelta(days=CLOSE_DATE_OFFSET_DAYS)).isoformat()


class DealSynthesizer:
    """Creates CRM deals for enrollments.

    Args:
        gateway: CRM gateway.
        pipeline: Pipeline id new deals are placed in.
        stage: Initial deal stage id.
        send_enrollment_properties: Also send course_name/student_email
            custom properties (they must exist in the CRM portal).
        today: Injectable date provider for tests.
    """

    def __init__(
        self,
        gateway: CRMGateway,
        pipeline: str = "default",
        stage: str = "negotiation",
        send_enrollment_properties: bool = False,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._gateway = gateway
        self._pipeline = pipeline
        self._stage = stage
        self._send_enrollment_properties = send_enrollment_properties
        self._today = today or (lambda: datetime.now(timezone.utc).date())

    def build_properties(self, fields: DealFields) -> dict[str, str]:
        properties = {
            "dealname": build_deal_name(fields.student_name, fields.course_code),
            "amount": amount_to_minor_units(fields.course_amount),
            "dealstage": self._stage,
            "pipeline": self._pipeline,
            "closedate": close_date_for(self._today()),
        }
        if self._send_enrollment_properties:
            if fields.course_name:
                properties["course_name"] = fields.course_name
            if fields.student_email:
                properties["student_email"] = fields.student_email
        return properties

    async def create_deal(self, contact_id: str | None, fields: DealFields) -> DealResult:
        """Create the deal and associate it to ``contact_id`` when given.

        Raises:
            CrmApiError: Deal creation failed.
            AuthError: No usable CRM token.
        """
        properties = self.build_properties(fields)
        deal_id = await self._gateway.create_deal(properties)

        associated = False
        if contact_id is not None:
            try:
                await self._gateway.associate_deal_contact(deal_id, contact_id)
                associated = True
            except (CrmApiError, AuthError) as exc:
                warning = AssociationWarning(
                    f"Deal {deal_id} created but association to contact {contact_id} failed: {exc}"
                )
                logger.warning(
                    "deals.association_failed",
                    deal_id=deal_id,
                    contact_id=contact_id,
                    error=warning.message,
                )

        return DealResult(
            deal_id=deal_id,
            deal_name=properties["dealname"],
            associated=associated,
        )
