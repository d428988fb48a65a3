"""Unit tests for the webhook normalizer.

Covers every supported field-path variant, precedence between variants,
defaults for secondary fields, and the hard validation failures.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from src.enrollsync.sync.errors import MissingRequiredField
from src.enrollsync.sync.normalizer import (
    WebhookNormalizer,
    first_defined,
    parse_amount,
    parse_timestamp,
    path,
)

FIXED_NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def normalizer() -> WebhookNormalizer:
    return WebhookNormalizer(clock=lambda: FIXED_NOW)


# ── Combinator ──────────────────────────────────────────────────────────────


class TestFirstDefined:
    def test_first_present_wins(self):
        payload = {"a": "one", "b": {"c": "two"}}
        assert first_defined(payload, (path("a"), path("b.c"))) == "one"

    def test_skips_none_and_blank(self):
        payload = {"a": None, "b": "   ", "c": "value"}
        assert first_defined(payload, (path("a"), path("b"), path("c"))) == "value"

    def test_zero_is_present(self):
        assert first_defined({"amount": 0}, (path("amount"),)) == 0

    def test_missing_everywhere_returns_none(self):
        assert first_defined({"x": {"y": 1}}, (path("x.z"), path("q"))) is None

    def test_path_through_non_dict_is_absent(self):
        assert first_defined({"student": "alice"}, (path("student.email"),)) is None


# ── Field Variants ──────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "payload",
    [
        {"id": "E1", "email": "a@x.com"},
        {"enrollmentId": "E1", "email": "a@x.com"},
        {"enrolmentId": "E1", "email": "a@x.com"},
        {"enrolment_id": "E1", "email": "a@x.com"},
        {"data": {"id": "E1"}, "email": "a@x.com"},
        {"properties": {"enrollment_id": "E1"}, "email": "a@x.com"},
        {"message": {"enrolment": {"id": "E1"}}, "email": "a@x.com"},
        {"messageId": "E1", "email": "a@x.com"},
    ],
)
def test_enrollment_id_variants(normalizer, payload):
    assert normalizer.normalize(payload).enrollment_id == "E1"


def test_numeric_enrollment_id_becomes_string(normalizer):
    assert normalizer.normalize({"id": 4417, "email": "a@x.com"}).enrollment_id == "4417"


@pytest.mark.parametrize(
    "payload",
    [
        {"id": "E1", "email": "a@x.com"},
        {"id": "E1", "student": {"email": "a@x.com"}},
        {"id": "E1", "contact": {"email": "a@x.com"}},
        {"id": "E1", "properties": {"email": "a@x.com"}},
        {"id": "E1", "properties": {"student_email": "a@x.com"}},
        {"id": "E1", "message": {"enrolment": {"student": {"email": "A@X.com"}}}},
    ],
)
def test_email_variants(normalizer, payload):
    assert normalizer.normalize(payload).email == "a@x.com"


@pytest.mark.parametrize(
    "payload",
    [
        {"id": "E1", "externalContactId": "AXC1"},
        {"id": "E1", "contactId": "AXC1"},
        {"id": "E1", "student": {"contactId": "AXC1"}},
        {"id": "E1", "contact": {"contactId": "AXC1"}},
        {"id": "E1", "message": {"enrolment": {"student": {"contactId": "AXC1"}}}},
    ],
)
def test_external_contact_id_variants(normalizer, payload):
    event = normalizer.normalize(payload)
    assert event.external_contact_id == "AXC1"
    assert event.email is None


@pytest.mark.parametrize(
    "payload",
    [
        {"id": "E1", "email": "a@x.com", "courseCode": "JS101"},
        {"id": "E1", "email": "a@x.com", "course": {"code": "JS101"}},
        {
            "id": "E1",
            "email": "a@x.com",
            "message": {"enrolment": {"class": {"qualification": {"code": "JS101"}}}},
        },
        {"id": "E1", "email": "a@x.com", "course": {"name": "JS101"}},
        {"id": "E1", "email": "a@x.com", "product": {"name": "JS101"}},
        {"id": "E1", "email": "a@x.com", "data": {"course": {"name": "JS101"}}},
        {"id": "E1", "email": "a@x.com", "properties": {"course_name": "JS101"}},
    ],
)
def test_course_code_variants(normalizer, payload):
    assert normalizer.normalize(payload).course_code == "JS101"


@pytest.mark.parametrize(
    "payload",
    [
        {"id": "E1", "email": "a@x.com", "amount": 199},
        {"id": "E1", "email": "a@x.com", "course": {"price": 199}},
        {"id": "E1", "email": "a@x.com", "properties": {"amount": "199"}},
        {"id": "E1", "email": "a@x.com", "data": {"course": {"price": "199.00"}}},
        {"id": "E1", "email": "a@x.com", "message": {"enrolment": {"class": {"cost": "$199"}}}},
    ],
)
def test_amount_variants(normalizer, payload):
    assert normalizer.normalize(payload).course_amount == Decimal("199")


@pytest.mark.parametrize(
    "payload",
    [
        {"id": "E1", "email": "a@x.com", "studentName": "Ada Lovelace"},
        {"id": "E1", "email": "a@x.com", "student": {"name": "Ada Lovelace"}},
        {"id": "E1", "email": "a@x.com", "contact": {"name": "Ada Lovelace"}},
        {"id": "E1", "email": "a@x.com", "properties": {"firstname": "Ada", "lastname": "Lovelace"}},
        {"id": "E1", "email": "a@x.com", "firstName": "Ada", "lastName": "Lovelace"},
    ],
)
def test_student_name_variants(normalizer, payload):
    assert normalizer.normalize(payload).student_name == "Ada Lovelace"


# ── Precedence ──────────────────────────────────────────────────────────────


class TestPrecedence:
    def test_top_level_id_beats_nested(self, normalizer):
        event = normalizer.normalize({"id": "top", "data": {"id": "nested"}, "email": "a@x.com"})
        assert event.enrollment_id == "top"

    def test_first_match_is_not_merged(self, normalizer):
        event = normalizer.normalize(
            {"id": "E1", "email": "first@x.com", "student": {"email": "second@x.com"}}
        )
        assert event.email == "first@x.com"

    def test_blank_candidate_falls_through(self, normalizer):
        event = normalizer.normalize({"id": "E1", "email": "", "student": {"email": "b@x.com"}})
        assert event.email == "b@x.com"

    def test_unparseable_amount_falls_through(self, normalizer):
        event = normalizer.normalize(
            {"id": "E1", "email": "a@x.com", "amount": "free", "course": {"price": 50}}
        )
        assert event.course_amount == Decimal("50")


# ── Defaults ────────────────────────────────────────────────────────────────


class TestDefaults:
    def test_secondary_fields_default(self, normalizer):
        event = normalizer.normalize({"id": "E1", "email": "a@x.com"})
        assert event.student_name == "Unknown"
        assert event.course_code == "UNKNOWN-COURSE"
        assert event.course_name == "UNKNOWN-COURSE"
        assert event.course_amount == Decimal("0")
        assert event.enrolled_at == FIXED_NOW
        assert event.utm_source is None

    def test_course_name_prefers_class_name_after_course_paths(self, normalizer):
        event = normalizer.normalize(
            {
                "id": "E1",
                "email": "a@x.com",
                "message": {
                    "enrolment": {
                        "class": {"name": "Intro to JS", "qualification": {"code": "JS101"}}
                    }
                },
            }
        )
        assert event.course_code == "JS101"
        assert event.course_name == "Intro to JS"

    def test_enrolled_at_parsed(self, normalizer):
        event = normalizer.normalize(
            {"id": "E1", "email": "a@x.com", "enrolledAt": "2026-02-14T10:00:00Z"}
        )
        assert event.enrolled_at == datetime(2026, 2, 14, 10, 0, tzinfo=timezone.utc)

    def test_utm_fields_extracted(self, normalizer):
        event = normalizer.normalize(
            {
                "id": "E1",
                "email": "a@x.com",
                "utm_source": "google",
                "utmMedium": "cpc",
                "properties": {"utm_campaign": "spring"},
            }
        )
        assert (event.utm_source, event.utm_medium, event.utm_campaign) == ("google", "cpc", "spring")


# ── Validation ──────────────────────────────────────────────────────────────


class TestValidation:
    def test_missing_identity_rejected(self, normalizer):
        with pytest.raises(MissingRequiredField) as exc_info:
            normalizer.normalize({"id": "E1", "course": {"name": "JS101", "price": 199}})
        assert exc_info.value.fields == ["email or externalContactId"]
        assert exc_info.value.status_code == 400

    def test_missing_enrollment_id_rejected_by_default(self, normalizer):
        with pytest.raises(MissingRequiredField) as exc_info:
            normalizer.normalize({"email": "a@x.com"})
        assert "enrollmentId" in exc_info.value.fields

    def test_both_missing_listed(self, normalizer):
        with pytest.raises(MissingRequiredField) as exc_info:
            normalizer.normalize({"course": {"name": "JS101"}})
        assert exc_info.value.fields == ["enrollmentId", "email or externalContactId"]
        assert exc_info.value.message.startswith("Missing required fields:")

    def test_non_object_payload_rejected(self, normalizer):
        with pytest.raises(MissingRequiredField):
            normalizer.normalize([{"id": "E1"}])

    def test_synthetic_id_when_allowed(self):
        normalizer = WebhookNormalizer(allow_synthetic_id=True, clock=lambda: FIXED_NOW)
        event = normalizer.normalize({"email": "a@x.com"})
        assert event.enrollment_id == f"axc-enroll-{int(FIXED_NOW.timestamp() * 1000)}"
        assert event.synthetic_id is True


# ── Parsers ─────────────────────────────────────────────────────────────────


class TestParsers:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            (199, Decimal("199")),
            (19.99, Decimal("19.99")),
            ("1,299.50", Decimal("1299.50")),
            ("$45", Decimal("45")),
            ("abc", None),
            (True, None),
            ("NaN", None),
            (float("nan"), None),
            (float("inf"), None),
            (Decimal("NaN"), None),
            (Decimal("-Infinity"), None),
            ("12345678901234567890123456789", None),
            (10**10, None),
            ("9999999999.99", Decimal("9999999999.99")),
        ],
    )
    def test_parse_amount(self, raw, expected):
        assert parse_amount(raw) == expected

    def test_out_of_range_price_falls_back_to_zero(self, normalizer):
        event = normalizer.normalize(
            {"id": "E1", "email": "a@x.com", "course": {"name": "JS101", "price": "1" * 40}}
        )
        assert event.course_amount == Decimal("0")

    def test_parse_timestamp_epoch_millis(self):
        assert parse_timestamp(1767225600000) == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_parse_timestamp_naive_iso_assumed_utc(self):
        assert parse_timestamp("2026-01-01T00:00:00") == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_parse_timestamp_garbage(self):
        assert parse_timestamp("yesterday") is None
