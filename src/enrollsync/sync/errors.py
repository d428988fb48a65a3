"""Domain error hierarchy for the enrollment sync workflow.

Every error carries an HTTP status code and a machine-readable code so the
API layer can translate it without knowing which component raised it.
AssociationWarning is the exception: it is logged by the deal synthesizer
and never propagates.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for errors surfaced by the sync components."""

    status_code: int = 500
    code: str = "sync_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "error": self.message, "code": self.code, **self.details}


class ValidationError(SyncError):
    status_code = 400
    code = "validation_error"


class MissingRequiredField(ValidationError):
    """Inbound payload lacks an enrollment id or a student identity."""

    code = "missing_required_field"

    def __init__(self, fields: list[str]) -> None:
        super().__init__(f"Missing required fields: {', '.join(fields)}")
        self.fields = fields


class UnmappedContact(SyncError):
    """External contact id has no mapping and no email to fall back on."""

    status_code = 404
    code = "unmapped_contact"

    def __init__(self, external_contact_id: str) -> None:
        super().__init__(
            f"No CRM contact mapped for external contact id {external_contact_id}",
            externalContactId=external_contact_id,
        )
        self.external_contact_id = external_contact_id


class UnknownSyncRecord(SyncError):
    status_code = 404
    code = "unknown_sync_record"


class SyncInProgress(SyncError):
    """Another delivery of the same enrollment currently holds the claim."""

    status_code = 409
    code = "sync_in_progress"

    def __init__(self, enrollment_id: str) -> None:
        super().__init__(
            f"Enrollment {enrollment_id} is already being processed",
            enrollmentId=enrollment_id,
        )
        self.enrollment_id = enrollment_id


class CrmApiError(SyncError):
    """CRM returned an error or could not be reached."""

    status_code = 502
    code = "crm_api_error"

    def __init__(self, message: str, crm_status: int | None = None, operation: str = "") -> None:
        super().__init__(message, crmStatus=crm_status, operation=operation)
        self.crm_status = crm_status
        self.operation = operation


class AuthError(SyncError):
    """No usable CRM access token, or the CRM rejected it."""

    status_code = 401
    code = "auth_error"


class ExternalApiError(SyncError):
    """The student-management system rejected a status update."""

    status_code = 502
    code = "external_api_error"


class AssociationWarning(SyncError):
    """Deal was created but the contact association call failed."""

    code = "association_warning"
