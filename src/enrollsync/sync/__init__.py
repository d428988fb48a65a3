"""Enrollment to CRM deal reconciliation.

Provides the webhook normalizer, contact resolver, deal synthesizer, sync
ledger, status bridge and the EnrollmentSyncWorkflow that sequences them,
plus the SQLAlchemy models and repositories backing the ledger.
"""
