"""Tests for StatusMapping tables and the StatusBridge in both directions."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from src.enrollsync.sync.crm.gateway import CRMGateway
from src.enrollsync.sync.errors import ExternalApiError, UnknownSyncRecord
from src.enrollsync.sync.external.axcelerate import AxcelerateClient
from src.enrollsync.sync.ledger import SyncLedger
from src.enrollsync.sync.schemas import SyncRecordRead, SyncStatus, SyncType
from src.enrollsync.sync.status_bridge import StatusBridge, StatusMapping, extract_stage_changes


def _record(**overrides) -> SyncRecordRead:
    defaults = {
        "id": 1,
        "type": SyncType.ENROLLMENT_TO_DEAL,
        "enrollment_id": "E1",
        "deal_id": "901",
        "status": SyncStatus.SUCCESS,
    }
    defaults.update(overrides)
    return SyncRecordRead(**defaults)


# ── Mapping Tables ──────────────────────────────────────────────────────────


class TestStatusMapping:
    @pytest.fixture
    def mapping(self) -> StatusMapping:
        return StatusMapping()

    @pytest.mark.parametrize(
        ("stage", "expected"),
        [
            ("appointmentscheduled", "Tentative"),
            ("qualifiedtobuy", "Tentative"),
            ("presentationscheduled", "Tentative"),
            ("decisionmakerboughtin", "Tentative"),
            ("contractsent", "Pending"),
            ("negotiation", "Pending"),
            ("closedwon", "Confirmed"),
            ("closedlost", "Cancelled"),
        ],
    )
    def test_crm_stage_to_external(self, mapping, stage, expected):
        assert mapping.crm_stage_to_external_status(stage) == expected

    def test_lookup_is_case_insensitive(self, mapping):
        assert mapping.crm_stage_to_external_status("ClosedWon") == "Confirmed"
        assert mapping.external_status_to_crm_status("ACTIVE") == "Active"

    @pytest.mark.parametrize("unknown", ["1234567", "", None, "custom_stage"])
    def test_unknown_stage_uses_default(self, mapping, unknown):
        assert mapping.crm_stage_to_external_status(unknown) == "Tentative"

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            ("active", "Active"),
            ("completed", "Completed"),
            ("paused", "Paused"),
            ("cancelled", "Cancelled"),
            ("pending", "Pending"),
            ("inactive", "Inactive"),
            ("withdrawn", "Pending"),
        ],
    )
    def test_external_to_crm_status(self, mapping, status, expected):
        assert mapping.external_status_to_crm_status(status) == expected

    def test_inverse_stage_lookup(self, mapping):
        assert mapping.external_status_to_crm_stage("Confirmed") == "closedwon"
        assert mapping.external_status_to_crm_stage("Cancelled") == "closedlost"
        assert mapping.external_status_to_crm_stage("???") == "appointmentscheduled"

    def test_custom_file_and_reload(self, tmp_path):
        config_file = tmp_path / "mapping.json"
        base = {
            "crm_stage_to_external_status": {"closedwon": "Enrolled"},
            "external_status_to_crm_status": {"active": "Live"},
            "external_status_to_crm_stage": {"active": "closedwon"},
        }
        config_file.write_text(json.dumps(base))
        mapping = StatusMapping(path=str(config_file))
        assert mapping.crm_stage_to_external_status("closedwon") == "Enrolled"

        base["crm_stage_to_external_status"]["closedwon"] = "Confirmed"
        config_file.write_text(json.dumps(base))
        mapping.reload()
        assert mapping.crm_stage_to_external_status("closedwon") == "Confirmed"

    def test_invalid_reload_keeps_previous_tables(self, tmp_path):
        config_file = tmp_path / "mapping.json"
        config_file.write_text(
            json.dumps(
                {
                    "crm_stage_to_external_status": {"closedwon": "Enrolled"},
                    "external_status_to_crm_status": {},
                    "external_status_to_crm_stage": {},
                }
            )
        )
        mapping = StatusMapping(path=str(config_file))
        config_file.write_text("{not json")

        with pytest.raises(ValueError):
            mapping.reload()
        assert mapping.crm_stage_to_external_status("closedwon") == "Enrolled"


# ── Notification Parsing ────────────────────────────────────────────────────


class TestExtractStageChanges:
    def test_simple_body(self):
        assert extract_stage_changes({"dealId": 901, "stage": "closedwon"}) == [("901", "closedwon")]

    def test_hubspot_event_array_filters_non_stage_events(self):
        events = [
            {"subscriptionType": "deal.propertyChange", "objectId": 901, "propertyName": "dealstage", "propertyValue": "closedwon"},
            {"subscriptionType": "deal.propertyChange", "objectId": 902, "propertyName": "amount", "propertyValue": "100"},
            {"subscriptionType": "deal.creation", "objectId": 903},
        ]
        assert extract_stage_changes(events) == [("901", "closedwon")]

    def test_incomplete_body(self):
        assert extract_stage_changes({"dealId": "901"}) == []

    def test_single_event_for_other_property_is_ignored(self):
        event = {"objectId": 42, "propertyName": "amount", "propertyValue": "500"}
        assert extract_stage_changes(event) == []

    def test_single_stage_event(self):
        event = {
            "subscriptionType": "deal.propertyChange",
            "objectId": 42,
            "propertyName": "dealstage",
            "propertyValue": "closedwon",
        }
        assert extract_stage_changes(event) == [("42", "closedwon")]

    def test_single_event_of_other_subscription_is_ignored(self):
        event = {"subscriptionType": "deal.creation", "objectId": 42, "propertyName": "dealstage", "propertyValue": "x"}
        assert extract_stage_changes(event) == []


# ── Bridge ──────────────────────────────────────────────────────────────────


@pytest.fixture
def ledger():
    return AsyncMock(spec=SyncLedger)


@pytest.fixture
def gateway():
    return AsyncMock(spec=CRMGateway)


@pytest.fixture
def external():
    return AsyncMock(spec=AxcelerateClient)


@pytest.fixture
def bridge(ledger, gateway, external):
    return StatusBridge(StatusMapping(), ledger, gateway, external, status_property="enrollment_status")


class TestCrmToExternal:
    async def test_closedwon_confirms_enrollment(self, bridge, ledger, external):
        ledger.find_by_deal_id.return_value = _record()

        result = await bridge.handle_crm_stage_change("901", "closedwon")

        external.update_enrollment_status.assert_awaited_once_with("E1", "Confirmed")
        ledger.record_enrollment_status.assert_awaited_once_with("E1", "Confirmed")
        assert result["externalStatus"] == "Confirmed"

    async def test_unknown_deal(self, bridge, ledger, external):
        ledger.find_by_deal_id.return_value = None

        with pytest.raises(UnknownSyncRecord) as exc_info:
            await bridge.handle_crm_stage_change("404", "closedwon")

        assert exc_info.value.status_code == 404
        external.update_enrollment_status.assert_not_called()

    async def test_external_failure_propagates_without_recording(self, bridge, ledger, external):
        ledger.find_by_deal_id.return_value = _record()
        external.update_enrollment_status.side_effect = ExternalApiError("down")

        with pytest.raises(ExternalApiError):
            await bridge.handle_crm_stage_change("901", "closedlost")
        ledger.record_enrollment_status.assert_not_called()


class TestExternalToCrm:
    async def test_status_property_patched_without_dealstage(self, bridge, ledger, gateway):
        ledger.find_by_enrollment_id.return_value = _record()

        result = await bridge.handle_external_status_change("E1", "completed")

        gateway.update_deal.assert_awaited_once_with("901", {"enrollment_status": "Completed"})
        properties = gateway.update_deal.call_args[0][1]
        assert "dealstage" not in properties
        assert result["crmStatus"] == "Completed"
        assert result["suggestedStage"] == "closedwon"

    async def test_unknown_enrollment(self, bridge, ledger, gateway):
        ledger.find_by_enrollment_id.return_value = None

        with pytest.raises(UnknownSyncRecord):
            await bridge.handle_external_status_change("E404", "active")
        gateway.update_deal.assert_not_called()

    async def test_record_without_deal_is_unknown(self, bridge, ledger, gateway):
        ledger.find_by_enrollment_id.return_value = _record(deal_id=None, status=SyncStatus.ERROR)

        with pytest.raises(UnknownSyncRecord):
            await bridge.handle_external_status_change("E1", "active")
