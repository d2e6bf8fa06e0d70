# tests/test_x402_access.py
"""
Unit tests for the receipt-based access gate.
"""
import pytest
from unittest.mock import MagicMock
from requests.exceptions import Timeout

from app.services.sui_rpc import LedgerRpcError
from app.x402.access import check_access
from app.x402.audit import AuditEventType, read_audit_log
from app.x402.errors import Unavailable

REQUESTER = "0x" + "cd" * 32


def receipt_object(object_id, content_id):
    return {
        "objectId": object_id,
        "content": {
            "dataType": "moveObject",
            "fields": {
                "content_id": content_id,
                "content_title": list(b"title"),
                "price_paid": "100000000",
                "timestamp": "1700000000000",
            },
        },
    }


def ledger_with(*objects):
    client = MagicMock()
    client.query_owned_objects_by_shape.return_value = list(objects)
    return client


class TestCheckAccess:
    """Test the 402-vs-200 decision."""

    def test_no_receipts_means_no_access(self, deployed):
        assert check_access("content_1", REQUESTER, client=ledger_with()) is False

    def test_matching_receipt_grants_access(self, deployed):
        client = ledger_with(receipt_object("0xr1", "content_1"))
        assert check_access("content_1", REQUESTER, client=client) is True

    def test_receipt_for_other_content_does_not(self, deployed):
        client = ledger_with(receipt_object("0xr2", "content_2"))
        assert check_access("content_1", REQUESTER, client=client) is False

    def test_any_of_many_receipts(self, deployed):
        """One matching receipt among several is enough."""
        client = ledger_with(
            receipt_object("0xr2", "content_2"),
            receipt_object("0xr3", "content_3"),
            receipt_object("0xr1", "content_1"),
        )
        assert check_access("content_1", REQUESTER, client=client) is True

    def test_repeated_checks_agree(self, deployed):
        """Access checks are read-only and stable."""
        client = ledger_with(receipt_object("0xr1", "content_1"))
        results = {check_access("content_1", REQUESTER, client=client) for _ in range(3)}
        assert results == {True}


class TestFailClosed:
    """Ledger trouble never grants access."""

    @pytest.mark.parametrize("error", [
        Timeout("read timed out"),
        LedgerRpcError("suix_getOwnedObjects: internal error"),
    ])
    def test_ledger_failure_denies_access(self, deployed, error):
        client = MagicMock()
        client.query_owned_objects_by_shape.side_effect = error

        assert check_access("content_1", REQUESTER, client=client, request_id="r1") is False

    def test_failure_is_audited(self, deployed):
        client = MagicMock()
        client.query_owned_objects_by_shape.side_effect = Timeout("read timed out")

        check_access("content_1", REQUESTER, client=client, request_id="r1")

        events = read_audit_log(event_type=AuditEventType.ACCESS_CHECK_FAILED)
        assert len(events) == 1
        assert events[0]["request_id"] == "r1"
        assert events[0]["wallet_address"] == REQUESTER
        assert events[0]["data"]["content_id"] == "content_1"


class TestBootstrapSafety:
    """An undeployed gateway refuses without touching the ledger."""

    def test_unavailable_without_package(self):
        client = MagicMock()

        with pytest.raises(Unavailable):
            check_access("content_1", REQUESTER, client=client)

        client.query_owned_objects_by_shape.assert_not_called()
