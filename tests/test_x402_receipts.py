# tests/test_x402_receipts.py
"""
Unit tests for AccessReceipt decoding and listing.
"""
import pytest
from unittest.mock import MagicMock
from requests.exceptions import ConnectionError as RequestsConnectionError

from app.x402.errors import InvalidInput, Unavailable, UpstreamQueryFailed
from app.x402.receipts import (
    AccessReceipt,
    decode_receipt,
    decode_title,
    list_receipts,
    same_content_id,
)

REQUESTER = "0x" + "cd" * 32


def receipt_object(object_id="0xr1", content_id="content_1", title="Understanding x402 on Sui",
                   price="100000000", timestamp="1700000000000"):
    return {
        "objectId": object_id,
        "version": "5",
        "type": "0xpkg::content_access::AccessReceipt",
        "content": {
            "dataType": "moveObject",
            "type": "0xpkg::content_access::AccessReceipt",
            "fields": {
                "id": {"id": object_id},
                "content_id": content_id,
                "content_title": list(title.encode("utf-8")),
                "price_paid": price,
                "timestamp": timestamp,
            },
        },
    }


class TestDecoding:
    """Test conversion of ledger objects into receipts."""

    def test_decode_receipt(self):
        """All fields are decoded, title bytes become text."""
        receipt = decode_receipt(receipt_object())
        assert receipt == AccessReceipt(
            id="0xr1",
            content_id="content_1",
            content_title="Understanding x402 on Sui",
            price_paid=100_000_000,
            timestamp=1_700_000_000_000,
        )

    def test_non_move_object_skipped(self):
        """Packages and objects without content are ignored."""
        assert decode_receipt({"objectId": "0x1", "content": {"dataType": "package"}}) is None
        assert decode_receipt({"objectId": "0x1"}) is None

    def test_malformed_fields_skipped(self):
        """Unparseable numbers drop the receipt instead of failing the listing."""
        assert decode_receipt(receipt_object(price="lots")) is None

    def test_unexpected_shapes_skipped(self):
        """Content or fields that are not objects drop the receipt."""
        assert decode_receipt({"objectId": "0x1", "content": "moveObject"}) is None
        assert decode_receipt({"objectId": "0x1", "content": {"dataType": "moveObject", "fields": ["content_1"]}}) is None

    def test_title_from_bytes(self):
        assert decode_title([72, 105]) == "Hi"

    def test_title_invalid_utf8_replaced(self):
        assert decode_title([0xff, 65]) == "�A"

    def test_title_already_text(self):
        assert decode_title("Hi") == "Hi"
        assert decode_title(None) == ""

    def test_object_id_content_ids_compared_normalized(self):
        """Content ids that are object ids match regardless of padding."""
        assert same_content_id("0x2", "0x" + "0" * 63 + "2")
        assert same_content_id("content_1", "content_1")
        assert not same_content_id("content_1", "content_2")


class TestListReceipts:
    """Test the receipt query service."""

    def test_lists_in_ledger_order(self, deployed):
        """Receipts are returned in the order the ledger gives them."""
        client = MagicMock()
        client.query_owned_objects_by_shape.return_value = [
            receipt_object("0xr2", "content_2"),
            {"objectId": "0xpkg", "content": {"dataType": "package"}},
            receipt_object("0xr1", "content_1"),
        ]

        receipts = list_receipts(REQUESTER, client=client)

        assert [r.id for r in receipts] == ["0xr2", "0xr1"]
        client.query_owned_objects_by_shape.assert_called_once_with(
            REQUESTER, f"{deployed}::content_access::AccessReceipt"
        )

    def test_invalid_address(self, deployed):
        client = MagicMock()
        with pytest.raises(InvalidInput):
            list_receipts("not-an-address", client=client)
        client.query_owned_objects_by_shape.assert_not_called()

    def test_not_deployed_makes_no_ledger_call(self):
        """Bootstrap state fails before the ledger is contacted."""
        client = MagicMock()
        with pytest.raises(Unavailable):
            list_receipts(REQUESTER, client=client)
        client.query_owned_objects_by_shape.assert_not_called()

    def test_ledger_failure(self, deployed):
        """Ledger errors surface as UpstreamQueryFailed."""
        client = MagicMock()
        client.query_owned_objects_by_shape.side_effect = RequestsConnectionError("down")

        with pytest.raises(UpstreamQueryFailed):
            list_receipts(REQUESTER, client=client)
