# tests/test_x402_protocol.py
"""
Unit tests for x402 wire format helpers.
"""
import json
import pytest
from unittest.mock import MagicMock

from x402.encoding import safe_base64_decode, safe_base64_encode

from app.services.content_store import build_sample_records
from app.x402.challenge import generate_challenge
from app.x402.protocol import (
    X402_VERSION,
    create_402_response,
    decode_payment_header,
    encode_payment_response,
    get_client_ip,
)

REQUESTER = "0x" + "cd" * 32


def encode(payload) -> str:
    return safe_base64_encode(json.dumps(payload).encode("utf-8"))


class Test402Response:
    """Test the Payment Required body."""

    def test_body(self, deployed):
        challenge = generate_challenge(build_sample_records()[1], REQUESTER)

        response = create_402_response(challenge, resource="/api/v1/content/content_2")

        assert response.status_code == 402
        body = json.loads(response.body)
        assert body["x402Version"] == X402_VERSION
        assert body["error"] == "Payment required"
        assert len(body["accepts"]) == 1
        assert body["accepts"][0]["maxAmountRequired"] == "200000000"
        assert body["challenge"]["contentId"] == "content_2"


class TestPaymentHeader:
    """Test X-PAYMENT decoding."""

    def test_flat_payload(self):
        header = encode({"transactionBytes": "dHg=", "signature": "c2ln", "publicKey": "cGs="})
        assert decode_payment_header(header) == {
            "transactionBytes": "dHg=",
            "signature": "c2ln",
            "publicKey": "cGs=",
        }

    def test_nested_payload(self):
        """x402 clients nest scheme data under 'payload'."""
        header = encode({
            "x402Version": 1,
            "scheme": "exact",
            "network": "sui:testnet",
            "payload": {"transactionBytes": "dHg=", "signature": "c2ln", "publicKey": "cGs="},
        })
        assert decode_payment_header(header)["signature"] == "c2ln"

    def test_missing_fields_are_none(self):
        """Field presence is checked later by request validation."""
        decoded = decode_payment_header(encode({"signature": "c2ln"}))
        assert decoded["transactionBytes"] is None

    @pytest.mark.parametrize("header", [
        "not base64 at all %%%",
        safe_base64_encode(b"not json"),
        encode([1, 2, 3]),
    ])
    def test_undecodable(self, header):
        assert decode_payment_header(header) is None

    def test_response_header_roundtrip(self):
        encoded = encode_payment_response({"status": "success", "digest": "D"})
        assert json.loads(safe_base64_decode(encoded)) == {"status": "success", "digest": "D"}


class TestClientIp:
    """Test client IP extraction."""

    def _request(self, headers, host="10.0.0.1"):
        request = MagicMock()
        request.headers = headers
        request.client.host = host
        return request

    def test_forwarded_for_first_hop(self):
        assert get_client_ip(self._request({"X-Forwarded-For": "1.2.3.4, 10.0.0.2"})) == "1.2.3.4"

    def test_real_ip(self):
        assert get_client_ip(self._request({"X-Real-IP": " 5.6.7.8 "})) == "5.6.7.8"

    def test_direct(self):
        assert get_client_ip(self._request({})) == "10.0.0.1"
