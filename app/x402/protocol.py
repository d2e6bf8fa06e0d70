# app/x402/protocol.py
"""
x402 wire format helpers.

- 402 response body: {"x402Version": 1, "error": ..., "accepts": [...]}
- X-PAYMENT request header: base64 JSON carrying the signed transaction
  (transactionBytes, signature, publicKey); an alternative to a JSON body
- X-PAYMENT-RESPONSE response header: base64 JSON of the execution result

Uses the official x402 Python SDK for the header encoding.
"""
import json
import logging
from typing import Any, Dict, Optional

from starlette.requests import Request
from starlette.responses import JSONResponse

from x402.encoding import safe_base64_decode, safe_base64_encode

from app.x402.challenge import AccessChallenge

logger = logging.getLogger(__name__)

# x402 protocol constants
X402_VERSION = 1
X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


def create_402_response(
    challenge: AccessChallenge,
    resource: str,
    error_message: str = "Payment required"
) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response for a challenge.

    Args:
        challenge: The access challenge to advertise
        resource: URL or path of the gated resource
        error_message: Error message for the response

    Returns:
        JSONResponse with 402 status and payment details
    """
    response_body = {
        "x402Version": X402_VERSION,
        "error": error_message,
        "accepts": [challenge.to_payment_requirements(resource)],
        "challenge": challenge.model_dump(by_alias=True),
    }

    return JSONResponse(
        status_code=402,
        content=response_body,
        headers={"Content-Type": "application/json"}
    )


def decode_payment_header(header_value: str) -> Optional[Dict[str, Any]]:
    """
    Decode the X-PAYMENT header into a signed transaction dict.

    Accepts either the fields at the top level or nested under "payload",
    as x402 clients wrap scheme-specific data.

    Args:
        header_value: Base64-encoded JSON payload

    Returns:
        Dict with transactionBytes, signature and publicKey, or None if the
        header cannot be decoded
    """
    try:
        # safe_base64_decode returns str, not bytes
        decoded_str = safe_base64_decode(header_value)
        if decoded_str is None:
            logger.warning("Failed to decode X-PAYMENT header: invalid base64")
            return None

        payload = json.loads(decoded_str)
        if not isinstance(payload, dict):
            logger.warning("X-PAYMENT header is not a JSON object")
            return None

        if isinstance(payload.get("payload"), dict):
            payload = payload["payload"]

        return {
            "transactionBytes": payload.get("transactionBytes"),
            "signature": payload.get("signature"),
            "publicKey": payload.get("publicKey"),
        }

    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse X-PAYMENT header JSON: {e}")
        return None
    except (TypeError, ValueError) as e:
        logger.warning(f"Failed to decode X-PAYMENT header: {e}")
        return None


def encode_payment_response(result: Dict[str, Any]) -> str:
    """
    Encode an execution result for the X-PAYMENT-RESPONSE header.

    Args:
        result: JSON-serializable execution result

    Returns:
        Base64-encoded JSON string
    """
    response_json = json.dumps(result)
    return safe_base64_encode(response_json.encode("utf-8"))


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"
