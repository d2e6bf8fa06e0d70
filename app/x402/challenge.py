# app/x402/challenge.py
"""
Payment challenge generation.

A challenge tells a requester what to pay, to whom and through which Move
call. Price and recipient come straight from the content record; the call
target is fixed by configuration. Apart from the nonce and expiry the
result depends only on its inputs, so asking twice yields the same terms.

Configuration is loaded from app/core/config.py:
- PACKAGE_ID, X402_MOVE_MODULE, X402_PURCHASE_FUNCTION: call target
- X402_COIN_TYPE: asset the price is denominated in
- X402_CHALLENGE_TTL_SECONDS: how long a challenge stays fresh
"""
import logging
import secrets
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from app.core.config import settings
from app.services.content_store import ContentRecord
from app.x402.chain import is_valid_sui_address, network_id, purchase_target
from app.x402.errors import InvalidInput

logger = logging.getLogger(__name__)


class AccessChallenge(BaseModel):
    """Terms under which a requester can buy access to one content item."""
    content_id: str = Field(..., alias="contentId")
    title: str
    price: int = Field(..., description="Price in the smallest unit of the coin type (MIST).")
    recipient: str = Field(..., description="Creator address receiving the payment.")
    target: str = Field(..., description="Move call that pays and mints the access receipt.")
    network: str
    coin_type: str = Field(..., alias="coinType")
    requester: str
    sponsor: Optional[str] = Field(None, description="Gas sponsor address, null when requesters pay gas.")
    nonce: str
    expires_at: int = Field(..., alias="expiresAt", description="Unix timestamp (seconds).")
    max_timeout_seconds: int = Field(..., alias="maxTimeoutSeconds")

    class Config:
        populate_by_name = True

    def to_payment_requirements(self, resource: str) -> Dict[str, Any]:
        """Render the challenge as one entry of an x402 ``accepts`` list."""
        return {
            "scheme": "exact",
            "network": self.network,
            "maxAmountRequired": str(self.price),
            "resource": resource,
            "description": self.title,
            "mimeType": "application/json",
            "payTo": self.recipient,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "asset": self.coin_type,
            "extra": {
                "contentId": self.content_id,
                "target": self.target,
                "arguments": [self.content_id],
                "requester": self.requester,
                "sponsor": self.sponsor,
                "nonce": self.nonce,
                "expiresAt": self.expires_at,
            },
        }


def generate_challenge(
    content: ContentRecord,
    requester_address: str,
    sponsor_address: Optional[str] = None,
    now: Optional[float] = None
) -> AccessChallenge:
    """
    Build the payment challenge for a (content, requester) pair.

    Args:
        content: Catalog record being sold
        requester_address: Sui address that will sign the purchase
        sponsor_address: Gas sponsor to advertise, if sponsorship is enabled
        now: Current Unix time (defaults to time.time())

    Returns:
        AccessChallenge with a fresh nonce and expiry

    Raises:
        InvalidInput: If requester_address is not a Sui address
        Unavailable: If no package is deployed
    """
    if not is_valid_sui_address(requester_address):
        raise InvalidInput(f"Invalid Sui address: {requester_address!r}")

    target = purchase_target()
    ttl = settings.X402_CHALLENGE_TTL_SECONDS
    issued_at = int(now if now is not None else time.time())

    challenge = AccessChallenge(
        content_id=content.id,
        title=content.title,
        price=content.price,
        recipient=content.creator,
        target=target,
        network=network_id(),
        coin_type=settings.X402_COIN_TYPE,
        requester=requester_address,
        sponsor=sponsor_address,
        nonce=secrets.token_hex(16),
        expires_at=issued_at + ttl,
        max_timeout_seconds=ttl,
    )

    logger.info(
        f"x402: Challenge for content={content.id} requester={requester_address}: "
        f"{content.price} to {content.creator} via {target}"
    )
    return challenge
