# app/x402/chain.py
"""
Sui-specific helpers shared by the gate, challenge generator and receipts.

The gateway is "bound" once PACKAGE_ID names a published Move package.
Until then every ledger-dependent operation raises Unavailable without
contacting the ledger.
"""
import logging
import re

from app.core.config import settings, PACKAGE_ID_PLACEHOLDER
from app.x402.errors import Unavailable

logger = logging.getLogger(__name__)

# 0x followed by up to 32 bytes of hex; short forms are zero-padded on the left
SUI_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{1,64}$")
SUI_ADDRESS_HEX_LENGTH = 64


def is_valid_sui_address(address: object) -> bool:
    """Check that a value is a syntactically valid Sui account address."""
    if not isinstance(address, str):
        return False
    return bool(SUI_ADDRESS_RE.match(address.strip()))


def normalize_sui_address(address: str) -> str:
    """
    Normalize a Sui address to lowercase, 0x-prefixed, 64 hex digits.

    Raises:
        ValueError: If the address is not syntactically valid
    """
    if not is_valid_sui_address(address):
        raise ValueError(f"Invalid Sui address: {address!r}")
    hex_part = address.strip()[2:].lower()
    return "0x" + hex_part.rjust(SUI_ADDRESS_HEX_LENGTH, "0")


def is_package_deployed() -> bool:
    """True when PACKAGE_ID is set to something other than the placeholder."""
    package_id = (settings.PACKAGE_ID or "").strip()
    return bool(package_id) and package_id != PACKAGE_ID_PLACEHOLDER


def require_package_id() -> str:
    """
    Return the deployed package id.

    Raises:
        Unavailable: If the gateway is still in its bootstrap state
    """
    if not is_package_deployed():
        raise Unavailable(
            "Package not deployed yet",
            details={"package_id": settings.PACKAGE_ID},
        )
    return settings.PACKAGE_ID.strip()


def receipt_struct_type() -> str:
    """Fully qualified Move type of access receipts."""
    return f"{require_package_id()}::{settings.X402_MOVE_MODULE}::{settings.X402_RECEIPT_STRUCT}"


def purchase_target() -> str:
    """Move call target that pays the creator and mints the receipt."""
    return f"{require_package_id()}::{settings.X402_MOVE_MODULE}::{settings.X402_PURCHASE_FUNCTION}"


def network_id() -> str:
    """Chain identifier in wallet-standard form, e.g. 'sui:testnet'."""
    return f"sui:{settings.SUI_NETWORK}"


def explorer_tx_url(digest: str) -> str:
    """Block explorer link for a transaction digest."""
    base = settings.EXPLORER_BASE_URL.rstrip("/")
    return f"{base}/{settings.SUI_NETWORK}/tx/{digest}"
