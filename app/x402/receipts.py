# app/x402/receipts.py
"""
Access receipts: ledger objects minted by the purchase transaction.

A receipt owned by an address is the only proof that the address paid for
a content item. Nothing about access is stored off-chain.
"""
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from requests.exceptions import RequestException

from app.services.sui_rpc import SuiRpcClient, get_sui_client
from app.x402.chain import (
    is_valid_sui_address,
    normalize_sui_address,
    receipt_struct_type,
)
from app.x402.errors import InvalidInput, UpstreamQueryFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessReceipt:
    id: str
    content_id: str
    content_title: str
    price_paid: int
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def decode_title(raw: Any) -> str:
    """Receipt titles are stored as vector<u8>; the RPC renders them as a list of ints."""
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, (list, tuple, bytes, bytearray)):
        try:
            return bytes(raw).decode("utf-8", errors="replace")
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not decode receipt title bytes: {e}")
            return ""
    return str(raw)


def _decode_id(raw: Any) -> str:
    # ID fields render either as a plain string or as {"id": "0x..."}
    if isinstance(raw, dict):
        return str(raw.get("id", ""))
    return "" if raw is None else str(raw)


def decode_receipt(obj: Dict[str, Any]) -> Optional[AccessReceipt]:
    """
    Decode one owned-object record into an AccessReceipt.

    Returns:
        The receipt, or None if the record carries no Move object content
    """
    content = obj.get("content")
    if not isinstance(content, dict) or content.get("dataType") != "moveObject":
        return None

    fields = content.get("fields") or {}
    if not isinstance(fields, dict):
        logger.warning(f"Skipping receipt {obj.get('objectId')} with unreadable fields")
        return None
    try:
        return AccessReceipt(
            id=obj.get("objectId", ""),
            content_id=_decode_id(fields.get("content_id")),
            content_title=decode_title(fields.get("content_title")),
            price_paid=int(fields.get("price_paid", 0)),
            timestamp=int(fields.get("timestamp", 0)),
        )
    except (TypeError, ValueError) as e:
        logger.warning(f"Skipping malformed receipt {obj.get('objectId')}: {e}")
        return None


def same_content_id(left: str, right: str) -> bool:
    """Compare content ids, treating differently padded object ids as equal."""
    if left == right:
        return True
    if is_valid_sui_address(left) and is_valid_sui_address(right):
        return normalize_sui_address(left) == normalize_sui_address(right)
    return False


def list_receipts(address: str, client: Optional[SuiRpcClient] = None) -> List[AccessReceipt]:
    """
    List every access receipt owned by ``address``, in ledger order.

    Raises:
        InvalidInput: If the address is not a Sui address
        Unavailable: If no package is deployed (no ledger call is made)
        UpstreamQueryFailed: If the ledger query fails
    """
    if not is_valid_sui_address(address):
        raise InvalidInput(f"Invalid Sui address: {address!r}")

    struct_type = receipt_struct_type()
    client = client or get_sui_client()

    try:
        objects = client.query_owned_objects_by_shape(address, struct_type)
    except RequestException as e:
        logger.error(f"Failed to fetch receipts for {address}: {e}")
        raise UpstreamQueryFailed(
            f"Failed to fetch receipts: {e}",
            details={"address": address, "struct_type": struct_type},
        ) from e

    receipts = []
    for obj in objects:
        receipt = decode_receipt(obj)
        if receipt is not None:
            receipts.append(receipt)

    logger.debug(f"Found {len(receipts)} receipts for {address}")
    return receipts
