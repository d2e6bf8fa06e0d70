# app/x402/access.py
"""
Access gate for x402 content.

Decides whether a requester already holds proof of payment (an
AccessReceipt object) for a content item.

The gate fails closed: when the ledger cannot be queried the requester is
treated as not having access and is asked to pay, never served for free.
The failure is still logged and written to the audit trail.
"""
import logging
from typing import Optional

from app.services.sui_rpc import SuiRpcClient
from app.x402.audit import log_access_check_failed
from app.x402.chain import require_package_id
from app.x402.errors import UpstreamQueryFailed
from app.x402.receipts import list_receipts, same_content_id

logger = logging.getLogger(__name__)


def check_access(
    content_id: str,
    requester_address: str,
    client: Optional[SuiRpcClient] = None,
    request_id: Optional[str] = None
) -> bool:
    """
    Check if a requester owns a receipt for a content item.

    This is the main entry point for the 402-vs-200 decision.

    Args:
        content_id: Content identifier the receipt must reference
        requester_address: Sui address expected to own the receipt
        client: Ledger client (defaults to the global one)
        request_id: Request identifier for the audit trail

    Returns:
        True if at least one owned receipt references content_id.
        False if none does, or if the ledger query failed.

    Raises:
        Unavailable: If no package is deployed (no ledger call is made)
        InvalidInput: If requester_address is not a Sui address
    """
    require_package_id()

    try:
        receipts = list_receipts(requester_address, client=client)
    except UpstreamQueryFailed as e:
        logger.warning(
            f"x402: Access check failed for content={content_id} requester={requester_address}, "
            f"failing closed: {e.message}"
        )
        log_access_check_failed(
            content_id=content_id,
            requester=requester_address,
            reason=e.message,
            request_id=request_id
        )
        return False

    has_access = any(same_content_id(r.content_id, content_id) for r in receipts)
    logger.info(
        f"x402: Access check content={content_id} requester={requester_address} -> "
        f"{'granted' if has_access else 'payment required'} ({len(receipts)} receipts)"
    )
    return has_access
