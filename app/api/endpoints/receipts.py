# app/api/endpoints/receipts.py
from fastapi import APIRouter, HTTPException, Path, status
from typing import Any
import logging

from app.api.models.receipt import ReceiptDetails, ReceiptListResponse
from app.x402.errors import InvalidInput, Unavailable, UpstreamQueryFailed
from app.x402.receipts import list_receipts

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get(
    "/{address}",
    response_model=ReceiptListResponse,
    summary="List Access Receipts Owned by an Address"
)
def get_receipts(
    address: str = Path(..., description="Sui address that owns the receipts.")
) -> Any:
    """
    Lists every AccessReceipt object owned by ``address``, in the order the
    ledger returns them.

    Raises:
        HTTPException: 400 for an invalid address, 502 if the ledger query
            fails, 503 when no package is deployed
    """
    try:
        receipts = list_receipts(address)
    except InvalidInput as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except Unavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    except UpstreamQueryFailed as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Could not fetch receipts from the Sui fullnode: {e.message}"
        )

    return ReceiptListResponse(
        address=address,
        receipts=[
            ReceiptDetails(
                id=receipt.id,
                contentId=receipt.content_id,
                contentTitle=receipt.content_title,
                pricePaid=receipt.price_paid,
                timestamp=receipt.timestamp,
            )
            for receipt in receipts
        ],
        total_count=len(receipts)
    )
