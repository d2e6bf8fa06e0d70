# app/api/models/receipt.py
from pydantic import BaseModel, Field
from typing import List


class ReceiptDetails(BaseModel):
    """
    An AccessReceipt object owned by an address.
    """
    id: str = Field(..., description="Object id of the receipt.")
    contentId: str = Field(..., description="Content the receipt grants access to.")
    contentTitle: str
    pricePaid: int = Field(..., description="Amount paid, in MIST.")
    timestamp: int = Field(..., description="Purchase time as recorded on-chain (ms).")


class ReceiptListResponse(BaseModel):
    """Response model for listing an address's receipts."""
    address: str
    receipts: List[ReceiptDetails]
    total_count: int
