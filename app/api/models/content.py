# app/api/models/content.py
from pydantic import BaseModel, Field
from typing import List, Optional


class ContentSummary(BaseModel):
    """
    Public catalog entry. Never carries the gated payload.
    """
    contentId: str = Field(..., description="Stable content identifier.")
    title: str
    description: str
    price: int = Field(..., description="Price in MIST (1 SUI = 10^9 MIST).")
    creator: str = Field(..., description="Sui address receiving payments.")
    contentUrl: str = Field(..., description="Opaque location of the content.")

    class Config:
        json_schema_extra = {
            "example": {
                "contentId": "content_1",
                "title": "Understanding x402 on Sui",
                "description": "Deep dive into how x402 protocol works on Sui blockchain",
                "price": 100000000,
                "creator": "0x1234567890abcdef1234567890abcdef12345678",
                "contentUrl": "ipfs://QmX123..."
            }
        }


class ContentListResponse(BaseModel):
    """Response model for listing the catalog."""
    contents: List[ContentSummary] = Field(..., description="Catalog entries in catalog order.")
    total_count: int = Field(..., description="Total number of entries.")


class ContentAccessResponse(ContentSummary):
    """Returned once the requester has proven access."""
    payload: str = Field(..., description="The gated content.")
    requester: str = Field(..., description="Address whose receipt granted access.")


class ContentRegisterRequest(BaseModel):
    """
    Request model for registering new content.

    Price and creator are validated by the endpoint so that bad values
    surface as 400 rather than schema errors.
    """
    contentId: str = Field(..., description="Identifier for the new content; must be unused.")
    creator: str = Field(..., description="Sui address that receives payments.")
    title: str
    description: str = ""
    contentData: str = Field(..., description="The content served after payment.")
    price: int = Field(..., description="Price in MIST; must be positive.")
    contentUrl: Optional[str] = Field(None, description="Optional external location of the content.")


class ContentRegisterResponse(BaseModel):
    """Response model for content registration."""
    contentId: str
    message: str


class SignedTransactionRequest(BaseModel):
    """
    A purchase transaction built and signed by the requester.

    All three fields are required; they are typed optional so that missing
    values are reported as 400 by the execution path.
    """
    transactionBytes: Optional[str] = Field(None, description="Base64 BCS TransactionData.")
    signature: Optional[str] = Field(None, description="Base64 Sui serialized signature (flag || sig || pubkey).")
    publicKey: Optional[str] = Field(None, description="Base64 public key of the signer.")


class ExecutionResponse(BaseModel):
    """Outcome of a sponsored (or requester-paid) execution."""
    contentId: str
    status: str = Field(..., description="'success' or 'failure'.")
    digest: Optional[str] = Field(None, description="Transaction digest, when one was assigned.")
    cause: Optional[str] = Field(None, description="Failure cause.")
    versionConflict: bool = Field(False, description="True if the sponsor gas coin was consumed concurrently.")
    sponsored: bool = Field(..., description="True if the gateway paid gas.")
    explorerUrl: Optional[str] = Field(None, description="Block explorer link for the digest.")
