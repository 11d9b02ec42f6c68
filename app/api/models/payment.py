# app/api/models/payment.py
from typing import Any, Optional

from pydantic import BaseModel, Field


class PaymentInfoResponse(BaseModel):
    """What a caller must pay before calling an API."""
    paymentRequired: bool = True
    recipient: str = Field(..., description="Operator wallet that receives the payment.")
    amount: float = Field(..., description="Per-call cost in token units.")
    token: str = Field(..., example="USDC")
    tokenMint: str = Field(..., description="Settlement token mint address.")
    apiCid: str
    requestId: str
    description: str


class CallRequest(BaseModel):
    cid: Optional[str] = Field(None, description="Content address of the API metadata.")
    signature: Optional[str] = Field(None, description="Payment transaction signature.")
    requestId: Optional[str] = Field(None, description="Request id returned by payment-info.")
    data: Optional[Any] = Field(None, description="JSON payload forwarded to the API; GET when omitted.")


class PaymentReceipt(BaseModel):
    signature: str
    amount: float
    verified: bool


class CallResponse(BaseModel):
    success: bool
    data: Any = None
    upstreamStatus: int
    payment: PaymentReceipt


class ApiHealthReport(BaseModel):
    status: str = Field(..., example="online")


class ApiHealthResponse(BaseModel):
    report: ApiHealthReport


class ClaimRequest(BaseModel):
    apiId: Optional[str] = Field(None, description="Listing cid to pay out.")


class ClaimResponse(BaseModel):
    success: bool = True
    signature: str
    amount: float
    to: str
    explorer: str
    warning: Optional[str] = None


class BalanceResponse(BaseModel):
    address: str
    balance: float
    token: str


class HealthResponse(BaseModel):
    status: str
    blockchain: str = "solana"
    cluster: str
    currentSlot: int
    timestamp: str
