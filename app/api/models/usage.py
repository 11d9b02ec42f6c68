# app/api/models/usage.py
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class UsageLogEntry(BaseModel):
    """One proxied call. Append-only."""
    apiId: str = Field(..., description="Internal listing id the call was made against.")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    responseStatus: int = Field(..., description="HTTP status returned by the upstream (500 on network failure).")
    responseTimeMs: int = Field(..., ge=0, description="Wall-clock latency of the upstream call.")
    paymentSignature: Optional[str] = Field(None, description="Payment transaction signature, when paid.")
    paymentAmount: Optional[Decimal] = Field(None, description="Verified payment amount, when paid.")


class UsageRecordOut(BaseModel):
    timestamp: datetime
    responseStatus: int
    responseTimeMs: int


class UsageResponse(BaseModel):
    apiId: str
    usage: List[UsageRecordOut]
    usageCount: int
