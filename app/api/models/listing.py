# app/api/models/listing.py
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ApiMetadata(BaseModel):
    """
    Off-chain API description published to the content-addressed store.

    Only `endpoint` and `costPerRequest` are required for proxying; display
    fields are optional and anything else is kept untouched.
    """
    # Publishers sometimes write numeric ids and names
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    endpoint: str = Field(..., description="Upstream URL the gateway forwards calls to.")
    costPerRequest: Decimal = Field(..., ge=0, description="Per-call cost in settlement-token units.")
    name: Optional[str] = Field(None, description="Display name.")
    description: Optional[str] = Field(None, description="Display description.")
    id: Optional[str] = Field(None, description="Provider-issued identifier used to derive the access key.")
    internal_id: Optional[str] = Field(None, alias="_id", description="Listing id embedded by older publishers.")

    @field_validator("endpoint")
    @classmethod
    def endpoint_must_be_http(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("endpoint must be an http(s) URL")
        return v

    @field_validator("internal_id", mode="before")
    @classmethod
    def unwrap_object_id(cls, v: Any) -> Any:
        # Extended JSON object ids arrive as {"$oid": "..."}
        if isinstance(v, dict):
            return v.get("$oid")
        return v


class ApiListing(BaseModel):
    """A listing record owned by the listings datastore."""
    id: str = Field(..., description="Internal listing id.")
    cid: str = Field(..., description="Content address of the API metadata.")
    ownerId: str = Field("", description="Provider's Solana address (payout recipient).")
    earning: Decimal = Field(Decimal("0"), ge=0, description="Accrued, unclaimed earnings in token units.")
    createdAt: datetime = Field(..., description="Creation timestamp (UTC).")


class StoreListingRequest(BaseModel):
    cid: str = Field(..., min_length=1, description="Content address of the API metadata.")
    ownerId: Optional[str] = Field(None, description="Provider's Solana address.")
    earning: Decimal = Field(Decimal("0"), ge=0)


class StoreListingResponse(BaseModel):
    success: bool = True
    id: str


class ListingOut(BaseModel):
    id: str
    cid: str
    ownerId: str
    earning: float
    createdAt: datetime

    @classmethod
    def from_listing(cls, listing: ApiListing) -> "ListingOut":
        return cls(
            id=listing.id,
            cid=listing.cid,
            ownerId=listing.ownerId,
            earning=float(listing.earning),
            createdAt=listing.createdAt,
        )


class ListingsResponse(BaseModel):
    listings: List[ListingOut]


class EarningsRequest(BaseModel):
    address: str = Field(..., min_length=1)


class EarningsResponse(BaseModel):
    apiIds: List[ListingOut]
