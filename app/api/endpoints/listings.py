# app/api/endpoints/listings.py
from fastapi import APIRouter, Depends, HTTPException, Path
import logging

from app.api.deps import storage_dependency
from app.api.models.listing import (
    EarningsRequest,
    EarningsResponse,
    ListingOut,
    ListingsResponse,
    StoreListingRequest,
    StoreListingResponse,
)
from app.api.models.usage import UsageRecordOut, UsageResponse
from app.core.errors import InputValidationError, PersistenceError
from app.services.solana_ledger import is_valid_address
from app.services.storage import Storage

logger = logging.getLogger(__name__)

router = APIRouter()

USAGE_QUERY_LIMIT = 1000


@router.post("/store-listing", response_model=StoreListingResponse)
def store_listing(
    body: StoreListingRequest,
    storage: Storage = Depends(storage_dependency),
) -> StoreListingResponse:
    """Record a newly published API listing. A cid that is already listed is refused with 409."""
    try:
        listing = storage.create_listing(body.cid.strip(), body.ownerId, body.earning)
        logger.info(f"Stored listing {listing.cid} for owner {listing.ownerId or '-'}")
        return StoreListingResponse(id=listing.id)
    except PersistenceError as e:
        logger.error(f"Error storing API: {e}")
        raise HTTPException(status_code=500, detail="Failed to store API")


@router.get("/listings", response_model=ListingsResponse)
def get_listings(storage: Storage = Depends(storage_dependency)) -> ListingsResponse:
    """All listings, newest first."""
    try:
        listings = storage.list_listings()
    except PersistenceError as e:
        logger.error(f"Error fetching listings: {e}")
        raise HTTPException(status_code=500, detail="Could not read APIs from database")
    logger.info(f"Fetching listings: {len(listings)} APIs")
    return ListingsResponse(listings=[ListingOut.from_listing(l) for l in listings])


@router.post("/earnings", response_model=EarningsResponse)
def get_earnings(
    body: EarningsRequest,
    storage: Storage = Depends(storage_dependency),
) -> EarningsResponse:
    """Listings (with accrued earnings) owned by a Solana address."""
    if not is_valid_address(body.address):
        raise InputValidationError("Invalid Solana address", code="InvalidAddress")
    try:
        listings = storage.get_listings_by_owner(body.address)
    except PersistenceError as e:
        logger.error(f"Error fetching earnings for {body.address}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch earnings")
    return EarningsResponse(apiIds=[ListingOut.from_listing(l) for l in listings])


@router.get("/usage/{api_id}", response_model=UsageResponse)
def get_usage(
    api_id: str = Path(..., description="Internal listing id"),
    storage: Storage = Depends(storage_dependency),
) -> UsageResponse:
    """Recent usage of a listing, newest first."""
    try:
        logs = storage.query_usage(api_id, USAGE_QUERY_LIMIT)
    except PersistenceError as e:
        logger.error(f"Error fetching usage logs for {api_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch usage logs")

    usage = [
        UsageRecordOut(
            timestamp=log.timestamp,
            responseStatus=log.responseStatus,
            responseTimeMs=log.responseTimeMs,
        )
        for log in logs
    ]
    return UsageResponse(apiId=api_id, usage=usage, usageCount=len(logs))
