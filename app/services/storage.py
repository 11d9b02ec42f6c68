# app/services/storage.py
"""
Listings, usage-log and payment-signature storage.

Two interchangeable backends implement the Storage interface:
- InMemoryStorage: process-local, thread-safe, used for tests and demos
- MongoDataApiStorage: MongoDB Atlas Data API over HTTP

The backend is chosen once from STORAGE_BACKEND by get_storage() and
injected into routes as a FastAPI dependency.

Atomicity relies on unique `_id` keys: consumed signatures and claim
guards are inserted with the signature / cid as `_id`, so a second insert
of the same key fails instead of creating a duplicate.
"""
import json
import logging
import re
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, List, Optional

import requests
from requests.exceptions import RequestException

from app.core.config import settings
from app.core.errors import ConfigurationError, ConflictError, PersistenceError
from app.api.models.listing import ApiListing
from app.api.models.usage import UsageLogEntry

logger = logging.getLogger(__name__)

# Settlement token precision
EARNING_QUANTUM = Decimal("0.000001")

APIS_COLLECTION = "apis"
USAGE_COLLECTION = "usage_logs"
SIGNATURES_COLLECTION = "consumed_signatures"
CLAIMS_COLLECTION = "claim_locks"


def quantize_amount(value: Any) -> Decimal:
    """Normalize a token amount to 6 decimal places."""
    return Decimal(str(value)).quantize(EARNING_QUANTUM)


def normalize_owner(owner: Optional[str]) -> str:
    return (owner or "").strip()


class Storage(ABC):
    """Datastore operations used by the gateway and payout flows."""

    # --- Listings ---

    @abstractmethod
    def create_listing(self, cid: str, owner_id: Optional[str], earning: Decimal = Decimal("0")) -> ApiListing:
        """Add a listing. Raises ConflictError if the cid is already listed."""

    @abstractmethod
    def list_listings(self) -> List[ApiListing]:
        """All listings, newest first."""

    @abstractmethod
    def get_listing_by_cid(self, cid: str) -> Optional[ApiListing]:
        ...

    @abstractmethod
    def get_listings_by_owner(self, owner: str) -> List[ApiListing]:
        """Listings owned by an address (case-insensitive match)."""

    @abstractmethod
    def increment_earning(self, cid: str, amount: Decimal) -> bool:
        """Add to a listing's accrued earning. Returns False if the listing is unknown."""

    @abstractmethod
    def reset_earning(self, cid: str, expected: Decimal) -> bool:
        """Set earning to zero only if it still equals `expected`."""

    @abstractmethod
    def acquire_claim(self, cid: str) -> bool:
        """Take the per-listing payout guard. Returns False if already held."""

    @abstractmethod
    def release_claim(self, cid: str) -> None:
        ...

    # --- Usage logs ---

    @abstractmethod
    def append_usage(self, entry: UsageLogEntry) -> None:
        ...

    @abstractmethod
    def query_usage(self, api_id: str, limit: int = 1000) -> List[UsageLogEntry]:
        """Usage entries for a listing, newest first."""

    # --- Payment signatures ---

    @abstractmethod
    def consume_signature(self, signature: str, api_id: Optional[str]) -> bool:
        """Record a payment signature as spent. Returns False if it was already spent."""


class InMemoryStorage(Storage):
    """Process-local storage. Data is lost on restart."""

    def __init__(self):
        self._lock = threading.Lock()
        self._listings: Dict[str, ApiListing] = {}  # keyed by cid
        self._usage: List[UsageLogEntry] = []
        self._signatures: Dict[str, Optional[str]] = {}
        self._claims: set = set()

    def create_listing(self, cid: str, owner_id: Optional[str], earning: Decimal = Decimal("0")) -> ApiListing:
        listing = ApiListing(
            id=str(uuid.uuid4()),
            cid=cid,
            ownerId=normalize_owner(owner_id),
            earning=quantize_amount(earning),
            createdAt=datetime.now(timezone.utc),
        )
        with self._lock:
            if cid in self._listings:
                raise ConflictError(f"API {cid} is already listed", code="ListingExists")
            self._listings[cid] = listing
        logger.info(f"Stored listing {cid} in memory (id={listing.id})")
        return listing.model_copy()

    def list_listings(self) -> List[ApiListing]:
        with self._lock:
            listings = [l.model_copy() for l in self._listings.values()]
        return sorted(listings, key=lambda l: l.createdAt, reverse=True)

    def get_listing_by_cid(self, cid: str) -> Optional[ApiListing]:
        with self._lock:
            listing = self._listings.get(cid)
            return listing.model_copy() if listing else None

    def get_listings_by_owner(self, owner: str) -> List[ApiListing]:
        wanted = normalize_owner(owner).lower()
        return [l for l in self.list_listings() if l.ownerId.lower() == wanted]

    def increment_earning(self, cid: str, amount: Decimal) -> bool:
        with self._lock:
            listing = self._listings.get(cid)
            if listing is None:
                return False
            listing.earning = quantize_amount(listing.earning + quantize_amount(amount))
            return True

    def reset_earning(self, cid: str, expected: Decimal) -> bool:
        with self._lock:
            listing = self._listings.get(cid)
            if listing is None or listing.earning != quantize_amount(expected):
                return False
            listing.earning = Decimal("0")
            return True

    def acquire_claim(self, cid: str) -> bool:
        with self._lock:
            if cid in self._claims:
                return False
            self._claims.add(cid)
            return True

    def release_claim(self, cid: str) -> None:
        with self._lock:
            self._claims.discard(cid)

    def append_usage(self, entry: UsageLogEntry) -> None:
        with self._lock:
            self._usage.append(entry.model_copy())

    def query_usage(self, api_id: str, limit: int = 1000) -> List[UsageLogEntry]:
        with self._lock:
            matching = [e.model_copy() for e in self._usage if e.apiId == api_id]
        matching.sort(key=lambda e: e.timestamp, reverse=True)
        return matching[:limit]

    def consume_signature(self, signature: str, api_id: Optional[str]) -> bool:
        with self._lock:
            if signature in self._signatures:
                return False
            self._signatures[signature] = api_id
            return True


def to_ejson(value: Any) -> Any:
    """Encode decimals and datetimes as MongoDB Extended JSON."""
    if isinstance(value, Decimal):
        return {"$numberDecimal": str(value)}
    if isinstance(value, datetime):
        return {"$date": value.astimezone(timezone.utc).isoformat()}
    if isinstance(value, dict):
        return {k: to_ejson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_ejson(v) for v in value]
    return value


def from_ejson(value: Any) -> Any:
    """Decode the Extended JSON wrappers produced by the Data API."""
    if isinstance(value, dict):
        if "$numberDecimal" in value:
            return Decimal(value["$numberDecimal"])
        if "$oid" in value:
            return value["$oid"]
        if "$date" in value:
            date = value["$date"]
            if isinstance(date, dict) and "$numberLong" in date:
                return datetime.fromtimestamp(int(date["$numberLong"]) / 1000, tz=timezone.utc)
            return datetime.fromisoformat(str(date).replace("Z", "+00:00"))
        for wrapper in ("$numberInt", "$numberLong"):
            if wrapper in value:
                return int(value[wrapper])
        if "$numberDouble" in value:
            return Decimal(value["$numberDouble"])
        return {k: from_ejson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_ejson(v) for v in value]
    return value


def _is_duplicate_key(response: requests.Response) -> bool:
    text = response.text or ""
    return "E11000" in text or "DuplicateKey" in text or "duplicate key" in text


class MongoDataApiStorage(Storage):
    """
    MongoDB Atlas Data API backend.

    Every operation is a single HTTP action against the Data API, so
    compare-and-swap and insert-if-absent are atomic on the server side.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        database: str,
        data_source: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.database = database
        self.data_source = data_source
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, action: str, collection: str, body: Dict[str, Any]) -> requests.Response:
        payload = {
            "collection": collection,
            "database": self.database,
            "dataSource": self.data_source,
            **to_ejson(body),
        }
        headers = {
            "Content-Type": "application/ejson",
            "Accept": "application/ejson",
            "api-key": self.api_key,
        }
        url = f"{self.endpoint}/action/{action}"
        try:
            return self.session.post(url, data=json.dumps(payload), headers=headers, timeout=self.timeout)
        except RequestException as e:
            logger.error(f"MongoDB Data API {action} on {collection} failed: {e}")
            raise PersistenceError(f"Datastore {action} failed: {e}") from e

    def _action(self, action: str, collection: str, body: Dict[str, Any]) -> Dict[str, Any]:
        response = self._post(action, collection, body)
        try:
            response.raise_for_status()
            return from_ejson(response.json())
        except RequestException as e:
            logger.error(f"MongoDB Data API {action} on {collection} returned an error: {e}")
            raise PersistenceError(f"Datastore {action} failed: {e}") from e
        except ValueError as e:
            raise PersistenceError(f"Datastore {action} returned invalid JSON: {e}") from e

    def _insert_unique(self, collection: str, document: Dict[str, Any]) -> bool:
        response = self._post("insertOne", collection, {"document": document})
        if response.status_code >= 400 and _is_duplicate_key(response):
            return False
        try:
            response.raise_for_status()
        except RequestException as e:
            raise PersistenceError(f"Datastore insertOne failed: {e}") from e
        return True

    @staticmethod
    def _to_listing(doc: Dict[str, Any]) -> ApiListing:
        return ApiListing(
            id=str(doc.get("_id")),
            cid=doc["cid"],
            ownerId=normalize_owner(doc.get("ownerId")),
            earning=quantize_amount(doc.get("earning") or 0),
            createdAt=doc.get("createdAt") or datetime.now(timezone.utc),
        )

    def create_listing(self, cid: str, owner_id: Optional[str], earning: Decimal = Decimal("0")) -> ApiListing:
        document = {
            "cid": cid,
            "ownerId": normalize_owner(owner_id),
            "earning": quantize_amount(earning),
            "createdAt": datetime.now(timezone.utc),
        }
        # Insert only if no listing has this cid yet
        result = self._action(
            "updateOne",
            APIS_COLLECTION,
            {"filter": {"cid": cid}, "update": {"$setOnInsert": document}, "upsert": True},
        )
        if not result.get("upsertedId"):
            raise ConflictError(f"API {cid} is already listed", code="ListingExists")
        return self._to_listing({**document, "_id": result["upsertedId"]})

    def list_listings(self) -> List[ApiListing]:
        result = self._action("find", APIS_COLLECTION, {"filter": {}, "sort": {"createdAt": -1}})
        return [self._to_listing(doc) for doc in result.get("documents", [])]

    def get_listing_by_cid(self, cid: str) -> Optional[ApiListing]:
        result = self._action("findOne", APIS_COLLECTION, {"filter": {"cid": cid}})
        doc = result.get("document")
        return self._to_listing(doc) if doc else None

    def get_listings_by_owner(self, owner: str) -> List[ApiListing]:
        pattern = f"^{re.escape(normalize_owner(owner))}$"
        result = self._action(
            "find",
            APIS_COLLECTION,
            {"filter": {"ownerId": {"$regex": pattern, "$options": "i"}}, "sort": {"createdAt": -1}},
        )
        return [self._to_listing(doc) for doc in result.get("documents", [])]

    def increment_earning(self, cid: str, amount: Decimal) -> bool:
        result = self._action(
            "updateOne",
            APIS_COLLECTION,
            {"filter": {"cid": cid}, "update": {"$inc": {"earning": quantize_amount(amount)}}},
        )
        return result.get("matchedCount", 0) == 1

    def reset_earning(self, cid: str, expected: Decimal) -> bool:
        expected = quantize_amount(expected)
        result = self._action(
            "updateOne",
            APIS_COLLECTION,
            {
                # Listings written by older clients hold earning as a double
                "filter": {"cid": cid, "earning": {"$in": [expected, float(expected)]}},
                "update": {"$set": {"earning": Decimal("0")}},
            },
        )
        return result.get("modifiedCount", 0) == 1

    def acquire_claim(self, cid: str) -> bool:
        return self._insert_unique(CLAIMS_COLLECTION, {"_id": cid, "createdAt": datetime.now(timezone.utc)})

    def release_claim(self, cid: str) -> None:
        self._action("deleteOne", CLAIMS_COLLECTION, {"filter": {"_id": cid}})

    def append_usage(self, entry: UsageLogEntry) -> None:
        self._action("insertOne", USAGE_COLLECTION, {"document": entry.model_dump(exclude_none=True)})

    def query_usage(self, api_id: str, limit: int = 1000) -> List[UsageLogEntry]:
        result = self._action(
            "find",
            USAGE_COLLECTION,
            {"filter": {"apiId": api_id}, "sort": {"timestamp": -1}, "limit": limit},
        )
        entries = []
        for doc in result.get("documents", []):
            doc.pop("_id", None)
            entries.append(UsageLogEntry.model_validate(doc))
        return entries

    def consume_signature(self, signature: str, api_id: Optional[str]) -> bool:
        return self._insert_unique(
            SIGNATURES_COLLECTION,
            {"_id": signature, "apiId": api_id, "consumedAt": datetime.now(timezone.utc)},
        )


@lru_cache()
def get_storage() -> Storage:
    """Build the configured storage backend once per process."""
    backend = settings.STORAGE_BACKEND.lower()
    if backend == "memory":
        logger.warning("Using in-memory storage (data will be lost on restart)")
        return InMemoryStorage()
    if backend == "mongodb":
        if not settings.MONGODB_ENDPOINT or not settings.MONGODB_API_KEY:
            raise ConfigurationError("STORAGE_BACKEND=mongodb requires MONGODB_ENDPOINT and MONGODB_API_KEY")
        return MongoDataApiStorage(
            endpoint=settings.MONGODB_ENDPOINT,
            api_key=settings.MONGODB_API_KEY,
            database=settings.MONGODB_DATABASE_NAME,
            data_source=settings.MONGODB_DATA_SOURCE,
            timeout=settings.MONGODB_TIMEOUT_SECONDS,
        )
    raise ConfigurationError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND}")
