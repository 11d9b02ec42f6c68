# app/x402/gateway.py
"""
Pay-per-call proxy in front of provider APIs.

Request lifecycle:
    Received -> MetadataResolved -> PaymentVerified -> Forwarded -> Logged
with terminal rejections for a missing cid, unknown API, missing payment
or a payment that does not verify.

A verified signature is consumed before the call is forwarded, so each
on-chain payment buys exactly one upstream call.
"""
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional

from app.core.config import settings
from app.core.errors import (
    ConfigurationError,
    InputValidationError,
    PaymentRequiredError,
    PaymentVerificationError,
    PersistenceError,
    UpstreamError,
)
from app.api.models.listing import ApiMetadata
from app.api.models.usage import UsageLogEntry
from app.services.ipfs import get_api_metadata
from app.services.keygen import generate_api_key_from_uuid
from app.services.storage import Storage
from app.services.upstream import UpstreamResult, check_upstream_health, forward_call
from app.x402 import audit
from app.x402.verifier import PaymentVerifier, VerificationFailure, VerificationResult

logger = logging.getLogger(__name__)


class CallState(Enum):
    RECEIVED = "received"
    METADATA_RESOLVED = "metadata_resolved"
    PAYMENT_VERIFIED = "payment_verified"
    FORWARDED = "forwarded"
    LOGGED = "logged"


@dataclass
class CallResult:
    cid: str
    state: CallState
    upstream: UpstreamResult
    verification: VerificationResult
    amount: Decimal

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": self.upstream.ok,
            "data": self.upstream.body,
            "upstreamStatus": self.upstream.status,
            "payment": {
                "signature": self.verification.signature,
                "amount": float(self.amount),
                "verified": True,
            },
        }


class ProxyGateway:
    """Orchestrates metadata lookup, payment verification, forwarding and usage logging."""

    def __init__(
        self,
        storage: Storage,
        verifier: Optional[PaymentVerifier] = None,
        metadata_loader: Callable[[str], ApiMetadata] = get_api_metadata,
    ):
        self.storage = storage
        self._verifier = verifier
        self.metadata_loader = metadata_loader

    @property
    def verifier(self) -> PaymentVerifier:
        if self._verifier is None:
            self._verifier = PaymentVerifier()
        return self._verifier

    @staticmethod
    def recipient() -> str:
        recipient = settings.SOLANA_PAYMENT_WALLET
        if not recipient:
            raise ConfigurationError("SOLANA_PAYMENT_WALLET not configured")
        return recipient

    def resolve(self, cid: Optional[str]) -> ApiMetadata:
        if not cid or not cid.strip():
            raise InputValidationError("Missing CID", code="MissingCid")
        return self.metadata_loader(cid.strip())

    @staticmethod
    def require_price(metadata: ApiMetadata) -> Decimal:
        # Only a positive price can be paid and verified
        if metadata.costPerRequest <= 0:
            raise InputValidationError("API has no per-call price", code="InvalidPrice")
        return metadata.costPerRequest

    def payment_instructions(self, metadata: ApiMetadata) -> Dict[str, Any]:
        return {
            "recipient": self.recipient(),
            "amount": float(metadata.costPerRequest),
            "token": settings.PAYMENT_TOKEN_SYMBOL,
            "tokenMint": settings.usdc_mint,
        }

    def payment_info(self, cid: Optional[str]) -> Dict[str, Any]:
        """Payment requirements a caller needs to build a payment transaction."""
        metadata = self.resolve(cid)
        self.require_price(metadata)
        return {
            "paymentRequired": True,
            **self.payment_instructions(metadata),
            "apiCid": cid,
            "requestId": str(uuid.uuid4()),
            "description": f"Payment for {metadata.name or 'API'} call",
        }

    def call(
        self,
        cid: Optional[str],
        signature: Optional[str] = None,
        request_id: Optional[str] = None,
        payload: Any = None,
        client_ip: Optional[str] = None,
    ) -> CallResult:
        """
        Run one paid call through the gateway.

        Raises:
            InputValidationError: Missing cid, unpriced API or malformed signature
            NotFoundError: Unknown API
            PaymentRequiredError: No signature supplied
            PaymentVerificationError: Signature did not verify or was already used
            UpstreamError: The provider could not be reached (the call is still logged)
        """
        logger.debug(f"Call {request_id or '-'} for {cid}: {CallState.RECEIVED.value}")
        metadata = self.resolve(cid)
        cid = cid.strip()
        logger.debug(f"Call {request_id or '-'} for {cid}: {CallState.METADATA_RESOLVED.value}")

        cost = self.require_price(metadata)
        if not signature:
            instructions = self.payment_instructions(metadata)
            audit.log_payment_required_sent(
                cid, instructions["recipient"], cost, instructions["token"],
                client_ip=client_ip, request_id=request_id,
            )
            raise PaymentRequiredError(instructions)

        verification = self.verifier.verify(
            signature,
            self.recipient(),
            cost,
            settings.PAYMENT_MAX_AGE_SECONDS,
        )
        if not verification.valid:
            logger.warning(f"Payment {signature} for {cid} rejected: {verification.message}")
            audit.log_payment_failed(
                cid, signature, verification.error.value, verification.message,
                client_ip=client_ip, request_id=request_id,
            )
            raise PaymentVerificationError(verification.error.value, verification.message)

        listing = self.storage.get_listing_by_cid(cid)
        api_id = listing.id if listing else metadata.internal_id

        if not self.storage.consume_signature(signature, api_id):
            logger.warning(f"Payment signature {signature} was already used")
            audit.log_signature_replayed(cid, signature, client_ip=client_ip, request_id=request_id)
            raise PaymentVerificationError(
                VerificationFailure.ALREADY_CONSUMED.value,
                "Payment signature has already been used",
            )

        audit.log_payment_verified(
            cid, signature, verification.amount, verification.timestamp,
            client_ip=client_ip, request_id=request_id,
        )
        logger.debug(f"Call {request_id or '-'} for {cid}: {CallState.PAYMENT_VERIFIED.value}")

        access_key = generate_api_key_from_uuid(metadata.id)
        upstream = forward_call(metadata.endpoint, payload, access_key)
        audit.log_upstream_called(
            cid, metadata.endpoint, upstream.status, upstream.latency_ms,
            error=upstream.error, request_id=request_id,
        )
        logger.debug(f"Call {request_id or '-'} for {cid}: {CallState.FORWARDED.value}")

        self._record_usage(cid, api_id, upstream, signature, cost, request_id)
        if listing is not None and upstream.ok:
            self._credit_earning(cid, cost, signature, request_id)

        if upstream.error is not None:
            raise UpstreamError("API call failed", details=upstream.error)

        return CallResult(
            cid=cid,
            state=CallState.LOGGED,
            upstream=upstream,
            verification=verification,
            amount=cost,
        )

    def _record_usage(
        self,
        cid: str,
        api_id: Optional[str],
        upstream: UpstreamResult,
        signature: str,
        amount: Decimal,
        request_id: Optional[str],
    ) -> None:
        if not api_id:
            logger.warning(f"No listing id for {cid}; usage not logged")
            return

        entry = UsageLogEntry(
            apiId=api_id,
            responseStatus=upstream.status,
            responseTimeMs=upstream.latency_ms,
            paymentSignature=signature,
            paymentAmount=amount,
        )
        try:
            self.storage.append_usage(entry)
        except PersistenceError as e:
            logger.error(f"Failed to log usage for {api_id} (payment {signature}): {e}")
            audit.log_usage_log_failed(api_id, signature, str(e), request_id=request_id)

    def _credit_earning(self, cid: str, amount: Decimal, signature: str, request_id: Optional[str]) -> None:
        try:
            if self.storage.increment_earning(cid, amount):
                audit.log_earning_credited(cid, amount, signature, request_id=request_id)
        except PersistenceError as e:
            logger.error(f"Failed to credit {amount} to {cid} (payment {signature}): {e}")
            audit.log_audit_event(
                audit.AuditEventType.ERROR,
                {"error_type": "earning_credit_failed", "amount": amount, "signature": signature, "error": str(e)},
                api_id=cid,
                request_id=request_id,
            )

    def health(self, cid: Optional[str]) -> str:
        """Upstream reachability for a listed API: "online" or "offline"."""
        metadata = self.resolve(cid)
        return check_upstream_health(metadata.endpoint, generate_api_key_from_uuid(metadata.id))
