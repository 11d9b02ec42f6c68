# app/x402/audit.py
"""
Audit logging for payments and payouts.

Every payment verdict, proxied call and payout is appended to a JSON-lines
file so that the gaps the gateway cannot close transactionally (a payout
whose earning reset failed, a paid call whose usage log failed) leave a
trail for reconciliation.

Log format: JSON lines (one event per line)
Log location: Configured via AUDIT_LOG_PATH

Writing an audit event never raises; failures are reported to the
application log instead.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_FAILED = "payment_failed"
    SIGNATURE_REPLAYED = "signature_replayed"
    UPSTREAM_CALLED = "upstream_called"
    USAGE_LOG_FAILED = "usage_log_failed"
    EARNING_CREDITED = "earning_credited"
    PAYOUT_SENT = "payout_sent"
    PAYOUT_FAILED = "payout_failed"
    PAYOUT_UNCONFIRMED = "payout_unconfirmed"
    EARNING_RESET_FAILED = "earning_reset_failed"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    return Path(settings.AUDIT_LOG_PATH)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    api_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Build the structured event written to the audit log."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "api_id": api_id,
        "client_ip": client_ip,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    api_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an event to the audit log.

    Returns:
        The request_id used for this event, or None on error
    """
    event = create_audit_event(
        event_type=event_type,
        data=data,
        api_id=api_id,
        client_ip=client_ip,
        request_id=request_id
    )

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event, default=_json_default) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write audit event {event_type.value}: {e}")
        return None


# Convenience functions for specific event types

def log_payment_required_sent(
    api_id: str,
    recipient: Optional[str],
    amount: Decimal,
    token: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response."""
    return log_audit_event(
        AuditEventType.PAYMENT_REQUIRED_SENT,
        {"recipient": recipient, "amount": amount, "token": token},
        api_id=api_id,
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_verified(
    api_id: str,
    signature: str,
    amount: Decimal,
    block_time: Optional[int],
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_VERIFIED,
        {"signature": signature, "amount": amount, "block_time": block_time},
        api_id=api_id,
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_failed(
    api_id: str,
    signature: str,
    reason: str,
    message: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_FAILED,
        {"signature": signature, "reason": reason, "message": message},
        api_id=api_id,
        client_ip=client_ip,
        request_id=request_id
    )


def log_signature_replayed(
    api_id: str,
    signature: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a rejected reuse of an already consumed payment signature."""
    return log_audit_event(
        AuditEventType.SIGNATURE_REPLAYED,
        {"signature": signature},
        api_id=api_id,
        client_ip=client_ip,
        request_id=request_id
    )


def log_upstream_called(
    api_id: str,
    endpoint: str,
    status: int,
    latency_ms: int,
    error: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.UPSTREAM_CALLED,
        {"endpoint": endpoint, "status": status, "latency_ms": latency_ms, "error": error},
        api_id=api_id,
        request_id=request_id
    )


def log_usage_log_failed(
    api_id: str,
    signature: Optional[str],
    error: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """The upstream call went through but its usage entry could not be stored."""
    return log_audit_event(
        AuditEventType.USAGE_LOG_FAILED,
        {"signature": signature, "error": error},
        api_id=api_id,
        request_id=request_id
    )


def log_earning_credited(
    api_id: str,
    amount: Decimal,
    signature: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.EARNING_CREDITED,
        {"amount": amount, "signature": signature},
        api_id=api_id,
        request_id=request_id
    )


def log_payout_sent(
    api_id: str,
    to: str,
    amount: Decimal,
    signature: str,
    explorer: str
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYOUT_SENT,
        {"to": to, "amount": amount, "signature": signature, "explorer": explorer},
        api_id=api_id
    )


def log_payout_failed(
    api_id: str,
    to: str,
    amount: Decimal,
    error: str
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYOUT_FAILED,
        {"to": to, "amount": amount, "error": error},
        api_id=api_id
    )


def log_payout_unconfirmed(
    api_id: str,
    to: str,
    amount: Decimal,
    signature: str,
    error: str
) -> Optional[str]:
    """The transfer was submitted but never confirmed; it may still settle."""
    return log_audit_event(
        AuditEventType.PAYOUT_UNCONFIRMED,
        {"to": to, "amount": amount, "signature": signature, "error": error, "action": "manual reconciliation required"},
        api_id=api_id
    )


def log_earning_reset_failed(
    api_id: str,
    amount: Decimal,
    signature: str,
    error: str
) -> Optional[str]:
    """Tokens were sent but the listing still shows the paid-out earning."""
    return log_audit_event(
        AuditEventType.EARNING_RESET_FAILED,
        {"amount": amount, "signature": signature, "error": error, "action": "manual reconciliation required"},
        api_id=api_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    api_id: Optional[str] = None
) -> list:
    """
    Read entries from the audit log.

    Returns:
        List of audit events (most recent first)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if api_id and event.get("api_id") != api_id:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """Event counts and date range of the audit log."""
    log_path = get_audit_log_path()
    if not log_path.exists():
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(log_path),
            "log_exists": False,
        }

    events_by_type: Dict[str, int] = {}
    total = 0
    first_timestamp = None
    last_timestamp = None

    with open(log_path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            total += 1
            kind = event.get("event_type", "unknown")
            events_by_type[kind] = events_by_type.get(kind, 0) + 1
            timestamp = event.get("timestamp")
            if timestamp:
                if first_timestamp is None:
                    first_timestamp = timestamp
                last_timestamp = timestamp

    return {
        "total_events": total,
        "events_by_type": events_by_type,
        "first_event": first_timestamp,
        "last_event": last_timestamp,
        "log_path": str(log_path),
        "log_exists": True,
    }
