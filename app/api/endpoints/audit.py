# app/api/endpoints/audit.py
from fastapi import APIRouter, Depends, Query
from typing import Optional
import logging

from app.api.deps import verify_api_key
from app.core.errors import InputValidationError
from app.x402.audit import AuditEventType, get_audit_stats, read_audit_log

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_api_key)])


@router.get("/audit")
def list_audit_events(
    limit: int = Query(100, ge=1, le=1000, description="Maximum events to return"),
    event_type: Optional[str] = Query(None, description="e.g. earning_reset_failed"),
    api_id: Optional[str] = Query(None, description="Listing cid or id"),
):
    """
    Recent audit events, most recent first.

    Operators reconcile payouts from here: `payout_unconfirmed` and
    `earning_reset_failed` events name the listings whose claim guard is
    still held.
    """
    kind = None
    if event_type:
        try:
            kind = AuditEventType(event_type)
        except ValueError:
            raise InputValidationError(f"Unknown event type: {event_type}", code="InvalidEventType")

    events = read_audit_log(max_entries=limit, event_type=kind, api_id=api_id)
    logger.info(f"Audit query returned {len(events)} events")
    return {"events": events, "count": len(events)}


@router.get("/audit/stats")
def audit_stats():
    """Event counts and time range of the audit log."""
    return get_audit_stats()
