# app/api/endpoints/fluxapi.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from app.api.deps import gateway_dependency, get_client_ip
from app.api.models.payment import (
    ApiHealthReport,
    ApiHealthResponse,
    CallRequest,
    CallResponse,
    PaymentInfoResponse,
)
from app.core.errors import GatewayError
from app.x402.gateway import ProxyGateway

logger = logging.getLogger(__name__)
router = APIRouter()

PAYMENT_SIGNATURE_HEADER = "X-PAYMENT-SIGNATURE"


@router.get("/fluxapi/payment-info", response_model=PaymentInfoResponse)
def get_payment_info(
    id: Optional[str] = Query(None, description="CID of the API to call"),
    gateway: ProxyGateway = Depends(gateway_dependency),
) -> PaymentInfoResponse:
    """
    Step 1 of a paid call: how much to pay, to whom, in which token.

    The caller transfers `amount` of `tokenMint` to `recipient` and submits
    the transaction signature to POST /fluxapi/.
    """
    try:
        return PaymentInfoResponse(**gateway.payment_info(id))
    except GatewayError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error building payment info for {id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch API info")


@router.post("/fluxapi/", response_model=CallResponse)
def call_api(
    request: Request,
    body: CallRequest,
    payment_signature: Optional[str] = Header(None, alias=PAYMENT_SIGNATURE_HEADER),
    gateway: ProxyGateway = Depends(gateway_dependency),
) -> CallResponse:
    """
    Step 2 of a paid call: verify the payment and proxy the request.

    Without a signature the response is 402 with the payment details.
    The signature can be sent in the body or the X-PAYMENT-SIGNATURE header.
    """
    try:
        result = gateway.call(
            cid=body.cid,
            signature=body.signature or payment_signature,
            request_id=body.requestId,
            payload=body.data,
            client_ip=get_client_ip(request),
        )
        return CallResponse(**result.to_response())
    except GatewayError:
        raise
    except Exception as e:
        logger.error(f"Request processing failed for {body.cid}: {e}")
        raise HTTPException(status_code=500, detail=f"Request processing failed: {e}")


@router.get("/api/health/{id}", response_model=ApiHealthResponse)
def get_api_health(
    id: str = Path(..., description="CID of the API to probe"),
    gateway: ProxyGateway = Depends(gateway_dependency),
) -> ApiHealthResponse:
    """Report whether a listed API's `<endpoint>/health` answers."""
    status = gateway.health(id)
    return ApiHealthResponse(report=ApiHealthReport(status=status))
