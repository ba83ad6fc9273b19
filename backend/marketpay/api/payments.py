"""
Payments API Endpoints

Checkout initiation, payment confirmation (client poll, gateway webhook,
gateway redirect callback) and the caller's payment history.
"""
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any, Optional
import logging

from ..db.init_db import get_db
from ..exceptions import PaymentNotFoundError
from ..models.identity import Identity
from ..models.payments import PaymentInitializeRequest, PaymentStatus, VerifyRequest
from ..services import checkout_service, payment_service
from .deps import get_client_ip, get_identity

logger = logging.getLogger(__name__)

router = APIRouter()

# Webhook responses must never be cached by intermediaries
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "Cache-Control": "no-store",
}


@router.post("/payments/initialize")
async def initialize_payment_endpoint(
    body: PaymentInitializeRequest,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """
    Create a payment intent and open a gateway checkout.

    Request Body:
        {
            "amount": int,  # minor currency units
            "currency": str,
            "payment_type": "order" | "subscription",
            "metadata": {...} | null,  # subscription details
            "idempotency_key": str | null
        }

    Returns:
        {
            "success": true,
            "checkout_url": str,
            "tx_ref": str,
            "payment_id": int,
            "cached": bool  # true when an earlier intent for the key was reused
        }
    """
    return await checkout_service.initialize_checkout(
        db,
        identity,
        amount=body.amount,
        currency=body.currency,
        payment_type=body.payment_type,
        metadata=body.metadata,
        idempotency_key=body.idempotency_key,
    )


@router.get("/payments/verify")
async def verify_payment_endpoint(
    tx_ref: str = Query(..., min_length=1, description="Transaction reference"),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """
    Client poll after returning from the gateway.

    Asks the gateway for the transaction status and applies it. Safe to
    call any number of times.
    """
    logger.info(f"Verifying payment: {tx_ref}")
    return await checkout_service.verify_and_update(db, tx_ref)


@router.post("/payments/verify")
async def verify_payment_post_endpoint(
    body: VerifyRequest,
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    logger.info(f"Verifying payment: {body.tx_ref}")
    return await checkout_service.verify_and_update(db, body.tx_ref)


@router.post("/payments/webhook")
async def payment_webhook_endpoint(
    request: Request,
    db: AsyncSession = Depends(get_db)
) -> JSONResponse:
    """
    Signed gateway webhook.

    Headers:
        X-Gateway-Signature: hex HMAC-SHA256 of the raw body (optional "sha256=" prefix)
        X-Gateway-Timestamp: send time in ms (optional)

    Duplicate deliveries return {"success": true, "message": "Already processed"}.
    """
    raw_body = await request.body()

    result = await checkout_service.process_webhook(
        db,
        raw_body,
        signature=request.headers.get("x-gateway-signature"),
        timestamp=request.headers.get("x-gateway-timestamp"),
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return JSONResponse(content=result, headers=SECURITY_HEADERS)


@router.get("/payments/webhook")
async def payment_redirect_callback_endpoint(
    request: Request,
    tx_ref: Optional[str] = Query(default=None),
    trx_ref: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db)
) -> JSONResponse:
    """
    Unsigned GET callback from the gateway.

    The status query parameter is recorded but never trusted; the gateway
    is asked directly.
    """
    reference = tx_ref or trx_ref
    if not reference:
        return JSONResponse(
            status_code=400,
            content={"error_code": "validation:failed", "message": "Missing transaction reference", "details": {}},
            headers=SECURITY_HEADERS,
        )

    result = await checkout_service.process_redirect_callback(
        db,
        reference,
        query_status=status,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return JSONResponse(content=result, headers=SECURITY_HEADERS)


@router.get("/payments")
async def list_payments_endpoint(
    status: Optional[PaymentStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """Caller's payments, newest first."""
    payments = await payment_service.list_user_payments(db, identity, status=status, limit=limit)
    return {"payments": payments, "count": len(payments)}


@router.get("/payments/by-ref/{tx_ref}")
async def get_payment_by_ref_endpoint(
    tx_ref: str,
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """Status lookup used by the payment-complete page."""
    payment = await payment_service.get_by_tx_ref(db, tx_ref)
    if payment is None:
        raise PaymentNotFoundError(details={"tx_ref": tx_ref})

    return {
        "tx_ref": payment.tx_ref,
        "status": payment.status,
        "payment_type": payment.payment_type,
        "amount": payment.amount,
        "currency": payment.currency,
        "order_id": payment.order_id,
        "subscription_id": payment.subscription_id,
    }


@router.get("/payments/{payment_id}")
async def get_payment_endpoint(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """Payment detail with the first order it produced (owner only)."""
    return await payment_service.get_payment_with_order(db, identity, payment_id)
