"""
Admin API Endpoints

Refunds, subscription and payment listings, subscription status
overrides, the payment audit trail and manual maintenance runs. Every endpoint requires an admin caller.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any, Optional
import logging

from ..config import settings
from ..db.init_db import get_db
from ..exceptions import ValidationError
from ..models.identity import Identity
from ..models.payments import RefundRequest
from ..models.subscriptions import Subscription, SubscriptionStatus, SubscriptionStatusUpdate
from ..services import audit_service, payment_service, payout_service, refund_service, subscription_service, webhook_service
from ..services.identity_service import require_admin
from .deps import get_identity

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/refunds")
async def refund_endpoint(
    body: RefundRequest,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """
    Refund a successful payment through the gateway and record it.

    Request Body:
        {
            "payment_id": int,
            "amount": int | null,  # omit for a full refund
            "reason": str | null
        }
    """
    return await refund_service.process_refund(
        db, identity, body.payment_id, amount=body.amount, reason=body.reason
    )


@router.get("/payments/subscriptions")
async def list_subscription_payments_endpoint(
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    payments = await payment_service.list_subscription_payments(db, identity, limit=limit)
    return {"payments": payments, "count": len(payments)}


@router.get("/subscriptions")
async def list_subscriptions_endpoint(
    status: Optional[SubscriptionStatus] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    subscriptions = await subscription_service.list_all(db, identity, status)
    return {"subscriptions": subscriptions, "count": len(subscriptions)}


@router.patch("/subscriptions/{subscription_id}/status")
async def update_subscription_status_endpoint(
    subscription_id: str,
    body: SubscriptionStatusUpdate,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Subscription:
    """Override a subscription's status, e.g. past_due after a failed renewal."""
    await require_admin(db, identity)
    return await subscription_service.update_status(db, subscription_id, body.status)

@router.get("/audit-logs")
async def audit_logs_endpoint(
    payment_id: Optional[int] = Query(default=None),
    tx_ref: Optional[str] = Query(default=None),
    action: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """Audit records by payment, by tx_ref, or the most recent ones."""
    await require_admin(db, identity)

    if payment_id is not None:
        logs = await audit_service.get_by_payment(db, payment_id)
    elif tx_ref:
        logs = await audit_service.get_by_tx_ref(db, tx_ref)
    else:
        logs = await audit_service.get_recent(db, action=action, limit=limit)

    return {"logs": logs, "count": len(logs)}


@router.post("/maintenance/webhook-cleanup")
async def webhook_cleanup_endpoint(
    older_than_days: Optional[int] = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """Delete one batch of webhook events older than the retention window."""
    await require_admin(db, identity)
    result = await webhook_service.cleanup_old_webhook_events(db, older_than_days=older_than_days)
    return result.model_dump()


@router.post("/maintenance/expire-pending")
async def expire_pending_endpoint(
    older_than_minutes: Optional[int] = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """Cancel pending intents older than the given age (or the configured TTL)."""
    await require_admin(db, identity)

    ttl = older_than_minutes or settings.pending_intent_ttl_minutes
    if not ttl:
        raise ValidationError("No pending-intent TTL configured; pass older_than_minutes")

    expired = await payment_service.expire_pending_intents(db, ttl)
    return {"expired": expired}


@router.post("/maintenance/expire-subscriptions")
async def expire_subscriptions_endpoint(
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """End lapsed trials and subscriptions cancelled at period end."""
    await require_admin(db, identity)
    return await subscription_service.process_expired_subscriptions(db)


@router.post("/maintenance/retry-payouts")
async def retry_payouts_endpoint(
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """Re-send failed payouts whose back-off has elapsed."""
    await require_admin(db, identity)
    return await payout_service.retry_failed_payouts(db)
