"""
Subscriptions API Endpoints
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any, Optional

from ..db.init_db import get_db
from ..models.identity import Identity
from ..models.subscriptions import Subscription, SubscriptionChangePlanRequest, SubscriptionCheckoutRequest
from ..services import subscription_service
from .deps import get_identity

router = APIRouter()


@router.post("/checkout")
async def subscription_checkout_endpoint(
    body: SubscriptionCheckoutRequest,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """
    Open a checkout for a plan.

    Returns the same shape as /api/payments/initialize.
    """
    return await subscription_service.start_checkout(
        db,
        identity,
        plan_id=body.plan_id,
        billing_cycle=body.billing_cycle,
        idempotency_key=body.idempotency_key,
    )


@router.get("/current")
async def current_subscription_endpoint(
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    subscription = await subscription_service.get_current_subscription(db, identity)
    return {"subscription": subscription}


@router.post("/{subscription_id}/cancel")
async def cancel_subscription_endpoint(
    subscription_id: str,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Subscription:
    """Cancel at the end of the current period."""
    return await subscription_service.cancel(db, identity, subscription_id)


@router.post("/{subscription_id}/reactivate")
async def reactivate_subscription_endpoint(
    subscription_id: str,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Subscription:
    return await subscription_service.reactivate(db, identity, subscription_id)


@router.post("/{subscription_id}/change-plan")
async def change_plan_endpoint(
    subscription_id: str,
    body: SubscriptionChangePlanRequest,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Subscription:
    return await subscription_service.change_plan(db, identity, subscription_id, body.plan_id)
