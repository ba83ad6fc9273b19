"""
Subscription Service

Plan checkout for a seller's business, the current-subscription view, and
the lifecycle after activation: cancel at period end, reactivate, change
plan, and the periodic expiry of lapsed trials and cancelled periods.
Activation itself happens in fulfillment once the plan payment succeeds.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import BusinessModel, SubscriptionModel, SubscriptionPlanModel, utcnow
from ..exceptions import PlanNotFoundError, SubscriptionNotFoundError, UnauthorizedError, ValidationError
from ..models.identity import Identity
from ..models.subscriptions import Subscription
from . import checkout_service
from .fulfillment_service import get_subscription_for_business
from .identity_service import get_or_create_user, require_admin, require_user

logger = logging.getLogger(__name__)


async def start_checkout(
    db: AsyncSession,
    identity: Optional[Identity],
    plan_id: str,
    billing_cycle: str = "monthly",
    idempotency_key: Optional[str] = None
) -> Dict[str, Any]:
    """
    Open a gateway checkout for a subscription plan.

    The caller must own a registered business, and that business must not
    already be active or trialing on the same plan. Switching plans is
    allowed; the paid activation replaces the current plan.

    Raises:
        ValidationError: no business, already subscribed, or unusable price
        PlanNotFoundError: unknown or inactive plan
    """
    user = await get_or_create_user(db, identity)

    business = await db.get(BusinessModel, user.business_id) if user.business_id else None
    if business is None or business.owner_id != user.id:
        raise ValidationError("You need to register a business first before subscribing")

    plan = await db.get(SubscriptionPlanModel, plan_id)
    if plan is None or not plan.is_active:
        raise PlanNotFoundError(details={"plan_id": plan_id})

    current = await get_subscription_for_business(db, business.id)
    if current and current.plan_id == plan.id and current.status in ("active", "trialing"):
        raise ValidationError(
            "Your business already has an active subscription to this plan",
            {"plan_id": plan.id, "status": current.status}
        )

    amount = plan.annual_price if billing_cycle == "annual" else plan.monthly_price
    if amount is None or amount <= 0:
        raise ValidationError("Plan pricing is not properly configured", {"plan_id": plan.id})

    logger.info(f"Subscription checkout: business={business.id}, plan={plan.slug}, cycle={billing_cycle}")

    return await checkout_service.initialize_checkout(
        db,
        identity,
        amount=amount,
        currency=plan.currency,
        payment_type="subscription",
        metadata={"plan_id": plan.id, "billing_cycle": billing_cycle, "business_id": business.id},
        idempotency_key=idempotency_key,
    )


async def get_current_subscription(db: AsyncSession, identity: Optional[Identity]) -> Optional[Subscription]:
    """The caller's business subscription, or None."""
    user = await require_user(db, identity)
    if not user.business_id:
        return None

    subscription = await get_subscription_for_business(db, user.business_id)
    return Subscription.model_validate(subscription) if subscription else None


# ============================================================================
# Lifecycle
# ============================================================================

async def _get_owned_subscription(
    db: AsyncSession,
    identity: Optional[Identity],
    subscription_id: str
) -> SubscriptionModel:
    """
    Raises:
        SubscriptionNotFoundError: unknown subscription
        UnauthorizedError: caller does not own the subscribed business
    """
    user = await require_user(db, identity)

    subscription = await db.get(SubscriptionModel, subscription_id, populate_existing=True)
    if subscription is None:
        raise SubscriptionNotFoundError(details={"subscription_id": subscription_id})

    business = await db.get(BusinessModel, subscription.business_id)
    if business is None or business.owner_id != user.id:
        raise UnauthorizedError("Not your subscription")
    return subscription


async def cancel(db: AsyncSession, identity: Optional[Identity], subscription_id: str) -> Subscription:
    """
    Cancel at the end of the current period; the plan stays usable until then.

    Raises:
        ValidationError: already cancelled
    """
    subscription = await _get_owned_subscription(db, identity, subscription_id)
    if subscription.status == "cancelled":
        raise ValidationError("Subscription is already cancelled", {"subscription_id": subscription_id})

    now = utcnow()
    subscription.cancel_at_period_end = True
    subscription.cancelled_at = now
    subscription.updated_at = now
    await db.commit()
    await db.refresh(subscription)

    logger.info(
        f"Subscription {subscription_id} set to cancel at period end "
        f"({subscription.current_period_end.isoformat()})"
    )
    return Subscription.model_validate(subscription)


async def reactivate(db: AsyncSession, identity: Optional[Identity], subscription_id: str) -> Subscription:
    """
    Undo a pending cancellation.

    Raises:
        ValidationError: subscription already ended, or no cancellation pending
    """
    subscription = await _get_owned_subscription(db, identity, subscription_id)
    if subscription.status in ("cancelled", "expired"):
        raise ValidationError(
            "Cannot reactivate cancelled or expired subscription. Please start a new subscription.",
            {"subscription_id": subscription_id, "status": subscription.status}
        )
    if not subscription.cancel_at_period_end:
        raise ValidationError("Subscription is not pending cancellation", {"subscription_id": subscription_id})

    subscription.cancel_at_period_end = False
    subscription.cancelled_at = None
    subscription.updated_at = utcnow()
    await db.commit()
    await db.refresh(subscription)

    logger.info(f"Subscription {subscription_id} reactivated")
    return Subscription.model_validate(subscription)


async def change_plan(
    db: AsyncSession,
    identity: Optional[Identity],
    subscription_id: str,
    plan_id: str
) -> Subscription:
    """
    Switch an active or trialing subscription to another plan. The current
    period is kept; no proration is charged.

    Raises:
        ValidationError: subscription not active or trialing
        PlanNotFoundError: unknown or inactive plan
    """
    subscription = await _get_owned_subscription(db, identity, subscription_id)
    if subscription.status not in ("active", "trialing"):
        raise ValidationError(
            "Can only change plan on active subscriptions",
            {"subscription_id": subscription_id, "status": subscription.status}
        )

    plan = await db.get(SubscriptionPlanModel, plan_id)
    if plan is None or not plan.is_active:
        raise PlanNotFoundError(details={"plan_id": plan_id})

    previous = subscription.plan_id
    subscription.plan_id = plan.id
    subscription.updated_at = utcnow()
    await db.commit()
    await db.refresh(subscription)

    logger.info(f"Subscription {subscription_id}: plan {previous} -> {plan.id}")
    return Subscription.model_validate(subscription)


async def update_status(db: AsyncSession, subscription_id: str, status: str) -> Subscription:
    """
    Set a subscription's status directly (system and admin use).

    Raises:
        SubscriptionNotFoundError: unknown subscription
    """
    subscription = await db.get(SubscriptionModel, subscription_id, populate_existing=True)
    if subscription is None:
        raise SubscriptionNotFoundError(details={"subscription_id": subscription_id})

    previous = subscription.status
    subscription.status = status
    subscription.updated_at = utcnow()
    await db.commit()
    await db.refresh(subscription)

    logger.info(f"Subscription {subscription_id}: {previous} -> {status}")
    return Subscription.model_validate(subscription)


async def list_all(
    db: AsyncSession,
    identity: Optional[Identity],
    status: Optional[str] = None
) -> List[Subscription]:
    """Admin view of every subscription, optionally by status."""
    await require_admin(db, identity)

    query = select(SubscriptionModel)
    if status:
        query = query.where(SubscriptionModel.status == status)
    query = query.order_by(SubscriptionModel.created_at.desc())

    result = await db.execute(query)
    return [Subscription.model_validate(s) for s in result.scalars().all()]


async def process_expired_subscriptions(db: AsyncSession) -> Dict[str, int]:
    """
    End subscriptions whose period is over.

    Subscriptions marked cancel-at-period-end become cancelled; trials that
    ran out without a payment become expired.

    Returns:
        {"processed": number of subscriptions changed}
    """
    now = utcnow()

    cancelled = await db.execute(
        update(SubscriptionModel)
        .where(
            SubscriptionModel.cancel_at_period_end.is_(True),
            SubscriptionModel.current_period_end < now,
            SubscriptionModel.status.notin_(("cancelled", "expired")),
        )
        .values(status="cancelled", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    expired = await db.execute(
        update(SubscriptionModel)
        .where(
            SubscriptionModel.status == "trialing",
            SubscriptionModel.current_period_end < now,
        )
        .values(status="expired", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    processed = cancelled.rowcount + expired.rowcount
    if processed:
        logger.info(
            f"Ended {processed} subscription(s): {cancelled.rowcount} cancelled, "
            f"{expired.rowcount} expired trial(s)"
        )
    return {"processed": processed}
