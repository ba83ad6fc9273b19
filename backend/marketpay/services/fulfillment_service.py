"""
Fulfillment Service

Turns a payment that just became successful into durable records: one
order per seller with line items and stock decrements for cart payments,
or an activated subscription for plan payments.

materialize() runs everything inside one transaction on the given
session. The caller (payment_service.update_status) has already committed
the status change and only calls this once per payment, after winning the
pending -> success compare-and-set.
"""
import logging
import uuid
from datetime import timedelta
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import (
    BusinessModel,
    CartItemModel,
    OrderItemModel,
    OrderModel,
    PaymentModel,
    ProductModel,
    SubscriptionModel,
    UserModel,
    utcnow,
)
from ..models.payments import CartSnapshotLine, OrderMetadata, SubscriptionMetadata, parse_metadata
from ..models.subscriptions import PERIOD_DAYS

logger = logging.getLogger(__name__)


async def materialize(db: AsyncSession, payment: PaymentModel) -> None:
    """
    Run the one-time side effects of a successful payment and commit them.

    Unparseable metadata and a missing buyer are logged and skipped: the
    payment stays successful either way. Database errors propagate so the
    caller can roll back and log them.

    Args:
        db: Database session with no pending changes
        payment: Payment that has just moved to success
    """
    try:
        metadata = parse_metadata(payment.metadata_json)
    except (ValueError, PydanticValidationError) as e:
        logger.error(
            f"Cannot fulfil payment {payment.tx_ref}: unreadable metadata ({e})"
        )
        return

    if payment.payment_type == "subscription":
        if not isinstance(metadata, SubscriptionMetadata):
            logger.error(f"Subscription payment {payment.tx_ref} carries {metadata.kind} metadata")
            return
        await activate_subscription(db, payment, metadata)
    else:
        if not isinstance(metadata, OrderMetadata):
            logger.error(f"Order payment {payment.tx_ref} carries {metadata.kind} metadata")
            return
        await create_orders_from_snapshot(db, payment, metadata)


# ============================================================================
# Subscriptions
# ============================================================================

async def activate_subscription(
    db: AsyncSession,
    payment: PaymentModel,
    metadata: SubscriptionMetadata
) -> SubscriptionModel:
    """
    Activate or renew the business's subscription for a paid plan.

    The business's existing row is patched in place (new plan, fresh
    period, no trial, no pending cancellation); without one a new active
    row is inserted.
    """
    now = utcnow()
    period_end = now + timedelta(days=PERIOD_DAYS[metadata.billing_cycle])

    subscription = await get_subscription_for_business(db, metadata.business_id)

    if subscription:
        subscription.plan_id = metadata.plan_id
        subscription.status = "active"
        subscription.billing_cycle = metadata.billing_cycle
        subscription.current_period_start = now
        subscription.current_period_end = period_end
        subscription.cancel_at_period_end = False
        subscription.trial_ends_at = None
        subscription.cancelled_at = None
        subscription.last_payment_id = payment.id
        action = "Renewed"
    else:
        subscription = SubscriptionModel(
            id=f"sub_{uuid.uuid4().hex[:16]}",
            business_id=metadata.business_id,
            plan_id=metadata.plan_id,
            status="active",
            billing_cycle=metadata.billing_cycle,
            current_period_start=now,
            current_period_end=period_end,
            cancel_at_period_end=False,
            last_payment_id=payment.id,
        )
        db.add(subscription)
        action = "Created"

    payment.subscription_id = subscription.id
    await db.commit()

    logger.info(
        f"{action} subscription {subscription.id} for business {metadata.business_id}: "
        f"plan={metadata.plan_id}, cycle={metadata.billing_cycle}, until={period_end.isoformat()}"
    )
    return subscription


async def get_subscription_for_business(db: AsyncSession, business_id: str) -> Optional[SubscriptionModel]:
    result = await db.execute(
        select(SubscriptionModel)
        .where(SubscriptionModel.business_id == business_id)
        .order_by(SubscriptionModel.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


# ============================================================================
# Orders
# ============================================================================

def group_by_seller(items: List[CartSnapshotLine]) -> Dict[str, List[CartSnapshotLine]]:
    """Lines per seller, sellers in order of first appearance."""
    groups: Dict[str, List[CartSnapshotLine]] = {}
    for item in items:
        groups.setdefault(item.seller_id, []).append(item)
    return groups


async def create_orders_from_snapshot(
    db: AsyncSession,
    payment: PaymentModel,
    metadata: OrderMetadata
) -> List[OrderModel]:
    """
    Create one processing order per seller from the frozen cart.

    Stock is decremented per line and floored at zero. Afterwards the
    buyer's whole cart is cleared and the first order id is recorded on
    the payment.
    """
    buyer = await db.get(UserModel, payment.user_id)
    if buyer is None:
        logger.error(f"Cannot fulfil payment {payment.tx_ref}: buyer {payment.user_id} not found")
        return []

    customer = buyer.name or buyer.email or buyer.id
    orders = []

    for seller_id, items in group_by_seller(metadata.items).items():
        seller_name = await seller_display_name(db, seller_id)
        order = OrderModel(
            id=f"ord_{uuid.uuid4().hex[:16]}",
            buyer_id=buyer.id,
            seller_id=seller_id,
            title=f"Order from {seller_name}",
            customer=customer,
            amount=sum(item.line_total for item in items),
            status="processing",
            description=f"Order containing {len(items)} item(s) - Payment ref: {payment.tx_ref}",
            payment_id=payment.id,
        )
        db.add(order)

        for item in items:
            db.add(OrderItemModel(
                id=f"oi_{uuid.uuid4().hex[:16]}",
                order_id=order.id,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
            ))
            await decrement_stock(db, item.product_id, item.quantity)

        orders.append(order)

    await db.execute(
        delete(CartItemModel)
        .where(CartItemModel.user_id == buyer.id)
        .execution_options(synchronize_session=False)
    )

    if orders:
        payment.order_id = orders[0].id

    await db.commit()

    logger.info(
        f"Fulfilled payment {payment.tx_ref}: {len(orders)} order(s) "
        f"[{', '.join(o.id for o in orders)}]"
    )
    return orders


async def decrement_stock(db: AsyncSession, product_id: str, quantity: int) -> None:
    """stock = max(0, stock - quantity), evaluated by the database."""
    result = await db.execute(
        update(ProductModel)
        .where(ProductModel.id == product_id)
        .values(quantity=func.max(0, ProductModel.quantity - quantity), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.warning(f"Product {product_id} no longer exists, stock not decremented")


async def seller_display_name(db: AsyncSession, seller_id: str) -> str:
    seller = await db.get(UserModel, seller_id)
    if seller is None:
        return "Unknown Seller"

    if seller.business_id:
        business = await db.get(BusinessModel, seller.business_id)
        if business:
            return business.name

    return seller.name or "Unknown Seller"
