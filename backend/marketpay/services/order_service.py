"""
Order Service

Buyer and seller views of orders, seller-driven status changes, and the
direct checkout path that turns a cart into pending orders without a
payment intent.
"""
import logging
import uuid
from typing import List, Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import OrderItemModel, OrderModel, CartItemModel
from ..exceptions import InvalidTransitionError, OrderNotFoundError, UnauthorizedError
from ..models.identity import Identity
from ..models.orders import ORDER_TRANSITIONS, Order, OrderLineItem, OrderWithItems
from . import cart_service
from .fulfillment_service import seller_display_name, decrement_stock, group_by_seller
from .identity_service import get_or_create_user, require_user

logger = logging.getLogger(__name__)


async def list_purchases(
    db: AsyncSession,
    identity: Optional[Identity],
    status: Optional[str] = None
) -> List[Order]:
    """Orders the caller bought, newest first."""
    user = await require_user(db, identity)
    return await _list_orders(db, OrderModel.buyer_id == user.id, status)


async def list_sales(
    db: AsyncSession,
    identity: Optional[Identity],
    status: Optional[str] = None
) -> List[Order]:
    """Orders placed with the caller as seller, newest first."""
    user = await require_user(db, identity)
    return await _list_orders(db, OrderModel.seller_id == user.id, status)


async def _list_orders(db: AsyncSession, condition, status: Optional[str]) -> List[Order]:
    query = select(OrderModel).where(condition)
    if status:
        query = query.where(OrderModel.status == status)
    query = query.order_by(OrderModel.created_at.desc(), OrderModel.id.desc())

    result = await db.execute(query)
    return [Order.model_validate(o) for o in result.scalars().all()]


async def get_order(db: AsyncSession, identity: Optional[Identity], order_id: str) -> OrderWithItems:
    """
    Order with its line items; only its buyer or seller may read it.

    Raises:
        OrderNotFoundError: unknown order
        UnauthorizedError: caller is neither buyer nor seller
    """
    user = await require_user(db, identity)

    order = await db.get(OrderModel, order_id)
    if order is None:
        raise OrderNotFoundError(details={"order_id": order_id})
    if user.id not in (order.buyer_id, order.seller_id):
        raise UnauthorizedError("Not your order")

    result = await db.execute(
        select(OrderItemModel)
        .where(OrderItemModel.order_id == order.id)
        .order_by(OrderItemModel.created_at, OrderItemModel.id)
    )
    items = [OrderLineItem.model_validate(i) for i in result.scalars().all()]

    return OrderWithItems(**Order.model_validate(order).model_dump(), items=items)


async def update_order_status(
    db: AsyncSession,
    identity: Optional[Identity],
    order_id: str,
    new_status: str
) -> Order:
    """
    Move an order along pending -> processing -> completed, or cancel it.

    Raises:
        OrderNotFoundError: unknown order
        UnauthorizedError: caller is not the seller
        InvalidTransitionError: transition not allowed
    """
    user = await require_user(db, identity)

    order = await db.get(OrderModel, order_id)
    if order is None:
        raise OrderNotFoundError(details={"order_id": order_id})
    if order.seller_id != user.id:
        raise UnauthorizedError("Only the seller can update an order")

    if new_status not in ORDER_TRANSITIONS.get(order.status, frozenset()):
        raise InvalidTransitionError(
            f"Cannot move order from {order.status} to {new_status}",
            {"order_id": order_id, "status": order.status, "requested": new_status}
        )

    previous = order.status
    order.status = new_status
    await db.commit()
    await db.refresh(order)

    logger.info(f"Order {order_id}: {previous} -> {new_status}")
    return Order.model_validate(order)


async def checkout_cart(db: AsyncSession, identity: Optional[Identity]) -> List[Order]:
    """
    Create pending orders straight from the live cart, without payment.

    Validation is the same as for a payment snapshot. Stock is decremented
    and the checked-out cart lines removed in the same transaction as the
    orders.

    Raises:
        EmptyCartError, ProductUnavailableError, InsufficientStockError
    """
    user = await get_or_create_user(db, identity)
    snapshot = await cart_service.snapshot_cart(db, user.id)

    result = await db.execute(select(CartItemModel.id).where(CartItemModel.user_id == user.id))
    cart_line_ids = list(result.scalars().all())

    customer = user.name or user.email or user.id
    orders = []

    for seller_id, items in group_by_seller(snapshot).items():
        seller_name = await seller_display_name(db, seller_id)
        order = OrderModel(
            id=f"ord_{uuid.uuid4().hex[:16]}",
            buyer_id=user.id,
            seller_id=seller_id,
            title=f"Order from {seller_name}",
            customer=customer,
            amount=sum(item.line_total for item in items),
            status="pending",
            description=f"Order containing {len(items)} item(s)",
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
        .where(CartItemModel.id.in_(cart_line_ids))
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    logger.info(f"Direct checkout for user {user.id}: {len(orders)} order(s)")
    return [Order.model_validate(o) for o in orders]
