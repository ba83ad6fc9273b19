"""
Cart Service

Cart line management and the snapshot that freezes a cart into payment
metadata at intent creation.
"""
import logging
import uuid
from typing import List

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import CartItemModel, ProductModel
from ..exceptions import (
    CartItemNotFoundError,
    EmptyCartError,
    InsufficientStockError,
    ProductNotFoundError,
    ProductUnavailableError,
    ValidationError,
)
from ..models.orders import CartLine, CartView
from ..models.payments import CartSnapshotLine

logger = logging.getLogger(__name__)


# ============================================================================
# Snapshot
# ============================================================================

async def snapshot_cart(db: AsyncSession, user_id: str) -> List[CartSnapshotLine]:
    """
    Freeze the user's cart into snapshot lines at current prices.

    Reads only: neither the cart nor stock is modified.

    Args:
        db: Database session
        user_id: Buyer's user id

    Returns:
        One CartSnapshotLine per cart line, in cart order

    Raises:
        EmptyCartError: cart has no lines
        ProductUnavailableError: a product is gone or not active
        InsufficientStockError: a line asks for more than current stock
    """
    result = await db.execute(
        select(CartItemModel, ProductModel)
        .outerjoin(ProductModel, ProductModel.id == CartItemModel.product_id)
        .where(CartItemModel.user_id == user_id)
        .order_by(CartItemModel.created_at, CartItemModel.id)
    )
    rows = result.all()

    if not rows:
        raise EmptyCartError()

    snapshot = []
    for item, product in rows:
        if product is None or product.status != "active":
            name = product.name if product else item.product_id
            raise ProductUnavailableError(
                f"Product {name} is no longer available",
                {"product_id": item.product_id},
            )
        if item.quantity > product.quantity:
            raise InsufficientStockError(
                f"Insufficient stock for {product.name}. Only {product.quantity} available.",
                {"product_id": product.id, "requested": item.quantity, "available": product.quantity},
            )

        snapshot.append(CartSnapshotLine(
            product_id=product.id,
            quantity=item.quantity,
            unit_price=product.price,
            seller_id=product.seller_id,
            product_name=product.name,
        ))

    logger.debug(f"Snapshot of {len(snapshot)} cart line(s) for user {user_id}")
    return snapshot


# ============================================================================
# Cart CRUD
# ============================================================================

async def get_cart(db: AsyncSession, user_id: str) -> CartView:
    """Cart lines with live product details; lines whose product vanished are skipped."""
    result = await db.execute(
        select(CartItemModel, ProductModel)
        .join(ProductModel, ProductModel.id == CartItemModel.product_id)
        .where(CartItemModel.user_id == user_id)
        .order_by(CartItemModel.created_at, CartItemModel.id)
    )

    lines = [
        CartLine(
            id=item.id,
            product_id=product.id,
            product_name=product.name,
            seller_id=product.seller_id,
            unit_price=product.price,
            quantity=item.quantity,
            available_stock=product.quantity,
            product_status=product.status,
        )
        for item, product in result.all()
    ]
    return CartView(items=lines, total=sum(line.unit_price * line.quantity for line in lines))


async def add_item(db: AsyncSession, user_id: str, product_id: str, quantity: int = 1) -> CartItemModel:
    """
    Add a product to the cart, merging with an existing line.

    Raises:
        ValidationError: non-positive quantity, or buying one's own product
        ProductNotFoundError: unknown product
        ProductUnavailableError: product not active
        InsufficientStockError: merged quantity exceeds stock
    """
    if quantity <= 0:
        raise ValidationError("Quantity must be positive")

    product = await db.get(ProductModel, product_id)
    if product is None:
        raise ProductNotFoundError()
    if product.status != "active":
        raise ProductUnavailableError("Product is not available", {"product_id": product_id})
    if product.seller_id == user_id:
        raise ValidationError("Cannot add your own product to cart")

    result = await db.execute(
        select(CartItemModel).where(
            CartItemModel.user_id == user_id,
            CartItemModel.product_id == product_id,
        )
    )
    item = result.scalar_one_or_none()

    new_quantity = quantity + (item.quantity if item else 0)
    if new_quantity > product.quantity:
        raise InsufficientStockError(
            f"Only {product.quantity} items available in stock",
            {"product_id": product_id, "requested": new_quantity, "available": product.quantity},
        )

    if item:
        item.quantity = new_quantity
    else:
        item = CartItemModel(
            id=f"cart_{uuid.uuid4().hex[:16]}",
            user_id=user_id,
            product_id=product_id,
            quantity=quantity,
        )
        db.add(item)

    await db.commit()
    await db.refresh(item)
    return item


async def _get_own_item(db: AsyncSession, user_id: str, item_id: str) -> CartItemModel:
    item = await db.get(CartItemModel, item_id)
    if item is None or item.user_id != user_id:
        raise CartItemNotFoundError()
    return item


async def update_item(db: AsyncSession, user_id: str, item_id: str, quantity: int) -> None:
    """Set a line's quantity; zero or less removes it."""
    item = await _get_own_item(db, user_id, item_id)

    if quantity <= 0:
        await db.delete(item)
        await db.commit()
        return

    product = await db.get(ProductModel, item.product_id)
    if product is None:
        raise ProductNotFoundError()
    if quantity > product.quantity:
        raise InsufficientStockError(
            f"Only {product.quantity} items available in stock",
            {"product_id": product.id, "requested": quantity, "available": product.quantity},
        )

    item.quantity = quantity
    await db.commit()


async def remove_item(db: AsyncSession, user_id: str, item_id: str) -> None:
    item = await _get_own_item(db, user_id, item_id)
    await db.delete(item)
    await db.commit()


async def clear_cart(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(delete(CartItemModel).where(CartItemModel.user_id == user_id))
    await db.commit()
    return result.rowcount
