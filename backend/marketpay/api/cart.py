"""
Cart API Endpoints

Cart management and the direct (unpaid) checkout.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any, Optional
import logging

from ..db.init_db import get_db
from ..models.identity import Identity
from ..models.orders import CartItemAdd, CartItemUpdate, CartView
from ..services import cart_service, order_service
from ..services.identity_service import get_or_create_user
from .deps import get_identity

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def get_cart_endpoint(
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> CartView:
    user = await get_or_create_user(db, identity)
    return await cart_service.get_cart(db, user.id)


@router.post("/items")
async def add_cart_item_endpoint(
    body: CartItemAdd,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    user = await get_or_create_user(db, identity)
    item = await cart_service.add_item(db, user.id, body.product_id, body.quantity)
    return {"id": item.id, "product_id": item.product_id, "quantity": item.quantity}


@router.patch("/items/{item_id}")
async def update_cart_item_endpoint(
    item_id: str,
    body: CartItemUpdate,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """Set quantity; zero or less removes the line."""
    user = await get_or_create_user(db, identity)
    await cart_service.update_item(db, user.id, item_id, body.quantity)
    return {"success": True}


@router.delete("/items/{item_id}")
async def remove_cart_item_endpoint(
    item_id: str,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    user = await get_or_create_user(db, identity)
    await cart_service.remove_item(db, user.id, item_id)
    return {"success": True}


@router.delete("")
async def clear_cart_endpoint(
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    user = await get_or_create_user(db, identity)
    removed = await cart_service.clear_cart(db, user.id)
    return {"success": True, "removed": removed}


@router.post("/checkout")
async def checkout_cart_endpoint(
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """
    Place pending orders for the whole cart without going through payment.

    Returns:
        {"orders": [Order], "count": int}
    """
    orders = await order_service.checkout_cart(db, identity)
    return {"orders": orders, "count": len(orders)}
