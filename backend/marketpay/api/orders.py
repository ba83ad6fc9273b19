"""
Orders API Endpoints

Buyer purchases, seller sales, order detail and seller status updates.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any, Optional

from ..db.init_db import get_db
from ..models.identity import Identity
from ..models.orders import Order, OrderStatus, OrderStatusUpdate, OrderWithItems
from ..services import order_service
from .deps import get_identity

router = APIRouter()


@router.get("/purchases")
async def list_purchases_endpoint(
    status: Optional[OrderStatus] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    orders = await order_service.list_purchases(db, identity, status)
    return {"orders": orders, "count": len(orders)}


@router.get("/sales")
async def list_sales_endpoint(
    status: Optional[OrderStatus] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    orders = await order_service.list_sales(db, identity, status)
    return {"orders": orders, "count": len(orders)}


@router.get("/{order_id}")
async def get_order_endpoint(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> OrderWithItems:
    """Order with line items; visible to its buyer and seller."""
    return await order_service.get_order(db, identity, order_id)


@router.patch("/{order_id}/status")
async def update_order_status_endpoint(
    order_id: str,
    body: OrderStatusUpdate,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Order:
    """
    Seller moves an order along pending -> processing -> completed, or cancels it.
    """
    return await order_service.update_order_status(db, identity, order_id, body.status)
