"""
Pydantic Order and Cart Models

Orders materialized per seller, their immutable line items, and the cart
views used by the cart endpoints.
"""
from datetime import datetime
from typing import Optional, Literal, List, Dict
from pydantic import BaseModel, Field

OrderStatus = Literal["pending", "processing", "completed", "cancelled"]

# Seller-driven transitions; "completed" and "cancelled" are terminal.
ORDER_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"processing", "cancelled"}),
    "processing": frozenset({"completed", "cancelled"}),
}


class OrderLineItem(BaseModel):
    id: str
    order_id: str
    product_id: str
    quantity: int
    unit_price: int
    created_at: datetime

    model_config = {"from_attributes": True}


class Order(BaseModel):
    """
    One seller's share of a purchase.

    amount is the sum of quantity * unit_price over its line items.
    """
    id: str
    buyer_id: str
    seller_id: str
    title: str
    customer: str
    amount: int
    status: OrderStatus
    description: Optional[str] = None
    payment_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class OrderWithItems(Order):
    items: List[OrderLineItem] = []


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


# ==================== Cart ====================

class CartLine(BaseModel):
    """Cart line joined with the live product it refers to."""
    id: str
    product_id: str
    product_name: str
    seller_id: str
    unit_price: int
    quantity: int
    available_stock: int
    product_status: str


class CartView(BaseModel):
    items: List[CartLine]
    total: int


class CartItemAdd(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(default=1, gt=0)


class CartItemUpdate(BaseModel):
    """quantity <= 0 removes the line."""
    quantity: int
