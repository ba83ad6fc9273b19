"""
Database package for MarketPay.

Exports database initialization, models, and session management.
"""
from .init_db import initialize_database, get_db, get_async_session, AsyncSessionLocal
from .models import (
    Base,
    UserModel,
    BusinessModel,
    ProductModel,
    CartItemModel,
    PaymentModel,
    OrderModel,
    OrderItemModel,
    SubscriptionPlanModel,
    SubscriptionModel,
    WebhookEventModel,
    PaymentAuditLogModel,
)

__all__ = [
    "initialize_database",
    "get_db",
    "get_async_session",
    "AsyncSessionLocal",
    "Base",
    "UserModel",
    "BusinessModel",
    "ProductModel",
    "CartItemModel",
    "PaymentModel",
    "OrderModel",
    "OrderItemModel",
    "SubscriptionPlanModel",
    "SubscriptionModel",
    "WebhookEventModel",
    "PaymentAuditLogModel",
]
