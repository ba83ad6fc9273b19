"""
SQLAlchemy ORM Models for MarketPay

Payment intents, the orders they materialize into, seller payouts and
the consulted marketplace stores (users, businesses, products, carts, plans).
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, Text, CheckConstraint, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserModel(Base):
    """
    ORM model for users table.

    external_id is the identity provider's stable subject.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    external_id = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=False, default="")
    name = Column(String)
    role = Column(String, nullable=False, default="buyer", index=True)
    business_id = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("role IN ('buyer', 'seller', 'admin')", name="user_role_check"),
    )


class BusinessModel(Base):
    __tablename__ = "businesses"

    id = Column(String, primary_key=True)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    country = Column(String)
    payout_bank_code = Column(String)
    payout_bank_name = Column(String)
    payout_account_number = Column(String)
    payout_account_name = Column(String)
    payout_updated_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ProductModel(Base):
    """
    ORM model for products table.

    quantity is the live stock level; price is in minor currency units.
    """
    __tablename__ = "products"

    id = Column(String, primary_key=True)
    seller_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="active", index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'inactive', 'draft')", name="product_status_check"),
    )


class CartItemModel(Base):
    __tablename__ = "cart_items"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_cart_user_product", "user_id", "product_id", unique=True),
    )


class PaymentModel(Base):
    """
    ORM model for payments table.

    id is database-assigned and insertion ordered; the idempotency
    tiebreak relies on that ordering. (user_id, idempotency_key) is
    deliberately NOT unique: duplicates are reconciled after insert.
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_ref = Column(String, nullable=False, unique=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    payment_type = Column(String, nullable=False)
    metadata_json = Column("metadata", Text)  # JSON blob, tagged by "kind"
    idempotency_key = Column(String)
    gateway_ref = Column(String)
    checkout_url = Column(String)
    order_id = Column(String, index=True)
    subscription_id = Column(String)
    refund_amount = Column(Integer)
    refund_reason = Column(String)
    refund_reference = Column(String)
    refunded_by_user_id = Column(String)
    refunded_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'success', 'failed', 'cancelled', 'refunded', 'partially_refunded')",
            name="payment_status_check"
        ),
        CheckConstraint("payment_type IN ('order', 'subscription')", name="payment_type_check"),
        Index("idx_payments_idempotency", "user_id", "idempotency_key"),
    )


class OrderModel(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    buyer_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    customer = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    status = Column(String, nullable=False, index=True)
    payment_id = Column(Integer, index=True)  # null for direct checkout
    description = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'processing', 'completed', 'cancelled')", name="order_status_check"),
    )


class OrderItemModel(Base):
    """Immutable price/quantity snapshot of one purchased line."""
    __tablename__ = "order_items"

    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String, nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class SubscriptionPlanModel(Base):
    __tablename__ = "subscription_plans"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True)
    monthly_price = Column(Integer, nullable=False)
    annual_price = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class SubscriptionModel(Base):
    """
    ORM model for subscriptions table.

    One live row per business; paid activation patches it in place.
    """
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True)
    business_id = Column(String, ForeignKey("businesses.id"), nullable=False, index=True)
    plan_id = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    billing_cycle = Column(String, nullable=False)
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    trial_ends_at = Column(DateTime)
    last_payment_id = Column(Integer)
    cancelled_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'trialing', 'past_due', 'cancelled', 'expired')",
            name="subscription_status_check"
        ),
        CheckConstraint("billing_cycle IN ('monthly', 'annual')", name="billing_cycle_check"),
    )


class WebhookEventModel(Base):
    """
    Dedup record: existence of a row for tx_ref means "already processed".

    tx_ref is indexed but not unique; concurrent inserts are reconciled
    by lowest id, like payments.
    """
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_ref = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    signature = Column(String)
    processed_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class PaymentAuditLogModel(Base):
    __tablename__ = "payment_audit_logs"

    id = Column(String, primary_key=True)
    payment_id = Column(Integer, index=True)
    user_id = Column(String, index=True)
    action = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)
    tx_ref = Column(String, index=True)
    ip_address = Column(String)
    user_agent = Column(String)
    metadata_json = Column("metadata", Text)  # JSON blob
    error_message = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class PayoutModel(Base):
    """
    ORM model for payouts table.

    One row per order, reused across transfer attempts; reference changes
    with every attempt. order_id is not unique: concurrent first attempts
    are reconciled by lowest id, like payments.
    """
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    seller_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    payment_id = Column(Integer)
    amount_gross = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False)
    amount_net = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    reference = Column(String, nullable=False, index=True)
    gateway_reference = Column(String)
    bank_reference = Column(String)
    attempts = Column(Integer, nullable=False, default=1)
    last_error = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'queued', 'success', 'failed', 'reverted')",
            name="payout_status_check"
        ),
    )
