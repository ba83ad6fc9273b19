"""
Pydantic Payment Models

PaymentIntent view, the metadata tagged union carried by every intent, the
status transition table, and the request bodies of the payment endpoints.
"""
import json
from datetime import datetime
from typing import Optional, Literal, List, Union, Dict, Any, Annotated
from pydantic import BaseModel, Field, TypeAdapter

PaymentStatus = Literal["pending", "success", "failed", "cancelled", "refunded", "partially_refunded"]
ConfirmationStatus = Literal["pending", "success", "failed", "cancelled"]
PaymentType = Literal["order", "subscription"]
BillingCycle = Literal["monthly", "annual"]


# ==================== State Machine ====================

STATUS_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"success", "failed", "cancelled"}),
    "success": frozenset({"refunded", "partially_refunded"}),
    "partially_refunded": frozenset({"refunded", "partially_refunded"}),
}

REFUND_STATUSES = frozenset({"refunded", "partially_refunded"})


def can_transition(current: str, new: str) -> bool:
    """Whether the state machine allows current -> new."""
    return new in STATUS_TRANSITIONS.get(current, frozenset())


# ==================== Metadata Tagged Union ====================

class CartSnapshotLine(BaseModel):
    """One cart line frozen at intent creation."""
    product_id: str
    quantity: int = Field(gt=0)
    unit_price: int = Field(ge=0)
    seller_id: str
    product_name: str

    model_config = {"frozen": True}

    @property
    def line_total(self) -> int:
        return self.quantity * self.unit_price


class OrderMetadata(BaseModel):
    kind: Literal["order"] = "order"
    items: List[CartSnapshotLine]

    model_config = {"frozen": True}

    @property
    def total(self) -> int:
        return sum(item.line_total for item in self.items)


class SubscriptionMetadata(BaseModel):
    kind: Literal["subscription"] = "subscription"
    plan_id: str
    billing_cycle: BillingCycle = "monthly"
    business_id: str

    model_config = {"frozen": True}


PaymentMetadata = Annotated[Union[OrderMetadata, SubscriptionMetadata], Field(discriminator="kind")]

_metadata_adapter = TypeAdapter(PaymentMetadata)


def parse_metadata(raw: Optional[str]) -> Union[OrderMetadata, SubscriptionMetadata]:
    """
    Parse the stored metadata blob.

    Raises:
        ValueError: blob missing or not a valid tagged metadata document
            (pydantic.ValidationError is a ValueError subclass)
    """
    if not raw:
        raise ValueError("Payment has no metadata")
    return _metadata_adapter.validate_json(raw)


def dump_metadata(metadata: Union[OrderMetadata, SubscriptionMetadata]) -> str:
    return metadata.model_dump_json()


# ==================== PaymentIntent ====================

class PaymentIntent(BaseModel):
    """
    Read model of one payment attempt.

    amount and refund_amount are in minor currency units.
    """
    id: int
    tx_ref: str
    user_id: str
    amount: int
    currency: str
    status: PaymentStatus
    payment_type: PaymentType
    metadata: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None
    gateway_ref: Optional[str] = None
    checkout_url: Optional[str] = None
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    refund_amount: Optional[int] = None
    refund_reason: Optional[str] = None
    refund_reference: Optional[str] = None
    refunded_by_user_id: Optional[str] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, row) -> "PaymentIntent":
        """Build from a PaymentModel row; unreadable metadata is exposed as None."""
        metadata = None
        if row.metadata_json:
            try:
                metadata = json.loads(row.metadata_json)
            except json.JSONDecodeError:
                metadata = None

        return cls(
            id=row.id,
            tx_ref=row.tx_ref,
            user_id=row.user_id,
            amount=row.amount,
            currency=row.currency,
            status=row.status,
            payment_type=row.payment_type,
            metadata=metadata,
            idempotency_key=row.idempotency_key,
            gateway_ref=row.gateway_ref,
            checkout_url=row.checkout_url,
            order_id=row.order_id,
            subscription_id=row.subscription_id,
            refund_amount=row.refund_amount,
            refund_reason=row.refund_reason,
            refund_reference=row.refund_reference,
            refunded_by_user_id=row.refunded_by_user_id,
            refunded_at=row.refunded_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


# ==================== Request Bodies ====================

class PaymentInitializeRequest(BaseModel):
    amount: int = Field(gt=0, description="Amount in minor currency units")
    currency: str = Field(default="ETB", pattern="^[A-Z]{3}$")
    payment_type: PaymentType
    metadata: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=255)


class VerifyRequest(BaseModel):
    tx_ref: str = Field(min_length=1)


class WebhookPayload(BaseModel):
    """Gateway callback body. Unknown fields are tolerated."""
    tx_ref: str = Field(min_length=1)
    status: Optional[str] = None
    trx_ref: Optional[str] = None

    model_config = {"extra": "allow"}


class RefundRequest(BaseModel):
    payment_id: int
    amount: Optional[int] = Field(default=None, gt=0, description="Omit for a full refund")
    reason: Optional[str] = Field(default=None, max_length=500)
