"""Pydantic Subscription Models"""
from datetime import datetime
from typing import Optional, Literal
from pydantic import BaseModel, Field

from .payments import BillingCycle

SubscriptionStatus = Literal["active", "trialing", "past_due", "cancelled", "expired"]

PERIOD_DAYS = {"monthly": 30, "annual": 365}


class Subscription(BaseModel):
    id: str
    business_id: str
    plan_id: str
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    trial_ends_at: Optional[datetime] = None
    last_payment_id: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SubscriptionCheckoutRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    billing_cycle: BillingCycle = "monthly"
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=255)


class SubscriptionChangePlanRequest(BaseModel):
    plan_id: str = Field(min_length=1)


class SubscriptionStatusUpdate(BaseModel):
    status: SubscriptionStatus
