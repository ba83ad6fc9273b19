"""
Pydantic Payout Models

Seller payouts for completed orders, the bank details they are sent to,
and the transfer callbacks the gateway posts back.
"""
from datetime import datetime
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, Field

PayoutStatus = Literal["pending", "approved", "queued", "success", "failed", "reverted"]

# A payout in one of these states has reached the gateway; no new transfer is made
IN_FLIGHT_STATUSES = frozenset({"approved", "queued", "success"})

# Callbacks never move a payout out of these
TERMINAL_STATUSES = frozenset({"success", "reverted"})


class Payout(BaseModel):
    """
    One order's payout to its seller.

    amount_net = amount_gross - platform_fee, all in minor currency units.
    """
    id: int
    order_id: str
    seller_id: str
    payment_id: Optional[int] = None
    amount_gross: int
    platform_fee: int
    amount_net: int
    currency: str
    status: PayoutStatus
    reference: str
    gateway_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    attempts: int
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PayoutTransferRequest(BaseModel):
    order_id: str = Field(min_length=1)


class PayoutBankAccount(BaseModel):
    bank_code: str = Field(min_length=1)
    bank_name: Optional[str] = None
    account_number: str = Field(min_length=1)
    account_name: str = Field(min_length=1)


class TransferCallback(BaseModel):
    """
    Transfer webhook / approval body.

    The reference may sit at the top level, under "data", or be sent as
    transfer_reference.
    """
    reference: Optional[str] = None
    transfer_reference: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[int] = None
    gateway_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    model_config = {"extra": "ignore"}

    def resolved_reference(self) -> Optional[str]:
        data = self.data or {}
        return self.reference or data.get("reference") or self.transfer_reference

    def resolved_amount(self) -> Optional[int]:
        if self.amount is not None:
            return self.amount
        return (self.data or {}).get("amount")

    def resolved(self, field: str) -> Optional[str]:
        return getattr(self, field) or (self.data or {}).get(field)
