"""Pydantic Payment Audit Log Model"""
import json
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel


class PaymentAuditLog(BaseModel):
    id: str
    payment_id: Optional[int] = None
    user_id: Optional[str] = None
    action: str
    status: str
    tx_ref: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_model(cls, row) -> "PaymentAuditLog":
        return cls(
            id=row.id,
            payment_id=row.payment_id,
            user_id=row.user_id,
            action=row.action,
            status=row.status,
            tx_ref=row.tx_ref,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            metadata=json.loads(row.metadata_json) if row.metadata_json else None,
            error_message=row.error_message,
            created_at=row.created_at,
        )
