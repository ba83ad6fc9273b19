"""
Payment Audit Service

Best-effort audit trail of webhook, verification and refund activity.
Writing an audit record never fails the request that triggered it.
"""
import json
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import PaymentAuditLogModel
from ..models.audit import PaymentAuditLog

logger = logging.getLogger(__name__)


async def log_event(
    db: AsyncSession,
    action: str,
    status: str,
    tx_ref: Optional[str] = None,
    payment_id: Optional[int] = None,
    user_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit record and commit it.

    Returns:
        The record id, or None if it could not be written
    """
    record = PaymentAuditLogModel(
        id=f"audit_{uuid.uuid4().hex[:16]}",
        payment_id=payment_id,
        user_id=user_id,
        action=action,
        status=status,
        tx_ref=tx_ref,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=json.dumps(metadata, default=str) if metadata else None,
        error_message=error_message,
    )

    try:
        db.add(record)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(f"Failed to write audit log ({action}/{status}, tx_ref={tx_ref}): {e}")
        return None

    return record.id


async def get_by_payment(db: AsyncSession, payment_id: int) -> List[PaymentAuditLog]:
    result = await db.execute(
        select(PaymentAuditLogModel)
        .where(PaymentAuditLogModel.payment_id == payment_id)
        .order_by(PaymentAuditLogModel.created_at.desc())
    )
    return [PaymentAuditLog.from_model(r) for r in result.scalars().all()]


async def get_by_tx_ref(db: AsyncSession, tx_ref: str) -> List[PaymentAuditLog]:
    result = await db.execute(
        select(PaymentAuditLogModel)
        .where(PaymentAuditLogModel.tx_ref == tx_ref)
        .order_by(PaymentAuditLogModel.created_at.desc())
    )
    return [PaymentAuditLog.from_model(r) for r in result.scalars().all()]


async def get_recent(db: AsyncSession, action: Optional[str] = None, limit: int = 100) -> List[PaymentAuditLog]:
    query = select(PaymentAuditLogModel)
    if action:
        query = query.where(PaymentAuditLogModel.action == action)
    query = query.order_by(PaymentAuditLogModel.created_at.desc()).limit(limit)

    result = await db.execute(query)
    return [PaymentAuditLog.from_model(r) for r in result.scalars().all()]
