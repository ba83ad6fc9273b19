"""
Refund Service

Admin-only refund bookkeeping against successful payments.

A refund is a financial record only: orders, stock and subscriptions are
left alone. By default only payments in "success" can be refunded, which
means a partially refunded payment cannot be refunded again; setting
allow_multiple_partial_refunds admits further refunds up to the
remaining balance.
"""
import logging
import secrets
import string
import time
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db.models import PaymentModel, utcnow
from ..exceptions import InvalidRefundError, PaymentNotFoundError
from ..mocks import payment_gateway
from ..models.identity import Identity
from . import audit_service
from .identity_service import require_admin

logger = logging.getLogger(__name__)

_REF_ALPHABET = string.digits + string.ascii_uppercase


def generate_refund_reference() -> str:
    suffix = "".join(secrets.choice(_REF_ALPHABET) for _ in range(6))
    return f"REF-{int(time.time() * 1000)}-{suffix}"


def _refundable_statuses() -> tuple:
    if settings.allow_multiple_partial_refunds:
        return ("success", "partially_refunded")
    return ("success",)


def validate_refund(payment: PaymentModel, amount: int) -> int:
    """
    Check a refund of amount against the payment.

    Returns:
        Cumulative refunded amount after this refund

    Raises:
        InvalidRefundError: wrong status, non-positive amount, or amount
            above what may still be refunded
    """
    if payment.status not in _refundable_statuses():
        raise InvalidRefundError(
            "Only successful payments can be refunded",
            {"payment_id": payment.id, "status": payment.status}
        )

    if amount <= 0:
        raise InvalidRefundError("Refund amount must be positive", {"amount": amount})

    previous = payment.refund_amount or 0
    limit = payment.amount - previous if settings.allow_multiple_partial_refunds else payment.amount
    if amount > limit:
        raise InvalidRefundError(
            "Refund amount exceeds payment amount",
            {"amount": amount, "payment_amount": payment.amount, "already_refunded": previous}
        )

    return previous + amount


async def record_refund(
    db: AsyncSession,
    identity: Optional[Identity],
    payment_id: int,
    amount: int,
    reason: str,
    reference: str
) -> Dict[str, Any]:
    """
    Record a refund on a payment.

    Status becomes "refunded" once the cumulative refund reaches the
    original amount, otherwise "partially_refunded". The write only
    applies if the payment is still in the status it was read in, so two
    concurrent refunds cannot both land.

    Args:
        db: Database session
        identity: Caller identity; must be an admin
        payment_id: Payment to refund
        amount: Refund amount in minor currency units
        reason: Free-text reason
        reference: Refund reference shared with the gateway

    Returns:
        {"success": True}

    Raises:
        NotAuthenticatedError, UnauthorizedError: caller is not an admin
        PaymentNotFoundError: unknown payment
        InvalidRefundError: refund not allowed
    """
    admin = await require_admin(db, identity)

    payment = await db.get(PaymentModel, payment_id, populate_existing=True)
    if payment is None:
        raise PaymentNotFoundError(details={"payment_id": payment_id})

    observed = payment.status
    total_refunded = validate_refund(payment, amount)
    new_status = "refunded" if total_refunded >= payment.amount else "partially_refunded"

    result = await db.execute(
        update(PaymentModel)
        .where(
            PaymentModel.id == payment.id,
            PaymentModel.status == observed,
            PaymentModel.refund_amount.is_not_distinct_from(payment.refund_amount),
        )
        .values(
            status=new_status,
            refund_amount=total_refunded,
            refund_reason=reason,
            refund_reference=reference,
            refunded_by_user_id=admin.id,
            refunded_at=utcnow(),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if result.rowcount != 1:
        await db.refresh(payment)
        raise InvalidRefundError(
            "Payment changed while the refund was being recorded",
            {"payment_id": payment.id, "status": payment.status}
        )

    logger.info(
        f"Refund {reference} on payment {payment.tx_ref}: {amount} {payment.currency} "
        f"(total {total_refunded}/{payment.amount}) -> {new_status} by {admin.id}"
    )
    return {"success": True}


async def process_refund(
    db: AsyncSession,
    identity: Optional[Identity],
    payment_id: int,
    amount: Optional[int] = None,
    reason: Optional[str] = None
) -> Dict[str, Any]:
    """
    Refund through the gateway, then record it.

    amount defaults to the full payment amount. The refund is validated
    before the gateway is called so an invalid request never moves money.

    Raises:
        GatewayError: the gateway refused the refund
        plus everything record_refund raises
    """
    admin = await require_admin(db, identity)

    payment = await db.get(PaymentModel, payment_id, populate_existing=True)
    if payment is None:
        raise PaymentNotFoundError(details={"payment_id": payment_id})

    refund_amount = amount if amount is not None else payment.amount
    validate_refund(payment, refund_amount)

    reference = generate_refund_reference()
    reason = reason or "Admin initiated refund"

    gateway_response = payment_gateway.process_refund(
        payment.gateway_ref or payment.tx_ref,
        amount=refund_amount,
        reason=reason,
        reference=reference,
    )

    await record_refund(db, identity, payment_id, refund_amount, reason, reference)

    await audit_service.log_event(
        db, "refund", "success",
        tx_ref=payment.tx_ref,
        payment_id=payment.id,
        user_id=admin.id,
        metadata={"reference": reference, "amount": refund_amount, "reason": reason},
    )

    return {
        "success": True,
        "refund": {
            "reference": reference,
            "amount": refund_amount,
            "currency": payment.currency,
            "gateway_response": gateway_response,
        },
    }
