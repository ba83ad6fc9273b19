"""
Payment Service

Creates payment intents under an idempotency key and drives their status
through the payment state machine.

Concurrency notes:
- Creation always inserts first, then reconciles: among rows sharing
  (user, idempotency_key) the lowest id survives and the rest are deleted.
- Status changes are compare-and-set on the observed status, so when
  several confirmations race only one caller sees its update match and
  only that caller runs fulfillment.
"""
import logging
import secrets
import string
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db.models import PaymentModel, OrderModel, utcnow
from ..exceptions import (
    InvalidTransitionError,
    PaymentNotFoundError,
    RaceLostError,
    UnauthorizedError,
    ValidationError,
)
from ..models.identity import Identity
from ..models.orders import Order
from ..models.payments import (
    REFUND_STATUSES,
    OrderMetadata,
    PaymentIntent,
    SubscriptionMetadata,
    can_transition,
    dump_metadata,
)
from . import cart_service, fulfillment_service
from .identity_service import get_or_create_user, require_admin, require_user

logger = logging.getLogger(__name__)

_REF_ALPHABET = string.digits + string.ascii_uppercase


def generate_tx_ref(prefix: str) -> str:
    """External reference: {prefix}-{ms timestamp}-{6 uppercase base36 chars}."""
    suffix = "".join(secrets.choice(_REF_ALPHABET) for _ in range(6))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


# ============================================================================
# Intent Creation (idempotency ledger)
# ============================================================================

async def insert_payment_intent(
    db: AsyncSession,
    identity: Optional[Identity],
    amount: int,
    currency: str,
    payment_type: str,
    metadata: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None
) -> Tuple[PaymentIntent, bool]:
    """
    Create a pending payment intent and report whether this call inserted it.

    For order payments the caller's cart is snapshotted into the intent's
    metadata; for subscription payments the supplied metadata must describe
    the plan being bought.

    Args:
        db: Database session
        identity: Caller identity
        amount: Amount in minor currency units, must be positive
        currency: ISO currency code
        payment_type: "order" or "subscription"
        metadata: Subscription details (ignored for order payments)
        idempotency_key: Optional client key; repeated calls with the same
            key return the same intent

    Returns:
        (intent, created): the new intent and True, or the canonical intent
        for the idempotency key and False when an earlier row holds the key

    Raises:
        NotAuthenticatedError: no identity
        ValidationError: bad amount, type or subscription metadata
        EmptyCartError, ProductUnavailableError, InsufficientStockError:
            cart cannot be snapshotted
    """
    if amount <= 0:
        raise ValidationError("Amount must be positive", {"amount": amount})

    user = await get_or_create_user(db, identity)

    if payment_type == "order":
        items = await cart_service.snapshot_cart(db, user.id)
        payment_metadata = OrderMetadata(items=items)
        prefix = settings.order_tx_ref_prefix
    elif payment_type == "subscription":
        try:
            payment_metadata = SubscriptionMetadata(**{**(metadata or {}), "kind": "subscription"})
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid subscription metadata",
                {"errors": e.errors(include_url=False, include_context=False)}
            )
        prefix = settings.subscription_tx_ref_prefix
    else:
        raise ValidationError(f"Unknown payment type: {payment_type}", {"payment_type": payment_type})

    payment = PaymentModel(
        tx_ref=generate_tx_ref(prefix),
        user_id=user.id,
        amount=amount,
        currency=currency,
        status="pending",
        payment_type=payment_type,
        metadata_json=dump_metadata(payment_metadata),
        idempotency_key=idempotency_key,
    )
    db.add(payment)
    await db.commit()
    await db.refresh(payment)

    if idempotency_key:
        try:
            await _settle_idempotency_race(db, payment)
        except RaceLostError as e:
            winner = await db.get(PaymentModel, e.winner_id, populate_existing=True)
            logger.info(
                f"Idempotency key {idempotency_key} already used by payment {e.winner_id}, "
                f"discarded duplicate {payment.id}"
            )
            return PaymentIntent.from_model(winner), False

    logger.info(
        f"Created payment intent: id={payment.id}, tx_ref={payment.tx_ref}, "
        f"type={payment_type}, amount={amount} {currency}"
    )
    return PaymentIntent.from_model(payment), True


async def create_payment_intent(
    db: AsyncSession,
    identity: Optional[Identity],
    amount: int,
    currency: str,
    payment_type: str,
    metadata: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None
) -> PaymentIntent:
    """
    Create a pending payment intent, or return the canonical one for the
    idempotency key. See insert_payment_intent.
    """
    intent, _ = await insert_payment_intent(
        db, identity, amount, currency, payment_type, metadata, idempotency_key
    )
    return intent


async def retire_idempotency_key(db: AsyncSession, payment_id: int, idempotency_key: str) -> bool:
    """
    Detach a spent intent from its idempotency key so the key can start a
    new checkout. Returns False if the row no longer holds the key.
    """
    result = await db.execute(
        update(PaymentModel)
        .where(PaymentModel.id == payment_id, PaymentModel.idempotency_key == idempotency_key)
        .values(idempotency_key=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if result.rowcount:
        logger.info(f"Retired idempotency key {idempotency_key} from payment {payment_id}")
    return result.rowcount == 1


async def _settle_idempotency_race(db: AsyncSession, payment: PaymentModel) -> None:
    """
    Keep the lowest-id row for (user, key) and delete the rest.

    Raises:
        RaceLostError: the given payment was not the survivor
    """
    result = await db.execute(
        select(PaymentModel.id)
        .where(
            PaymentModel.user_id == payment.user_id,
            PaymentModel.idempotency_key == payment.idempotency_key,
        )
        .order_by(PaymentModel.id)
    )
    ids = list(result.scalars().all())
    winner_id = ids[0]
    losers = ids[1:]

    if losers:
        await db.execute(
            delete(PaymentModel)
            .where(PaymentModel.id.in_(losers))
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    if winner_id != payment.id:
        raise RaceLostError(winner_id)


# ============================================================================
# State Machine
# ============================================================================

async def update_status(
    db: AsyncSession,
    tx_ref: str,
    new_status: str,
    gateway_ref: Optional[str] = None
) -> PaymentIntent:
    """
    Apply a gateway confirmation to a payment.

    Disallowed transitions are logged and ignored; the payment is returned
    unchanged. The first caller to move a payment from pending to success
    runs fulfillment in a separate transaction; fulfillment errors are
    logged and do not undo the status change.

    Args:
        db: Database session
        tx_ref: External transaction reference
        new_status: "success", "failed", "cancelled" or "pending"
        gateway_ref: Gateway's own reference for the charge

    Returns:
        The payment after the call

    Raises:
        PaymentNotFoundError: unknown tx_ref
        InvalidTransitionError: a refund status was requested
    """
    if new_status in REFUND_STATUSES:
        raise InvalidTransitionError(
            "Refund statuses are set through the refund ledger",
            {"tx_ref": tx_ref, "status": new_status}
        )

    payment = await _get_model_by_tx_ref(db, tx_ref)
    observed = payment.status

    if observed == "success":
        logger.info(f"Payment {tx_ref} already successful, ignoring {new_status}")
        return PaymentIntent.from_model(payment)

    if not can_transition(observed, new_status):
        if new_status == "success" and observed in ("failed", "cancelled"):
            logger.error(
                f"Late success for {observed} payment {tx_ref} (gateway_ref={gateway_ref}); "
                f"needs manual reconciliation"
            )
        else:
            logger.warning(f"Ignoring transition {observed} -> {new_status} for payment {tx_ref}")
        return PaymentIntent.from_model(payment)

    values: Dict[str, Any] = {"status": new_status, "updated_at": utcnow()}
    if gateway_ref:
        values["gateway_ref"] = gateway_ref

    result = await db.execute(
        update(PaymentModel)
        .where(PaymentModel.id == payment.id, PaymentModel.status == observed)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(payment)

    if result.rowcount != 1:
        logger.info(f"Payment {tx_ref} changed concurrently, now {payment.status}")
        return PaymentIntent.from_model(payment)

    logger.info(f"Payment {tx_ref}: {observed} -> {new_status}")

    if new_status == "success":
        # Rollback expires the instance; only plain values below
        payment_id, payment_type = payment.id, payment.payment_type
        try:
            await fulfillment_service.materialize(db, payment)
        except Exception as e:
            await db.rollback()
            logger.error(
                f"Fulfillment failed for payment {tx_ref} (id={payment_id}, "
                f"type={payment_type}): {e}",
                exc_info=True
            )
        await db.refresh(payment)

    return PaymentIntent.from_model(payment)


async def expire_pending_intents(db: AsyncSession, older_than_minutes: int) -> int:
    """
    Cancel pending intents created more than older_than_minutes ago.

    Each row changes only if still pending, so a confirmation arriving at the
    same moment wins or loses cleanly.
    """
    cutoff = utcnow() - timedelta(minutes=older_than_minutes)
    result = await db.execute(
        update(PaymentModel)
        .where(PaymentModel.status == "pending", PaymentModel.created_at < cutoff)
        .values(status="cancelled", updated_at=utcnow())
    )
    await db.commit()

    if result.rowcount:
        logger.info(f"Expired {result.rowcount} pending payment intent(s) older than {older_than_minutes} min")
    return result.rowcount


# ============================================================================
# Lookups
# ============================================================================

async def _get_model_by_tx_ref(db: AsyncSession, tx_ref: str) -> PaymentModel:
    result = await db.execute(
        select(PaymentModel)
        .where(PaymentModel.tx_ref == tx_ref)
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise PaymentNotFoundError(details={"tx_ref": tx_ref})
    return payment


async def get_by_tx_ref(db: AsyncSession, tx_ref: str) -> Optional[PaymentIntent]:
    result = await db.execute(
        select(PaymentModel)
        .where(PaymentModel.tx_ref == tx_ref)
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    return PaymentIntent.from_model(payment) if payment else None


async def get_by_idempotency_key(db: AsyncSession, user_id: str, idempotency_key: str) -> Optional[PaymentIntent]:
    """Canonical (lowest id) intent for the key, if any."""
    result = await db.execute(
        select(PaymentModel)
        .where(PaymentModel.user_id == user_id, PaymentModel.idempotency_key == idempotency_key)
        .order_by(PaymentModel.id)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    return PaymentIntent.from_model(payment) if payment else None


async def update_checkout_url(db: AsyncSession, payment_id: int, checkout_url: str) -> None:
    await db.execute(
        update(PaymentModel)
        .where(PaymentModel.id == payment_id)
        .values(checkout_url=checkout_url, updated_at=utcnow())
    )
    await db.commit()


async def list_user_payments(
    db: AsyncSession,
    identity: Optional[Identity],
    status: Optional[str] = None,
    limit: int = 50
) -> List[PaymentIntent]:
    """Caller's own payments, newest first."""
    user = await require_user(db, identity)

    query = select(PaymentModel).where(PaymentModel.user_id == user.id)
    if status:
        query = query.where(PaymentModel.status == status)
    query = query.order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc()).limit(limit)

    result = await db.execute(query)
    return [PaymentIntent.from_model(p) for p in result.scalars().all()]


async def get_payment_with_order(db: AsyncSession, identity: Optional[Identity], payment_id: int) -> Dict[str, Any]:
    """
    Payment detail plus the first order it produced.

    Raises:
        PaymentNotFoundError: unknown id
        UnauthorizedError: caller does not own the payment
    """
    user = await require_user(db, identity)

    payment = await db.get(PaymentModel, payment_id)
    if payment is None:
        raise PaymentNotFoundError(details={"payment_id": payment_id})
    if payment.user_id != user.id:
        raise UnauthorizedError("Not your payment")

    order = None
    if payment.order_id:
        order_row = await db.get(OrderModel, payment.order_id)
        order = Order.model_validate(order_row) if order_row else None

    return {"payment": PaymentIntent.from_model(payment), "order": order}


async def list_subscription_payments(db: AsyncSession, identity: Optional[Identity], limit: int = 100) -> List[PaymentIntent]:
    """Admin view of subscription payments, newest first."""
    await require_admin(db, identity)

    result = await db.execute(
        select(PaymentModel)
        .where(PaymentModel.payment_type == "subscription")
        .order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc())
        .limit(limit)
    )
    return [PaymentIntent.from_model(p) for p in result.scalars().all()]
