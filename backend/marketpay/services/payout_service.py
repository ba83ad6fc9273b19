"""
Payout Service

Pays sellers for completed orders by bank transfer through the gateway,
and follows the transfer through the gateway's callbacks.

Each order has at most one payout row. A transfer attempt first claims
the row (insert for the first attempt, compare-and-set on the attempt
counter afterwards); only the caller whose claim succeeds talks to the
gateway, so concurrent requests for the same order never send two
transfers. Failed attempts are retried by the janitor with growing
back-off until MAX_ATTEMPTS is reached.
"""
import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db.models import BusinessModel, OrderModel, PaymentModel, PayoutModel, UserModel, utcnow
from ..exceptions import (
    GatewayError,
    MarketplaceError,
    OrderNotFoundError,
    PayoutNotAllowedError,
    PayoutNotFoundError,
    RaceLostError,
    UnauthorizedError,
    ValidationError,
)
from ..mocks import payment_gateway
from ..models.identity import Identity
from ..models.payouts import (
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    Payout,
    PayoutBankAccount,
    TransferCallback,
)
from . import webhook_service
from .identity_service import require_user

logger = logging.getLogger(__name__)

RETRY_BACKOFFS = (
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(hours=1),
    timedelta(hours=6),
    timedelta(hours=24),
)

MAX_ATTEMPTS = len(RETRY_BACKOFFS)

_REF_ALPHABET = string.digits + string.ascii_uppercase


def backoff_for(attempts: int) -> timedelta:
    """Wait before the next attempt after `attempts` tries."""
    index = max(0, min(attempts - 1, len(RETRY_BACKOFFS) - 1))
    return RETRY_BACKOFFS[index]


def build_reference(order_id: str, attempt: int) -> str:
    """Transfer reference, unique per attempt: PO-{order}-{attempt}-{6 chars}."""
    suffix = "".join(secrets.choice(_REF_ALPHABET) for _ in range(6))
    return f"PO-{order_id}-{attempt}-{suffix}"


def compute_amounts(amount_gross: int) -> Dict[str, int]:
    """Platform fee (rounded to the minor unit) and what the seller receives."""
    platform_fee = int(round(amount_gross * settings.payout_platform_fee_rate))
    return {
        "amount_gross": amount_gross,
        "platform_fee": platform_fee,
        "amount_net": max(0, amount_gross - platform_fee),
    }


def map_transfer_status(status: Optional[str]) -> str:
    """Gateway transfer status -> payout status; anything unknown is a failure."""
    normalized = (status or "").lower()
    if normalized in ("success", "successful"):
        return "success"
    if normalized == "approved":
        return "approved"
    if normalized == "pending":
        return "queued"
    if normalized in ("reverted", "reversed"):
        return "reverted"
    return "failed"


# ============================================================================
# Transfers
# ============================================================================

async def transfer_for_order(db: AsyncSession, identity: Optional[Identity], order_id: str) -> Payout:
    """
    Seller-initiated payout for one of their completed orders.

    Raises:
        NotAuthenticatedError: no identity
        UnauthorizedError: caller is not the order's seller
        see perform_transfer
    """
    user = await require_user(db, identity)
    return await perform_transfer(db, order_id, initiated_by=user.id)


async def perform_transfer(db: AsyncSession, order_id: str, initiated_by: Optional[str] = None) -> Payout:
    """
    Send (or re-send) the payout for an order.

    A payout already queued, approved or paid is returned as is. A pending
    payout requested again by the seller is returned as is, provided the
    amounts and the seller's bank details have not changed since it was
    created. Otherwise a new attempt is claimed and the transfer is sent.

    Args:
        db: Database session
        order_id: Order to pay out
        initiated_by: User id of the requesting seller, None for the
            retry job

    Raises:
        OrderNotFoundError: unknown order
        UnauthorizedError: initiated_by is not the seller
        PayoutNotAllowedError: order, payment, bank details or attempt
            count rule the payout out
        GatewayError: the gateway refused the transfer (the attempt is
            recorded as failed first)
    """
    order = await db.get(OrderModel, order_id, populate_existing=True)
    if order is None:
        raise OrderNotFoundError(details={"order_id": order_id})

    if initiated_by and order.seller_id != initiated_by:
        raise UnauthorizedError("Only the seller can request a payout")

    if order.status != "completed":
        raise PayoutNotAllowedError(
            "Order must be completed before payout",
            {"order_id": order_id, "status": order.status}
        )

    payment = await db.get(PaymentModel, order.payment_id, populate_existing=True) if order.payment_id else None
    if payment is None or payment.status != "success":
        raise PayoutNotAllowedError("Payment must be successful before payout", {"order_id": order_id})

    seller = await db.get(UserModel, order.seller_id)
    business = await db.get(BusinessModel, seller.business_id, populate_existing=True) if seller and seller.business_id else None
    if business is None:
        raise PayoutNotAllowedError("Seller business not found", {"seller_id": order.seller_id})

    if not (business.payout_bank_code and business.payout_account_number and business.payout_account_name):
        raise PayoutNotAllowedError("Seller payout bank details are required", {"business_id": business.id})

    amounts = compute_amounts(order.amount)
    if amounts["amount_net"] <= 0:
        raise PayoutNotAllowedError("Net payout amount must be greater than zero", amounts)

    existing = await _get_model_by_order(db, order.id)
    if existing:
        if existing.status in IN_FLIGHT_STATUSES:
            return Payout.model_validate(existing)

        if existing.attempts >= MAX_ATTEMPTS:
            raise PayoutNotAllowedError(
                "Maximum payout attempts reached",
                {"payout_id": existing.id, "attempts": existing.attempts}
            )

        if existing.status == "pending" and initiated_by:
            changed = (
                existing.amount_gross != amounts["amount_gross"]
                or existing.platform_fee != amounts["platform_fee"]
                or existing.amount_net != amounts["amount_net"]
                or existing.currency != payment.currency
                or (business.payout_updated_at is not None and business.payout_updated_at > existing.created_at)
            )
            if changed:
                raise PayoutNotAllowedError(
                    "Payout details have changed; please contact support",
                    {"payout_id": existing.id}
                )
            return Payout.model_validate(existing)

    payout = await prepare_payout_attempt(db, order, payment, amounts, existing)
    if payout is None:
        # Another request claimed this attempt first
        current = await _get_model_by_order(db, order.id)
        return Payout.model_validate(current)

    try:
        response = payment_gateway.create_transfer(
            amount=payout.amount_net,
            currency=payout.currency,
            account_name=business.payout_account_name,
            account_number=business.payout_account_number,
            bank_code=business.payout_bank_code,
            reference=payout.reference,
        )
    except GatewayError as e:
        await update_payout_status(db, payout.id, "failed", last_error=e.message)
        logger.error(
            f"Transfer {payout.reference} for order {order_id} failed "
            f"(attempt {payout.attempts}/{MAX_ATTEMPTS}): {e.message}"
        )
        raise

    data = response.get("data") or {}
    updated = await update_payout_status(
        db,
        payout.id,
        "queued",
        gateway_reference=data.get("gateway_reference") or data.get("reference"),
        bank_reference=data.get("bank_reference"),
    )
    logger.info(
        f"Queued payout {payout.reference} for order {order_id}: "
        f"{payout.amount_net} {payout.currency} (attempt {payout.attempts})"
    )
    return updated


async def prepare_payout_attempt(
    db: AsyncSession,
    order: OrderModel,
    payment: PaymentModel,
    amounts: Dict[str, int],
    existing: Optional[PayoutModel] = None
) -> Optional[PayoutModel]:
    """
    Claim the next transfer attempt for an order.

    The first attempt inserts the payout row; later attempts bump the
    attempt counter, but only if nobody else has since the row was read.

    Returns:
        The claimed payout with a fresh reference, or None when a
        concurrent request claimed the attempt
    """
    attempt = (existing.attempts if existing else 0) + 1
    reference = build_reference(order.id, attempt)

    if existing:
        result = await db.execute(
            update(PayoutModel)
            .where(
                PayoutModel.id == existing.id,
                PayoutModel.attempts == existing.attempts,
                PayoutModel.status == existing.status,
            )
            .values(
                payment_id=payment.id,
                currency=payment.currency,
                reference=reference,
                status="pending",
                attempts=attempt,
                last_error=None,
                updated_at=utcnow(),
                **amounts,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount != 1:
            logger.info(f"Payout attempt {attempt} for order {order.id} already claimed")
            return None
        return await db.get(PayoutModel, existing.id, populate_existing=True)

    payout = PayoutModel(
        order_id=order.id,
        seller_id=order.seller_id,
        payment_id=payment.id,
        currency=payment.currency,
        status="pending",
        reference=reference,
        attempts=1,
        **amounts,
    )
    db.add(payout)
    await db.commit()
    await db.refresh(payout)

    try:
        await _settle_payout_race(db, payout)
    except RaceLostError as e:
        logger.info(f"Payout for order {order.id} already created as {e.winner_id}, discarded {payout.id}")
        return None

    return payout


async def _settle_payout_race(db: AsyncSession, payout: PayoutModel) -> None:
    """
    Keep the lowest-id payout for the order and delete the rest.

    Raises:
        RaceLostError: the given payout was not the survivor
    """
    result = await db.execute(
        select(PayoutModel.id)
        .where(PayoutModel.order_id == payout.order_id)
        .order_by(PayoutModel.id)
    )
    ids = list(result.scalars().all())
    winner_id = ids[0]

    if len(ids) > 1:
        await db.execute(
            delete(PayoutModel)
            .where(PayoutModel.id.in_(ids[1:]))
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    if winner_id != payout.id:
        raise RaceLostError(winner_id)


async def update_payout_status(
    db: AsyncSession,
    payout_id: int,
    status: str,
    gateway_reference: Optional[str] = None,
    bank_reference: Optional[str] = None,
    last_error: Optional[str] = None
) -> Payout:
    """Record the outcome of a transfer attempt."""
    values: Dict[str, Any] = {"status": status, "last_error": last_error, "updated_at": utcnow()}
    if gateway_reference:
        values["gateway_reference"] = gateway_reference
    if bank_reference:
        values["bank_reference"] = bank_reference

    await db.execute(
        update(PayoutModel)
        .where(PayoutModel.id == payout_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    payout = await db.get(PayoutModel, payout_id, populate_existing=True)
    return Payout.model_validate(payout)


# ============================================================================
# Retries
# ============================================================================

async def list_retryable(db: AsyncSession, now: Optional[datetime] = None) -> List[PayoutModel]:
    """Pending or failed payouts with attempts left whose back-off has elapsed."""
    now = now or utcnow()
    result = await db.execute(
        select(PayoutModel)
        .where(
            PayoutModel.status.in_(("pending", "failed")),
            PayoutModel.attempts < MAX_ATTEMPTS,
        )
        .order_by(PayoutModel.updated_at, PayoutModel.id)
        .execution_options(populate_existing=True)
    )
    return [
        payout for payout in result.scalars().all()
        if now - payout.updated_at >= backoff_for(payout.attempts)
    ]


async def retry_failed_payouts(db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Re-send every retryable payout. One payout failing does not stop the
    batch.

    Returns:
        {"total", "succeeded", "failed"}
    """
    payouts = [(p.id, p.order_id, p.attempts) for p in await list_retryable(db, now)]
    logger.info(f"Starting payout retry batch: {len(payouts)} payout(s)")

    succeeded = failed = 0
    for payout_id, order_id, attempts in payouts:
        try:
            await perform_transfer(db, order_id)
            succeeded += 1
            logger.info(f"Payout retry succeeded: payout={payout_id}, order={order_id}, attempt={attempts + 1}")
        except MarketplaceError as e:
            failed += 1
            logger.error(
                f"Payout retry failed: payout={payout_id}, order={order_id}, "
                f"attempt={attempts + 1}: {e.error_code} - {e.message}"
            )

    logger.info(f"Payout retry batch completed: {succeeded} succeeded, {failed} failed")
    return {"total": len(payouts), "succeeded": succeeded, "failed": failed}


# ============================================================================
# Gateway callbacks
# ============================================================================

async def set_status_from_webhook(
    db: AsyncSession,
    payout_id: int,
    status: str,
    gateway_reference: Optional[str] = None,
    bank_reference: Optional[str] = None,
    last_error: Optional[str] = None
) -> Payout:
    """
    Apply a status reported by the gateway.

    Paid and reverted payouts are final: any other status for them is
    logged and ignored. The change is compare-and-set on the status that
    was read, so a concurrent callback cannot be overwritten blindly.

    Raises:
        PayoutNotFoundError: unknown payout
    """
    payout = await db.get(PayoutModel, payout_id, populate_existing=True)
    if payout is None:
        raise PayoutNotFoundError(details={"payout_id": payout_id})

    observed = payout.status
    if observed in TERMINAL_STATUSES and observed != status:
        logger.warning(f"Ignoring payout {payout_id} transition {observed} -> {status}")
        return Payout.model_validate(payout)

    values: Dict[str, Any] = {"status": status, "last_error": last_error, "updated_at": utcnow()}
    if gateway_reference:
        values["gateway_reference"] = gateway_reference
    if bank_reference:
        values["bank_reference"] = bank_reference

    result = await db.execute(
        update(PayoutModel)
        .where(PayoutModel.id == payout_id, PayoutModel.status == observed)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(payout)

    if result.rowcount != 1:
        logger.info(f"Payout {payout_id} changed concurrently, now {payout.status}")
    else:
        logger.info(f"Payout {payout_id}: {observed} -> {status}")
    return Payout.model_validate(payout)


def _parse_callback(raw_body: bytes) -> TransferCallback:
    try:
        callback = TransferCallback.model_validate_json(raw_body)
    except PydanticValidationError:
        raise ValidationError("Invalid JSON payload")
    if not callback.resolved_reference():
        raise ValidationError("Missing reference")
    return callback


async def process_transfer_webhook(db: AsyncSession, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """
    Handle a signed transfer status callback.

    Steps: verify the signature, find the payout by reference, ask the
    gateway for the transfer's real status, record the (reference, status)
    event with the deduplicator (duplicates stop here), then apply it.

    Raises:
        WebhookSignatureError: authentication failed
        ValidationError: body unreadable or without reference
        PayoutNotFoundError: no payout for the reference
        GatewayError: the gateway could not confirm the transfer
    """
    webhook_service.verify_webhook_signature(raw_body, signature, settings.payout_webhook_secret)
    callback = _parse_callback(raw_body)
    reference = callback.resolved_reference()

    payout = await get_by_reference(db, reference)
    if payout is None:
        raise PayoutNotFoundError(details={"reference": reference})

    verification = payment_gateway.verify_transfer(payout.reference)
    if not verification.get("status"):
        raise GatewayError("Transfer verification unavailable", {"reference": payout.reference})

    payout_status = map_transfer_status(verification["status"])
    logger.info(f"Transfer webhook for {reference}: reported={callback.resolved('status')}, verified={payout_status}")

    marked = await webhook_service.mark_processed(
        db, f"{payout.reference}:{payout_status}", f"transfer.{payout_status}", signature
    )
    if marked.already_processed:
        return {"success": True, "status": payout_status, "message": "Already processed"}

    updated = await set_status_from_webhook(
        db,
        payout.id,
        payout_status,
        gateway_reference=verification.get("gateway_reference") or callback.resolved("gateway_reference"),
        bank_reference=verification.get("bank_reference") or callback.resolved("bank_reference"),
    )
    return {"success": True, "status": updated.status}


async def process_transfer_approval(db: AsyncSession, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """
    Answer the gateway's signed approval request for an outgoing transfer.

    The transfer is approved only if it matches a payout we sent, with the
    same net amount.

    Raises:
        WebhookSignatureError: authentication failed
        ValidationError: body unreadable, no reference, or amount mismatch
        PayoutNotFoundError: no payout for the reference
    """
    webhook_service.verify_webhook_signature(raw_body, signature, settings.payout_approval_secret)
    callback = _parse_callback(raw_body)
    reference = callback.resolved_reference()

    payout = await get_by_reference(db, reference)
    if payout is None:
        raise PayoutNotFoundError(details={"reference": reference})

    if payout.status == "success":
        return {"status": "approved", "reference": reference}

    amount = callback.resolved_amount()
    if amount is not None and amount != payout.amount_net:
        raise ValidationError(
            "Payout amount mismatch",
            {"reference": reference, "amount": amount, "expected": payout.amount_net}
        )

    await set_status_from_webhook(
        db,
        payout.id,
        "approved",
        gateway_reference=callback.resolved("gateway_reference") or payout.gateway_reference,
        bank_reference=callback.resolved("bank_reference") or payout.bank_reference,
    )
    return {"status": "approved", "reference": reference}


# ============================================================================
# Bank details
# ============================================================================

async def set_bank_account(db: AsyncSession, identity: Optional[Identity], account: PayoutBankAccount) -> Dict[str, Any]:
    """
    Store where the caller's business is paid. Only known banks are accepted.

    Raises:
        ValidationError: caller owns no business, or unknown bank
    """
    user = await require_user(db, identity)
    business = await db.get(BusinessModel, user.business_id) if user.business_id else None
    if business is None or business.owner_id != user.id:
        raise ValidationError("You need to register a business first")

    banks = {bank["id"]: bank for bank in payment_gateway.list_banks()["data"]}
    if account.bank_code not in banks:
        raise ValidationError("Unknown bank", {"bank_code": account.bank_code})

    business.payout_bank_code = account.bank_code
    business.payout_bank_name = account.bank_name or banks[account.bank_code]["name"]
    business.payout_account_number = account.account_number
    business.payout_account_name = account.account_name
    business.payout_updated_at = utcnow()
    await db.commit()

    logger.info(f"Updated payout bank details for business {business.id}")
    return {
        "bank_code": business.payout_bank_code,
        "bank_name": business.payout_bank_name,
        "account_name": business.payout_account_name,
        "account_number_last4": business.payout_account_number[-4:],
    }


def list_banks() -> List[Dict[str, Any]]:
    return payment_gateway.list_banks()["data"]


# ============================================================================
# Lookups
# ============================================================================

async def _get_model_by_order(db: AsyncSession, order_id: str) -> Optional[PayoutModel]:
    result = await db.execute(
        select(PayoutModel)
        .where(PayoutModel.order_id == order_id)
        .order_by(PayoutModel.id)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_by_reference(db: AsyncSession, reference: str) -> Optional[PayoutModel]:
    result = await db.execute(
        select(PayoutModel)
        .where(or_(PayoutModel.reference == reference, PayoutModel.gateway_reference == reference))
        .order_by(PayoutModel.id)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_for_seller(db: AsyncSession, identity: Optional[Identity]) -> List[Payout]:
    """Caller's payouts as a seller, newest first."""
    user = await require_user(db, identity)
    result = await db.execute(
        select(PayoutModel)
        .where(PayoutModel.seller_id == user.id)
        .order_by(PayoutModel.created_at.desc(), PayoutModel.id.desc())
    )
    return [Payout.model_validate(p) for p in result.scalars().all()]


async def get_by_order(db: AsyncSession, identity: Optional[Identity], order_id: str) -> Optional[Payout]:
    """
    Payout for an order, visible to the order's buyer and seller.

    Raises:
        UnauthorizedError: caller is neither buyer nor seller
    """
    user = await require_user(db, identity)

    order = await db.get(OrderModel, order_id)
    if order is None:
        return None
    if user.id not in (order.buyer_id, order.seller_id):
        raise UnauthorizedError("Not your order")

    payout = await _get_model_by_order(db, order_id)
    return Payout.model_validate(payout) if payout else None
