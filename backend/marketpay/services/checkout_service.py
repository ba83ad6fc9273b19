"""
Checkout Service

Connects payment intents to the gateway: starts hosted checkouts and
applies the gateway's answer when the payer comes back (client poll),
when the gateway posts its webhook, or when it redirects with a GET
callback.

Every confirmation path ends in payment_service.update_status, whose
already-successful no-op and compare-and-set make repeated or concurrent
confirmations harmless. The signed webhook additionally goes through the
webhook deduplicator first.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db.models import utcnow
from ..exceptions import CheckoutInProgressError, GatewayError, MarketplaceError, ValidationError
from ..mocks import payment_gateway
from ..models.identity import Identity
from ..models.payments import PaymentIntent, WebhookPayload
from . import audit_service, payment_service, webhook_service
from .identity_service import get_or_create_user

logger = logging.getLogger(__name__)


# ============================================================================
# Initiation
# ============================================================================

def _reusable(intent: PaymentIntent) -> bool:
    """Whether a previous intent for the same key can be handed back as is."""
    age = utcnow() - intent.created_at
    if intent.status == "success":
        return age < timedelta(hours=settings.idempotency_completed_ttl_hours)
    if intent.status == "pending" and intent.checkout_url:
        return age < timedelta(minutes=settings.idempotency_pending_ttl_minutes)
    return False


def _opening(intent: PaymentIntent) -> bool:
    """A recent pending intent whose checkout another request is still opening."""
    age = utcnow() - intent.created_at
    return (
        intent.status == "pending"
        and not intent.checkout_url
        and age < timedelta(minutes=settings.idempotency_pending_ttl_minutes)
    )


def _cached_response(intent: PaymentIntent) -> Dict[str, Any]:
    return {
        "success": True,
        "checkout_url": intent.checkout_url,
        "tx_ref": intent.tx_ref,
        "payment_id": intent.id,
        "cached": True,
    }


async def initialize_checkout(
    db: AsyncSession,
    identity: Optional[Identity],
    amount: int,
    currency: str,
    payment_type: str,
    metadata: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create (or reuse) a payment intent and open a gateway checkout for it.

    A recent successful intent, or a recent pending one with an open
    checkout, is returned with cached=True. Any other intent holding the
    key (failed, cancelled, refunded or stale) gives the key up and a new
    intent is created for it.

    Returns:
        {"success", "checkout_url", "tx_ref", "payment_id", "cached"}

    Raises:
        everything payment_service.create_payment_intent raises
        CheckoutInProgressError: a concurrent request with the same key has
            not opened its checkout yet
        GatewayError: gateway refused the checkout
    """
    user = await get_or_create_user(db, identity)

    if idempotency_key:
        existing = await payment_service.get_by_idempotency_key(db, user.id, idempotency_key)
        if existing:
            if _reusable(existing):
                logger.info(f"Returning cached payment {existing.tx_ref} for idempotency key {idempotency_key}")
                return _cached_response(existing)
            if _opening(existing):
                raise CheckoutInProgressError(details={"tx_ref": existing.tx_ref})
            await payment_service.retire_idempotency_key(db, existing.id, idempotency_key)

    intent, created = await payment_service.insert_payment_intent(
        db,
        identity,
        amount=amount,
        currency=currency,
        payment_type=payment_type,
        metadata=metadata,
        idempotency_key=idempotency_key,
    )

    if not created:
        # The row that holds the key belongs to a concurrent request
        winner = await payment_service.get_by_tx_ref(db, intent.tx_ref)
        if winner and _reusable(winner):
            return _cached_response(winner)
        raise CheckoutInProgressError(details={"tx_ref": intent.tx_ref})

    urls = payment_gateway.get_payment_urls(intent.tx_ref, payment_type)
    try:
        gateway_response = payment_gateway.initialize_payment(
            tx_ref=intent.tx_ref,
            amount=intent.amount,
            currency=intent.currency,
            email=user.email,
            name=user.name,
            return_url=urls["return_url"],
            callback_url=urls["callback_url"],
        )
    except GatewayError:
        if idempotency_key:
            await payment_service.retire_idempotency_key(db, intent.id, idempotency_key)
        raise
    checkout_url = gateway_response["checkout_url"]
    await payment_service.update_checkout_url(db, intent.id, checkout_url)

    logger.info(f"Checkout started for {intent.tx_ref}: {intent.amount} {intent.currency}")
    return {
        "success": True,
        "checkout_url": checkout_url,
        "tx_ref": intent.tx_ref,
        "payment_id": intent.id,
        "cached": False,
    }


# ============================================================================
# Confirmation
# ============================================================================

async def verify_and_update(db: AsyncSession, tx_ref: str) -> Dict[str, Any]:
    """
    Client-poll confirmation: ask the gateway, then apply its answer.

    Raises:
        GatewayError: gateway does not know the transaction
        PaymentNotFoundError: unknown tx_ref
    """
    verification = payment_gateway.verify_payment(tx_ref)
    status = webhook_service.map_gateway_status(verification["status"])

    intent = await payment_service.update_status(db, tx_ref, status, verification["reference"])

    await audit_service.log_event(
        db, "verify", "success",
        tx_ref=tx_ref,
        payment_id=intent.id,
        user_id=intent.user_id,
        metadata={"verified_status": status, "payment_status": intent.status},
    )

    return {
        "success": True,
        "status": intent.status,
        "payment": intent,
        "data": {
            "amount": verification["amount"],
            "currency": verification["currency"],
            "reference": verification["reference"],
            "tx_ref": tx_ref,
            "payment_method": verification["method"],
            "created_at": verification["created_at"],
        },
    }


async def process_webhook(
    db: AsyncSession,
    raw_body: bytes,
    signature: Optional[str],
    timestamp: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
) -> Dict[str, Any]:
    """
    Handle a signed gateway webhook.

    Steps: verify signature and age, parse the body, record the event with
    the deduplicator (duplicates stop here), re-verify with the gateway
    (falling back to the webhook's own status if the gateway is
    unreachable), then update the payment.

    Raises:
        WebhookSignatureError: authentication failed
        ValidationError: body is not a valid webhook payload
    """
    audit = {"ip_address": ip_address, "user_agent": user_agent}

    try:
        webhook_service.verify_webhook_signature(raw_body, signature, settings.webhook_secret)
        webhook_service.verify_webhook_timestamp(timestamp)
    except MarketplaceError as e:
        await audit_service.log_event(
            db, "webhook", "invalid_signature",
            metadata=e.details, error_message=e.message, **audit
        )
        raise

    try:
        payload = WebhookPayload.model_validate_json(raw_body)
    except PydanticValidationError as e:
        await audit_service.log_event(
            db, "webhook", "validation_failed", error_message=str(e), **audit
        )
        raise ValidationError("Invalid webhook payload")

    tx_ref = payload.tx_ref
    logger.info(f"Webhook received for {tx_ref}, status={payload.status}")

    marked = await webhook_service.mark_processed(
        db, tx_ref, f"payment.{payload.status or 'unknown'}", signature
    )
    if marked.already_processed:
        await audit_service.log_event(
            db, "webhook", "duplicate",
            tx_ref=tx_ref, metadata={"event_id": marked.event_id},
            error_message="Duplicate webhook ignored", **audit
        )
        return {"success": True, "message": "Already processed"}

    verified_status = payload.status
    try:
        verified_status = payment_gateway.verify_payment(tx_ref)["status"]
    except GatewayError as e:
        logger.warning(f"Gateway verification failed for {tx_ref}, using webhook status: {e}")
        await audit_service.log_event(
            db, "webhook", "verify_api_failed",
            tx_ref=tx_ref, metadata={"webhook_status": payload.status},
            error_message="Gateway verification failed, using webhook status", **audit
        )

    payment_status = webhook_service.map_gateway_status(verified_status)
    intent = await payment_service.update_status(db, tx_ref, payment_status, payload.trx_ref)

    await audit_service.log_event(
        db, "webhook", "success",
        tx_ref=tx_ref,
        payment_id=intent.id,
        user_id=intent.user_id,
        metadata={
            "webhook_status": payload.status,
            "verified_status": verified_status,
            "final_status": payment_status,
            "gateway_ref": payload.trx_ref,
        },
        **audit
    )
    return {"success": True, "message": "Webhook processed successfully"}


async def process_redirect_callback(
    db: AsyncSession,
    tx_ref: str,
    query_status: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
) -> Dict[str, Any]:
    """
    Handle the gateway's unsigned GET callback.

    The status in the query string is never trusted: the gateway is always
    asked. If it cannot answer, the payment is left as it is for manual
    review.
    """
    audit = {"ip_address": ip_address, "user_agent": user_agent}
    await audit_service.log_event(
        db, "webhook_get", "received", tx_ref=tx_ref, metadata={"status": query_status}, **audit
    )

    try:
        verification = payment_gateway.verify_payment(tx_ref)
    except GatewayError as e:
        await audit_service.log_event(
            db, "webhook_get", "verification_required",
            tx_ref=tx_ref, metadata={"untrusted_query_status": query_status},
            error_message=e.message, **audit
        )
        return {"success": True, "message": "Webhook processed - verification required"}

    status = webhook_service.map_gateway_status(verification["status"])
    intent = await payment_service.update_status(db, tx_ref, status, verification["reference"])

    await audit_service.log_event(
        db, "webhook_get", "success",
        tx_ref=tx_ref, payment_id=intent.id, metadata={"verified_status": status}, **audit
    )
    return {"success": True, "status": intent.status}
