"""
Webhook Service

Deduplicates gateway callbacks by transaction reference and checks their
signatures.

A webhook_events row for a tx_ref means the callback was already handled.
Recording follows the same insert-then-tiebreak pattern as payment
creation: re-check, insert, then keep the lowest id among rows for the
reference. The caller whose row survives processes the event; everyone
else is told it was already processed.
"""
import hashlib
import hmac
import logging
import re
import time
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db.models import WebhookEventModel, utcnow
from ..exceptions import RaceLostError, WebhookSignatureError
from ..models.webhooks import CleanupResult, MarkProcessedResult

logger = logging.getLogger(__name__)

_HEX_SIGNATURE = re.compile(r"^[0-9a-fA-F]{64}$")

# Only a prefix of the signature is kept for audit
STORED_SIGNATURE_LENGTH = 32


# ============================================================================
# Deduplication
# ============================================================================

async def _find_event(db: AsyncSession, tx_ref: str) -> Optional[WebhookEventModel]:
    result = await db.execute(
        select(WebhookEventModel)
        .where(WebhookEventModel.tx_ref == tx_ref)
        .order_by(WebhookEventModel.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def is_processed(db: AsyncSession, tx_ref: str) -> bool:
    return await _find_event(db, tx_ref) is not None


async def mark_processed(
    db: AsyncSession,
    tx_ref: str,
    event_type: str,
    signature: Optional[str] = None
) -> MarkProcessedResult:
    """
    Record that the callback for tx_ref is being handled.

    Args:
        db: Database session
        tx_ref: External transaction reference from the callback
        event_type: e.g. "payment.success"
        signature: Callback signature; only a prefix is stored

    Returns:
        already_processed=False with the new event id for the first
        delivery, already_processed=True with the existing id otherwise
    """
    existing = await _find_event(db, tx_ref)
    if existing:
        logger.info(f"Webhook for {tx_ref} already processed as event {existing.id}")
        return MarkProcessedResult(already_processed=True, event_id=existing.id)

    event = WebhookEventModel(
        tx_ref=tx_ref,
        event_type=event_type,
        signature=signature[:STORED_SIGNATURE_LENGTH] if signature else None,
    )
    db.add(event)
    await db.commit()
    await db.refresh(event)

    try:
        await _settle_webhook_race(db, event)
    except RaceLostError as e:
        logger.info(f"Concurrent webhook for {tx_ref} recorded first as event {e.winner_id}")
        return MarkProcessedResult(already_processed=True, event_id=e.winner_id)

    logger.debug(f"Recorded webhook event {event.id} for {tx_ref} ({event_type})")
    return MarkProcessedResult(already_processed=False, event_id=event.id)


async def _settle_webhook_race(db: AsyncSession, event: WebhookEventModel) -> None:
    """
    Keep the lowest-id event for the reference and delete the rest.

    Raises:
        RaceLostError: the given event was not the survivor
    """
    result = await db.execute(
        select(WebhookEventModel.id)
        .where(WebhookEventModel.tx_ref == event.tx_ref)
        .order_by(WebhookEventModel.id)
    )
    ids = list(result.scalars().all())
    winner_id = ids[0]

    if len(ids) > 1:
        await db.execute(
            delete(WebhookEventModel)
            .where(WebhookEventModel.id.in_(ids[1:]))
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    if winner_id != event.id:
        raise RaceLostError(winner_id)


async def cleanup_old_webhook_events(
    db: AsyncSession,
    older_than_days: Optional[int] = None,
    batch_size: Optional[int] = None
) -> CleanupResult:
    """
    Delete webhook events older than the retention window, one batch at a time.

    has_more=True means a full batch was deleted and another run may find
    more.
    """
    older_than_days = older_than_days if older_than_days is not None else settings.webhook_retention_days
    batch_size = batch_size or settings.webhook_cleanup_batch_size
    cutoff = utcnow() - timedelta(days=older_than_days)

    result = await db.execute(
        select(WebhookEventModel.id)
        .where(WebhookEventModel.processed_at < cutoff)
        .order_by(WebhookEventModel.id)
        .limit(batch_size)
    )
    ids = list(result.scalars().all())

    if ids:
        await db.execute(
            delete(WebhookEventModel)
            .where(WebhookEventModel.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.info(f"Deleted {len(ids)} webhook event(s) older than {older_than_days} days")

    return CleanupResult(deleted=len(ids), has_more=len(ids) == batch_size)


# ============================================================================
# Signatures
# ============================================================================

def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: str) -> None:
    """
    Check the callback signature header against the raw body.

    Accepts an optional "sha256=" prefix. Comparison is constant time.

    Raises:
        WebhookSignatureError: signature missing, malformed or wrong
    """
    if not signature:
        raise WebhookSignatureError("Missing signature")

    normalized = re.sub(r"^sha256=", "", signature.strip(), flags=re.IGNORECASE)
    if not _HEX_SIGNATURE.match(normalized):
        raise WebhookSignatureError("Malformed signature")

    expected = compute_signature(payload, secret)
    if not hmac.compare_digest(expected, normalized.lower()):
        raise WebhookSignatureError(
            "Invalid signature",
            {"signature_provided": signature[:10] + "..."}
        )


def verify_webhook_timestamp(timestamp: Optional[str], max_age_seconds: Optional[int] = None) -> None:
    """
    Reject callbacks whose millisecond timestamp header is too old.

    A missing header is accepted.

    Raises:
        WebhookSignatureError: unparseable or expired timestamp
    """
    if not timestamp:
        return

    max_age_seconds = max_age_seconds or settings.webhook_max_age_seconds
    try:
        sent_ms = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("Webhook timestamp invalid", {"timestamp": timestamp})

    age_ms = int(time.time() * 1000) - sent_ms
    if age_ms > max_age_seconds * 1000:
        raise WebhookSignatureError("Webhook expired", {"timestamp": timestamp, "age_ms": age_ms})


def map_gateway_status(status: Optional[str]) -> str:
    """Gateway status string -> payment status; anything unknown is a failure."""
    normalized = (status or "").lower()
    if normalized in ("success", "successful"):
        return "success"
    if normalized == "failed":
        return "failed"
    if normalized == "pending":
        return "pending"
    return "failed"
