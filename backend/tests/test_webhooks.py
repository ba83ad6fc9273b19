"""
Webhook deduplication, retention cleanup and signature checks.
"""
import asyncio
import time
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from marketpay.db.models import WebhookEventModel, utcnow
from marketpay.exceptions import WebhookSignatureError
from marketpay.services import webhook_service
from marketpay.services.webhook_service import (
    compute_signature,
    map_gateway_status,
    verify_webhook_signature,
    verify_webhook_timestamp,
)

SECRET = "test-webhook-secret"
BODY = b'{"tx_ref": "AC-1700000000000-ABC123", "status": "success"}'


async def test_first_mark_wins_second_is_duplicate(call, read):
    first = await call(webhook_service.mark_processed, "AC-1", "payment.success", "ab" * 32)
    second = await call(webhook_service.mark_processed, "AC-1", "payment.success", "ab" * 32)

    assert first.already_processed is False
    assert second.already_processed is True
    assert second.event_id == first.event_id

    events = await read(select(WebhookEventModel))
    assert len(events) == 1
    assert events[0].signature == "ab" * 16


async def test_concurrent_marks_record_one_event(call, read):
    results = await asyncio.gather(*[
        call(webhook_service.mark_processed, "AC-RACE", "payment.success") for _ in range(5)
    ])

    winners = [r for r in results if not r.already_processed]
    assert len(winners) == 1
    assert {r.event_id for r in results} == {winners[0].event_id}
    assert len(await read(select(WebhookEventModel))) == 1


async def test_is_processed(call):
    assert await call(webhook_service.is_processed, "AC-2") is False

    await call(webhook_service.mark_processed, "AC-2", "payment.failed")

    assert await call(webhook_service.is_processed, "AC-2") is True
    assert await call(webhook_service.is_processed, "AC-3") is False


async def test_cleanup_removes_only_old_events(call, read, session_factory):
    for i in range(3):
        await call(webhook_service.mark_processed, f"AC-OLD-{i}", "payment.success")
    await call(webhook_service.mark_processed, "AC-NEW", "payment.success")
    async with session_factory() as session:
        await session.execute(
            update(WebhookEventModel)
            .where(WebhookEventModel.tx_ref.like("AC-OLD-%"))
            .values(processed_at=utcnow() - timedelta(days=45))
        )
        await session.commit()

    first = await call(webhook_service.cleanup_old_webhook_events, 30, 2)
    second = await call(webhook_service.cleanup_old_webhook_events, 30, 2)

    assert (first.deleted, first.has_more) == (2, True)
    assert (second.deleted, second.has_more) == (1, False)
    assert [e.tx_ref for e in await read(select(WebhookEventModel))] == ["AC-NEW"]


async def test_cleanup_with_nothing_to_do(call):
    result = await call(webhook_service.cleanup_old_webhook_events)

    assert result.deleted == 0
    assert result.has_more is False


# ============================================================================
# Signatures
# ============================================================================

def test_valid_signature_passes():
    verify_webhook_signature(BODY, compute_signature(BODY, SECRET), SECRET)


def test_prefixed_signature_passes():
    verify_webhook_signature(BODY, "sha256=" + compute_signature(BODY, SECRET), SECRET)


def test_uppercase_signature_passes():
    verify_webhook_signature(BODY, compute_signature(BODY, SECRET).upper(), SECRET)


@pytest.mark.parametrize("signature", [None, "", "not-hex", "ab" * 10])
def test_missing_or_malformed_signature_is_rejected(signature):
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(BODY, signature, SECRET)


def test_signature_for_other_body_is_rejected():
    signature = compute_signature(b'{"tx_ref": "other"}', SECRET)

    with pytest.raises(WebhookSignatureError) as exc_info:
        verify_webhook_signature(BODY, signature, SECRET)

    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "Invalid signature"


def test_signature_with_other_secret_is_rejected():
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(BODY, compute_signature(BODY, "wrong-secret"), SECRET)


def test_fresh_or_absent_timestamp_passes():
    verify_webhook_timestamp(None)
    verify_webhook_timestamp(str(int(time.time() * 1000)), max_age_seconds=300)


def test_old_timestamp_is_rejected():
    ten_minutes_ago = int(time.time() * 1000) - 600_000

    with pytest.raises(WebhookSignatureError) as exc_info:
        verify_webhook_timestamp(str(ten_minutes_ago), max_age_seconds=300)

    assert exc_info.value.message == "Webhook expired"


def test_garbage_timestamp_is_rejected():
    with pytest.raises(WebhookSignatureError):
        verify_webhook_timestamp("yesterday")


@pytest.mark.parametrize("gateway_status,expected", [
    ("success", "success"),
    ("SUCCESSFUL", "success"),
    ("failed", "failed"),
    ("pending", "pending"),
    ("reversed", "failed"),
    (None, "failed"),
])
def test_gateway_status_mapping(gateway_status, expected):
    assert map_gateway_status(gateway_status) == expected
