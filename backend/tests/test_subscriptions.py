"""
Subscription checkout, activation on payment success, and the lifecycle
after it: cancel, reactivate, plan changes and period-end expiry.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from marketpay.db.models import BusinessModel, PaymentModel, SubscriptionModel, utcnow
from marketpay.exceptions import PlanNotFoundError, SubscriptionNotFoundError, UnauthorizedError, ValidationError
from marketpay.services import subscription_service
from marketpay.services.payment_service import create_payment_intent, update_status

from conftest import headers_for, identity_for


@pytest.fixture
async def owner(seed):
    owner = await seed.seller("Hana", business_name="Hana Imports")
    return owner


async def _pay_for_plan(call, owner, plan, billing_cycle="monthly"):
    intent = await call(
        create_payment_intent,
        identity_for(owner), plan.monthly_price, "ETB", "subscription",
        {"plan_id": plan.id, "billing_cycle": billing_cycle, "business_id": owner.business_id},
    )
    return await call(update_status, intent.tx_ref, "success")


async def test_success_creates_active_subscription(call, read, seed, owner):
    plan = await seed.plan("Growth")

    payment = await _pay_for_plan(call, owner, plan)

    subs = await read(select(SubscriptionModel))
    assert len(subs) == 1
    sub = subs[0]
    assert sub.business_id == owner.business_id
    assert sub.plan_id == plan.id
    assert sub.status == "active"
    assert sub.billing_cycle == "monthly"
    assert (sub.current_period_end - sub.current_period_start).days == 30
    assert sub.cancel_at_period_end is False
    assert sub.last_payment_id == payment.id
    assert payment.subscription_id == sub.id


async def test_annual_cycle_runs_a_year(call, read, seed, owner):
    plan = await seed.plan("Scale")

    await _pay_for_plan(call, owner, plan, billing_cycle="annual")

    sub = (await read(select(SubscriptionModel)))[0]
    assert sub.billing_cycle == "annual"
    assert (sub.current_period_end - sub.current_period_start).days == 365


async def test_success_patches_existing_subscription(call, read, seed):
    owner = await seed.seller("Dawit")
    business = await seed.business(owner, "Dawit Spices")
    old_plan = await seed.plan("Starter")
    new_plan = await seed.plan("Growth")
    existing = await seed.subscription(business, old_plan, status="past_due")

    payment = await _pay_for_plan(call, owner, new_plan)

    subs = await read(select(SubscriptionModel))
    assert len(subs) == 1
    sub = subs[0]
    assert sub.id == existing.id
    assert sub.plan_id == new_plan.id
    assert sub.status == "active"
    assert sub.cancel_at_period_end is False
    assert sub.trial_ends_at is None
    assert sub.last_payment_id == payment.id
    assert (sub.current_period_end - sub.current_period_start).days == 30


async def test_repeated_success_activates_once(call, read, seed, owner):
    plan = await seed.plan("Growth")
    payment = await _pay_for_plan(call, owner, plan)

    again = await call(update_status, payment.tx_ref, "success")

    assert again.subscription_id == payment.subscription_id
    assert len(await read(select(SubscriptionModel))) == 1


async def test_failed_plan_payment_activates_nothing(call, read, seed, owner):
    plan = await seed.plan("Growth")
    intent = await call(
        create_payment_intent,
        identity_for(owner), plan.monthly_price, "ETB", "subscription",
        {"plan_id": plan.id, "billing_cycle": "monthly", "business_id": owner.business_id},
    )

    await call(update_status, intent.tx_ref, "failed")

    assert await read(select(SubscriptionModel)) == []


# ============================================================================
# Checkout
# ============================================================================

async def test_checkout_opens_gateway_session(call, read, seed, owner):
    plan = await seed.plan("Growth", monthly_price=50000, annual_price=500000)

    result = await call(subscription_service.start_checkout, identity_for(owner), plan.id, "annual")

    assert result["success"] is True
    assert result["cached"] is False
    assert result["tx_ref"].startswith("AC-SUB-")
    assert result["checkout_url"]

    payment = (await read(select(PaymentModel)))[0]
    assert payment.payment_type == "subscription"
    assert payment.amount == 500000
    assert payment.checkout_url == result["checkout_url"]


async def test_checkout_requires_a_business(call, seed):
    buyer = await seed.user("No Business")
    plan = await seed.plan()

    with pytest.raises(ValidationError):
        await call(subscription_service.start_checkout, identity_for(buyer), plan.id)


async def test_checkout_rejects_inactive_plan(call, seed, owner):
    plan = await seed.plan("Legacy", is_active=False)

    with pytest.raises(PlanNotFoundError):
        await call(subscription_service.start_checkout, identity_for(owner), plan.id)


async def test_checkout_rejects_unknown_plan(call, owner):
    with pytest.raises(PlanNotFoundError):
        await call(subscription_service.start_checkout, identity_for(owner), "plan_missing")


async def test_checkout_rejects_same_active_plan(call, seed, owner):
    plan = await seed.plan("Growth")
    await _pay_for_plan(call, owner, plan)

    with pytest.raises(ValidationError) as exc_info:
        await call(subscription_service.start_checkout, identity_for(owner), plan.id)

    assert exc_info.value.details["status"] == "active"


async def test_checkout_allows_switching_plans(call, seed, owner):
    current = await seed.plan("Starter")
    upgrade = await seed.plan("Growth")
    await _pay_for_plan(call, owner, current)

    result = await call(subscription_service.start_checkout, identity_for(owner), upgrade.id)

    assert result["success"] is True


async def test_checkout_rejects_unpriced_plan(call, seed, owner):
    plan = await seed.plan("Free", monthly_price=0)

    with pytest.raises(ValidationError):
        await call(subscription_service.start_checkout, identity_for(owner), plan.id)


async def test_current_subscription(call, seed, owner):
    assert await call(subscription_service.get_current_subscription, identity_for(owner)) is None

    plan = await seed.plan("Growth")
    await _pay_for_plan(call, owner, plan)

    current = await call(subscription_service.get_current_subscription, identity_for(owner))
    assert current.plan_id == plan.id
    assert current.status == "active"


# ============================================================================
# Lifecycle
# ============================================================================

@pytest.fixture
async def running(session_factory, seed, owner):
    """An active monthly subscription with half its period left and no cancellation pending."""
    plan = await seed.plan("Growth")
    async with session_factory() as session:
        business = await session.get(BusinessModel, owner.business_id)
    sub = await seed.subscription(business, plan)
    await _set_subscription(session_factory, sub.id, current_period_end=utcnow() + timedelta(days=15), cancel_at_period_end=False)
    return sub


async def _set_subscription(session_factory, subscription_id, **values):
    async with session_factory() as session:
        await session.execute(
            update(SubscriptionModel).where(SubscriptionModel.id == subscription_id).values(**values)
        )
        await session.commit()


async def test_cancel_keeps_plan_until_period_end(call, owner, running):
    sub = await call(subscription_service.cancel, identity_for(owner), running.id)

    assert sub.status == "active"
    assert sub.cancel_at_period_end is True
    assert sub.cancelled_at is not None


async def test_cancel_twice_after_period_end(call, session_factory, owner, running):
    await _set_subscription(session_factory, running.id, status="cancelled")

    with pytest.raises(ValidationError, match="already cancelled"):
        await call(subscription_service.cancel, identity_for(owner), running.id)


async def test_only_the_owner_can_cancel(call, seed, running):
    stranger = await seed.seller("Mulu", business_name="Mulu Leather")

    with pytest.raises(UnauthorizedError):
        await call(subscription_service.cancel, identity_for(stranger), running.id)


async def test_cancel_unknown_subscription(call, owner):
    with pytest.raises(SubscriptionNotFoundError):
        await call(subscription_service.cancel, identity_for(owner), "sub_missing")


async def test_reactivate_undoes_pending_cancellation(call, owner, running):
    await call(subscription_service.cancel, identity_for(owner), running.id)

    sub = await call(subscription_service.reactivate, identity_for(owner), running.id)

    assert sub.cancel_at_period_end is False
    assert sub.cancelled_at is None
    assert sub.status == "active"


async def test_reactivate_without_pending_cancellation(call, owner, running):
    with pytest.raises(ValidationError, match="not pending"):
        await call(subscription_service.reactivate, identity_for(owner), running.id)


@pytest.mark.parametrize("status", ["cancelled", "expired"])
async def test_ended_subscription_cannot_be_reactivated(call, session_factory, owner, running, status):
    await _set_subscription(session_factory, running.id, status=status, cancel_at_period_end=True)

    with pytest.raises(ValidationError, match="start a new subscription"):
        await call(subscription_service.reactivate, identity_for(owner), running.id)


async def test_change_plan_keeps_the_period(call, read, seed, owner, running):
    scale = await seed.plan("Scale")
    before = (await read(select(SubscriptionModel)))[0]

    sub = await call(subscription_service.change_plan, identity_for(owner), running.id, scale.id)

    assert sub.plan_id == scale.id
    assert sub.current_period_end == before.current_period_end


async def test_change_plan_rejects_inactive_plan(call, seed, owner, running):
    retired = await seed.plan("Legacy", is_active=False)

    with pytest.raises(PlanNotFoundError):
        await call(subscription_service.change_plan, identity_for(owner), running.id, retired.id)


async def test_change_plan_requires_live_subscription(call, session_factory, seed, owner, running):
    scale = await seed.plan("Scale")
    await _set_subscription(session_factory, running.id, status="past_due")

    with pytest.raises(ValidationError, match="active"):
        await call(subscription_service.change_plan, identity_for(owner), running.id, scale.id)


async def test_update_status_sets_any_status(call, running):
    sub = await call(subscription_service.update_status, running.id, "past_due")

    assert sub.status == "past_due"
    with pytest.raises(SubscriptionNotFoundError):
        await call(subscription_service.update_status, "sub_missing", "active")


async def test_list_all_is_admin_only(call, seed, owner, running):
    admin = await seed.user("Root", role="admin")

    everything = await call(subscription_service.list_all, identity_for(admin))
    past_due = await call(subscription_service.list_all, identity_for(admin), "past_due")

    assert [s.id for s in everything] == [running.id]
    assert past_due == []
    with pytest.raises(UnauthorizedError):
        await call(subscription_service.list_all, identity_for(owner))


async def test_expiry_ends_cancelled_and_lapsed_trials(call, read, session_factory, seed, owner, running):
    plan = await seed.plan("Trial")
    async with session_factory() as session:
        business = await session.get(BusinessModel, owner.business_id)
    trial = await seed.subscription(business, plan, status="trialing")
    renewing = await seed.subscription(business, plan)
    past = utcnow() - timedelta(days=1)
    await _set_subscription(session_factory, running.id, current_period_end=past, cancel_at_period_end=True)
    await _set_subscription(session_factory, trial.id, current_period_end=past, cancel_at_period_end=False)
    await _set_subscription(session_factory, renewing.id, current_period_end=past, cancel_at_period_end=False)

    result = await call(subscription_service.process_expired_subscriptions)

    assert result == {"processed": 2}
    statuses = {s.id: s.status for s in await read(select(SubscriptionModel))}
    assert statuses == {running.id: "cancelled", trial.id: "expired", renewing.id: "active"}

    assert await call(subscription_service.process_expired_subscriptions) == {"processed": 0}


async def test_expiry_leaves_current_period_alone(call, owner, running):
    await call(subscription_service.cancel, identity_for(owner), running.id)

    assert await call(subscription_service.process_expired_subscriptions) == {"processed": 0}


async def test_lifecycle_endpoints(client, seed, owner, running):
    scale = await seed.plan("Scale")
    headers = headers_for(owner)

    response = await client.post(f"/api/subscriptions/{running.id}/cancel", headers=headers)
    assert response.status_code == 200
    assert response.json()["cancel_at_period_end"] is True

    response = await client.post(f"/api/subscriptions/{running.id}/reactivate", headers=headers)
    assert response.json()["cancel_at_period_end"] is False

    response = await client.post(
        f"/api/subscriptions/{running.id}/change-plan", json={"plan_id": scale.id}, headers=headers
    )
    assert response.json()["plan_id"] == scale.id

    response = await client.post("/api/subscriptions/sub_missing/cancel", headers=headers)
    assert response.status_code == 404
    assert response.json()["error_code"] == "subscription:not_found"
