"""
Cart management, direct checkout and order access.
"""
import pytest
from sqlalchemy import select

from marketpay.db.models import OrderItemModel
from marketpay.exceptions import (
    CartItemNotFoundError,
    EmptyCartError,
    InsufficientStockError,
    InvalidTransitionError,
    OrderNotFoundError,
    ProductUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from marketpay.services import cart_service, order_service
from marketpay.services.payment_service import create_payment_intent, update_status

from conftest import identity_for


@pytest.fixture
async def market(seed):
    seller = await seed.seller("Meron", business_name="Meron Leather")
    product = await seed.product(seller, name="Leather Bag", price=1200, quantity=5)
    buyer = await seed.user("Yaw")
    return {"seller": seller, "product": product, "buyer": buyer}


async def _paid_order(call, market, quantity=1):
    await call(cart_service.add_item, market["buyer"].id, market["product"].id, quantity)
    intent = await call(
        create_payment_intent,
        identity_for(market["buyer"]), 1200 * quantity, "ETB", "order",
    )
    payment = await call(update_status, intent.tx_ref, "success")
    return payment.order_id


# ============================================================================
# Cart
# ============================================================================

async def test_add_item_merges_lines(call, seed, market):
    await call(cart_service.add_item, market["buyer"].id, market["product"].id, 1)
    await call(cart_service.add_item, market["buyer"].id, market["product"].id, 2)

    cart = await call(cart_service.get_cart, market["buyer"].id)

    assert len(cart.items) == 1
    assert cart.items[0].quantity == 3
    assert cart.items[0].product_name == "Leather Bag"
    assert cart.total == 3600


async def test_add_item_checks_stock(call, market):
    with pytest.raises(InsufficientStockError):
        await call(cart_service.add_item, market["buyer"].id, market["product"].id, 6)


async def test_add_item_rejects_inactive_product(call, seed, market):
    await seed.set_product(market["product"].id, status="inactive")

    with pytest.raises(ProductUnavailableError):
        await call(cart_service.add_item, market["buyer"].id, market["product"].id, 1)


async def test_seller_cannot_buy_own_product(call, market):
    with pytest.raises(ValidationError):
        await call(cart_service.add_item, market["seller"].id, market["product"].id, 1)


async def test_update_to_zero_removes_line(call, market):
    item = await call(cart_service.add_item, market["buyer"].id, market["product"].id, 2)

    await call(cart_service.update_item, market["buyer"].id, item.id, 0)

    cart = await call(cart_service.get_cart, market["buyer"].id)
    assert cart.items == []
    assert cart.total == 0


async def test_cannot_touch_someone_elses_line(call, seed, market):
    item = await call(cart_service.add_item, market["buyer"].id, market["product"].id, 1)
    other = await seed.user("Other")

    with pytest.raises(CartItemNotFoundError):
        await call(cart_service.remove_item, other.id, item.id)


async def test_clear_cart(call, market):
    await call(cart_service.add_item, market["buyer"].id, market["product"].id, 1)

    removed = await call(cart_service.clear_cart, market["buyer"].id)

    assert removed == 1
    assert (await call(cart_service.get_cart, market["buyer"].id)).items == []


# ============================================================================
# Direct checkout
# ============================================================================

async def test_direct_checkout_creates_pending_orders(call, read, seed, market):
    await call(cart_service.add_item, market["buyer"].id, market["product"].id, 2)

    orders = await call(order_service.checkout_cart, identity_for(market["buyer"]))

    assert len(orders) == 1
    assert orders[0].status == "pending"
    assert orders[0].amount == 2400
    assert orders[0].title == "Order from Meron Leather"
    assert (await seed.get_product(market["product"].id)).quantity == 3
    assert await seed.cart_lines(market["buyer"].id) == []
    assert len(await read(select(OrderItemModel))) == 1


async def test_direct_checkout_of_empty_cart(call, market):
    with pytest.raises(EmptyCartError):
        await call(order_service.checkout_cart, identity_for(market["buyer"]))


# ============================================================================
# Order access
# ============================================================================

async def test_purchases_and_sales(call, market):
    order_id = await _paid_order(call, market)

    purchases = await call(order_service.list_purchases, identity_for(market["buyer"]))
    sales = await call(order_service.list_sales, identity_for(market["seller"]))
    nothing = await call(order_service.list_sales, identity_for(market["buyer"]))

    assert [o.id for o in purchases] == [order_id]
    assert [o.id for o in sales] == [order_id]
    assert nothing == []


async def test_order_detail_for_buyer_and_seller(call, market):
    order_id = await _paid_order(call, market, quantity=2)

    for party in (market["buyer"], market["seller"]):
        order = await call(order_service.get_order, identity_for(party), order_id)
        assert order.id == order_id
        assert [(i.quantity, i.unit_price) for i in order.items] == [(2, 1200)]


async def test_order_detail_hidden_from_others(call, seed, market):
    order_id = await _paid_order(call, market)
    stranger = await seed.user("Stranger")

    with pytest.raises(UnauthorizedError):
        await call(order_service.get_order, identity_for(stranger), order_id)


async def test_unknown_order(call, market):
    with pytest.raises(OrderNotFoundError):
        await call(order_service.get_order, identity_for(market["buyer"]), "ord_missing")


async def test_seller_completes_order(call, market):
    order_id = await _paid_order(call, market)

    order = await call(order_service.update_order_status, identity_for(market["seller"]), order_id, "completed")

    assert order.status == "completed"


async def test_buyer_cannot_change_order_status(call, market):
    order_id = await _paid_order(call, market)

    with pytest.raises(UnauthorizedError):
        await call(order_service.update_order_status, identity_for(market["buyer"]), order_id, "completed")


async def test_completed_order_is_terminal(call, market):
    order_id = await _paid_order(call, market)
    await call(order_service.update_order_status, identity_for(market["seller"]), order_id, "completed")

    with pytest.raises(InvalidTransitionError):
        await call(order_service.update_order_status, identity_for(market["seller"]), order_id, "processing")
