"""
Shared fixtures: a fresh SQLite database per test, a seeder for the
marketplace stores the payment core reads, and an HTTP client bound to the
app with get_db pointed at the test database.

Every helper opens its own short session and closes it: each transaction
takes the SQLite write lock up front, so a session left open would block
the code under test.
"""
import uuid
from typing import Optional

import httpx
import pytest
from sqlalchemy import select

from marketpay.db.init_db import create_engine_for, create_session_factory, get_db, initialize_database
from marketpay.db.models import (
    BusinessModel,
    CartItemModel,
    ProductModel,
    SubscriptionModel,
    SubscriptionPlanModel,
    UserModel,
    utcnow,
)
from marketpay.main import app
from marketpay.mocks import payment_gateway
from marketpay.models.identity import Identity


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'marketpay_test.db'}")
    await initialize_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def call(session_factory):
    """Run a service function on its own session, like one request would."""
    async def _call(func, *args, **kwargs):
        async with session_factory() as session:
            return await func(session, *args, **kwargs)
    return _call


@pytest.fixture(autouse=True)
def reset_gateway():
    payment_gateway.reset()
    yield
    payment_gateway.reset()


@pytest.fixture
def read(session_factory):
    """Run a select in a throwaway session and return all scalars."""
    async def _read(statement):
        async with session_factory() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())
    return _read


def _id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class Seeder:
    """Inserts users, businesses, products, carts and plans."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _add(self, *rows):
        async with self.session_factory() as session:
            session.add_all(rows)
            await session.commit()
        return rows[0]

    async def user(self, name: str = "Buyer", role: str = "buyer", subject: Optional[str] = None) -> UserModel:
        return await self._add(UserModel(
            id=_id("usr"),
            external_id=subject or _id("subj"),
            email=f"{name.lower().replace(' ', '.')}@example.com",
            name=name,
            role=role,
        ))

    async def seller(self, name: str = "Seller", business_name: Optional[str] = None) -> UserModel:
        seller = await self.user(name=name, role="seller")
        if business_name:
            await self.business(seller, business_name)
        return seller

    async def business(self, owner: UserModel, name: str = "Addis Trading PLC") -> BusinessModel:
        business = BusinessModel(id=_id("biz"), owner_id=owner.id, name=name, country="ET")
        async with self.session_factory() as session:
            session.add(business)
            user = await session.get(UserModel, owner.id)
            user.business_id = business.id
            await session.commit()
        owner.business_id = business.id
        return business

    async def product(
        self,
        seller: UserModel,
        name: str = "Coffee Beans 1kg",
        price: int = 100,
        quantity: int = 10,
        status: str = "active"
    ) -> ProductModel:
        return await self._add(ProductModel(
            id=_id("prod"),
            seller_id=seller.id,
            name=name,
            price=price,
            quantity=quantity,
            status=status,
        ))

    async def cart_item(self, user: UserModel, product: ProductModel, quantity: int = 1) -> CartItemModel:
        return await self._add(CartItemModel(
            id=_id("cart"),
            user_id=user.id,
            product_id=product.id,
            quantity=quantity,
        ))

    async def plan(
        self,
        name: str = "Growth",
        monthly_price: int = 50000,
        annual_price: int = 500000,
        currency: str = "ETB",
        is_active: bool = True
    ) -> SubscriptionPlanModel:
        return await self._add(SubscriptionPlanModel(
            id=_id("plan"),
            name=name,
            slug=f"{name.lower()}-{uuid.uuid4().hex[:4]}",
            monthly_price=monthly_price,
            annual_price=annual_price,
            currency=currency,
            is_active=is_active,
        ))

    async def subscription(
        self,
        business: BusinessModel,
        plan: SubscriptionPlanModel,
        status: str = "active",
        billing_cycle: str = "monthly"
    ) -> SubscriptionModel:
        now = utcnow()
        return await self._add(SubscriptionModel(
            id=_id("sub"),
            business_id=business.id,
            plan_id=plan.id,
            status=status,
            billing_cycle=billing_cycle,
            current_period_start=now,
            current_period_end=now,
            cancel_at_period_end=True,
            trial_ends_at=now,
        ))

    async def set_product(self, product_id: str, **values) -> None:
        async with self.session_factory() as session:
            product = await session.get(ProductModel, product_id)
            for key, value in values.items():
                setattr(product, key, value)
            await session.commit()

    async def get_product(self, product_id: str) -> ProductModel:
        async with self.session_factory() as session:
            return await session.get(ProductModel, product_id)

    async def cart_lines(self, user_id: str):
        async with self.session_factory() as session:
            result = await session.execute(select(CartItemModel).where(CartItemModel.user_id == user_id))
            return list(result.scalars().all())


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


def identity_for(user: UserModel) -> Identity:
    return Identity(subject=user.external_id, email=user.email, name=user.name)


def headers_for(user: UserModel) -> dict:
    return {"X-User-Id": user.external_id, "X-User-Email": user.email, "X-User-Name": user.name}


@pytest.fixture
async def client(session_factory):
    async def _get_test_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_test_db
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()
