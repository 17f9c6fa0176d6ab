"""Order Service テストの共通フィクスチャ"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from fakes import FakeInventory, FakeRedis
from order_service.carts import CartStore
from order_service.checkout import CheckoutCoordinator
from order_service.orders import OrderStore
from order_service.tables import metadata


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}"


@pytest_asyncio.fixture
async def session_factory(db_url):
    engine = create_async_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def carts(session_factory):
    return CartStore(session_factory)


@pytest.fixture
def orders(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def inventory():
    return FakeInventory({1: 5, 2: 10, 3: 10})


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def coordinator(carts, orders, inventory, fake_redis):
    return CheckoutCoordinator(carts, orders, inventory, fake_redis)
