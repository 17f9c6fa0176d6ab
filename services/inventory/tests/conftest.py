"""Inventory Service テストの共通フィクスチャ"""

import json
from decimal import Decimal

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, insert, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from inventory_service.config import Settings
from inventory_service.main import create_app
from inventory_service.tables import metadata, products, stock_reservations


class FakeRedis:
    """publish されたメッセージを記録するだけの Redis"""

    def __init__(self):
        self.messages: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.messages.append((channel, json.loads(message)))
        return 1

    async def aclose(self) -> None:
        pass


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "inventory.db"


@pytest.fixture
def sync_engine(db_path):
    engine = create_engine(f"sqlite:///{db_path}")
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def seed(sync_engine):
    def _seed(**stock_by_id: int):
        with sync_engine.begin() as conn:
            conn.execute(
                insert(products),
                [
                    {
                        "id": int(key.lstrip("p")),
                        "title": f"Product {key}",
                        "price": Decimal("10.00"),
                        "stock": stock,
                    }
                    for key, stock in stock_by_id.items()
                ],
            )

    return _seed


@pytest.fixture
def stock(sync_engine):
    def _stock(product_id: int) -> int | None:
        with sync_engine.connect() as conn:
            return conn.scalar(select(products.c.stock).where(products.c.id == product_id))

    return _stock


@pytest.fixture
def reservations(sync_engine):
    def _reservations() -> list[tuple]:
        with sync_engine.connect() as conn:
            rows = conn.execute(
                select(
                    stock_reservations.c.order_id,
                    stock_reservations.c.product_id,
                    stock_reservations.c.quantity,
                    stock_reservations.c.status,
                ).order_by(stock_reservations.c.id)
            )
            return [tuple(row) for row in rows]

    return _reservations


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def client(db_path, sync_engine, fake_redis):
    app = create_app(Settings(database_url=f"sqlite+aiosqlite:///{db_path}"))
    with TestClient(app) as client:
        app.state.redis = fake_redis
        yield client


@pytest_asyncio.fixture
async def session_factory(db_path, sync_engine):
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
