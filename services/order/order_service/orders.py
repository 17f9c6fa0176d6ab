"""
Order Service — 注文ストア

Command (書き込み) と Query (読み取り) を同じストアに持つ。
注文は削除しない。失敗したチェックアウトは CANCELLED として残り、
利用者向けの一覧には出てこない。
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .exceptions import DuplicateCheckout, OrderStateError
from .schemas import CANCELLED, CONFIRMED, PENDING, Order, OrderLine
from .tables import cart_items, order_lines, orders


def _to_order(row) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        payment_method=row.payment_method,
        delivery_address=row.delivery_address,
        payment_status=row.payment_status,
        delivery_status=row.delivery_status,
        placed_at=row.placed_at,
        estimated_delivery_at=row.estimated_delivery_at,
        status=row.status,
    )


def _to_order_line(row) -> OrderLine:
    return OrderLine(
        id=row.id,
        order_id=row.order_id,
        product_id=row.product_id,
        unit_price=row.unit_price,
        quantity=row.quantity,
    )


class OrderStore:
    def __init__(self, session_factory: sessionmaker):
        self._session = session_factory

    # ── Command (Write 側) ───────────────────────────

    async def create_order(
        self,
        user_id: str,
        payment_method: str,
        delivery_address: str,
        placed_at: datetime,
        estimated_delivery_at: datetime,
        idempotency_key: str,
    ) -> Order:
        """
        PENDING の注文を作る。

        (user_id, idempotency_key) の一意制約に当たったら DuplicateCheckout。
        """
        order = Order(
            id=str(uuid4()),
            user_id=user_id,
            payment_method=payment_method,
            delivery_address=delivery_address,
            placed_at=placed_at,
            estimated_delivery_at=estimated_delivery_at,
            status=PENDING,
        )
        async with self._session() as session:
            try:
                await session.execute(
                    insert(orders).values(
                        id=order.id,
                        user_id=user_id,
                        payment_method=payment_method,
                        delivery_address=delivery_address,
                        payment_status=order.payment_status,
                        delivery_status=order.delivery_status,
                        status=PENDING,
                        idempotency_key=idempotency_key,
                        placed_at=placed_at,
                        estimated_delivery_at=estimated_delivery_at,
                        updated_at=placed_at,
                    )
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateCheckout(user_id, idempotency_key) from e
        return order

    async def add_order_line(
        self,
        order_id: str,
        product_id: int,
        unit_price: Decimal,
        quantity: int,
    ) -> OrderLine:
        async with self._session() as session:
            result = await session.execute(
                insert(order_lines).values(
                    order_id=order_id,
                    product_id=product_id,
                    unit_price=unit_price,
                    quantity=quantity,
                )
            )
            await session.commit()
        return OrderLine(
            id=result.inserted_primary_key[0],
            order_id=order_id,
            product_id=product_id,
            unit_price=unit_price,
            quantity=quantity,
        )

    async def complete_checkout(self, order_id: str, cart_id: int) -> None:
        """注文の確定とカートのクリアを 1 トランザクションで行う。"""
        async with self._session() as session:
            result = await session.execute(
                update(orders)
                .where(orders.c.id == order_id, orders.c.status == PENDING)
                .values(status=CONFIRMED, updated_at=datetime.now(timezone.utc))
            )
            if result.rowcount == 0:
                await session.rollback()
                raise OrderStateError(f"Order {order_id} is not pending.")
            await session.execute(delete(cart_items).where(cart_items.c.cart_id == cart_id))
            await session.commit()

    async def cancel_order(self, order_id: str, reason: str) -> None:
        """
        注文キャンセル（Saga の補償）

        冪等キーを外すので、同じカートでの再チェックアウトが通るようになる。
        """
        async with self._session() as session:
            await session.execute(
                update(orders)
                .where(orders.c.id == order_id, orders.c.status == PENDING)
                .values(
                    status=CANCELLED,
                    idempotency_key=None,
                    cancel_reason=reason,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()

    # ── Query (Read 側) ──────────────────────────────

    async def get_order(self, order_id: str) -> Order | None:
        async with self._session() as session:
            result = await session.execute(select(orders).where(orders.c.id == order_id))
            row = result.first()
        return _to_order(row) if row else None

    async def get_order_by_idempotency_key(
        self, user_id: str, idempotency_key: str
    ) -> Order | None:
        async with self._session() as session:
            result = await session.execute(
                select(orders).where(
                    orders.c.user_id == user_id,
                    orders.c.idempotency_key == idempotency_key,
                )
            )
            row = result.first()
        return _to_order(row) if row else None

    async def list_order_lines(self, order_id: str) -> list[OrderLine]:
        async with self._session() as session:
            result = await session.execute(
                select(order_lines)
                .where(order_lines.c.order_id == order_id)
                .order_by(order_lines.c.id)
            )
            return [_to_order_line(row) for row in result.fetchall()]

    async def list_orders_by_user(self, user_id: str) -> list[Order]:
        """確定済みの注文だけを返す。"""
        async with self._session() as session:
            result = await session.execute(
                select(orders)
                .where(orders.c.user_id == user_id, orders.c.status == CONFIRMED)
                .order_by(orders.c.placed_at)
            )
            return [_to_order(row) for row in result.fetchall()]
