"""
Inventory Service — コマンドハンドラ (Write 側)

在庫の引き当て(Reserve)と解放(Release)を処理する。

引き当ては products 行への 1 回の条件付き UPDATE で行う:
    UPDATE products SET stock = stock - :q WHERE id = :id AND stock >= :q
読み込み→判定→書き込みを分けないので、同じ商品への同時チェックアウトが
在庫数を超えて成功することはない (lost update が起きない)。

order_id 付きの呼び出しは stock_reservations 台帳に記録され、
同じ注文明細の再送は冪等になる。解放は台帳にある RESERVED 行だけを戻すので、
タイムアウト後の「念のための解放」も安全に呼べる。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .events import InventoryReleased, InventoryReserved
from .exceptions import InsufficientStock, InvalidStockRequest, ProductNotFound
from .tables import RELEASED, RESERVED, products, stock_reservations

logger = logging.getLogger(__name__)


async def reserve_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: int,
    quantity: int,
    order_id: str | None = None,
) -> dict:
    """
    在庫引き当てコマンド

    1. 台帳に同じ注文明細の RESERVED 行があれば何もしない (冪等)
    2. 条件付き UPDATE で在庫を減らす
    3. 0 行更新なら商品なし / 在庫不足を判定して例外
    4. order_id があれば台帳に記録してコミット
    """
    _validate(product_id, quantity)
    now = datetime.now(timezone.utc)

    existing = None
    if order_id is not None:
        existing = await _load_reservation(session, order_id, product_id)
        if existing is not None and existing.status == RESERVED:
            logger.info(
                "Reservation already held: order=%s product=%s", order_id, product_id
            )
            return {"success": True, "stock": await _current_stock(session, product_id)}

    result = await session.execute(
        update(products)
        .where(products.c.id == product_id, products.c.stock >= quantity)
        .values(stock=products.c.stock - quantity, updated_at=now)
    )
    if result.rowcount == 0:
        await session.rollback()
        available = await _current_stock(session, product_id)
        if available is None:
            raise ProductNotFound(product_id)
        raise InsufficientStock(product_id, quantity, available)

    if order_id is not None:
        try:
            await _record_reservation(session, existing, order_id, product_id, quantity, now)
        except IntegrityError:
            # 同じ注文明細の並行リクエストが先に台帳へ書いた。こちらの減算は捨てる。
            await session.rollback()
            return {"success": True, "stock": await _current_stock(session, product_id)}

    stock = await _current_stock(session, product_id)
    await session.commit()

    await _publish(
        redis,
        "InventoryReserved",
        InventoryReserved(
            product_id=product_id,
            order_id=order_id,
            quantity=quantity,
            stock=stock,
            timestamp=now,
        ),
    )
    return {"success": True, "stock": stock}


async def release_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: int,
    quantity: int,
    order_id: str | None = None,
) -> dict:
    """
    在庫解放コマンド（Saga の補償トランザクション）

    order_id があれば台帳の RESERVED 行の数量だけ戻す。
    該当行がない・解放済みなら何もせず成功を返す。
    """
    _validate(product_id, quantity)
    now = datetime.now(timezone.utc)

    if order_id is not None:
        reservation = await _load_reservation(session, order_id, product_id, for_update=True)
        if reservation is None or reservation.status != RESERVED:
            await session.rollback()
            return {"success": True, "released": 0}
        result = await session.execute(
            update(stock_reservations)
            .where(
                stock_reservations.c.id == reservation.id,
                stock_reservations.c.status == RESERVED,
            )
            .values(status=RELEASED, updated_at=now)
        )
        if result.rowcount == 0:
            await session.rollback()
            return {"success": True, "released": 0}
        quantity = reservation.quantity

    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(stock=products.c.stock + quantity, updated_at=now)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise ProductNotFound(product_id)

    stock = await _current_stock(session, product_id)
    await session.commit()

    await _publish(
        redis,
        "InventoryReleased",
        InventoryReleased(
            product_id=product_id,
            order_id=order_id,
            quantity=quantity,
            stock=stock,
            timestamp=now,
        ),
    )
    return {"success": True, "released": quantity, "stock": stock}


def _validate(product_id, quantity) -> None:
    if not isinstance(product_id, int) or isinstance(product_id, bool):
        raise InvalidStockRequest("Invalid productId or quantity.")
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise InvalidStockRequest("Invalid productId or quantity.")


async def _current_stock(session: AsyncSession, product_id: int) -> int | None:
    return await session.scalar(
        select(products.c.stock).where(products.c.id == product_id)
    )


async def _load_reservation(
    session: AsyncSession,
    order_id: str,
    product_id: int,
    for_update: bool = False,
):
    stmt = select(stock_reservations).where(
        stock_reservations.c.order_id == order_id,
        stock_reservations.c.product_id == product_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.first()


async def _record_reservation(
    session: AsyncSession,
    existing,
    order_id: str,
    product_id: int,
    quantity: int,
    now: datetime,
) -> None:
    if existing is None:
        await session.execute(
            insert(stock_reservations).values(
                order_id=order_id,
                product_id=product_id,
                quantity=quantity,
                status=RESERVED,
                created_at=now,
                updated_at=now,
            )
        )
    else:
        # 解放済みの明細を同じ注文で引き当て直す
        await session.execute(
            update(stock_reservations)
            .where(stock_reservations.c.id == existing.id)
            .values(quantity=quantity, status=RESERVED, updated_at=now)
        )


async def _publish(redis: aioredis.Redis, event_type: str, event) -> None:
    """コミット済みの在庫変更を通知する。発行に失敗しても在庫変更は取り消さない。"""
    try:
        await redis.publish(
            "inventory_events",
            json.dumps(
                {"event_type": event_type, "data": event.model_dump(mode="json")},
                default=str,
            ),
        )
    except (RedisError, OSError):
        logger.exception("Failed to publish %s", event_type)
