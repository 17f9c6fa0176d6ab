"""
Order Service — カートストア

チェックアウトから見るとカートは読み取り専用のスナップショット。
変更するのは最後の「カートを空にする」だけ (OrderStore.complete_checkout)。
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .schemas import Cart, CartLine
from .tables import cart_items, carts


class CartStore:
    def __init__(self, session_factory: sessionmaker):
        self._session = session_factory

    async def get_or_create_cart(self, user_id: str) -> Cart:
        async with self._session() as session:
            cart_id = await session.scalar(
                select(carts.c.id).where(carts.c.user_id == user_id)
            )
            if cart_id is not None:
                return Cart(id=cart_id, user_id=user_id)
            try:
                result = await session.execute(
                    insert(carts).values(
                        user_id=user_id, created_at=datetime.now(timezone.utc)
                    )
                )
                await session.commit()
            except IntegrityError:
                # 同じ利用者の並行リクエストが先に作った
                await session.rollback()
                cart_id = await session.scalar(
                    select(carts.c.id).where(carts.c.user_id == user_id)
                )
                return Cart(id=cart_id, user_id=user_id)
            return Cart(id=result.inserted_primary_key[0], user_id=user_id)

    async def list_items(self, cart_id: int) -> list[CartLine]:
        """追加された順に返す。この順序がそのまま引き当ての順序になる。"""
        async with self._session() as session:
            result = await session.execute(
                select(cart_items)
                .where(cart_items.c.cart_id == cart_id)
                .order_by(cart_items.c.id)
            )
            return [
                CartLine(
                    id=row.id,
                    product_id=row.product_id,
                    quantity=row.quantity,
                    unit_price=row.unit_price,
                )
                for row in result.fetchall()
            ]

    async def add_item(
        self,
        cart_id: int,
        product_id: int,
        quantity: int,
        unit_price: Decimal,
    ) -> None:
        """同じ商品が既にあれば数量を足す。"""
        async with self._session() as session:
            result = await session.execute(
                update(cart_items)
                .where(
                    cart_items.c.cart_id == cart_id,
                    cart_items.c.product_id == product_id,
                )
                .values(quantity=cart_items.c.quantity + quantity)
            )
            if result.rowcount == 0:
                await session.execute(
                    insert(cart_items).values(
                        cart_id=cart_id,
                        product_id=product_id,
                        quantity=quantity,
                        unit_price=unit_price,
                    )
                )
            await session.commit()

    async def clear_cart(self, cart_id: int) -> None:
        async with self._session() as session:
            await session.execute(delete(cart_items).where(cart_items.c.cart_id == cart_id))
            await session.commit()

    async def delete_cart(self, user_id: str) -> bool:
        async with self._session() as session:
            cart_id = await session.scalar(
                select(carts.c.id).where(carts.c.user_id == user_id)
            )
            if cart_id is None:
                return False
            await session.execute(delete(cart_items).where(cart_items.c.cart_id == cart_id))
            await session.execute(delete(carts).where(carts.c.id == cart_id))
            await session.commit()
            return True
