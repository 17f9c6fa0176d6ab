"""
Checkout Coordinator — カート → 注文 Saga

Saga パターン（オーケストレーション型）:
  Order Service 自身がオーケストレーターになり、Inventory Service への
  引き当てを 1 明細ずつ順番に実行する。失敗時は引き当て済みの明細を
  逆順に解放 (補償トランザクション) してから失敗を返す。

  フロー:
  ┌──────────────────────────────────────────────────────────┐
  │  1. カートのスナップショットを読む (空なら EmptyCart)       │
  │  2. 注文を PENDING で作成                                  │
  │  3. 明細ごとに在庫を引き当て → 成功したら注文明細を作成     │
  │     ├─ 全明細成功 → 注文確定 + カートを空にする             │
  │     └─ 途中で失敗 → 引き当て済みを逆順に解放               │
  │                    注文をキャンセル (カートはそのまま)     │
  └──────────────────────────────────────────────────────────┘

並行チェックアウトの在庫競合は Inventory Service の条件付き UPDATE が防ぐ。
ここではロックを持たない。
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from .carts import CartStore
from .exceptions import (
    CheckoutFailed,
    CheckoutInProgress,
    DuplicateCheckout,
    EmptyCart,
    InvalidRequest,
    InventoryUnavailable,
    OrderStateError,
)
from .inventory_client import InventoryClient
from .orders import OrderStore
from .schemas import CONFIRMED, PENDING, CartLine, Order, OrderLine

logger = logging.getLogger(__name__)

STORE_ERRORS = (SQLAlchemyError, OrderStateError, asyncio.TimeoutError)
CANCEL_ATTEMPTS = 3


@dataclass
class CheckoutResult:
    order: Order
    order_lines: list[OrderLine]
    replayed: bool = False


def derive_idempotency_key(user_id: str, lines: list[CartLine]) -> str:
    """
    利用者 ID とカート内容から冪等キーを作る。

    明細 ID も含めるので、同じ商品を後日もう一度買った場合は別のキーになる。
    """
    payload = json.dumps(
        {
            "user_id": user_id,
            "lines": [
                [line.id, line.product_id, line.quantity, str(line.unit_price)]
                for line in lines
            ],
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class CheckoutCoordinator:
    """チェックアウト Saga のオーケストレーター"""

    def __init__(
        self,
        carts: CartStore,
        orders: OrderStore,
        inventory: InventoryClient,
        redis: aioredis.Redis,
        store_timeout: float = 5.0,
        delivery_window_days: int = 7,
        pending_timeout: float = 300.0,
    ):
        self.carts = carts
        self.orders = orders
        self.inventory = inventory
        self.redis = redis
        self.store_timeout = store_timeout
        self.delivery_window = timedelta(days=delivery_window_days)
        # これより古い PENDING 注文は放置されたものとして片付ける
        self.pending_timeout = timedelta(seconds=pending_timeout)

    async def checkout(
        self,
        user_id: str,
        payment_method: str | None,
        delivery_address: str | None,
        idempotency_key: str | None = None,
    ) -> CheckoutResult:
        """
        Saga を実行する。

        副作用が起きる前に入力・空カート・冪等キーを確認する。
        引き当てが 1 件でも失敗したら補償してから CheckoutFailed を送出する。
        想定外の例外 (キャンセルを含む) でも補償してから再送出する。
        """
        payment_method = (payment_method or "").strip()
        delivery_address = (delivery_address or "").strip()
        if not payment_method or not delivery_address:
            raise InvalidRequest(["Payment method and delivery address are required."])

        cart = await self._store(self.carts.get_or_create_cart(user_id))
        lines = await self._store(self.carts.list_items(cart.id))

        if idempotency_key:
            replay = await self._replay(user_id, idempotency_key, lines)
            if replay:
                return replay

        if not lines:
            raise EmptyCart()

        if not idempotency_key:
            idempotency_key = derive_idempotency_key(user_id, lines)
            replay = await self._replay(user_id, idempotency_key, lines)
            if replay:
                return replay

        logger.info("Checkout started: user=%s lines=%d", user_id, len(lines))
        saga_log: list[dict] = []

        # ── Step 1: 注文を PENDING で作成 ────────────
        placed_at = datetime.now(timezone.utc)
        step = self._begin(saga_log, "CreateOrder")
        try:
            order = await self._store(
                self.orders.create_order(
                    user_id,
                    payment_method,
                    delivery_address,
                    placed_at,
                    placed_at + self.delivery_window,
                    idempotency_key,
                )
            )
        except DuplicateCheckout:
            # 同じカートの並行リクエストが先に注文を作った
            replay = await self._replay(user_id, idempotency_key, lines)
            if replay:
                return replay
            raise CheckoutInProgress()
        except BaseException as e:
            # タイムアウトでも INSERT は反映済みかもしれない
            self._fail(step, repr(e))
            await asyncio.shield(self._cancel_orphan(user_id, idempotency_key, repr(e)))
            raise
        step["status"] = "COMPLETED"

        # ── Step 2: 明細ごとに在庫を引き当て ─────────
        committed: list[CartLine] = []
        order_lines: list[OrderLine] = []
        try:
            errors = await self._reserve_lines(order, lines, committed, order_lines, saga_log)
        except BaseException as e:
            logger.exception("Checkout interrupted: order=%s", order.id)
            await asyncio.shield(
                self._abort(order, committed, saga_log, f"Checkout interrupted: {e!r}")
            )
            raise

        if errors:
            await self._abort(order, committed, saga_log, "; ".join(errors))
            raise CheckoutFailed(errors)

        # ── Step 3: 注文確定 + カートを空にする ──────
        step = self._begin(saga_log, "CompleteCheckout")
        try:
            await self._store(self.orders.complete_checkout(order.id, cart.id))
        except BaseException as e:
            landed = await asyncio.shield(self._landed(order.id))
            if landed is None:
                # 確定したか分からない: 在庫は解放せず運用者に任せる
                self._fail(step, repr(e))
                logger.error(
                    "Checkout outcome unknown, reservations kept: order=%s user=%s error=%r",
                    order.id,
                    user_id,
                    e,
                )
                raise
            if not landed:
                self._fail(step, repr(e))
                logger.exception("Checkout completion failed: order=%s", order.id)
                await asyncio.shield(
                    self._abort(order, committed, saga_log, f"Completion failed: {e!r}")
                )
                raise
            if not isinstance(e, Exception):
                raise
        step["status"] = "COMPLETED"

        order = order.model_copy(update={"status": CONFIRMED})
        await self._publish_saga_event("OrderPlaced", order.id, saga_log)
        logger.info("Checkout completed: order=%s user=%s", order.id, user_id)
        return CheckoutResult(order=order, order_lines=order_lines)

    async def _reserve_lines(
        self,
        order: Order,
        lines: list[CartLine],
        committed: list[CartLine],
        order_lines: list[OrderLine],
        saga_log: list[dict],
    ) -> list[str]:
        """
        明細を順に引き当てる。最初の失敗で止まり、エラーメッセージを返す。

        committed には解放が必要な明細が入る。
        呼び出しが例外で終わった場合、その明細も解放対象に残る。
        """
        for line in lines:
            step = self._begin(saga_log, "ReserveInventory", product_id=line.product_id)
            # 結果が確定するまでは解放対象に含めておく (台帳で冪等)
            committed.append(line)
            result = await self.inventory.reserve(line.product_id, line.quantity, order.id)

            if not result.reserved:
                if not result.uncertain:
                    committed.pop()
                self._fail(step, result.message)
                logger.warning(
                    "Reservation failed: order=%s product=%s outcome=%s",
                    order.id,
                    line.product_id,
                    result.outcome.value,
                )
                return [result.message]

            try:
                order_line = await self._store(
                    self.orders.add_order_line(
                        order.id, line.product_id, line.unit_price, line.quantity
                    )
                )
            except STORE_ERRORS as e:
                self._fail(step, repr(e))
                logger.warning("Order line write failed: order=%s error=%r", order.id, e)
                return [f"Error processing product {line.product_id}."]
            order_lines.append(order_line)
            step["status"] = "COMPLETED"
        return []

    async def _abort(
        self,
        order: Order,
        committed: list[CartLine],
        saga_log: list[dict],
        reason: str,
    ) -> None:
        """引き当て済みの明細を逆順に解放し、注文をキャンセルする。"""
        for line in reversed(committed):
            step = self._begin(
                saga_log, "ReleaseInventory (COMPENSATING)", product_id=line.product_id
            )
            try:
                await self.inventory.release(line.product_id, line.quantity, order.id)
                step["status"] = "COMPLETED"
            except InventoryUnavailable as e:
                self._fail(step, str(e))
                logger.error(
                    "Compensation failed: order=%s product=%s quantity=%d: %s",
                    order.id,
                    line.product_id,
                    line.quantity,
                    e,
                )
            except Exception as e:
                self._fail(step, repr(e))
                logger.exception(
                    "Compensation failed: order=%s product=%s quantity=%d",
                    order.id,
                    line.product_id,
                    line.quantity,
                )

        step = self._begin(saga_log, "CancelOrder (COMPENSATING)")
        error = await self._cancel(order.id, reason)
        if error is None:
            step["status"] = "COMPLETED"
        else:
            self._fail(step, error)

        await self._publish_saga_event("CheckoutFailed", order.id, saga_log)

    async def _cancel(self, order_id: str, reason: str) -> str | None:
        """
        注文をキャンセルして冪等キーを外す。

        CANCEL_ATTEMPTS 回まで試し、最後まで失敗したらエラーを返す。
        残った PENDING 注文は pending_timeout 経過後の再チェックアウトで片付く。
        """
        error = None
        for attempt in range(1, CANCEL_ATTEMPTS + 1):
            try:
                await self._store(self.orders.cancel_order(order_id, reason))
                return None
            except STORE_ERRORS as e:
                error = repr(e)
                logger.warning(
                    "Order cancellation failed: order=%s attempt=%d error=%r",
                    order_id,
                    attempt,
                    e,
                )
        logger.error("Order left pending after failed cancellation: order=%s", order_id)
        return error

    async def _cancel_orphan(self, user_id: str, idempotency_key: str, reason: str) -> None:
        """作成に失敗したはずの注文が実は書かれていたら、キャンセルしておく。"""
        try:
            orphan = await self._store(
                self.orders.get_order_by_idempotency_key(user_id, idempotency_key)
            )
        except STORE_ERRORS:
            logger.exception("Could not look up order for key %s", idempotency_key)
            return
        if orphan is not None and orphan.status == PENDING:
            await self._cancel(orphan.id, f"Order creation failed: {reason}")

    async def _replay(
        self, user_id: str, idempotency_key: str, lines: list[CartLine]
    ) -> CheckoutResult | None:
        existing = await self._store(
            self.orders.get_order_by_idempotency_key(user_id, idempotency_key)
        )
        if existing is None:
            return None
        if existing.status != CONFIRMED:
            if not self._abandoned(existing):
                raise CheckoutInProgress()
            await self._recover(existing, lines)
            return None
        logger.info("Checkout replayed: order=%s", existing.id)
        order_lines = await self._store(self.orders.list_order_lines(existing.id))
        return CheckoutResult(order=existing, order_lines=order_lines, replayed=True)

    def _abandoned(self, order: Order) -> bool:
        placed_at = order.placed_at
        if placed_at.tzinfo is None:
            placed_at = placed_at.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) - placed_at >= self.pending_timeout

    async def _recover(self, order: Order, lines: list[CartLine]) -> None:
        """
        放置された PENDING 注文を片付ける。

        どの明細が引き当て済みか分からないので、注文明細とカートの全商品を解放する。
        引き当てていない商品の解放は台帳で何もしない。
        """
        logger.warning("Recovering abandoned checkout: order=%s", order.id)
        released: dict[int, CartLine] = {line.product_id: line for line in lines}
        for order_line in await self._store(self.orders.list_order_lines(order.id)):
            released.setdefault(
                order_line.product_id,
                CartLine(
                    id=order_line.id,
                    product_id=order_line.product_id,
                    quantity=order_line.quantity,
                    unit_price=order_line.unit_price,
                ),
            )
        saga_log: list[dict] = []
        await self._abort(
            order, list(released.values()), saga_log, "Abandoned pending checkout."
        )

    async def _landed(self, order_id: str) -> bool | None:
        """
        確定の書き込みがタイムアウト後に反映されていたかを確認する。

        読み直しにも失敗したら None (不明) を返す。
        """
        try:
            current = await self._store(self.orders.get_order(order_id))
        except STORE_ERRORS:
            logger.exception("Could not re-read order %s", order_id)
            return None
        return current is not None and current.status == CONFIRMED

    async def _store(self, coro):
        return await asyncio.wait_for(coro, self.store_timeout)

    @staticmethod
    def _begin(saga_log: list[dict], action: str, **extra) -> dict:
        step = {
            "step": len(saga_log) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **extra,
        }
        saga_log.append(step)
        return step

    @staticmethod
    def _fail(step: dict, error: str) -> None:
        step["status"] = "FAILED"
        step["error"] = error

    async def _publish_saga_event(
        self,
        event_type: str,
        order_id: str,
        saga_log: list[dict],
    ) -> None:
        """Saga のイベントを Redis に発行する。"""
        try:
            await self.redis.publish(
                "order_events",
                json.dumps(
                    {
                        "event_type": event_type,
                        "order_id": order_id,
                        "saga_log": saga_log,
                    },
                    default=str,
                ),
            )
        except (RedisError, OSError):
            logger.exception("Failed to publish %s for order %s", event_type, order_id)
