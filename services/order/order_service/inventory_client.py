"""
Order Service — Inventory Service クライアント

PATCH /products/decrement (引き当て) と PATCH /products/increment (解放) を呼ぶ。
引き当ての失敗は例外にせず ReservationResult に変換して返す。
通信エラーやタイムアウトは「引き当てが反映されたか分からない」ので uncertain=True。
"""

import logging
from dataclasses import dataclass
from enum import Enum

import httpx

from .exceptions import InventoryUnavailable

logger = logging.getLogger(__name__)


class ReservationOutcome(str, Enum):
    RESERVED = "Reserved"
    INSUFFICIENT_STOCK = "InsufficientStock"
    RESERVATION_FAILED = "ReservationFailed"


@dataclass(frozen=True)
class ReservationResult:
    outcome: ReservationOutcome
    message: str = ""
    uncertain: bool = False

    @property
    def reserved(self) -> bool:
        return self.outcome is ReservationOutcome.RESERVED


class InventoryClient:
    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def reserve(self, product_id: int, quantity: int, order_id: str) -> ReservationResult:
        try:
            resp = await self._client.patch(
                "/products/decrement",
                json={"productId": product_id, "quantity": quantity, "orderId": order_id},
            )
        except httpx.TimeoutException:
            logger.warning("Reserve timed out: product=%s order=%s", product_id, order_id)
            return ReservationResult(
                ReservationOutcome.RESERVATION_FAILED,
                f"Timed out reserving product {product_id}.",
                uncertain=True,
            )
        except httpx.HTTPError as e:
            logger.warning("Reserve failed: product=%s error=%s", product_id, e)
            return ReservationResult(
                ReservationOutcome.RESERVATION_FAILED,
                f"Error processing product {product_id}.",
                uncertain=True,
            )

        if resp.status_code == 200:
            return ReservationResult(ReservationOutcome.RESERVED)
        if resp.status_code == 400:
            return ReservationResult(
                ReservationOutcome.INSUFFICIENT_STOCK,
                f"Not enough stock for product {product_id}.",
            )
        if resp.status_code == 404:
            return ReservationResult(
                ReservationOutcome.RESERVATION_FAILED,
                f"Product {product_id} not found.",
            )
        # 5xx などはコミット後に落ちた可能性がある
        logger.warning(
            "Reserve returned %s: product=%s body=%s",
            resp.status_code,
            product_id,
            resp.text,
        )
        return ReservationResult(
            ReservationOutcome.RESERVATION_FAILED,
            f"Error processing product {product_id}.",
            uncertain=True,
        )

    async def release(self, product_id: int, quantity: int, order_id: str) -> None:
        """補償トランザクション。失敗したら InventoryUnavailable。"""
        try:
            resp = await self._client.patch(
                "/products/increment",
                json={"productId": product_id, "quantity": quantity, "orderId": order_id},
            )
        except httpx.HTTPError as e:
            raise InventoryUnavailable(f"Release of product {product_id} failed: {e}") from e
        if resp.status_code != 200:
            raise InventoryUnavailable(
                f"Release of product {product_id} returned {resp.status_code}: {resp.text}"
            )
