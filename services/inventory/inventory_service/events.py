"""
Inventory Service — イベント定義

在庫ドメインで発生するイベント。Redis の inventory_events チャネルに発行する。
"""

from datetime import datetime

from pydantic import BaseModel


class InventoryReserved(BaseModel):
    """在庫が引き当てられた"""
    product_id: int
    order_id: str | None
    quantity: int
    stock: int
    timestamp: datetime


class InventoryReleased(BaseModel):
    """在庫の引き当てが解放された（補償トランザクション）"""
    product_id: int
    order_id: str | None
    quantity: int
    stock: int
    timestamp: datetime
