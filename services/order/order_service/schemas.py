"""
Order Service — データモデル

API の JSON は camelCase (userId, paymentMethod, ...) で返す。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
CANCELLED = "CANCELLED"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Cart(CamelModel):
    id: int
    user_id: str


class CartLine(CamelModel):
    """チェックアウト開始時点のカート明細のスナップショット"""

    model_config = ConfigDict(frozen=True)

    id: int
    product_id: int
    quantity: int = Field(gt=0)
    unit_price: Decimal


class Order(CamelModel):
    id: str
    user_id: str
    payment_method: str
    delivery_address: str
    payment_status: str = "Pending"
    delivery_status: str = "Pending"
    placed_at: datetime
    estimated_delivery_at: datetime
    # チェックアウトの内部状態。PENDING / CANCELLED は利用者に見せない。
    status: str = Field(default=PENDING, exclude=True)


class OrderLine(CamelModel):
    id: int
    order_id: str
    product_id: int
    unit_price: Decimal
    quantity: int


class CheckoutRequest(CamelModel):
    payment_method: str | None = None
    delivery_address: str | None = None


class CheckoutResponse(CamelModel):
    message: str = "Order created successfully."
    order: Order
    order_lines: list[OrderLine]
