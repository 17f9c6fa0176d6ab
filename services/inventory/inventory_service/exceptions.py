"""Inventory Service — ドメイン例外"""


class InventoryError(Exception):
    pass


class ProductNotFound(InventoryError):
    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found.")
        self.product_id = product_id


class InsufficientStock(InventoryError):
    def __init__(self, product_id: int, requested: int, available: int):
        super().__init__(
            f"Not enough stock for product {product_id}: "
            f"requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvalidStockRequest(InventoryError):
    pass
