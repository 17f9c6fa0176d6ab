"""Order Service — ドメイン例外"""


class CheckoutError(Exception):
    """利用者に返すエラー。errors は画面に出せる文字列のリスト。"""

    status_code = 400

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class InvalidRequest(CheckoutError):
    pass


class EmptyCart(CheckoutError):
    def __init__(self):
        super().__init__(["Cart is empty. Cannot proceed with checkout."])


class CheckoutFailed(CheckoutError):
    pass


class CheckoutInProgress(CheckoutError):
    status_code = 409

    def __init__(self):
        super().__init__(["A checkout for this cart is already in progress."])


class DuplicateCheckout(Exception):
    """同じ (user_id, idempotency_key) の注文が既に存在する。"""

    def __init__(self, user_id: str, idempotency_key: str):
        super().__init__(f"Duplicate checkout for user {user_id}: {idempotency_key}")
        self.user_id = user_id
        self.idempotency_key = idempotency_key


class OrderStateError(Exception):
    pass


class InventoryUnavailable(Exception):
    pass
