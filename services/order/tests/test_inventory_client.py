"""Inventory Service クライアントのテスト (httpx.MockTransport)"""

import json

import httpx
import pytest

from order_service.exceptions import InventoryUnavailable
from order_service.inventory_client import InventoryClient, ReservationOutcome


def _client(handler):
    transport = httpx.MockTransport(handler)
    return InventoryClient(httpx.AsyncClient(transport=transport, base_url="http://inventory"))


async def test_reserve_sends_patch_decrement():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"message": "ok"})

    result = await _client(handler).reserve(1, 2, "order-1")

    assert result.outcome is ReservationOutcome.RESERVED
    assert result.reserved
    assert seen[0].method == "PATCH"
    assert seen[0].url.path == "/products/decrement"
    assert json.loads(seen[0].content) == {"productId": 1, "quantity": 2, "orderId": "order-1"}


@pytest.mark.parametrize(
    "status, outcome, uncertain",
    [
        (400, ReservationOutcome.INSUFFICIENT_STOCK, False),
        (404, ReservationOutcome.RESERVATION_FAILED, False),
        (500, ReservationOutcome.RESERVATION_FAILED, True),
        (503, ReservationOutcome.RESERVATION_FAILED, True),
    ],
)
async def test_reserve_maps_status_codes(status, outcome, uncertain):
    result = await _client(lambda request: httpx.Response(status, json={"error": "x"})).reserve(
        7, 1, "order-1"
    )
    assert result.outcome is outcome
    assert result.uncertain is uncertain
    assert "7" in result.message


async def test_reserve_timeout_is_uncertain_failure():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    result = await _client(handler).reserve(3, 1, "order-1")

    assert result.outcome is ReservationOutcome.RESERVATION_FAILED
    assert result.uncertain
    assert result.message == "Timed out reserving product 3."


async def test_reserve_connection_error_is_uncertain_failure():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    result = await _client(handler).reserve(3, 1, "order-1")

    assert result.outcome is ReservationOutcome.RESERVATION_FAILED
    assert result.uncertain


async def test_release_sends_patch_increment():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"message": "ok"})

    await _client(handler).release(4, 2, "order-1")

    assert seen[0].url.path == "/products/increment"
    assert json.loads(seen[0].content)["orderId"] == "order-1"


async def test_release_error_status_raises():
    with pytest.raises(InventoryUnavailable):
        await _client(lambda request: httpx.Response(500)).release(4, 2, "order-1")


async def test_release_transport_error_raises():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(InventoryUnavailable):
        await _client(handler).release(4, 2, "order-1")
