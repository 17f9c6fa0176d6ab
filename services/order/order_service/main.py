"""
Order Service — FastAPI エントリーポイント

カート・注文を所有するサービス。POST /orders/checkout で
チェックアウト Saga (checkout.CheckoutCoordinator) を実行する。

呼び出し元の利用者 ID は、認証済みのゲートウェイが X-User-Id ヘッダで渡す。
"""

import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .carts import CartStore
from .checkout import CheckoutCoordinator
from .config import Settings
from .exceptions import CheckoutError
from .inventory_client import InventoryClient
from .orders import OrderStore
from .schemas import CheckoutRequest, CheckoutResponse
from .tables import metadata

logger = logging.getLogger(__name__)

router = APIRouter()


async def current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(401, "Access denied. No token provided.")
    return x_user_id


def get_coordinator(request: Request) -> CheckoutCoordinator:
    state = request.app.state
    settings: Settings = state.settings
    return CheckoutCoordinator(
        carts=state.carts,
        orders=state.orders,
        inventory=state.inventory,
        redis=state.redis,
        store_timeout=settings.store_timeout,
        delivery_window_days=settings.delivery_window_days,
        pending_timeout=settings.pending_order_timeout,
    )


# ── Checkout ─────────────────────────────────────


@router.post("/orders/checkout", status_code=201)
async def checkout(
    req: CheckoutRequest,
    user_id: str = Depends(current_user_id),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    coordinator: CheckoutCoordinator = Depends(get_coordinator),
):
    """カートを注文に変換する (Saga のエントリーポイント)"""
    result = await coordinator.checkout(
        user_id,
        req.payment_method,
        req.delivery_address,
        idempotency_key=idempotency_key,
    )
    body = CheckoutResponse(order=result.order, order_lines=result.order_lines)
    headers = {"Idempotent-Replayed": "true"} if result.replayed else None
    return JSONResponse(
        status_code=201,
        content=body.model_dump(mode="json", by_alias=True),
        headers=headers,
    )


# ── Query Endpoints ──────────────────────────────


@router.get("/orders/user/{user_id}")
async def list_user_orders(
    user_id: str,
    request: Request,
    caller_id: str = Depends(current_user_id),
):
    """利用者の確定済み注文一覧"""
    if caller_id != user_id:
        raise HTTPException(403, "Not allowed to view another user's orders.")
    orders = await request.app.state.orders.list_orders_by_user(user_id)
    return [order.model_dump(mode="json", by_alias=True) for order in orders]


# ── Cart Endpoints ───────────────────────────────


@router.get("/carts/items")
async def list_cart_items(request: Request, user_id: str = Depends(current_user_id)):
    carts: CartStore = request.app.state.carts
    cart = await carts.get_or_create_cart(user_id)
    items = await carts.list_items(cart.id)
    return [item.model_dump(mode="json", by_alias=True) for item in items]


@router.delete("/carts")
async def delete_cart(request: Request, user_id: str = Depends(current_user_id)):
    if not await request.app.state.carts.delete_cart(user_id):
        raise HTTPException(404, "Cart not found.")
    return {"message": "Cart and items deleted successfully."}


@router.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}


# ── エラーハンドリング ───────────────────────────


async def _checkout_error(request: Request, exc: CheckoutError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.errors})


async def _invalid_body(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": ["Invalid request body."]})


async def _http_error(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


async def _unexpected(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": str(exc)})


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_async_engine(settings.database_url, echo=False)
        async with engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        http_client = httpx.AsyncClient(
            base_url=settings.inventory_service_url,
            timeout=settings.inventory_timeout,
        )
        app.state.carts = CartStore(async_session)
        app.state.orders = OrderStore(async_session)
        app.state.inventory = InventoryClient(http_client)
        app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        yield
        await app.state.redis.aclose()
        await http_client.aclose()
        await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings
    app.include_router(router)
    app.add_exception_handler(CheckoutError, _checkout_error)
    app.add_exception_handler(RequestValidationError, _invalid_body)
    app.add_exception_handler(HTTPException, _http_error)
    app.add_exception_handler(Exception, _unexpected)
    return app


app = create_app()
