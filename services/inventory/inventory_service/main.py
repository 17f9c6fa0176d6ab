"""
Inventory Service — FastAPI エントリーポイント

商品ごとの在庫カウンタを所有するサービス。
Order Service のチェックアウト Saga から引き当て (decrement) と
補償としての解放 (increment) を受け付ける。
"""

from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .config import Settings
from .exceptions import InsufficientStock, InvalidStockRequest, ProductNotFound
from .tables import metadata

router = APIRouter()


# ── Request Models ───────────────────────────────


class StockRequest(BaseModel):
    productId: int | None = None
    quantity: int | None = None
    orderId: str | None = None


# ── Command Endpoints (Write 側) ─────────────────


@router.patch("/products/decrement")
async def cmd_decrement(req: StockRequest, request: Request):
    """在庫引き当てコマンド"""
    async with request.app.state.async_session() as session:
        await commands.reserve_stock(
            session,
            request.app.state.redis,
            req.productId,
            req.quantity,
            req.orderId,
        )
    return {"message": "Product inventory updated successfully."}


@router.patch("/products/increment")
async def cmd_increment(req: StockRequest, request: Request):
    """在庫解放コマンド（補償トランザクション）"""
    async with request.app.state.async_session() as session:
        await commands.release_stock(
            session,
            request.app.state.redis,
            req.productId,
            req.quantity,
            req.orderId,
        )
    return {"message": "Product inventory released successfully."}


# ── Query Endpoints (Read 側) ────────────────────


@router.get("/products")
async def query_list_products(request: Request):
    async with request.app.state.async_session() as session:
        return await queries.list_products(session)


@router.get("/products/{product_id}")
async def query_get_product(product_id: int, request: Request):
    async with request.app.state.async_session() as session:
        product = await queries.get_product(session, product_id)
    if not product:
        raise HTTPException(404, "Product not found.")
    return product


@router.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}


# ── エラーハンドリング ───────────────────────────


async def _not_found(request: Request, exc: ProductNotFound):
    return JSONResponse(status_code=404, content={"error": str(exc)})


async def _bad_request(request: Request, exc: Exception):
    return JSONResponse(status_code=400, content={"error": str(exc)})


async def _invalid_body(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400, content={"error": "Invalid productId or quantity."}
    )


async def _http_error(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_async_engine(settings.database_url, echo=False)
        async with engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        app.state.async_session = sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        yield
        await app.state.redis.aclose()
        await engine.dispose()

    app = FastAPI(title="Inventory Service", lifespan=lifespan)
    app.state.settings = settings
    app.include_router(router)
    app.add_exception_handler(ProductNotFound, _not_found)
    app.add_exception_handler(InsufficientStock, _bad_request)
    app.add_exception_handler(InvalidStockRequest, _bad_request)
    app.add_exception_handler(RequestValidationError, _invalid_body)
    app.add_exception_handler(HTTPException, _http_error)
    return app


app = create_app()
