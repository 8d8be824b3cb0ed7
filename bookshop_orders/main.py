"""
Order Service: FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離する。
注文確定は在庫減算と同じトランザクションでコミットし、
コミット後に OrderPlaced イベントを Redis Pub/Sub で発行する。

起動:
    uvicorn bookshop_orders.main:create_app --factory
"""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, StrictInt

from . import commands, queries, statistics
from .config import Settings, load_settings
from .database import create_schema, make_engine, make_session_factory
from .errors import InvalidRequest, OrderError, OrderNotFound

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────

class OrderLineRequest(BaseModel):
    book_id: str
    quantity: StrictInt


class CreateOrderRequest(BaseModel):
    purchaser_id: str
    lines: list[OrderLineRequest]


def create_app(
    settings: Settings | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    redis を渡した場合はそれを使い、終了時にも閉じない（テスト用）。
    """
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level)

    engine = make_engine(settings.database_url)
    async_session = make_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.create_schema:
            await create_schema(engine)
        redis_pool = redis if redis is not None else aioredis.from_url(
            settings.redis_url, decode_responses=True
        )
        app.state.redis = redis_pool
        logger.info("Order service started")
        yield
        if redis is None:
            await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Bookshop Order Service", lifespan=lifespan)
    app.state.redis = redis

    # ── Error Handlers ───────────────────────────

    @app.exception_handler(OrderError)
    async def handle_order_error(request: Request, exc: OrderError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        error = InvalidRequest("Malformed request", errors=jsonable_encoder(exc.errors()))
        return JSONResponse(status_code=error.status_code, content={"error": error.to_dict()})

    # ── Command Endpoints (Write 側) ─────────────

    @app.post("/orders")
    async def cmd_place_order(
        req: CreateOrderRequest,
        idempotency_key: str | None = Header(default=None),
    ):
        """注文確定コマンド。再送 (同じ Idempotency-Key) なら既存の注文を 200 で返す"""
        async with async_session() as session:
            order, created = await commands.place_order(
                session, app.state.redis,
                req.purchaser_id,
                [line.model_dump() for line in req.lines],
                idempotency_key=idempotency_key,
                channel=settings.order_events_channel,
                lock_timeout_ms=settings.stock_lock_timeout_ms,
            )
        return JSONResponse(status_code=201 if created else 200, content=order)

    # ── Query Endpoints (Read 側) ────────────────

    @app.get("/orders/statistics")
    async def query_statistics():
        """売上統計（注文数・平均金額・ジャンル別販売冊数）"""
        async with async_session() as session:
            return await statistics.summarize(session)

    @app.get("/orders")
    async def query_list_orders(
        page: int = 1,
        limit: int = 10,
        search: str | None = None,
        order_by_id: str | None = None,
        order_by_price: str | None = None,
        order_by_amount: str | None = None,
    ):
        async with async_session() as session:
            return await queries.list_orders(
                session,
                page=page,
                limit=limit,
                search=search,
                order_by_id=order_by_id,
                order_by_price=order_by_price,
                order_by_amount=order_by_amount,
            )

    @app.get("/orders/{order_id}")
    async def query_get_order(order_id: str):
        async with async_session() as session:
            order = await queries.get_order(session, order_id)
            if not order:
                raise OrderNotFound(order_id)
            return order

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}

    return app
