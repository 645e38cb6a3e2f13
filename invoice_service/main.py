"""
Invoice Service: FastAPI エントリポイント

POST /invoices はチェックアウトコマンドを実行し、購入者への通知を予約する。
GET /invoices/{id} は保存済みの注文を HTML の請求書として返す。
チェックアウトのエラーは {"error": message} とそのステータスコードに変換する。
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as aioredis
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError

from . import commands, queries
from .config import Settings
from .db import init_schema, make_engine, make_session_factory
from .errors import CheckoutError, InvalidInput, NotFound, StorageFailure
from .mailer import HttpMailTransport, LogMailTransport, MailTransport
from .notifications import NotificationDispatcher
from .rendering import render_invoice
from .sequence import OrderSequence

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request Models ───────────────────────────────


class CreateInvoiceRequest(BaseModel):
    """型はゆるく受ける。形のエラーはバリデーターが 400 で返す"""

    model_config = ConfigDict(extra="allow")

    products: Any = None
    userId: Any = None
    user: Any = None
    shipping: Any = None
    entrega: Any = None
    payment: Any = None
    pago: Any = None
    discount: Any = None
    totals: Any = None
    taxRate: Any = None
    currency: Any = None
    comentarios: Any = None
    metodoPago: Any = None


# ── コマンド API (Write 側) ───────────────────────


@router.post("/invoices", status_code=201)
async def cmd_create_invoice(request: Request, req: CreateInvoiceRequest | None = None):
    """チェックアウト: 注文を確定し、購入者への通知はバックグラウンドで行う"""
    req = req or CreateInvoiceRequest()
    state = request.app.state
    async with state.async_session() as session:
        result = await commands.create_invoice(
            session,
            state.sequence,
            state.settings.pricing,
            user_id=req.userId,
            user=req.user,
            products=req.products,
            shipping=req.shipping or req.entrega,
            payment=req.payment or req.pago,
            discount=req.discount,
            totals=req.totals,
            tax_rate=req.taxRate,
            currency=req.currency,
            comments=req.comentarios,
            payment_method=req.metodoPago,
        )

    if result.buyer_email:
        state.dispatcher.notify(result.order, result.buyer_email)

    return {"success": True, "order": result.order, "invoice": result.invoice}


# ── クエリ API (Read 側) ──────────────────────────


async def _fetch_order(request: Request, order_id: str) -> dict:
    if not queries.is_order_identifier(order_id):
        raise InvalidInput("Invalid order id")
    try:
        async with request.app.state.async_session() as session:
            order = await queries.get_order(session, order_id)
    except SQLAlchemyError as exc:
        logger.exception("Error fetching order %s", order_id)
        raise StorageFailure("Unable to load order") from exc
    if not order:
        raise NotFound("Order not found")
    return order


@router.get("/invoices/{order_id}", response_class=HTMLResponse)
async def query_invoice_html(request: Request, order_id: str):
    """注文コードまたはキーから請求書 HTML を返す"""
    order = await _fetch_order(request, order_id)
    try:
        html = render_invoice(order, request.app.state.settings.store_name)
    except Exception as exc:
        logger.exception("Error rendering invoice for order %s", order_id)
        raise CheckoutError("Unable to render invoice") from exc
    return HTMLResponse(html)


@router.get("/orders/{order_id}")
async def query_get_order(request: Request, order_id: str):
    return await _fetch_order(request, order_id)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "invoice-service"}


# ── アプリケーション ──────────────────────────────


async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # JSON オブジェクトでないボディ ([]、壊れた JSON) も 400 {"error"} で返す
    return await checkout_error_handler(request, InvalidInput("Invalid request body"))


def mail_transport(settings: Settings) -> MailTransport:
    if settings.mail_api_url:
        return HttpMailTransport(settings.mail_api_url, settings.mail_from, settings.mail_api_key)
    return LogMailTransport()


def create_app(settings: Settings) -> FastAPI:
    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = make_engine(settings.database_url)
        await init_schema(engine)
        redis_pool = (
            aioredis.from_url(settings.redis_url, decode_responses=True)
            if settings.redis_url
            else None
        )
        app.state.async_session = make_session_factory(engine)
        app.state.dispatcher = NotificationDispatcher(
            mail_transport(settings),
            settings.app_base_url,
            redis=redis_pool,
            subject=f"Factura disponible - {settings.store_name}",
        )
        yield
        await app.state.dispatcher.drain()
        if redis_pool is not None:
            await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Invoice Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.sequence = OrderSequence()
    app.add_exception_handler(CheckoutError, checkout_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app(Settings.from_env())
