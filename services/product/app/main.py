"""
Product Service — FastAPI エントリーポイント

商品の作成・一覧と購入（注文の開始）を提供する。
購入は pending の注文を作って即座に 201 を返し、完了処理は
Redis Streams 経由でフルフィルメント・コンシューマが非同期に行う。

┌────────┐  POST /api/products/buy  ┌──────────────┐   XADD   ┌───────────┐
│ Client │ ───────────────────────▶ │ Orchestrator │ ───────▶ │  Redis    │
│        │ ◀─── 201 pending ─────── │              │          │  Stream   │
└────────┘                          └──────┬───────┘          └─────┬─────┘
                                           │ INSERT pending         │
                                    ┌──────▼───────┐   UPDATE ┌─────▼─────┐
                                    │   orders 表  │ ◀─────── │ Consumer  │
                                    └──────────────┘          └───────────┘

起動: uvicorn services.product.app.main:create_app --factory
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError

from . import catalog, repository
from .auth import Identity
from .config import Settings, load_settings
from .container import Container, build_container
from .errors import NotFound, ProductServiceError, PublishError, StorageError
from .logging_config import setup_logging

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class CreateProductRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    price: float = Field(ge=0, allow_inf_nan=False, strict=True)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name must not be blank")
        return v


class BuyRequest(BaseModel):
    ids: list[str]


# ── Dependencies ─────────────────────────────────


def get_container(request: Request) -> Container:
    return request.app.state.container


def require_identity(
    authorization: str | None = Header(default=None),
    container: Container = Depends(get_container),
) -> Identity:
    return container.verifier.verify_header(authorization)


@asynccontextmanager
async def _session(container: Container):
    """DB 例外を StorageError に変換するセッション。"""
    try:
        async with container.session_factory() as session:
            yield session
    except SQLAlchemyError as e:
        logger.exception("Storage failure")
        raise StorageError(f"Storage unavailable: {e}") from e


# ── Error Handlers ───────────────────────────────


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProductServiceError)
    async def _service_error(request: Request, exc: ProductServiceError):
        content = {"error": exc.code, "message": exc.message}
        headers = None
        if isinstance(exc, PublishError) and exc.order_id:
            content["orderId"] = exc.order_id
        if exc.status_code == 401:
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(p) for p in e.get("loc", ()) if p != "body"),
                "reason": str(e.get("msg") or e.get("type") or "invalid"),
            }
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={
                "error": "validation_error",
                "message": "Invalid request body",
                "details": details,
            },
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": "Internal server error"},
        )


# ── App Factory ──────────────────────────────────


def create_app(settings: Settings | None = None, *, broker=None) -> FastAPI:
    if settings is None:
        settings = load_settings()
        setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """ブローカーの準備完了を待ってからリクエストを受け付ける。"""
        container = await build_container(settings, broker=broker)
        app.state.container = container
        if settings.run_consumer:
            container.start_background()
        yield
        await container.close()

    app = FastAPI(title="Product Service", lifespan=lifespan)
    register_exception_handlers(app)
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    # ── Catalog ──────────────────────────────────

    @app.post("/api/products", status_code=201)
    async def create_product(
        req: CreateProductRequest,
        identity: Identity = Depends(require_identity),
        container: Container = Depends(get_container),
    ):
        """商品を作成する"""
        async with _session(container) as session:
            product = await catalog.create_product(
                session, req.name, req.description, req.price
            )
        logger.info("Product %s created by %s", product["_id"], identity.username)
        return product

    @app.get("/api/products")
    async def list_products(
        identity: Identity = Depends(require_identity),
        container: Container = Depends(get_container),
    ):
        async with _session(container) as session:
            return await catalog.list_products(session)

    # ── Purchase ─────────────────────────────────

    @app.post("/api/products/buy", status_code=201)
    async def buy_products(
        req: BuyRequest,
        identity: Identity = Depends(require_identity),
        container: Container = Depends(get_container),
    ):
        """
        購入を開始する。フルフィルメントの完了は待たず、
        pending の注文を返す。
        """
        return await container.orchestrator.initiate_purchase(identity, req.ids)

    # ── Orders (Read) ────────────────────────────

    @app.get("/api/orders")
    async def list_orders(
        identity: Identity = Depends(require_identity),
        container: Container = Depends(get_container),
    ):
        async with _session(container) as session:
            orders = await repository.list_orders(session, identity.username)
        return [o.to_dict() for o in orders]

    @app.get("/api/orders/{order_id}")
    async def get_order(
        order_id: str,
        identity: Identity = Depends(require_identity),
        container: Container = Depends(get_container),
    ):
        """注文のステータスを取得する（本人の注文のみ）"""
        async with _session(container) as session:
            order = await repository.get_order(session, order_id)
        if order is None or order.username != identity.username:
            raise NotFound("Order not found")
        return order.to_dict()

    @app.get("/health")
    async def health(container: Container = Depends(get_container)):
        return {
            "status": "ok",
            "service": "product-service",
            "broker": "ready" if container.broker.is_ready else "not_ready",
        }
