"""
Inventory Service — FastAPI エントリーポイント

在庫管理 API。出品者 (seller) は商品を登録・価格設定し、
顧客 (customer) は購入する。在庫と合計金額はトランザクションで更新する。

  ┌──────────┐    ┌──────────────┐    ┌──────────────────┐    ┌────────────┐
  │  Client  │───▶│ API (routes) │───▶│ Access Control   │───▶│ commands / │───▶ Product Ledger
  │          │    │              │    │ (auth.Identity)  │    │ queries    │     (SQL)
  └──────────┘    └──────────────┘    └──────────────────┘    └────────────┘
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Literal, TypeVar

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from . import commands, event_store, queries, users
from .auth import CUSTOMER, SELLER, Identity, role_required
from .db import engine, init_db, ledger_session
from .errors import InventoryError
from .settings import CORS_ORIGINS, LOG_LEVEL, REDIS_URL

logger = logging.getLogger(__name__)

redis_pool: aioredis.Redis | None = None

seller_only = role_required(SELLER)
customer_only = role_required(CUSTOMER)
any_role = role_required(SELLER, CUSTOMER)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    logging.basicConfig(level=LOG_LEVEL)
    await init_db()
    logger.info("Inventory service starting")
    redis_pool = aioredis.from_url(
        REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=1.0,
        socket_timeout=1.0,
    )
    yield
    await redis_pool.aclose()
    redis_pool = None
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── エラー → レスポンス ───────────────────────────


@app.exception_handler(InventoryError)
async def inventory_error_handler(request: Request, exc: InventoryError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid request')}" if field else "Invalid request"
    return JSONResponse(status_code=422, content={"error": message, "kind": "InvalidRequest"})


# ── Request Models ───────────────────────────────


class RegisterRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1)
    role: Literal["seller", "customer"]


class LoginRequest(BaseModel):
    username: str
    password: str


class AddProductRequest(BaseModel):
    item_id: str = Field(min_length=1, max_length=64)
    item_name: str = Field(min_length=1, max_length=255)
    item_quantity: int = Field(ge=0)
    item_price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)


class UpdatePriceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_price: Decimal = Field(alias="newPrice", ge=0, max_digits=10, decimal_places=2)


class AdjustQuantityRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    delta: int = Field(alias="newQuantity")

    @field_validator("delta")
    @classmethod
    def _nonzero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("must not be zero")
        return value


class BuyRequest(BaseModel):
    item_id: str
    quantity: int = Field(gt=0)


class BillLineRequest(BaseModel):
    item_id: str
    quantity: int = Field(gt=0)


class GenerateBillRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    selected_items: list[BillLineRequest] = Field(alias="selectedItems", min_length=1)


RequestModel = TypeVar("RequestModel", bound=BaseModel)


async def read_body(request: Request, model: type[RequestModel]) -> RequestModel:
    """
    ボディを読んでリクエストモデルで検証する。

    ロールで制限したルートはボディ引数を宣言せず、
    role_required の解決後にこれを呼ぶ (ロール違反はボディの内容に関係なく 403)。
    """
    try:
        payload = await request.json()
    except ValueError as exc:
        raise RequestValidationError(
            [{"type": "json_invalid", "loc": ("body",), "msg": "JSON decode error", "input": None}]
        ) from exc
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise RequestValidationError(
            [{**error, "loc": ("body", *error["loc"])} for error in exc.errors()]
        ) from exc


# ── 登録・ログイン ───────────────────────────────


@app.post("/api/register")
async def register(req: RegisterRequest):
    async with ledger_session() as session:
        user_id = await users.register(session, req.username, req.password, req.role)
    return {"success": True, "userId": user_id}


@app.post("/api/login")
async def login(req: LoginRequest):
    async with ledger_session() as session:
        return await users.login(session, req.username, req.password)


# ── 商品 (出品者) ────────────────────────────────


@app.post("/api/products")
async def add_product(request: Request, identity: Identity = Depends(seller_only)):
    req = await read_body(request, AddProductRequest)
    async with ledger_session() as session:
        return await commands.add_product(
            session,
            redis_pool,
            identity,
            req.item_id,
            req.item_name,
            req.item_quantity,
            req.item_price,
        )


@app.get("/api/products")
async def list_products(identity: Identity = Depends(any_role)):
    async with ledger_session() as session:
        return await queries.list_products(session, identity)


@app.get("/api/products/{product_id}")
async def get_product(product_id: int, identity: Identity = Depends(any_role)):
    async with ledger_session() as session:
        return await queries.get_product(session, identity, product_id)


@app.put("/api/products/{product_id}/price")
async def update_price(
    product_id: int,
    request: Request,
    identity: Identity = Depends(seller_only),
):
    req = await read_body(request, UpdatePriceRequest)
    async with ledger_session() as session:
        await commands.update_price(session, redis_pool, identity, product_id, req.new_price)
    return {"message": "Product price updated successfully."}


@app.put("/api/products/{product_id}/quantity")
async def adjust_quantity(
    product_id: int,
    request: Request,
    identity: Identity = Depends(seller_only),
):
    req = await read_body(request, AdjustQuantityRequest)
    async with ledger_session() as session:
        await commands.adjust_quantity(session, redis_pool, identity, product_id, req.delta)
    return {"message": "Product quantity updated successfully."}


@app.delete("/api/products/{product_id}")
async def delete_product(product_id: int, identity: Identity = Depends(seller_only)):
    async with ledger_session() as session:
        await commands.delete_product(session, redis_pool, identity, product_id)
    return {"message": "Product removed successfully."}


# ── 購入 (顧客) ──────────────────────────────────


@app.post("/api/buy")
async def buy(request: Request, identity: Identity = Depends(customer_only)):
    req = await read_body(request, BuyRequest)
    async with ledger_session() as session:
        return await commands.buy(session, redis_pool, identity, req.item_id, req.quantity)


@app.delete("/api/buy/{item_id}")
async def delete_reservation(item_id: str, identity: Identity = Depends(customer_only)):
    async with ledger_session() as session:
        await commands.delete_reservation(session, redis_pool, identity, item_id)
    return {"message": "Product deleted successfully"}


@app.post("/api/generate-bill")
async def generate_bill(request: Request, identity: Identity = Depends(customer_only)):
    req = await read_body(request, GenerateBillRequest)
    lines = [line.model_dump() for line in req.selected_items]
    async with ledger_session() as session:
        total = await commands.generate_bill(session, redis_pool, identity, lines)
    return {"totalAmount": float(total)}


# ── Event Store (台帳の履歴) ─────────────────────


@app.get("/events")
async def get_all_events(identity: Identity = Depends(seller_only)):
    async with ledger_session() as session:
        return await event_store.load_all_events(session)


@app.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: str, identity: Identity = Depends(seller_only)):
    async with ledger_session() as session:
        return await event_store.load_events(session, aggregate_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
