"""
Inventory Service — データストア

SQLAlchemy の非同期エンジンとコネクションプール、テーブル定義。
DML は各モジュールで text() を使って書く。ここではスキーマと
セッションの取得方法だけを持つ。
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .errors import StoreUnavailable
from .settings import DATABASE_URL, DB_POOL_SIZE, STORE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("password", String(255), nullable=False),
    Column("role", String(20), nullable=False),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("item_id", String(64), nullable=False, unique=True),
    Column("item_name", String(255), nullable=False),
    Column("item_quantity", Integer, nullable=False),
    Column("item_price", Numeric(10, 2), nullable=False),
    CheckConstraint("item_quantity >= 0", name="ck_products_quantity"),
    CheckConstraint("item_price >= 0", name="ck_products_price"),
)

event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("aggregate_id", String(64), nullable=False, index=True),
    Column("aggregate_type", String(32), nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("event_data", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("aggregate_id", "version", name="uq_event_store_version"),
)

_engine_options: dict = {"echo": False, "pool_pre_ping": True}
if not DATABASE_URL.startswith("sqlite"):
    _engine_options.update(pool_size=DB_POOL_SIZE, pool_timeout=STORE_TIMEOUT_SECONDS)

engine = create_async_engine(DATABASE_URL, **_engine_options)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    """起動時にテーブルを作成する (既存なら何もしない)。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


@asynccontextmanager
async def ledger_session() -> AsyncIterator[AsyncSession]:
    """
    タイムアウト付きでセッションを開く。

    ドライバのエラーとタイムアウトは StoreUnavailable に変換し、
    内部の詳細は呼び出し側に漏らさない。
    """
    try:
        async with asyncio.timeout(STORE_TIMEOUT_SECONDS):
            async with async_session() as session:
                yield session
    except (DBAPIError, TimeoutError) as exc:
        logger.exception("Store call failed")
        raise StoreUnavailable() from exc
