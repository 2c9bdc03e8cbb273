"""
Inventory Service — コマンドハンドラ (CQRS Write 側)

商品の追加・価格変更・数量調整・削除と、購入・会計を処理する。
すべてのコマンドは最初にロールを確認してから台帳を変更する。

在庫の減算は「WHERE item_quantity >= :qty」付きの UPDATE 1 文で行う。
読み取りと書き込みを別の往復に分けないので、同じ商品への並行購入が
両方とも在庫ありと判断することはない。

会計 (generate_bill) は全行を 1 トランザクションで適用し、
どれか 1 行でも満たせなければ全体をロールバックする。
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import Numeric, bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .auth import CUSTOMER, SELLER, Identity, require_role
from .errors import (
    DuplicateProduct,
    InsufficientStock,
    InvalidPrice,
    InvalidQuantity,
    InventoryError,
    ProductNotFound,
)
from .events import (
    BillGenerated,
    BillLine,
    ProductAdded,
    ProductDeleted,
    ProductDepleted,
    ProductPriceUpdated,
    ProductPurchased,
    ProductQuantityAdjusted,
)
from .queries import product_to_dict
from .settings import EVENT_CHANNEL

logger = logging.getLogger(__name__)

PRICE = Numeric(10, 2)

_SELECT_BY_ITEM_ID = text("""
    SELECT id, item_id, item_name, item_quantity, item_price
    FROM products WHERE item_id = :item_id
""").columns(item_price=PRICE)

_SELECT_BY_ID = text("""
    SELECT id, item_id, item_name, item_quantity, item_price
    FROM products WHERE id = :id
""").columns(item_price=PRICE)

_INSERT_PRODUCT = text("""
    INSERT INTO products (item_id, item_name, item_quantity, item_price)
    VALUES (:item_id, :item_name, :quantity, :price)
""").bindparams(bindparam("price", type_=PRICE))

_UPDATE_PRICE = text(
    "UPDATE products SET item_price = :price WHERE id = :id"
).bindparams(bindparam("price", type_=PRICE))

_ADJUST_QUANTITY = text("""
    UPDATE products
    SET item_quantity = item_quantity + :delta
    WHERE id = :id AND item_quantity + :delta >= 0
""")

_DECREMENT = text("""
    UPDATE products
    SET item_quantity = item_quantity - :qty
    WHERE item_id = :item_id AND item_quantity >= :qty
""")

_DELETE_BY_ID = text("DELETE FROM products WHERE id = :id")
_DELETE_BY_ITEM_ID = text("DELETE FROM products WHERE item_id = :item_id")


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _fetch_by_item_id(session: AsyncSession, item_id: str):
    result = await session.execute(_SELECT_BY_ITEM_ID, {"item_id": item_id})
    return result.fetchone()


async def _fetch_by_id(session: AsyncSession, product_id: int):
    result = await session.execute(_SELECT_BY_ID, {"id": product_id})
    return result.fetchone()


async def _publish(redis: aioredis.Redis | None, events: list[BaseModel]) -> None:
    """
    コミット済みのイベントを Redis Pub/Sub に発行する。

    台帳の結果は確定しているので、発行に失敗してもログに残すだけ。
    履歴は event_store に残っている。
    """
    if redis is None:
        return
    for event in events:
        try:
            await redis.publish(
                EVENT_CHANNEL,
                json.dumps(
                    {
                        "event_type": type(event).__name__,
                        "data": event.model_dump(mode="json"),
                    },
                    default=str,
                ),
            )
        except RedisError:
            logger.exception("Failed to publish %s", type(event).__name__)


def _check_price(price: Decimal) -> None:
    if price < 0:
        raise InvalidPrice()


# ── 商品 CRUD (出品者) ───────────────────────────


async def add_product(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    identity: Identity,
    item_id: str,
    item_name: str,
    quantity: int,
    price: Decimal,
) -> dict:
    """
    商品追加コマンド

    item_id が既に存在すれば DuplicateProduct。一意性は
    テーブルの UNIQUE 制約で保証する。
    """
    require_role(identity, SELLER)
    if quantity < 0:
        raise InvalidQuantity()
    _check_price(price)

    try:
        await session.execute(
            _INSERT_PRODUCT,
            {"item_id": item_id, "item_name": item_name, "quantity": quantity, "price": price},
        )
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateProduct() from exc

    row = await _fetch_by_item_id(session, item_id)
    event = ProductAdded(
        product_id=row.id,
        item_id=item_id,
        item_name=item_name,
        quantity=quantity,
        price=row.item_price,
        seller_id=identity.subject_id,
        timestamp=_now(),
    )
    await event_store.append_event(session, item_id, "Product", event)
    await session.commit()

    logger.info("Product added: item_id=%s quantity=%s", item_id, quantity)
    await _publish(redis, [event])
    return product_to_dict(row)


async def update_price(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    identity: Identity,
    product_id: int,
    new_price: Decimal,
) -> None:
    """価格変更。該当行がなければ ProductNotFound。"""
    require_role(identity, SELLER)
    _check_price(new_price)

    result = await session.execute(_UPDATE_PRICE, {"price": new_price, "id": product_id})
    if result.rowcount == 0:
        raise ProductNotFound(product_id)

    row = await _fetch_by_id(session, product_id)
    event = ProductPriceUpdated(
        product_id=product_id,
        item_id=row.item_id,
        price=row.item_price,
        timestamp=_now(),
    )
    await event_store.append_event(session, row.item_id, "Product", event)
    await session.commit()

    logger.info("Price updated: item_id=%s price=%s", row.item_id, row.item_price)
    await _publish(redis, [event])


async def adjust_quantity(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    identity: Identity,
    product_id: int,
    delta: int,
) -> None:
    """
    数量調整 (入荷なら delta > 0)

    delta = 0 と、在庫が負になる delta は InvalidQuantity で拒否する。
    負になるかどうかは UPDATE の WHERE 句で判定する。
    """
    require_role(identity, SELLER)
    if delta == 0:
        raise InvalidQuantity("Delta must not be zero")

    result = await session.execute(_ADJUST_QUANTITY, {"delta": delta, "id": product_id})
    if result.rowcount == 0:
        if await _fetch_by_id(session, product_id) is None:
            raise ProductNotFound(product_id)
        raise InvalidQuantity(f"Adjusting product {product_id} by {delta} would make stock negative")

    row = await _fetch_by_id(session, product_id)
    event = ProductQuantityAdjusted(
        product_id=product_id,
        item_id=row.item_id,
        delta=delta,
        quantity=row.item_quantity,
        timestamp=_now(),
    )
    await event_store.append_event(session, row.item_id, "Product", event)
    await session.commit()

    logger.info("Quantity adjusted: item_id=%s delta=%s quantity=%s", row.item_id, delta, row.item_quantity)
    await _publish(redis, [event])


async def delete_product(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    identity: Identity,
    product_id: int,
) -> None:
    """商品削除。存在しない id でも成功する (冪等)。"""
    require_role(identity, SELLER)

    row = await _fetch_by_id(session, product_id)
    if row is None:
        return

    await session.execute(_DELETE_BY_ID, {"id": product_id})
    event = ProductDeleted(
        product_id=product_id,
        item_id=row.item_id,
        deleted_by=identity.subject_id,
        timestamp=_now(),
    )
    await event_store.append_event(session, row.item_id, "Product", event)
    await session.commit()

    logger.info("Product deleted: item_id=%s", row.item_id)
    await _publish(redis, [event])


# ── 購入 (顧客) ──────────────────────────────────


async def _decrement(
    session: AsyncSession,
    identity: Identity,
    item_id: str,
    quantity: int,
) -> tuple:
    """
    在庫を quantity だけ減らし、減算後の行と記録したイベントを返す。

    ちょうど 0 になった行は同じトランザクションで削除する。
    満たせなければ ProductNotFound / InsufficientStock を送出する
    (この時点でまだ何も書き込まれていない)。
    """
    result = await session.execute(_DECREMENT, {"qty": quantity, "item_id": item_id})
    if result.rowcount == 0:
        if await _fetch_by_item_id(session, item_id) is None:
            raise ProductNotFound(item_id)
        logger.warning("Insufficient stock: item_id=%s requested=%s", item_id, quantity)
        raise InsufficientStock(item_id)

    row = await _fetch_by_item_id(session, item_id)
    events: list[BaseModel] = [
        ProductPurchased(
            item_id=item_id,
            customer_id=identity.subject_id,
            quantity=quantity,
            unit_price=row.item_price,
            remaining=row.item_quantity,
            timestamp=_now(),
        )
    ]
    if row.item_quantity == 0:
        await session.execute(_DELETE_BY_ITEM_ID, {"item_id": item_id})
        events.append(ProductDepleted(item_id=item_id, timestamp=_now()))

    for event in events:
        await event_store.append_event(session, item_id, "Product", event)
    return row, events


async def buy(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    identity: Identity,
    item_id: str,
    quantity: int,
) -> dict:
    """
    購入コマンド

    減算後の商品を返す。在庫を使い切った場合、行は削除され
    item_quantity = 0 の商品が返る。
    """
    require_role(identity, CUSTOMER)
    if quantity <= 0:
        raise InvalidQuantity("Quantity must be positive")

    row, events = await _decrement(session, identity, item_id, quantity)
    await session.commit()

    logger.info(
        "Purchase: item_id=%s quantity=%s remaining=%s",
        item_id,
        quantity,
        row.item_quantity,
    )
    await _publish(redis, events)
    return product_to_dict(row)


async def delete_reservation(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    identity: Identity,
    item_id: str,
) -> None:
    """
    顧客による商品削除 (購入待ちの取り消し)

    実際には商品行そのものを削除する。出品者の削除と同じ結果になるが、
    顧客にだけ許可された経路として残している。
    """
    require_role(identity, CUSTOMER)

    row = await _fetch_by_item_id(session, item_id)
    if row is None:
        raise ProductNotFound(item_id)

    await session.execute(_DELETE_BY_ITEM_ID, {"item_id": item_id})
    event = ProductDeleted(
        product_id=row.id,
        item_id=item_id,
        deleted_by=identity.subject_id,
        timestamp=_now(),
    )
    await event_store.append_event(session, item_id, "Product", event)
    await session.commit()

    logger.info("Product deleted by customer: item_id=%s customer=%s", item_id, identity.subject_id)
    await _publish(redis, [event])


async def generate_bill(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    identity: Identity,
    lines: list[dict],
) -> Decimal:
    """
    会計コマンド (複数商品の一括購入)

    1. 同じ item_id の行は数量を合算する (最初に現れた順を保つ)
    2. item_id 順に在庫を減算する (行ロックの取得順を揃える)
    3. 満たせない行があれば全体をロールバックし、
       リクエストで最初に現れた失敗行のエラーを送出する
    4. 全行成功したら BillGenerated を記録してコミットする

    合計金額 (price × quantity の総和) を返す。
    """
    require_role(identity, CUSTOMER)
    if not lines:
        raise InvalidQuantity("At least one line is required")

    demand: dict[str, int] = {}
    for line in lines:
        if line["quantity"] <= 0:
            raise InvalidQuantity(f"Quantity for product {line['item_id']} must be positive")
        demand[line["item_id"]] = demand.get(line["item_id"], 0) + line["quantity"]

    total = Decimal("0")
    applied: dict[str, BillLine] = {}
    failures: dict[str, InventoryError] = {}
    events: list[BaseModel] = []
    for item_id in sorted(demand):
        # 失敗した減算は何も書き込まないので、残りの行はそのまま続けられる
        try:
            row, line_events = await _decrement(session, identity, item_id, demand[item_id])
        except (ProductNotFound, InsufficientStock) as exc:
            failures[item_id] = exc
            continue
        unit_price = row.item_price
        total += unit_price * demand[item_id]
        applied[item_id] = BillLine(item_id=item_id, quantity=demand[item_id], unit_price=unit_price)
        events.extend(line_events)

    if failures:
        await session.rollback()
        raise next(failures[item_id] for item_id in demand if item_id in failures)

    bill_lines = [applied[item_id] for item_id in demand]
    bill_id = str(uuid4())
    bill = BillGenerated(
        bill_id=bill_id,
        customer_id=identity.subject_id,
        lines=bill_lines,
        total_amount=total,
        timestamp=_now(),
    )
    await event_store.append_event(session, bill_id, "Bill", bill)
    await session.commit()
    events.append(bill)

    logger.info("Bill generated: bill_id=%s lines=%s total=%s", bill_id, len(bill_lines), total)
    await _publish(redis, events)
    return total
