"""
Inventory Service — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import Numeric, text
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import CUSTOMER, SELLER, Identity, require_role
from .errors import ProductNotFound

_SELECT_PRODUCTS = text("""
    SELECT id, item_id, item_name, item_quantity, item_price FROM products
""").columns(item_price=Numeric(10, 2))

_SELECT_PRODUCT = text("""
    SELECT id, item_id, item_name, item_quantity, item_price FROM products WHERE id = :id
""").columns(item_price=Numeric(10, 2))


def product_to_dict(row) -> dict:
    return {
        "id": row.id,
        "item_id": row.item_id,
        "item_name": row.item_name,
        "item_quantity": row.item_quantity,
        "item_price": float(row.item_price),
    }


async def list_products(session: AsyncSession, identity: Identity) -> list[dict]:
    """全商品 (順序の保証なし)"""
    require_role(identity, SELLER, CUSTOMER)
    result = await session.execute(_SELECT_PRODUCTS)
    return [product_to_dict(row) for row in result.fetchall()]


async def get_product(session: AsyncSession, identity: Identity, product_id: int) -> dict:
    require_role(identity, SELLER, CUSTOMER)
    result = await session.execute(_SELECT_PRODUCT, {"id": product_id})
    row = result.fetchone()
    if not row:
        raise ProductNotFound(product_id)
    return product_to_dict(row)
