"""
Inventory Service — イベント定義

商品台帳 (Product Ledger) の変更として記録されるイベント。
event_store に保存され、inventory_events チャネルにも発行される。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class ProductAdded(BaseModel):
    """出品者が商品を追加した"""
    product_id: int
    item_id: str
    item_name: str
    quantity: int
    price: Decimal
    seller_id: int
    timestamp: datetime


class ProductPriceUpdated(BaseModel):
    product_id: int
    item_id: str
    price: Decimal
    timestamp: datetime


class ProductQuantityAdjusted(BaseModel):
    """入荷 (delta > 0) または減算"""
    product_id: int
    item_id: str
    delta: int
    quantity: int
    timestamp: datetime


class ProductDeleted(BaseModel):
    product_id: int
    item_id: str
    deleted_by: int
    timestamp: datetime


class ProductPurchased(BaseModel):
    """購入により在庫が減った"""
    item_id: str
    customer_id: int
    quantity: int
    unit_price: Decimal
    remaining: int
    timestamp: datetime


class ProductDepleted(BaseModel):
    """在庫がちょうど 0 になり行が削除された"""
    item_id: str
    timestamp: datetime


class BillLine(BaseModel):
    item_id: str
    quantity: int
    unit_price: Decimal


class BillGenerated(BaseModel):
    """複数商品の一括購入 (会計) が確定した"""
    bill_id: str
    customer_id: int
    lines: list[BillLine]
    total_amount: Decimal
    timestamp: datetime
