"""Command handlers called directly, without the HTTP layer."""

import asyncio
import json
from decimal import Decimal

import fakeredis.aioredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError

from app import commands, db, queries
from app.errors import (
    AccessDenied,
    InsufficientStock,
    InvalidPrice,
    InvalidQuantity,
    ProductNotFound,
    StoreUnavailable,
)


async def _add(session_factory, seller, item_id="A", quantity=10, price="5.00") -> dict:
    async with session_factory() as session:
        return await commands.add_product(
            session, None, seller, item_id, item_id, quantity, Decimal(price)
        )


async def _products(session_factory, identity) -> dict:
    async with session_factory() as session:
        return {p["item_id"]: p for p in await queries.list_products(session, identity)}


class TestRoleChecks:
    async def test_customer_cannot_add(self, session_factory, customer):
        async with session_factory() as session:
            with pytest.raises(AccessDenied):
                await commands.add_product(session, None, customer, "A", "Apple", 1, Decimal("1"))

    async def test_seller_cannot_bill(self, session_factory, seller):
        async with session_factory() as session:
            with pytest.raises(AccessDenied):
                await commands.generate_bill(
                    session, None, seller, [{"item_id": "A", "quantity": 1}]
                )

    async def test_role_is_checked_before_lookup(self, session_factory, seller):
        async with session_factory() as session:
            with pytest.raises(AccessDenied):
                await commands.delete_reservation(session, None, seller, "missing")


class TestInvariants:
    async def test_buy_rejects_non_positive_quantity(self, session_factory, seller, customer):
        await _add(session_factory, seller)
        async with session_factory() as session:
            with pytest.raises(InvalidQuantity):
                await commands.buy(session, None, customer, "A", 0)

    async def test_add_rejects_negative_price(self, session_factory, seller):
        async with session_factory() as session:
            with pytest.raises(InvalidPrice) as excinfo:
                await commands.add_product(session, None, seller, "A", "Apple", 1, Decimal("-1"))
        assert excinfo.value.to_dict() == {
            "error": "Price must not be negative",
            "kind": "InvalidPrice",
        }
        assert excinfo.value.status_code == 400

    async def test_update_rejects_negative_price(self, session_factory, seller):
        product = await _add(session_factory, seller)
        async with session_factory() as session:
            with pytest.raises(InvalidPrice):
                await commands.update_price(session, None, seller, product["id"], Decimal("-0.01"))

    async def test_zero_adjustment_is_rejected(self, session_factory, seller):
        product = await _add(session_factory, seller, quantity=4)
        async with session_factory() as session:
            with pytest.raises(InvalidQuantity):
                await commands.adjust_quantity(session, None, seller, product["id"], 0)
        assert (await _products(session_factory, seller))["A"]["item_quantity"] == 4

    async def test_insufficient_stock_names_item(self, session_factory, seller, customer):
        await _add(session_factory, seller, quantity=1)
        async with session_factory() as session:
            with pytest.raises(InsufficientStock) as excinfo:
                await commands.buy(session, None, customer, "A", 2)
        assert excinfo.value.item_id == "A"

    async def test_update_price_of_missing_product(self, session_factory, seller):
        async with session_factory() as session:
            with pytest.raises(ProductNotFound):
                await commands.update_price(session, None, seller, 12345, Decimal("1.00"))

    async def test_bill_total_uses_price_at_purchase(self, session_factory, seller, customer):
        await _add(session_factory, seller, item_id="A", quantity=5, price="5.00")
        await _add(session_factory, seller, item_id="B", quantity=5, price="3.00")

        async with session_factory() as session:
            total = await commands.generate_bill(
                session,
                None,
                customer,
                [{"item_id": "A", "quantity": 2}, {"item_id": "B", "quantity": 1}],
            )

        assert total == Decimal("13.00")
        products = await _products(session_factory, customer)
        assert products["A"]["item_quantity"] == 3
        assert products["B"]["item_quantity"] == 4

    async def test_bill_reports_first_failing_line_in_request_order(
        self, session_factory, seller, customer
    ):
        await _add(session_factory, seller, item_id="A", quantity=5)
        await _add(session_factory, seller, item_id="B", quantity=1)

        async with session_factory() as session:
            with pytest.raises(ProductNotFound) as excinfo:
                await commands.generate_bill(
                    session,
                    None,
                    customer,
                    [
                        {"item_id": "C", "quantity": 1},
                        {"item_id": "B", "quantity": 2},
                        {"item_id": "A", "quantity": 1},
                    ],
                )
        assert excinfo.value.product_ref == "C"

        products = await _products(session_factory, customer)
        assert products["A"]["item_quantity"] == 5
        assert products["B"]["item_quantity"] == 1

    async def test_bill_with_empty_lines(self, session_factory, customer):
        async with session_factory() as session:
            with pytest.raises(InvalidQuantity):
                await commands.generate_bill(session, None, customer, [])


class TestEventPublication:
    async def test_purchase_is_published(self, session_factory, seller, customer):
        server = fakeredis.FakeServer()
        redis = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
        pubsub = redis.pubsub()
        await pubsub.subscribe("inventory_events")
        await pubsub.get_message(timeout=1.0)

        await _add(session_factory, seller, quantity=3)
        async with session_factory() as session:
            await commands.buy(session, redis, customer, "A", 1)

        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
        payload = json.loads(message["data"])
        assert payload["event_type"] == "ProductPurchased"
        assert payload["data"]["item_id"] == "A"
        assert payload["data"]["remaining"] == 2

        await pubsub.aclose()
        await redis.aclose()

    async def test_publish_failure_keeps_committed_purchase(
        self, session_factory, seller, customer
    ):
        class BrokenRedis:
            async def publish(self, channel, message):
                raise RedisConnectionError("redis is down")

        await _add(session_factory, seller, quantity=3)
        async with session_factory() as session:
            product = await commands.buy(session, BrokenRedis(), customer, "A", 1)

        assert product["item_quantity"] == 2
        assert (await _products(session_factory, customer))["A"]["item_quantity"] == 2


class TestLedgerSession:
    async def test_driver_error_becomes_store_unavailable(self, session_factory):
        with pytest.raises(StoreUnavailable) as excinfo:
            async with db.ledger_session():
                raise OperationalError("SELECT 1", {}, Exception("connection reset"))
        assert excinfo.value.to_dict() == {
            "error": "Store unavailable",
            "kind": "StoreUnavailable",
        }

    async def test_timeout_becomes_store_unavailable(self, session_factory, monkeypatch):
        monkeypatch.setattr(db, "STORE_TIMEOUT_SECONDS", 0.01)
        with pytest.raises(StoreUnavailable):
            async with db.ledger_session():
                await asyncio.sleep(1)

    async def test_domain_errors_pass_through(self, session_factory):
        with pytest.raises(ProductNotFound):
            async with db.ledger_session():
                raise ProductNotFound("A")
