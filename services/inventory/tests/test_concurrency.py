"""Concurrent purchases against the same ledger rows."""

import asyncio

from app.auth import CUSTOMER, SELLER, issue_token

SELLER_HEADERS = {"Authorization": issue_token(1, SELLER)}


def _customer(n: int) -> dict:
    return {"Authorization": issue_token(100 + n, CUSTOMER)}


async def _add(client, item_id: str, quantity: int, price: float) -> None:
    response = await client.post(
        "/api/products",
        json={"item_id": item_id, "item_name": item_id, "item_quantity": quantity, "item_price": price},
        headers=SELLER_HEADERS,
    )
    assert response.status_code == 200, response.text


async def _quantity(client, item_id: str) -> int | None:
    products = (await client.get("/api/products", headers=SELLER_HEADERS)).json()
    return next((p["item_quantity"] for p in products if p["item_id"] == item_id), None)


class TestConcurrentBuy:
    async def test_only_available_stock_is_sold(self, async_client):
        await _add(async_client, "A", quantity=10, price=5.0)

        responses = await asyncio.gather(
            *(
                async_client.post(
                    "/api/buy", json={"item_id": "A", "quantity": 3}, headers=_customer(n)
                )
                for n in range(6)
            )
        )

        statuses = sorted(r.status_code for r in responses)
        assert statuses == [200, 200, 200, 400, 400, 400]
        assert all(
            r.json()["kind"] == "InsufficientStock" for r in responses if r.status_code == 400
        )
        assert await _quantity(async_client, "A") == 1

    async def test_racing_for_last_units_depletes_once(self, async_client):
        await _add(async_client, "A", quantity=2, price=1.0)

        responses = await asyncio.gather(
            *(
                async_client.post(
                    "/api/buy", json={"item_id": "A", "quantity": 2}, headers=_customer(n)
                )
                for n in range(4)
            )
        )

        assert sum(r.status_code == 200 for r in responses) == 1
        assert await _quantity(async_client, "A") is None


class TestConcurrentBills:
    async def test_bills_never_oversell(self, async_client):
        await _add(async_client, "A", quantity=5, price=2.0)
        await _add(async_client, "B", quantity=5, price=1.0)

        body = {"selectedItems": [{"item_id": "B", "quantity": 2}, {"item_id": "A", "quantity": 2}]}
        responses = await asyncio.gather(
            *(async_client.post("/api/generate-bill", json=body, headers=_customer(n)) for n in range(4))
        )

        succeeded = [r for r in responses if r.status_code == 200]
        assert len(succeeded) == 2
        assert all(r.json() == {"totalAmount": 6.0} for r in succeeded)
        assert await _quantity(async_client, "A") == 1
        assert await _quantity(async_client, "B") == 1
