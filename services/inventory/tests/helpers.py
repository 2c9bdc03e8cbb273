"""Request helpers shared by the API tests."""


def add_product(client, headers, item_id="A", name="Apple", quantity=10, price=5.0) -> dict:
    response = client.post(
        "/api/products",
        json={
            "item_id": item_id,
            "item_name": name,
            "item_quantity": quantity,
            "item_price": price,
        },
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()


def find_product(client, headers, item_id) -> dict | None:
    products = client.get("/api/products", headers=headers).json()
    return next((p for p in products if p["item_id"] == item_id), None)
