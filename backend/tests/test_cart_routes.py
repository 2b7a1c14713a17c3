from bson import ObjectId


def add_item(client, headers, product_id, quantity=1):
    return client.post(
        "/api/cart/items",
        headers=headers,
        json={"product_id": str(product_id), "quantity": quantity},
    )


def test_cart_requires_authentication(client):
    assert client.get("/api/cart").status_code == 401


def test_empty_cart(client, customer_headers):
    response = client.get("/api/cart", headers=customer_headers)

    assert response.status_code == 200
    assert response.get_json() == {"items": [], "summary": {"item_count": 0, "total_price": 0}}


def test_add_item_returns_formatted_cart(client, customer_headers, make_product):
    product = make_product(price=10.5, stockQuantity=4, description="Pocket computer")

    response = add_item(client, customer_headers, product["_id"], quantity=2)

    assert response.status_code == 200
    data = response.get_json()
    assert data["message"] == "Product added to cart."
    assert data["items"] == [
        {
            "product_id": str(product["_id"]),
            "name": "Smartphone",
            "price": 10.5,
            "image_url": "/uploads/smartphone.jpg",
            "stock_quantity": 4,
            "quantity": 2,
            "description": "Pocket computer",
        }
    ]
    assert data["summary"] == {"item_count": 2, "total_price": 21.0}


def test_adding_same_product_merges_lines(client, customer_headers, make_product):
    product = make_product(stockQuantity=10)

    add_item(client, customer_headers, product["_id"], quantity=1)
    response = add_item(client, customer_headers, product["_id"], quantity=2)

    items = response.get_json()["items"]
    assert len(items) == 1
    assert items[0]["quantity"] == 3


def test_adding_more_than_stock_is_rejected(client, customer_headers, make_product):
    product = make_product(stockQuantity=2)

    response = add_item(client, customer_headers, product["_id"], quantity=3)

    assert response.status_code == 400
    assert "2 left" in response.get_json()["message"]


def test_adding_unknown_product(client, customer_headers):
    response = add_item(client, customer_headers, ObjectId())
    assert response.status_code == 404


def test_update_quantity(client, customer_headers, make_product):
    product = make_product(stockQuantity=10)
    add_item(client, customer_headers, product["_id"])

    response = client.put(
        f"/api/cart/items/{product['_id']}", headers=customer_headers, json={"quantity": 5}
    )

    assert response.status_code == 200
    assert response.get_json()["summary"]["item_count"] == 5


def test_update_quantity_to_zero_removes_line(client, customer_headers, make_product):
    product = make_product()
    add_item(client, customer_headers, product["_id"])

    response = client.put(
        f"/api/cart/items/{product['_id']}", headers=customer_headers, json={"quantity": 0}
    )

    assert response.get_json()["items"] == []


def test_remove_item(client, customer_headers, make_product):
    first = make_product(name="First")
    second = make_product(name="Second")
    add_item(client, customer_headers, first["_id"])
    add_item(client, customer_headers, second["_id"])

    response = client.delete(f"/api/cart/items/{first['_id']}", headers=customer_headers)

    assert [item["name"] for item in response.get_json()["items"]] == ["Second"]


def test_remove_missing_item(client, customer_headers):
    response = client.delete(f"/api/cart/items/{ObjectId()}", headers=customer_headers)
    assert response.status_code == 404


def test_clear_cart(client, customer_headers, make_product):
    product = make_product()
    add_item(client, customer_headers, product["_id"])

    response = client.delete("/api/cart", headers=customer_headers)

    assert response.get_json()["summary"] == {"item_count": 0, "total_price": 0}


def test_deleted_product_shows_placeholder(client, customer_headers, make_product, database):
    product = make_product()
    add_item(client, customer_headers, product["_id"], quantity=2)
    database.products.delete_one({"_id": product["_id"]})

    response = client.get("/api/cart", headers=customer_headers)

    item = response.get_json()["items"][0]
    assert item["product_id"] == str(product["_id"])
    assert item["name"] == "Unknown"
    assert item["price"] == 0
    assert item["quantity"] == 2
