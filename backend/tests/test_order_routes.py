import mongomock.collection
import pytest
from pymongo.errors import PyMongoError

from conftest import auth_header, register

SHIPPING = {"full_name": "Customer", "address": "12 Market Street", "city": "Tabriz"}


@pytest.fixture
def filled_cart(client, customer_headers, make_product):
    phone = make_product(name="Phone", price=100, stockQuantity=5)
    case = make_product(name="Case", price=9.99, stockQuantity=10)
    for product, quantity in ((phone, 2), (case, 1)):
        client.post(
            "/api/cart/items",
            headers=customer_headers,
            json={"product_id": str(product["_id"]), "quantity": quantity},
        )
    return phone, case


def place_order(client, headers, **payload):
    body = {"shipping_address": SHIPPING, **payload}
    return client.post("/api/orders", headers=headers, json=body)


class TestCreateOrder:
    def test_order_uses_stored_prices_and_empties_cart(
        self, client, customer_headers, filled_cart, database
    ):
        phone, case = filled_cart

        response = place_order(client, customer_headers, notes="Ring the bell")

        assert response.status_code == 201
        order = response.get_json()["order"]
        assert order["status"] == "pending"
        assert order["total_price"] == 209.99
        assert order["item_count"] == 3
        assert order["notes"] == "Ring the bell"
        assert [item["name"] for item in order["items"]] == ["Phone", "Case"]

        assert database.products.find_one({"_id": phone["_id"]})["stockQuantity"] == 3
        assert database.products.find_one({"_id": phone["_id"]})["salesCount"] == 2

        cart = client.get("/api/cart", headers=customer_headers).get_json()
        assert cart["items"] == []

    def test_empty_cart_is_rejected(self, client, customer_headers):
        response = place_order(client, customer_headers)
        assert response.status_code == 400
        assert response.get_json()["message"] == "Your cart is empty."

    def test_shipping_address_is_required(self, client, customer_headers, filled_cart):
        response = client.post("/api/orders", headers=customer_headers, json={})
        assert response.status_code == 400

    def test_stock_shortage_is_rejected(self, client, customer_headers, filled_cart, database):
        phone, _ = filled_cart
        database.products.update_one({"_id": phone["_id"]}, {"$set": {"stockQuantity": 1}})

        response = place_order(client, customer_headers)

        assert response.status_code == 400
        assert database.orders.count_documents({}) == 0

    def test_deleted_product_is_rejected(self, client, customer_headers, filled_cart, database):
        _, case = filled_cart
        database.products.delete_one({"_id": case["_id"]})

        response = place_order(client, customer_headers)

        assert response.status_code == 400


class TestReadOrders:
    def test_list_my_orders(self, client, customer_headers, filled_cart):
        place_order(client, customer_headers)

        response = client.get("/api/orders/my", headers=customer_headers)

        assert len(response.get_json()["orders"]) == 1

    def test_admin_lists_all_orders_with_customer(
        self, client, customer_headers, admin_headers, filled_cart
    ):
        place_order(client, customer_headers)

        response = client.get("/api/orders?status=pending", headers=admin_headers)

        orders = response.get_json()["orders"]
        assert len(orders) == 1
        assert orders[0]["customer"]["email"] == "customer@example.com"

    def test_customer_cannot_list_all_orders(self, client, customer_headers):
        assert client.get("/api/orders", headers=customer_headers).status_code == 403

    def test_other_customer_cannot_view_order(self, client, customer_headers, filled_cart):
        order_id = place_order(client, customer_headers).get_json()["order"]["id"]
        stranger = auth_header(register(client, "stranger@example.com"))

        response = client.get(f"/api/orders/{order_id}", headers=stranger)

        assert response.status_code == 403

    def test_owner_views_order(self, client, customer_headers, filled_cart):
        order_id = place_order(client, customer_headers).get_json()["order"]["id"]

        response = client.get(f"/api/orders/{order_id}", headers=customer_headers)

        assert response.status_code == 200
        assert response.get_json()["order"]["id"] == order_id


class TestOrderStatus:
    def test_cancelling_restores_stock_once(
        self, client, customer_headers, admin_headers, filled_cart, database
    ):
        phone, _ = filled_cart
        order_id = place_order(client, customer_headers).get_json()["order"]["id"]

        first = client.put(
            f"/api/orders/{order_id}/status", headers=admin_headers, json={"status": "cancelled"}
        )
        second = client.put(
            f"/api/orders/{order_id}/status", headers=admin_headers, json={"status": "cancelled"}
        )

        assert first.status_code == 200
        assert second.status_code == 200
        stored = database.products.find_one({"_id": phone["_id"]})
        assert stored["stockQuantity"] == 5
        assert stored["salesCount"] == 0

    def test_cancelled_order_cannot_be_reopened(
        self, client, customer_headers, admin_headers, filled_cart
    ):
        order_id = place_order(client, customer_headers).get_json()["order"]["id"]
        client.put(f"/api/orders/{order_id}/cancel", headers=customer_headers)

        response = client.put(
            f"/api/orders/{order_id}/status", headers=admin_headers, json={"status": "shipped"}
        )

        assert response.status_code == 400

    def test_unknown_status_rejected(self, client, customer_headers, admin_headers, filled_cart):
        order_id = place_order(client, customer_headers).get_json()["order"]["id"]

        response = client.put(
            f"/api/orders/{order_id}/status", headers=admin_headers, json={"status": "lost"}
        )

        assert response.status_code == 400

    def test_customer_cannot_cancel_shipped_order(
        self, client, customer_headers, admin_headers, filled_cart
    ):
        order_id = place_order(client, customer_headers).get_json()["order"]["id"]
        client.put(
            f"/api/orders/{order_id}/status", headers=admin_headers, json={"status": "shipped"}
        )

        response = client.put(f"/api/orders/{order_id}/cancel", headers=customer_headers)

        assert response.status_code == 400

    def test_stale_order_snapshot_does_not_restore_stock_twice(
        self, client, customer_headers, admin_headers, filled_cart, database, monkeypatch
    ):
        phone, _ = filled_cart
        order_id = place_order(client, customer_headers).get_json()["order"]["id"]
        client.put(
            f"/api/orders/{order_id}/status", headers=admin_headers, json={"status": "cancelled"}
        )

        # Serve the order as it looked before the first cancellation.
        real_find_one = mongomock.collection.Collection.find_one

        def stale_find_one(collection, *args, **kwargs):
            document = real_find_one(collection, *args, **kwargs)
            if collection.name == "orders" and document:
                document = {**document, "status": "pending", "stock_restored": False}
            return document

        monkeypatch.setattr(mongomock.collection.Collection, "find_one", stale_find_one)
        response = client.put(f"/api/orders/{order_id}/cancel", headers=customer_headers)

        assert response.status_code == 200
        stored = database.products.find_one({"_id": phone["_id"]})
        assert stored["stockQuantity"] == 5
        assert stored["salesCount"] == 0


class TestOrderFailures:
    def test_failed_insert_releases_reserved_stock(
        self, client, customer_headers, filled_cart, database, monkeypatch
    ):
        phone, case = filled_cart
        real_insert_one = mongomock.collection.Collection.insert_one

        def failing_insert_one(collection, *args, **kwargs):
            if collection.name == "orders":
                raise PyMongoError("write failed")
            return real_insert_one(collection, *args, **kwargs)

        monkeypatch.setattr(mongomock.collection.Collection, "insert_one", failing_insert_one)
        response = place_order(client, customer_headers)

        assert response.status_code == 500
        assert response.get_json()["message"] == "Database connection error"
        assert database.products.find_one({"_id": phone["_id"]})["stockQuantity"] == 5
        assert database.products.find_one({"_id": phone["_id"]})["salesCount"] == 0
        assert database.products.find_one({"_id": case["_id"]})["stockQuantity"] == 10
        assert database.orders.count_documents({}) == 0
