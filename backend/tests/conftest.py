from datetime import datetime

import mongomock
import pytest

from app import create_app

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"


@pytest.fixture
def database():
    return mongomock.MongoClient()["ecommerce_test"]


@pytest.fixture
def app(database, tmp_path):
    return create_app(
        {
            "TESTING": True,
            "ENVIRONMENT": "test",
            "JWT_SECRET_KEY": TEST_SECRET,
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "ADMIN_EMAIL": "",
            "CART_LOCALE": "en",
        },
        database=database,
    )


@pytest.fixture
def client(app):
    return app.test_client()


def register(client, email, name="Test User", password="secret123"):
    response = client.post(
        "/api/auth/register",
        json={"name": name, "email": email, "password": password},
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["token"]


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer_headers(client):
    return auth_header(register(client, "customer@example.com", name="Customer"))


@pytest.fixture
def admin_headers(client, database):
    token = register(client, "admin@example.com", name="Admin")
    database.users.update_one({"email": "admin@example.com"}, {"$set": {"role": "admin"}})
    return auth_header(token)


@pytest.fixture
def category(database):
    document = {
        "name": "Electronics",
        "description": "Electronic devices and gadgets",
        "created_at": datetime.utcnow(),
    }
    document["_id"] = database.categories.insert_one(dict(document)).inserted_id
    return document


@pytest.fixture
def make_product(database, category):
    def _make_product(**overrides):
        document = {
            "name": "Smartphone",
            "description": "Latest model smartphone",
            "price": 699.99,
            "images": ["/uploads/smartphone.jpg"],
            "stockQuantity": 10,
            "isAmazingOffer": False,
            "salesCount": 0,
            "category": category["_id"],
            "created_at": datetime.utcnow(),
        }
        document.update(overrides)
        document["_id"] = database.products.insert_one(dict(document)).inserted_id
        return document

    return _make_product
