from conftest import auth_header, register


class TestRegister:
    def test_register_returns_token_and_profile(self, client, database):
        response = client.post(
            "/api/auth/register",
            json={"name": "Sara", "email": "Sara@Example.com ", "password": "secret123"},
        )

        assert response.status_code == 201
        data = response.get_json()
        assert data["token"]
        assert data["user"]["email"] == "sara@example.com"
        assert data["user"]["role"] == "customer"
        assert "password" not in data["user"]

        stored = database.users.find_one({"email": "sara@example.com"})
        assert stored["password"] != b"secret123"

    def test_duplicate_email_is_rejected(self, client):
        register(client, "dup@example.com")
        response = client.post(
            "/api/auth/register",
            json={"name": "Other", "email": "dup@example.com", "password": "secret123"},
        )
        assert response.status_code == 400

    def test_short_password_is_rejected(self, client):
        response = client.post(
            "/api/auth/register",
            json={"name": "Short", "email": "short@example.com", "password": "123"},
        )
        assert response.status_code == 400

    def test_invalid_email_is_rejected(self, client):
        response = client.post(
            "/api/auth/register",
            json={"name": "Bad", "email": "not-an-email", "password": "secret123"},
        )
        assert response.status_code == 400


class TestLogin:
    def test_login_with_valid_credentials(self, client):
        register(client, "login@example.com", password="secret123")

        response = client.post(
            "/api/auth/login", json={"email": "login@example.com", "password": "secret123"}
        )

        assert response.status_code == 200
        assert response.get_json()["user"]["email"] == "login@example.com"

    def test_login_with_wrong_password(self, client):
        register(client, "wrong@example.com", password="secret123")

        response = client.post(
            "/api/auth/login", json={"email": "wrong@example.com", "password": "nope-nope"}
        )

        assert response.status_code == 401
        assert response.get_json()["message"] == "Invalid credentials"

    def test_login_unknown_user(self, client):
        response = client.post(
            "/api/auth/login", json={"email": "ghost@example.com", "password": "secret123"}
        )
        assert response.status_code == 401


class TestProfile:
    def test_me_requires_token(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert "message" in response.get_json()

    def test_me_returns_current_user(self, client, customer_headers):
        response = client.get("/api/auth/me", headers=customer_headers)

        assert response.status_code == 200
        assert response.get_json()["user"]["email"] == "customer@example.com"

    def test_update_profile(self, client, customer_headers):
        response = client.put(
            "/api/auth/profile",
            headers=customer_headers,
            json={"name": "Renamed", "address": {"street": "1 Main St", "city": "Tabriz"}},
        )

        assert response.status_code == 200
        user = response.get_json()["user"]
        assert user["name"] == "Renamed"
        assert user["address"] == {"address": "1 Main St", "city": "Tabriz"}

    def test_password_change_requires_current_password(self, client):
        token = register(client, "change@example.com", password="secret123")

        rejected = client.put(
            "/api/auth/profile",
            headers=auth_header(token),
            json={"current_password": "wrong-one", "new_password": "newsecret"},
        )
        accepted = client.put(
            "/api/auth/profile",
            headers=auth_header(token),
            json={"current_password": "secret123", "new_password": "newsecret"},
        )
        login = client.post(
            "/api/auth/login", json={"email": "change@example.com", "password": "newsecret"}
        )

        assert rejected.status_code == 400
        assert accepted.status_code == 200
        assert login.status_code == 200
