"""Integration tests for API routes."""
import logging

from fastapi import status

from catalog.core import tokens
from catalog.domain.models import Product


class TestServiceRoutes:
    def test_root(self, test_client):
        response = test_client.get("/")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "running"

    def test_health(self, test_client):
        assert test_client.get("/health").json()["status"] == "healthy"

    def test_ready_without_redis(self, test_client):
        data = test_client.get("/ready").json()

        assert data["status"] == "ready"
        assert data["checks"] == {"database": "ok", "redis": "fallback_memory"}

    def test_request_id_header(self, test_client):
        response = test_client.get("/health", headers={"X-Request-ID": "abc-123"})

        assert response.headers["X-Request-ID"] == "abc-123"
        assert "X-Process-Time" in response.headers

    def test_cors_preflight(self, test_client):
        response = test_client.options(
            "/api/products/",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
            },
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


class TestAuthenticationRoutes:
    """Test token endpoints."""

    def test_obtain_pair(self, test_client, user):
        response = test_client.post("/api/token/", json={"username": "alice", "password": "correct-horse"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert set(data) == {"access", "refresh"}
        assert tokens.decode(data["access"])["user_id"] == user.id

    def test_obtain_pair_wrong_password(self, test_client, user):
        response = test_client.post("/api/token/", json={"username": "alice", "password": "nope"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["detail"] == "No active account found with the given credentials"

    def test_wrong_password_is_not_logged_as_error(self, test_client, user, caplog):
        with caplog.at_level(logging.INFO, logger="catalog.api.auth"):
            test_client.post("/api/token/", json={"username": "alice", "password": "nope"})

        auth_records = [r for r in caplog.records if r.name == "catalog.api.auth"]
        assert [r.getMessage() for r in auth_records] == ["Token obtain rejected"]
        assert all(r.levelno < logging.ERROR for r in auth_records)

    def test_obtain_pair_missing_field(self, test_client):
        response = test_client.post("/api/token/", json={"username": "alice"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "password" in response.json()["errors"]

    def test_refresh_rotates(self, test_client, user):
        pair = test_client.post("/api/token/", json={"username": "alice", "password": "correct-horse"}).json()

        response = test_client.post("/api/token/refresh/", json={"refresh": pair["refresh"]})
        assert response.status_code == status.HTTP_200_OK
        assert "refresh" in response.json()

        reused = test_client.post("/api/token/refresh/", json={"refresh": pair["refresh"]})
        assert reused.status_code == status.HTTP_401_UNAUTHORIZED
        assert reused.json()["code"] == "token_not_valid"

    def test_verify(self, test_client, user, auth_headers):
        access = auth_headers["Authorization"].split()[1]

        assert test_client.post("/api/token/verify/", json={"token": access}).json() == {}
        bad = test_client.post("/api/token/verify/", json={"token": access + "x"})
        assert bad.status_code == status.HTTP_401_UNAUTHORIZED

    def test_blacklist_then_verify_and_refresh_fail(self, test_client, user):
        pair = test_client.post("/api/token/", json={"username": "alice", "password": "correct-horse"}).json()

        assert test_client.post("/api/token/blacklist/", json={"refresh": pair["refresh"]}).status_code == 200

        assert test_client.post("/api/token/verify/", json={"token": pair["refresh"]}).status_code == 401
        assert test_client.post("/api/token/refresh/", json={"refresh": pair["refresh"]}).status_code == 401

    def test_register_and_me(self, test_client):
        response = test_client.post("/api/register/", json={
            "username": "bob",
            "email": "bob@example.com",
            "password": "long-enough-pw",
        })
        assert response.status_code == status.HTTP_201_CREATED
        assert "password" not in response.json()
        assert "password_hash" not in response.json()

        pair = test_client.post("/api/token/", json={"username": "bob", "password": "long-enough-pw"}).json()
        me = test_client.get("/api/me/", headers={"Authorization": f"Bearer {pair['access']}"})

        assert me.status_code == status.HTTP_200_OK
        assert me.json()["username"] == "bob"

    def test_register_duplicate_username(self, test_client, user):
        response = test_client.post("/api/register/", json={
            "username": "alice", "email": "a2@example.com", "password": "long-enough-pw",
        })

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["errors"]["username"] == ["A user with that username already exists."]

    def test_register_short_password(self, test_client):
        response = test_client.post("/api/register/", json={
            "username": "bob", "email": "bob@example.com", "password": "short",
        })

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_me_requires_authentication(self, test_client):
        response = test_client.get("/api/me/")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["code"] == "not_authenticated"

    def test_refresh_token_is_not_an_access_token(self, test_client, session, user):
        refresh = tokens.create_refresh_token(session, user)
        session.commit()

        response = test_client.get("/api/me/", headers={"Authorization": f"Bearer {refresh}"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED


class TestProductRoutes:
    """Test the product resource."""

    def test_list_is_public_and_paginated(self, test_client, products):
        response = test_client.get("/api/products/")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["count"] == 3
        assert data["next"] is None
        assert [p["name"] for p in data["results"]] == ["Laptop", "Mechanical Keyboard", "USB-C Hub"]

    def test_filter_search_and_ordering(self, test_client, products):
        response = test_client.get("/api/products/", params={"price__lt": "100", "ordering": "-price"})
        assert [p["name"] for p in response.json()["results"]] == ["Mechanical Keyboard", "USB-C Hub"]

        response = test_client.get("/api/products/", params={"search": "hub"})
        assert response.json()["count"] == 1

    def test_unknown_filter_rejected(self, test_client, products):
        response = test_client.get("/api/products/", params={"colour": "red"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_page_size(self, test_client, products):
        data = test_client.get("/api/products/", params={"page_size": 2}).json()

        assert len(data["results"]) == 2
        assert data["next"].endswith("page=2")

    def test_invalid_page(self, test_client, products):
        response = test_client.get("/api/products/", params={"page": 9})

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["detail"] == "Invalid page."

    def test_create_requires_authentication(self, test_client):
        response = test_client.post("/api/products/", json={"name": "Desk", "price": "120.00"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_create(self, test_client, auth_headers):
        response = test_client.post(
            "/api/products/", json={"name": "Desk", "price": "120.00", "stock": 2}, headers=auth_headers,
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["name"] == "Desk"
        assert data["id"] > 0

    def test_create_validation(self, test_client, auth_headers):
        response = test_client.post(
            "/api/products/", json={"name": "Desk", "price": "-1"}, headers=auth_headers,
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["errors"]["price"] == ["Price must be greater than zero."]

    def test_retrieve_and_404(self, test_client, products):
        assert test_client.get(f"/api/products/{products[0].id}/").json()["name"] == "Laptop"

        missing = test_client.get("/api/products/999/")
        assert missing.status_code == status.HTTP_404_NOT_FOUND
        assert missing.json()["detail"] == "No Product matches the given query."

    def test_partial_update(self, test_client, products, auth_headers, session):
        response = test_client.patch(
            f"/api/products/{products[0].id}/", json={"stock": 7}, headers=auth_headers,
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["stock"] == 7
        assert response.json()["name"] == "Laptop"

    def test_full_update_requires_all_fields(self, test_client, products, auth_headers):
        response = test_client.put(
            f"/api/products/{products[0].id}/", json={"stock": 7}, headers=auth_headers,
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_delete_requires_staff(self, test_client, products, auth_headers, staff_headers, session):
        pk = products[0].id

        forbidden = test_client.delete(f"/api/products/{pk}/", headers=auth_headers)
        assert forbidden.status_code == status.HTTP_403_FORBIDDEN

        deleted = test_client.delete(f"/api/products/{pk}/", headers=staff_headers)
        assert deleted.status_code == status.HTTP_204_NO_CONTENT
        session.expire_all()
        assert session.get(Product, pk) is None

    def test_stats(self, test_client, products):
        data = test_client.get("/api/products/stats/").json()

        assert data["count"] == 2
        assert data["total_stock"] == 30
        assert float(data["max_price"]) == 999.99
        assert float(data["min_price"]) == 89.5

    def test_expired_token_rejected(self, test_client, user):
        from datetime import timedelta

        token = tokens.create_access_token(user, lifetime=timedelta(seconds=-5))
        response = test_client.get("/api/products/", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED


class TestCustomerRoutes:
    def test_duplicate_email(self, test_client, customers, auth_headers):
        response = test_client.post("/api/customers/", json={
            "first_name": "Ada", "last_name": "L", "email": "ada@example.com",
        }, headers=auth_headers)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["errors"]["email"] == ["Customer with this Email already exists."]

    def test_filter_by_city(self, test_client, customers):
        data = test_client.get("/api/customers/", params={"city__iexact": "london"}).json()

        assert [c["email"] for c in data["results"]] == ["ada@example.com"]


class TestLibraryRoutes:
    def test_books_embed_author(self, test_client, library):
        data = test_client.get("/api/books/", params={"author__name__icontains": "butler"}).json()

        assert data["count"] == 1
        assert data["results"][0]["author"]["name"] == "Octavia E. Butler"

    def test_author_books(self, test_client, library):
        pk = library["le_guin"].id
        data = test_client.get(f"/api/authors/{pk}/books/").json()

        assert [b["title"] for b in data["results"]] == ["The Dispossessed", "The Left Hand of Darkness"]

    def test_create_book_with_missing_author(self, test_client, library, auth_headers):
        response = test_client.post("/api/books/", json={
            "title": "Ghost", "isbn": "978-0-00-000000-2", "author_id": 999,
        }, headers=auth_headers)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["errors"]["author_id"] == ['Invalid pk "999" - object does not exist.']

    def test_isbn_is_normalized(self, test_client, library, auth_headers):
        response = test_client.post("/api/books/", json={
            "title": "Parable of the Sower", "isbn": "978-0-446-67550-5",
            "author_id": library["butler"].id,
        }, headers=auth_headers)

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["isbn"] == "9780446675505"

    def test_authors_filter_by_books(self, test_client, library):
        data = test_client.get("/api/authors/", params={"books__title__icontains": "the"}).json()

        assert [a["name"] for a in data["results"]] == ["Ursula K. Le Guin"]


class TestFormRoutes:
    """Form endpoints accept HTML forms or JSON with a CSRF token."""

    def _token(self, client):
        return client.get("/csrf/").json()["csrfToken"]

    def test_contact_validation_errors(self, test_client):
        token = self._token(test_client)

        response = test_client.post(
            "/contact/",
            json={"name": "Ann", "email": "bad", "subject": "Hi", "message": "short"},
            headers={"X-CSRFToken": token},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert set(response.json()["errors"]) == {"email", "message"}

    def test_customer_signup(self, test_client, session):
        token = self._token(test_client)

        response = test_client.post(
            "/customers/signup/",
            data={
                "first_name": "Ada", "last_name": "Lovelace", "email": "ADA@example.com",
                "csrfmiddlewaretoken": token,
            },
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["email"] == "ada@example.com"

    def test_customer_signup_duplicate(self, test_client, customers):
        token = self._token(test_client)

        response = test_client.post(
            "/customers/signup/",
            data={"first_name": "Ada", "last_name": "L", "email": "ada@example.com"},
            headers={"X-CSRFToken": token},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "email" in response.json()["errors"]
