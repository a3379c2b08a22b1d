"""Tests for the FastAPI API."""

import json

import pytest
from bson import ObjectId
from fastapi.concurrency import run_in_threadpool

import main
from conftest import days_ago, shipping, sign_payload


def checkout(client, headers, *lines):
    return client.post(
        "/api/checkout",
        json={"items": [{"book_id": b, "quantity": q} for b, q in lines], "shipping": shipping()},
        headers=headers,
    )


def webhook_body(event_type, order_id, event_id="evt_1", intent_id="pi_1"):
    return json.dumps(
        {
            "id": event_id,
            "type": event_type,
            "data": {"object": {"id": intent_id, "object": "payment_intent", "metadata": {"orderId": order_id}}},
        }
    ).encode()


def post_webhook(client, body, signature):
    return client.post(
        "/api/webhooks/stripe",
        content=body,
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


class TestHealth:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "running" in response.json()["message"]


class TestAuth:
    def test_register_login_me(self, client):
        response = client.post(
            "/api/register",
            json={"email": "Reader@Example.com", "password": "secret123", "full_name": "Reader"},
        )
        assert response.status_code == 201
        assert response.json()["email"] == "reader@example.com"
        assert response.json()["is_admin"] is False

        response = client.post("/api/login", data={"username": "reader@example.com", "password": "secret123"})
        assert response.status_code == 200
        token = response.json()["access_token"]

        response = client.get("/api/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json()["full_name"] == "Reader"

    def test_duplicate_email(self, client, make_user):
        make_user(email="reader@example.com")
        response = client.post("/api/register", json={"email": "reader@example.com", "password": "secret123"})
        assert response.status_code == 400

    def test_wrong_password(self, client):
        client.post("/api/register", json={"email": "reader@example.com", "password": "secret123"})
        response = client.post("/api/login", data={"username": "reader@example.com", "password": "nope"})
        assert response.status_code == 400

    def test_missing_token(self, client):
        assert client.get("/api/me").status_code == 401

    def test_garbage_token(self, client):
        response = client.get("/api/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_update_profile_shipping_defaults(self, client, make_user):
        _, headers = make_user()
        response = client.patch("/api/me", json={"shipping_city": "Huye", "phone": "+250"}, headers=headers)
        assert response.status_code == 200
        assert response.json()["shipping_city"] == "Huye"
        assert response.json()["full_name"] == "Reader"


class TestCatalog:
    def test_lists_in_stock_books_newest_first(self, client, make_book):
        make_book(title="Old", created_at=days_ago(3))
        make_book(title="New", created_at=days_ago(1))
        make_book(title="Sold out", stock=0, created_at=days_ago(0))

        response = client.get("/api/books")
        assert response.status_code == 200
        data = response.json()
        assert [b["title"] for b in data["items"]] == ["New", "Old"]
        assert data["total"] == 2

    def test_search(self, client, make_book):
        make_book(title="Indirimbo z'Ubuhamya")
        make_book(title="Amasomo")
        data = client.get("/api/books", params={"q": "indirimbo"}).json()
        assert [b["title"] for b in data["items"]] == ["Indirimbo z'Ubuhamya"]

    def test_get_book(self, client, make_book):
        book_id = make_book(title="Amasomo", price=1500)
        response = client.get(f"/api/books/{book_id}")
        assert response.status_code == 200
        assert response.json()["price"] == 1500

    def test_get_missing_book(self, client):
        response = client.get(f"/api/books/{ObjectId()}")
        assert response.status_code == 404
        assert response.json()["error_type"] == "BookNotFoundError"


class TestCheckout:
    def test_checkout_creates_order_and_intent(self, client, make_user, make_book, mongo_db):
        _, headers = make_user()
        b1 = make_book(price=1000)

        response = checkout(client, headers, (b1, 2))
        assert response.status_code == 201
        data = response.json()
        assert data["order"]["total_amount"] == 2000
        assert data["order"]["status"] == "pending"
        assert data["order"]["items"][0]["quantity"] == 2
        assert data["order"]["items"][0]["price"] == 1000
        assert data["client_secret"] == "pi_1_secret"
        assert data["payment_error"] is None

    def test_checkout_requires_login(self, client, make_book, mongo_db):
        response = checkout(client, {}, (make_book(), 1))
        assert response.status_code == 401
        assert mongo_db["order"].count_documents({}) == 0

    def test_empty_cart(self, client, make_user):
        _, headers = make_user()
        response = checkout(client, headers)
        assert response.status_code == 400

    def test_out_of_stock(self, client, make_user, make_book):
        _, headers = make_user()
        response = checkout(client, headers, (make_book(stock=1), 2))
        assert response.status_code == 409

    def test_provider_down_keeps_order(self, client, gateway, make_user, make_book, mongo_db):
        _, headers = make_user()
        gateway.fail_with()
        response = checkout(client, headers, (make_book(), 1))
        assert response.status_code == 201
        assert response.json()["client_secret"] is None
        assert response.json()["payment_error"] == "Stripe is unavailable"
        assert mongo_db["order"].count_documents({}) == 1


class TestCreatePaymentIntent:
    @pytest.fixture
    def placed(self, client, make_user, make_book, gateway):
        _, headers = make_user()
        gateway.fail_with()
        order = checkout(client, headers, (make_book(price=1000), 1)).json()["order"]
        gateway.error = None
        return order, headers

    def test_returns_client_secret(self, client, placed):
        order, headers = placed
        response = client.post(
            "/api/create-payment-intent", json={"amount": 1000, "orderId": order["id"]}, headers=headers
        )
        assert response.status_code == 200
        assert response.json() == {"clientSecret": "pi_1_secret"}

    @pytest.mark.parametrize("amount", [0, -1])
    def test_rejects_non_positive_amount(self, client, gateway, placed, amount):
        order, headers = placed
        response = client.post(
            "/api/create-payment-intent", json={"amount": amount, "orderId": order["id"]}, headers=headers
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid amount"}
        assert gateway.created == []

    def test_missing_amount(self, client, gateway, placed):
        order, headers = placed
        response = client.post("/api/create-payment-intent", json={"orderId": order["id"]}, headers=headers)
        assert response.status_code == 400
        assert "error" in response.json()

    def test_provider_error(self, client, gateway, placed):
        order, headers = placed
        gateway.fail_with("rate limited")
        response = client.post(
            "/api/create-payment-intent", json={"amount": 1000, "orderId": order["id"]}, headers=headers
        )
        assert response.status_code == 502
        assert response.json() == {"error": "rate limited"}

    def test_requires_login(self, client, placed):
        order, _ = placed
        response = client.post("/api/create-payment-intent", json={"amount": 1000, "orderId": order["id"]})
        assert response.status_code == 401


class TestWebhook:
    @pytest.fixture
    def order_id(self, client, make_user, make_book):
        _, headers = make_user()
        return checkout(client, headers, (make_book(), 1)).json()["order"]["id"]

    def test_invalid_signature_mutates_nothing(self, client, webhook_secret, mongo_db, order_id):
        before = mongo_db["order"].find_one({"_id": ObjectId(order_id)})
        body = webhook_body("payment_intent.succeeded", order_id)

        response = post_webhook(client, body, sign_payload(body, secret="whsec_wrong"))
        assert response.status_code == 400
        assert mongo_db["order"].find_one({"_id": ObjectId(order_id)}) == before

    def test_missing_signature(self, client, webhook_secret, order_id):
        body = webhook_body("payment_intent.succeeded", order_id)
        response = client.post("/api/webhooks/stripe", content=body)
        assert response.status_code == 400

    def test_succeeded_marks_order_paid(self, client, webhook_secret, mongo_db, order_id):
        body = webhook_body("payment_intent.succeeded", order_id)
        response = post_webhook(client, body, sign_payload(body))
        assert response.status_code == 200
        assert response.json() == {"received": True}

        doc = mongo_db["order"].find_one({"_id": ObjectId(order_id)})
        assert (doc["status"], doc["payment_status"]) == ("processing", "succeeded")

    def test_duplicate_delivery(self, client, webhook_secret, mongo_db, order_id):
        body = webhook_body("payment_intent.succeeded", order_id)
        for _ in range(2):
            assert post_webhook(client, body, sign_payload(body)).status_code == 200
        doc = mongo_db["order"].find_one({"_id": ObjectId(order_id)})
        assert (doc["status"], doc["payment_status"]) == ("processing", "succeeded")

    def test_failed_after_succeeded(self, client, webhook_secret, mongo_db, order_id):
        ok = webhook_body("payment_intent.succeeded", order_id, event_id="evt_1")
        failed = webhook_body("payment_intent.payment_failed", order_id, event_id="evt_2")
        post_webhook(client, ok, sign_payload(ok))
        post_webhook(client, failed, sign_payload(failed))
        doc = mongo_db["order"].find_one({"_id": ObjectId(order_id)})
        assert doc["payment_status"] == "succeeded"

    def test_canceled(self, client, webhook_secret, mongo_db, order_id):
        body = webhook_body("payment_intent.canceled", order_id)
        assert post_webhook(client, body, sign_payload(body)).status_code == 200
        doc = mongo_db["order"].find_one({"_id": ObjectId(order_id)})
        assert (doc["status"], doc["payment_status"]) == ("cancelled", "canceled")

    def test_unhandled_event_acknowledged(self, client, webhook_secret, order_id):
        body = webhook_body("customer.created", order_id)
        response = post_webhook(client, body, sign_payload(body))
        assert response.status_code == 200

    def test_event_handled_off_the_event_loop(self, client, webhook_secret, order_id, monkeypatch):
        dispatched = []

        async def recording_run_in_threadpool(func, *args, **kwargs):
            dispatched.append(func.__name__)
            return await run_in_threadpool(func, *args, **kwargs)

        monkeypatch.setattr(main, "run_in_threadpool", recording_run_in_threadpool)
        body = webhook_body("payment_intent.succeeded", order_id)
        assert post_webhook(client, body, sign_payload(body)).status_code == 200
        assert dispatched == ["handle_event"]

    def test_stale_intent_event_ignored(self, client, gateway, webhook_secret, mongo_db, order_id):
        gateway.intents["pi_1"].status = "canceled"
        mongo_db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"payment_intent_id": "pi_2"}})

        body = webhook_body("payment_intent.canceled", order_id, intent_id="pi_1")
        assert post_webhook(client, body, sign_payload(body)).status_code == 200
        doc = mongo_db["order"].find_one({"_id": ObjectId(order_id)})
        assert (doc["status"], doc["payment_status"], doc["payment_intent_id"]) == ("pending", "pending", "pi_2")


class TestOrders:
    def test_list_and_get_own_orders(self, client, make_user, make_book):
        _, headers = make_user()
        _, other_headers = make_user(email="other@example.com")
        order_id = checkout(client, headers, (make_book(), 1)).json()["order"]["id"]

        assert [o["id"] for o in client.get("/api/orders", headers=headers).json()] == [order_id]
        assert client.get("/api/orders", headers=other_headers).json() == []
        assert client.get(f"/api/orders/{order_id}", headers=headers).status_code == 200
        assert client.get(f"/api/orders/{order_id}", headers=other_headers).status_code == 404

    def test_cancel_processing_then_cancel_again(self, client, gateway, make_user, make_book):
        _, headers = make_user()
        order_id = checkout(client, headers, (make_book(), 1)).json()["order"]["id"]
        gateway.intents["pi_1"].status = "succeeded"
        confirmed = client.post(f"/api/orders/{order_id}/confirm-payment", headers=headers).json()
        assert confirmed["status"] == "processing"

        response = client.post(f"/api/orders/{order_id}/cancel", headers=headers)
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        response = client.post(f"/api/orders/{order_id}/cancel", headers=headers)
        assert response.status_code == 409
        assert response.json()["error_type"] == "OrderStateError"


class TestAdmin:
    def test_requires_admin(self, client, make_user):
        _, headers = make_user()
        for path in ("/api/admin/books", "/api/admin/users", "/api/admin/orders", "/api/admin/stats"):
            assert client.get(path, headers=headers).status_code == 403

    def test_book_crud(self, client, make_user):
        _, headers = make_user(is_admin=True)
        created = client.post(
            "/api/admin/books",
            json={"title": "Amasomo yo mu Bwiru", "price": 3000, "year": 1969, "stock": 4},
            headers=headers,
        )
        assert created.status_code == 201
        book_id = created.json()["id"]

        updated = client.put(f"/api/admin/books/{book_id}", json={"stock": 0}, headers=headers)
        assert updated.json()["stock"] == 0
        assert updated.json()["title"] == "Amasomo yo mu Bwiru"

        assert client.get("/api/books").json()["total"] == 0
        assert len(client.get("/api/admin/books", headers=headers).json()) == 1

        assert client.delete(f"/api/admin/books/{book_id}", headers=headers).status_code == 200
        assert client.delete(f"/api/admin/books/{book_id}", headers=headers).status_code == 404

    def test_rejects_negative_stock(self, client, make_user):
        _, headers = make_user(is_admin=True)
        response = client.post(
            "/api/admin/books", json={"title": "X", "price": 10, "year": 2000, "stock": -1}, headers=headers
        )
        assert response.status_code == 422

    def test_toggle_admin(self, client, make_user):
        _, headers = make_user(is_admin=True)
        user_id, _ = make_user(email="other@example.com")
        response = client.patch(f"/api/admin/users/{user_id}/admin", headers=headers)
        assert response.json()["is_admin"] is True
        response = client.patch(f"/api/admin/users/{user_id}/admin", headers=headers)
        assert response.json()["is_admin"] is False

    def test_order_status_and_stats(self, client, make_user, make_book):
        _, customer = make_user()
        _, admin = make_user(email="admin@example.com", is_admin=True)
        order_id = checkout(client, customer, (make_book(price=1500), 2)).json()["order"]["id"]

        response = client.patch(
            f"/api/admin/orders/{order_id}/status", json={"status": "completed"}, headers=admin
        )
        assert response.status_code == 200
        assert response.json()["status"] == "completed"

        response = client.patch(
            f"/api/admin/orders/{order_id}/status", json={"status": "shipped"}, headers=admin
        )
        assert response.status_code == 422

        assert len(client.get("/api/admin/orders", headers=admin).json()) == 1
        stats = client.get("/api/admin/stats", headers=admin).json()
        assert stats == {"total_users": 2, "total_orders": 1, "total_books": 1, "total_revenue": 3000}


class TestSeed:
    def test_seed_is_idempotent(self, client, mongo_db):
        client.post("/api/seed")
        client.post("/api/seed")
        assert mongo_db["book"].count_documents({}) == 3
