"""Pytest fixtures for the bookstore tests."""

import hashlib
import hmac
import time
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import payments
from database import create_document, get_db
from errors import PaymentProviderError
from main import app, create_access_token, get_gateway
from payments import PaymentIntent
from schemas import Book, Profile

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway:
    """In-memory stand-in for StripeGateway."""

    def __init__(self):
        self.intents = {}
        self.created = []
        self.canceled = []
        self.error = None

    def create_payment_intent(self, amount, order_id, idempotency_key):
        if self.error is not None:
            raise self.error
        self.created.append((amount, order_id, idempotency_key))
        intent_id = f"pi_{len(self.created)}"
        intent = PaymentIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=amount,
            client_secret=f"{intent_id}_secret",
        )
        self.intents[intent_id] = intent
        return intent

    def retrieve_payment_intent(self, intent_id):
        if self.error is not None:
            raise self.error
        return self.intents[intent_id]

    def cancel_payment_intent(self, intent_id):
        # Stripe refuses to cancel an intent that is already final.
        status = self.intents[intent_id].status
        if status in ("canceled", "succeeded"):
            raise PaymentProviderError(f"This PaymentIntent's status is {status}")
        self.canceled.append(intent_id)
        self.intents[intent_id].status = "canceled"
        return self.intents[intent_id]

    def fail_with(self, message="Stripe is unavailable"):
        self.error = PaymentProviderError(message)


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient()["bookstore_test"]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(mongo_db, gateway):
    app.dependency_overrides[get_db] = lambda: mongo_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


@pytest.fixture
def make_user(mongo_db):
    """Insert a profile and return (user_id, auth headers)."""

    def _make(email="reader@example.com", is_admin=False):
        profile = Profile(email=email, password_hash="not-used", full_name="Reader", is_admin=is_admin)
        user_id = create_document(mongo_db, "profile", profile)
        token = create_access_token({"sub": user_id})
        return user_id, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def make_book(mongo_db):
    """Insert a book and return its id."""

    def _make(title="Book", price=1000, stock=10, created_at=None):
        book_id = create_document(mongo_db, "book", Book(title=title, price=price, year=1964, stock=stock))
        if created_at is not None:
            mongo_db["book"].update_one({"_id": ObjectId(book_id)}, {"$set": {"created_at": created_at}})
        return book_id

    return _make


def shipping():
    return {
        "shipping_address": "KN 3 Rd",
        "shipping_city": "Kigali",
        "shipping_country": "Rwanda",
        "shipping_postal_code": "00000",
    }


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header using the v1 HMAC-SHA256 scheme."""
    ts = int(timestamp if timestamp is not None else time.time())
    signature = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def days_ago(n: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=n)
