import threading
import time

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from auth import register_user
from database import now_utc
from errors import InvalidRequestError, PaymentGatewayError
from main import app
from payments import PaymentGateway, PaymentIntent, get_payment_gateway
from pricing import to_cents


class FakeGateway(PaymentGateway):
    """In-memory gateway. ``delay`` is how long the processor takes to answer;
    a call whose timeout is shorter gives up after the timeout, like a
    bounded HTTP client would."""

    def __init__(self):
        self.created = []
        self.cancelled = []
        self.timeouts = []
        self.intents = {}
        self.fail_create = False
        self.fail_cancel = False
        self.next_id = None
        self.delay = 0

    def _wait(self, timeout):
        self.timeouts.append(timeout)
        if not self.delay:
            return
        if timeout is not None and timeout < self.delay:
            time.sleep(max(timeout, 0) + 0.01)
            raise PaymentGatewayError()
        time.sleep(self.delay)

    def add_intent(self, intent_id, amount_cents, currency="usd", status="requires_payment_method"):
        self.intents[intent_id] = PaymentIntent(intent_id, f"{intent_id}_secret", amount_cents, currency, status)

    def create_intent(self, amount_cents, currency, metadata, timeout=None):
        self._wait(timeout)
        if self.fail_create:
            raise PaymentGatewayError()
        intent_id = self.next_id or f"pi_test_{len(self.created) + 1}"
        self.created.append({"id": intent_id, "amount_cents": amount_cents,
                             "currency": currency, "metadata": metadata})
        self.add_intent(intent_id, amount_cents, currency)
        return self.intents[intent_id]

    def retrieve_intent(self, intent_id, timeout=None):
        self._wait(timeout)
        if intent_id not in self.intents:
            raise InvalidRequestError("Unknown payment intent", payment_intent_id=intent_id)
        return self.intents[intent_id]

    def cancel_intent(self, intent_id, timeout=None):
        if self.fail_cancel:
            raise PaymentGatewayError()
        self.cancelled.append(intent_id)
        if intent_id in self.intents:
            self.intents[intent_id] = self.intents[intent_id]._replace(status="canceled")


@pytest.fixture
def db():
    mongo = mongomock.MongoClient()["storefront_test"]
    database.ensure_indexes(mongo)
    return mongo


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway):
    app.dependency_overrides[database.get_db] = lambda: db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    def _make(name="Silk Dress", price="25.00", stock=10, category="clothing"):
        doc = {
            "name": name,
            "price_cents": to_cents(price),
            "category": category,
            "stock_quantity": stock,
            "description": f"{name} description",
            "image_url": None,
            "created_at": now_utc(),
            "updated_at": now_utc(),
        }
        return str(db["product"].insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def make_user(db):
    counter = iter(range(1, 1000))

    def _make(is_admin=False):
        n = next(counter)
        return register_user(db, f"User {n}", f"user{n}@example.com", "secret123", is_admin=is_admin)
    return _make


@pytest.fixture
def headers():
    def _headers(user):
        return {"Authorization": f"Bearer {user['token']}"}
    return _headers


@pytest.fixture
def atomic_updates(monkeypatch):
    """Serialize writes the way mongod does for single-document updates.

    mongomock only guards its internal dicts, so a filter match and the update
    that follows it can interleave between threads.
    """
    lock = threading.RLock()
    for name in ("find_one_and_update", "update_one", "insert_one", "insert_many",
                 "delete_one", "delete_many"):
        original = getattr(mongomock.Collection, name)

        def locked(self, *args, _original=original, **kwargs):
            with lock:
                return _original(self, *args, **kwargs)
        monkeypatch.setattr(mongomock.Collection, name, locked)
