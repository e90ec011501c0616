"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
import copy
import uuid
from pathlib import Path
from datetime import datetime, timezone, timedelta

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from services.payment_gateway import BoldGateway, PaymentStatusResult
from models import PaymentProvider


# ============================================================================
# In-memory async collection double (Motor-shaped)
# ============================================================================

UNIQUE_KEYS = {
    "document_tokens": ("id", "token"),
    "payment_sessions": ("order_id",),
    "gateway_events": ("event_id",),
}


def _matches(doc, query):
    for key, cond in query.items():
        value = doc.get(key)
        if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
            for op, arg in cond.items():
                if op == "$in" and value not in arg:
                    return False
                if op == "$ne" and value == arg:
                    return False
                if op == "$exists" and (key in doc) != bool(arg):
                    return False
                if op == "$lt" and not (value is not None and value < arg):
                    return False
                if op == "$lte" and not (value is not None and value <= arg):
                    return False
                if op == "$gt" and not (value is not None and value > arg):
                    return False
                if op == "$gte" and not (value is not None and value >= arg):
                    return False
        elif value != cond:
            return False
    return True


def _project(doc, projection):
    out = copy.deepcopy(doc)
    if not projection:
        return out
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        out = {k: out[k] for k in included if k in out}
        if projection.get("_id", 1) and "_id" in doc:
            out["_id"] = doc["_id"]
        return out
    for key, flag in projection.items():
        if not flag:
            out.pop(key, None)
    return out


def _apply_update(doc, update):
    for key, value in (update.get("$set") or {}).items():
        doc[key] = copy.deepcopy(value)
    for key, value in (update.get("$inc") or {}).items():
        doc[key] = doc.get(key, 0) + value


class FakeUpdateResult:
    def __init__(self, matched, modified):
        self.matched_count = matched
        self.modified_count = modified


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: (d.get(key) is None, d.get(key)), reverse=direction == -1)
        return self

    def limit(self, n):
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return self._docs if length is None else self._docs[:length]


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []

    def _check_unique(self, doc, ignore=None):
        for key in UNIQUE_KEYS.get(self.name, ()):
            if key not in doc:
                continue
            for other in self.docs:
                if other is not ignore and other.get(key) == doc[key]:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {key}_1", 11000)

    async def create_index(self, *args, **kwargs):
        return None

    async def insert_one(self, doc):
        self._check_unique(doc)
        doc.setdefault("_id", uuid.uuid4().hex)
        self.docs.append(copy.deepcopy(doc))

    async def find_one(self, query, projection=None):
        for doc in self.docs:
            if _matches(doc, query):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self.docs if _matches(d, query or {})])

    async def find_one_and_update(self, query, update, projection=None, return_document=ReturnDocument.BEFORE):
        for doc in self.docs:
            if _matches(doc, query):
                before = _project(doc, projection)
                _apply_update(doc, update)
                return _project(doc, projection) if return_document == ReturnDocument.AFTER else before
        return None

    async def update_one(self, query, update):
        for doc in self.docs:
            if _matches(doc, query):
                _apply_update(doc, update)
                return FakeUpdateResult(1, 1)
        return FakeUpdateResult(0, 0)

    async def update_many(self, query, update):
        matched = [d for d in self.docs if _matches(d, query)]
        for doc in matched:
            _apply_update(doc, update)
        return FakeUpdateResult(len(matched), len(matched))


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getitem__(self, name):
        return getattr(self, name)


@pytest.fixture
def fake_db(monkeypatch):
    """Install an in-memory database into the shared `database` singleton."""
    db = FakeDatabase()
    monkeypatch.setattr(database, "db", db)
    return db


def seed_document(db, status="in_client_review", price=50000, **fields):
    """Insert a Document Record directly (bypassing the store) and return a copy."""
    now = datetime.now(timezone.utc) - timedelta(minutes=5)
    doc_id = uuid.uuid4().hex
    record = {
        "id": doc_id,
        "token": doc_id[:12].upper(),
        "document_type": "Contrato de Arrendamiento",
        "content": "<h2>Objeto</h2><p>El arrendador entrega el inmueble.</p>",
        "user_email": "cliente@example.com",
        "user_name": "Cliente Prueba",
        "price": price,
        "status": status,
        "sla_hours": 4,
        "sla_deadline": now + timedelta(hours=4),
        "user_observations": None,
        "user_observation_date": None,
        "created_at": now,
        "updated_at": now,
    }
    record.update(fields)
    db.document_tokens.docs.append(copy.deepcopy(record))
    return record


def seed_session(db, document, order_id, status="open", **fields):
    """Record a payment session for `order_id` as PaymentSessionService.open() would."""
    now = datetime.now(timezone.utc) - timedelta(minutes=1)
    session = {
        "order_id": order_id,
        "document_id": document["id"],
        "token": document["token"],
        "amount": document["price"],
        "currency": "COP",
        "provider": "bold",
        "provider_reference": None,
        "status": status,
        "created_at": now,
        "updated_at": now,
    }
    session.update(fields)
    db.payment_sessions.docs.append(copy.deepcopy(session))
    return session


def stored(db, document_id):
    """Current stored record, read synchronously."""
    for doc in db.document_tokens.docs:
        if doc["id"] == document_id:
            return doc
    return None


# ============================================================================
# Gateway double
# ============================================================================

class FakeGateway:
    """Scriptable gateway: lookups answer from `approvals` (last value repeats)."""

    provider = PaymentProvider.BOLD

    def __init__(self, approvals=None, lookup_delay=0.0, available=True, error=None):
        self.approvals = list(approvals or [False])
        self.lookup_delay = lookup_delay
        self.available = available
        self.error = error
        self.lookups = 0
        self.checkouts = 0
        self._redirect = BoldGateway()

    async def ensure_checkout_available(self):
        if not self.available:
            from services.payment_gateway import GatewayUnavailable
            raise GatewayUnavailable("checkout library unreachable")

    async def create_checkout(self, order_id, document, origin=None):
        self.checkouts += 1
        return {"orderId": order_id, "amount": str(document["price"]), "currency": "COP"}, None

    async def lookup_payment_status(self, order_id, provider_reference=None):
        import asyncio
        self.lookups += 1
        if self.lookup_delay:
            await asyncio.sleep(self.lookup_delay)
        if self.error:
            raise self.error
        index = min(self.lookups - 1, len(self.approvals) - 1)
        approved = self.approvals[index]
        return PaymentStatusResult(
            order_id=order_id, approved=approved, status="SALE_APPROVED" if approved else "PENDING",
        )

    def parse_redirect(self, params):
        return self._redirect.parse_redirect(params)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import create_app


@pytest.fixture
def app(fake_db, fake_gateway):
    """Fresh application wired to the in-memory database and the gateway double."""
    from services.payment_reconciler import PaymentReconciler, PollingPolicy
    from services.payment_session_service import PaymentSessionService
    from services.gateway_webhook_service import GatewayWebhookService

    application = create_app()
    reconciler = PaymentReconciler(
        gateway=fake_gateway,
        policy=PollingPolicy(interval_seconds=0.01, max_attempts=3, max_duration_seconds=1.0),
    )
    application.state.payment_gateway = fake_gateway
    application.state.payment_reconciler = reconciler
    application.state.payment_session_service = PaymentSessionService(gateway=fake_gateway)
    application.state.gateway_webhook_service = GatewayWebhookService(reconciler)
    return application


@pytest.fixture
def client(app):
    """Return a TestClient for a fresh FastAPI app. Use for unit-style API tests."""
    return TestClient(app)
