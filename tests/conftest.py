"""Pytest fixtures for the ordering service tests."""

import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ordering_service.alerts import AlertSweeper
from ordering_service.database import build_engine, build_session_factory, init_db
from ordering_service.errors import NotifierError, ServiceUnavailableError
from ordering_service.ledger import StockLedger
from ordering_service.models import (
    AlertSettings, CustomerInfo, NewOrderRequest, OrderItemRequest, Product, StockRecordCreate,
)
from ordering_service.workflow import OrderWorkflow

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeCatalog:
    """In-memory catalog; `get_active_products` hides inactive products like the real service."""

    def __init__(self, products=()):
        self.products = {p.id: p for p in products}
        self.unavailable = False
        self.calls = 0

    def add(self, product):
        self.products[product.id] = product

    def get_active_products(self, ids):
        self.calls += 1
        if self.unavailable:
            raise ServiceUnavailableError("Catalog service timed out")
        return {i: p for i, p in self.products.items() if i in set(ids) and p.is_active}


class RecordingNotifier:
    """Records notifications; products listed in `fail_for` make `notify` raise."""

    def __init__(self):
        self.sent = []
        self.fail_for = set()
        self.fail_all = False
        self._lock = threading.Lock()

    def notify(self, kind, payload):
        if self.fail_all or payload.get("productId") in self.fail_for:
            raise NotifierError(f"Could not publish {kind} notification")
        with self._lock:
            self.sent.append((kind, payload))
        return True

    def kinds(self):
        return [kind.value for kind, _ in self.sent]


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'ordering.db'}"


@pytest.fixture
def engine(database_url):
    engine = build_engine(database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def ledger(session_factory):
    return StockLedger(session_factory)


@pytest.fixture
def product():
    return Product(id="P", name="Classic Mojito", price=Decimal("2500"), available_regions={"Lagos"})


@pytest.fixture
def catalog(product):
    return FakeCatalog([product])


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def workflow(session_factory, catalog, ledger, notifier):
    return OrderWorkflow(session_factory, catalog, ledger, notifier, base_url="http://shop.test")


@pytest.fixture
def clock():
    current = {"now": NOW}

    def now():
        return current["now"]

    now.set = lambda value: current.update(now=value)
    return now


@pytest.fixture
def sweeper(ledger, notifier, clock):
    return AlertSweeper(ledger, notifier, clock=clock)


@pytest.fixture
def stock_record(ledger, product):
    """Stock record for the default product: 10 in stock, minimum 5, alert threshold 2."""
    return ledger.create_record(StockRecordCreate(
        product_id=product.id,
        current_stock=10,
        minimum_stock=5,
        maximum_stock=100,
        alert_settings=AlertSettings(alert_threshold=2),
    ))


def make_record(ledger, product_id, current_stock, minimum_stock=5, alert_threshold=2, **alert):
    return ledger.create_record(StockRecordCreate(
        product_id=product_id,
        current_stock=current_stock,
        minimum_stock=minimum_stock,
        maximum_stock=100,
        alert_settings=AlertSettings(alert_threshold=alert_threshold, **alert),
    ))


def make_order(key="k1", region="Lagos", items=(("P", 3),), phone="08031234567"):
    return NewOrderRequest(
        idempotency_key=key,
        customer=CustomerInfo(name="Ada Obi", phone=phone, address="12 Awolowo Road, Ikoyi", region=region),
        items=[OrderItemRequest(product_id=pid, quantity=qty) for pid, qty in items],
    )
