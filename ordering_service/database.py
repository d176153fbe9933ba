"""
database.py — Persistence Layer for Orders and Stock Records

This module defines the SQLAlchemy schema and session handling used by the
stock ledger and the order workflow.

The correctness of the core rests on three storage-level guarantees:
    • `orders.idempotency_key` is UNIQUE (one order per key, even under races)
    • `stock_records.product_id` is UNIQUE (one stock record per product)
    • stock changes are single conditional UPDATE statements on the row

SQLite connections are switched to `BEGIN IMMEDIATE` transactions so that
concurrent writers queue on the database lock instead of failing with a
lock-upgrade deadlock.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String,
    Text, create_engine, event, update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker

from .config import DATABASE_URL
from .logging_config import get_logger

log = get_logger(__name__)

RESTOCK_HISTORY_LIMIT = 50
ORDER_NUMBER_COUNTER = "order_number"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; all stored timestamps are UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


# ============================================================================
# STOCK LEDGER
# ============================================================================

class StockRecord(TimestampMixin, Base):
    __tablename__ = "stock_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    current_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minimum_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    maximum_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    unit: Mapped[str] = mapped_column(String(20), nullable=False, default="servings")
    cost_per_unit: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    supplier: Mapped[Optional[dict]] = mapped_column(JSON)

    # Alert settings
    alert_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    alert_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    alert_frequency: Mapped[str] = mapped_column(String(20), nullable=False, default="daily")
    last_alert_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    last_restocked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    restock_history: Mapped[List["RestockEntry"]] = relationship(
        back_populates="record", order_by="RestockEntry.id", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="chk_stock_non_negative"),
        CheckConstraint("minimum_stock >= 0", name="chk_minimum_non_negative"),
        CheckConstraint("maximum_stock >= 1", name="chk_maximum_positive"),
        CheckConstraint("alert_threshold >= 0", name="chk_threshold_non_negative"),
    )

    def __repr__(self):
        return f"<StockRecord {self.id}: product {self.product_id} stock={self.current_stock}>"


class RestockEntry(Base):
    __tablename__ = "restock_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    record_id: Mapped[int] = mapped_column(ForeignKey("stock_records.id"), index=True, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    actor: Mapped[str] = mapped_column(String(200), nullable=False)
    restocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    note: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    record: Mapped[StockRecord] = relationship(back_populates="restock_history")


# ============================================================================
# ORDERS
# ============================================================================

class Counter(Base):
    """Named monotonic counters (currently only the order number sequence)."""
    __tablename__ = "counters"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Order(TimestampMixin, Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)

    customer_name: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(20), index=True, nullable=False)
    customer_address: Mapped[str] = mapped_column(String(500), nullable=False)
    customer_region: Mapped[str] = mapped_column(String(50), nullable=False)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    payment_reference: Mapped[Optional[str]] = mapped_column(String(200))
    fulfillment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="new")

    notes: Mapped[Optional[str]] = mapped_column(Text)
    admin_notes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    inventory_warnings: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    estimated_delivery_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    line_items: Mapped[List["OrderLine"]] = relationship(
        back_populates="order", order_by="OrderLine.id", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("subtotal >= 0", name="chk_subtotal_non_negative"),
        CheckConstraint("total_amount >= 0", name="chk_total_non_negative"),
    )

    def __repr__(self):
        return f"<Order {self.order_number}: {self.fulfillment_status}/{self.payment_status}>"


class OrderLine(Base):
    __tablename__ = "order_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    order: Mapped[Order] = relationship(back_populates="line_items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="chk_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="chk_unit_price_non_negative"),
    )


# ============================================================================
# ENGINE / SESSIONS
# ============================================================================

def _use_immediate_transactions(engine: Engine):
    """
    Makes every SQLite transaction take the write lock when it begins.

    pysqlite's default deferred transactions let two writers both hold a read
    lock and then fail to upgrade it; with BEGIN IMMEDIATE they wait on the
    busy timeout instead.
    """
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str = DATABASE_URL) -> Engine:
    """
    Creates the SQLAlchemy engine for the given database URL.

    Args:
        url (str): SQLAlchemy database URL. Defaults to `DATABASE_URL`.

    Returns:
        Engine: Engine configured for concurrent request handling.
    """
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
        _use_immediate_transactions(engine)
    else:
        engine = create_engine(url, pool_pre_ping=True)
    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine):
    """Creates all tables if they do not exist yet and seeds the order number counter."""
    Base.metadata.create_all(engine)
    with build_session_factory(engine).begin() as session:
        if session.get(Counter, ORDER_NUMBER_COUNTER) is None:
            session.add(Counter(name=ORDER_NUMBER_COUNTER, value=0))
    log.info(f"Datenbankschema initialisiert ({engine.url.render_as_string(hide_password=True)}).")


def next_counter_value(session, name: str) -> int:
    """
    Atomically increments and returns the named counter inside `session`'s transaction.

    The UPDATE takes the row lock, so concurrent callers each get a distinct
    value; the counter row is created on first use.
    """
    result = session.execute(
        update(Counter).where(Counter.name == name).values(value=Counter.value + 1)
    )
    if result.rowcount == 0:
        session.add(Counter(name=name, value=1))
        session.flush()
        return 1
    return session.get(Counter, name, populate_existing=True).value
