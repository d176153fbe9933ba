"""
ledger.py — Stock Ledger

Owns the per-product stock records: creation, restocking, order decrements,
classification and status listing.

Every change to `current_stock` is one conditional UPDATE statement:
    • restock:   SET current_stock = current_stock + :q
    • decrement: SET current_stock = current_stock - :q WHERE current_stock >= :q
so concurrent restocks and orders on the same record can neither lose an
update nor drive the stock below zero.
"""

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .database import RESTOCK_HISTORY_LIMIT, RestockEntry, StockRecord, as_utc, utcnow
from .errors import AlreadyExistsError, InsufficientStockError, NotFoundError, ValidationError
from .logging_config import get_logger
from .models import (
    RestockEntryView, RestockResult, StockRecordCreate, StockRecordUpdate, StockRecordView, StockStatus,
    SupplierInfo,
)

log = get_logger(__name__)


def classify(record) -> StockStatus:
    """
    Classifies a stock record. Precedence is fixed: out of stock, critical, low, sufficient.

    Args:
        record: Any object with `current_stock`, `alert_threshold` and `minimum_stock`.
    Returns:
        StockStatus: The record's stock status.
    """
    if record.current_stock == 0:
        return StockStatus.OUT_OF_STOCK
    if record.current_stock <= record.alert_threshold:
        return StockStatus.CRITICAL
    if record.current_stock <= record.minimum_stock:
        return StockStatus.LOW
    return StockStatus.SUFFICIENT


def _status_filter(status: StockStatus):
    """SQL equivalent of `classify` for one status."""
    stock = StockRecord.current_stock
    if status == StockStatus.OUT_OF_STOCK:
        return stock == 0
    if status == StockStatus.CRITICAL:
        return and_(stock > 0, stock <= StockRecord.alert_threshold)
    if status == StockStatus.LOW:
        return and_(stock > 0, stock > StockRecord.alert_threshold, stock <= StockRecord.minimum_stock)
    return and_(stock > 0, stock > StockRecord.alert_threshold, stock > StockRecord.minimum_stock)


def to_view(record: StockRecord) -> StockRecordView:
    """Converts a loaded stock record (inside its session) to its public view."""
    return StockRecordView(
        id=record.id,
        product_id=record.product_id,
        current_stock=record.current_stock,
        minimum_stock=record.minimum_stock,
        maximum_stock=record.maximum_stock,
        unit=record.unit,
        cost_per_unit=record.cost_per_unit,
        supplier=SupplierInfo(**record.supplier) if record.supplier else None,
        alert_enabled=record.alert_enabled,
        alert_threshold=record.alert_threshold,
        alert_frequency=record.alert_frequency,
        last_alert_sent_at=as_utc(record.last_alert_sent_at),
        last_restocked_at=as_utc(record.last_restocked_at),
        restock_history=[
            RestockEntryView(
                quantity=entry.quantity,
                cost=entry.cost,
                actor=entry.actor,
                restocked_at=as_utc(entry.restocked_at),
                note=entry.note,
            )
            for entry in record.restock_history
        ],
        is_active=record.is_active,
        status=classify(record),
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


class StockLedger:
    """
    Stock ledger backed by the `stock_records` and `restock_entries` tables.

    Methods that take an optional `session` join the caller's transaction
    (used by the order workflow); otherwise each call runs in its own.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self, session=None):
        if session is not None:
            yield session
            return
        with self._session_factory.begin() as own_session:
            yield own_session

    @staticmethod
    def _load(session, record_id: int) -> StockRecord:
        record = session.execute(
            select(StockRecord).where(StockRecord.id == record_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if record is None:
            raise NotFoundError(f"Stock record {record_id} does not exist")
        return record

    # --- Creation / settings ---

    def create_record(self, data: StockRecordCreate) -> StockRecordView:
        """
        Creates the stock record for a product.

        Args:
            data (StockRecordCreate): Validated initial stock levels and alert settings.
        Returns:
            StockRecordView: The new record.
        Raises:
            AlreadyExistsError: If the product already has a stock record (also under concurrent creation).
        """
        try:
            with self._session_factory.begin() as session:
                record = StockRecord(
                    product_id=data.product_id,
                    current_stock=data.current_stock,
                    minimum_stock=data.minimum_stock,
                    maximum_stock=data.maximum_stock,
                    unit=data.unit.value,
                    cost_per_unit=data.cost_per_unit,
                    supplier=data.supplier.model_dump() if data.supplier else None,
                    alert_enabled=data.alert_settings.is_enabled,
                    alert_threshold=data.alert_settings.alert_threshold,
                    alert_frequency=data.alert_settings.frequency.value,
                )
                session.add(record)
                session.flush()
                view = to_view(record)
        except IntegrityError as e:
            log.warning(f"[Stock: {data.product_id}] Bestandsdatensatz existiert bereits.")
            raise AlreadyExistsError(f"Inventory record already exists for product {data.product_id}") from e
        log.info(f"[Stock: {data.product_id}] Bestandsdatensatz {view.id} angelegt (Bestand: {view.current_stock}).")
        return view

    def update_settings(self, record_id: int, changes: StockRecordUpdate) -> StockRecordView:
        """
        Applies a partial settings update (thresholds, alerting, unit, supplier, activity).

        Raises:
            NotFoundError: If the record does not exist.
            ValidationError: If the resulting maximum stock would be below the minimum stock.
        """
        with self._session_factory.begin() as session:
            record = self._load(session, record_id)
            fields = changes.model_dump(exclude_unset=True, exclude={"alert_settings", "supplier", "unit"})
            for name, value in fields.items():
                setattr(record, name, value)
            if changes.unit is not None:
                record.unit = changes.unit.value
            if "supplier" in changes.model_fields_set:
                record.supplier = changes.supplier.model_dump() if changes.supplier else None
            if changes.alert_settings is not None:
                record.alert_enabled = changes.alert_settings.is_enabled
                record.alert_threshold = changes.alert_settings.alert_threshold
                record.alert_frequency = changes.alert_settings.frequency.value
            if record.maximum_stock < record.minimum_stock:
                raise ValidationError("maximumStock must be greater than or equal to minimumStock")
            session.flush()
            return to_view(record)

    def deactivate(self, record_id: int) -> StockRecordView:
        """Logically deletes a record; its history is kept."""
        return self.update_settings(record_id, StockRecordUpdate(is_active=False))

    # --- Lookups ---

    def get_record(self, record_id: int) -> StockRecordView:
        with self._session_factory() as session:
            return to_view(self._load(session, record_id))

    def get_record_for_product(self, product_id: str) -> Optional[StockRecordView]:
        with self._session_factory() as session:
            record = session.execute(
                select(StockRecord).where(StockRecord.product_id == product_id)
            ).scalar_one_or_none()
            return to_view(record) if record else None

    def list_by_status(self, status: Optional[StockStatus] = None) -> List[StockRecordView]:
        """
        Lists active records currently in the given stock status, lowest stock first.
        Without a status every active record is listed.
        """
        query = select(StockRecord).where(StockRecord.is_active.is_(True))
        if status is not None:
            query = query.where(_status_filter(StockStatus(status)))
        with self._session_factory() as session:
            records = session.execute(
                query.order_by(StockRecord.current_stock, StockRecord.id)
            ).scalars().all()
            return [to_view(record) for record in records]

    def count_active(self) -> int:
        with self._session_factory() as session:
            return session.execute(
                select(func.count()).select_from(StockRecord).where(StockRecord.is_active.is_(True))
            ).scalar_one()

    # --- Stock movements ---

    def restock(self, record_id: int, quantity: int, cost: Decimal = Decimal("0"), actor: str = "system",
                note: str = "") -> RestockResult:
        """
        Adds stock to an active record and appends a restock history entry.

        The increment is a single UPDATE; the history is trimmed to the most
        recent `RESTOCK_HISTORY_LIMIT` entries in the same transaction.

        Args:
            record_id (int): Stock record id.
            quantity (int): Units added, greater than zero.
            cost (Decimal): Total cost of the delivery, non-negative.
            actor (str): Who restocked (admin e-mail or system).
            note (str): Optional note, at most 500 characters.
        Returns:
            RestockResult: Updated record with previous and new stock levels.
        Raises:
            ValidationError: For a non-positive quantity or negative cost.
            NotFoundError: If the record does not exist or is inactive.
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be at least 1")
        if cost < 0:
            raise ValidationError("Cost must be a non-negative number")
        now = utcnow()
        with self._session_factory.begin() as session:
            result = session.execute(
                update(StockRecord)
                .where(StockRecord.id == record_id, StockRecord.is_active.is_(True))
                .values(current_stock=StockRecord.current_stock + quantity, last_restocked_at=now)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Active stock record {record_id} does not exist")

            session.add(RestockEntry(record_id=record_id, quantity=quantity, cost=cost, actor=actor,
                                     restocked_at=now, note=note or ""))
            session.flush()

            stale_ids = session.execute(
                select(RestockEntry.id).where(RestockEntry.record_id == record_id)
                .order_by(RestockEntry.id.desc()).offset(RESTOCK_HISTORY_LIMIT)
            ).scalars().all()
            if stale_ids:
                session.execute(
                    delete(RestockEntry).where(RestockEntry.id.in_(stale_ids))
                    .execution_options(synchronize_session=False)
                )

            record = self._load(session, record_id)
            session.refresh(record, ["restock_history"])
            view = to_view(record)

        log.info(f"[Stock: {view.product_id}] Nachschub +{quantity} durch {actor}. Neuer Bestand: {view.current_stock}.")
        return RestockResult(
            record=view,
            quantity_added=quantity,
            previous_stock=view.current_stock - quantity,
            new_stock=view.current_stock,
            total_cost=cost,
        )

    def decrement(self, record_id: int, quantity: int) -> StockRecordView:
        """
        Removes stock from an active record, failing instead of going negative.

        Raises:
            ValidationError: For a non-positive quantity.
            NotFoundError: If the record does not exist or is inactive.
            InsufficientStockError: If fewer than `quantity` units are in stock.
        """
        with self._session_factory.begin() as session:
            record = self._conditional_decrement(session, StockRecord.id == record_id, quantity,
                                                 label=str(record_id))
            return to_view(record)

    def decrement_for_product(self, product_id: str, quantity: int, session=None) -> StockRecordView:
        """
        Same as `decrement`, addressed by product id.

        Args:
            product_id (str): Product whose stock record is decremented.
            quantity (int): Units removed.
            session: Optional open session; the decrement then commits with the caller's transaction.
        """
        with self._transaction(session) as tx:
            record = self._conditional_decrement(tx, StockRecord.product_id == product_id, quantity,
                                                 label=product_id)
            return to_view(record)

    def _conditional_decrement(self, session, selector, quantity: int, label: str) -> StockRecord:
        if quantity <= 0:
            raise ValidationError("Quantity must be at least 1")
        result = session.execute(
            update(StockRecord)
            .where(selector, StockRecord.is_active.is_(True), StockRecord.current_stock >= quantity)
            .values(current_stock=StockRecord.current_stock - quantity)
        )
        record = session.execute(
            select(StockRecord).where(selector).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if result.rowcount == 0:
            if record is None or not record.is_active:
                raise NotFoundError(f"No active stock record for {label}")
            raise InsufficientStockError(record.product_id, record.current_stock, quantity)
        log.info(f"[Stock: {record.product_id}] Bestand um {quantity} reduziert. Neuer Bestand: {record.current_stock}.")
        return record

    # --- Alert bookkeeping ---

    def mark_alert_sent(self, record_id: int, sent_at: datetime) -> None:
        with self._session_factory.begin() as session:
            session.execute(
                update(StockRecord).where(StockRecord.id == record_id).values(last_alert_sent_at=sent_at)
            )
