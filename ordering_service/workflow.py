"""
workflow.py — Core Orchestration Logic for Guest Orders

This module contains the order workflow: placing an order exactly once per
idempotency key, decrementing stock for it, and moving it through its
fulfillment and payment lifecycles.

Workflow Overview (create_order):
1. Replay: an existing order with the same idempotency key is returned unchanged
2. Resolve products via the Catalog Service (active, sold in the customer's region)
3. Snapshot unit prices and compute subtotal / total
4. Insert the order; the UNIQUE idempotency key decides concurrent races
5. Decrement stock per line in the same transaction; shortfalls become
   inventory warnings on the order instead of failing it
6. Return the order with its tracking reference

Fulfillment lifecycle:
    new → preparing → in_route → delivered
    new | preparing → cancelled
    delivered and cancelled are terminal.
"""

from collections import Counter as Tally
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .clients import CatalogLookup, Notifier
from .config import BASE_URL
from .database import ORDER_NUMBER_COUNTER, Order, OrderLine, as_utc, next_counter_value, utcnow
from .errors import (
    DuplicateIdempotencyKeyError, InsufficientStockError, InvalidTransitionError, NotFoundError,
    ProductUnavailableError, ValidationError,
)
from .ledger import StockLedger
from .logging_config import get_logger
from .models import (
    AdminNote, CustomerInfo, FulfillmentStatus, InventoryWarning, NewOrderRequest, NotificationKind, OrderLineView,
    OrderResult, OrderView, PaymentStatus, Product, StatusUpdateResult,
)

log = get_logger(__name__)

# Money columns are Numeric(12, 2); prices are snapshotted at that scale.
CENTS = Decimal("0.01")

FULFILLMENT_TRANSITIONS = {
    FulfillmentStatus.NEW: {FulfillmentStatus.PREPARING, FulfillmentStatus.CANCELLED},
    FulfillmentStatus.PREPARING: {FulfillmentStatus.IN_ROUTE, FulfillmentStatus.CANCELLED},
    FulfillmentStatus.IN_ROUTE: {FulfillmentStatus.DELIVERED},
    FulfillmentStatus.DELIVERED: set(),
    FulfillmentStatus.CANCELLED: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PAID},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}


def order_to_view(order: Order) -> OrderView:
    """Converts a loaded order (inside its session) to its public view."""
    return OrderView(
        id=order.id,
        order_number=order.order_number,
        idempotency_key=order.idempotency_key,
        customer=CustomerInfo(
            name=order.customer_name,
            phone=order.customer_phone,
            address=order.customer_address,
            region=order.customer_region,
        ),
        line_items=[
            OrderLineView(product_id=line.product_id, product_name=line.product_name,
                          quantity=line.quantity, unit_price=line.unit_price)
            for line in order.line_items
        ],
        subtotal=order.subtotal,
        total_amount=order.total_amount,
        payment_status=order.payment_status,
        payment_reference=order.payment_reference,
        fulfillment_status=order.fulfillment_status,
        notes=order.notes,
        admin_notes=order.admin_notes or [],
        inventory_warnings=order.inventory_warnings or [],
        estimated_delivery_at=as_utc(order.estimated_delivery_at),
        created_at=as_utc(order.created_at),
        updated_at=as_utc(order.updated_at),
    )


class OrderWorkflow:
    """
    Places guest orders and manages their lifecycle.

    Args:
        session_factory (sessionmaker): Session factory for the order and stock tables.
        catalog (CatalogLookup): Product lookup (Catalog Service client).
        ledger (StockLedger): Stock ledger used for order decrements.
        notifier (Notifier): Receives order status notifications.
        on_stock_changed (Callable): Optional hook called after an order changed stock
            (the alert scheduler's `trigger`).
        base_url (str): Public base URL for tracking links.
    """

    def __init__(self, session_factory: sessionmaker, catalog: CatalogLookup, ledger: StockLedger,
                 notifier: Notifier, on_stock_changed: Optional[Callable[[], None]] = None,
                 base_url: str = BASE_URL):
        self._session_factory = session_factory
        self.catalog = catalog
        self.ledger = ledger
        self.notifier = notifier
        self.on_stock_changed = on_stock_changed
        self.base_url = base_url.rstrip("/")

    def tracking_url(self, order_number: str) -> str:
        return f"{self.base_url}/v1/orders/{order_number}"

    # --- Order placement ---

    def create_order(self, request: NewOrderRequest) -> OrderResult:
        """
        Places a guest order exactly once per idempotency key.

        Args:
            request (NewOrderRequest): Validated order request.

        Returns:
            OrderResult: The persisted order; `created` is False for an idempotent replay.
            Stock shortfalls are reported in `order.inventory_warnings`.

        Raises:
            ValidationError: If the request lists the same product more than once.
            ProductUnavailableError: If a product is missing, inactive or not sold in the customer's region.
            ServiceUnavailableError: If the Catalog Service can not be reached in time.
        """
        key = request.idempotency_key
        log_prefix = f"[Order-Key: {key}]"

        # --- 1. Replay ---
        existing = self.find_by_idempotency_key(key)
        if existing:
            log.info(f"{log_prefix} Wiederholte Anfrage, liefere bestehende Bestellung {existing.order_number}.")
            return self._result(existing, created=False)

        duplicates = [pid for pid, n in Tally(item.product_id for item in request.items).items() if n > 1]
        if duplicates:
            raise ValidationError(f"Each product may appear only once per order: {', '.join(sorted(duplicates))}")

        # --- 2. Catalog ---
        products = self._resolve_products(request)

        # --- 3. Pricing ---
        lines = []
        subtotal = Decimal("0")
        for item in request.items:
            product = products[item.product_id]
            unit_price = product.price.quantize(CENTS, rounding=ROUND_HALF_UP)
            subtotal += unit_price * item.quantity
            lines.append(OrderLine(product_id=product.id, product_name=product.name,
                                   quantity=item.quantity, unit_price=unit_price))
        total_amount = subtotal  # No additional fees

        # --- 4./5. Persist + inventory ---
        try:
            view = self._persist(request, lines, subtotal, total_amount)
        except DuplicateIdempotencyKeyError:
            existing = self.find_by_idempotency_key(key)
            if existing is None:
                raise
            log.info(f"{log_prefix} Parallele Anfrage hat gewonnen, liefere Bestellung {existing.order_number}.")
            return self._result(existing, created=False)

        log.info(f"[Order: {view.order_number}] Bestellung angelegt (Summe: {view.total_amount}).")
        for warning in view.inventory_warnings:
            log.warning(f"[Order: {view.order_number}] Inventar-Warnung: {warning.message}")

        if self.on_stock_changed and len(view.inventory_warnings) < len(view.line_items):
            self.on_stock_changed()

        # --- 6. Result ---
        return self._result(view, created=True)

    def _resolve_products(self, request: NewOrderRequest) -> Dict[str, Product]:
        region = request.customer.region
        products = self.catalog.get_active_products({item.product_id for item in request.items})
        for item in request.items:
            product = products.get(item.product_id)
            if product is None:
                raise ProductUnavailableError(item.product_id, "inactive or does not exist")
            if region not in product.available_regions:
                raise ProductUnavailableError(item.product_id, f"{product.name or product.id} is not available in {region}")
        return products

    def _persist(self, request: NewOrderRequest, lines: List[OrderLine], subtotal: Decimal,
                 total_amount: Decimal) -> OrderView:
        try:
            with self._session_factory.begin() as session:
                number = next_counter_value(session, ORDER_NUMBER_COUNTER)
                order = Order(
                    order_number=f"ORD-{number:06d}",
                    idempotency_key=request.idempotency_key,
                    customer_name=request.customer.name,
                    customer_phone=request.customer.phone,
                    customer_address=request.customer.address,
                    customer_region=request.customer.region,
                    subtotal=subtotal,
                    total_amount=total_amount,
                    payment_status=PaymentStatus.PENDING.value,
                    fulfillment_status=FulfillmentStatus.NEW.value,
                    notes=request.notes,
                    admin_notes=[],
                    inventory_warnings=[],
                    line_items=lines,
                )
                session.add(order)
                session.flush()

                warnings = self._process_inventory(session, order)
                order.inventory_warnings = [w.model_dump() for w in warnings]
                session.flush()
                return order_to_view(order)
        except IntegrityError as e:
            if "idempotency_key" not in str(e.orig):
                raise
            raise DuplicateIdempotencyKeyError(request.idempotency_key) from e

    def _process_inventory(self, session, order: Order) -> List[InventoryWarning]:
        """
        Decrements stock once per order line inside the order's transaction.

        Shortfalls do not fail the order; each one is returned as a warning
        that is stored on the order and shown to the caller and the admin.
        """
        warnings = []
        for line in order.line_items:
            try:
                self.ledger.decrement_for_product(line.product_id, line.quantity, session=session)
            except InsufficientStockError as e:
                warnings.append(InventoryWarning(product_id=line.product_id, kind="insufficient_stock",
                                                 requested=line.quantity, available=e.available,
                                                 message=e.message))
            except NotFoundError:
                warnings.append(InventoryWarning(product_id=line.product_id, kind="untracked",
                                                 requested=line.quantity,
                                                 message=f"No inventory record found for product {line.product_id}"))
        return warnings

    def _result(self, view: OrderView, created: bool) -> OrderResult:
        return OrderResult(order=view, created=created, tracking_url=self.tracking_url(view.order_number))

    # --- Lookups ---

    def find_by_idempotency_key(self, key: str) -> Optional[OrderView]:
        with self._session_factory() as session:
            order = session.execute(select(Order).where(Order.idempotency_key == key)).scalar_one_or_none()
            return order_to_view(order) if order else None

    def get_order(self, order_id: int) -> OrderView:
        with self._session_factory() as session:
            order = session.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} does not exist")
            return order_to_view(order)

    def get_order_by_number(self, order_number: str) -> OrderView:
        with self._session_factory() as session:
            order = session.execute(
                select(Order).where(Order.order_number == order_number)
            ).scalar_one_or_none()
            if order is None:
                raise NotFoundError(f"Order {order_number} does not exist")
            return order_to_view(order)

    def orders_for_phone(self, phone: str) -> List[OrderView]:
        """All orders placed with a phone number, newest first."""
        with self._session_factory() as session:
            orders = session.execute(
                select(Order).where(Order.customer_phone == phone.strip()).order_by(Order.id.desc())
            ).scalars().all()
            return [order_to_view(order) for order in orders]

    # --- Lifecycle ---

    def update_fulfillment_status(self, order_id: int, new_status: FulfillmentStatus, note: Optional[str] = None,
                                  actor: str = "admin", estimated_delivery_at: Optional[datetime] = None,
                                  notify: bool = True) -> StatusUpdateResult:
        """
        Moves an order along its fulfillment lifecycle.

        Args:
            order_id (int): Order id.
            new_status (FulfillmentStatus): Target status.
            note (str): Optional admin note, stored with actor and timestamp.
            actor (str): Who made the change.
            estimated_delivery_at (datetime): Optional delivery estimate.
            notify (bool): Send an `order_status` notification after the change.

        Returns:
            StatusUpdateResult: Updated order, previous/new status and whether the notification went out.

        Raises:
            NotFoundError: If the order does not exist.
            InvalidTransitionError: If the lifecycle does not allow the change.
        """
        new_status = FulfillmentStatus(new_status)
        with self._session_factory.begin() as session:
            order = session.execute(
                select(Order).where(Order.id == order_id).with_for_update()
            ).scalar_one_or_none()
            if order is None:
                raise NotFoundError(f"Order {order_id} does not exist")

            previous = FulfillmentStatus(order.fulfillment_status)
            if new_status not in FULFILLMENT_TRANSITIONS[previous]:
                log.warning(f"[Order: {order.order_number}] Ungültiger Statuswechsel {previous.value} -> {new_status.value}.")
                raise InvalidTransitionError(previous.value, new_status.value)

            order.fulfillment_status = new_status.value
            if note:
                admin_note = AdminNote(note=note, actor=actor, added_at=utcnow())
                order.admin_notes = list(order.admin_notes or []) + [admin_note.model_dump(mode="json")]
            if estimated_delivery_at:
                order.estimated_delivery_at = estimated_delivery_at
            session.flush()
            view = order_to_view(order)

        log.info(f"[Order: {view.order_number}] Status {previous.value} -> {new_status.value} durch {actor}.")

        notified = False
        if notify:
            notified = self._notify_status_change(view, previous, note)
        return StatusUpdateResult(order=view, previous_status=previous, new_status=new_status, notified=notified)

    def _notify_status_change(self, view: OrderView, previous: FulfillmentStatus, note: Optional[str]) -> bool:
        payload = {
            "orderNumber": view.order_number,
            "customer": view.customer.model_dump(),
            "previousStatus": previous.value,
            "newStatus": view.fulfillment_status.value,
            "note": note,
            "estimatedDeliveryTime": view.estimated_delivery_at.isoformat() if view.estimated_delivery_at else None,
            "trackingUrl": self.tracking_url(view.order_number),
        }
        try:
            return bool(self.notifier.notify(NotificationKind.ORDER_STATUS, payload))
        except Exception as e:
            # Status change is already committed; the notification is best effort.
            log.error(f"[Order: {view.order_number}] Benachrichtigung fehlgeschlagen: {e}", exc_info=True)
            return False

    def update_payment_status(self, order_id: int, status: PaymentStatus, reference: Optional[str] = None) -> OrderView:
        """
        Records a payment gateway callback.

        Repeating the current status is accepted as a no-op because gateways
        retry their callbacks.

        Raises:
            NotFoundError: If the order does not exist.
            InvalidTransitionError: If the payment lifecycle does not allow the change.
        """
        status = PaymentStatus(status)
        with self._session_factory.begin() as session:
            order = session.execute(
                select(Order).where(Order.id == order_id).with_for_update()
            ).scalar_one_or_none()
            if order is None:
                raise NotFoundError(f"Order {order_id} does not exist")

            current = PaymentStatus(order.payment_status)
            if status == current:
                return order_to_view(order)
            if status not in PAYMENT_TRANSITIONS[current]:
                raise InvalidTransitionError(current.value, status.value)

            order.payment_status = status.value
            if reference:
                order.payment_reference = reference
            session.flush()
            view = order_to_view(order)

        log.info(f"[Order: {view.order_number}] Zahlungsstatus {current.value} -> {status.value} (Ref: {reference}).")
        return view
