"""Tests for the order workflow."""

import threading
from decimal import Decimal

import pytest
from pydantic import ValidationError as SchemaError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from conftest import make_order, make_record
from ordering_service.database import Counter
from ordering_service.errors import (
    InvalidTransitionError, NotFoundError, ProductUnavailableError, ServiceUnavailableError, ValidationError,
)
from ordering_service.models import FulfillmentStatus, PaymentStatus, Product
from ordering_service.workflow import OrderWorkflow


class TestCreateOrder:
    def test_scenario_new_order(self, workflow, ledger, stock_record):
        result = workflow.create_order(make_order("k1"))

        assert result.created is True
        order = result.order
        assert order.subtotal == Decimal("7500")
        assert order.total_amount == Decimal("7500")
        assert order.fulfillment_status == FulfillmentStatus.NEW
        assert order.payment_status == PaymentStatus.PENDING
        assert order.order_number == "ORD-000001"
        assert order.inventory_warnings == []
        assert result.tracking_url == "http://shop.test/v1/orders/ORD-000001"
        assert ledger.get_record(stock_record.id).current_stock == 7

    def test_scenario_duplicate_key_returns_same_order(self, workflow, ledger, catalog, stock_record):
        first = workflow.create_order(make_order("k1"))
        second = workflow.create_order(make_order("k1"))

        assert second.created is False
        assert second.order.order_number == first.order.order_number
        assert second.order.id == first.order.id
        assert ledger.get_record(stock_record.id).current_stock == 7
        assert catalog.calls == 1

    def test_scenario_region_mismatch(self, workflow, ledger, stock_record):
        with pytest.raises(ProductUnavailableError) as exc_info:
            workflow.create_order(make_order("k1", region="Kano"))

        assert exc_info.value.product_id == "P"
        assert workflow.find_by_idempotency_key("k1") is None
        assert ledger.get_record(stock_record.id).current_stock == 10

    def test_scenario_oversell_creates_order_with_warning(self, workflow, ledger, stock_record):
        ledger.decrement(stock_record.id, 8)

        result = workflow.create_order(make_order("k1", items=[("P", 5)]))

        assert result.created is True
        assert result.has_inventory_shortfall
        warning, = result.inventory_warnings
        assert warning.kind == "insufficient_stock"
        assert warning.product_id == "P"
        assert warning.requested == 5
        assert warning.available == 2
        assert ledger.get_record(stock_record.id).current_stock == 2
        # the warning is persisted with the order
        assert workflow.get_order(result.order.id).inventory_warnings == result.inventory_warnings

    def test_untracked_product_is_reported(self, workflow, catalog):
        catalog.add(Product(id="Q", name="Chapman", price=Decimal("1800"), available_regions={"Lagos"}))

        result = workflow.create_order(make_order("k1", items=[("Q", 1)]))

        assert result.created is True
        assert [w.kind for w in result.inventory_warnings] == ["untracked"]
        assert not result.has_inventory_shortfall

    def test_partial_shortfall_still_decrements_other_lines(self, workflow, catalog, ledger, stock_record):
        catalog.add(Product(id="Q", name="Chapman", price=Decimal("1800"), available_regions={"Lagos"}))
        short = make_record(ledger, "Q", 1)

        result = workflow.create_order(make_order("k1", items=[("P", 2), ("Q", 4)]))

        assert result.order.subtotal == Decimal("2500") * 2 + Decimal("1800") * 4
        assert [w.product_id for w in result.inventory_warnings] == ["Q"]
        assert ledger.get_record(stock_record.id).current_stock == 8
        assert ledger.get_record(short.id).current_stock == 1

    def test_inactive_product(self, workflow, catalog, stock_record):
        catalog.add(Product(id="old", name="Retired", price=Decimal("100"), available_regions={"Lagos"},
                            is_active=False))
        with pytest.raises(ProductUnavailableError):
            workflow.create_order(make_order("k1", items=[("P", 1), ("old", 1)]))
        assert workflow.find_by_idempotency_key("k1") is None

    def test_unknown_product(self, workflow):
        with pytest.raises(ProductUnavailableError):
            workflow.create_order(make_order("k1", items=[("ghost", 1)]))

    def test_duplicate_lines_are_rejected(self, workflow, stock_record):
        with pytest.raises(ValidationError):
            workflow.create_order(make_order("k1", items=[("P", 1), ("P", 2)]))

    def test_catalog_unavailable(self, workflow, catalog, ledger, stock_record):
        catalog.unavailable = True
        with pytest.raises(ServiceUnavailableError):
            workflow.create_order(make_order("k1"))
        assert workflow.find_by_idempotency_key("k1") is None
        assert ledger.get_record(stock_record.id).current_stock == 10

    def test_invalid_requests_fail_schema_validation(self):
        with pytest.raises(SchemaError):
            make_order("k1", items=[("P", 0)])
        with pytest.raises(SchemaError):
            make_order("k1", region="Atlantis")
        with pytest.raises(SchemaError):
            make_order("k1", items=[])

    def test_order_numbers_are_sequential(self, workflow, stock_record):
        numbers = [workflow.create_order(make_order(f"k{i}", items=[("P", 1)])).order.order_number
                   for i in range(3)]
        assert numbers == ["ORD-000001", "ORD-000002", "ORD-000003"]

    def test_price_snapshot_survives_price_change(self, workflow, catalog, stock_record):
        result = workflow.create_order(make_order("k1"))
        catalog.add(Product(id="P", name="Classic Mojito", price=Decimal("4000"), available_regions={"Lagos"}))

        order = workflow.get_order(result.order.id)
        assert order.line_items[0].unit_price == Decimal("2500")
        assert order.subtotal == sum(line.unit_price * line.quantity for line in order.line_items)

    def test_sub_cent_price_is_snapshotted_at_cent_scale(self, workflow, catalog):
        catalog.add(Product(id="Z", name="Zobo Shot", price=Decimal("0.125"), available_regions={"Lagos"}))

        first = workflow.create_order(make_order("cents", items=(("Z", 3),)))
        replay = workflow.create_order(make_order("cents", items=(("Z", 3),)))
        stored = workflow.get_order(first.order.id)

        assert first.order.line_items[0].unit_price == Decimal("0.13")
        assert first.order.subtotal == Decimal("0.39")
        assert replay.order.subtotal == first.order.subtotal
        assert replay.order.line_items == first.order.line_items
        assert stored.subtotal == first.order.subtotal
        assert stored.subtotal == sum(line.unit_price * line.quantity for line in stored.line_items)

    def test_other_integrity_errors_are_not_treated_as_replays(self, workflow, session_factory, stock_record):
        workflow.create_order(make_order("k1"))
        with session_factory.begin() as session:
            session.execute(update(Counter).values(value=0))

        with pytest.raises(IntegrityError):
            workflow.create_order(make_order("k2"))
        assert workflow.find_by_idempotency_key("k2") is None

    def test_lost_insert_race_reads_back_winner(self, workflow, ledger, stock_record, monkeypatch):
        winner = workflow.create_order(make_order("k1"))

        real_lookup = workflow.find_by_idempotency_key
        calls = []

        def lookup_missing_first(key):
            calls.append(key)
            return None if len(calls) == 1 else real_lookup(key)

        monkeypatch.setattr(workflow, "find_by_idempotency_key", lookup_missing_first)
        replay = workflow.create_order(make_order("k1"))

        assert replay.created is False
        assert replay.order.order_number == winner.order.order_number
        assert len(calls) == 2
        assert ledger.get_record(stock_record.id).current_stock == 7
        # the losing insert must not consume an order number
        assert workflow.create_order(make_order("k2", items=[("P", 1)])).order.order_number == "ORD-000002"

    def test_concurrent_requests_with_same_key(self, workflow, ledger, stock_record):
        results = []
        errors = []
        start = threading.Barrier(8)

        def place():
            start.wait()
            try:
                results.append(workflow.create_order(make_order("same-key")))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=place) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len({r.order.order_number for r in results}) == 1
        assert sum(r.created for r in results) == 1
        assert ledger.get_record(stock_record.id).current_stock == 7

    def test_stock_change_hook(self, session_factory, catalog, ledger, notifier, stock_record):
        triggered = []
        workflow = OrderWorkflow(session_factory, catalog, ledger, notifier, on_stock_changed=lambda: triggered.append(1))

        workflow.create_order(make_order("k1"))
        workflow.create_order(make_order("k1"))

        assert triggered == [1]


class TestFulfillment:
    @pytest.fixture
    def order(self, workflow, stock_record):
        return workflow.create_order(make_order("k1")).order

    def test_forward_lifecycle(self, workflow, notifier, order):
        for status in ("preparing", "in_route", "delivered"):
            result = workflow.update_fulfillment_status(order.id, status)
            assert result.new_status.value == status
            assert result.notified is True

        assert workflow.get_order(order.id).fulfillment_status == FulfillmentStatus.DELIVERED
        assert notifier.kinds() == ["order_status"] * 3
        assert notifier.sent[-1][1]["previousStatus"] == "in_route"

    def test_scenario_delivered_is_terminal(self, workflow, order):
        for status in ("preparing", "in_route", "delivered"):
            workflow.update_fulfillment_status(order.id, status)

        with pytest.raises(InvalidTransitionError):
            workflow.update_fulfillment_status(order.id, "preparing")
        assert workflow.get_order(order.id).fulfillment_status == FulfillmentStatus.DELIVERED

    def test_cancel_from_new_and_preparing(self, workflow, stock_record):
        first = workflow.create_order(make_order("a", items=[("P", 1)])).order
        second = workflow.create_order(make_order("b", items=[("P", 1)])).order
        workflow.update_fulfillment_status(second.id, "preparing")

        assert workflow.update_fulfillment_status(first.id, "cancelled").new_status == FulfillmentStatus.CANCELLED
        assert workflow.update_fulfillment_status(second.id, "cancelled").new_status == FulfillmentStatus.CANCELLED
        with pytest.raises(InvalidTransitionError):
            workflow.update_fulfillment_status(first.id, "new")

    def test_no_cancel_once_in_route(self, workflow, order):
        workflow.update_fulfillment_status(order.id, "preparing")
        workflow.update_fulfillment_status(order.id, "in_route")
        with pytest.raises(InvalidTransitionError):
            workflow.update_fulfillment_status(order.id, "cancelled")

    def test_no_skipping_or_going_back(self, workflow, order):
        with pytest.raises(InvalidTransitionError):
            workflow.update_fulfillment_status(order.id, "delivered")
        workflow.update_fulfillment_status(order.id, "preparing")
        with pytest.raises(InvalidTransitionError):
            workflow.update_fulfillment_status(order.id, "new")

    def test_admin_note_is_recorded(self, workflow, order):
        result = workflow.update_fulfillment_status(order.id, "preparing", note="Customer asked for extra ice",
                                                    actor="ops@shop.test")
        note, = result.order.admin_notes
        assert note.note == "Customer asked for extra ice"
        assert note.actor == "ops@shop.test"
        assert workflow.get_order(order.id).admin_notes == result.order.admin_notes

    def test_notifier_failure_does_not_fail_update(self, workflow, notifier, order):
        notifier.fail_all = True
        result = workflow.update_fulfillment_status(order.id, "preparing")
        assert result.notified is False
        assert workflow.get_order(order.id).fulfillment_status == FulfillmentStatus.PREPARING

    def test_notification_can_be_skipped(self, workflow, notifier, order):
        result = workflow.update_fulfillment_status(order.id, "preparing", notify=False)
        assert result.notified is False
        assert notifier.sent == []

    def test_unknown_order(self, workflow):
        with pytest.raises(NotFoundError):
            workflow.update_fulfillment_status(404, "preparing")


class TestPayment:
    @pytest.fixture
    def order(self, workflow, stock_record):
        return workflow.create_order(make_order("k1")).order

    def test_paid(self, workflow, order):
        view = workflow.update_payment_status(order.id, "paid", reference="PSK_123")
        assert view.payment_status == PaymentStatus.PAID
        assert view.payment_reference == "PSK_123"

    def test_repeated_callback_is_noop(self, workflow, order):
        workflow.update_payment_status(order.id, "paid", reference="PSK_123")
        view = workflow.update_payment_status(order.id, "paid", reference="PSK_123")
        assert view.payment_status == PaymentStatus.PAID

    def test_failed_then_paid_then_refunded(self, workflow, order):
        workflow.update_payment_status(order.id, "failed")
        workflow.update_payment_status(order.id, "paid")
        assert workflow.update_payment_status(order.id, "refunded").payment_status == PaymentStatus.REFUNDED

    def test_refund_requires_payment(self, workflow, order):
        with pytest.raises(InvalidTransitionError):
            workflow.update_payment_status(order.id, "refunded")


class TestTracking:
    def test_by_number(self, workflow, stock_record):
        created = workflow.create_order(make_order("k1")).order
        assert workflow.get_order_by_number(created.order_number).id == created.id
        with pytest.raises(NotFoundError):
            workflow.get_order_by_number("ORD-999999")

    def test_by_phone_newest_first(self, workflow, stock_record):
        workflow.create_order(make_order("a", items=[("P", 1)], phone="0801"))
        workflow.create_order(make_order("b", items=[("P", 1)], phone="0802"))
        workflow.create_order(make_order("c", items=[("P", 1)], phone="0801"))

        orders = workflow.orders_for_phone("0801")
        assert [o.idempotency_key for o in orders] == ["c", "a"]
        assert workflow.orders_for_phone("0000") == []
