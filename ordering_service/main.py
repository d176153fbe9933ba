"""
main.py — FastAPI Entry Point for the Ordering Service

This module provides the thin REST layer in front of the ordering core. It
only translates HTTP requests into core calls and core errors into HTTP
responses; all rules live in `workflow`, `ledger` and `alerts`.

Responsibilities:
    • Guest order placement and public order tracking
    • Admin order fulfillment updates and payment gateway callbacks
    • Admin inventory management (create, update, restock, list, report, alert check)
    • Start and stop the periodic stock alert scheduler
    • Provide system health information
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

from .alerts import AlertScheduler, AlertSweeper
from .clients import CatalogClient, CatalogLookup, NotificationClient, Notifier
from .config import ALERT_SCHEDULER_ENABLED, DATABASE_URL
from .database import build_engine, build_session_factory, init_db
from .errors import OrderingError
from .ledger import StockLedger
from .logging_config import get_logger, setup_logging
from .models import (
    NewOrderRequest, PaymentCallback, RestockRequest, StatusUpdateRequest, StockRecordCreate, StockRecordUpdate,
    StockStatus,
)
from .workflow import OrderWorkflow

log = get_logger(__name__)

ERROR_STATUS_CODES = {
    "validation_error": 400,
    "product_unavailable": 400,
    "not_found": 404,
    "already_exists": 409,
    "insufficient_stock": 409,
    "invalid_transition": 409,
    "service_unavailable": 503,
    "notifier_failure": 503,
}


@dataclass
class Services:
    """Wired core components shared by all requests."""
    engine: object
    ledger: StockLedger
    workflow: OrderWorkflow
    sweeper: AlertSweeper
    scheduler: Optional[AlertScheduler]
    catalog: CatalogLookup
    notifier: Notifier


def build_services(database_url: str = DATABASE_URL, catalog: CatalogLookup = None, notifier: Notifier = None,
                   with_scheduler: bool = ALERT_SCHEDULER_ENABLED) -> Services:
    """
    Wires ledger, workflow, sweeper and scheduler against one database.

    Args:
        database_url (str): SQLAlchemy URL of the order/stock database.
        catalog (CatalogLookup): Product lookup; defaults to the REST `CatalogClient`.
        notifier (Notifier): Notification sink; defaults to the RabbitMQ `NotificationClient`.
        with_scheduler (bool): Create the periodic alert scheduler.
    """
    engine = build_engine(database_url)
    session_factory = build_session_factory(engine)
    catalog = catalog or CatalogClient()
    notifier = notifier or NotificationClient()

    ledger = StockLedger(session_factory)
    sweeper = AlertSweeper(ledger, notifier)
    scheduler = AlertScheduler(sweeper) if with_scheduler else None
    workflow = OrderWorkflow(session_factory, catalog, ledger, notifier,
                             on_stock_changed=scheduler.trigger if scheduler else None)
    return Services(engine=engine, ledger=ledger, workflow=workflow, sweeper=sweeper, scheduler=scheduler,
                    catalog=catalog, notifier=notifier)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Creates the FastAPI application.

    Args:
        services (Services): Pre-wired services (tests); built from configuration when omitted.
    """
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Ordering-Service startet...")
        init_db(services.engine)
        if services.scheduler:
            services.scheduler.start()
        yield
        if services.scheduler:
            services.scheduler.stop()
        for client in (services.catalog, services.notifier):
            close = getattr(client, "close", None)
            if close:
                close()
        log.info("Ordering-Service beendet.")

    app = FastAPI(title="Guest Ordering Service", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(OrderingError)
    async def ordering_error_handler(request: Request, exc: OrderingError):
        if exc.kind not in ERROR_STATUS_CODES:
            return await unexpected_error_handler(request, exc)
        status_code = ERROR_STATUS_CODES[exc.kind]
        if status_code >= 500:
            log.error(f"{request.method} {request.url.path} fehlgeschlagen: {exc.message}")
        return JSONResponse(status_code=status_code, content={"error": exc.kind, "message": exc.message})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        log.critical(f"{request.method} {request.url.path} unerwarteter Fehler: {exc!r}", exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "internal_error", "message": "Internal server error"})

    # --- Orders ---

    @app.post("/v1/orders")
    def create_order(order: NewOrderRequest):
        """
        Places a guest order (no signup required).

        Returns 201 for a new order and 200 for an idempotent replay with the
        same `idempotencyKey`. Inventory shortfalls do not fail the request;
        they are listed under `inventoryWarnings`.
        """
        result = services.workflow.create_order(order)
        body = {
            "success": True,
            "created": result.created,
            "order": result.order.model_dump(mode="json"),
            "orderNumber": result.order.order_number,
            "trackingUrl": result.tracking_url,
            "inventoryWarnings": [w.model_dump() for w in result.inventory_warnings],
        }
        return JSONResponse(status_code=201 if result.created else 200, content=body)

    @app.get("/v1/orders/track/phone/{phone}")
    def track_by_phone(phone: str):
        orders = services.workflow.orders_for_phone(phone)
        if not orders:
            return JSONResponse(status_code=404, content={
                "error": "not_found", "message": "No orders found for this phone number"})
        return {
            "success": True,
            "orders": [o.model_dump(mode="json") for o in orders],
            "customerInfo": {"name": orders[0].customer.name, "phone": orders[0].customer.phone,
                             "totalOrders": len(orders)},
        }

    @app.get("/v1/orders/{order_number}")
    def track_order(order_number: str):
        order = services.workflow.get_order_by_number(order_number)
        return {"success": True, "order": order.model_dump(mode="json")}

    @app.patch("/v1/orders/{order_id}/status")
    def update_order_status(order_id: int, update: StatusUpdateRequest,
                            x_admin_user: str = Header("admin", alias="X-Admin-User")):
        result = services.workflow.update_fulfillment_status(
            order_id,
            update.fulfillment_status,
            note=update.admin_note,
            actor=x_admin_user,
            estimated_delivery_at=update.estimated_delivery_at,
            notify=update.send_notification,
        )
        return {
            "success": True,
            "order": result.order.model_dump(mode="json"),
            "notificationSent": result.notified,
            "statusUpdate": {"previousStatus": result.previous_status.value,
                             "newStatus": result.new_status.value},
        }

    @app.post("/v1/payments/callback")
    def payment_callback(callback: PaymentCallback):
        order = services.workflow.update_payment_status(callback.order_id, callback.status, callback.reference)
        return {"success": True, "order": order.model_dump(mode="json")}

    # --- Inventory ---

    @app.post("/v1/inventory", status_code=201)
    def create_stock_record(data: StockRecordCreate):
        record = services.ledger.create_record(data)
        return {"success": True, "inventory": record.model_dump(mode="json")}

    @app.get("/v1/inventory")
    def list_inventory(status: Optional[StockStatus] = None):
        records = services.ledger.list_by_status(status)
        return {"success": True, "inventory": [r.model_dump(mode="json") for r in records], "total": len(records)}

    @app.get("/v1/inventory/report")
    def inventory_report():
        return {"success": True, "report": services.sweeper.generate_report().model_dump(mode="json")}

    @app.post("/v1/inventory/check-alerts")
    def check_alerts():
        report = services.sweeper.sweep()
        return {"success": True, "sweep": report.model_dump(mode="json")}

    @app.get("/v1/inventory/{record_id}")
    def get_stock_record(record_id: int):
        return {"success": True, "inventory": services.ledger.get_record(record_id).model_dump(mode="json")}

    @app.patch("/v1/inventory/{record_id}")
    def update_stock_record(record_id: int, changes: StockRecordUpdate):
        record = services.ledger.update_settings(record_id, changes)
        return {"success": True, "inventory": record.model_dump(mode="json")}

    @app.post("/v1/inventory/{record_id}/restock")
    def restock(record_id: int, restock: RestockRequest,
                x_admin_user: str = Header("admin", alias="X-Admin-User")):
        result = services.ledger.restock(record_id, restock.quantity, restock.cost, x_admin_user, restock.notes)
        return {
            "success": True,
            "inventory": result.record.model_dump(mode="json"),
            "restockInfo": {"quantityAdded": result.quantity_added, "previousStock": result.previous_stock,
                            "newStock": result.new_stock, "totalCost": str(result.total_cost)},
        }

    # Health Check Endpoint
    @app.get("/health")
    def health_check():
        """
        Simple health check endpoint for monitoring systems and container orchestrators.
        """
        return {"status": "ok"}

    return app


def main():
    import uvicorn

    setup_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
