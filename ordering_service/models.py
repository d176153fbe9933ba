"""
models.py — Request and Response Models for the Ordering Core

This module defines the data structures that cross the boundary of the core.
It uses Pydantic models so that every request is validated before any
workflow step runs, and every result has an explicit, typed shape.

Models:
    - Product: Catalog entry as returned by the Catalog Service (read-only).
    - CustomerInfo / OrderItemRequest / NewOrderRequest: Guest order payload.
    - OrderView / OrderResult / StatusUpdateResult: Order results.
    - AlertSettings / StockRecordCreate / StockRecordUpdate / RestockRequest: Inventory payloads.
    - StockRecordView / RestockResult: Inventory results.
    - SweepReport / InventoryReport: Alert sweeper results.
"""

import enum
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Delivery regions (Nigerian states) accepted for guest orders
REGIONS = frozenset([
    'Abia', 'Adamawa', 'Akwa Ibom', 'Anambra', 'Bauchi', 'Bayelsa',
    'Benue', 'Borno', 'Cross River', 'Delta', 'Ebonyi', 'Edo',
    'Ekiti', 'Enugu', 'FCT', 'Gombe', 'Imo', 'Jigawa',
    'Kaduna', 'Kano', 'Katsina', 'Kebbi', 'Kogi', 'Kwara',
    'Lagos', 'Nasarawa', 'Niger', 'Ogun', 'Ondo', 'Osun',
    'Oyo', 'Plateau', 'Rivers', 'Sokoto', 'Taraba', 'Yobe', 'Zamfara',
])


class FulfillmentStatus(str, enum.Enum):
    NEW = "new"
    PREPARING = "preparing"
    IN_ROUTE = "in_route"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class StockStatus(str, enum.Enum):
    SUFFICIENT = "sufficient"
    LOW = "low"
    CRITICAL = "critical"
    OUT_OF_STOCK = "out_of_stock"


class AlertFrequency(str, enum.Enum):
    IMMEDIATE = "immediate"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class StockUnit(str, enum.Enum):
    BOTTLES = "bottles"
    LITERS = "liters"
    GALLONS = "gallons"
    PIECES = "pieces"
    SERVINGS = "servings"


class NotificationKind(str, enum.Enum):
    LOW_STOCK = "low_stock"
    CRITICAL_STOCK = "critical_stock"
    REPORT = "report"
    ORDER_STATUS = "order_status"


# --- Catalog ---

class Product(BaseModel):
    """
    Represents a catalog product as seen by the ordering core.

    Attributes:
        id (str): Product identifier owned by the catalog.
        name (str): Display name, copied onto order lines.
        price (Decimal): Current unit price (non-negative).
        availableRegions (Set[str]): Regions the product is sold in.
        isActive (bool): Inactive products can not be ordered.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    price: Decimal = Field(..., ge=0)
    available_regions: Set[str] = Field(default_factory=set, alias="availableRegions")
    is_active: bool = Field(True, alias="isActive")


# --- Orders ---

class CustomerInfo(BaseModel):
    """
    Customer snapshot stored with the order (guest ordering, no account).

    Attributes:
        name (str): Customer name, at most 100 characters.
        phone (str): Contact phone number, used for order tracking.
        address (str): Delivery address, at most 500 characters.
        region (str): Delivery region, must be one of `REGIONS`.
    """
    name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., min_length=1, max_length=20)
    address: str = Field(..., min_length=1, max_length=500)
    region: str

    @field_validator("name", "phone", "address", "region", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("region")
    @classmethod
    def _known_region(cls, value: str) -> str:
        if value not in REGIONS:
            raise ValueError(f"Unknown region: {value}")
        return value


class OrderItemRequest(BaseModel):
    """
    A single requested order line.

    Attributes:
        productId (str): Catalog product identifier.
        quantity (int): Number of units. Must be greater than zero.
    """
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., min_length=1, alias="productId")
    quantity: int = Field(..., gt=0)


class NewOrderRequest(BaseModel):
    """
    Represents a guest order request.

    Attributes:
        idempotencyKey (str): Caller supplied key; retries with the same key yield the same order.
        customer (CustomerInfo): Delivery and contact details.
        items (List[OrderItemRequest]): Requested lines, at least one, one line per product.
        notes (str): Optional delivery instructions.
    """
    model_config = ConfigDict(populate_by_name=True)

    idempotency_key: str = Field(..., min_length=1, max_length=200, alias="idempotencyKey")
    customer: CustomerInfo
    items: List[OrderItemRequest] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=500)


class OrderLineView(BaseModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class AdminNote(BaseModel):
    note: str
    actor: str
    added_at: datetime


class InventoryWarning(BaseModel):
    """
    A non-fatal inventory problem recorded while placing an order.

    Attributes:
        product_id (str): Affected product.
        kind (str): `insufficient_stock` or `untracked` (no stock record).
        requested (int): Quantity the order asked for.
        available (Optional[int]): Stock at the time of the failed decrement.
        message (str): Human readable description for the admin.
    """
    product_id: str
    kind: str
    requested: int
    available: Optional[int] = None
    message: str


class OrderView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    idempotency_key: str
    customer: CustomerInfo
    line_items: List[OrderLineView]
    subtotal: Decimal
    total_amount: Decimal
    payment_status: PaymentStatus
    payment_reference: Optional[str] = None
    fulfillment_status: FulfillmentStatus
    notes: Optional[str] = None
    admin_notes: List[AdminNote] = Field(default_factory=list)
    inventory_warnings: List[InventoryWarning] = Field(default_factory=list)
    estimated_delivery_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class OrderResult(BaseModel):
    """
    Result of `create_order`.

    Attributes:
        order (OrderView): The persisted order (new or replayed).
        created (bool): False when the idempotency key matched an existing order.
        tracking_url (str): Public URL to track the order by its number.
    """
    order: OrderView
    created: bool
    tracking_url: str

    @property
    def inventory_warnings(self) -> List[InventoryWarning]:
        return self.order.inventory_warnings

    @property
    def has_inventory_shortfall(self) -> bool:
        return any(w.kind == "insufficient_stock" for w in self.order.inventory_warnings)


class StatusUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    fulfillment_status: FulfillmentStatus = Field(..., alias="fulfillmentStatus")
    admin_note: Optional[str] = Field(None, max_length=500, alias="adminNote")
    send_notification: bool = Field(True, alias="sendNotification")
    estimated_delivery_at: Optional[datetime] = Field(None, alias="estimatedDeliveryTime")


class StatusUpdateResult(BaseModel):
    order: OrderView
    previous_status: FulfillmentStatus
    new_status: FulfillmentStatus
    notified: bool


class PaymentCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: int = Field(..., alias="orderId")
    status: PaymentStatus
    reference: Optional[str] = Field(None, max_length=200)


# --- Inventory ---

class SupplierInfo(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class AlertSettings(BaseModel):
    """
    Per-record alerting policy.

    Attributes:
        isEnabled (bool): Disabled records are never alerted.
        frequency (AlertFrequency): Minimum interval between two alerts.
        alertThreshold (int): At or below this stock level the record is critical.
    """
    model_config = ConfigDict(populate_by_name=True)

    is_enabled: bool = Field(True, alias="isEnabled")
    frequency: AlertFrequency = AlertFrequency.DAILY
    alert_threshold: int = Field(5, ge=0, alias="alertThreshold")


class StockRecordCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., min_length=1, alias="productId")
    current_stock: int = Field(0, ge=0, alias="currentStock")
    minimum_stock: int = Field(10, ge=0, alias="minimumStock")
    maximum_stock: int = Field(100, ge=1, alias="maximumStock")
    unit: StockUnit = StockUnit.SERVINGS
    cost_per_unit: Decimal = Field(Decimal("0"), ge=0, alias="costPerUnit")
    supplier: Optional[SupplierInfo] = None
    alert_settings: AlertSettings = Field(default_factory=AlertSettings, alias="alertSettings")

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.maximum_stock < self.minimum_stock:
            raise ValueError("maximumStock must be greater than or equal to minimumStock")
        return self


class StockRecordUpdate(BaseModel):
    """Partial update of a stock record's settings. Stock levels change only via restock/decrement."""
    model_config = ConfigDict(populate_by_name=True)

    minimum_stock: Optional[int] = Field(None, ge=0, alias="minimumStock")
    maximum_stock: Optional[int] = Field(None, ge=1, alias="maximumStock")
    unit: Optional[StockUnit] = None
    cost_per_unit: Optional[Decimal] = Field(None, ge=0, alias="costPerUnit")
    supplier: Optional[SupplierInfo] = None
    alert_settings: Optional[AlertSettings] = Field(None, alias="alertSettings")
    is_active: Optional[bool] = Field(None, alias="isActive")


class RestockRequest(BaseModel):
    quantity: int = Field(..., gt=0)
    cost: Decimal = Field(Decimal("0"), ge=0)
    notes: str = Field("", max_length=500)


class RestockEntryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    quantity: int
    cost: Decimal
    actor: str
    restocked_at: datetime
    note: str


class StockRecordView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: str
    current_stock: int
    minimum_stock: int
    maximum_stock: int
    unit: StockUnit
    cost_per_unit: Decimal
    supplier: Optional[SupplierInfo] = None
    alert_enabled: bool
    alert_threshold: int
    alert_frequency: AlertFrequency
    last_alert_sent_at: Optional[datetime] = None
    last_restocked_at: Optional[datetime] = None
    restock_history: List[RestockEntryView] = Field(default_factory=list)
    is_active: bool
    status: StockStatus
    created_at: datetime
    updated_at: datetime


class RestockResult(BaseModel):
    record: StockRecordView
    quantity_added: int
    previous_stock: int
    new_stock: int
    total_cost: Decimal


# --- Alerts ---

class AlertOutcome(BaseModel):
    record_id: int
    product_id: str
    status: StockStatus
    notified: bool
    error: Optional[str] = None


class SweepReport(BaseModel):
    """
    Outcome of one sweep run.

    Attributes:
        started_at (datetime): When the sweep began.
        skipped (bool): True if another sweep was already running (nothing was done).
        critical_checked / low_checked (int): Records examined per bucket.
        alerts_sent (List[AlertOutcome]): Records that were notified.
        failures (List[AlertOutcome]): Records whose notification failed.
    """
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    critical_checked: int = 0
    low_checked: int = 0
    alerts_sent: List[AlertOutcome] = Field(default_factory=list)
    failures: List[AlertOutcome] = Field(default_factory=list)


class InventoryReport(BaseModel):
    generated_at: datetime
    total_active: int
    low_count: int
    critical_count: int
    out_of_stock_count: int
    low: List[StockRecordView]
    critical: List[StockRecordView]
    out_of_stock: List[StockRecordView]
