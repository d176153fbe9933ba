"""
errors.py — Error Taxonomy of the Ordering Core

Every error the core raises to its callers derives from `OrderingError` and
carries a stable `kind` string. The HTTP layer maps kinds to status codes;
other callers can switch on the class or the kind.
"""


class OrderingError(Exception):
    """Base exception for all ordering core errors."""

    kind = "ordering_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(OrderingError):
    """Raised for malformed input that passed schema validation (e.g. duplicate lines)."""

    kind = "validation_error"


class ProductUnavailableError(OrderingError):
    """Raised when a product is missing, inactive or not sold in the customer's region."""

    kind = "product_unavailable"

    def __init__(self, product_id: str, reason: str):
        self.product_id = product_id
        self.reason = reason
        super().__init__(f"Product {product_id} is not available: {reason}")


class DuplicateIdempotencyKeyError(OrderingError):
    """Raised internally when an insert loses the race on an idempotency key."""

    kind = "duplicate_idempotency_key"

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(f"An order with idempotency key {idempotency_key!r} already exists")


class InsufficientStockError(OrderingError):
    """Raised by the stock ledger when a decrement would make stock negative."""

    kind = "insufficient_stock"

    def __init__(self, product_id: str, available: int, requested: int):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for product {product_id}. Available: {available}, Required: {requested}"
        )


class AlreadyExistsError(OrderingError):
    """Raised when a stock record for a product already exists."""

    kind = "already_exists"


class InvalidTransitionError(OrderingError):
    """Raised for a disallowed fulfillment or payment status change."""

    kind = "invalid_transition"

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change status from '{current}' to '{requested}'")


class NotFoundError(OrderingError):
    kind = "not_found"


class ServiceUnavailableError(OrderingError):
    """Raised when an external collaborator (e.g. the catalog) times out or fails."""

    kind = "service_unavailable"


class NotifierError(OrderingError):
    """Raised by the notification client. Callers in the core absorb it."""

    kind = "notifier_failure"
