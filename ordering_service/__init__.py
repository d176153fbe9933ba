"""Guest ordering core: order placement, stock ledger and stock alerting."""

__version__ = "1.0.0"
