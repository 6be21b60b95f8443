"""STK Push payment session reconciliation service."""

__version__ = "1.0.0"
