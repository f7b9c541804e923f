"""M-Pesa STK push checkout and callback reconciliation service."""

__version__ = "1.0.0"
