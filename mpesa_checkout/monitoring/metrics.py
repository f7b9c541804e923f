"""
Prometheus metrics for M-Pesa checkout monitoring.

Tracks:
- STK push requests by outcome
- Daraja API calls and errors
- Callback outcomes and processing duration
- Pending ledger depth and sweeper activity
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Push metrics
stk_push_requests_total = Counter(
    "stk_push_requests_total",
    "Total STK push initiation attempts",
    ["status"],  # accepted, rejected, invalid, amount_mismatch, error
)

stk_push_amount_kes = Histogram(
    "stk_push_amount_kes",
    "Requested STK push amounts in shillings",
    buckets=(10, 50, 100, 500, 1000, 5000, 10000, 50000, 150000),
)

# Daraja API metrics
daraja_api_requests_total = Counter(
    "daraja_api_requests_total",
    "Total Daraja API requests",
    ["operation", "status"],  # operation: oauth, stk_push, stk_query
)

daraja_api_errors_total = Counter(
    "daraja_api_errors_total",
    "Total Daraja API errors",
    ["error_type"],  # auth, transport, rejected
)

daraja_api_duration_seconds = Histogram(
    "daraja_api_duration_seconds",
    "Daraja API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Callback metrics
mpesa_callbacks_total = Counter(
    "mpesa_callbacks_total",
    "Total M-Pesa callbacks by reconciliation outcome",
    ["outcome"],
)

mpesa_callback_duration_seconds = Histogram(
    "mpesa_callback_duration_seconds",
    "Callback processing duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

# Ledger metrics
mpesa_pending_transactions = Gauge(
    "mpesa_pending_transactions",
    "Number of ledger entries still pending",
)

mpesa_expired_transactions_total = Counter(
    "mpesa_expired_transactions_total",
    "Pending ledger entries swept to failed after timing out",
)

sweeper_last_run_timestamp = Gauge(
    "sweeper_last_run_timestamp",
    "Timestamp of last pending sweeper run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_push_request(status: str, amount: float | None = None) -> None:
        """Record an STK push initiation attempt."""
        stk_push_requests_total.labels(status=status).inc()
        if amount is not None:
            stk_push_amount_kes.observe(amount)

    @staticmethod
    def record_daraja_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a Daraja API call."""
        daraja_api_requests_total.labels(operation=operation, status=status).inc()
        daraja_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_daraja_error(error_type: str) -> None:
        """Record a Daraja API error."""
        daraja_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def record_callback(outcome: str, duration_seconds: float) -> None:
        """Record callback processing."""
        mpesa_callbacks_total.labels(outcome=outcome).inc()
        mpesa_callback_duration_seconds.observe(duration_seconds)

    @staticmethod
    def set_pending_depth(count: int) -> None:
        """Set the pending ledger depth."""
        mpesa_pending_transactions.set(count)

    @staticmethod
    def record_sweep(expired_count: int) -> None:
        """Record a sweeper run."""
        mpesa_expired_transactions_total.inc(expired_count)
        sweeper_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
