"""
Prometheus metrics for STK Push reconciliation monitoring.

Tracks:
- Payment sessions initiated
- Terminal transitions by winning path
- Apply no-ops (duplicate callbacks, lost races)
- Provider API calls and errors
- Callback deliveries
- Sweep runs
- Referral credits and receipt redemptions
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Intake metrics
sessions_initiated_total = Counter(
    "stk_sessions_initiated_total",
    "Total STK Push sessions initiated",
    ["category", "outcome"],  # outcome: accepted, rejected, unavailable
)

payment_amount_kes = Histogram(
    "stk_payment_amount_kes",
    "Requested payment amounts in KES",
    buckets=(10, 50, 100, 150, 200, 500, 1000, 5000, 10000),
)

# Transition metrics
transitions_total = Counter(
    "stk_transitions_total",
    "Terminal transitions applied",
    ["source", "status"],  # source: callback, poll, sweep, intake
)

apply_noops_total = Counter(
    "stk_apply_noops_total",
    "Apply calls that did not change state",
    ["source", "reason"],  # reason: already_terminal, pending, unknown_code, lost_race
)

# Provider API metrics
provider_requests_total = Counter(
    "mpesa_api_requests_total",
    "Total Daraja API requests",
    ["operation", "status"],  # operation: token, push, query
)

provider_errors_total = Counter(
    "mpesa_api_errors_total",
    "Total Daraja API errors",
    ["operation", "error_type"],  # rejected, unavailable
)

provider_duration_seconds = Histogram(
    "mpesa_api_duration_seconds",
    "Daraja API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

provider_circuit_breaker_state = Gauge(
    "mpesa_circuit_breaker_state",
    "Daraja circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Callback metrics
callbacks_received_total = Counter(
    "stk_callbacks_received_total",
    "Total STK callbacks received",
    ["outcome"],  # applied, noop, not_found, malformed, error
)

callback_processing_duration_seconds = Histogram(
    "stk_callback_processing_duration_seconds",
    "Callback processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Sweep metrics
sweep_items_total = Counter(
    "stk_sweep_items_total",
    "Sessions examined by the bulk sync sweeper",
    ["result"],  # completed, failed, pending, expired_by_deadline, error
)

sweep_duration_seconds = Histogram(
    "stk_sweep_duration_seconds",
    "Bulk sync sweep duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300),
)

sweep_last_run_timestamp = Gauge(
    "stk_sweep_last_run_timestamp",
    "Timestamp of the last completed sweep",
)

# Referral and redemption metrics
referral_credits_total = Counter(
    "stk_referral_credits_total",
    "Referral credit dispatch outcomes",
    ["outcome"],  # success, already_credited, not_found, skipped, error
)

redemptions_total = Counter(
    "stk_receipt_redemptions_total",
    "Receipt redemption attempts",
    ["outcome"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_session_initiated(category: str, outcome: str, amount: int) -> None:
        """Record an intake attempt."""
        sessions_initiated_total.labels(category=category, outcome=outcome).inc()
        payment_amount_kes.observe(amount)

    @staticmethod
    def record_transition(source: str, status: str) -> None:
        """Record a terminal transition."""
        transitions_total.labels(source=source, status=status).inc()

    @staticmethod
    def record_apply_noop(source: str, reason: str) -> None:
        """Record an apply call that changed nothing."""
        apply_noops_total.labels(source=source, reason=reason).inc()

    @staticmethod
    def record_provider_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a Daraja API call."""
        provider_requests_total.labels(operation=operation, status=status).inc()
        provider_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_provider_error(operation: str, error_type: str) -> None:
        """Record a Daraja API error."""
        provider_errors_total.labels(operation=operation, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_callback(outcome: str, duration_seconds: float) -> None:
        """Record callback processing."""
        callbacks_received_total.labels(outcome=outcome).inc()
        callback_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_sweep_item(result: str) -> None:
        """Record one sweep item result."""
        sweep_items_total.labels(result=result).inc()

    @staticmethod
    def record_sweep_run(duration_seconds: float) -> None:
        """Record a finished sweep."""
        sweep_duration_seconds.observe(duration_seconds)
        sweep_last_run_timestamp.set(time.time())

    @staticmethod
    def record_referral_credit(outcome: str) -> None:
        """Record a referral dispatch outcome."""
        referral_credits_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_redemption(outcome: str) -> None:
        """Record a receipt redemption outcome."""
        redemptions_total.labels(outcome=outcome).inc()


# Export singleton instance
metrics = MetricsCollector()
