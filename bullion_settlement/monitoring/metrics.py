"""
Prometheus metrics for settlement monitoring.

Tracks:
- Settlement requests created, by kind
- Terminal transitions, by kind, state and confirmation path
- Idempotent replays
- Withdrawal auto-rejections
- Gateway calls, errors and circuit breaker state
- Callback intake results
- Ledger audit discrepancies
"""
from prometheus_client import Counter, Gauge, Histogram

# Settlement metrics
settlement_requests_created_total = Counter(
    "settlement_requests_created_total",
    "Total settlement requests created",
    ["kind"],
)

settlement_transitions_total = Counter(
    "settlement_transitions_total",
    "Total terminal transitions applied",
    ["kind", "state", "path"],  # path: callback, poll, admin, create
)

settlement_replays_total = Counter(
    "settlement_replays_total",
    "Settlement attempts against an already-terminal request",
    ["path", "conflict"],
)

withdrawal_auto_rejections_total = Counter(
    "withdrawal_auto_rejections_total",
    "Withdrawals rejected at approval time for insufficient balance",
)

settlement_failures_total = Counter(
    "settlement_failures_total",
    "Settlement operations returning a failure outcome",
    ["operation", "kind"],
)

settlement_operation_duration_seconds = Histogram(
    "settlement_operation_duration_seconds",
    "Settlement engine operation duration in seconds",
    ["operation"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],  # status: success, error
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Callback metrics
callback_events_total = Counter(
    "callback_events_total",
    "Gateway callbacks received, by processing result",
    ["result"],  # processed, still_pending, unknown_order, rejected
)

# Ledger audit metrics
ledger_audit_discrepancies = Gauge(
    "ledger_audit_discrepancies",
    "Accounts whose cached holding disagrees with their completed requests",
)

CIRCUIT_STATE_VALUES = {"closed": 0, "open": 1, "half_open": 2}
