"""
Settlement state machine.

    BUY:       pending ──PAID──────────────▶ completed
                  └────FAILED/EXPIRED/─────▶ failed
                       CANCELLED

    WITHDRAW:  pending ──approve───────────▶ completed
                  ├────reject──────────────▶ rejected
                  └────approve, short──────▶ rejected (auto)

completed, failed and rejected are absorbing.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

UNIT_QUANTUM = Decimal("0.0001")
CURRENCY_QUANTUM = Decimal("0.01")

# Exclusive upper bounds of the Numeric(18, 4) units and Numeric(14, 2) money columns
MAX_UNITS = Decimal("1e14")
MAX_CURRENCY = Decimal("1e12")


class RequestKind(str, Enum):
    BUY = "buy"
    WITHDRAW = "withdraw"


class RequestState(str, Enum):
    """Lifecycle states of a settlement request."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestState.PENDING


class SettlementAction(str, Enum):
    """What a reported gateway status asks the engine to do."""

    COMPLETE = "complete"
    FAIL = "fail"
    NONE = "none"


PAID_STATUSES = frozenset({"PAID"})
TERMINAL_FAILURE_STATUSES = frozenset(
    {"FAILED", "EXPIRED", "CANCELLED", "CANCELED", "USER_DROPPED"}
)


def action_for_status(reported_status: str | None) -> SettlementAction:
    """
    Map a gateway order status to a settlement action.

    Anything that is neither paid nor a terminal failure (ACTIVE, PENDING,
    unknown values) leaves the request untouched.
    """
    status = (reported_status or "").strip().upper()
    if status in PAID_STATUSES:
        return SettlementAction.COMPLETE
    if status in TERMINAL_FAILURE_STATUSES:
        return SettlementAction.FAIL
    return SettlementAction.NONE


def target_state(action: SettlementAction) -> RequestState:
    if action is SettlementAction.COMPLETE:
        return RequestState.COMPLETED
    if action is SettlementAction.FAIL:
        return RequestState.FAILED
    raise ValueError(f"Action {action.value} has no target state")


def to_decimal(value: object) -> Decimal | None:
    """Parse a numeric input, returning None for anything that is not a finite number."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return number


def quantize_units(value: Decimal) -> Decimal:
    return value.quantize(UNIT_QUANTUM, rounding=ROUND_HALF_UP)


def quantize_currency(value: Decimal) -> Decimal:
    return value.quantize(CURRENCY_QUANTUM, rounding=ROUND_HALF_UP)
