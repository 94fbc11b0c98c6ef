"""Settlement core: state machine, ledger, record store and engine."""
from .errors import FailureKind, SettlementError
from .outcomes import Failure, Ok, OutcomeStatus, RequestSnapshot, SettlementOutcome
from .states import RequestKind, RequestState

__all__ = [
    "Failure",
    "FailureKind",
    "Ok",
    "OutcomeStatus",
    "RequestKind",
    "RequestSnapshot",
    "RequestState",
    "SettlementError",
    "SettlementOutcome",
]
