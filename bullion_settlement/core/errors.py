"""
Settlement error taxonomy.

Every error carries a failure kind (for callers that switch on it), a
message safe to show to users, and the HTTP status a transport layer should
map it to. The engine never lets these escape: it turns them into
``Failure`` outcomes at its public boundary.
"""
from enum import Enum
from typing import Any, Dict


class FailureKind(str, Enum):
    INVALID_AMOUNT = "invalid_amount"
    PRICE_UNAVAILABLE = "price_unavailable"
    IDENTITY_INCOMPLETE = "identity_incomplete"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    REQUEST_NOT_FOUND = "request_not_found"
    ALREADY_DECIDED = "already_decided"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    SIGNATURE_INVALID = "signature_invalid"
    INVALID_CALLBACK_PAYLOAD = "invalid_callback_payload"


class SettlementError(Exception):
    """Base exception for settlement errors."""

    kind: FailureKind
    http_status: int = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.kind.value,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class InvalidAmount(SettlementError):
    kind = FailureKind.INVALID_AMOUNT
    http_status = 400


class PriceUnavailable(InvalidAmount):
    """
    No usable unit price.

    A specialisation of InvalidAmount: a request cannot be valued, so it
    cannot be created.
    """

    kind = FailureKind.PRICE_UNAVAILABLE
    http_status = 503


class IdentityIncomplete(SettlementError):
    kind = FailureKind.IDENTITY_INCOMPLETE
    http_status = 403


class InsufficientBalance(SettlementError):
    kind = FailureKind.INSUFFICIENT_BALANCE
    http_status = 400


class RequestNotFound(SettlementError):
    kind = FailureKind.REQUEST_NOT_FOUND
    http_status = 404


class AlreadyDecided(SettlementError):
    kind = FailureKind.ALREADY_DECIDED
    http_status = 409


class GatewayUnavailable(SettlementError):
    kind = FailureKind.GATEWAY_UNAVAILABLE
    http_status = 502


class SignatureInvalid(SettlementError):
    kind = FailureKind.SIGNATURE_INVALID
    http_status = 401


class InvalidCallbackPayload(SettlementError):
    kind = FailureKind.INVALID_CALLBACK_PAYLOAD
    http_status = 400
