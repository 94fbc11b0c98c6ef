"""
Payment gateway boundary.

The settlement engine only knows this protocol; the Cashfree HTTP client is
one implementation and tests substitute fakes.
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol, runtime_checkable


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(Exception):
    """Raised when a gateway call fails."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type is not GatewayErrorType.PERMANENT


@dataclass(frozen=True)
class CustomerIdentity:
    """Customer details the gateway needs to open a checkout."""

    customer_id: str
    name: str
    email: str
    phone: str


@dataclass(frozen=True)
class RemoteOrderStatus:
    """Order state as reported by the gateway."""

    status: str
    payment_ref: Optional[str]
    amount: Optional[Decimal] = None


@runtime_checkable
class GatewayAdapter(Protocol):
    async def create_remote_order(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        customer: CustomerIdentity,
        note: Optional[str] = None,
    ) -> str:
        """Create the remote order and return its checkout session token."""
        ...

    async def fetch_remote_order_status(self, order_id: str) -> RemoteOrderStatus:
        ...

    def verify_callback_authenticity(
        self, signature: str, raw_payload: bytes, timestamp: str
    ) -> bool:
        ...
