"""
Outcome schemas returned by the settlement engine.

Every public engine operation returns either ``Ok`` or ``Failure``; callers
switch on ``outcome.ok`` (or ``isinstance``) and map failures to status codes
via ``Failure.http_status``.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from bullion_settlement.core.errors import FailureKind, SettlementError
from bullion_settlement.core.states import RequestKind, RequestState


class OutcomeStatus(str, Enum):
    CREATED = "created"
    STILL_PENDING = "still_pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    AUTO_REJECTED = "auto_rejected"


_STATUS_BY_STATE = {
    RequestState.PENDING: OutcomeStatus.STILL_PENDING,
    RequestState.COMPLETED: OutcomeStatus.COMPLETED,
    RequestState.FAILED: OutcomeStatus.FAILED,
    RequestState.REJECTED: OutcomeStatus.REJECTED,
}


def status_for_state(state: RequestState) -> OutcomeStatus:
    return _STATUS_BY_STATE[RequestState(state)]


class RequestSnapshot(BaseModel):
    """Detached, read-only view of a settlement request row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID = Field(..., description="Settlement request ID")
    account_id: str = Field(..., description="Owning account")
    kind: RequestKind = Field(..., description="buy or withdraw")
    state: RequestState = Field(..., description="Current state")
    amount_currency: Decimal = Field(..., description="Currency amount paid or paid out")
    units: Decimal = Field(..., description="Units bought or sold")
    unit_price: Decimal = Field(..., description="Unit price at creation time")
    currency: str = Field(..., description="Currency code")
    external_order_id: Optional[str] = Field(default=None, description="Gateway order ID")
    external_payment_ref: Optional[str] = Field(default=None, description="Gateway payment ID")
    payout_ref: Optional[str] = Field(default=None, description="Payout reference")
    rejection_reason: Optional[str] = Field(default=None, description="Why it was rejected")
    created_at: datetime = Field(..., description="Creation timestamp")
    settled_at: Optional[datetime] = Field(default=None, description="Terminal transition time")

    @property
    def awaiting_decision(self) -> bool:
        """True for withdrawals still waiting on an administrator."""
        return self.kind is RequestKind.WITHDRAW and self.state is RequestState.PENDING


class Ok(BaseModel):
    """Successful outcome, including idempotent replays."""

    model_config = ConfigDict(frozen=True)

    ok: Literal[True] = True
    status: OutcomeStatus
    request: RequestSnapshot
    replayed: bool = Field(
        default=False, description="Request was already terminal; nothing was mutated"
    )
    conflict: bool = Field(
        default=False,
        description="Replay whose recorded outcome differs from the one attempted",
    )
    payment_session: Optional[str] = Field(
        default=None, description="Gateway checkout session token (buy creation only)"
    )


class Failure(BaseModel):
    """Failed outcome carrying one of the named failure kinds."""

    model_config = ConfigDict(frozen=True)

    ok: Literal[False] = False
    kind: FailureKind
    message: str
    http_status: int = 500

    @classmethod
    def from_error(cls, error: SettlementError) -> "Failure":
        return cls(kind=error.kind, message=error.message, http_status=error.http_status)


SettlementOutcome = Union[Ok, Failure]
