"""SQLAlchemy database models for the settlement core."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

UNITS = Numeric(18, 4)
MONEY = Numeric(14, 2)

# BigInteger autoincrement only works on SQLite as plain INTEGER
EVENT_ID = BigInteger().with_variant(Integer, "sqlite")
EVENT_DATA = JSON().with_variant(JSONB, "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class AccountHolding(Base):
    """
    Running balance of units held by one account.

    A cache of the completed buy/withdraw requests of the account; mutated
    only inside a settlement unit of work and never deleted.
    """

    __tablename__ = "account_holdings"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_units: Mapped[Decimal] = mapped_column(UNITS, nullable=False, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("total_units >= 0", name="non_negative_units"),
    )

    def __repr__(self) -> str:
        """String representation of AccountHolding."""
        return f"<AccountHolding(account_id={self.account_id}, total_units={self.total_units})>"


class SettlementRequest(Base):
    """
    Settlement request records table.

    One row per buy or withdraw attempt. Created in ``pending`` and moved
    exactly once into ``completed``, ``failed`` or ``rejected``.
    """

    __tablename__ = "settlement_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    amount_currency: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    units: Mapped[Decimal] = mapped_column(UNITS, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    external_order_id: Mapped[str | None] = mapped_column(
        String(128), unique=True, nullable=True
    )
    external_payment_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payout_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_currency > 0", name="positive_amount"),
        CheckConstraint("units > 0", name="positive_units"),
        CheckConstraint("unit_price > 0", name="positive_price"),
        CheckConstraint("kind IN ('buy', 'withdraw')", name="valid_kind"),
        CheckConstraint(
            "state IN ('pending', 'completed', 'failed', 'rejected')",
            name="valid_state",
        ),
        Index("idx_settlement_requests_account_kind_state", "account_id", "kind", "state"),
    )

    def __repr__(self) -> str:
        """String representation of SettlementRequest."""
        return (
            f"<SettlementRequest(id={self.id}, account_id={self.account_id}, "
            f"kind={self.kind}, units={self.units}, state={self.state})>"
        )


class SettlementRequestEvent(Base):
    """
    State history of settlement requests.

    Append-only: one row for the creation and one per terminal transition.
    """

    __tablename__ = "settlement_request_events"

    id: Mapped[int] = mapped_column(EVENT_ID, primary_key=True, autoincrement=True)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("settlement_requests.id"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(EVENT_DATA, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        """String representation of SettlementRequestEvent."""
        return (
            f"<SettlementRequestEvent(id={self.id}, request_id={self.request_id}, "
            f"type={self.event_type})>"
        )
