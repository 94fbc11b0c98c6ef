"""
Holdings ledger.

One running balance per account. Every method takes the caller's session:
the ledger never opens or commits a unit of work itself, so a balance change
is always committed (or rolled back) together with the state transition
that caused it.
"""
from decimal import Decimal
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from bullion_settlement.core.states import quantize_units
from bullion_settlement.database.models import AccountHolding, utcnow

logger = structlog.get_logger(__name__)

_UPSERT_DIALECTS: dict[str, Any] = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

ZERO = Decimal("0")


class HoldingsLedger:
    """Reads and mutates account holdings inside a caller-owned session."""

    async def balance(self, db: AsyncSession, account_id: str) -> Decimal:
        """Unlocked read of the current balance; zero for unknown accounts."""
        stmt = select(AccountHolding.total_units).where(AccountHolding.account_id == account_id)
        result = await db.execute(stmt)
        units = result.scalar_one_or_none()
        return units if units is not None else ZERO

    async def lock(self, db: AsyncSession, account_id: str) -> Optional[AccountHolding]:
        """Load the holding row with an exclusive row lock."""
        stmt = (
            select(AccountHolding)
            .where(AccountHolding.account_id == account_id)
            .with_for_update()
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def credit(self, db: AsyncSession, account_id: str, units: Decimal) -> None:
        """
        Add units to an account, creating the holding on first credit.

        Uses an atomic upsert where the dialect supports it so two first-time
        credits for the same account cannot collide on the primary key.
        """
        if units <= 0:
            raise ValueError(f"Credit must be positive, got {units}")

        now = utcnow()
        insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
        if insert is not None:
            stmt = insert(AccountHolding).values(
                account_id=account_id, total_units=units, updated_at=now
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[AccountHolding.account_id],
                set_={
                    "total_units": AccountHolding.total_units + stmt.excluded.total_units,
                    "updated_at": now,
                },
            )
            await db.execute(stmt)
        else:
            holding = await self.lock(db, account_id)
            if holding is None:
                db.add(AccountHolding(account_id=account_id, total_units=units, updated_at=now))
            else:
                holding.total_units = quantize_units(holding.total_units + units)
            await db.flush()

        logger.info("holding_credited", account_id=account_id, units=str(units))

    async def debit(self, db: AsyncSession, holding: AccountHolding, units: Decimal) -> Decimal:
        """
        Remove units from a locked holding, clamping at zero.

        Callers check sufficiency under the same lock first; the clamp only
        guards the non-negative constraint.

        Returns:
            Decimal: The new balance
        """
        remaining = quantize_units(holding.total_units - units)
        if remaining < 0:
            logger.error(
                "holding_debit_clamped",
                account_id=holding.account_id,
                balance=str(holding.total_units),
                units=str(units),
            )
            remaining = ZERO
        holding.total_units = remaining
        holding.updated_at = utcnow()
        await db.flush()

        logger.info(
            "holding_debited",
            account_id=holding.account_id,
            units=str(units),
            balance=str(remaining),
        )
        return remaining
