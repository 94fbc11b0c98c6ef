"""
Ledger audit.

The holding total is a cache of the account's completed requests:

    total_units == sum(completed buy units) - sum(completed withdraw units)

LedgerAuditor re-derives the right-hand side from the record store and
reports every account where the two disagree.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bullion_settlement.core.ledger import ZERO
from bullion_settlement.core.records import TransactionRecordStore
from bullion_settlement.core.states import RequestKind, quantize_units
from bullion_settlement.database.models import AccountHolding
from bullion_settlement.monitoring import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LedgerDiscrepancy:
    account_id: str
    recorded_units: Decimal
    derived_units: Decimal

    @property
    def difference(self) -> Decimal:
        return self.recorded_units - self.derived_units


class LedgerAuditor:
    """Compares cached holdings against completed requests."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        records: Optional[TransactionRecordStore] = None,
    ):
        self.session_factory = session_factory
        self.records = records or TransactionRecordStore()

    async def audit(self, account_id: Optional[str] = None) -> List[LedgerDiscrepancy]:
        """
        Audit one account, or every account with a holding or a completed request.

        Returns:
            List of discrepancies, empty when the ledger is consistent
        """
        async with self.session_factory() as db:
            totals = await self.records.completed_totals(db, account_id)
            stmt = select(AccountHolding.account_id, AccountHolding.total_units)
            if account_id is not None:
                stmt = stmt.where(AccountHolding.account_id == account_id)
            recorded = {row.account_id: row.total_units for row in await db.execute(stmt)}

        discrepancies = []
        for account in sorted(set(recorded) | set(totals)):
            by_kind = totals.get(account, {})
            derived = quantize_units(
                by_kind.get(RequestKind.BUY.value, {}).get("units", ZERO)
                - by_kind.get(RequestKind.WITHDRAW.value, {}).get("units", ZERO)
            )
            held = quantize_units(recorded.get(account, ZERO))
            if held != derived:
                discrepancies.append(
                    LedgerDiscrepancy(
                        account_id=account, recorded_units=held, derived_units=derived
                    )
                )
                logger.error(
                    "ledger_discrepancy_detected",
                    account_id=account,
                    recorded_units=str(held),
                    derived_units=str(derived),
                )

        if account_id is None:
            metrics.ledger_audit_discrepancies.set(len(discrepancies))
        logger.info(
            "ledger_audit_completed",
            accounts_checked=len(set(recorded) | set(totals)),
            discrepancies=len(discrepancies),
        )
        return discrepancies
