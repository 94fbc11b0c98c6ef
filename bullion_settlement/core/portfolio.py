"""Portfolio valuation using average cost basis."""
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bullion_settlement.core.ledger import ZERO, HoldingsLedger
from bullion_settlement.core.records import TransactionRecordStore
from bullion_settlement.core.states import RequestKind, quantize_currency, quantize_units
from bullion_settlement.integrations.price_oracle import PriceOracle

logger = structlog.get_logger(__name__)


class PortfolioValuation(BaseModel):
    """Value of one account's holding at the current unit price."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    total_units: Decimal = Field(..., description="Units held now")
    current_value: Decimal = Field(..., description="total_units at the current price")
    invested_amount: Decimal = Field(..., description="Cost basis of the units held")
    profit_loss: Decimal = Field(..., description="current_value - invested_amount")
    unit_price: Decimal = Field(..., description="Price used for the valuation")


class PortfolioValuator:
    """
    Values holdings against the price oracle.

    The cost basis of held units is their share of everything spent on
    completed buys: ``units_held * (total_spent / total_units_bought)``.
    Withdrawals reduce the units held but not the average cost.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        price_oracle: PriceOracle,
        ledger: Optional[HoldingsLedger] = None,
        records: Optional[TransactionRecordStore] = None,
    ):
        self.session_factory = session_factory
        self.price_oracle = price_oracle
        self.ledger = ledger or HoldingsLedger()
        self.records = records or TransactionRecordStore()

    async def value(self, account_id: str) -> PortfolioValuation:
        """
        Value an account's holding. Raises PriceUnavailable without a price.
        """
        price = await self.price_oracle.current_unit_price()

        async with self.session_factory() as db:
            held = await self.ledger.balance(db, account_id)
            totals = await self.records.completed_totals(db, account_id)

        bought = totals.get(account_id, {}).get(RequestKind.BUY.value, {})
        units_bought = bought.get("units", ZERO)
        spent = bought.get("amount", ZERO)

        if units_bought > 0 and held > 0:
            invested = quantize_currency(held * spent / units_bought)
        else:
            invested = quantize_currency(ZERO)
        current_value = quantize_currency(held * price)

        valuation = PortfolioValuation(
            account_id=account_id,
            total_units=quantize_units(held),
            current_value=current_value,
            invested_amount=invested,
            profit_loss=current_value - invested,
            unit_price=price,
        )
        logger.debug(
            "portfolio_valued",
            account_id=account_id,
            total_units=str(valuation.total_units),
            current_value=str(current_value),
            profit_loss=str(valuation.profit_loss),
        )
        return valuation
