"""Unit price lookup used to value requests and portfolios."""
import asyncio
from decimal import Decimal
from typing import Optional, Protocol

import structlog

from bullion_settlement.core.errors import PriceUnavailable
from bullion_settlement.core.states import quantize_currency, to_decimal

logger = structlog.get_logger(__name__)


class PriceOracle(Protocol):
    async def current_unit_price(self) -> Decimal:
        """Current currency-per-unit price. Raises PriceUnavailable."""
        ...


class FixedPriceOracle:
    """
    Administrator-set unit price.

    Holds a single current price that an administrator updates; a missing or
    non-positive price makes every lookup fail with PriceUnavailable.
    """

    def __init__(self, price: Optional[Decimal | str | int] = None):
        self._price: Optional[Decimal] = None
        self._lock = asyncio.Lock()
        if price is not None:
            self._price = self._validate(price)

    @staticmethod
    def _validate(price: object) -> Decimal:
        value = to_decimal(price)
        if value is None or value <= 0:
            raise PriceUnavailable(f"Invalid unit price: {price!r}")
        return quantize_currency(value)

    async def set_price(self, price: Decimal | str | int) -> Decimal:
        value = self._validate(price)
        async with self._lock:
            previous, self._price = self._price, value
        logger.info("unit_price_updated", previous=str(previous), price=str(value))
        return value

    async def current_unit_price(self) -> Decimal:
        async with self._lock:
            price = self._price
        if price is None:
            logger.error("unit_price_not_set")
            raise PriceUnavailable("Unit price is not set")
        return price
