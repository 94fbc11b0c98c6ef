"""
Transaction record store.

Append-mostly storage of settlement requests and their state history. Like
the ledger, it works inside a session owned by the caller.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from bullion_settlement.core.states import RequestKind, RequestState
from bullion_settlement.database.models import (
    SettlementRequest,
    SettlementRequestEvent,
    utcnow,
)

logger = structlog.get_logger(__name__)


def mint_external_order_id(account_id: str, request_id: uuid.UUID) -> str:
    """Gateway order id for a request: unique, and traceable back to the row."""
    return f"BULLION_{account_id}_{request_id.hex}"


class TransactionRecordStore:
    """Settlement request persistence and lookups."""

    async def add_pending(
        self,
        db: AsyncSession,
        *,
        account_id: str,
        kind: RequestKind,
        amount_currency: Decimal,
        units: Decimal,
        unit_price: Decimal,
        currency: str,
        correlation_id: uuid.UUID,
    ) -> SettlementRequest:
        """
        Insert a new pending request.

        Buy requests get their external order id in the same insert, so a
        row is never visible without it.
        """
        request_id = uuid.uuid4()
        now = utcnow()
        request = SettlementRequest(
            id=request_id,
            account_id=account_id,
            kind=kind.value,
            state=RequestState.PENDING.value,
            amount_currency=amount_currency,
            units=units,
            unit_price=unit_price,
            currency=currency,
            external_order_id=(
                mint_external_order_id(account_id, request_id)
                if kind is RequestKind.BUY
                else None
            ),
            created_at=now,
            updated_at=now,
        )
        db.add(request)
        await db.flush()

        await self.record_event(
            db,
            request,
            event_type="request.created",
            event_data={
                "kind": kind.value,
                "amount_currency": str(amount_currency),
                "units": str(units),
                "unit_price": str(unit_price),
                "external_order_id": request.external_order_id,
            },
            correlation_id=correlation_id,
        )
        return request

    async def get(self, db: AsyncSession, request_id: uuid.UUID) -> Optional[SettlementRequest]:
        return await db.get(SettlementRequest, request_id)

    async def get_by_external_order_id(
        self, db: AsyncSession, external_order_id: str, *, lock: bool = False
    ) -> Optional[SettlementRequest]:
        """
        Find a buy request by its gateway order id.

        Args:
            db: Database session
            external_order_id: Gateway order ID
            lock: Take an exclusive row lock (``SELECT ... FOR UPDATE``)
        """
        stmt = select(SettlementRequest).where(
            SettlementRequest.external_order_id == external_order_id,
            SettlementRequest.kind == RequestKind.BUY.value,
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def lock(self, db: AsyncSession, request_id: uuid.UUID) -> Optional[SettlementRequest]:
        stmt = (
            select(SettlementRequest)
            .where(SettlementRequest.id == request_id)
            .with_for_update()
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def transition(
        self,
        db: AsyncSession,
        request: SettlementRequest,
        new_state: RequestState,
        **fields: Any,
    ) -> bool:
        """
        Move a pending request into a terminal state.

        Compare-and-swap on ``state``: the update only matches while the row
        is still pending. Returns False when another unit of work got there
        first, in which case nothing was written.
        """
        if not new_state.is_terminal:
            raise ValueError(f"Cannot transition into non-terminal state {new_state.value}")

        now = utcnow()
        stmt = (
            update(SettlementRequest)
            .where(
                SettlementRequest.id == request.id,
                SettlementRequest.state == RequestState.PENDING.value,
            )
            .values(state=new_state.value, updated_at=now, settled_at=now, **fields)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            logger.warning(
                "request_transition_lost_race",
                request_id=str(request.id),
                target_state=new_state.value,
            )
            return False

        # Mirror the row onto the loaded object without scheduling another UPDATE
        for name, value in {
            "state": new_state.value, "updated_at": now, "settled_at": now, **fields
        }.items():
            set_committed_value(request, name, value)
        return True

    async def record_event(
        self,
        db: AsyncSession,
        request: SettlementRequest,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: uuid.UUID,
    ) -> None:
        """Append a state-history event for a request."""
        db.add(
            SettlementRequestEvent(
                request_id=request.id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=correlation_id,
                created_at=utcnow(),
            )
        )
        await db.flush()

    async def history(
        self, db: AsyncSession, request_id: uuid.UUID
    ) -> Sequence[SettlementRequestEvent]:
        stmt = (
            select(SettlementRequestEvent)
            .where(SettlementRequestEvent.request_id == request_id)
            .order_by(SettlementRequestEvent.id)
        )
        result = await db.execute(stmt)
        return result.scalars().all()

    async def list_requests(
        self,
        db: AsyncSession,
        account_id: Optional[str] = None,
        limit: int = 100,
    ) -> Sequence[SettlementRequest]:
        """Requests newest first, for one account or across all accounts."""
        stmt = select(SettlementRequest)
        if account_id is not None:
            stmt = stmt.where(SettlementRequest.account_id == account_id)
        stmt = stmt.order_by(SettlementRequest.created_at.desc()).limit(limit)
        result = await db.execute(stmt)
        return result.scalars().all()

    async def completed_totals(
        self, db: AsyncSession, account_id: Optional[str] = None
    ) -> Dict[str, Dict[str, Dict[str, Decimal]]]:
        """
        Sum units and currency of completed requests per account and kind.

        Returns:
            ``{account_id: {kind: {"units": Decimal, "amount": Decimal}}}``
        """
        stmt = select(
            SettlementRequest.account_id,
            SettlementRequest.kind,
            func.sum(SettlementRequest.units).label("units"),
            func.sum(SettlementRequest.amount_currency).label("amount"),
        ).where(SettlementRequest.state == RequestState.COMPLETED.value)
        if account_id is not None:
            stmt = stmt.where(SettlementRequest.account_id == account_id)
        stmt = stmt.group_by(SettlementRequest.account_id, SettlementRequest.kind)

        totals: Dict[str, Dict[str, Dict[str, Decimal]]] = {}
        result = await db.execute(stmt)
        for row in result:
            totals.setdefault(row.account_id, {})[row.kind] = {
                "units": Decimal(str(row.units or 0)),
                "amount": Decimal(str(row.amount or 0)),
            }
        return totals
