"""
Settlement engine.

Moves buy and withdraw requests through the settlement state machine:
1. create_request reserves a pending row (and, for buys, a gateway order)
2. settle_from_external_status applies gateway-reported outcomes; the signed
   callback and the client poll both call it
3. decide_withdrawal applies an administrator's approve/reject decision

Every terminal transition runs in one unit of work that locks the request
row, re-checks its state, and commits the state change together with any
ledger change. A request that is already terminal is never mutated again:
the caller gets the recorded outcome back (idempotent replay).
"""
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, List, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bullion_settlement.config import Settings, get_settings
from bullion_settlement.core.errors import (
    AlreadyDecided,
    GatewayUnavailable,
    InsufficientBalance,
    InvalidAmount,
    IdentityIncomplete,
    PriceUnavailable,
    RequestNotFound,
    SettlementError,
)
from bullion_settlement.core.ledger import ZERO, HoldingsLedger
from bullion_settlement.core.outcomes import (
    Failure,
    Ok,
    OutcomeStatus,
    RequestSnapshot,
    SettlementOutcome,
    status_for_state,
)
from bullion_settlement.core.records import TransactionRecordStore
from bullion_settlement.core.states import (
    MAX_CURRENCY,
    MAX_UNITS,
    RequestKind,
    RequestState,
    SettlementAction,
    action_for_status,
    quantize_currency,
    quantize_units,
    target_state,
    to_decimal,
)
from bullion_settlement.database.models import SettlementRequest
from bullion_settlement.integrations.gateway import GatewayAdapter, GatewayError
from bullion_settlement.integrations.identity import IdentityStore
from bullion_settlement.integrations.price_oracle import PriceOracle
from bullion_settlement.monitoring import metrics

logger = structlog.get_logger(__name__)

CALLBACK_PATH = "callback"
POLL_PATH = "poll"
ADMIN_PATH = "admin"


@dataclass(frozen=True)
class Approve:
    """Approve a withdrawal; ``payout_ref`` identifies the executed payout."""

    payout_ref: str


@dataclass(frozen=True)
class Reject:
    reason: str


WithdrawalDecision = Union[Approve, Reject]


def _bounded(
    value: Decimal, quantize: Callable[[Decimal], Decimal], limit: Decimal, what: str
) -> Decimal:
    """Quantize ``value``, rejecting magnitudes the ledger columns cannot store."""
    try:
        result = quantize(value)
    except InvalidOperation:
        raise InvalidAmount(f"{what} out of range: {value}") from None
    if result >= limit:
        raise InvalidAmount(f"{what} out of range: {value}")
    return result


class _LostTransition(Exception):
    """A competing unit of work made the transition first; roll back and replay."""

    def __init__(self, request_id: uuid.UUID):
        super().__init__(str(request_id))
        self.request_id = request_id


class SettlementEngine:
    """
    Settlement orchestrator.

    All collaborators are injected so the engine holds no ambient state:
    the session factory defines the unit of work, the gateway adapter mints
    and reports remote orders, the price oracle values requests and the
    identity store gates payouts.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: GatewayAdapter,
        price_oracle: PriceOracle,
        identity_store: IdentityStore,
        settings: Optional[Settings] = None,
        ledger: Optional[HoldingsLedger] = None,
        records: Optional[TransactionRecordStore] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.price_oracle = price_oracle
        self.identity_store = identity_store
        self.settings = settings or get_settings()
        self.ledger = ledger or HoldingsLedger()
        self.records = records or TransactionRecordStore()

        logger.info("settlement_engine_initialized", currency=self.settings.settlement_currency)

    async def _guarded(
        self, operation: str, work: Awaitable[SettlementOutcome]
    ) -> SettlementOutcome:
        """Run an operation, turning settlement errors into Failure outcomes."""
        started = time.perf_counter()
        try:
            return await work
        except SettlementError as e:
            metrics.settlement_failures_total.labels(
                operation=operation, kind=e.kind.value
            ).inc()
            logger.info(
                "settlement_operation_failed",
                operation=operation,
                failure_kind=e.kind.value,
                error=e.message,
                **{k: str(v) for k, v in e.context.items()},
            )
            return Failure.from_error(e)
        finally:
            metrics.settlement_operation_duration_seconds.labels(operation=operation).observe(
                time.perf_counter() - started
            )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_request(
        self,
        account_id: str,
        kind: RequestKind | str,
        amount: Decimal | str | int | float,
    ) -> SettlementOutcome:
        """
        Create a pending buy or withdraw request.

        Args:
            account_id: Owning account
            kind: ``buy`` or ``withdraw``
            amount: Currency amount to spend (buy) or units to sell (withdraw)

        Returns:
            Ok(CREATED) or Failure with INVALID_AMOUNT, PRICE_UNAVAILABLE,
            IDENTITY_INCOMPLETE, INSUFFICIENT_BALANCE or GATEWAY_UNAVAILABLE
        """
        return await self._guarded(
            "create_request", self._create_request(account_id, RequestKind(kind), amount)
        )

    async def _create_request(
        self, account_id: str, kind: RequestKind, amount: Any
    ) -> SettlementOutcome:
        correlation_id = uuid.uuid4()
        log = logger.bind(
            correlation_id=str(correlation_id), account_id=account_id, kind=kind.value
        )
        log.info("settlement_request_creation_started", amount=str(amount))

        value = to_decimal(amount)
        if value is None or value <= 0:
            raise InvalidAmount(f"Invalid amount requested: {amount!r}")

        if kind is RequestKind.BUY:
            return await self._create_buy(account_id, value, correlation_id, log)
        return await self._create_withdrawal(account_id, value, correlation_id, log)

    async def _unit_price(self) -> Decimal:
        price = to_decimal(await self.price_oracle.current_unit_price())
        if price is None or price <= 0:
            raise PriceUnavailable(f"Invalid unit price: {price}")
        return price

    async def _create_buy(
        self, account_id: str, value: Decimal, correlation_id: uuid.UUID, log: Any
    ) -> SettlementOutcome:
        amount = _bounded(value, quantize_currency, MAX_CURRENCY, "Amount")
        if amount <= 0:
            raise InvalidAmount(f"Invalid amount requested: {value}")

        price = await self._unit_price()
        units = _bounded(amount / price, quantize_units, MAX_UNITS, "Units")
        if units <= 0:
            raise InvalidAmount(
                f"Amount {amount} buys no units at price {price}", unit_price=price
            )
        customer = await self.identity_store.customer_identity(account_id)
        currency = self.settings.settlement_currency

        async with self.session_factory.begin() as db:
            request = await self.records.add_pending(
                db,
                account_id=account_id,
                kind=RequestKind.BUY,
                amount_currency=amount,
                units=units,
                unit_price=price,
                currency=currency,
                correlation_id=correlation_id,
            )
            snapshot = RequestSnapshot.model_validate(request)

        metrics.settlement_requests_created_total.labels(kind=RequestKind.BUY.value).inc()
        log.info(
            "buy_request_created",
            request_id=str(snapshot.id),
            external_order_id=snapshot.external_order_id,
            units=str(units),
            unit_price=str(price),
        )

        # Gateway call happens outside any unit of work
        try:
            session_token = await self.gateway.create_remote_order(
                order_id=snapshot.external_order_id,
                amount=amount,
                currency=currency,
                customer=customer,
                note=f"Purchase of {units}g gold.",
            )
        except GatewayError as e:
            log.error(
                "remote_order_creation_failed",
                request_id=str(snapshot.id),
                error=str(e),
                error_type=e.error_type.value,
            )
            await self._fail_unplaced_order(snapshot, str(e), correlation_id)
            raise GatewayUnavailable(
                f"Payment gateway unavailable: {e}", request_id=snapshot.id
            ) from e

        log.info("remote_order_created", request_id=str(snapshot.id))
        return Ok(status=OutcomeStatus.CREATED, request=snapshot, payment_session=session_token)

    async def _fail_unplaced_order(
        self, snapshot: RequestSnapshot, error: str, correlation_id: uuid.UUID
    ) -> None:
        """Close out a buy whose remote order was never created."""
        async with self.session_factory.begin() as db:
            request = await self.records.lock(db, snapshot.id)
            if request is None or RequestState(request.state).is_terminal:
                return
            moved = await self.records.transition(db, request, RequestState.FAILED)
            if moved:
                await self.records.record_event(
                    db,
                    request,
                    event_type="request.failed",
                    event_data={"reason": "remote_order_not_created", "error": error},
                    correlation_id=correlation_id,
                )
        if moved:
            metrics.settlement_transitions_total.labels(
                kind=RequestKind.BUY.value, state=RequestState.FAILED.value, path="create"
            ).inc()

    async def _create_withdrawal(
        self, account_id: str, value: Decimal, correlation_id: uuid.UUID, log: Any
    ) -> SettlementOutcome:
        units = _bounded(value, quantize_units, MAX_UNITS, "Units")
        if units <= 0:
            raise InvalidAmount(f"Invalid amount of units specified: {value}")

        if not await self.identity_store.mandatory_payout_fields_present(account_id):
            raise IdentityIncomplete(
                "Withdrawal requires complete KYC and bank account details",
                account_id=account_id,
            )

        price = await self._unit_price()
        amount = _bounded(units * price, quantize_currency, MAX_CURRENCY, "Withdrawal value")
        if amount <= 0:
            raise InvalidAmount(f"Withdrawal of {units} units has no value at price {price}")

        async with self.session_factory.begin() as db:
            # Checked against the ledger only; other pending withdrawals are
            # not reserved and are settled at approval time.
            balance = await self.ledger.balance(db, account_id)
            if balance < units:
                raise InsufficientBalance(
                    f"Insufficient balance. You have {balance:.4f} units.",
                    balance=balance,
                    requested=units,
                )
            request = await self.records.add_pending(
                db,
                account_id=account_id,
                kind=RequestKind.WITHDRAW,
                amount_currency=amount,
                units=units,
                unit_price=price,
                currency=self.settings.settlement_currency,
                correlation_id=correlation_id,
            )
            snapshot = RequestSnapshot.model_validate(request)

        metrics.settlement_requests_created_total.labels(kind=RequestKind.WITHDRAW.value).inc()
        log.info(
            "withdrawal_request_created",
            request_id=str(snapshot.id),
            units=str(units),
            estimated_value=str(amount),
        )
        return Ok(status=OutcomeStatus.CREATED, request=snapshot)

    # ------------------------------------------------------------------
    # Gateway-reported settlement (callback and poll)
    # ------------------------------------------------------------------

    async def settle_from_external_status(
        self,
        external_order_id: str,
        reported_status: str,
        external_payment_ref: Optional[str] = None,
        *,
        path: str = CALLBACK_PATH,
    ) -> SettlementOutcome:
        """
        Apply a gateway-reported order status to the matching buy request.

        PAID completes the request and credits the holding; FAILED, EXPIRED
        and CANCELLED fail it; any other status leaves it untouched. Repeated
        or racing calls for the same order change the ledger at most once.

        Args:
            external_order_id: Gateway order ID
            reported_status: Order status as reported by the gateway
            external_payment_ref: Gateway payment ID, if known
            path: Which caller is settling (``callback`` or ``poll``)
        """
        return await self._guarded(
            "settle_from_external_status",
            self._settle(external_order_id, reported_status, external_payment_ref, path),
        )

    async def _settle(
        self,
        external_order_id: str,
        reported_status: str,
        external_payment_ref: Optional[str],
        path: str,
    ) -> SettlementOutcome:
        correlation_id = uuid.uuid4()
        log = logger.bind(
            correlation_id=str(correlation_id),
            external_order_id=external_order_id,
            reported_status=reported_status,
            path=path,
        )
        action = action_for_status(reported_status)

        if action is SettlementAction.NONE:
            snapshot = await self._snapshot_by_order_id(external_order_id)
            log.info(
                "settlement_status_indeterminate",
                request_id=str(snapshot.id),
                state=snapshot.state.value,
            )
            return Ok(
                status=status_for_state(snapshot.state),
                request=snapshot,
                replayed=snapshot.state.is_terminal,
            )

        target = target_state(action)
        try:
            async with self.session_factory.begin() as db:
                request = await self.records.get_by_external_order_id(
                    db, external_order_id, lock=True
                )
                if request is None:
                    raise RequestNotFound(
                        f"No buy request for order {external_order_id}",
                        external_order_id=external_order_id,
                    )

                if RequestState(request.state).is_terminal:
                    return self._replay(RequestSnapshot.model_validate(request), target, path)

                payment_ref = external_payment_ref or request.external_payment_ref
                if not await self.records.transition(
                    db, request, target, external_payment_ref=payment_ref
                ):
                    raise _LostTransition(request.id)

                if target is RequestState.COMPLETED:
                    await self.ledger.credit(db, request.account_id, request.units)

                await self.records.record_event(
                    db,
                    request,
                    event_type=f"request.{target.value}",
                    event_data={
                        "path": path,
                        "reported_status": reported_status,
                        "external_payment_ref": payment_ref,
                    },
                    correlation_id=correlation_id,
                )
                snapshot = RequestSnapshot.model_validate(request)
        except _LostTransition:
            snapshot = await self._snapshot_by_order_id(external_order_id)
            return self._replay(snapshot, target, path)

        metrics.settlement_transitions_total.labels(
            kind=RequestKind.BUY.value, state=target.value, path=path
        ).inc()
        log.info(
            "buy_request_settled",
            request_id=str(snapshot.id),
            account_id=snapshot.account_id,
            state=target.value,
            units=str(snapshot.units),
        )
        return Ok(status=status_for_state(target), request=snapshot)

    async def _snapshot_by_order_id(self, external_order_id: str) -> RequestSnapshot:
        async with self.session_factory() as db:
            request = await self.records.get_by_external_order_id(db, external_order_id)
            if request is None:
                raise RequestNotFound(
                    f"No buy request for order {external_order_id}",
                    external_order_id=external_order_id,
                )
            return RequestSnapshot.model_validate(request)

    def _replay(self, snapshot: RequestSnapshot, attempted: RequestState, path: str) -> Ok:
        """Recorded outcome of a request that was already terminal."""
        conflict = snapshot.state is not attempted
        metrics.settlement_replays_total.labels(path=path, conflict=str(conflict).lower()).inc()
        logger.info(
            "settlement_replayed",
            request_id=str(snapshot.id),
            recorded_state=snapshot.state.value,
            attempted_state=attempted.value,
            conflict=conflict,
            path=path,
        )
        return Ok(
            status=status_for_state(snapshot.state),
            request=snapshot,
            replayed=True,
            conflict=conflict,
        )

    async def poll_and_settle(
        self, external_order_id: str, account_id: Optional[str] = None
    ) -> SettlementOutcome:
        """
        Client verification path: ask the gateway for the order status and settle.

        Args:
            external_order_id: Gateway order ID
            account_id: When given, the request must belong to this account
        """
        return await self._guarded(
            "poll_and_settle", self._poll_and_settle(external_order_id, account_id)
        )

    async def _poll_and_settle(
        self, external_order_id: str, account_id: Optional[str]
    ) -> SettlementOutcome:
        snapshot = await self._snapshot_by_order_id(external_order_id)
        if account_id is not None and snapshot.account_id != account_id:
            raise RequestNotFound(
                f"No buy request for order {external_order_id}",
                external_order_id=external_order_id,
            )

        try:
            remote = await self.gateway.fetch_remote_order_status(external_order_id)
        except GatewayError as e:
            raise GatewayUnavailable(
                f"Payment gateway unavailable: {e}", external_order_id=external_order_id
            ) from e

        logger.info(
            "remote_order_status_fetched",
            external_order_id=external_order_id,
            remote_status=remote.status,
        )
        return await self._settle(external_order_id, remote.status, remote.payment_ref, POLL_PATH)

    # ------------------------------------------------------------------
    # Administrator decisions
    # ------------------------------------------------------------------

    async def decide_withdrawal(
        self, request_id: uuid.UUID | str, decision: WithdrawalDecision
    ) -> SettlementOutcome:
        """
        Approve or reject a pending withdrawal.

        Approval re-checks the balance under lock. When the holding no longer
        covers the request, the withdrawal is rejected by the system and the
        outcome is AUTO_REJECTED rather than a failure.

        Returns:
            Ok(COMPLETED | REJECTED | AUTO_REJECTED), an Ok replay of the same
            decision, or Failure with REQUEST_NOT_FOUND or ALREADY_DECIDED
        """
        return await self._guarded(
            "decide_withdrawal", self._decide_withdrawal(request_id, decision)
        )

    @staticmethod
    def _parse_request_id(request_id: uuid.UUID | str) -> uuid.UUID:
        try:
            return request_id if isinstance(request_id, uuid.UUID) else uuid.UUID(str(request_id))
        except ValueError:
            raise RequestNotFound(f"Settlement request {request_id} not found")

    @staticmethod
    def _matches_decision(
        request: Union[SettlementRequest, RequestSnapshot], decision: WithdrawalDecision
    ) -> bool:
        state = RequestState(request.state)
        if isinstance(decision, Approve):
            return state is RequestState.COMPLETED and request.payout_ref == decision.payout_ref
        return state is RequestState.REJECTED and request.rejection_reason == decision.reason

    def _replay_decision(
        self, snapshot: RequestSnapshot, decision: WithdrawalDecision
    ) -> SettlementOutcome:
        if not self._matches_decision(snapshot, decision):
            raise AlreadyDecided(
                f"Withdrawal {snapshot.id} is already {snapshot.state.value}",
                request_id=snapshot.id,
            )
        attempted = (
            RequestState.COMPLETED if isinstance(decision, Approve) else RequestState.REJECTED
        )
        return self._replay(snapshot, attempted, ADMIN_PATH)

    async def _decide_withdrawal(
        self, request_id: uuid.UUID | str, decision: WithdrawalDecision
    ) -> SettlementOutcome:
        request_uuid = self._parse_request_id(request_id)
        correlation_id = uuid.uuid4()
        log = logger.bind(
            correlation_id=str(correlation_id),
            request_id=str(request_uuid),
            decision=type(decision).__name__.lower(),
        )
        log.info("withdrawal_decision_started")

        try:
            async with self.session_factory.begin() as db:
                # Lock order: request row, then holding row
                request = await self.records.lock(db, request_uuid)
                if request is None or request.kind != RequestKind.WITHDRAW.value:
                    raise RequestNotFound(f"Withdrawal request {request_uuid} not found")

                if RequestState(request.state).is_terminal:
                    return self._replay_decision(RequestSnapshot.model_validate(request), decision)

                if isinstance(decision, Reject):
                    status = await self._reject(db, request, decision.reason, correlation_id)
                else:
                    status = await self._approve(db, request, decision, correlation_id, log)
                snapshot = RequestSnapshot.model_validate(request)
        except _LostTransition:
            async with self.session_factory() as db:
                request = await self.records.get(db, request_uuid)
                snapshot = RequestSnapshot.model_validate(request)
            return self._replay_decision(snapshot, decision)

        metrics.settlement_transitions_total.labels(
            kind=RequestKind.WITHDRAW.value, state=snapshot.state.value, path=ADMIN_PATH
        ).inc()
        if status is OutcomeStatus.AUTO_REJECTED:
            metrics.withdrawal_auto_rejections_total.inc()
        log.info(
            "withdrawal_decided",
            account_id=snapshot.account_id,
            outcome=status.value,
            units=str(snapshot.units),
        )
        return Ok(status=status, request=snapshot)

    async def _reject(
        self,
        db: AsyncSession,
        request: SettlementRequest,
        reason: str,
        correlation_id: uuid.UUID,
        event_type: str = "request.rejected",
    ) -> OutcomeStatus:
        if not await self.records.transition(
            db, request, RequestState.REJECTED, rejection_reason=reason
        ):
            raise _LostTransition(request.id)
        await self.records.record_event(
            db,
            request,
            event_type=event_type,
            event_data={"reason": reason},
            correlation_id=correlation_id,
        )
        return OutcomeStatus.REJECTED

    async def _approve(
        self,
        db: AsyncSession,
        request: SettlementRequest,
        decision: Approve,
        correlation_id: uuid.UUID,
        log: Any,
    ) -> OutcomeStatus:
        holding = await self.ledger.lock(db, request.account_id)
        balance = holding.total_units if holding is not None else ZERO

        if holding is None or balance < request.units:
            reason = (
                f"Auto-rejected: balance {balance:.4f} units is below the requested "
                f"{request.units:.4f} units at approval time"
            )
            log.warning(
                "withdrawal_auto_rejected",
                account_id=request.account_id,
                balance=str(balance),
                requested=str(request.units),
            )
            await self._reject(db, request, reason, correlation_id, "request.auto_rejected")
            return OutcomeStatus.AUTO_REJECTED

        if not await self.records.transition(
            db, request, RequestState.COMPLETED, payout_ref=decision.payout_ref
        ):
            raise _LostTransition(request.id)
        remaining = await self.ledger.debit(db, holding, request.units)
        await self.records.record_event(
            db,
            request,
            event_type="request.completed",
            event_data={
                "path": ADMIN_PATH,
                "payout_ref": decision.payout_ref,
                "balance_after": str(remaining),
            },
            correlation_id=correlation_id,
        )
        return OutcomeStatus.COMPLETED

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_request(self, request_id: uuid.UUID | str) -> SettlementOutcome:
        return await self._guarded("get_request", self._get_request(request_id))

    async def _get_request(self, request_id: uuid.UUID | str) -> SettlementOutcome:
        request_uuid = self._parse_request_id(request_id)
        async with self.session_factory() as db:
            request = await self.records.get(db, request_uuid)
            if request is None:
                raise RequestNotFound(f"Settlement request {request_uuid} not found")
            snapshot = RequestSnapshot.model_validate(request)
        return Ok(status=status_for_state(snapshot.state), request=snapshot)

    async def list_requests(
        self, account_id: Optional[str] = None, limit: int = 100
    ) -> List[RequestSnapshot]:
        """Request history newest first; all accounts when ``account_id`` is None."""
        async with self.session_factory() as db:
            rows = await self.records.list_requests(db, account_id=account_id, limit=limit)
            return [RequestSnapshot.model_validate(row) for row in rows]

    async def holding_balance(self, account_id: str) -> Decimal:
        """Unlocked, read-committed view of an account's balance."""
        async with self.session_factory() as db:
            return await self.ledger.balance(db, account_id)
