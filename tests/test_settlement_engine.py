"""
Unit tests for the settlement engine.
"""
import uuid
from decimal import Decimal

import pytest
from prometheus_client import REGISTRY

from bullion_settlement.core.errors import FailureKind
from bullion_settlement.core.outcomes import Failure, Ok, OutcomeStatus
from bullion_settlement.core.records import TransactionRecordStore
from bullion_settlement.core.settlement_engine import Approve, Reject
from bullion_settlement.core.states import RequestKind, RequestState
from bullion_settlement.integrations.gateway import GatewayError, GatewayErrorType
from bullion_settlement.integrations.price_oracle import FixedPriceOracle

from conftest import ACCOUNT, UNVERIFIED_ACCOUNT


class TestCreateRequest:
    """Test suite for request creation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_buy_creates_pending_request_and_remote_order(self, engine, gateway) -> None:
        outcome = await engine.create_request(ACCOUNT, RequestKind.BUY, Decimal("6850"))

        assert isinstance(outcome, Ok)
        assert outcome.status is OutcomeStatus.CREATED
        request = outcome.request
        assert request.state is RequestState.PENDING
        assert request.units == Decimal("1.0000")
        assert request.unit_price == Decimal("6850.00")
        assert request.amount_currency == Decimal("6850.00")
        assert request.external_order_id.startswith(f"BULLION_{ACCOUNT}_")
        assert outcome.payment_session == f"session_{request.external_order_id}"

        assert len(gateway.created) == 1
        assert gateway.created[0]["order_id"] == request.external_order_id
        assert gateway.created[0]["customer"].email == "asha@example.com"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_buy_units_round_half_up(self, engine) -> None:
        # 1000 / 6850 = 0.145985...
        outcome = await engine.create_request(ACCOUNT, "buy", "1000")

        assert isinstance(outcome, Ok)
        assert outcome.request.units == Decimal("0.1460")

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount", [0, -5, "abc", None, "NaN", "Infinity", "1e30", "1000000000000"]
    )
    async def test_invalid_amount_rejected(self, engine, amount) -> None:
        outcome = await engine.create_request(ACCOUNT, "buy", amount)

        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.INVALID_AMOUNT
        assert outcome.http_status == 400
        assert await engine.list_requests(ACCOUNT) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_buy_too_small_for_any_units(self, engine) -> None:
        outcome = await engine.create_request(ACCOUNT, "buy", "0.01")

        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.INVALID_AMOUNT

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_price_unavailable(self, engine) -> None:
        engine.price_oracle = FixedPriceOracle()

        outcome = await engine.create_request(ACCOUNT, "buy", "1000")

        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.PRICE_UNAVAILABLE
        assert outcome.http_status == 503
        assert await engine.list_requests(ACCOUNT) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_buy_without_profile_is_identity_incomplete(self, engine, gateway) -> None:
        outcome = await engine.create_request("acct-unknown", "buy", "1000")

        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.IDENTITY_INCOMPLETE
        assert gateway.created == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_failure_fails_the_request(self, engine, gateway) -> None:
        gateway.create_error = GatewayError("gateway down", GatewayErrorType.TRANSIENT, 503)

        outcome = await engine.create_request(ACCOUNT, "buy", "6850")

        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.GATEWAY_UNAVAILABLE
        assert outcome.http_status == 502

        requests = await engine.list_requests(ACCOUNT)
        assert len(requests) == 1
        assert requests[0].state is RequestState.FAILED
        assert await engine.holding_balance(ACCOUNT) == Decimal("0")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unplaced_order_counts_only_applied_transitions(
        self, engine, gateway, monkeypatch
    ) -> None:
        labels = {"kind": "buy", "state": "failed", "path": "create"}
        before = REGISTRY.get_sample_value("settlement_transitions_total", labels) or 0

        gateway.create_error = GatewayError("gateway down", GatewayErrorType.TRANSIENT, 503)
        await engine.create_request(ACCOUNT, "buy", "6850")
        applied = REGISTRY.get_sample_value("settlement_transitions_total", labels)
        assert applied == before + 1

        async def _lost_transition(*args, **kwargs) -> bool:
            return False

        monkeypatch.setattr(engine.records, "transition", _lost_transition)
        outcome = await engine.create_request(ACCOUNT, "buy", "6850")

        assert outcome.kind is FailureKind.GATEWAY_UNAVAILABLE
        assert REGISTRY.get_sample_value("settlement_transitions_total", labels) == applied

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_withdraw_creates_request_awaiting_decision(self, engine, fund_account) -> None:
        await fund_account("13700")

        outcome = await engine.create_request(ACCOUNT, RequestKind.WITHDRAW, "1.5")

        assert isinstance(outcome, Ok)
        assert outcome.status is OutcomeStatus.CREATED
        assert outcome.request.awaiting_decision
        assert outcome.request.external_order_id is None
        assert outcome.request.units == Decimal("1.5000")
        assert outcome.request.amount_currency == Decimal("10275.00")
        # Balance is only moved by the decision
        assert await engine.holding_balance(ACCOUNT) == Decimal("2")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_withdraw_requires_payout_identity(self, engine, fund_account) -> None:
        await fund_account("6850", account_id=UNVERIFIED_ACCOUNT)

        outcome = await engine.create_request(UNVERIFIED_ACCOUNT, "withdraw", "0.5")

        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.IDENTITY_INCOMPLETE
        assert outcome.http_status == 403
        requests = await engine.list_requests(UNVERIFIED_ACCOUNT)
        assert [r for r in requests if r.kind is RequestKind.WITHDRAW] == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_withdraw_boundary(self, engine, fund_account) -> None:
        """Withdrawing exactly the balance succeeds; one unit step more fails."""
        await fund_account("6850")

        over = await engine.create_request(ACCOUNT, "withdraw", "1.0001")
        exact = await engine.create_request(ACCOUNT, "withdraw", "1.0000")

        assert isinstance(over, Failure)
        assert over.kind is FailureKind.INSUFFICIENT_BALANCE
        assert isinstance(exact, Ok)

        withdrawals = [
            r for r in await engine.list_requests(ACCOUNT) if r.kind is RequestKind.WITHDRAW
        ]
        assert [r.id for r in withdrawals] == [exact.request.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_withdraw_without_holding(self, engine) -> None:
        outcome = await engine.create_request(ACCOUNT, "withdraw", "0.1")

        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.INSUFFICIENT_BALANCE
        assert await engine.list_requests(ACCOUNT) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("units", ["1e30", "100000000000000", "1000000000"])
    async def test_withdraw_out_of_range_units(self, engine, fund_account, units) -> None:
        await fund_account("6850")

        outcome = await engine.create_request(ACCOUNT, "withdraw", units)

        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.INVALID_AMOUNT
        assert await engine.holding_balance(ACCOUNT) == Decimal("1")


class TestSettleFromExternalStatus:
    """Test suite for gateway-reported settlement."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_scenario_paid_then_poll_replays(self, engine, gateway) -> None:
        """Buy, callback PAID, then a poll also reporting PAID."""
        created = await engine.create_request(ACCOUNT, "buy", "6850")
        order_id = created.request.external_order_id

        settled = await engine.settle_from_external_status(order_id, "PAID", "cf_pay_1")

        assert isinstance(settled, Ok)
        assert settled.status is OutcomeStatus.COMPLETED
        assert not settled.replayed
        assert settled.request.external_payment_ref == "cf_pay_1"
        assert settled.request.settled_at is not None
        assert await engine.holding_balance(ACCOUNT) == Decimal("1")

        gateway.set_status(order_id, "PAID", "cf_order_1")
        polled = await engine.poll_and_settle(order_id, account_id=ACCOUNT)

        assert isinstance(polled, Ok)
        assert polled.status is OutcomeStatus.COMPLETED
        assert polled.replayed
        assert not polled.conflict
        assert polled.request.external_payment_ref == "cf_pay_1"
        assert await engine.holding_balance(ACCOUNT) == Decimal("1")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_scenario_failed_then_late_paid(self, engine) -> None:
        """A late PAID after FAILED is reported as a conflicting replay."""
        created = await engine.create_request(ACCOUNT, "buy", "1000")
        order_id = created.request.external_order_id

        failed = await engine.settle_from_external_status(order_id, "FAILED")
        late = await engine.settle_from_external_status(order_id, "PAID", "cf_pay_late")

        assert failed.status is OutcomeStatus.FAILED
        assert isinstance(late, Ok)
        assert late.replayed
        assert late.conflict
        assert late.status is OutcomeStatus.FAILED
        assert late.request.external_payment_ref is None
        assert await engine.holding_balance(ACCOUNT) == Decimal("0")

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["FAILED", "EXPIRED", "CANCELLED", "cancelled", "USER_DROPPED"])
    async def test_failure_statuses(self, engine, status) -> None:
        created = await engine.create_request(ACCOUNT, "buy", "1000")

        outcome = await engine.settle_from_external_status(
            created.request.external_order_id, status
        )

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.request.state is RequestState.FAILED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_is_case_insensitive(self, engine) -> None:
        created = await engine.create_request(ACCOUNT, "buy", "6850")

        outcome = await engine.settle_from_external_status(created.request.external_order_id, "paid")

        assert outcome.status is OutcomeStatus.COMPLETED
        assert await engine.holding_balance(ACCOUNT) == Decimal("1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["ACTIVE", "PENDING", "SOMETHING_NEW", ""])
    async def test_non_terminal_status_is_a_no_op(self, engine, status) -> None:
        created = await engine.create_request(ACCOUNT, "buy", "6850")

        outcome = await engine.settle_from_external_status(
            created.request.external_order_id, status
        )

        assert isinstance(outcome, Ok)
        assert outcome.status is OutcomeStatus.STILL_PENDING
        assert not outcome.replayed
        assert outcome.request.state is RequestState.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["PAID", "ACTIVE"])
    async def test_unknown_order(self, engine, status) -> None:
        outcome = await engine.settle_from_external_status("BULLION_nobody_0", status)

        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.REQUEST_NOT_FOUND
        assert outcome.http_status == 404

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeated_paid_credits_once(self, engine) -> None:
        created = await engine.create_request(ACCOUNT, "buy", "6850")
        order_id = created.request.external_order_id

        outcomes = [
            await engine.settle_from_external_status(order_id, "PAID", "cf_pay_1")
            for _ in range(3)
        ]

        assert [o.replayed for o in outcomes] == [False, True, True]
        assert await engine.holding_balance(ACCOUNT) == Decimal("1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_history_records_creation_and_settlement(self, engine, session_factory) -> None:
        created = await engine.create_request(ACCOUNT, "buy", "6850")
        await engine.settle_from_external_status(created.request.external_order_id, "PAID")
        await engine.settle_from_external_status(created.request.external_order_id, "PAID")

        async with session_factory() as db:
            events = await TransactionRecordStore().history(db, created.request.id)

        assert [e.event_type for e in events] == ["request.created", "request.completed"]
        assert events[1].event_data["path"] == "callback"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_before_commit_rolls_back_settlement(self, engine, monkeypatch) -> None:
        created = await engine.create_request(ACCOUNT, "buy", "6850")

        async def _failing_credit(*args, **kwargs) -> None:
            raise RuntimeError("ledger write failed")

        credit = engine.ledger.credit
        monkeypatch.setattr(engine.ledger, "credit", _failing_credit)
        with pytest.raises(RuntimeError):
            await engine.settle_from_external_status(
                created.request.external_order_id, "PAID", "cf_pay_1"
            )

        current = await engine.get_request(created.request.id)
        assert current.request.state is RequestState.PENDING
        assert current.request.external_payment_ref is None
        assert await engine.holding_balance(ACCOUNT) == Decimal("0")

        monkeypatch.setattr(engine.ledger, "credit", credit)
        settled = await engine.settle_from_external_status(
            created.request.external_order_id, "PAID", "cf_pay_1"
        )
        assert settled.status is OutcomeStatus.COMPLETED
        assert not settled.replayed
        assert await engine.holding_balance(ACCOUNT) == Decimal("1")


class TestPollAndSettle:
    """Test suite for the client verification path."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_poll_settles_paid_order(self, engine, gateway) -> None:
        created = await engine.create_request(ACCOUNT, "buy", "6850")
        order_id = created.request.external_order_id
        gateway.set_status(order_id, "PAID", "cf_order_77")

        outcome = await engine.poll_and_settle(order_id, account_id=ACCOUNT)

        assert outcome.status is OutcomeStatus.COMPLETED
        assert outcome.request.external_payment_ref == "cf_order_77"
        assert await engine.holding_balance(ACCOUNT) == Decimal("1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_poll_while_active(self, engine) -> None:
        created = await engine.create_request(ACCOUNT, "buy", "6850")

        outcome = await engine.poll_and_settle(created.request.external_order_id)

        assert outcome.status is OutcomeStatus.STILL_PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_poll_for_another_account(self, engine, gateway) -> None:
        created = await engine.create_request(ACCOUNT, "buy", "6850")
        gateway.set_status(created.request.external_order_id, "PAID")

        outcome = await engine.poll_and_settle(
            created.request.external_order_id, account_id=UNVERIFIED_ACCOUNT
        )

        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.REQUEST_NOT_FOUND
        assert await engine.holding_balance(ACCOUNT) == Decimal("0")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_poll_gateway_unavailable(self, engine, gateway) -> None:
        created = await engine.create_request(ACCOUNT, "buy", "6850")
        gateway.fetch_error = GatewayError("timeout", GatewayErrorType.TRANSIENT)

        outcome = await engine.poll_and_settle(created.request.external_order_id)

        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.GATEWAY_UNAVAILABLE
        current = await engine.get_request(created.request.id)
        assert current.request.state is RequestState.PENDING


class TestDecideWithdrawal:
    """Test suite for administrator decisions."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_scenario_auto_reject_after_balance_drop(self, engine, fund_account) -> None:
        """Two pending withdrawals; approving both leaves only one affordable."""
        await fund_account("13700")
        first = await engine.create_request(ACCOUNT, "withdraw", "2")
        second = await engine.create_request(ACCOUNT, "withdraw", "1")

        approved = await engine.decide_withdrawal(second.request.id, Approve("payout_1"))
        assert approved.status is OutcomeStatus.COMPLETED
        assert approved.request.payout_ref == "payout_1"
        assert await engine.holding_balance(ACCOUNT) == Decimal("1")

        outcome = await engine.decide_withdrawal(first.request.id, Approve("payout_2"))

        assert isinstance(outcome, Ok)
        assert outcome.status is OutcomeStatus.AUTO_REJECTED
        assert outcome.request.state is RequestState.REJECTED
        assert outcome.request.rejection_reason.startswith("Auto-rejected")
        assert outcome.request.payout_ref is None
        assert await engine.holding_balance(ACCOUNT) == Decimal("1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_approve_debits_exact_balance(self, engine, fund_account) -> None:
        await fund_account("6850")
        withdrawal = await engine.create_request(ACCOUNT, "withdraw", "1")

        outcome = await engine.decide_withdrawal(str(withdrawal.request.id), Approve("payout_1"))

        assert outcome.status is OutcomeStatus.COMPLETED
        assert await engine.holding_balance(ACCOUNT) == Decimal("0")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reject_leaves_balance(self, engine, fund_account) -> None:
        await fund_account("6850")
        withdrawal = await engine.create_request(ACCOUNT, "withdraw", "0.5")

        outcome = await engine.decide_withdrawal(withdrawal.request.id, Reject("KYC mismatch"))

        assert outcome.status is OutcomeStatus.REJECTED
        assert outcome.request.rejection_reason == "KYC mismatch"
        assert await engine.holding_balance(ACCOUNT) == Decimal("1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_before_commit_rolls_back_approval(
        self, engine, fund_account, monkeypatch
    ) -> None:
        await fund_account("6850")
        withdrawal = await engine.create_request(ACCOUNT, "withdraw", "0.5")

        async def _failing_debit(*args, **kwargs) -> None:
            raise RuntimeError("ledger write failed")

        monkeypatch.setattr(engine.ledger, "debit", _failing_debit)
        with pytest.raises(RuntimeError):
            await engine.decide_withdrawal(withdrawal.request.id, Approve("payout_1"))

        current = await engine.get_request(withdrawal.request.id)
        assert current.request.state is RequestState.PENDING
        assert current.request.payout_ref is None
        assert await engine.holding_balance(ACCOUNT) == Decimal("1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_decision_replays(self, engine, fund_account) -> None:
        await fund_account("6850")
        withdrawal = await engine.create_request(ACCOUNT, "withdraw", "0.5")

        first = await engine.decide_withdrawal(withdrawal.request.id, Approve("payout_1"))
        again = await engine.decide_withdrawal(withdrawal.request.id, Approve("payout_1"))

        assert not first.replayed
        assert again.replayed
        assert again.status is OutcomeStatus.COMPLETED
        assert await engine.holding_balance(ACCOUNT) == Decimal("0.5")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_different_decision_is_already_decided(self, engine, fund_account) -> None:
        await fund_account("6850")
        withdrawal = await engine.create_request(ACCOUNT, "withdraw", "0.5")
        await engine.decide_withdrawal(withdrawal.request.id, Reject("suspicious"))

        approve = await engine.decide_withdrawal(withdrawal.request.id, Approve("payout_1"))
        other_reason = await engine.decide_withdrawal(withdrawal.request.id, Reject("other"))

        for outcome in (approve, other_reason):
            assert isinstance(outcome, Failure)
            assert outcome.kind is FailureKind.ALREADY_DECIDED
            assert outcome.http_status == 409
        assert await engine.holding_balance(ACCOUNT) == Decimal("1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_or_non_withdrawal_request(self, engine) -> None:
        buy = await engine.create_request(ACCOUNT, "buy", "6850")

        for request_id in (uuid.uuid4(), "not-a-uuid", buy.request.id):
            outcome = await engine.decide_withdrawal(request_id, Approve("payout_1"))
            assert isinstance(outcome, Failure)
            assert outcome.kind is FailureKind.REQUEST_NOT_FOUND


class TestReads:
    """Test suite for read operations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_request(self, engine) -> None:
        created = await engine.create_request(ACCOUNT, "buy", "6850")

        found = await engine.get_request(created.request.id)
        missing = await engine.get_request(uuid.uuid4())

        assert isinstance(found, Ok)
        assert found.status is OutcomeStatus.STILL_PENDING
        assert found.request.id == created.request.id
        assert isinstance(missing, Failure)
        assert missing.kind is FailureKind.REQUEST_NOT_FOUND

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_requests_newest_first(self, engine, fund_account) -> None:
        await fund_account("6850")
        await fund_account("6850", account_id=UNVERIFIED_ACCOUNT)
        withdrawal = await engine.create_request(ACCOUNT, "withdraw", "0.25")

        mine = await engine.list_requests(ACCOUNT)
        everyone = await engine.list_requests()

        assert [r.kind for r in mine] == [RequestKind.WITHDRAW, RequestKind.BUY]
        assert mine[0].id == withdrawal.request.id
        assert len(everyone) == 3
        assert len(await engine.list_requests(limit=1)) == 1
