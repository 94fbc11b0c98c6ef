"""
Gateway callback intake.

Verifies a signed Cashfree webhook, extracts the order fields and hands them
to the settlement engine. The transport layer only needs the returned
CallbackAck to decide what to answer.
"""
import json
from dataclasses import dataclass
from typing import Optional, Tuple

import structlog

from bullion_settlement.core.errors import FailureKind
from bullion_settlement.core.outcomes import Failure, Ok, OutcomeStatus, SettlementOutcome
from bullion_settlement.core.settlement_engine import CALLBACK_PATH, SettlementEngine
from bullion_settlement.integrations.gateway import GatewayAdapter
from bullion_settlement.monitoring import log_context, metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CallbackAck:
    """
    What to answer the gateway.

    ``acknowledge`` is True when the callback must not be redelivered:
    processed, still pending, replayed, or for an order we do not know.
    """

    acknowledge: bool
    http_status: int
    message: str
    outcome: Optional[SettlementOutcome] = None


def _extract_order_fields(raw_body: bytes) -> Optional[Tuple[str, str, Optional[str]]]:
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError, UnicodeDecodeError):
        return None
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        return None

    order = data.get("order") or {}
    payment = data.get("payment") or {}
    if not isinstance(order, dict) or not isinstance(payment, dict):
        return None

    order_id = order.get("order_id")
    status = order.get("order_status")
    if not order_id or not status:
        return None
    payment_ref = payment.get("cf_payment_id")
    return str(order_id), str(status), str(payment_ref) if payment_ref is not None else None


class CallbackHandler:
    """Processes inbound gateway callbacks."""

    def __init__(self, gateway: GatewayAdapter, engine: SettlementEngine):
        self.gateway = gateway
        self.engine = engine

    async def handle(self, raw_body: bytes, signature: str, timestamp: str) -> CallbackAck:
        """
        Verify and apply one callback.

        Args:
            raw_body: Request body exactly as received
            signature: ``x-webhook-signature`` header
            timestamp: ``x-webhook-timestamp`` header
        """
        if not self.gateway.verify_callback_authenticity(signature, raw_body, timestamp):
            metrics.callback_events_total.labels(result="rejected").inc()
            logger.warning("callback_signature_invalid", timestamp=timestamp)
            return CallbackAck(
                acknowledge=False,
                http_status=401,
                message="Webhook signature verification failed.",
                outcome=Failure(
                    kind=FailureKind.SIGNATURE_INVALID,
                    message="Webhook signature verification failed.",
                    http_status=401,
                ),
            )

        fields = _extract_order_fields(raw_body)
        if fields is None:
            metrics.callback_events_total.labels(result="rejected").inc()
            logger.warning("callback_payload_invalid")
            return CallbackAck(
                acknowledge=False,
                http_status=400,
                message="Invalid webhook payload data.",
                outcome=Failure(
                    kind=FailureKind.INVALID_CALLBACK_PAYLOAD,
                    message="Invalid webhook payload data.",
                    http_status=400,
                ),
            )

        order_id, status, payment_ref = fields
        with log_context(external_order_id=order_id):
            logger.info("callback_received", reported_status=status)
            outcome = await self.engine.settle_from_external_status(
                order_id, status, payment_ref, path=CALLBACK_PATH
            )

        if isinstance(outcome, Failure):
            if outcome.kind is FailureKind.REQUEST_NOT_FOUND:
                # Acknowledged so the gateway stops redelivering it
                metrics.callback_events_total.labels(result="unknown_order").inc()
                logger.error("callback_order_not_found", external_order_id=order_id)
                return CallbackAck(
                    acknowledge=True,
                    http_status=200,
                    message="Transaction not found, webhook ignored.",
                    outcome=outcome,
                )
            metrics.callback_events_total.labels(result="rejected").inc()
            return CallbackAck(
                acknowledge=False,
                http_status=outcome.http_status,
                message=outcome.message,
                outcome=outcome,
            )

        result = "still_pending" if outcome.status is OutcomeStatus.STILL_PENDING else "processed"
        metrics.callback_events_total.labels(result=result).inc()
        return CallbackAck(
            acknowledge=True,
            http_status=200,
            message=_ack_message(outcome),
            outcome=outcome,
        )


def _ack_message(outcome: Ok) -> str:
    if outcome.replayed:
        return f"Already {outcome.request.state.value}, webhook ignored."
    if outcome.status is OutcomeStatus.STILL_PENDING:
        return "Status not terminal, no update."
    return f"Transaction {outcome.status.value}."
