"""
Cashfree PG client with retry logic and comprehensive error handling.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Order creation and status lookup over the PG REST API
- Webhook signature verification
"""
import base64
import hashlib
import hmac
import time
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from bullion_settlement.config import Settings, get_settings
from bullion_settlement.integrations.gateway import (
    CustomerIdentity,
    GatewayError,
    GatewayErrorType,
    RemoteOrderStatus,
)
from bullion_settlement.monitoring import metrics

logger = structlog.get_logger(__name__)


class CircuitOpenError(GatewayError):
    """Raised without calling the gateway while the circuit is open."""

    def __init__(self) -> None:
        super().__init__("Circuit breaker is open", GatewayErrorType.TRANSIENT)


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.gateway_circuit_breaker_state.set(metrics.CIRCUIT_STATE_VALUES[state])

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await a coroutine function with circuit breaker protection.

        Raises:
            CircuitOpenError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise CircuitOpenError()

        try:
            result = await func(*args, **kwargs)
        except GatewayError as e:
            # Only failures of the gateway itself count against the circuit
            if e.error_type is not GatewayErrorType.PERMANENT:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


def compute_signature(secret_key: str, timestamp: str, raw_payload: bytes) -> str:
    """Cashfree webhook signature: base64(HMAC-SHA256(secret, timestamp + body))."""
    digest = hmac.new(
        secret_key.encode("utf-8"),
        timestamp.encode("utf-8") + raw_payload,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def _is_retryable(error: BaseException) -> bool:
    return (
        isinstance(error, GatewayError)
        and not isinstance(error, CircuitOpenError)
        and error.retryable
    )


class CashfreeGateway:
    """
    Gateway adapter for the Cashfree PG REST API.

    Features:
    - Automatic retry with exponential backoff (transient and rate-limit errors)
    - Circuit breaker pattern
    - Comprehensive error classification
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=self.settings.cashfree_base_url,
            timeout=self.settings.cashfree_timeout_seconds,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=self.settings.circuit_breaker_failure_threshold,
            timeout=self.settings.circuit_breaker_timeout,
        )

        logger.info(
            "cashfree_gateway_initialized",
            environment=self.settings.cashfree_env,
            api_version=self.settings.cashfree_api_version,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "x-client-id": self.settings.cashfree_app_id,
            "x-client-secret": self.settings.cashfree_secret_key,
            "x-api-version": self.settings.cashfree_api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @staticmethod
    def _classify_status(status_code: int) -> GatewayErrorType:
        """
        Classify an HTTP error status for retry logic.

        Returns:
            GatewayErrorType: Error classification
        """
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        elif status_code >= 500:
            return GatewayErrorType.TRANSIENT
        else:
            return GatewayErrorType.PERMANENT

    def _raise_for_response(self, operation: str, response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            message = response.json().get("message") or response.text
        except ValueError:
            message = response.text
        error_type = self._classify_status(response.status_code)

        logger.error(
            "cashfree_api_error",
            operation=operation,
            error_type=error_type.value,
            status_code=response.status_code,
            error_message=message,
        )
        raise GatewayError(
            message=f"Cashfree {operation} failed ({response.status_code}): {message}",
            error_type=error_type,
            status_code=response.status_code,
        )

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        async def _send() -> Dict[str, Any]:
            try:
                response = await self.client.request(method, path, json=json, headers=self._headers)
            except httpx.TransportError as e:
                logger.error("cashfree_transport_error", operation=operation, error=str(e))
                raise GatewayError(
                    message=f"Cashfree {operation} failed: {e}",
                    error_type=GatewayErrorType.TRANSIENT,
                    original_error=e,
                ) from e
            self._raise_for_response(operation, response)
            try:
                return response.json()
            except ValueError as e:
                raise GatewayError(
                    message=f"Cashfree {operation} returned invalid JSON",
                    error_type=GatewayErrorType.TRANSIENT,
                    status_code=response.status_code,
                    original_error=e,
                ) from e

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_retryable),
                stop=stop_after_attempt(self.settings.gateway_retry_max_attempts),
                wait=wait_exponential(
                    multiplier=self.settings.gateway_retry_base_delay,
                    max=self.settings.gateway_retry_max_delay,
                ),
                reraise=True,
            ):
                with attempt:
                    body = await self.circuit_breaker.call(_send)
        except GatewayError as e:
            metrics.gateway_requests_total.labels(operation=operation, status="error").inc()
            metrics.gateway_errors_total.labels(error_type=e.error_type.value).inc()
            raise

        metrics.gateway_requests_total.labels(operation=operation, status="success").inc()
        return body

    async def create_remote_order(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        customer: CustomerIdentity,
        note: Optional[str] = None,
    ) -> str:
        """
        Create a Cashfree order.

        Args:
            order_id: Our order ID (unique per settlement request)
            amount: Order amount in ``currency``
            currency: Currency code (e.g., 'INR')
            customer: Customer details required by the checkout
            note: Optional order note

        Returns:
            str: Payment session ID for the checkout

        Raises:
            GatewayError: If order creation fails
        """
        logger.info(
            "creating_remote_order", order_id=order_id, amount=str(amount), currency=currency
        )

        payload: Dict[str, Any] = {
            "order_id": order_id,
            "order_amount": float(amount),
            "order_currency": currency,
            "customer_details": {
                "customer_id": customer.customer_id,
                "customer_name": customer.name,
                "customer_email": customer.email,
                "customer_phone": customer.phone,
            },
            "order_meta": {"return_url": self.settings.payment_return_url},
        }
        if note:
            payload["order_note"] = note

        body = await self._request("create_order", "POST", "/orders", json=payload)
        session_id = body.get("payment_session_id")
        if not session_id:
            raise GatewayError(
                message=f"Cashfree order {order_id} has no payment session",
                error_type=GatewayErrorType.PERMANENT,
            )

        logger.info("remote_order_created", order_id=order_id, cf_order_id=body.get("cf_order_id"))
        return session_id

    async def fetch_remote_order_status(self, order_id: str) -> RemoteOrderStatus:
        """
        Retrieve an order's status.

        Raises:
            GatewayError: If retrieval fails
        """
        logger.info("fetching_remote_order", order_id=order_id)

        body = await self._request("fetch_order", "GET", f"/orders/{order_id}")
        amount = body.get("order_amount")
        cf_order_id = body.get("cf_order_id")
        return RemoteOrderStatus(
            status=str(body.get("order_status") or ""),
            payment_ref=str(cf_order_id) if cf_order_id is not None else None,
            amount=Decimal(str(amount)) if amount is not None else None,
        )

    def verify_callback_authenticity(
        self, signature: str, raw_payload: bytes, timestamp: str
    ) -> bool:
        """Check a webhook's ``x-webhook-signature`` against its raw body."""
        if not signature or not timestamp or raw_payload is None:
            logger.warning("callback_signature_missing_fields")
            return False
        expected = compute_signature(self.settings.cashfree_secret_key, timestamp, raw_payload)
        provided = signature.strip().encode("ascii", "replace")
        return hmac.compare_digest(expected.encode("ascii"), provided)
