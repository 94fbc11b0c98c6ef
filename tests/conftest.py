"""
Pytest configuration and fixtures.
"""
import hmac
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bullion_settlement.config import Settings, get_settings
from bullion_settlement.core.outcomes import Ok, RequestSnapshot
from bullion_settlement.core.settlement_engine import SettlementEngine
from bullion_settlement.database import build_engine, build_session_factory, init_db
from bullion_settlement.integrations.cashfree_client import compute_signature
from bullion_settlement.integrations.gateway import (
    CustomerIdentity,
    GatewayError,
    RemoteOrderStatus,
)
from bullion_settlement.integrations.identity import InMemoryIdentityStore, PayoutIdentity
from bullion_settlement.integrations.price_oracle import FixedPriceOracle

TEST_SECRET_KEY = "test_secret_key"
ACCOUNT = "acct-1"
UNVERIFIED_ACCOUNT = "acct-2"


def make_settings(database_url: str, **overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        cashfree_app_id="test_app_id",
        cashfree_secret_key=TEST_SECRET_KEY,
        database_url=database_url,
        app_name="bullion-settlement-test",
        app_env="test",
        log_level="DEBUG",
        gateway_retry_base_delay=0,
        gateway_retry_max_delay=0,
    )
    values.update(overrides)
    return Settings(**values)


def verified_profile(name: str = "Asha Rao") -> PayoutIdentity:
    return PayoutIdentity(
        name=name,
        email="asha@example.com",
        phone="9999999999",
        bank_account_name=name,
        bank_account_number="000111222333",
        bank_ifsc_code="HDFC0000001",
        pan_card_number="ABCDE1234F",
        aadhaar_card_number="123412341234",
    )


class FakeGateway:
    """In-memory gateway: records created orders and serves scripted statuses."""

    def __init__(self, secret_key: str = TEST_SECRET_KEY):
        self.secret_key = secret_key
        self.created: List[Dict[str, Any]] = []
        self.statuses: Dict[str, RemoteOrderStatus] = {}
        self.create_error: Optional[GatewayError] = None
        self.fetch_error: Optional[GatewayError] = None

    async def create_remote_order(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        customer: CustomerIdentity,
        note: Optional[str] = None,
    ) -> str:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(
            {"order_id": order_id, "amount": amount, "currency": currency, "customer": customer}
        )
        self.statuses[order_id] = RemoteOrderStatus(status="ACTIVE", payment_ref=None, amount=amount)
        return f"session_{order_id}"

    async def fetch_remote_order_status(self, order_id: str) -> RemoteOrderStatus:
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.statuses.get(order_id, RemoteOrderStatus(status="ACTIVE", payment_ref=None))

    def set_status(self, order_id: str, status: str, payment_ref: Optional[str] = None) -> None:
        self.statuses[order_id] = RemoteOrderStatus(status=status, payment_ref=payment_ref)

    def sign(self, raw_payload: bytes, timestamp: str) -> str:
        return compute_signature(self.secret_key, timestamp, raw_payload)

    def verify_callback_authenticity(
        self, signature: str, raw_payload: bytes, timestamp: str
    ) -> bool:
        return bool(signature) and hmac.compare_digest(self.sign(raw_payload, timestamp), signature)


@pytest.fixture(autouse=True)
def settings_env(monkeypatch: pytest.MonkeyPatch) -> Any:
    """Make get_settings() usable without a .env file."""
    monkeypatch.setenv("CASHFREE_APP_ID", "test_app_id")
    monkeypatch.setenv("CASHFREE_SECRET_KEY", TEST_SECRET_KEY)
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings backed by a temporary SQLite file."""
    return make_settings(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Create a fresh database and its session factory."""
    engine = build_engine(test_settings)
    await init_db(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def price_oracle() -> FixedPriceOracle:
    return FixedPriceOracle(Decimal("6850.00"))


@pytest.fixture
def identity_store() -> InMemoryIdentityStore:
    return InMemoryIdentityStore(
        {
            ACCOUNT: verified_profile(),
            UNVERIFIED_ACCOUNT: PayoutIdentity(
                name="Ravi Kumar", email="ravi@example.com", phone="8888888888"
            ),
        }
    )


@pytest.fixture
def engine(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeGateway,
    price_oracle: FixedPriceOracle,
    identity_store: InMemoryIdentityStore,
    test_settings: Settings,
) -> SettlementEngine:
    return SettlementEngine(
        session_factory=session_factory,
        gateway=gateway,
        price_oracle=price_oracle,
        identity_store=identity_store,
        settings=test_settings,
    )


@pytest.fixture
def fund_account(
    engine: SettlementEngine,
) -> Callable[..., Awaitable[RequestSnapshot]]:
    """Buy and settle units for an account; returns the completed request."""

    async def _fund(amount: str, account_id: str = ACCOUNT) -> RequestSnapshot:
        created = await engine.create_request(account_id, "buy", Decimal(amount))
        assert isinstance(created, Ok), created
        settled = await engine.settle_from_external_status(
            created.request.external_order_id, "PAID", f"cf_pay_{created.request.id.hex[:8]}"
        )
        assert isinstance(settled, Ok), settled
        return settled.request

    return _fund
