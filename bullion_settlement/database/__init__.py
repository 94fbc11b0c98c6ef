"""Database package for bullion settlement."""
from .connection import (
    build_engine,
    build_session_factory,
    close_db,
    get_session_factory,
    init_db,
)
from .models import (
    AccountHolding,
    Base,
    SettlementRequest,
    SettlementRequestEvent,
)

__all__ = [
    "AccountHolding",
    "Base",
    "SettlementRequest",
    "SettlementRequestEvent",
    "build_engine",
    "build_session_factory",
    "close_db",
    "get_session_factory",
    "init_db",
]
