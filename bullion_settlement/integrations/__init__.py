"""External collaborators: payment gateway, price oracle and identity store."""
from .gateway import (
    CustomerIdentity,
    GatewayAdapter,
    GatewayError,
    GatewayErrorType,
    RemoteOrderStatus,
)

__all__ = [
    "CustomerIdentity",
    "GatewayAdapter",
    "GatewayError",
    "GatewayErrorType",
    "RemoteOrderStatus",
]
