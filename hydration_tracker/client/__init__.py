from hydration_tracker.client.gateway import (
    AuthenticationRequired,
    ClientTokenGateway,
    GatewayError,
    MemoryTokenStore,
    RefreshFailed,
    RefreshState,
    TokenStore,
)

__all__ = [
    "AuthenticationRequired",
    "ClientTokenGateway",
    "GatewayError",
    "MemoryTokenStore",
    "RefreshFailed",
    "RefreshState",
    "TokenStore",
]
