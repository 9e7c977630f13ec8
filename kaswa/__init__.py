"""WhatsApp session manager for the class treasury gateway."""

__version__ = "0.1.0"

__all__ = [
    "ConnectionManager",
    "BridgeClient",
    "MultiFileAuthStore",
    "RateLimiter",
    "SessionCredentials",
    "ConnectionState",
    "BroadcastResult",
    "ConnectAttempt",
    "KaswaError",
    "ConnectionError",
    "NotConnectedError",
    "DisconnectReason",
    "render_qr_data_uri",
]


def __getattr__(name: str) -> object:
    """Lazy exports to avoid importing websocket and QR dependencies at package import time."""
    if name in {"ConnectionManager", "BridgeClient"}:
        from .client import BridgeClient, ConnectionManager

        return {"ConnectionManager": ConnectionManager, "BridgeClient": BridgeClient}[name]

    if name == "MultiFileAuthStore":
        from .infra.storage_files import MultiFileAuthStore

        return MultiFileAuthStore

    if name == "RateLimiter":
        from .utils.rate_limiter import RateLimiter

        return RateLimiter

    if name == "SessionCredentials":
        from .utils.auth import SessionCredentials

        return SessionCredentials

    if name in {"ConnectionState", "BroadcastResult", "ConnectAttempt"}:
        from .core.entities import BroadcastResult, ConnectAttempt, ConnectionState

        return {
            "ConnectionState": ConnectionState,
            "BroadcastResult": BroadcastResult,
            "ConnectAttempt": ConnectAttempt,
        }[name]

    if name in {"KaswaError", "ConnectionError", "NotConnectedError", "DisconnectReason"}:
        from .core.errors import ConnectionError, DisconnectReason, KaswaError, NotConnectedError

        return {
            "KaswaError": KaswaError,
            "ConnectionError": ConnectionError,
            "NotConnectedError": NotConnectedError,
            "DisconnectReason": DisconnectReason,
        }[name]

    if name == "render_qr_data_uri":
        from .utils.qr import render_qr_data_uri

        return render_qr_data_uri

    raise AttributeError(f"module 'kaswa' has no attribute {name!r}")
