from enum import IntEnum
from typing import Optional


class KaswaError(Exception):
    """Base exception for kaswa."""
    pass


class ConnectionError(KaswaError):
    """Raised when there is a connection issue."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotConnectedError(ConnectionError):
    """Raised when a send is attempted without an open session."""
    def __init__(self, message: str = "WhatsApp is not connected"):
        super().__init__(message, status_code=int(DisconnectReason.CONNECTION_CLOSED))


class DisconnectReason(IntEnum):
    """Provider disconnect status codes."""
    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    TIMED_OUT = 408
    CONNECTION_ERROR = 429


def status_code_of(reason: object) -> Optional[int]:
    code = getattr(reason, "status_code", None)
    if code is None:
        return None
    try:
        return int(code)
    except (TypeError, ValueError):
        return None
