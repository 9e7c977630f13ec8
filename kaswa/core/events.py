from dataclasses import dataclass, field
from typing import Optional

from kaswa.core.entities import InboundMessage
from kaswa.core.errors import ConnectionError, status_code_of


@dataclass
class ConnectionEvent:
    """Provider connection change, optionally carrying a pairing QR payload."""
    status: str  # "connecting", "open", "close"
    qr: Optional[str] = None
    reason: Optional[ConnectionError] = None

    @property
    def status_code(self) -> Optional[int]:
        return status_code_of(self.reason)


@dataclass
class MessagesUpsertEvent:
    messages: list[InboundMessage] = field(default_factory=list)
    type: str = "notify"  # "append" for history sync

    @property
    def is_notify(self) -> bool:
        return self.type == "notify"
