import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ConnectionState(str, Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"


@dataclass
class InboundMessage:
    id: str
    from_jid: str
    participant: Optional[str] = None
    push_name: Optional[str] = None
    timestamp: int = 0
    text: Optional[str] = None
    raw: Any = None

@dataclass
class BroadcastResult:
    success: int = 0
    failed: int = 0
    failed_destinations: list[str] = field(default_factory=list)
    # (destination, sent) in send order, duplicates included
    outcomes: list[tuple[str, bool]] = field(default_factory=list)

    def record(self, destination: str, sent: bool) -> None:
        self.outcomes.append((destination, sent))
        if sent:
            self.success += 1
        else:
            self.failed += 1
            self.failed_destinations.append(destination)

    @property
    def total(self) -> int:
        return self.success + self.failed

    def to_dict(self) -> dict[str, int]:
        return {"success": self.success, "failed": self.failed}

@dataclass
class ConnectAttempt:
    allowed: bool
    limit: Optional[str] = None  # "connection" or "qr_generation" when denied
    remaining_ms: int = 0

    @property
    def remaining_minutes(self) -> int:
        return math.ceil(self.remaining_ms / 60_000)


@dataclass
class Contact:
    jid: str
    name: str
    is_group: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"jid": self.jid, "name": self.name, "isGroup": self.is_group}
