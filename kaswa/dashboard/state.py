from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any

EVENT_KINDS = ("system", "qr", "connection", "message", "broadcast")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class GatewayEvent:
    kind: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "kind": self.kind, "createdAt": self.created_at, "payload": self.payload}


class EventFeed:
    """Bounded, thread-safe record of what the gateway saw, oldest first."""

    def __init__(self, max_events: int = 300) -> None:
        self._events: deque[GatewayEvent] = deque(maxlen=max(1, int(max_events)))
        self._lock = threading.Lock()

    def add_event(self, event: GatewayEvent) -> None:
        with self._lock:
            self._events.append(event)

    def list_events(self, kind: str | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            events = [e for e in self._events if kind is None or e.kind == kind]
        if limit is not None and limit >= 0:
            events = events[-limit:] if limit else []
        return [event.to_dict() for event in events]
