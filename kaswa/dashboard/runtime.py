from __future__ import annotations

import asyncio
import atexit
import contextlib
import logging
import threading
from typing import Any

from kaswa.client.manager import ConnectionManager
from kaswa.core.entities import BroadcastResult, ConnectAttempt, ConnectionState, InboundMessage
from kaswa.defaults.config import DEFAULT_IDENTIFIER, DEFAULT_MANAGER_CONFIG
from kaswa.infra.storage_files import MultiFileAuthStore
from kaswa.infra.storage_sqlite import DeliveryLog
from kaswa.utils.rate_limiter import RateLimiter

from .state import EventFeed, GatewayEvent

logger = logging.getLogger(__name__)


def _denied_payload(attempt: ConnectAttempt) -> dict[str, Any]:
    subject = "requesting another QR code" if attempt.limit == "qr_generation" else "connecting again"
    return {
        "success": False,
        "rateLimited": True,
        "limit": attempt.limit,
        "remainingTime": attempt.remaining_ms,
        "error": f"Rate limit exceeded. Wait {attempt.remaining_minutes} minute(s) before {subject}.",
    }


class GatewayRuntime:
    """Owns the connection manager on a background event loop for the HTTP layer."""

    def __init__(
        self,
        auth_dir: str = DEFAULT_MANAGER_CONFIG["auth_dir"],
        delivery_db: str = "kaswa_deliveries.db",
        max_events: int = 300,
        manager: ConnectionManager | None = None,
        delivery_log: DeliveryLog | None = None,
        **config_overrides: Any,
    ) -> None:
        self._events = EventFeed(max_events=max_events)
        self.manager = manager or ConnectionManager(
            MultiFileAuthStore(auth_dir),
            RateLimiter(),
            **config_overrides,
        )
        self.deliveries = delivery_log or DeliveryLog(delivery_db)
        self.config = self.manager.config

        self._loop = asyncio.new_event_loop()
        self._started = threading.Event()
        self._thread = threading.Thread(target=self._run_loop, name="kaswa-gateway-loop", daemon=True)
        self._thread.start()
        self._started.wait(timeout=2.0)

        self.manager.on_qr_update(self._on_qr_update)
        self.manager.on_connection_update(self._on_connection_update)
        self.manager.on_message(self._on_message)

        atexit.register(self.close)

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._started.set()
        self._loop.run_forever()

    def _run_coro_sync(self, coro: Any, timeout: float = 30.0) -> Any:
        fut = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return fut.result(timeout=timeout)

    # -- façade operations ---------------------------------------------

    def status(self) -> dict[str, Any]:
        return {
            "qrCode": self.manager.get_qr(),
            "connectionState": self.manager.get_connection_state().value,
            "isConnected": self.manager.is_ready(),
        }

    def connect(self, identifier: str = DEFAULT_IDENTIFIER) -> dict[str, Any]:
        wait = float(self.config["qr_wait_timeout"])
        return self._run_coro_sync(self._connect_async(identifier, wait), timeout=wait + 30.0)

    def reset_and_reconnect(self, identifier: str = DEFAULT_IDENTIFIER) -> dict[str, Any]:
        wait = float(self.config["qr_wait_timeout"])
        return self._run_coro_sync(self._reset_and_reconnect_async(identifier, wait), timeout=wait + 30.0)

    def restore(self) -> dict[str, Any]:
        wait = float(self.config["qr_wait_timeout"])
        return self._run_coro_sync(self._restore_async(wait), timeout=wait + 30.0)

    def send_one(self, to_jid: str, text: str) -> bool:
        return self._run_coro_sync(self._send_one_async(to_jid, text), timeout=float(self.config["send_timeout"]) + 5.0)

    def broadcast(self, jids: list[str], text: str) -> BroadcastResult:
        per_message = float(self.config["broadcast_delay"]) + float(self.config["send_timeout"])
        return self._run_coro_sync(self._broadcast_async(jids, text), timeout=per_message * max(1, len(jids)) + 5.0)

    def disconnect(self) -> dict[str, Any]:
        self._run_coro_sync(self.manager.logout())
        self._events.add_event(GatewayEvent(kind="system", payload={"event": "disconnect_requested"}))
        return self.status()

    def reset_ban(self) -> None:
        self._run_coro_sync(self._reset_ban_async())

    def list_events(self, kind: str | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        return self._events.list_events(kind=kind, limit=limit)

    def list_deliveries(self, limit: int = 50, status: str | None = None) -> list[dict[str, Any]]:
        return self._run_coro_sync(self.deliveries.recent(limit, status=status))

    def list_contacts(self) -> list[dict[str, Any]]:
        return self._run_coro_sync(self._contacts_async())

    # -- loop-side implementations -------------------------------------

    async def _connect_async(self, identifier: str, wait: float) -> dict[str, Any]:
        attempt = await self.manager.connect(identifier)
        if not attempt.allowed:
            return _denied_payload(attempt)
        self._events.add_event(GatewayEvent(kind="system", payload={"event": "connect_requested"}))
        await self._wait_for_qr_or_open(wait)
        return {"success": True, **self.status()}

    async def _reset_and_reconnect_async(self, identifier: str, wait: float) -> dict[str, Any]:
        attempt = await self.manager.reset_and_reconnect(identifier)
        if not attempt.allowed:
            return _denied_payload(attempt)
        self._events.add_event(GatewayEvent(kind="system", payload={"event": "reset_requested"}))
        await self._wait_for_qr_or_open(wait)
        return {"success": True, **self.status()}

    async def _restore_async(self, wait: float) -> dict[str, Any]:
        restored = await self.manager.restore_session()
        if restored:
            await self._wait_for_qr_or_open(wait)
        return {"restored": restored, **self.status()}

    async def _wait_for_qr_or_open(self, timeout: float, interval: float = 0.5) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if self.manager.get_qr() or self.manager.is_ready():
                return
            if self.manager.get_connection_state() is ConnectionState.CLOSED and not self.manager.is_initializing:
                return
            await asyncio.sleep(interval)

    async def _send_one_async(self, to_jid: str, text: str) -> bool:
        sent = await self.manager.send_message(to_jid, text)
        await self._record_delivery(to_jid, text, sent, source="send-message")
        return sent

    async def _broadcast_async(self, jids: list[str], text: str) -> BroadcastResult:
        result = await self.manager.broadcast_message(jids, text)
        for jid, sent in result.outcomes:
            await self._record_delivery(jid, text, sent, source="broadcast")
        self._events.add_event(GatewayEvent(kind="broadcast", payload=result.to_dict()))
        return result

    async def _record_delivery(self, destination: str, text: str, sent: bool, source: str) -> None:
        try:
            await self.deliveries.record(destination, text, status="sent" if sent else "failed", source=source)
        except Exception:
            logger.exception("failed to record delivery for %s", destination)

    async def _contacts_async(self) -> list[dict[str, Any]]:
        return [contact.to_dict() for contact in self.manager.get_contacts()]

    async def _reset_ban_async(self) -> None:
        self.manager.rate_limiter.reset()
        await self.manager.reset_session()
        self._events.add_event(GatewayEvent(kind="system", payload={"event": "reset_ban"}))

    # -- manager subscribers -------------------------------------------

    def _on_qr_update(self, image: str) -> None:
        self._events.add_event(GatewayEvent(kind="qr", payload={"has_qr": bool(image)}))

    def _on_connection_update(self, state: ConnectionState) -> None:
        self._events.add_event(GatewayEvent(kind="connection", payload={"state": state.value}))

    def _on_message(self, message: InboundMessage) -> None:
        self._events.add_event(
            GatewayEvent(
                kind="message",
                payload={"id": message.id, "from": message.from_jid, "text": message.text},
            )
        )

    def close(self) -> None:
        if not self._loop.is_running():
            return
        with contextlib.suppress(Exception):
            self._run_coro_sync(self.manager.logout())
        with contextlib.suppress(Exception):
            self._run_coro_sync(self.deliveries.close())
        self._loop.call_soon_threadsafe(self._loop.stop)
