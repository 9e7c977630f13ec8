"""Provider-side WhatsApp client.

``ProviderClient`` is the narrow surface the connection manager drives.
``BridgeClient`` implements it against a multi-device gateway process that
holds the actual WhatsApp Web socket and exchanges JSON frames of the form
``{"event": ..., "id": ..., "data": ...}`` over a websocket.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from typing import TYPE_CHECKING, Any, Protocol

from kaswa.core.entities import InboundMessage
from kaswa.core.errors import ConnectionError as KaswaConnectionError
from kaswa.core.errors import DisconnectReason
from kaswa.core.events import ConnectionEvent, MessagesUpsertEvent
from kaswa.defaults.config import DEFAULT_MANAGER_CONFIG
from kaswa.infra.websocket import WebSocketTransport
from kaswa.utils.auth import SessionCredentials, credentials_to_json, decode_json_value

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class ProviderClient(Protocol):
    on_connection_update: Callable[[ConnectionEvent], Awaitable[None]]
    on_creds_update: Callable[[SessionCredentials], Awaitable[None]]
    on_messages_upsert: Callable[[MessagesUpsertEvent], Awaitable[None]]
    contacts: dict[str, dict[str, Any]]

    @property
    def auth_state(self) -> SessionCredentials: ...

    async def connect(self) -> None: ...

    async def send_text(self, jid: str, text: str) -> str: ...

    async def end(self) -> None: ...

    async def logout(self) -> None: ...


def parse_connection_update(data: dict[str, Any]) -> ConnectionEvent:
    status = data.get("connection")
    qr = data.get("qr") if isinstance(data.get("qr"), str) and data.get("qr") else None
    reason = None
    last = data.get("lastDisconnect")
    if isinstance(last, dict):
        code = last.get("statusCode")
        status_code = int(code) if isinstance(code, (int, str)) and str(code).isdigit() else None
        reason = KaswaConnectionError(str(last.get("message") or "Connection Closed"), status_code=status_code)
    if not isinstance(status, str) or not status:
        status = "connecting" if qr else "unknown"
    return ConnectionEvent(status=status, qr=qr, reason=reason)


def parse_inbound_message(raw: dict[str, Any]) -> InboundMessage:
    timestamp = raw.get("timestamp")
    return InboundMessage(
        id=str(raw.get("id") or ""),
        from_jid=str(raw.get("from") or ""),
        participant=raw.get("participant") if isinstance(raw.get("participant"), str) else None,
        push_name=raw.get("pushName") if isinstance(raw.get("pushName"), str) else None,
        timestamp=int(timestamp) if isinstance(timestamp, int) else 0,
        text=raw.get("text") if isinstance(raw.get("text"), str) else None,
        raw=raw,
    )


class BridgeClient:
    """Gateway-backed WhatsApp client for a single multi-device identity."""

    def __init__(
        self,
        credentials: SessionCredentials | None = None,
        url: str | None = None,
        transport: WebSocketTransport | None = None,
        **config_overrides: Any,
    ) -> None:
        self.config: dict[str, Any] = {**DEFAULT_MANAGER_CONFIG, **config_overrides}
        if url is not None:
            self.config["bridge_url"] = url

        self.ws = transport or WebSocketTransport(
            self.config["bridge_url"], open_timeout=float(self.config["connect_timeout"])
        )
        self._auth = credentials.snapshot() if credentials is not None else SessionCredentials()
        self.is_connected = False
        self.contacts: dict[str, dict[str, Any]] = {}

        self.on_connection_update: Callable[[ConnectionEvent], Awaitable[None]] = self._default_connection_handler
        self.on_creds_update: Callable[[SessionCredentials], Awaitable[None]] = self._default_creds_handler
        self.on_messages_upsert: Callable[[MessagesUpsertEvent], Awaitable[None]] = self._default_messages_handler

        self.ws.on_message = self._handle_raw_frame
        self.ws.on_disconnect = self._handle_ws_disconnect

        self._pending_acks: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._events: asyncio.Queue[Any] | None = None
        self._dispatch_task: asyncio.Task[None] | None = None
        self._epoch = 1
        self._explicit_end = False
        self._close_reported = False

    @property
    def auth_state(self) -> SessionCredentials:
        return self._auth

    async def connect(self) -> None:
        self._explicit_end = False
        self._close_reported = False
        self._events = asyncio.Queue()
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())

        await self.on_connection_update(ConnectionEvent(status="connecting"))
        await self.ws.connect()
        self.is_connected = True

        auth = None if self._auth.is_empty() else credentials_to_json(self._auth)
        await self._send_frame("hello", {"auth": auth, "browser": list(self.config["browser"])})

    async def send_text(self, jid: str, text: str) -> str:
        ack = await self._request("send", {"jid": jid, "text": text}, timeout=float(self.config["send_timeout"]))
        message_id = ack.get("message_id")
        return str(message_id) if message_id else ""

    async def logout(self) -> None:
        try:
            if self.is_connected:
                await self._request("logout", {}, timeout=float(self.config["connect_timeout"]))
        finally:
            await self.end()

    async def end(self) -> None:
        self._explicit_end = True
        self.is_connected = False
        self._fail_pending(KaswaConnectionError("Connection ended", status_code=int(DisconnectReason.CONNECTION_CLOSED)))
        task = self._dispatch_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            self._dispatch_task = None
        await self.ws.disconnect()

    async def _request(self, event: str, data: dict[str, Any], timeout: float) -> dict[str, Any]:
        if not self.is_connected:
            raise KaswaConnectionError(f"Cannot {event}: not connected")
        tag = self._generate_message_tag()
        fut: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending_acks[tag] = fut
        try:
            await self._send_frame(event, data, tag=tag)
            return await asyncio.wait_for(fut, timeout=timeout)
        finally:
            self._pending_acks.pop(tag, None)

    async def _send_frame(self, event: str, data: dict[str, Any], tag: str | None = None) -> None:
        frame: dict[str, Any] = {"event": event, "data": data}
        if tag is not None:
            frame["id"] = tag
        await self.ws.send(json.dumps(frame, separators=(",", ":")))

    async def _handle_raw_frame(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("dropping malformed gateway frame")
            return
        if not isinstance(frame, dict):
            return

        event = frame.get("event")
        data = frame.get("data") if isinstance(frame.get("data"), dict) else {}
        if event == "ack":
            self._resolve_ack(str(frame.get("id") or ""), data, frame.get("error"))
            return

        if event == "connection.update" and data.get("connection") == "close":
            self._close_reported = True
        if self._events is not None:
            await self._events.put(frame)

    def _resolve_ack(self, tag: str, data: dict[str, Any], error: Any) -> None:
        waiter = self._pending_acks.get(tag)
        if waiter is None or waiter.done():
            return
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            code = error.get("statusCode") if isinstance(error, dict) else None
            waiter.set_exception(
                KaswaConnectionError(str(message or "request failed"), status_code=code if isinstance(code, int) else None)
            )
        else:
            waiter.set_result(data)

    async def _dispatch_loop(self) -> None:
        events = self._events
        if events is None:
            return
        while True:
            item = await events.get()
            try:
                await self._dispatch(item)
            except Exception:
                logger.exception("gateway event handler failed")

    async def _dispatch(self, item: Any) -> None:
        if isinstance(item, ConnectionEvent):
            await self.on_connection_update(item)
            return

        event = item.get("event")
        data = item.get("data") if isinstance(item.get("data"), dict) else {}
        if event == "connection.update":
            await self.on_connection_update(parse_connection_update(data))
        elif event == "creds.update":
            creds = decode_json_value(data.get("creds") or {})
            keys = decode_json_value(data.get("keys") or {})
            update = SessionCredentials(
                creds=creds if isinstance(creds, dict) else {},
                keys=keys if isinstance(keys, dict) else {},
            )
            self._auth.apply(update)
            await self.on_creds_update(SessionCredentials(creds=copy.deepcopy(self._auth.creds), keys=update.keys))
        elif event in ("contacts.upsert", "contacts.update"):
            raw_contacts = data.get("contacts") if isinstance(data.get("contacts"), list) else []
            for raw in raw_contacts:
                if isinstance(raw, dict) and isinstance(raw.get("id"), str):
                    self.contacts.setdefault(raw["id"], {}).update({k: v for k, v in raw.items() if v is not None})
        elif event == "messages.upsert":
            raw_messages = data.get("messages") if isinstance(data.get("messages"), list) else []
            messages = [parse_inbound_message(m) for m in raw_messages if isinstance(m, dict)]
            await self.on_messages_upsert(MessagesUpsertEvent(messages=messages, type=str(data.get("type") or "notify")))
        else:
            logger.debug("ignoring gateway event: %s", event)

    async def _handle_ws_disconnect(self, exc: Exception) -> None:
        self.is_connected = False
        self._fail_pending(KaswaConnectionError(f"Connection Lost ({exc})", status_code=int(DisconnectReason.CONNECTION_LOST)))
        if self._explicit_end or self._close_reported or self._events is None:
            return
        self._close_reported = True
        await self._events.put(
            ConnectionEvent(
                status="close",
                reason=KaswaConnectionError(f"Connection Lost ({exc})", status_code=int(DisconnectReason.CONNECTION_LOST)),
            )
        )

    def _fail_pending(self, exc: Exception) -> None:
        for fut in self._pending_acks.values():
            if not fut.done():
                fut.set_exception(exc)

    def _generate_message_tag(self) -> str:
        tag = f"{self._epoch}"
        self._epoch += 1
        return tag

    async def _default_connection_handler(self, event: ConnectionEvent) -> None:
        logger.info("connection update: %s", event.status)

    async def _default_creds_handler(self, credentials: SessionCredentials) -> None:
        logger.debug("credentials updated")

    async def _default_messages_handler(self, event: MessagesUpsertEvent) -> None:
        logger.debug("received %s message(s)", len(event.messages))
