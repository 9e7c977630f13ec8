"""Single-identity WhatsApp connection manager.

Owns the one live provider client of the process, its
``closed -> connecting -> open`` lifecycle, QR issuance and expiry, the
credential write-through hook and the send/broadcast primitives.

Transient drops are never retried automatically: a closed session waits for
an explicit ``connect()``/``initialize()`` so that reconnect storms cannot
trigger provider-side bans.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from kaswa.client.provider import BridgeClient, ProviderClient
from kaswa.core.entities import BroadcastResult, ConnectAttempt, ConnectionState, Contact, InboundMessage
from kaswa.core.errors import DisconnectReason, NotConnectedError
from kaswa.core.events import ConnectionEvent, MessagesUpsertEvent
from kaswa.defaults.config import DEFAULT_IDENTIFIER, DEFAULT_MANAGER_CONFIG
from kaswa.utils.auth import CredentialStorePort, SessionCredentials
from kaswa.utils.qr import render_qr_data_uri
from kaswa.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

ClientFactory = Callable[[SessionCredentials | None], ProviderClient]
QRRenderer = Callable[[str], str | None]
Subscriber = Callable[[Any], Awaitable[None] | None]


class ConnectionManager:
    """Connection lifecycle and messaging for the deployment's WhatsApp identity."""

    def __init__(
        self,
        store: CredentialStorePort,
        rate_limiter: RateLimiter | None = None,
        qr_renderer: QRRenderer = render_qr_data_uri,
        client_factory: ClientFactory | None = None,
        **config_overrides: Any,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter or RateLimiter()
        self.config: dict[str, Any] = {**DEFAULT_MANAGER_CONFIG, **config_overrides}
        self._qr_renderer = qr_renderer
        self._client_factory = client_factory or self._default_client_factory

        self._client: ProviderClient | None = None
        self._state = ConnectionState.CLOSED
        self._is_connected = False
        self._is_initializing = False
        self._qr_image: str | None = None
        self._qr_task: asyncio.Task[None] | None = None
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

        self._qr_subscribers: list[Subscriber] = []
        self._connection_subscribers: list[Subscriber] = []
        self._message_subscribers: list[Subscriber] = []

    def _default_client_factory(self, credentials: SessionCredentials | None) -> ProviderClient:
        return BridgeClient(credentials, **self.config)

    # -- subscriptions -------------------------------------------------

    def on_qr_update(self, callback: Subscriber) -> Callable[[], None]:
        return self._subscribe(self._qr_subscribers, callback)

    def on_connection_update(self, callback: Subscriber) -> Callable[[], None]:
        return self._subscribe(self._connection_subscribers, callback)

    def on_message(self, callback: Subscriber) -> Callable[[], None]:
        return self._subscribe(self._message_subscribers, callback)

    @staticmethod
    def _subscribe(subscribers: list[Subscriber], callback: Subscriber) -> Callable[[], None]:
        subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in subscribers:
                subscribers.remove(callback)

        return _unsubscribe

    async def _notify(self, subscribers: list[Subscriber], payload: Any) -> None:
        for callback in list(subscribers):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("subscriber %r failed", callback)

    # -- state readers -------------------------------------------------

    def get_qr(self) -> str | None:
        return self._qr_image

    def get_connection_state(self) -> ConnectionState:
        return self._state

    def is_ready(self) -> bool:
        return self._state is ConnectionState.OPEN and self._is_connected

    @property
    def is_initializing(self) -> bool:
        return self._is_initializing

    def get_contacts(self) -> list[Contact]:
        """Contacts the provider has synced for the open session, or ``[]``."""
        client = self._client
        if client is None or not self.is_ready():
            return []
        contacts: list[Contact] = []
        for jid, raw in list(client.contacts.items()):
            name = raw.get("name") or raw.get("notify") or jid.split("@")[0]
            contacts.append(Contact(jid=jid, name=str(name), is_group=jid.endswith("@g.us")))
        return contacts

    # -- lifecycle -----------------------------------------------------

    async def connect(self, identifier: str = DEFAULT_IDENTIFIER) -> ConnectAttempt:
        """Rate-limited ``initialize()``.

        A fresh pairing (no stored session) also counts against the QR
        generation policy. Nothing is counted while a pairing is already in
        flight or when either policy denies the attempt.
        """
        if self._is_initializing:
            logger.info("connect requested while already initializing; reusing the pending attempt")
            return ConnectAttempt(allowed=True)
        denied = self._check_limits(identifier, pairing=not await self._has_stored_session())
        if denied is not None:
            return denied
        await self.initialize()
        return ConnectAttempt(allowed=True)

    async def reset_and_reconnect(self, identifier: str = DEFAULT_IDENTIFIER) -> ConnectAttempt:
        """Rate-limited ``clear_auth_and_reconnect()``."""
        if self._is_initializing:
            logger.info("reset requested while already initializing; skipping")
            return ConnectAttempt(allowed=True)
        denied = self._check_limits(identifier, pairing=True)
        if denied is not None:
            return denied
        await self.clear_auth_and_reconnect()
        return ConnectAttempt(allowed=True)

    def _check_limits(self, identifier: str, pairing: bool) -> ConnectAttempt | None:
        limiter = self.rate_limiter
        if limiter.connection_limited(identifier):
            remaining = limiter.get_connection_remaining_time(identifier)
            logger.warning(
                "connection attempt rate limited",
                extra={"identifier": identifier, "remaining_ms": remaining},
            )
            return ConnectAttempt(allowed=False, limit="connection", remaining_ms=remaining)
        if pairing and limiter.qr_generation_limited(identifier):
            remaining = limiter.get_qr_remaining_time(identifier)
            logger.warning(
                "QR generation rate limited",
                extra={"identifier": identifier, "remaining_ms": remaining},
            )
            return ConnectAttempt(allowed=False, limit="qr_generation", remaining_ms=remaining)
        # both policies allow it; only now spend the budget
        limiter.check_connection_limit(identifier)
        if pairing:
            limiter.check_qr_generation_limit(identifier)
        return None

    async def _has_stored_session(self) -> bool:
        try:
            return await self.store.load() is not None
        except Exception:
            logger.exception("failed to read credential store")
            return False

    async def initialize(self) -> None:
        if self._is_initializing:
            logger.info("WhatsApp already initializing; ignoring duplicate request")
            return
        self._is_initializing = True

        try:
            await self._teardown_client()
            credentials = await self.store.load()
            if credentials is not None:
                logger.info("found stored credentials, resuming session")
            else:
                logger.info("no stored credentials, waiting for QR pairing")
            self._clear_qr()
            self._is_connected = False

            client = self._client_factory(credentials)
            self._bind(client)
            self._client = client
            await self._set_state(ConnectionState.CONNECTING)
            await client.connect()
        except Exception:
            logger.exception("error initializing WhatsApp connection")
            await self._teardown_client()
            self._clear_qr()
            await self._set_state(ConnectionState.CLOSED)
            self._is_initializing = False

    async def restore_session(self) -> bool:
        try:
            credentials = await self.store.load()
        except Exception:
            logger.exception("error restoring session")
            return False
        if credentials is None:
            logger.info("no stored session to restore")
            return False
        await self.initialize()
        return True

    async def logout(self, unlink: bool = False) -> None:
        """Close the live session. Stored credentials are left in place."""
        client = self._client
        self._client = None
        try:
            if client is not None:
                if unlink:
                    await client.logout()
                else:
                    await client.end()
        except Exception:
            logger.exception("error during logout")
        finally:
            self._is_connected = False
            self._is_initializing = False
            self._clear_qr()
            await self._set_state(ConnectionState.CLOSED)

    async def clear_auth_and_reconnect(self) -> None:
        if self._is_initializing:
            logger.info("already initializing; skipping auth reset")
            return
        self._is_initializing = True

        try:
            await self._teardown_client()
            self._clear_qr()
            await self.store.clear()
            self._is_connected = False
            await self._set_state(ConnectionState.CLOSED)

            await self._sleep(float(self.config["reconnect_delay"]))
        except Exception:
            logger.exception("error clearing auth state")
            self._is_initializing = False
            return

        self._is_initializing = False
        await self.initialize()

    async def reset_session(self) -> None:
        """Close any live session, then delete the stored credentials.

        The client is detached before the store is cleared so no late
        credential update can write a partial session back to disk.
        """
        self._is_initializing = True
        try:
            await self._teardown_client()
            self._clear_qr()
            self._is_connected = False
            await self.store.clear()
            await self._set_state(ConnectionState.CLOSED)
            logger.info("stored session removed")
        finally:
            self._is_initializing = False

    async def _teardown_client(self) -> None:
        client = self._client
        self._client = None
        if client is None:
            return
        try:
            await client.end()
        except Exception as exc:
            logger.debug("socket already closed: %s", exc)

    # -- messaging -----------------------------------------------------

    async def send_message(self, destination: str, text: str) -> bool:
        client = self._client
        if client is None or not self.is_ready():
            raise NotConnectedError()
        try:
            await client.send_text(destination, text)
            return True
        except Exception:
            logger.warning("error sending message to %s", destination, exc_info=True)
            return False

    async def broadcast_message(self, destinations: list[str], text: str) -> BroadcastResult:
        """Send ``text`` to each destination in order.

        Consecutive sends are spaced by ``broadcast_delay`` seconds, so a
        broadcast to k destinations sleeps k - 1 times. Once the session
        drops, the remaining destinations fail without further waiting.
        """
        result = BroadcastResult()
        if not self.is_ready():
            logger.warning("broadcast requested while not connected; %s destination(s) failed", len(destinations))
            for destination in destinations:
                result.record(destination, False)
            return result

        delay = float(self.config["broadcast_delay"])
        for index, destination in enumerate(destinations):
            if index:
                await self._sleep(delay)
            try:
                sent = await self.send_message(destination, text)
            except NotConnectedError:
                remaining = destinations[index:]
                logger.warning("connection lost during broadcast; %s destination(s) counted as failed", len(remaining))
                for skipped in remaining:
                    result.record(skipped, False)
                break
            result.record(destination, sent)

        logger.info("broadcast finished: %s sent, %s failed", result.success, result.failed)
        return result

    # -- provider events -----------------------------------------------

    def _bind(self, client: ProviderClient) -> None:
        async def _on_connection_update(event: ConnectionEvent) -> None:
            if client is self._client:
                await self._handle_connection_update(client, event)

        async def _on_creds_update(credentials: SessionCredentials) -> None:
            # a detached client may outlive a cleared store
            if client is self._client:
                await self._handle_creds_update(credentials)

        async def _on_messages_upsert(event: MessagesUpsertEvent) -> None:
            if client is self._client:
                await self._handle_messages_upsert(event)

        client.on_connection_update = _on_connection_update
        client.on_creds_update = _on_creds_update
        client.on_messages_upsert = _on_messages_upsert

    async def _handle_creds_update(self, credentials: SessionCredentials) -> None:
        try:
            await self.store.save(credentials)
        except Exception:
            logger.exception("failed to persist credentials")

    async def _handle_connection_update(self, client: ProviderClient, event: ConnectionEvent) -> None:
        logger.info("connection update: status=%s qr=%s", event.status, "yes" if event.qr else "no")

        if event.qr:
            await self._handle_qr(event.qr)

        if event.status == "open":
            self._cancel_qr_timer()
            self._qr_image = None
            self._is_connected = True
            self._is_initializing = False
            logger.info("WhatsApp connection opened")
            await self._handle_creds_update(client.auth_state)
            await self._set_state(ConnectionState.OPEN)
        elif event.status == "close":
            self._is_connected = False
            self._is_initializing = False
            self._clear_qr()
            code = event.status_code
            if code == int(DisconnectReason.LOGGED_OUT):
                logger.info("WhatsApp session logged out by the phone; a new QR pairing is required")
            elif code == int(DisconnectReason.CONNECTION_REPLACED):
                logger.warning("WhatsApp session replaced elsewhere; manual reconnect required")
            else:
                logger.warning("WhatsApp connection closed (%s); manual reconnect required", event.reason)
            await self._set_state(ConnectionState.CLOSED)
        elif event.status == "connecting":
            self._is_connected = False
            await self._set_state(ConnectionState.CONNECTING)

    async def _handle_messages_upsert(self, event: MessagesUpsertEvent) -> None:
        if not event.is_notify:
            return
        for message in event.messages:
            if isinstance(message, InboundMessage):
                await self._notify(self._message_subscribers, message)

    async def _handle_qr(self, payload: str) -> None:
        image = self._qr_renderer(payload)
        if image is None:
            logger.warning("QR payload received but could not be rendered")
            return
        self._qr_image = image
        self._schedule_qr_expiry()
        await self._notify(self._qr_subscribers, image)

    def _schedule_qr_expiry(self) -> None:
        self._cancel_qr_timer()
        self._qr_task = asyncio.create_task(self._expire_qr(float(self.config["qr_timeout"])))

    async def _expire_qr(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if asyncio.current_task() is not self._qr_task:
            return
        self._qr_task = None
        if self._state is not ConnectionState.CONNECTING:
            return
        logger.info("QR code expired; request a new one to pair")
        self._qr_image = None
        # the pairing attempt is over; allow a fresh, rate-limited initialize()
        self._is_initializing = False

    def _cancel_qr_timer(self) -> None:
        if self._qr_task is not None:
            self._qr_task.cancel()
            self._qr_task = None

    def _clear_qr(self) -> None:
        self._cancel_qr_timer()
        self._qr_image = None

    async def _set_state(self, state: ConnectionState) -> None:
        if state is not ConnectionState.CONNECTING:
            self._cancel_qr_timer()
        changed = state is not self._state
        self._state = state
        if changed:
            await self._notify(self._connection_subscribers, state)
