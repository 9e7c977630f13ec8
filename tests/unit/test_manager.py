import asyncio
from typing import Any

import pytest

from kaswa.client.manager import ConnectionManager
from kaswa.core.entities import ConnectionState, Contact, InboundMessage
from kaswa.core.errors import ConnectionError as KaswaConnectionError
from kaswa.core.errors import DisconnectReason, NotConnectedError
from kaswa.core.events import ConnectionEvent, MessagesUpsertEvent
from kaswa.utils.auth import SessionCredentials
from kaswa.utils.rate_limiter import RateLimiter


def _run(coro: Any) -> Any:
    return asyncio.run(coro)


class _MemoryStore:
    def __init__(self, credentials: SessionCredentials | None = None) -> None:
        self.credentials = credentials
        self.saves: list[SessionCredentials] = []
        self.clears = 0

    async def load(self) -> SessionCredentials | None:
        await asyncio.sleep(0)
        return self.credentials

    async def save(self, credentials: SessionCredentials) -> None:
        self.saves.append(credentials)
        self.credentials = credentials

    async def clear(self) -> None:
        self.clears += 1
        self.credentials = None


class _FakeClient:
    def __init__(self, credentials: SessionCredentials | None) -> None:
        self.credentials = credentials
        self.auth_state = credentials or SessionCredentials(creds={"registrationId": 7})
        self.connect_calls = 0
        self.ended = False
        self.logged_out = False
        self.sent: list[tuple[str, str]] = []
        self.fail_for: set[str] = set()
        self.connect_error: Exception | None = None
        self.on_connection_update: Any = None
        self.on_creds_update: Any = None
        self.on_messages_upsert: Any = None
        self.contacts: dict[str, dict[str, Any]] = {}

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        await self.on_connection_update(ConnectionEvent(status="connecting"))

    async def send_text(self, jid: str, text: str) -> str:
        if jid in self.fail_for:
            raise KaswaConnectionError("send rejected")
        self.sent.append((jid, text))
        return f"msg-{len(self.sent)}"

    async def end(self) -> None:
        self.ended = True

    async def logout(self) -> None:
        self.logged_out = True
        self.ended = True

    async def emit(self, event: ConnectionEvent) -> None:
        await self.on_connection_update(event)


class _Factory:
    def __init__(self) -> None:
        self.clients: list[_FakeClient] = []
        self.on_create: Any = None
        self.connect_error: Exception | None = None

    def __call__(self, credentials: SessionCredentials | None) -> _FakeClient:
        if self.on_create is not None:
            self.on_create(credentials)
        client = _FakeClient(credentials)
        client.connect_error = self.connect_error
        self.clients.append(client)
        return client

    @property
    def last(self) -> _FakeClient:
        return self.clients[-1]


def _make_manager(
    store: _MemoryStore | None = None,
    renderer: Any = None,
    **config: Any,
) -> tuple[ConnectionManager, _MemoryStore, _Factory]:
    store = store or _MemoryStore()
    factory = _Factory()
    manager = ConnectionManager(
        store,
        RateLimiter(),
        qr_renderer=renderer or (lambda payload: f"data:image/svg+xml;base64,{payload}"),
        client_factory=factory,
        **config,
    )
    return manager, store, factory


async def _open(manager: ConnectionManager, factory: _Factory) -> _FakeClient:
    await manager.initialize()
    client = factory.last
    await client.emit(ConnectionEvent(status="open"))
    return client


def test_fresh_pairing_scenario_opens_then_stays_closed_after_drop() -> None:
    async def _case() -> None:
        manager, store, factory = _make_manager()
        qr_updates: list[str] = []
        states: list[ConnectionState] = []
        manager.on_qr_update(qr_updates.append)
        manager.on_connection_update(states.append)

        assert manager.get_connection_state() is ConnectionState.CLOSED
        await manager.initialize()
        client = factory.last
        assert factory.clients[0].credentials is None
        assert manager.get_connection_state() is ConnectionState.CONNECTING

        await client.emit(ConnectionEvent(status="connecting", qr="2@ref,noise,identity,adv"))
        assert manager.get_qr() == "data:image/svg+xml;base64,2@ref,noise,identity,adv"
        assert qr_updates == [manager.get_qr()]
        assert manager.get_connection_state() is ConnectionState.CONNECTING

        await client.on_creds_update(SessionCredentials(creds={"me": {"id": "62812@s.whatsapp.net"}}))
        await client.emit(ConnectionEvent(status="open"))
        assert manager.is_ready() is True
        assert manager.get_connection_state() is ConnectionState.OPEN
        assert manager.get_qr() is None
        assert store.credentials is not None
        assert len(store.saves) == 2

        await client.emit(
            ConnectionEvent(
                status="close",
                reason=KaswaConnectionError("Connection Lost", status_code=int(DisconnectReason.CONNECTION_LOST)),
            )
        )
        assert manager.is_ready() is False
        assert manager.get_connection_state() is ConnectionState.CLOSED

        await asyncio.sleep(0.05)
        assert len(factory.clients) == 1
        assert manager.get_connection_state() is ConnectionState.CLOSED
        assert states == [ConnectionState.CONNECTING, ConnectionState.OPEN, ConnectionState.CLOSED]

    _run(_case())


def test_initialize_twice_concurrently_creates_one_client() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()

        await asyncio.gather(manager.initialize(), manager.initialize())

        assert len(factory.clients) == 1
        assert factory.last.connect_calls == 1
        assert manager.is_initializing is True

    _run(_case())


def test_initialize_tears_down_previous_client() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()
        first = await _open(manager, factory)
        await first.emit(ConnectionEvent(status="close"))

        await manager.initialize()

        assert first.ended is True
        assert len(factory.clients) == 2

    _run(_case())


def test_initialize_failure_leaves_state_closed() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()
        factory.connect_error = OSError("gateway unreachable")

        await manager.initialize()

        assert manager.get_connection_state() is ConnectionState.CLOSED
        assert manager.is_initializing is False
        assert factory.last.ended is True

    _run(_case())


def test_events_from_replaced_client_are_ignored() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()
        stale = await _open(manager, factory)
        await stale.emit(ConnectionEvent(status="close"))
        await manager.initialize()

        await stale.emit(ConnectionEvent(status="open"))

        assert manager.is_ready() is False
        assert manager.get_connection_state() is ConnectionState.CONNECTING

    _run(_case())


def test_qr_expires_after_timeout_without_open() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager(qr_timeout=0.01)
        await manager.initialize()
        await factory.last.emit(ConnectionEvent(status="connecting", qr="ref-1"))
        assert manager.get_qr() is not None

        await asyncio.sleep(0.05)

        assert manager.get_qr() is None
        assert manager.get_connection_state() is ConnectionState.CONNECTING
        assert len(factory.clients) == 1
        assert manager.is_initializing is False

    _run(_case())


def test_new_qr_replaces_expiry_timer() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager(qr_timeout=0.05)
        await manager.initialize()
        await factory.last.emit(ConnectionEvent(status="connecting", qr="ref-1"))
        first_timer = manager._qr_task
        await factory.last.emit(ConnectionEvent(status="connecting", qr="ref-2"))

        await asyncio.sleep(0.01)
        assert first_timer is not None and first_timer.cancelled()
        assert manager.get_qr() == "data:image/svg+xml;base64,ref-2"

    _run(_case())


def test_open_cancels_qr_timer() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager(qr_timeout=0.01)
        await manager.initialize()
        await factory.last.emit(ConnectionEvent(status="connecting", qr="ref-1"))
        await factory.last.emit(ConnectionEvent(status="open"))

        assert manager._qr_task is None
        await asyncio.sleep(0.03)
        assert manager.is_ready() is True

    _run(_case())


def test_qr_render_failure_means_no_qr() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager(renderer=lambda payload: None)
        seen: list[str] = []
        manager.on_qr_update(seen.append)
        await manager.initialize()

        await factory.last.emit(ConnectionEvent(status="connecting", qr="ref-1"))

        assert manager.get_qr() is None
        assert seen == []
        assert manager._qr_task is None

    _run(_case())


def test_send_message_requires_open_session() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()
        with pytest.raises(NotConnectedError):
            await manager.send_message("62812@s.whatsapp.net", "hi")

        await manager.initialize()
        with pytest.raises(NotConnectedError):
            await manager.send_message("62812@s.whatsapp.net", "hi")
        assert factory.last.sent == []

    _run(_case())


def test_send_message_returns_false_on_provider_failure() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()
        client = await _open(manager, factory)
        client.fail_for.add("bad@s.whatsapp.net")

        assert await manager.send_message("good@s.whatsapp.net", "hi") is True
        assert await manager.send_message("bad@s.whatsapp.net", "hi") is False
        assert client.sent == [("good@s.whatsapp.net", "hi")]

    _run(_case())


def test_broadcast_counts_failures_and_paces_between_sends() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager(broadcast_delay=2.0)
        delays: list[float] = []

        async def _fake_sleep(seconds: float) -> None:
            delays.append(seconds)

        manager._sleep = _fake_sleep
        client = await _open(manager, factory)
        client.fail_for = {"b@s.whatsapp.net", "d@s.whatsapp.net"}
        destinations = ["a@s.whatsapp.net", "b@s.whatsapp.net", "c@s.whatsapp.net", "d@s.whatsapp.net", "e@s.whatsapp.net"]

        result = await manager.broadcast_message(destinations, "Reminder: kas kelas")

        assert result.success == 3
        assert result.failed == 2
        assert result.total == len(destinations)
        assert result.failed_destinations == ["b@s.whatsapp.net", "d@s.whatsapp.net"]
        assert delays == [2.0] * (len(destinations) - 1)
        assert [jid for jid, _ in client.sent] == ["a@s.whatsapp.net", "c@s.whatsapp.net", "e@s.whatsapp.net"]

    _run(_case())


def test_broadcast_stops_waiting_after_connection_drop() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager(broadcast_delay=3.0)
        client = await _open(manager, factory)
        delays: list[float] = []

        async def _drop_after_first(seconds: float) -> None:
            delays.append(seconds)
            await client.emit(ConnectionEvent(status="close"))

        manager._sleep = _drop_after_first
        destinations = [f"62811{i}@s.whatsapp.net" for i in range(10)]

        result = await manager.broadcast_message(destinations, "hi")

        assert result.to_dict() == {"success": 1, "failed": 9}
        assert delays == [3.0]
        assert result.failed_destinations == destinations[1:]
        assert client.sent == [(destinations[0], "hi")]

    _run(_case())


def test_broadcast_reports_each_duplicate_destination_separately() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager(broadcast_delay=0)
        client = await _open(manager, factory)
        sends = 0

        async def _reject_second_send(jid: str, text: str) -> str:
            nonlocal sends
            sends += 1
            if sends == 2:
                raise KaswaConnectionError("send rejected")
            client.sent.append((jid, text))
            return f"msg-{sends}"

        client.send_text = _reject_second_send
        same = "62812@s.whatsapp.net"

        result = await manager.broadcast_message([same, same, "62813@s.whatsapp.net"], "hi")

        assert result.to_dict() == {"success": 2, "failed": 1}
        assert result.outcomes == [(same, True), (same, False), ("62813@s.whatsapp.net", True)]
        assert result.failed_destinations == [same]

    _run(_case())


def test_broadcast_while_closed_fails_every_destination_without_sending() -> None:
    async def _case() -> None:
        manager, _, _ = _make_manager()
        delays: list[float] = []

        async def _fake_sleep(seconds: float) -> None:
            delays.append(seconds)

        manager._sleep = _fake_sleep
        result = await manager.broadcast_message(["a@s.whatsapp.net", "b@s.whatsapp.net"], "hi")

        assert result.to_dict() == {"success": 0, "failed": 2}
        assert delays == []

    _run(_case())


def test_restore_session_without_credentials_has_no_side_effects() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()
        states: list[ConnectionState] = []
        manager.on_connection_update(states.append)

        assert await manager.restore_session() is False
        assert factory.clients == []
        assert states == []
        assert manager.get_connection_state() is ConnectionState.CLOSED

    _run(_case())


def test_restore_session_with_credentials_initializes() -> None:
    async def _case() -> None:
        stored = SessionCredentials(creds={"me": {"id": "62812@s.whatsapp.net"}})
        manager, _, factory = _make_manager(store=_MemoryStore(stored))

        assert await manager.restore_session() is True
        assert len(factory.clients) == 1
        assert factory.last.credentials is stored
        assert manager.get_connection_state() is ConnectionState.CONNECTING

    _run(_case())


def test_logout_closes_socket_but_keeps_credentials() -> None:
    async def _case() -> None:
        stored = SessionCredentials(creds={"me": {"id": "62812@s.whatsapp.net"}})
        manager, store, factory = _make_manager(store=_MemoryStore(stored))
        client = await _open(manager, factory)

        await manager.logout()

        assert client.ended is True
        assert client.logged_out is False
        assert manager.get_connection_state() is ConnectionState.CLOSED
        assert manager.is_ready() is False
        assert manager.is_initializing is False
        assert store.clears == 0
        assert store.credentials is not None

    _run(_case())


def test_logout_with_unlink_asks_provider_to_log_out() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()
        client = await _open(manager, factory)

        await manager.logout(unlink=True)

        assert client.logged_out is True
        assert manager.get_connection_state() is ConnectionState.CLOSED

    _run(_case())


def test_clear_auth_and_reconnect_empties_store_before_initialize() -> None:
    async def _case() -> None:
        stored = SessionCredentials(creds={"me": {"id": "62812@s.whatsapp.net"}})
        store = _MemoryStore(stored)
        manager, _, factory = _make_manager(store=store, reconnect_delay=0)
        first = await _open(manager, factory)
        observed: list[SessionCredentials | None] = []
        factory.on_create = lambda credentials: observed.append(store.credentials)

        await manager.clear_auth_and_reconnect()

        assert first.ended is True
        assert store.clears == 1
        assert observed == [None]
        assert factory.last.credentials is None
        assert manager.get_connection_state() is ConnectionState.CONNECTING

    _run(_case())


def test_clear_auth_and_reconnect_is_not_reentrant() -> None:
    async def _case() -> None:
        manager, store, factory = _make_manager(reconnect_delay=0.01)

        await asyncio.gather(manager.clear_auth_and_reconnect(), manager.clear_auth_and_reconnect())

        assert store.clears == 1
        assert len(factory.clients) == 1

    _run(_case())


def test_connect_is_gated_by_connection_limit() -> None:
    async def _case() -> None:
        stored = SessionCredentials(creds={"me": {"id": "62812@s.whatsapp.net"}})
        manager, _, factory = _make_manager(store=_MemoryStore(stored))

        for _ in range(5):
            attempt = await manager.connect("op")
            assert attempt.allowed is True
            await factory.last.emit(ConnectionEvent(status="close"))

        denied = await manager.connect("op")
        assert denied.allowed is False
        assert denied.limit == "connection"
        assert denied.remaining_ms > 0
        assert denied.remaining_minutes == 30
        assert len(factory.clients) == 5

    _run(_case())


def test_connect_without_session_counts_against_qr_limit() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()

        for _ in range(3):
            assert (await manager.connect()).allowed is True
            await factory.last.emit(ConnectionEvent(status="close"))

        denied = await manager.connect()
        assert denied.allowed is False
        assert denied.limit == "qr_generation"
        assert denied.remaining_minutes == 60

    _run(_case())


def test_connect_while_initializing_spends_no_budget() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()
        assert (await manager.connect("op")).allowed is True
        spent = {key: entry.count for key, entry in manager.rate_limiter._limits.items()}

        for _ in range(4):
            assert (await manager.connect("op")).allowed is True

        assert {key: entry.count for key, entry in manager.rate_limiter._limits.items()} == spent
        assert spent == {"conn_op": 1, "qr_op": 1}
        assert len(factory.clients) == 1

    _run(_case())


def test_qr_denial_leaves_connection_budget_untouched() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()
        for _ in range(3):
            manager.rate_limiter.check_qr_generation_limit("op")

        denied = await manager.connect("op")

        assert denied.allowed is False
        assert denied.limit == "qr_generation"
        assert "conn_op" not in manager.rate_limiter._limits
        assert manager.rate_limiter._limits["qr_op"].count == 3
        assert factory.clients == []

    _run(_case())


def test_reset_session_ignores_credentials_from_the_closed_client() -> None:
    async def _case() -> None:
        stored = SessionCredentials(creds={"me": {"id": "62812@s.whatsapp.net"}})
        manager, store, factory = _make_manager(store=_MemoryStore(stored))
        client = await _open(manager, factory)

        await manager.reset_session()
        await client.on_creds_update(SessionCredentials(creds={"registrationId": 99}))
        await client.emit(ConnectionEvent(status="open"))

        assert client.ended is True
        assert store.clears == 1
        assert store.credentials is None
        assert manager.get_connection_state() is ConnectionState.CLOSED
        assert manager.is_ready() is False
        assert manager.is_initializing is False
        assert len(factory.clients) == 1

    _run(_case())


def test_get_contacts_maps_synced_contacts_for_open_session() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()
        assert manager.get_contacts() == []

        await manager.initialize()
        client = factory.last
        client.contacts = {
            "62811@s.whatsapp.net": {"name": "Bendahara", "notify": "Bu Rina"},
            "62822@s.whatsapp.net": {"notify": "Pak Dodi"},
            "62833@s.whatsapp.net": {},
            "1203630@g.us": {"name": "Kelas 7A"},
        }
        assert manager.get_contacts() == []

        await client.emit(ConnectionEvent(status="open"))

        assert manager.get_contacts() == [
            Contact(jid="62811@s.whatsapp.net", name="Bendahara"),
            Contact(jid="62822@s.whatsapp.net", name="Pak Dodi"),
            Contact(jid="62833@s.whatsapp.net", name="62833"),
            Contact(jid="1203630@g.us", name="Kelas 7A", is_group=True),
        ]
        assert manager.get_contacts()[3].to_dict() == {"jid": "1203630@g.us", "name": "Kelas 7A", "isGroup": True}

    _run(_case())


def test_inbound_notify_messages_reach_every_subscriber() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()
        first: list[InboundMessage] = []
        second: list[InboundMessage] = []
        manager.on_message(first.append)
        unsubscribe = manager.on_message(second.append)
        client = await _open(manager, factory)
        message = InboundMessage(id="m1", from_jid="62812@s.whatsapp.net", text="sudah bayar")

        await client.on_messages_upsert(MessagesUpsertEvent(messages=[message], type="notify"))
        await client.on_messages_upsert(MessagesUpsertEvent(messages=[message], type="append"))
        unsubscribe()
        await client.on_messages_upsert(MessagesUpsertEvent(messages=[message], type="notify"))

        assert first == [message, message]
        assert second == [message]

    _run(_case())


def test_failing_subscriber_does_not_break_transition() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()

        async def _broken(state: ConnectionState) -> None:
            raise RuntimeError("subscriber bug")

        manager.on_connection_update(_broken)
        await _open(manager, factory)

        assert manager.is_ready() is True

    _run(_case())


def test_conflict_and_logged_out_close_require_manual_reconnect() -> None:
    async def _case() -> None:
        manager, _, factory = _make_manager()
        for code in (DisconnectReason.CONNECTION_REPLACED, DisconnectReason.LOGGED_OUT):
            client = await _open(manager, factory)
            await client.emit(ConnectionEvent(status="close", reason=KaswaConnectionError("closed", status_code=int(code))))
            await asyncio.sleep(0)
            assert manager.get_connection_state() is ConnectionState.CLOSED
        assert len(factory.clients) == 2

    _run(_case())
