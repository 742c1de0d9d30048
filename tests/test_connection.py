"""Tests for SessionConnection and its reconnect policy.

Covers:
    - connect/destroy lifecycle and the fail-fast client accessor
    - exponential backoff delays and the retry ceiling
    - reconnect success resetting the counter and re-binding subscriptions
    - destroy() suppressing reconnect handling
    - event fan-out by CDP session id
"""

import asyncio
import logging

import pytest
from bubus import EventBus

from conftest import FakeCDPClient, wait_for
from tabstream.browser.connection import ConnectionState, ReconnectPolicy, SessionConnection, resolve_ws_endpoint
from tabstream.browser.events import BrowserReconnectedEvent, ConnectionStateChangedEvent, ReconnectFailedEvent
from tabstream.exceptions import ConnectionFailedError

WS_URL = "ws://127.0.0.1:9222/devtools/browser/test"


class ScriptedConnector:
    """Connector returning (or raising) a scripted outcome per call."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls: list[str] = []

    async def __call__(self, ws_url: str):
        self.urls.append(ws_url)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_connection(connector, bus, policy=None, sleep=None) -> SessionConnection:
    return SessionConnection(
        cdp_url=WS_URL,
        event_bus=bus,
        policy=policy or ReconnectPolicy(max_retries=3, base_interval=2.0, backoff_multiplier=1.5),
        heartbeat_interval=None,
        connector=connector,
        sleep=sleep,
    )


class TestReconnectPolicy:
    """Tests for the backoff arithmetic."""

    def test_delays_grow_exponentially(self):
        policy = ReconnectPolicy(max_retries=3, base_interval=2.0, backoff_multiplier=1.5)
        delays = []
        while not policy.exhausted:
            delays.append(policy.next_delay())
            policy.record_failure()
        assert delays == pytest.approx([2.0, 3.0, 4.5])

    def test_reset(self):
        policy = ReconnectPolicy(attempt_count=2)
        policy.reset()
        assert policy.attempt_count == 0
        assert not policy.exhausted


class TestConnect:
    """Tests for the initial connection."""

    @pytest.mark.asyncio
    async def test_connect_sets_connected(self, event_bus):
        client = FakeCDPClient()
        states = []
        event_bus.on(ConnectionStateChangedEvent, lambda event: states.append((event.previous_state, event.state)))
        conn = make_connection(ScriptedConnector(client), event_bus)

        assert conn.state is ConnectionState.DISCONNECTED
        await conn.connect()

        assert conn.state is ConnectionState.CONNECTED
        assert conn.client is client
        assert conn.ws_url == WS_URL
        await event_bus.wait_until_idle()
        assert states == [("disconnected", "connected")]
        await conn.destroy()

    @pytest.mark.asyncio
    async def test_connect_failure_leaves_failed(self, event_bus):
        conn = make_connection(ScriptedConnector(OSError("connection refused")), event_bus)

        with pytest.raises(ConnectionFailedError):
            await conn.connect()
        assert conn.state is ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_client_fails_fast_when_not_connected(self, event_bus):
        conn = make_connection(ScriptedConnector(FakeCDPClient()), event_bus)

        with pytest.raises(ConnectionFailedError) as exc_info:
            conn.client
        assert exc_info.value.state == "disconnected"

    @pytest.mark.asyncio
    async def test_connect_after_destroy_raises(self, event_bus):
        conn = make_connection(ScriptedConnector(FakeCDPClient()), event_bus)
        await conn.destroy()

        with pytest.raises(ConnectionFailedError):
            await conn.connect()
        assert conn.state is ConnectionState.DESTROYED

    @pytest.mark.asyncio
    async def test_ws_url_is_used_as_is(self):
        assert await resolve_ws_endpoint(WS_URL) == WS_URL


class TestReconnect:
    """Tests for the reconnect state machine."""

    @pytest.mark.asyncio
    async def test_every_attempt_failing_ends_failed_after_max_retries(self, event_bus):
        delays: list[float] = []

        async def fake_sleep(delay: float) -> None:
            delays.append(delay)

        failures = []
        event_bus.on(ReconnectFailedEvent, lambda event: failures.append((event.attempts, event.reason)))
        connector = ScriptedConnector(FakeCDPClient(), ConnectionRefusedError("browser gone"))
        conn = make_connection(connector, event_bus, sleep=fake_sleep)
        await conn.connect()

        conn.handle_disconnect("socket closed")
        assert conn.state is ConnectionState.RECONNECTING
        state = await conn.wait_for_reconnect()

        assert state is ConnectionState.FAILED
        assert delays == pytest.approx([2.0, 3.0, 4.5])
        # One initial connect plus exactly three reconnect attempts
        assert len(connector.urls) == 4
        await event_bus.wait_until_idle()
        assert failures == [(3, "max reconnect attempts (3) reached, last error: ConnectionRefusedError: browser gone")]

        with pytest.raises(ConnectionFailedError):
            conn.client
        await conn.destroy()

    @pytest.mark.asyncio
    async def test_success_resets_attempts_and_rebinds_subscriptions(self, event_bus):
        first, second = FakeCDPClient(), FakeCDPClient()

        async def fake_sleep(delay: float) -> None:
            pass

        reconnected = []
        event_bus.on(BrowserReconnectedEvent, lambda event: reconnected.append(event.attempts))
        conn = make_connection(ScriptedConnector(first, OSError("not yet"), second), event_bus, sleep=fake_sleep)
        await conn.connect()

        received = []
        conn.on("Target.targetCreated", lambda event, session_id: received.append(event["targetInfo"]["targetId"]))

        conn.handle_disconnect()
        assert await conn.wait_for_reconnect() is ConnectionState.CONNECTED
        assert conn.client is second
        assert conn.policy.attempt_count == 0

        second.emit("Target.targetCreated", {"targetInfo": {"targetId": "after-reconnect"}})
        assert received == ["after-reconnect"]

        await event_bus.wait_until_idle()
        assert reconnected == [2]
        await wait_for(lambda: first.stopped)
        await conn.destroy()

    @pytest.mark.asyncio
    async def test_destroy_suppresses_pending_reconnect(self, event_bus):
        release = asyncio.Event()

        async def blocking_sleep(delay: float) -> None:
            await release.wait()

        connector = ScriptedConnector(FakeCDPClient())
        conn = make_connection(connector, event_bus, sleep=blocking_sleep)
        await conn.connect()

        conn.handle_disconnect()
        await asyncio.sleep(0)
        await conn.destroy()
        release.set()
        await asyncio.sleep(0.01)

        assert conn.state is ConnectionState.DESTROYED
        assert len(connector.urls) == 1

        # Disconnect notifications after destroy are ignored
        conn.handle_disconnect()
        assert conn.state is ConnectionState.DESTROYED

    @pytest.mark.asyncio
    async def test_disconnect_ignored_unless_connected(self, event_bus):
        conn = make_connection(ScriptedConnector(FakeCDPClient()), event_bus)

        conn.handle_disconnect()
        assert conn.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_reconnect_disabled_fails_immediately(self, event_bus, caplog):
        reasons = []
        event_bus.on(ReconnectFailedEvent, lambda event: reasons.append(event.reason))
        connector = ScriptedConnector(FakeCDPClient())
        policy = ReconnectPolicy(enabled=False)
        conn = make_connection(connector, event_bus, policy=policy)
        await conn.connect()

        with caplog.at_level(logging.ERROR, logger="tabstream"):
            conn.handle_disconnect("socket closed")

        assert conn.state is ConnectionState.FAILED
        assert len(connector.urls) == 1
        assert "reconnect disabled, disconnected: socket closed" in caplog.text
        assert "max reconnect attempts" not in caplog.text
        await event_bus.wait_until_idle()
        assert reasons == ["reconnect disabled, disconnected: socket closed"]

    @pytest.mark.asyncio
    async def test_failed_heartbeat_triggers_reconnect(self):
        bus = EventBus()
        client = FakeCDPClient()
        client.responses["Browser.getVersion"] = ConnectionResetError("no pong")
        release = asyncio.Event()

        async def blocking_sleep(delay: float) -> None:
            await release.wait()

        conn = SessionConnection(
            cdp_url=WS_URL,
            event_bus=bus,
            heartbeat_interval=0.01,
            connector=ScriptedConnector(client),
            sleep=blocking_sleep,
        )
        await conn.connect()

        await wait_for(lambda: conn.state is ConnectionState.RECONNECTING)
        await conn.destroy()
        await bus.stop(clear=True, timeout=1)


class TestEventFanOut:
    """Tests for per-session event routing."""

    @pytest.mark.asyncio
    async def test_events_routed_by_session_id(self, connection, cdp_client):
        seen = {"a": [], "b": [], "any": []}
        connection.on("Page.loadEventFired", lambda event, sid: seen["a"].append(sid), session_id="session-a")
        connection.on("Page.loadEventFired", lambda event, sid: seen["b"].append(sid), session_id="session-b")
        connection.on("Page.loadEventFired", lambda event, sid: seen["any"].append(sid))

        cdp_client.emit("Page.loadEventFired", {}, "session-a")

        assert seen == {"a": ["session-a"], "b": [], "any": ["session-a"]}

    @pytest.mark.asyncio
    async def test_unsubscribe_and_failing_handler(self, connection, cdp_client):
        seen = []

        def broken(event, sid):
            raise RuntimeError("handler bug")

        connection.on("Page.loadEventFired", broken)
        unsubscribe = connection.on("Page.loadEventFired", lambda event, sid: seen.append(sid))

        cdp_client.emit("Page.loadEventFired", {}, "s1")
        unsubscribe()
        cdp_client.emit("Page.loadEventFired", {}, "s2")

        assert seen == ["s1"]

    @pytest.mark.asyncio
    async def test_coroutine_handlers_are_scheduled(self, connection, cdp_client):
        seen = []

        async def handler(event, sid):
            seen.append(event["n"])

        connection.on("Target.targetCreated", handler)
        cdp_client.emit("Target.targetCreated", {"n": 1})

        assert seen == []
        await wait_for(lambda: seen == [1])
