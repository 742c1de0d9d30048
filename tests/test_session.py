"""Tests for BrowserSession start/stop orchestration."""

import pytest
from bubus import EventBus

from conftest import FakeCDPClient
from tabstream.browser.connection import ConnectionState, ReconnectPolicy, SessionConnection
from tabstream.browser.events import TabCreatedEvent
from tabstream.browser.session import BrowserSession
from tabstream.exceptions import ConnectionFailedError

WS_URL = "ws://127.0.0.1:9222/devtools/browser/session-test"


@pytest.fixture()
def client():
    return FakeCDPClient()


@pytest.fixture()
async def session(client):
    bus = EventBus()

    async def connector(ws_url: str):
        return client

    connection = SessionConnection(
        cdp_url=WS_URL,
        event_bus=bus,
        policy=ReconnectPolicy(max_retries=1, base_interval=0),
        heartbeat_interval=None,
        connector=connector,
    )
    browser_session = BrowserSession(cdp_url=WS_URL, event_bus=bus, connection=connection)
    yield browser_session
    await browser_session.stop()


class TestBrowserSession:
    """Tests for the session lifecycle."""

    @pytest.mark.asyncio
    async def test_requires_url(self, monkeypatch):
        monkeypatch.delenv("TABSTREAM_CDP_URL", raising=False)
        with pytest.raises(ValueError):
            BrowserSession(cdp_url=None)

    @pytest.mark.asyncio
    async def test_builds_connection_from_url(self):
        browser_session = BrowserSession(cdp_url="http://localhost:9222")

        assert browser_session.connection.cdp_url == "http://localhost:9222"
        assert browser_session.tabs.connection is browser_session.connection
        assert browser_session.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_start_creates_a_tab_when_browser_is_empty(self, session, client):
        created = []
        session.event_bus.on(TabCreatedEvent, lambda event: created.append(event.tab_id))

        await session.start()

        snapshot = session.get_snapshot()
        assert session.state is ConnectionState.CONNECTED
        assert len(snapshot.tabs) == 1
        assert snapshot.active_tab_id == next(iter(snapshot.tabs))
        assert len(client.calls_to("Target.createTarget")) == 1
        assert client.calls_to("Target.setDiscoverTargets")[0][1] == {"discover": True}
        await session.event_bus.wait_until_idle()
        assert created == [snapshot.active_tab_id]

    @pytest.mark.asyncio
    async def test_start_adopts_existing_pages(self, session, client):
        first = client.add_target(url="https://a.test/", title="A")
        client.add_target(url="https://b.test/", title="B")
        client.targets["worker"] = {"targetId": "worker", "type": "service_worker", "url": "https://a.test/sw.js"}

        await session.start()

        snapshot = session.get_snapshot()
        assert [meta.title for meta in snapshot.tabs.values()] == ["A", "B"]
        assert session.tabs.get_active_tab().target_id == first["targetId"]
        assert client.calls_to("Target.createTarget") == []

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, session, client):
        await session.start()
        await session.start()

        assert len(client.calls_to("Target.createTarget")) == 1

    @pytest.mark.asyncio
    async def test_start_fails_when_unreachable(self):
        async def connector(ws_url: str):
            raise OSError("connection refused")

        bus = EventBus()
        connection = SessionConnection(
            cdp_url=WS_URL,
            event_bus=bus,
            policy=ReconnectPolicy(enabled=False),
            heartbeat_interval=None,
            connector=connector,
        )
        browser_session = BrowserSession(cdp_url=WS_URL, event_bus=bus, connection=connection)

        with pytest.raises(ConnectionFailedError):
            await browser_session.start()
        assert browser_session.state is ConnectionState.FAILED
        await browser_session.stop()

    @pytest.mark.asyncio
    async def test_stop_closes_tabs_and_destroys_connection(self, session, client):
        await session.start()

        await session.stop()

        assert session.state is ConnectionState.DESTROYED
        assert session.get_snapshot().tabs == {}
        assert len(client.calls_to("Target.closeTarget")) == 1
        assert client.stopped

        with pytest.raises(ConnectionFailedError):
            await session.start()

    @pytest.mark.asyncio
    async def test_stop_can_leave_pages_open(self, session, client):
        client.add_target(url="https://keep.test/")
        await session.start()

        await session.stop(close_tabs=False)

        assert client.calls_to("Target.closeTarget") == []
        assert len(client.calls_to("Target.detachFromTarget")) == 1
        assert "target-1" in client.targets

    @pytest.mark.asyncio
    async def test_async_context_manager(self, session, client):
        async with session as started:
            assert started is session
            assert session.state is ConnectionState.CONNECTED

        assert session.state is ConnectionState.DESTROYED
