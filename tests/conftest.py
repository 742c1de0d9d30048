"""Pytest configuration and fixtures for the tabstream test suite.

The tests never talk to a real browser. FakeCDPClient mimics the parts of
cdp-use's CDPClient that tabstream uses:

    - ``client.send.<Domain>.<method>(params=..., session_id=...)`` coroutines,
      answered by built-in defaults or per-method overrides in ``responses``
    - ``client.register.<Domain>.<event>(handler)`` keeping one handler per event
    - ``emit(method, params, session_id)`` to push an inbound CDP event

Every command is recorded in ``client.calls`` as ``(method, params, session_id)``.
"""

import asyncio
import base64
import inspect
import io
import sys
from pathlib import Path
from typing import Any, Callable

import pytest
from bubus import EventBus
from PIL import Image

# Add the src directory to the path so tests run without an editable install
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from tabstream.browser.connection import ReconnectPolicy, SessionConnection  # noqa: E402
from tabstream.browser.tabs import TabRegistry  # noqa: E402


# ---------------------------------------------------------------------------
# Fake CDP client
# ---------------------------------------------------------------------------


class _SendDomain:
    def __init__(self, client: "FakeCDPClient", domain: str):
        self._client = client
        self._domain = domain

    def __getattr__(self, method: str):
        async def command(params: dict | None = None, session_id: str | None = None):
            return await self._client._handle(f"{self._domain}.{method}", params or {}, session_id)

        return command


class _RegisterDomain:
    def __init__(self, client: "FakeCDPClient", domain: str):
        self._client = client
        self._domain = domain

    def __getattr__(self, event: str):
        def register(handler: Callable) -> None:
            self._client.handlers[f"{self._domain}.{event}"] = handler

        return register


class _Proxy:
    def __init__(self, client: "FakeCDPClient", domain_cls):
        self._client = client
        self._domain_cls = domain_cls

    def __getattr__(self, domain: str):
        return self._domain_cls(self._client, domain)


class FakeCDPClient:
    """In-memory stand-in for cdp_use.CDPClient."""

    def __init__(self):
        self.calls: list[tuple[str, dict, str | None]] = []
        self.handlers: dict[str, Callable] = {}
        self.responses: dict[str, Any] = {}
        self.targets: dict[str, dict] = {}
        self.sessions: dict[str, str] = {}
        self.history: dict = {"currentIndex": 0, "entries": [{"id": 1, "url": "about:blank"}]}
        self.favicon: str | None = "https://example.com/favicon.ico"
        self.auto_load = True
        self.stopped = False
        self._target_seq = 0
        self._session_seq = 0
        self.send = _Proxy(self, _SendDomain)
        self.register = _Proxy(self, _RegisterDomain)

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        self.stopped = True

    def add_target(self, url: str = "about:blank", title: str = "", opener_id: str | None = None) -> dict:
        self._target_seq += 1
        info = {"targetId": f"target-{self._target_seq}", "type": "page", "url": url, "title": title, "attached": False}
        if opener_id:
            info["openerId"] = opener_id
        self.targets[info["targetId"]] = info
        return info

    def emit(self, method: str, params: dict, session_id: str | None = None) -> None:
        handler = self.handlers.get(method)
        if handler is not None:
            handler(params, session_id)

    def calls_to(self, method: str) -> list[tuple[str, dict, str | None]]:
        return [call for call in self.calls if call[0] == method]

    def methods(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def _handle(self, method: str, params: dict, session_id: str | None) -> Any:
        self.calls.append((method, params, session_id))
        await asyncio.sleep(0)

        override = self.responses.get(method)
        if override is not None:
            if isinstance(override, BaseException):
                raise override
            if callable(override):
                result = override(params, session_id)
                if inspect.isawaitable(result):
                    result = await result
                return result
            return override

        return self._default_response(method, params, session_id)

    def _default_response(self, method: str, params: dict, session_id: str | None) -> Any:
        if method == "Target.createTarget":
            return {"targetId": self.add_target(url=params.get("url", "about:blank"))["targetId"]}
        if method == "Target.attachToTarget":
            self._session_seq += 1
            session = f"session-{self._session_seq}"
            self.sessions[session] = params["targetId"]
            return {"sessionId": session}
        if method == "Target.getTargetInfo":
            target_id = params["targetId"]
            info = self.targets.get(target_id, {"targetId": target_id, "type": "page", "url": "about:blank", "title": ""})
            return {"targetInfo": info}
        if method == "Target.getTargets":
            return {"targetInfos": list(self.targets.values())}
        if method == "Target.closeTarget":
            self.targets.pop(params["targetId"], None)
            return {"success": True}
        if method == "Runtime.evaluate":
            return {"result": {"type": "string", "value": self.favicon}}
        if method == "Page.getNavigationHistory":
            return self.history
        if method == "Page.navigate":
            target = self.targets.get(self.sessions.get(session_id, ""))
            if target is not None:
                target["url"] = params["url"]
                target["title"] = f"Title of {params['url']}"
            if self.auto_load:
                frame = {"id": "main-frame", "loaderId": "loader", "url": params["url"]}
                asyncio.get_running_loop().call_soon(
                    self.emit, "Page.frameNavigated", {"frame": frame, "type": "Navigation"}, session_id
                )
            self._schedule_load(session_id)
            return {"frameId": "main-frame", "loaderId": "loader"}
        if method in ("Page.reload", "Page.navigateToHistoryEntry"):
            self._schedule_load(session_id)
            return {}
        return {}

    def _schedule_load(self, session_id: str | None) -> None:
        if not self.auto_load:
            return
        loop = asyncio.get_running_loop()
        loop.call_soon(self.emit, "Page.domContentEventFired", {"timestamp": 1.0}, session_id)
        loop.call_soon(self.emit, "Page.loadEventFired", {"timestamp": 1.0}, session_id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll until `predicate()` is true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


def make_image_b64(width: int = 4, height: int = 3, color=(200, 30, 30), fmt: str = "PNG") -> str:
    """A tiny real image, base64 encoded like a screencast payload."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return base64.b64encode(buffer.getvalue()).decode()


def make_frame(frame_session_id: int, data: str | None = None, width: int = 4, height: int = 3, timestamp: float | None = 1.0) -> dict:
    """A Page.screencastFrame event payload."""
    metadata = {
        "deviceWidth": width,
        "deviceHeight": height,
        "offsetTop": 0,
        "pageScaleFactor": 1,
        "scrollOffsetX": 0,
        "scrollOffsetY": 0,
    }
    if timestamp is not None:
        metadata["timestamp"] = timestamp
    return {
        "data": data if data is not None else make_image_b64(width, height),
        "metadata": metadata,
        "sessionId": frame_session_id,
    }


# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def cdp_client():
    return FakeCDPClient()


@pytest.fixture()
async def event_bus():
    bus = EventBus()
    yield bus
    await bus.stop(clear=True, timeout=1)


@pytest.fixture()
async def connection(cdp_client, event_bus):
    """A Connected SessionConnection backed by the fake client, without heartbeat."""

    async def connector(ws_url: str):
        return cdp_client

    conn = SessionConnection(
        cdp_url="ws://127.0.0.1:9222/devtools/browser/test",
        event_bus=event_bus,
        policy=ReconnectPolicy(max_retries=3, base_interval=0, backoff_multiplier=1.0),
        heartbeat_interval=None,
        connector=connector,
    )
    await conn.connect()
    yield conn
    await conn.destroy()


@pytest.fixture()
async def registry(connection, event_bus):
    reg = TabRegistry(connection=connection, event_bus=event_bus, navigation_timeout=2.0)
    await reg.start()
    yield reg
    await reg.destroy()
