"""Remote-control connection with reconnect-with-backoff.

SessionConnection owns the single CDP websocket shared by every tab. It is an
explicit state machine:

    Disconnected -> Connected <-> Reconnecting -> Failed
    any state    -> Destroyed (terminal, suppresses reconnect handling)

While Reconnecting, a background task waits
`base_interval * backoff_multiplier ** attempt_count` seconds before each
attempt. A successful attempt resets the counter; once the counter reaches
`max_retries` the connection becomes Failed and no further attempt is made.

cdp-use keeps a single handler per event method, so the connection installs
one fan-out dispatcher per method and routes events by CDP session id to any
number of subscribers. Subscriptions outlive the underlying client and are
re-bound after a reconnect.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
from bubus import EventBus
from cdp_use import CDPClient
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from tabstream.browser.events import (
    BrowserReconnectedEvent,
    ConnectionStateChangedEvent,
    ReconnectFailedEvent,
)
from tabstream.config import CONFIG
from tabstream.exceptions import ConnectionFailedError

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any], str | None], Any]
Connector = Callable[[str], Awaitable[CDPClient]]
Sleep = Callable[[float], Awaitable[None]]


class ConnectionState(str, Enum):
    DISCONNECTED = 'disconnected'
    CONNECTED = 'connected'
    RECONNECTING = 'reconnecting'
    FAILED = 'failed'
    DESTROYED = 'destroyed'


class ReconnectPolicy(BaseModel):
    """Retry ceiling and exponential backoff for reconnect attempts."""

    model_config = ConfigDict(validate_assignment=True)

    enabled: bool = True
    max_retries: int = Field(default=5, ge=0)
    base_interval: float = Field(default=2.0, ge=0, description='Seconds to wait before the first attempt')
    backoff_multiplier: float = Field(default=1.5, ge=1.0)
    attempt_count: int = Field(default=0, ge=0, description='Failed attempts since the last successful connect')

    @classmethod
    def from_config(cls) -> 'ReconnectPolicy':
        return cls(**CONFIG.get_reconnect_config())

    @property
    def exhausted(self) -> bool:
        return self.attempt_count >= self.max_retries

    def next_delay(self) -> float:
        return self.base_interval * self.backoff_multiplier**self.attempt_count

    def record_failure(self) -> None:
        self.attempt_count += 1

    def reset(self) -> None:
        self.attempt_count = 0


@dataclass(frozen=True, eq=False)
class _Subscription:
    method: str
    handler: EventHandler
    session_id: str | None


async def resolve_ws_endpoint(cdp_url: str) -> str:
    """Return the websocket endpoint for a CDP URL.

    websocket URLs are returned unchanged; HTTP URLs are resolved through the
    /json/version introspection endpoint.
    """
    if cdp_url.startswith('ws'):
        return cdp_url

    url = cdp_url.rstrip('/')
    if not url.endswith('/json/version'):
        url = url + '/json/version'

    async with httpx.AsyncClient() as client:
        version_info = await client.get(url)
        version_info.raise_for_status()
        return version_info.json()['webSocketDebuggerUrl']


async def connect_cdp_client(ws_url: str) -> CDPClient:
    """Open a cdp-use client on a websocket endpoint."""
    client = CDPClient(ws_url)
    await client.start()
    return client


class SessionConnection(BaseModel):
    """The single remote-control connection, with automatic reconnect.

    Attributes:
        cdp_url: websocket URL, or HTTP URL resolved via /json/version.
        event_bus: Bus receiving connection state events.
        policy: Reconnect policy; its attempt counter is live state.
        heartbeat_interval: Seconds between liveness probes, None disables them.
        connector: Opens a client for a websocket URL (injectable for tests).
        sleep: Backoff timer (injectable for tests).

    Example:
        >>> connection = SessionConnection(cdp_url='http://localhost:9222')
        >>> await connection.connect()
        >>> unsubscribe = connection.on('Target.targetCreated', handler)
        >>> await connection.destroy()
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        extra='forbid',
        revalidate_instances='never',
    )

    cdp_url: str
    event_bus: EventBus = Field(default_factory=EventBus)
    policy: ReconnectPolicy = Field(default_factory=ReconnectPolicy.from_config)
    heartbeat_interval: float | None = Field(default_factory=lambda: CONFIG.HEARTBEAT_INTERVAL)
    connector: Connector | None = None
    sleep: Sleep | None = None

    _state: ConnectionState = PrivateAttr(default=ConnectionState.DISCONNECTED)
    _client: CDPClient | None = PrivateAttr(default=None)
    _ws_url: str | None = PrivateAttr(default=None)
    _subscriptions: dict[str, list[_Subscription]] = PrivateAttr(default_factory=dict)
    _reconnect_task: asyncio.Task | None = PrivateAttr(default=None)
    _heartbeat_task: asyncio.Task | None = PrivateAttr(default=None)
    _tasks: set[asyncio.Task] = PrivateAttr(default_factory=set)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._client is not None

    @property
    def ws_url(self) -> str | None:
        return self._ws_url

    @property
    def client(self) -> CDPClient:
        """The live CDP client.

        Raises:
            ConnectionFailedError: Immediately, unless the connection is Connected.
        """
        if not self.is_connected:
            raise ConnectionFailedError('Browser connection is not available', state=self._state.value)
        assert self._client is not None
        return self._client

    def ensure_connected(self) -> None:
        self.client  # noqa: B018 - raises when not connected

    # region - ========== Lifecycle ==========

    async def connect(self) -> None:
        """Open the connection.

        Raises:
            ConnectionFailedError: If the endpoint cannot be resolved or opened.
                The connection is left Failed.
        """
        if self._state is ConnectionState.DESTROYED:
            raise ConnectionFailedError('Cannot connect a destroyed connection', state=self._state.value)
        if self.is_connected:
            logger.debug('[SessionConnection] Already connected, skipping connect')
            return

        try:
            self._ws_url = await resolve_ws_endpoint(self.cdp_url)
            logger.debug(f'[SessionConnection] Connecting to {self._ws_url}')
            client = await self._connector(self._ws_url)
        except Exception as e:
            logger.error(f'[SessionConnection] Failed to connect to {self.cdp_url}: {type(e).__name__}: {e}')
            self._set_state(ConnectionState.FAILED)
            raise ConnectionFailedError(f'Failed to establish CDP connection to browser: {e}') from e

        self._adopt_client(client)
        self._set_state(ConnectionState.CONNECTED)
        self._start_heartbeat()
        logger.info(f'[SessionConnection] Connected to {self._ws_url}')

    async def destroy(self) -> None:
        """Force the Destroyed state and permanently stop reconnect handling."""
        if self._state is ConnectionState.DESTROYED:
            return

        self._set_state(ConnectionState.DESTROYED)

        for task in (self._reconnect_task, self._heartbeat_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
        self._reconnect_task = None
        self._heartbeat_task = None

        client, self._client = self._client, None
        self._subscriptions.clear()
        if client is not None:
            await self._stop_client(client)

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        logger.debug('[SessionConnection] Destroyed')

    def handle_disconnect(self, reason: str | None = None) -> None:
        """Entry point for an externally observed disconnect.

        Ignored unless Connected, so duplicate notifications and anything after
        destroy() are no-ops.
        """
        if self._state is not ConnectionState.CONNECTED:
            logger.debug(f'[SessionConnection] Ignoring disconnect while {self._state.value}')
            return

        logger.warning(f'[SessionConnection] Browser disconnected: {reason or "unknown reason"}')

        heartbeat = self._heartbeat_task
        if heartbeat is not None and not heartbeat.done() and heartbeat is not asyncio.current_task():
            heartbeat.cancel()
        self._heartbeat_task = None

        stale_client, self._client = self._client, None
        if stale_client is not None:
            self._spawn(self._stop_client(stale_client))

        if not self.policy.enabled:
            self._fail(f'reconnect disabled, disconnected: {reason or "unknown reason"}')
            return
        if self.policy.exhausted:
            self._fail(f'max reconnect attempts ({self.policy.max_retries}) reached')
            return

        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._run_reconnect())

    async def wait_for_reconnect(self) -> ConnectionState:
        """Wait for a running reconnect cycle to settle and return the resulting state."""
        task = self._reconnect_task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        return self._state

    # endregion

    # region - ========== Reconnect state machine ==========

    async def _run_reconnect(self) -> None:
        sleep = self.sleep or asyncio.sleep
        last_error: str | None = None

        while self._state is ConnectionState.RECONNECTING:
            attempt = self.policy.attempt_count + 1
            delay = self.policy.next_delay()
            logger.info(f'[SessionConnection] Reconnect attempt {attempt}/{self.policy.max_retries} in {delay:.2f}s')
            await sleep(delay)

            if self._state is not ConnectionState.RECONNECTING:
                return

            try:
                client = await self._connector(self._ws_url or self.cdp_url)
            except Exception as e:
                last_error = f'{type(e).__name__}: {e}'
                self.policy.record_failure()
                logger.error(f'[SessionConnection] Reconnect attempt {attempt} failed: {last_error}')
                if self.policy.exhausted:
                    self._fail(f'max reconnect attempts ({self.policy.max_retries}) reached, last error: {last_error}')
                    return
                continue

            if self._state is not ConnectionState.RECONNECTING:
                await self._stop_client(client)
                return

            self.policy.reset()
            self._adopt_client(client)
            self._set_state(ConnectionState.CONNECTED)
            self._start_heartbeat()
            logger.info('[SessionConnection] Successfully reconnected to browser')
            self.event_bus.dispatch(BrowserReconnectedEvent(cdp_url=self._ws_url or self.cdp_url, attempts=attempt))
            return

    def _fail(self, reason: str) -> None:
        logger.error(f'[SessionConnection] Connection failed: {reason}')
        self._set_state(ConnectionState.FAILED)
        self.event_bus.dispatch(ReconnectFailedEvent(attempts=self.policy.attempt_count, reason=reason))

    def _set_state(self, state: ConnectionState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        logger.debug(f'[SessionConnection] {previous.value} -> {state.value}')
        self.event_bus.dispatch(ConnectionStateChangedEvent(state=state.value, previous_state=previous.value))

    @property
    def _connector(self) -> Connector:
        return self.connector or connect_cdp_client

    # endregion

    # region - ========== Heartbeat ==========

    def _start_heartbeat(self) -> None:
        if not self.heartbeat_interval:
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat())

    async def _heartbeat(self) -> None:
        interval = self.heartbeat_interval
        assert interval
        while self._state is ConnectionState.CONNECTED:
            await asyncio.sleep(interval)
            client = self._client
            if self._state is not ConnectionState.CONNECTED or client is None:
                return
            try:
                await asyncio.wait_for(client.send.Browser.getVersion(), timeout=interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.handle_disconnect(reason=f'heartbeat failed: {type(e).__name__}: {e}')
                return

    # endregion

    # region - ========== Event fan-out ==========

    def on(self, method: str, handler: EventHandler, session_id: str | None = None) -> Callable[[], None]:
        """Subscribe to a CDP event, optionally only for one CDP session.

        Handlers receive `(event, session_id)`. Coroutine handlers are scheduled
        as tasks so the websocket reader is never blocked.

        Returns:
            A callable removing the subscription.
        """
        subscription = _Subscription(method=method, handler=handler, session_id=session_id)
        subscribers = self._subscriptions.setdefault(method, [])
        subscribers.append(subscription)
        if len(subscribers) == 1 and self._client is not None:
            self._bind(self._client, method)

        def unsubscribe() -> None:
            current = self._subscriptions.get(method)
            if current and subscription in current:
                current.remove(subscription)

        return unsubscribe

    def _adopt_client(self, client: CDPClient) -> None:
        self._client = client
        for method, subscribers in self._subscriptions.items():
            if subscribers:
                self._bind(client, method)

    def _bind(self, client: CDPClient, method: str) -> None:
        domain, event_name = method.split('.', 1)
        register = getattr(getattr(client.register, domain), event_name)
        register(self._make_dispatcher(method))

    def _make_dispatcher(self, method: str) -> Callable[..., None]:
        def dispatch(event: dict[str, Any], session_id: str | None = None) -> None:
            for subscription in list(self._subscriptions.get(method, ())):
                if subscription.session_id is not None and subscription.session_id != session_id:
                    continue
                try:
                    result = subscription.handler(event, session_id)
                except Exception as e:
                    logger.error(f'[SessionConnection] {method} handler failed: {type(e).__name__}: {e}')
                    continue
                if inspect.isawaitable(result):
                    self._spawn(result)

        return dispatch

    def _spawn(self, awaitable: Awaitable[Any]) -> asyncio.Future:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)  # type: ignore[arg-type]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f'[SessionConnection] Event handler task failed: {type(error).__name__}: {error}')

    # endregion

    async def _stop_client(self, client: CDPClient) -> None:
        try:
            await client.stop()
        except Exception as e:
            logger.debug(f'[SessionConnection] Error while closing CDP client: {type(e).__name__}: {e}')
