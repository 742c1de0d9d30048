"""Top-level browser session: one connection, one event bus, one tab registry.

Example:
    >>> session = BrowserSession(cdp_url='http://localhost:9222')
    >>> await session.start()
    >>> tab_id = await session.tabs.create_tab('https://example.com')
    >>> await session.tabs.activate_tab(tab_id)
    >>> await session.stop()
"""

import logging

from bubus import EventBus
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from tabstream.browser.connection import ConnectionState, ReconnectPolicy, SessionConnection
from tabstream.browser.tabs import TabRegistry
from tabstream.browser.views import TabsState
from tabstream.config import CONFIG
from tabstream.exceptions import ConnectionFailedError

logger = logging.getLogger(__name__)


class BrowserSession(BaseModel):
    """Owns the connection and the tab registry for one remote browser.

    The connection outlives every tab: stop() destroys the registry first, then
    the connection, then the shared event bus.

    Attributes:
        cdp_url: websocket URL, or HTTP URL of the browser's debugging endpoint.
        event_bus: Bus shared by every component of this session.
        connection: The remote-control connection (created from cdp_url if omitted).
        tabs: The tab registry.
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        extra='forbid',
        revalidate_instances='never',
    )

    cdp_url: str | None = Field(default_factory=lambda: CONFIG.CDP_URL)
    event_bus: EventBus = Field(default_factory=EventBus)
    connection: SessionConnection | None = None
    tabs: TabRegistry | None = None
    reconnect_policy: ReconnectPolicy | None = None

    _started: bool = PrivateAttr(default=False)
    _stopped: bool = PrivateAttr(default=False)

    def model_post_init(self, __context) -> None:
        if self.connection is None:
            if not self.cdp_url:
                raise ValueError('cdp_url is required (or set TABSTREAM_CDP_URL)')
            self.connection = SessionConnection(
                cdp_url=self.cdp_url,
                event_bus=self.event_bus,
                policy=self.reconnect_policy or ReconnectPolicy.from_config(),
            )
        if self.tabs is None:
            self.tabs = TabRegistry(
                connection=self.connection,
                event_bus=self.event_bus,
                navigation_timeout=CONFIG.NAVIGATION_TIMEOUT,
            )

    @property
    def state(self) -> ConnectionState:
        assert self.connection is not None
        return self.connection.state

    def get_snapshot(self) -> TabsState:
        assert self.tabs is not None
        return self.tabs.get_snapshot()

    async def start(self) -> 'BrowserSession':
        """Connect, adopt already open pages and make sure one tab is active.

        Raises:
            ConnectionFailedError: If the browser cannot be reached.
        """
        assert self.connection is not None and self.tabs is not None
        if self._started:
            return self
        if self.connection.state is ConnectionState.DESTROYED:
            raise ConnectionFailedError('Cannot start a stopped session', state=ConnectionState.DESTROYED.value)

        await self.connection.connect()
        await self.tabs.start()
        existing = await self.tabs.initialize_existing_tabs()
        if not existing:
            await self.tabs.create_tab()

        self._started = True
        logger.info(f'[BrowserSession] Started with {len(self.tabs.tab_ids)} tab(s)')
        return self

    async def stop(self, close_tabs: bool = True) -> None:
        """Tear everything down. Safe to call more than once.

        Args:
            close_tabs: Close the pages in the browser, or only detach from them.
        """
        assert self.connection is not None and self.tabs is not None
        if self._stopped:
            return
        self._stopped = True
        try:
            await self.tabs.destroy(close_tabs=close_tabs)
        finally:
            await self.connection.destroy()
            await self.event_bus.stop(clear=True, timeout=5)
        self._started = False
        logger.info('[BrowserSession] Stopped')

    async def __aenter__(self) -> 'BrowserSession':
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
