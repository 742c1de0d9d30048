"""Tab registry: the set of logical tabs, active-tab selection and published state."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from bubus import EventBus
from pydantic import BaseModel, ConfigDict, PrivateAttr

from tabstream.browser.connection import SessionConnection
from tabstream.browser.events import (
    BrowserReconnectedEvent,
    TabActivatedEvent,
    TabClosedEvent,
    TabCreatedEvent,
    TabLoadingStateChangedEvent,
)
from tabstream.browser.state import StateListener, TabsStore
from tabstream.browser.tab import Tab
from tabstream.browser.views import TabMeta, TabsState
from tabstream.exceptions import NavigationError, TabNotFoundError, TabstreamError

logger = logging.getLogger(__name__)

PLACEHOLDER_TITLE = 'Loading...'


class TabRegistry(BaseModel):
    """Owns every Tab, which one is active, and the TabsState projection.

    Invariant: once any tab has existed, `active_tab_id` keys an entry of the
    published state, until destroy().

    Listens to:
        Target.targetCreated (CDP): popups opened by a page become active tabs.
        Target.targetDestroyed (CDP): targets closed outside the registry are dropped.
        TabLoadingStateChangedEvent: refreshes the tab's metadata.
        BrowserReconnectedEvent: re-attaches every tab to the new connection.
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        extra='forbid',
        validate_assignment=False,
        revalidate_instances='never',
    )

    connection: SessionConnection
    event_bus: EventBus
    navigation_timeout: float | None = None

    _tabs: dict[str, Tab] = PrivateAttr(default_factory=dict)
    _store: TabsStore = PrivateAttr(default_factory=TabsStore)
    _being_created: set[str] = PrivateAttr(default_factory=set)
    _closing: set[str] = PrivateAttr(default_factory=set)
    _unsubscribers: list[Callable[[], None]] = PrivateAttr(default_factory=list)
    _pending_creates: int = PrivateAttr(default=0)
    _creates_settled: asyncio.Event = PrivateAttr(default_factory=asyncio.Event)
    _started: bool = PrivateAttr(default=False)
    _destroyed: bool = PrivateAttr(default=False)

    def model_post_init(self, __context) -> None:
        self._creates_settled.set()

    # region - ========== Lifecycle ==========

    async def start(self) -> None:
        """Start listening for target and tab events. Safe to call more than once."""
        if self._started:
            return
        self._started = True

        self._unsubscribers = [
            self.connection.on('Target.targetCreated', self.on_target_created),
            self.connection.on('Target.targetDestroyed', self.on_target_destroyed),
        ]
        self.event_bus.on(TabLoadingStateChangedEvent, self.on_TabLoadingStateChangedEvent)
        self.event_bus.on(BrowserReconnectedEvent, self.on_BrowserReconnectedEvent)
        await self._discover_targets()

    async def initialize_existing_tabs(self) -> list[str]:
        """Wrap every page already open in the browser as a Tab and activate the first.

        Returns:
            The ids of the registered tabs, in browser order.
        """
        result = await self.connection.client.send.Target.getTargets()
        pages = [info for info in result.get('targetInfos', []) if info.get('type') == 'page']

        tab_ids: list[str] = []
        for info in pages:
            if self._find_by_target(info['targetId']) is not None:
                continue
            try:
                tab = await self._register(info['targetId'], url=info.get('url') or 'about:blank')
            except Exception as e:
                logger.warning(f'[TabRegistry] Failed to attach existing target {info["targetId"]}: {type(e).__name__}: {e}')
                continue
            tab_ids.append(tab.tab_id)

        if tab_ids and self._store.active_tab_id is None:
            first = self._tabs[tab_ids[0]]
            self._store.set_active(first.tab_id)
            await first.active()
            self.event_bus.dispatch(TabActivatedEvent(tab_id=first.tab_id))

        await asyncio.gather(*(self.sync_tab_meta(tab_id) for tab_id in tab_ids))
        logger.info(f'[TabRegistry] Initialized {len(tab_ids)} existing tab(s)')
        return tab_ids

    async def destroy(self, close_tabs: bool = True) -> None:
        """Close (or only detach from) every tab and clear the published state.

        Later target events are ignored.
        """
        if self._destroyed:
            return
        self._destroyed = True
        self._creates_settled.set()

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        tabs = list(self._tabs.values())
        self._tabs.clear()
        results = await asyncio.gather(
            *(tab.close() if close_tabs else tab.detach() for tab in tabs),
            return_exceptions=True,
        )
        for tab, result in zip(tabs, results):
            if isinstance(result, Exception):
                logger.debug(f'[TabRegistry] Failed to close tab {tab.tab_id} during destroy: {type(result).__name__}: {result}')

        self._store.clear()
        logger.debug(f'[TabRegistry] Destroyed ({len(tabs)} tab(s) closed)')

    # endregion

    # region - ========== Tab operations ==========

    async def create_tab(self, url: str | None = None) -> str:
        """Open a new page and register it as a tab.

        The tab becomes active only when no tab is active yet.

        Raises:
            NavigationError: If navigating to `url` fails (the tab stays registered).
        """
        self._ensure_alive()
        self._pending_creates += 1
        self._creates_settled.clear()
        try:
            result = await self.connection.client.send.Target.createTarget(params={'url': 'about:blank'})
            target_id = result['targetId']
            self._being_created.add(target_id)
        finally:
            self._pending_creates -= 1
            if not self._pending_creates:
                self._creates_settled.set()

        try:
            try:
                tab = await self._register(target_id, url='about:blank')
            except Exception:
                if self._find_by_target(target_id) is None:
                    await self._close_orphan_target(target_id)
                raise

            if self._store.active_tab_id is None:
                self._store.set_active(tab.tab_id)
                await tab.active()
                self.event_bus.dispatch(TabActivatedEvent(tab_id=tab.tab_id))

            if url:
                await tab.goto(url)
            await self.sync_tab_meta(tab.tab_id)
        finally:
            self._being_created.discard(target_id)

        logger.debug(f'[TabRegistry] Created tab {tab.tab_id} (target {target_id})')
        return tab.tab_id

    async def close_tab(self, tab_id: str) -> None:
        """Close a tab.

        If it was active, the most recently added remaining tab takes over. Closing
        the last tab opens a blank replacement first, so the browser never runs out
        of pages.

        Raises:
            TabNotFoundError: If no tab has this id.
        """
        tab = self._require(tab_id)

        if self._store.active_tab_id == tab_id and len(self._tabs) == 1:
            await self.create_tab()

        self._closing.add(tab.target_id)
        try:
            await tab.close()
        except Exception as e:
            logger.warning(f'[TabRegistry] Failed to close target of tab {tab_id}: {type(e).__name__}: {e}')
        finally:
            self._closing.discard(tab.target_id)

        await self._remove_tab(tab_id)

    async def activate_tab(self, tab_id: str) -> None:
        """Make a tab the active one and background every other tab.

        Raises:
            TabNotFoundError: If no tab has this id.
        """
        tab = self._require(tab_id)
        previous = self._store.active_tab_id

        # Capture the outgoing tab's final state before it loses focus
        if previous is not None and previous != tab_id and previous in self._tabs:
            await self.sync_tab_meta(previous)

        # Published only once the tab is actually in front
        await tab.active()
        if tab_id not in self._tabs:
            return
        self._store.set_active(tab_id)

        others = [other for other_id, other in self._tabs.items() if other_id != tab_id]
        results = await asyncio.gather(*(other.inactive() for other in others), return_exceptions=True)
        for other, result in zip(others, results):
            if isinstance(result, Exception):
                logger.warning(f'[TabRegistry] Failed to deactivate tab {other.tab_id}: {type(result).__name__}: {result}')

        self.event_bus.dispatch(TabActivatedEvent(tab_id=tab_id, previous_tab_id=previous))
        await self.sync_tab_meta(tab_id)

    async def sync_tab_meta(self, tab_id: str) -> None:
        """Refresh a tab's published metadata; fetch failures fall back to defaults."""
        tab = self._tabs.get(tab_id)
        if tab is None:
            return

        title, favicon = await asyncio.gather(self._fetch_title(tab), tab.get_favicon())

        # The tab may have been closed while fetching
        if tab_id not in self._tabs:
            return
        self._store.put(
            TabMeta(
                id=tab_id,
                title=title,
                url=tab.get_url(),
                favicon=favicon,
                is_loading=tab.is_loading,
            )
        )

    # endregion

    # region - ========== Active tab navigation ==========

    async def go_back(self) -> bool:
        tab = self.get_active_tab()
        if tab is None:
            return False
        try:
            return await tab.go_back()
        except NavigationError as e:
            logger.error(f'[TabRegistry] Back navigation failed on tab {tab.tab_id}: {e}')
            return False

    async def go_forward(self) -> bool:
        tab = self.get_active_tab()
        if tab is None:
            return False
        try:
            return await tab.go_forward()
        except NavigationError as e:
            logger.error(f'[TabRegistry] Forward navigation failed on tab {tab.tab_id}: {e}')
            return False

    async def reload(self) -> bool:
        tab = self.get_active_tab()
        if tab is None:
            return False
        try:
            return await tab.reload()
        except NavigationError as e:
            logger.error(f'[TabRegistry] Reload failed on tab {tab.tab_id}: {e}')
            return False

    async def navigate(self, url: str) -> bool:
        """Navigate the active tab to `url`. Returns False with no active tab or on failure."""
        tab = self.get_active_tab()
        if tab is None:
            return False
        try:
            await tab.goto(url)
        except NavigationError as e:
            logger.error(f'[TabRegistry] Navigation to {url} failed on tab {tab.tab_id}: {e}')
            return False
        await self.sync_tab_meta(tab.tab_id)
        return True

    # endregion

    # region - ========== Accessors ==========

    @property
    def active_tab_id(self) -> str | None:
        return self._store.active_tab_id

    @property
    def tab_ids(self) -> list[str]:
        return list(self._tabs)

    def get_active_tab(self) -> Tab | None:
        active_tab_id = self._store.active_tab_id
        return self._tabs.get(active_tab_id) if active_tab_id is not None else None

    def get_tab(self, tab_id: str) -> Tab | None:
        return self._tabs.get(tab_id)

    def has_tab(self, tab_id: str) -> bool:
        return tab_id in self._tabs

    def get_current_url(self) -> str:
        tab = self.get_active_tab()
        return tab.get_url() if tab is not None else 'about:blank'

    def get_snapshot(self) -> TabsState:
        return self._store.get_snapshot()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        return self._store.subscribe(listener)

    # endregion

    # region - ========== Event handlers ==========

    async def on_target_created(self, event: dict[str, Any], session_id: str | None = None) -> None:
        """Register popups (page targets with an opener) and give them focus."""
        if self._destroyed:
            return

        info = event.get('targetInfo') or {}
        target_id = info.get('targetId')
        if info.get('type') != 'page' or not target_id or not info.get('openerId'):
            return
        if target_id in self._being_created or self._find_by_target(target_id) is not None:
            return

        # targetCreated for our own createTarget arrives before its response
        if self._pending_creates:
            await self._creates_settled.wait()
            if self._destroyed or target_id in self._being_created or self._find_by_target(target_id) is not None:
                return

        self._being_created.add(target_id)
        try:
            tab = await self._register(target_id, url=info.get('url') or 'about:blank', is_popup=True)
            if self._destroyed:
                return
            logger.info(f'[TabRegistry] Popup {tab.tab_id} opened by target {info["openerId"]}')
            await self.activate_tab(tab.tab_id)
        except TabstreamError as e:
            logger.error(f'[TabRegistry] Failed to register popup target {target_id}: {type(e).__name__}: {e}')
        finally:
            self._being_created.discard(target_id)

    async def on_target_destroyed(self, event: dict[str, Any], session_id: str | None = None) -> None:
        target_id = event.get('targetId')
        if self._destroyed or target_id is None or target_id in self._closing:
            return
        tab = self._find_by_target(target_id)
        if tab is None:
            return
        logger.info(f'[TabRegistry] Target of tab {tab.tab_id} was closed outside the registry')
        await self._remove_tab(tab.tab_id)

    async def on_TabLoadingStateChangedEvent(self, event: TabLoadingStateChangedEvent) -> None:
        meta = self._store.get(event.tab_id)
        if meta is None or self._destroyed:
            return
        self._store.put(meta.model_copy(update={'is_loading': event.is_loading}))
        await self.sync_tab_meta(event.tab_id)

    async def on_BrowserReconnectedEvent(self, event: BrowserReconnectedEvent) -> None:
        """Re-attach every tab to the new connection; tabs whose target is gone are dropped."""
        if self._destroyed:
            return

        await self._discover_targets()
        tabs = list(self._tabs.values())
        results = await asyncio.gather(*(tab.reattach() for tab in tabs), return_exceptions=True)
        for tab, result in zip(tabs, results):
            if isinstance(result, Exception):
                logger.warning(f'[TabRegistry] Dropping tab {tab.tab_id} after reconnect: {type(result).__name__}: {result}')
                await self._remove_tab(tab.tab_id)

        await asyncio.gather(*(self.sync_tab_meta(tab_id) for tab_id in list(self._tabs)))
        logger.info(f'[TabRegistry] Re-attached {len(self._tabs)} tab(s) after reconnect')

    # endregion

    # region - ========== Helpers ==========

    async def _register(self, target_id: str, url: str, is_popup: bool = False) -> Tab:
        """Wrap a target as a Tab. A target is only ever registered once."""
        if self._find_by_target(target_id) is not None:
            raise TabstreamError(f'Target {target_id} is already registered')

        tab = Tab(
            connection=self.connection,
            event_bus=self.event_bus,
            target_id=target_id,
            url=url,
            navigation_timeout=self.navigation_timeout,
        )
        await tab.attach()

        if self._find_by_target(target_id) is not None:
            await tab.detach()
            raise TabstreamError(f'Target {target_id} was registered while attaching')

        self._tabs[tab.tab_id] = tab
        self._store.put(TabMeta(id=tab.tab_id, title=PLACEHOLDER_TITLE, url=url))
        self.event_bus.dispatch(TabCreatedEvent(tab_id=tab.tab_id, target_id=target_id, url=url, is_popup=is_popup))
        return tab

    async def _remove_tab(self, tab_id: str) -> None:
        tab = self._tabs.pop(tab_id, None)
        if tab is None:
            return

        was_active = self._store.active_tab_id == tab_id
        next_active = list(self._tabs)[-1] if was_active and self._tabs else None
        # Active id moves in the same mutation that drops the entry
        self._store.remove(tab_id, active_tab_id=next_active)
        self.event_bus.dispatch(TabClosedEvent(tab_id=tab_id, target_id=tab.target_id))
        if not tab.is_closed:
            await tab.detach()

        if next_active is not None:
            await self._focus(next_active, previous_tab_id=tab_id)
        elif was_active and not self._destroyed:
            # The last tab vanished without going through close_tab()
            try:
                await self.create_tab()
            except TabstreamError as e:
                logger.error(f'[TabRegistry] Failed to open a replacement tab: {type(e).__name__}: {e}')

    async def _focus(self, tab_id: str, previous_tab_id: str | None) -> None:
        tab = self._tabs[tab_id]
        try:
            await tab.active()
        except TabstreamError as e:
            logger.warning(f'[TabRegistry] Failed to bring tab {tab_id} to front: {type(e).__name__}: {e}')
        self.event_bus.dispatch(TabActivatedEvent(tab_id=tab_id, previous_tab_id=previous_tab_id))
        await self.sync_tab_meta(tab_id)

    async def _fetch_title(self, tab: Tab) -> str:
        try:
            return await tab.get_title() or PLACEHOLDER_TITLE
        except Exception as e:
            logger.warning(f'[TabRegistry] Failed to get title for tab {tab.tab_id}: {type(e).__name__}: {e}')
            return PLACEHOLDER_TITLE

    async def _discover_targets(self) -> None:
        await self.connection.client.send.Target.setDiscoverTargets(params={'discover': True})

    async def _close_orphan_target(self, target_id: str) -> None:
        try:
            await self.connection.client.send.Target.closeTarget(params={'targetId': target_id})
        except Exception as e:
            logger.debug(f'[TabRegistry] Failed to close orphaned target {target_id}: {type(e).__name__}: {e}')

    def _find_by_target(self, target_id: str) -> Tab | None:
        for tab in self._tabs.values():
            if tab.target_id == target_id:
                return tab
        return None

    def _require(self, tab_id: str) -> Tab:
        tab = self._tabs.get(tab_id)
        if tab is None:
            raise TabNotFoundError(tab_id)
        return tab

    def _ensure_alive(self) -> None:
        if self._destroyed:
            raise TabstreamError('Tab registry has been destroyed')

    # endregion
