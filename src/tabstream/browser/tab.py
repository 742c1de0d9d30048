"""Tab class for per-tab navigation, metadata and ownership of dialog/screencast state."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Literal
from uuid import uuid4

from bubus import EventBus

from tabstream.browser.connection import SessionConnection
from tabstream.browser.dialog import DialogInterceptor
from tabstream.browser.events import TabLoadingStateChangedEvent
from tabstream.browser.screencast import ScreencastPipeline
from tabstream.browser.views import ActionResponse, WaitUntil
from tabstream.config import CONFIG
from tabstream.exceptions import NavigationAbortedError, NavigationError, NavigationTimeoutError, TabstreamError

logger = logging.getLogger(__name__)

FAVICON_JS = """
(() => {
  const iconLink = document.querySelector('link[rel*="icon"]');
  if (iconLink && iconLink.href) {
    return iconLink.href;
  }
  const origin = window.location.origin;
  if (!origin || origin === 'null') {
    return null;
  }
  return `${origin}/favicon.ico`;
})()
"""

LOAD_EVENTS: dict[str, str] = {
    'load': 'Page.loadEventFired',
    'domcontentloaded': 'Page.domContentEventFired',
}


class Tab:
    """One logical tab: a page target plus its CDP session.

    Provides navigation with wait conditions, cached title/url/favicon, and
    owns exactly one DialogInterceptor and one (lazily created)
    ScreencastPipeline.
    """

    def __init__(
        self,
        connection: SessionConnection,
        event_bus: EventBus,
        target_id: str,
        url: str = 'about:blank',
        tab_id: str | None = None,
        navigation_timeout: float | None = None,
    ):
        self._id = tab_id or uuid4().hex[:12]
        self._connection = connection
        self._event_bus = event_bus
        self._target_id = target_id
        self._session_id: str | None = None
        self._status: Literal['active', 'inactive'] = 'inactive'
        self._url = url
        self._title = ''
        self._favicon: str | None = None
        self._is_loading = False
        self._closed = False
        self._reload_abort: asyncio.Event | None = None
        self._load_waiters: dict[str, list[asyncio.Future]] = {name: [] for name in LOAD_EVENTS}
        self._unsubscribers: list[Callable[[], None]] = []
        self._navigation_timeout = navigation_timeout or CONFIG.NAVIGATION_TIMEOUT
        self._dialog = DialogInterceptor(tab_id=self._id, connection=connection, event_bus=event_bus)
        self._renderer: ScreencastPipeline | None = None

    def __repr__(self) -> str:
        return f'<Tab {self._id} target={self._target_id[-4:]} {self._status} {self._url}>'

    # region - ========== Properties ==========

    @property
    def tab_id(self) -> str:
        return self._id

    @property
    def target_id(self) -> str:
        return self._target_id

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def status(self) -> Literal['active', 'inactive']:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._status == 'active'

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def dialog(self) -> DialogInterceptor:
        return self._dialog

    @property
    def _client(self):
        """Get the CDP client from the connection (fails fast when disconnected)."""
        return self._connection.client

    def get_url(self) -> str:
        return self._url

    # endregion

    # region - ========== Session ==========

    async def attach(self) -> None:
        """Attach a flattened CDP session to the target and start listening to it."""
        result = await self._client.send.Target.attachToTarget(
            params={'targetId': self._target_id, 'flatten': True}
        )
        self._session_id = result['sessionId']

        await asyncio.gather(
            self._client.send.Page.enable(session_id=self._session_id),
            self._client.send.Runtime.enable(session_id=self._session_id),
        )

        self._subscribe(self._session_id)
        self._dialog.attach(self._session_id)
        logger.debug(f'[Tab] {self._id} attached to target {self._target_id} (session {self._session_id})')

    async def reattach(self) -> None:
        """Attach again after the connection was replaced; the old session no longer exists."""
        self._unsubscribe_all()
        self._session_id = None
        if self._renderer is not None:
            self._renderer.invalidate()
        self._fail_waiters()
        await self.attach()

    def _subscribe(self, session_id: str) -> None:
        self._unsubscribe_all()
        on = self._connection.on
        self._unsubscribers = [
            on('Page.loadEventFired', lambda event, sid=None: self._resolve_waiters('load'), session_id=session_id),
            on(
                'Page.domContentEventFired',
                lambda event, sid=None: self._resolve_waiters('domcontentloaded'),
                session_id=session_id,
            ),
            on('Page.frameNavigated', self._on_frame_navigated, session_id=session_id),
        ]

    def _unsubscribe_all(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_frame_navigated(self, event: dict[str, Any], session_id: str | None = None) -> None:
        frame = event.get('frame') or {}
        if frame.get('parentId'):
            return
        self._url = frame.get('url', self._url) + frame.get('urlFragment', '')
        # New document, the icon may differ
        self._favicon = None
        if event.get('type') == 'BackForwardCacheRestore':
            # Pages restored from the back/forward cache fire no load events
            for wait_until in LOAD_EVENTS:
                self._resolve_waiters(wait_until)

    # endregion

    # region - ========== Metadata ==========

    async def get_title(self) -> str:
        """Fetch the current title (also refreshes the cached url)."""
        result = await self._client.send.Target.getTargetInfo(params={'targetId': self._target_id})
        info = result['targetInfo']
        self._url = info.get('url', self._url)
        self._title = info.get('title', '')
        return self._title

    async def get_favicon(self) -> str | None:
        """Resolve the favicon URL, memoized after the first success.

        Failures return None and are not cached, so the next call retries.
        """
        if self._favicon:
            return self._favicon

        try:
            result = await self._client.send.Runtime.evaluate(
                params={'expression': FAVICON_JS, 'returnByValue': True},
                session_id=self._session_id,
            )
            if 'exceptionDetails' in result:
                raise RuntimeError(f'JavaScript evaluation failed: {result["exceptionDetails"]}')
            favicon = result.get('result', {}).get('value')
        except Exception as e:
            logger.warning(f'[Tab] Failed to get favicon for tab {self._id}: {type(e).__name__}: {e}')
            return None

        if favicon:
            self._favicon = favicon
        return favicon or None

    # endregion

    # region - ========== Focus ==========

    async def active(self) -> None:
        """Bring the tab to front."""
        await self._client.send.Target.activateTarget(params={'targetId': self._target_id})
        await self._client.send.Page.bringToFront(session_id=self._session_id)
        self._status = 'active'

    async def inactive(self) -> None:
        """Mark the tab as backgrounded; its screencast stops since only the active tab is shown."""
        self._status = 'inactive'
        if self._renderer is not None:
            await self._renderer.stop()

    # endregion

    # region - ========== Navigation ==========

    def dialog_guard(self) -> ActionResponse:
        """Refuse page actions while a dialog blocks the page."""
        meta = self._dialog.meta
        if meta is None:
            return ActionResponse(success=True)
        return ActionResponse(
            success=False,
            message=f'A {meta.type} dialog is open on this tab, accept or dismiss it first',
            detail=meta,
        )

    async def goto(self, url: str, wait_until: WaitUntil | None = 'load') -> None:
        """Navigate to a URL.

        Raises:
            NavigationError: If the browser reports a navigation error.
            NavigationTimeoutError: If the wait condition is not reached in time.
        """
        owns_loading = self._reload_abort is None
        self._set_loading(True)
        try:
            await self._navigate(
                lambda: self._client.send.Page.navigate(
                    params={'url': url, 'transitionType': 'typed'},
                    session_id=self._session_id,
                ),
                wait_until,
                url=url,
            )
        finally:
            if owns_loading and self._reload_abort is None:
                self._set_loading(False)

    async def go_back(self, wait_until: WaitUntil | None = 'load') -> bool:
        """Navigate back in history.

        Returns:
            False while a dialog is open or when there is no previous entry.
        """
        return await self._go_history(-1, wait_until)

    async def go_forward(self, wait_until: WaitUntil | None = 'load') -> bool:
        """Navigate forward in history. Same contract as go_back()."""
        return await self._go_history(1, wait_until)

    async def _go_history(self, delta: int, wait_until: WaitUntil | None) -> bool:
        if self._dialog.is_open:
            return False

        history = await self._client.send.Page.getNavigationHistory(session_id=self._session_id)
        index = history['currentIndex'] + delta
        entries = history['entries']
        if index < 0 or index >= len(entries):
            logger.debug(f'[Tab] No history entry at offset {delta} for tab {self._id}')
            return False

        entry = entries[index]
        await self._navigate(
            lambda: self._client.send.Page.navigateToHistoryEntry(
                params={'entryId': entry['id']},
                session_id=self._session_id,
            ),
            wait_until,
            url=entry.get('url'),
        )
        return True

    async def reload(self, wait_until: WaitUntil | None = 'load') -> bool:
        """Reload the page, superseding a reload that is still pending.

        Returns:
            True once this reload completed, False if a newer reload superseded it.

        Raises:
            NavigationError: If this reload failed for any other reason.
        """
        if self._reload_abort is not None:
            self._reload_abort.set()

        abort = asyncio.Event()
        self._reload_abort = abort
        self._set_loading(True)

        try:
            await self._navigate(
                lambda: self._client.send.Page.reload(session_id=self._session_id),
                wait_until,
                abort=abort,
                url=self._url,
            )
            return True
        except NavigationAbortedError:
            logger.debug(f'[Tab] Reload on tab {self._id} superseded by a newer reload')
            return False
        finally:
            # A superseded attempt must not clear the token or loading flag of its successor
            if self._reload_abort is abort:
                self._reload_abort = None
                self._set_loading(False)

    async def _navigate(
        self,
        command: Callable[[], Awaitable[Any]],
        wait_until: WaitUntil | None,
        abort: asyncio.Event | None = None,
        url: str | None = None,
    ) -> None:
        waiter = self._add_waiter(wait_until) if wait_until else None
        try:
            try:
                result = await command()
            except TabstreamError:
                raise
            except Exception as e:
                raise NavigationError(f'Navigation command failed: {type(e).__name__}: {e}', url=url) from e
            if isinstance(result, dict) and result.get('errorText'):
                raise NavigationError(f'Navigation failed: {result["errorText"]}', url=url)
            if abort is not None and abort.is_set():
                raise NavigationAbortedError('Navigation superseded', url=url)
            if waiter is not None:
                await self._wait_for(waiter, wait_until, abort, url)
        finally:
            if waiter is not None and wait_until is not None:
                self._discard_waiter(wait_until, waiter)

    async def _wait_for(
        self,
        waiter: asyncio.Future,
        wait_until: str | None,
        abort: asyncio.Event | None,
        url: str | None,
    ) -> None:
        waitables: set[asyncio.Future] = {waiter}
        abort_task = None
        if abort is not None:
            abort_task = asyncio.ensure_future(abort.wait())
            waitables.add(abort_task)

        try:
            done, _ = await asyncio.wait(waitables, timeout=self._navigation_timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if abort_task is not None:
                abort_task.cancel()

        if abort_task is not None and abort_task in done:
            raise NavigationAbortedError('Navigation superseded', url=url)
        if waiter in done:
            waiter.result()
            return
        raise NavigationTimeoutError(
            f'Navigation did not reach {wait_until} within {self._navigation_timeout}s', url=url
        )

    def _add_waiter(self, wait_until: str) -> asyncio.Future:
        waiter = asyncio.get_running_loop().create_future()
        self._load_waiters[wait_until].append(waiter)
        return waiter

    def _discard_waiter(self, wait_until: str, waiter: asyncio.Future) -> None:
        waiters = self._load_waiters[wait_until]
        if waiter in waiters:
            waiters.remove(waiter)
        if not waiter.done():
            waiter.cancel()

    def _resolve_waiters(self, wait_until: str) -> None:
        for waiter in self._load_waiters[wait_until]:
            if not waiter.done():
                waiter.set_result(None)

    def _fail_waiters(self) -> None:
        for waiters in self._load_waiters.values():
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_exception(NavigationError('Tab session was lost', url=self._url))

    def _set_loading(self, loading: bool) -> None:
        if self._is_loading == loading:
            return
        self._is_loading = loading
        self._event_bus.dispatch(TabLoadingStateChangedEvent(tab_id=self._id, is_loading=loading))

    # endregion

    # region - ========== Screencast / teardown ==========

    def get_renderer(self) -> ScreencastPipeline:
        if self._renderer is None:
            self._renderer = ScreencastPipeline(
                tab_id=self._id,
                target_id=self._target_id,
                connection=self._connection,
                event_bus=self._event_bus,
            )
        return self._renderer

    async def close(self) -> None:
        """Stop streaming, stop listening and close the target."""
        if self._closed:
            return
        await self.detach()
        await self._client.send.Target.closeTarget(params={'targetId': self._target_id})
        logger.debug(f'[Tab] Closed tab {self._id} (target {self._target_id})')

    async def detach(self) -> None:
        """Stop streaming and stop listening, leaving the page open in the browser."""
        if self._closed:
            return
        self._closed = True

        if self._reload_abort is not None:
            self._reload_abort.set()
        if self._renderer is not None:
            await self._renderer.dispose()
        self._dialog.detach()
        self._unsubscribe_all()
        self._fail_waiters()

        session_id, self._session_id = self._session_id, None
        if session_id is not None and self._connection.is_connected:
            try:
                await self._client.send.Target.detachFromTarget(params={'sessionId': session_id})
            except Exception as e:
                logger.debug(f'[Tab] Failed to detach session {session_id}: {type(e).__name__}: {e}')

    # endregion
