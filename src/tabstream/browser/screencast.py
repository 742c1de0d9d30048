"""Per-tab screencast streaming with credit-based frame acknowledgment.

The browser withholds frame N+1 until frame N is acknowledged, so every
delivered frame is acknowledged first, before filtering, decoding or drawing,
and whatever happens to it downstream. Frames are consumed in delivery order
by a single consumer task; acknowledgments are sent sequentially by that task
and are never reordered. Decoding and drawing run in a separate render task
so a slow frame never delays the next acknowledgment. That task draws one
frame at a time and only the newest waiting frame; older ones are dropped.

States: Idle -> Starting -> Active -> Stopping -> Idle.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from bubus import EventBus
from pydantic import BaseModel, ConfigDict, PrivateAttr, ValidationError

from tabstream.browser.connection import SessionConnection
from tabstream.browser.events import ScreencastErrorEvent, ScreencastStartedEvent, ScreencastStoppedEvent
from tabstream.browser.surface import FrameSurface, decode_frame_async
from tabstream.browser.views import ScreencastFrame, ScreencastOptions
from tabstream.config import CONFIG
from tabstream.exceptions import ScreencastError

logger = logging.getLogger(__name__)

# Seconds the consumer gets to drain after the stop signal before it is cancelled
STOP_GRACE_PERIOD = 1.0


class ScreencastState(str, Enum):
    IDLE = 'idle'
    STARTING = 'starting'
    ACTIVE = 'active'
    STOPPING = 'stopping'


class ScreencastPipeline(BaseModel):
    """Streams one tab's frames onto a FrameSurface.

    Frames arrive on a dedicated CDP sub-session attached to the tab's target,
    created lazily on the first start() and released by stop().

    Emits:
        ScreencastStartedEvent, ScreencastStoppedEvent, and one
        ScreencastErrorEvent per frame that fails to decode or draw.

    Example:
        >>> surface = ImageSurface()
        >>> await tab.get_renderer().start(surface, ScreencastOptions(quality=60))
        >>> ...
        >>> await tab.get_renderer().stop()
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        extra='forbid',
        validate_assignment=False,
        revalidate_instances='never',
    )

    tab_id: str
    target_id: str
    connection: SessionConnection
    event_bus: EventBus

    _state: ScreencastState = PrivateAttr(default=ScreencastState.IDLE)
    _options: ScreencastOptions | None = PrivateAttr(default=None)
    _sub_session_id: str | None = PrivateAttr(default=None)
    _queue: asyncio.Queue | None = PrivateAttr(default=None)
    _cancel: asyncio.Event | None = PrivateAttr(default=None)
    _consumer_task: asyncio.Task | None = PrivateAttr(default=None)
    _render_task: asyncio.Task | None = PrivateAttr(default=None)
    _pending_frame: ScreencastFrame | None = PrivateAttr(default=None)
    _unsubscribe: Callable[[], None] | None = PrivateAttr(default=None)

    @property
    def state(self) -> ScreencastState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is ScreencastState.ACTIVE

    @property
    def options(self) -> ScreencastOptions | None:
        return self._options

    @property
    def sub_session_id(self) -> str | None:
        return self._sub_session_id

    # region - ========== Lifecycle ==========

    async def start(self, surface: FrameSurface, options: ScreencastOptions | None = None) -> None:
        """Start streaming frames onto `surface`.

        Raises:
            ScreencastError: If a screencast is already running on this tab, or
                the browser refused to start one. On failure the pipeline is
                back in Idle with nothing left subscribed.
        """
        if self._state is not ScreencastState.IDLE:
            raise ScreencastError('Screencast is already active', tab_id=self.tab_id)

        options = options or ScreencastOptions(**CONFIG.get_screencast_config())
        logger.info(f'[ScreencastPipeline] Starting screencast on tab {self.tab_id} with {options.to_cdp_params()}')

        self._state = ScreencastState.STARTING
        self._cancel = asyncio.Event()
        self._queue = asyncio.Queue()

        try:
            session_id = await self._ensure_sub_session()
            self._unsubscribe = self.connection.on('Page.screencastFrame', self._on_frame, session_id=session_id)
            await self.connection.client.send.Page.startScreencast(
                params=options.to_cdp_params(),
                session_id=session_id,
            )
        except Exception as e:
            logger.error(f'[ScreencastPipeline] Failed to start screencast on tab {self.tab_id}: {type(e).__name__}: {e}')
            self._teardown_local()
            await self._release_sub_session()
            self._state = ScreencastState.IDLE
            raise ScreencastError(f'Failed to start screencast: {e}', tab_id=self.tab_id) from e

        self._options = options
        self._consumer_task = asyncio.create_task(self._consume(surface, self._queue, self._cancel, session_id))
        self._state = ScreencastState.ACTIVE
        self.event_bus.dispatch(ScreencastStartedEvent(tab_id=self.tab_id, options=options.model_dump()))

    async def stop(self) -> None:
        """Stop streaming. A no-op unless Active; teardown completes even if the browser errors."""
        if self._state is not ScreencastState.ACTIVE:
            return

        self._state = ScreencastState.STOPPING
        session_id = self._sub_session_id
        try:
            self._signal_stop()
            try:
                await self.connection.client.send.Page.stopScreencast(session_id=session_id)
            except Exception as e:
                logger.warning(f'[ScreencastPipeline] Failed to stop screencast on tab {self.tab_id}: {type(e).__name__}: {e}')
            await self._join_consumer()
            await self._release_sub_session()
        finally:
            self._teardown_local()
            self._state = ScreencastState.IDLE

        logger.info(f'[ScreencastPipeline] Screencast stopped on tab {self.tab_id}')
        self.event_bus.dispatch(ScreencastStoppedEvent(tab_id=self.tab_id))

    async def dispose(self) -> None:
        """Stop streaming and release the sub-session."""
        await self.stop()
        await self._release_sub_session()

    def invalidate(self, reason: str = 'connection lost') -> None:
        """Drop the stream without talking to the browser (its session is gone)."""
        was_active = self._state is ScreencastState.ACTIVE
        self._signal_stop()
        if self._consumer_task is not None and not self._consumer_task.done():
            self._consumer_task.cancel()
        self._teardown_local()
        self._sub_session_id = None
        self._state = ScreencastState.IDLE
        if was_active:
            self.event_bus.dispatch(ScreencastStoppedEvent(tab_id=self.tab_id, reason=reason))

    # endregion

    # region - ========== Frame consumer ==========

    def _on_frame(self, event: dict[str, Any], session_id: str | None = None) -> None:
        queue = self._queue
        if queue is None or self._cancel is None or self._cancel.is_set():
            return
        queue.put_nowait(event)

    async def _consume(
        self,
        surface: FrameSurface,
        queue: asyncio.Queue,
        cancel: asyncio.Event,
        session_id: str,
    ) -> None:
        while True:
            event = await queue.get()
            if event is None or cancel.is_set():
                return

            await self._ack(event.get('sessionId'), session_id)

            metadata = event.get('metadata') or {}
            if metadata.get('timestamp') is None:
                logger.debug(f'[ScreencastPipeline] Skipping frame without timestamp on tab {self.tab_id}')
                continue

            try:
                frame = ScreencastFrame.from_cdp(event)
            except ValidationError as e:
                self._report_frame_error(e, event.get('sessionId'))
                continue

            if self._pending_frame is not None:
                logger.debug(f'[ScreencastPipeline] Dropping superseded frame {self._pending_frame.session_id} on tab {self.tab_id}')
            self._pending_frame = frame
            if self._render_task is None or self._render_task.done():
                self._render_task = asyncio.create_task(self._render_latest(surface))

    async def _ack(self, frame_session_id: int | None, session_id: str) -> None:
        try:
            await self.connection.client.send.Page.screencastFrameAck(
                params={'sessionId': frame_session_id},
                session_id=session_id,
            )
        except Exception as e:
            logger.debug(f'[ScreencastPipeline] Failed to acknowledge screencast frame: {type(e).__name__}: {e}')

    async def _render_latest(self, surface: FrameSurface) -> None:
        # One frame is drawn at a time, always the newest one waiting
        while self._pending_frame is not None:
            frame, self._pending_frame = self._pending_frame, None
            await self._render(surface, frame)

    async def _render(self, surface: FrameSurface, frame: ScreencastFrame) -> None:
        try:
            image = await decode_frame_async(frame.data)
            # Frames may be smaller than the requested bounds
            width = int(frame.metadata.device_width)
            height = int(frame.metadata.device_height)
            result = surface.draw(image, 0, 0, width, height)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._report_frame_error(e, frame.session_id)

    def _report_frame_error(self, error: Exception, frame_session_id: int | None) -> None:
        logger.error(f'[ScreencastPipeline] Failed to process screencast frame on tab {self.tab_id}: {type(error).__name__}: {error}')
        self.event_bus.dispatch(
            ScreencastErrorEvent(
                tab_id=self.tab_id,
                error_type=type(error).__name__,
                message=str(error),
                frame_session_id=frame_session_id,
            )
        )

    # endregion

    # region - ========== Helpers ==========

    async def _ensure_sub_session(self) -> str:
        if self._sub_session_id is None:
            result = await self.connection.client.send.Target.attachToTarget(
                params={'targetId': self.target_id, 'flatten': True}
            )
            self._sub_session_id = result['sessionId']
            logger.debug(f'[ScreencastPipeline] Attached screencast session {self._sub_session_id} for tab {self.tab_id}')
        return self._sub_session_id

    async def _release_sub_session(self) -> None:
        session_id, self._sub_session_id = self._sub_session_id, None
        if session_id is None:
            return
        try:
            await self.connection.client.send.Target.detachFromTarget(params={'sessionId': session_id})
        except Exception as e:
            logger.debug(f'[ScreencastPipeline] Failed to detach screencast session {session_id}: {type(e).__name__}: {e}')

    def _signal_stop(self) -> None:
        if self._cancel is not None:
            self._cancel.set()
        if self._queue is not None:
            self._queue.put_nowait(None)

    async def _join_consumer(self) -> None:
        task = self._consumer_task
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=STOP_GRACE_PERIOD)
            if not done:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        self._pending_frame = None
        render = self._render_task
        if render is not None and not render.done():
            render.cancel()
            await asyncio.gather(render, return_exceptions=True)

    def _teardown_local(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._pending_frame = None
        if self._render_task is not None and not self._render_task.done():
            self._render_task.cancel()
        self._render_task = None
        self._consumer_task = None
        self._queue = None
        self._cancel = None

    # endregion
