"""Published tab state container.

A plain value holder plus subscriber callbacks invoked synchronously after
every mutation. Readers only ever see immutable TabsState snapshots, never the
live mapping.
"""

import logging
from collections.abc import Callable

from tabstream.browser.views import TabMeta, TabsState

logger = logging.getLogger(__name__)

StateListener = Callable[[TabsState], None]


class TabsStore:
    """Holds the TabsState projection owned by the TabRegistry."""

    def __init__(self) -> None:
        self._tabs: dict[str, TabMeta] = {}
        self._active_tab_id: str | None = None
        self._listeners: list[StateListener] = []

    @property
    def active_tab_id(self) -> str | None:
        return self._active_tab_id

    def __contains__(self, tab_id: object) -> bool:
        return tab_id in self._tabs

    def __len__(self) -> int:
        return len(self._tabs)

    def get(self, tab_id: str) -> TabMeta | None:
        return self._tabs.get(tab_id)

    def tab_ids(self) -> list[str]:
        return list(self._tabs)

    def get_snapshot(self) -> TabsState:
        return TabsState(tabs=dict(self._tabs), active_tab_id=self._active_tab_id)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener called with a fresh snapshot after each mutation.

        Returns:
            A callable removing the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # region - ========== Mutations ==========

    def put(self, meta: TabMeta) -> None:
        """Insert or replace a tab entry; `is_active` is derived from the active id."""
        self._tabs[meta.id] = self._with_active_flag(meta)
        self._notify()

    def remove(self, tab_id: str, *, active_tab_id: str | None = None) -> None:
        """Remove a tab, optionally moving the active tab in the same mutation."""
        self._tabs.pop(tab_id, None)
        if active_tab_id is not None:
            self._active_tab_id = active_tab_id
            self._refresh_active_flags()
        elif self._active_tab_id == tab_id:
            self._active_tab_id = None
        self._notify()

    def set_active(self, tab_id: str) -> None:
        if tab_id not in self._tabs:
            raise KeyError(tab_id)
        if self._active_tab_id == tab_id:
            return
        self._active_tab_id = tab_id
        self._refresh_active_flags()
        self._notify()

    def clear(self) -> None:
        self._tabs = {}
        self._active_tab_id = None
        self._notify()

    # endregion

    def _with_active_flag(self, meta: TabMeta) -> TabMeta:
        is_active = meta.id == self._active_tab_id
        if meta.is_active == is_active:
            return meta
        return meta.model_copy(update={'is_active': is_active})

    def _refresh_active_flags(self) -> None:
        self._tabs = {tab_id: self._with_active_flag(meta) for tab_id, meta in self._tabs.items()}

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.get_snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f'[TabsStore] State listener failed: {type(e).__name__}: {e}')
