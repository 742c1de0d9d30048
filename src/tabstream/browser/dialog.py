"""Per-tab JavaScript dialog interception.

Unlike an automation watchdog that answers dialogs itself, the interceptor
only records the open dialog and waits for the presentation layer to accept
or dismiss it. States are Closed and Open(meta).
"""

import logging
from collections.abc import Callable
from typing import Any

from bubus import EventBus
from pydantic import BaseModel, ConfigDict, PrivateAttr

from tabstream.browser.connection import SessionConnection
from tabstream.browser.events import TabDialogChangedEvent
from tabstream.browser.views import DialogMeta

logger = logging.getLogger(__name__)


class DialogInterceptor(BaseModel):
    """Tracks the modal dialog of one tab and resolves it on request.

    Listens to (on the tab's CDP session):
        Page.javascriptDialogOpening: Closed -> Open, emits TabDialogChangedEvent.
        Page.javascriptDialogClosed: Open -> Closed, emits TabDialogChangedEvent.
            Fires however the dialog went away (including navigation) and is a
            no-op when already Closed.
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        extra='forbid',
        validate_assignment=False,
        revalidate_instances='never',
    )

    tab_id: str
    connection: SessionConnection
    event_bus: EventBus

    _session_id: str | None = PrivateAttr(default=None)
    _dialog: DialogMeta | None = PrivateAttr(default=None)
    _unsubscribers: list[Callable[[], None]] = PrivateAttr(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self._dialog is not None

    @property
    def meta(self) -> DialogMeta | None:
        return self._dialog

    def attach(self, session_id: str) -> None:
        """Listen for dialog events on a (possibly new) CDP session."""
        self.detach()
        if self._dialog is not None:
            # The previous session is gone; the browser re-announces a still-open dialog
            self._set_closed()
        self._session_id = session_id
        self._unsubscribers = [
            self.connection.on('Page.javascriptDialogOpening', self.on_dialog_opening, session_id=session_id),
            self.connection.on('Page.javascriptDialogClosed', self.on_dialog_closed, session_id=session_id),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def on_dialog_opening(self, event: dict[str, Any], session_id: str | None = None) -> None:
        dialog = DialogMeta(
            type=event.get('type', 'alert'),
            message=event.get('message', ''),
            default_value=event.get('defaultPrompt', ''),
        )

        if self._dialog is not None:
            # Keep the first dialog so its pending accept/dismiss stays valid
            logger.warning(
                f'[DialogInterceptor] Tab {self.tab_id}: {dialog.type} dialog opened while '
                f'{self._dialog.type} dialog is still open, keeping the first one'
            )
            return

        self._dialog = dialog
        logger.info(f"[DialogInterceptor] Tab {self.tab_id}: {dialog.type} dialog opened: '{dialog.message[:100]}'")
        self.event_bus.dispatch(TabDialogChangedEvent(tab_id=self.tab_id, is_open=True, dialog=dialog))

    def on_dialog_closed(self, event: dict[str, Any] | None = None, session_id: str | None = None) -> None:
        if self._dialog is None:
            return
        logger.debug(f'[DialogInterceptor] Tab {self.tab_id}: dialog closed by the page')
        self._set_closed()

    async def accept(self, prompt_text: str | None = None) -> bool:
        """Accept the open dialog, optionally answering a prompt.

        Returns:
            False if no dialog is open or the browser rejected the command
            (the dialog is then still considered open), True otherwise.
        """
        return await self._resolve(accept=True, prompt_text=prompt_text)

    async def dismiss(self) -> bool:
        """Dismiss the open dialog. Same contract as accept()."""
        return await self._resolve(accept=False)

    async def _resolve(self, accept: bool, prompt_text: str | None = None) -> bool:
        if self._dialog is None:
            return False

        params: dict[str, Any] = {'accept': accept}
        if accept and prompt_text is not None:
            params['promptText'] = prompt_text

        action = 'accept' if accept else 'dismiss'
        try:
            await self.connection.client.send.Page.handleJavaScriptDialog(params=params, session_id=self._session_id)
        except Exception as e:
            logger.error(f'[DialogInterceptor] Failed to {action} dialog on tab {self.tab_id}: {type(e).__name__}: {e}')
            return False

        # Page.javascriptDialogClosed may already have closed it
        if self._dialog is not None:
            self._set_closed()
        return True

    def _set_closed(self) -> None:
        self._dialog = None
        self.event_bus.dispatch(TabDialogChangedEvent(tab_id=self.tab_id, is_open=False))
