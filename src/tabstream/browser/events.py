"""Event definitions published by the connection, the tab registry and each tab.

Every per-tab event carries `tab_id`, so a presentation layer can subscribe
once on the session's EventBus and route messages by tab.
"""

import os
from typing import Any

from bubus import BaseEvent
from pydantic import Field

from tabstream.browser.views import DialogMeta


def _get_timeout(env_var: str, default: float) -> float | None:
    """Safely parse environment variable timeout values with robust error handling.

    Args:
        env_var: Environment variable name (e.g. 'TIMEOUT_TabCreatedEvent')
        default: Default timeout value as float (e.g. 15.0)

    Returns:
        Parsed float value or the default if parsing fails
    """
    env_value = os.getenv(env_var)
    if env_value:
        try:
            parsed = float(env_value)
            if parsed < 0:
                return default
            return parsed
        except (ValueError, TypeError):
            pass

    return default


# ============================================================================
# Connection Events
# ============================================================================


class ConnectionStateChangedEvent(BaseEvent[None]):
    """The session connection moved to a new state."""

    state: str
    previous_state: str

    event_timeout: float | None = _get_timeout('TIMEOUT_ConnectionStateChangedEvent', 10.0)


class BrowserReconnectedEvent(BaseEvent[None]):
    """The connection was re-established after a disconnect."""

    cdp_url: str
    attempts: int = Field(description='Number of attempts it took, including the successful one')

    event_timeout: float | None = _get_timeout('TIMEOUT_BrowserReconnectedEvent', 60.0)


class ReconnectFailedEvent(BaseEvent[None]):
    """The reconnect policy was exhausted; the connection is Failed."""

    attempts: int
    reason: str | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_ReconnectFailedEvent', 10.0)


# ============================================================================
# Tab Lifecycle Events
# ============================================================================


class TabEvent(BaseEvent[None]):
    """Base class for every message scoped to a single tab."""

    tab_id: str


class TabCreatedEvent(TabEvent):
    """A tab was registered (explicitly created, popup, or pre-existing page)."""

    target_id: str
    url: str = 'about:blank'
    is_popup: bool = False

    event_timeout: float | None = _get_timeout('TIMEOUT_TabCreatedEvent', 30.0)


class TabClosedEvent(TabEvent):
    """A tab was closed and removed from the registry."""

    target_id: str

    event_timeout: float | None = _get_timeout('TIMEOUT_TabClosedEvent', 10.0)


class TabActivatedEvent(TabEvent):
    """A tab became the active tab."""

    previous_tab_id: str | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_TabActivatedEvent', 10.0)


class TabLoadingStateChangedEvent(TabEvent):
    """The loading flag of a tab flipped."""

    is_loading: bool

    event_timeout: float | None = _get_timeout('TIMEOUT_TabLoadingStateChangedEvent', 30.0)


class TabDialogChangedEvent(TabEvent):
    """A JavaScript dialog opened or closed on a tab."""

    is_open: bool
    dialog: DialogMeta | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_TabDialogChangedEvent', 10.0)


# ============================================================================
# Screencast Events
# ============================================================================


class ScreencastStartedEvent(TabEvent):
    """Frame streaming started for a tab."""

    options: dict[str, Any] = Field(default_factory=dict)

    event_timeout: float | None = _get_timeout('TIMEOUT_ScreencastStartedEvent', 10.0)


class ScreencastStoppedEvent(TabEvent):
    """Frame streaming stopped for a tab."""

    reason: str | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_ScreencastStoppedEvent', 10.0)


class ScreencastErrorEvent(TabEvent):
    """A single frame could not be decoded or drawn; the stream continues."""

    error_type: str
    message: str
    frame_session_id: int | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_ScreencastErrorEvent', 10.0)
