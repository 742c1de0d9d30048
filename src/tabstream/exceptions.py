"""Exceptions module for session, navigation and screencast errors."""


class TabstreamError(Exception):
    """Base exception for all tabstream errors."""
    pass


class ConnectionFailedError(TabstreamError):
    """Raised when an operation needs a live connection and none is available.

    Covers an initial connect failure, reconnect-policy exhaustion and any
    command issued while the connection is reconnecting or destroyed.
    """

    def __init__(self, message: str, state: str | None = None):
        super().__init__(message)
        self.message = message
        self.state = state

    def __str__(self) -> str:
        if self.state:
            return f"{self.message} (connection state: {self.state})"
        return self.message


class TabNotFoundError(TabstreamError):
    """Raised when a tab id does not belong to the registry."""

    def __init__(self, tab_id: str):
        super().__init__(f"Tab {tab_id} not found")
        self.tab_id = tab_id


class NavigationError(TabstreamError):
    """Raised when a navigation command fails on the remote side."""

    def __init__(self, message: str, url: str | None = None):
        super().__init__(message)
        self.message = message
        self.url = url

    def __str__(self) -> str:
        if self.url:
            return f"{self.message} ({self.url})"
        return self.message


class NavigationTimeoutError(NavigationError):
    """Raised when a navigation does not reach its wait condition in time."""
    pass


class NavigationAbortedError(NavigationError):
    """Raised inside a navigation that was superseded by a newer one."""
    pass


class ScreencastError(TabstreamError):
    """Raised when a screencast cannot be started."""

    def __init__(self, message: str, tab_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.tab_id = tab_id
