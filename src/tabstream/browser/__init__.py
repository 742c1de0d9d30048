"""Browser-side components: connection, tabs, dialogs and screencasts."""

from tabstream.browser.connection import SessionConnection
from tabstream.browser.session import BrowserSession
from tabstream.browser.tabs import TabRegistry

__all__ = ["BrowserSession", "SessionConnection", "TabRegistry"]
