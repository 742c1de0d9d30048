"""tabstream - Remote browser tab orchestration and live screencasting over CDP."""

__version__ = "0.1.0"

from dotenv import load_dotenv

# Before the submodules: event timeouts are read from the environment at import time
load_dotenv()

from tabstream.browser.connection import ConnectionState, ReconnectPolicy, SessionConnection
from tabstream.browser.dialog import DialogInterceptor
from tabstream.browser.screencast import ScreencastPipeline, ScreencastState
from tabstream.browser.session import BrowserSession
from tabstream.browser.surface import FrameSurface, ImageSurface
from tabstream.browser.tab import Tab
from tabstream.browser.tabs import TabRegistry
from tabstream.browser.views import ActionResponse, DialogMeta, ScreencastOptions, TabMeta, TabsState
from tabstream.exceptions import (
    ConnectionFailedError,
    NavigationAbortedError,
    NavigationError,
    NavigationTimeoutError,
    ScreencastError,
    TabNotFoundError,
    TabstreamError,
)

__all__ = [
    "__version__",
    "BrowserSession",
    "SessionConnection",
    "ConnectionState",
    "ReconnectPolicy",
    "TabRegistry",
    "Tab",
    "DialogInterceptor",
    "ScreencastPipeline",
    "ScreencastState",
    "FrameSurface",
    "ImageSurface",
    "TabMeta",
    "TabsState",
    "DialogMeta",
    "ActionResponse",
    "ScreencastOptions",
    "TabstreamError",
    "ConnectionFailedError",
    "TabNotFoundError",
    "NavigationError",
    "NavigationTimeoutError",
    "NavigationAbortedError",
    "ScreencastError",
]
