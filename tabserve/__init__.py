"""Headless browser tabs driven over HTTP.

Clients keep a browser tab alive under a session id and drive it with
navigate/click/type/key/scroll/back/forward actions, getting a fresh
screenshot back after each one.
"""

__version__ = "1.0"

from tabserve.dispatcher import ActionKind, ActionRequest, ActionResult, Dispatcher
from tabserve.sessions import SessionStore

__all__ = [
    "ActionKind",
    "ActionRequest",
    "ActionResult",
    "Dispatcher",
    "SessionStore",
    "__version__",
]
