"""Errors surfaced to HTTP clients.

Each error knows its HTTP status and the short code written into the JSON
error body, so handlers only ever raise and the server middleware renders.
"""
from __future__ import annotations


class TabserveError(Exception):
    status = 500
    code = "internal_error"


class InvalidRequest(TabserveError):
    """A required parameter is missing or malformed."""

    status = 400
    code = "invalid_request"


class SessionUnavailable(TabserveError):
    """The engine could not produce a browsing context."""

    code = "session_unavailable"


class SessionCrashed(TabserveError):
    """The liveness probe failed on an existing session."""

    status = 503
    code = "session_crashed"


class NavigationFailed(TabserveError):
    """Back/forward history navigation did not complete in time."""

    code = "navigation_failed"


class ActionFailed(TabserveError):
    """An input or capture call into the engine failed."""

    code = "action_failed"
