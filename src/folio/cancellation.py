"""Cooperative cancellation for long-running passes.

Tagging and detection walk every asset or page and call slow AI services
one item at a time. The server wrapper installs a per-call token (a
``threading.Event``) and sets it on client disconnect or timeout; the pass
calls :func:`check_cancelled` between items and stops before saving
anything, so an abandoned run leaves the manifest untouched.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from folio.errors import FolioError

logger = logging.getLogger("folio")


class Cancelled(FolioError):
    """The current call was cancelled; nothing was saved."""


_current_token: ContextVar[threading.Event | None] = ContextVar("_current_token", default=None)


def new_token() -> threading.Event:
    """Create a fresh token and install it for the current context."""
    token = threading.Event()
    _current_token.set(token)
    return token


def clear_token() -> None:
    _current_token.set(None)


@contextmanager
def cancellation_scope(token: threading.Event | None = None) -> Iterator[threading.Event]:
    """Install ``token`` (or a new one) for the duration of the block."""
    token = token if token is not None else threading.Event()
    reset = _current_token.set(token)
    try:
        yield token
    finally:
        _current_token.reset(reset)


def is_cancelled() -> bool:
    token = _current_token.get()
    return token is not None and token.is_set()


def check_cancelled(context: str = "") -> None:
    """Raise :class:`Cancelled` if the current call has been cancelled.

    Args:
        context: Where the pass was, e.g. ``"tagging p3-img02"``.
    """
    if is_cancelled():
        where = f" during {context}" if context else ""
        msg = f"Operation cancelled{where}. The manifest was not modified."
        logger.warning("CANCEL %s", msg)
        raise Cancelled(msg)


def cancel_current() -> bool:
    """Set the current token. Returns False when no token is installed."""
    token = _current_token.get()
    if token is None:
        return False
    token.set()
    logger.info("CANCEL requested")
    return True
