"""Cooperative cancellation for background library jobs.

A :class:`CancelToken` wraps a ``threading.Event``.  The scheduler creates
one per run with a timeout; a watchdog timer sets the token when the
timeout elapses.  Pipeline code polls it between phases through
:func:`check_cancelled`, which reads the token installed for the current
context::

    with CancelToken(timeout=600) as token:
        papers = library.load(...)
        check_cancelled("rescrape: load")
        ...

Nothing is interrupted mid-phase.  A phase that has started always runs
to completion, so a cancelled job never leaves a half-written batch.
"""

from __future__ import annotations

import logging
import threading
from contextvars import ContextVar, Token

logger = logging.getLogger(__name__)


class Cancelled(Exception):
    """Raised by :func:`check_cancelled` once the current token is set."""


_current: ContextVar[CancelToken | None] = ContextVar("_current", default=None)


class CancelToken:
    """Cancellation flag with an optional watchdog deadline.

    Use as a context manager: entering installs the token as current and
    starts the watchdog, leaving stops the watchdog and restores the
    previous token.
    """

    def __init__(self, timeout: float | None = None, label: str = ""):
        self.timeout = timeout
        self.label = label
        self.timed_out = False
        self._event = threading.Event()
        self._watchdog: threading.Timer | None = None
        self._reset: Token | None = None

    def cancel(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def _expire(self) -> None:
        self.timed_out = True
        logger.warning("CANCEL %s exceeded %.0fs", self.label or "job", self.timeout)
        self._event.set()

    def __enter__(self) -> CancelToken:
        self._reset = _current.set(self)
        if self.timeout is not None and self.timeout > 0:
            self._watchdog = threading.Timer(self.timeout, self._expire)
            self._watchdog.daemon = True
            self._watchdog.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        if self._reset is not None:
            _current.reset(self._reset)
            self._reset = None


def current_token() -> CancelToken | None:
    return _current.get()


def check_cancelled(context: str = "") -> None:
    """Raise :class:`Cancelled` if the current token has been set.

    Args:
        context: Label for the log line, e.g. ``"rescrape: scrape"``.
    """
    token = _current.get()
    if token is not None and token.is_set():
        reason = "timed out" if token.timed_out else "cancelled"
        msg = f"Operation {reason}{f' during {context}' if context else ''}"
        logger.warning("CANCEL %s", msg)
        raise Cancelled(msg)
