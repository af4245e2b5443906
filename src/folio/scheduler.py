"""Routine rescrape of preprint metadata.

Preprints gain a venue, pages and a DOI once they are published.  The
:class:`RescrapeScheduler` re-runs the metadata scrapers over every paper
whose venue is a preprint server (or empty) once per period::

    IDLE --store.initialized--> ARMED --timer--> CHECKING --due--> RUNNING --> ARMED
                                                     |
                                                     +--not due--> ARMED

A cycle is *due* when the ``allow_routine_match`` preference is on and the
last successful run (``last_rematch_time`` preference, epoch seconds) lies
at least ``period - tolerance`` in the past.  The tolerance absorbs timer
drift and restarts right after a run.  ``last_rematch_time`` is only
stamped when the run completes, so a failed or timed-out run is retried on
the next fire.

At most one run is in flight: a fire that finds a run in progress returns
immediately.  Each run gets a :class:`~folio.cancellation.CancelToken`
with the configured timeout; the library checks it between phases.  The
run itself happens on a worker thread: if a single phase hangs (a stalled
HTTP call, say) past the timeout plus a grace period, the cycle is
abandoned and the next fire may start a fresh one.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable

from folio.cancellation import Cancelled, CancelToken
from folio.events import EventBus
from folio.library import PaperLibrary
from folio.models import PaperDraft
from folio.protocols import PreferenceStore

logger = logging.getLogger(__name__)

DAY = 86400
DEFAULT_PERIOD = 7 * DAY
DEFAULT_TOLERANCE = 10
DEFAULT_TIMEOUT = 600
DEFAULT_GRACE = 30


class ScheduleState(enum.Enum):
    IDLE = "idle"
    ARMED = "armed"
    CHECKING = "checking"
    RUNNING = "running"


class PeriodicTask:
    """Calls *callback* every *period* seconds on a daemon thread.

    The first call happens one period after :meth:`start` unless
    *run_immediately* is set.  Exceptions from the callback are logged and
    the timer keeps going.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], object],
        period: float,
        run_immediately: bool = False,
    ):
        self.name = name
        self.callback = callback
        self.period = period
        self.run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"folio-{self.name}", daemon=True)
        self._thread.start()
        logger.info("Task %s scheduled every %.0fs", self.name, self.period)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        if self.run_immediately:
            self._fire()
        while not self._stop.wait(self.period):
            self._fire()

    def _fire(self) -> None:
        try:
            self.callback()
        except Exception:
            logger.exception("Task %s failed", self.name)


class RescrapeScheduler:
    """Periodic, overlap-guarded rescrape of preprints."""

    TASK_NAME = "rescrape-preprints"

    def __init__(
        self,
        library: PaperLibrary,
        preferences: PreferenceStore,
        bus: EventBus,
        period: float = DEFAULT_PERIOD,
        tolerance: float = DEFAULT_TOLERANCE,
        timeout: float = DEFAULT_TIMEOUT,
        grace: float = DEFAULT_GRACE,
        clock: Callable[[], float] = time.time,
    ):
        self.library = library
        self.preferences = preferences
        self.bus = bus
        self.period = period
        self.tolerance = tolerance
        self.timeout = timeout
        self.grace = grace
        self.clock = clock
        self.state = ScheduleState.IDLE
        self._task: PeriodicTask | None = None
        self._registered = False
        self._running = threading.Lock()
        self._state_lock = threading.Lock()

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def register(self) -> None:
        """Arm the timer once the store is ready (now, if it already is)."""
        with self._state_lock:
            if self._registered:
                return
            self._registered = True
        self.bus.already("store.initialized", lambda _payload: self._arm())

    def _arm(self) -> None:
        with self._state_lock:
            if self._task is not None:
                return
            self._task = PeriodicTask(self.TASK_NAME, self.fire, self.period)
            self.state = ScheduleState.ARMED
        self._task.start()

    def stop(self) -> None:
        with self._state_lock:
            task, self._task = self._task, None
            self._registered = False
            self.state = ScheduleState.IDLE
        if task is not None:
            task.stop()

    # -----------------------------------------------------------------------
    # Firing
    # -----------------------------------------------------------------------

    def is_due(self) -> bool:
        """True if routine rescrape is allowed and the last run is old enough."""
        if not self.preferences.get("allow_routine_match"):
            logger.debug("Routine rescrape disabled by preference")
            return False
        last = float(self.preferences.get("last_rematch_time") or 0)
        elapsed = self.clock() - last
        if elapsed < self.period - self.tolerance:
            logger.debug("Rescrape not due: last run %.0fs ago", elapsed)
            return False
        return True

    def fire(self, force: bool = False) -> bool:
        """Run one cycle if due (or *force*).  Returns True if a run completed."""
        if not self._running.acquire(blocking=False):
            logger.info("Rescrape already running; this fire is skipped")
            return False
        try:
            self.state = ScheduleState.CHECKING
            if not force and not self.is_due():
                return False

            self.state = ScheduleState.RUNNING
            t0 = time.monotonic()
            result = self._run_watched()
            if result is None:
                logger.warning("Rescrape failed; will retry on the next fire")
                return False

            self.preferences.set({"last_rematch_time": round(self.clock())})
            logger.info(
                "Rescraped %d preprint(s) in %.1fs", len(result), time.monotonic() - t0
            )
            return True
        finally:
            self.state = ScheduleState.ARMED if self._task is not None else ScheduleState.IDLE
            self._running.release()

    def _run_watched(self) -> list[PaperDraft] | None:
        """Rescrape on a worker thread; ``None`` on failure, cancel or hang.

        The token stops the run at the next phase boundary.  A phase that
        is still going ``grace`` seconds after the deadline is abandoned:
        its thread keeps running detached, but its result is never stamped
        and the run guard is released for the next fire.
        """
        token = CancelToken(timeout=self.timeout, label="rescrape")
        outcome: list = []

        def run() -> None:
            t0 = time.monotonic()
            with token:
                try:
                    outcome.append(self.library.scrape_preprint())
                except Cancelled:
                    logger.warning("Rescrape abandoned after %.0fs", time.monotonic() - t0)
                except Exception:
                    logger.exception("Rescrape crashed")

        worker = threading.Thread(target=run, name="folio-rescrape", daemon=True)
        worker.start()
        worker.join(self.timeout + self.grace if self.timeout > 0 else None)
        if worker.is_alive():
            token.cancel()
            logger.warning(
                "Rescrape phase still running %.0fs past its deadline; releasing the run guard",
                self.grace,
            )
            return None
        return outcome[0] if outcome else None
