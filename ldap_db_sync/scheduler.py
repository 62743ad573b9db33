"""
Run scheduling for LDAP DB Sync.

Without an interval the sync runs exactly once. With an interval it runs
once immediately and then on every tick of a fixed-period ticker until
SIGINT or SIGTERM is received. Runs happen on the calling thread one after
another; a shutdown request is only acted on between runs, never during one.
"""

import signal
import logging
import threading
import time
from typing import Callable, Optional, Any

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Scheduler:
    """
    Sequential run loop with cooperative shutdown.

    Ticks that fall due while a run is still executing are coalesced: at
    most one run follows immediately, later runs stay on the original tick
    grid.
    """

    def __init__(self, run: Callable[[], Any], interval: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            run: Callable performing one sync run
            interval: Seconds between runs, or None to run once
            clock: Monotonic time source
        """
        if interval is not None and interval <= 0:
            raise ValueError(f"Interval must be positive, got {interval}")

        self.run = run
        self.interval = interval
        self.clock = clock
        self.runs_started = 0
        self._shutdown = threading.Event()
        self._previous_handlers = {}

    @property
    def scheduled(self) -> bool:
        return self.interval is not None

    def request_shutdown(self):
        """Ask the loop to stop before starting another run."""
        self._shutdown.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def start(self, install_signal_handlers: bool = True):
        """
        Run once, or keep running on the interval until shutdown is requested.

        Args:
            install_signal_handlers: Route SIGINT and SIGTERM to
                :meth:`request_shutdown` while the loop runs
        """
        if not self.scheduled:
            self._run_once()
            return

        if install_signal_handlers:
            self._install_signal_handlers()
        try:
            logger.info(f"Scheduled sync enabled interval={self.interval}s")
            self._run_once()
            self._loop()
        finally:
            if install_signal_handlers:
                self._restore_signal_handlers()

    def _loop(self):
        next_tick = self.clock() + self.interval

        while True:
            timeout = max(0.0, next_tick - self.clock())
            if self._shutdown.wait(timeout):
                logger.info("Received shutdown signal")
                return

            self._run_once()

            next_tick += self.interval
            now = self.clock()
            if next_tick <= now:
                # keep one pending tick, drop the rest
                missed = int((now - next_tick) // self.interval)
                if missed:
                    logger.debug(f"Dropped {missed} ticks while sync was running")
                next_tick += missed * self.interval

    def _run_once(self):
        self.runs_started += 1
        self.run()

    def _handle_signal(self, signum, frame):
        logger.debug(f"Caught signal {signal.Signals(signum).name}")
        self.request_shutdown()

    def _install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            logger.warning("Not on the main thread, shutdown signals will not be handled")
            return
        for signum in SHUTDOWN_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _restore_signal_handlers(self):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers.clear()
