#!/usr/bin/env python3
"""
Unit tests for the run scheduler.

Covers single-shot mode, the interval loop, tick coalescing and shutdown
via signals.
"""

import unittest
from unittest.mock import Mock
import sys
import os
import signal
import time

# Add parent directory to path to import ldap_db_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_db_sync.scheduler import Scheduler


class TestSingleShot(unittest.TestCase):
    """Scheduler without an interval."""

    def test_runs_exactly_once(self):
        run = Mock()
        scheduler = Scheduler(run)

        scheduler.start()

        run.assert_called_once_with()
        self.assertFalse(scheduler.scheduled)
        self.assertEqual(scheduler.runs_started, 1)

    def test_runs_even_if_shutdown_already_requested(self):
        run = Mock()
        scheduler = Scheduler(run)
        scheduler.request_shutdown()

        scheduler.start()

        run.assert_called_once_with()

    def test_does_not_touch_signal_handlers(self):
        before = signal.getsignal(signal.SIGTERM)

        Scheduler(Mock()).start()

        self.assertIs(signal.getsignal(signal.SIGTERM), before)


class TestInterval(unittest.TestCase):
    """Scheduler with an interval."""

    def test_rejects_non_positive_interval(self):
        with self.assertRaises(ValueError):
            Scheduler(Mock(), interval=0)
        with self.assertRaises(ValueError):
            Scheduler(Mock(), interval=-1)

    def test_first_run_is_immediate(self):
        scheduler = None
        started = []

        def run():
            started.append(time.monotonic())
            scheduler.request_shutdown()

        scheduler = Scheduler(run, interval=60)
        begin = time.monotonic()
        scheduler.start(install_signal_handlers=False)

        self.assertEqual(len(started), 1)
        self.assertLess(started[0] - begin, 5)

    def test_shutdown_during_run_lets_run_finish(self):
        """Shutdown arriving during the second run: it completes, no third run starts."""
        scheduler = None
        started = []
        finished = []

        def run():
            started.append(len(started) + 1)
            if len(started) == 2:
                scheduler.request_shutdown()
                # outlast the next tick
                time.sleep(0.1)
            finished.append(len(finished) + 1)

        scheduler = Scheduler(run, interval=0.02)
        scheduler.start(install_signal_handlers=False)

        self.assertEqual(started, [1, 2])
        self.assertEqual(finished, [1, 2])
        self.assertEqual(scheduler.runs_started, 2)

    def test_runs_repeat_until_shutdown(self):
        scheduler = None
        count = []

        def run():
            count.append(1)
            if len(count) == 4:
                scheduler.request_shutdown()

        scheduler = Scheduler(run, interval=0.01)
        scheduler.start(install_signal_handlers=False)

        self.assertEqual(len(count), 4)

    def test_missed_ticks_are_coalesced(self):
        """A long run triggers at most one immediate follow-up; the tick grid is kept."""
        clock = Mock(side_effect=[
            0,    # ticker start, first tick due at 10
            10,   # tick due now
            45,   # run took 35s: ticks at 20, 30, 40 missed
            45,   # one coalesced tick pending
            46,   # next tick due at 50
            47,
            50,   # next tick due at 60
            52,
        ])
        run = Mock()
        scheduler = Scheduler(run, interval=10, clock=clock)

        event = Mock()
        event.wait.side_effect = [False, False, False, True]
        scheduler._shutdown = event

        scheduler.start(install_signal_handlers=False)

        timeouts = [c[0][0] for c in event.wait.call_args_list]
        self.assertEqual(timeouts, [0, 0, 3, 8])
        self.assertEqual(run.call_count, 4)

    def test_shutdown_wins_over_due_tick(self):
        clock = Mock(side_effect=[0, 100])
        run = Mock()
        scheduler = Scheduler(run, interval=10, clock=clock)
        scheduler.request_shutdown()

        scheduler.start(install_signal_handlers=False)

        # only the unconditional first run
        self.assertEqual(run.call_count, 1)


class TestSignals(unittest.TestCase):
    """Shutdown through SIGTERM and SIGINT."""

    def _run_with_signal(self, signum):
        scheduler = None
        count = []

        def run():
            count.append(1)
            if len(count) == 2:
                os.kill(os.getpid(), signum)
                time.sleep(0.05)

        scheduler = Scheduler(run, interval=0.01)
        scheduler.start()
        return scheduler, count

    def test_sigterm_stops_loop_after_current_run(self):
        before = signal.getsignal(signal.SIGTERM)

        scheduler, count = self._run_with_signal(signal.SIGTERM)

        self.assertEqual(len(count), 2)
        self.assertTrue(scheduler.shutdown_requested)
        self.assertIs(signal.getsignal(signal.SIGTERM), before)

    def test_sigint_stops_loop_after_current_run(self):
        before = signal.getsignal(signal.SIGINT)

        scheduler, count = self._run_with_signal(signal.SIGINT)

        self.assertEqual(len(count), 2)
        self.assertIs(signal.getsignal(signal.SIGINT), before)


if __name__ == '__main__':
    unittest.main()
