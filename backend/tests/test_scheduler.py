"""
Unit tests for the interval scheduler.

Uses short real intervals and threading.Event to observe ticks.
"""

import threading

import pytest

from app.services.scheduler import IntervalScheduler


class TestIntervalScheduler:
    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            IntervalScheduler(0, lambda: None)

    def test_runs_immediately_on_start(self):
        ticked = threading.Event()
        scheduler = IntervalScheduler(3600, ticked.set)

        scheduler.start()
        try:
            assert ticked.wait(2)
        finally:
            scheduler.stop()
            scheduler.join(2)

    def test_repeats_until_stopped(self):
        calls = []
        third = threading.Event()

        def tick():
            calls.append(1)
            if len(calls) >= 3:
                third.set()

        scheduler = IntervalScheduler(0.01, tick)
        scheduler.start()
        try:
            assert third.wait(2)
        finally:
            scheduler.stop()
            scheduler.join(2)

        count = len(calls)
        assert not scheduler.running
        assert count >= 3

    def test_failing_tick_does_not_stop_schedule(self):
        calls = []
        second = threading.Event()

        def tick():
            calls.append(1)
            if len(calls) >= 2:
                second.set()
            raise RuntimeError("boom")

        scheduler = IntervalScheduler(0.01, tick)
        scheduler.start()
        try:
            assert second.wait(2)
        finally:
            scheduler.stop()
            scheduler.join(2)

    def test_stop_before_start_is_safe(self):
        scheduler = IntervalScheduler(1, lambda: None)

        scheduler.stop()

        assert scheduler.running is False

    def test_in_flight_tick_completes_after_stop(self):
        started = threading.Event()
        release = threading.Event()
        finished = threading.Event()

        def tick():
            started.set()
            release.wait(2)
            finished.set()

        scheduler = IntervalScheduler(3600, tick)
        scheduler.start()
        assert started.wait(2)

        scheduler.stop()
        release.set()
        scheduler.join(2)

        assert finished.is_set()
