"""Unit tests for the scheduler service.

Tests the SchedulerService including:
- Job registration with correct configuration
- Immediate or deferred first run
- Overlapping runs prevented (max_instances=1)
- Start/shutdown lifecycle
- Job failures logged without stopping the schedule
"""

import threading
import time
from datetime import datetime
from unittest.mock import Mock

from notifier.scheduler import SchedulerService
from notifier.scheduler.service import RECONCILE_JOB_ID


class TestSchedulerService:
    """Test suite for SchedulerService."""

    def test_initialization(self):
        job = Mock()
        shutdown_event = threading.Event()

        scheduler = SchedulerService(job, interval_seconds=60, shutdown_event=shutdown_event)

        assert scheduler.interval_seconds == 60
        assert scheduler.job_callable is job
        assert scheduler.job_id == RECONCILE_JOB_ID
        assert not scheduler.is_running()

    def test_job_defaults(self):
        scheduler = SchedulerService(Mock(), interval_seconds=60)

        assert scheduler.scheduler._job_defaults["max_instances"] == 1
        assert scheduler.scheduler._job_defaults["coalesce"] is True
        assert scheduler.scheduler._job_defaults["misfire_grace_time"] == 60

    def test_start_and_shutdown(self):
        shutdown_event = threading.Event()
        scheduler = SchedulerService(Mock(), interval_seconds=300, shutdown_event=shutdown_event)

        scheduler.start()
        assert scheduler.is_running()

        scheduler.shutdown(wait=False)
        assert not scheduler.is_running()
        assert shutdown_event.is_set()

    def test_shutdown_without_event(self):
        scheduler = SchedulerService(Mock(), interval_seconds=60)
        scheduler.start()

        scheduler.shutdown(wait=False)

        assert not scheduler.is_running()

    def test_shutdown_before_start(self):
        shutdown_event = threading.Event()
        scheduler = SchedulerService(Mock(), interval_seconds=60, shutdown_event=shutdown_event)

        scheduler.shutdown()

        assert shutdown_event.is_set()

    def test_second_start_ignored(self):
        scheduler = SchedulerService(Mock(), interval_seconds=60)
        scheduler.start()
        try:
            scheduler.start()
            assert scheduler.is_running()
        finally:
            scheduler.shutdown(wait=False)

    def test_immediate_first_run(self):
        ran = threading.Event()
        scheduler = SchedulerService(ran.set, interval_seconds=3600)

        scheduler.start()
        try:
            assert ran.wait(timeout=2)
        finally:
            scheduler.shutdown(wait=True)

    def test_deferred_first_run(self):
        job = Mock()
        scheduler = SchedulerService(job, interval_seconds=3600, run_immediately=False)

        scheduler.start()
        time.sleep(0.3)
        next_run = scheduler.get_next_run_time()
        scheduler.shutdown(wait=True)

        job.assert_not_called()
        assert isinstance(next_run, datetime)

    def test_next_run_time_before_start(self):
        assert SchedulerService(Mock(), interval_seconds=60).get_next_run_time() is None

    def test_no_overlapping_runs(self):
        running = []
        overlaps = []
        lock = threading.Lock()

        def slow_job():
            with lock:
                if running:
                    overlaps.append(True)
                running.append(True)
            time.sleep(1.5)
            with lock:
                running.pop()

        scheduler = SchedulerService(slow_job, interval_seconds=1)
        scheduler.start()
        time.sleep(2.5)
        scheduler.shutdown(wait=True)

        assert overlaps == []

    def test_shutdown_waits_for_running_job(self):
        started = threading.Event()
        completed = threading.Event()

        def slow_job():
            started.set()
            time.sleep(0.5)
            completed.set()

        scheduler = SchedulerService(slow_job, interval_seconds=10)
        scheduler.start()
        started.wait(timeout=2)

        scheduler.shutdown(wait=True)

        assert completed.is_set()

    def test_trigger_now_runs_synchronously(self):
        job = Mock()
        scheduler = SchedulerService(job, interval_seconds=3600)

        scheduler.trigger_now()

        job.assert_called_once_with()

    def test_failing_job_does_not_stop_schedule(self):
        calls = []

        def flaky_job():
            calls.append(time.time())
            if len(calls) == 1:
                raise RuntimeError("database is locked")

        scheduler = SchedulerService(flaky_job, interval_seconds=1)
        scheduler.start()
        time.sleep(2.5)
        scheduler.shutdown(wait=True)

        assert len(calls) >= 2

    def test_trigger_now_swallows_job_error(self, caplog):
        scheduler = SchedulerService(Mock(side_effect=RuntimeError("boom")), interval_seconds=60)

        scheduler.trigger_now()

        failures = [r for r in caplog.records if getattr(r, "event", None) == "scheduler.job_failed"]
        assert len(failures) == 1
