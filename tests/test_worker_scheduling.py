import logging
import threading
from datetime import datetime, timezone

import pytest

from scripts.worker_scheduling import PeriodicScheduler, ScheduledJob
from utils.delivery_contracts import JobSpec, JobState, TickResult


def _fixed_now(value: datetime):
    return lambda: value


# 초 경계 0.1초 전: period=1 job은 약 0.1초 뒤 첫 tick.
JUST_BEFORE_SECOND = datetime(2026, 2, 10, 10, 0, 0, 900000, tzinfo=timezone.utc)
# 정각: period=3600 job은 한 시간 대기.
TOP_OF_HOUR = datetime(2026, 2, 10, 10, 0, 0, tzinfo=timezone.utc)


def _job(name, task, period=1, offset=0) -> ScheduledJob:
    return ScheduledJob(spec=JobSpec(name, period, offset), task=task)


def test_initial_wait_is_aligned_to_wall_clock_boundary():
    now = datetime(2026, 2, 10, 10, 37, 0, tzinfo=timezone.utc)
    job = _job("main_30m", lambda: None, period=1800, offset=5)
    scheduler = PeriodicScheduler([job], now_fn=_fixed_now(now))

    assert scheduler.initial_wait_seconds(job) == 1385


def test_duplicate_job_names_are_rejected():
    with pytest.raises(ValueError):
        PeriodicScheduler([_job("profile", lambda: None), _job("profile", lambda: None)])


def test_job_runs_on_first_tick_then_stops_on_shutdown():
    ran = threading.Event()
    job = _job("profile", ran.set)
    scheduler = PeriodicScheduler([job], now_fn=_fixed_now(JUST_BEFORE_SECOND))

    scheduler.start()
    try:
        assert ran.wait(timeout=5)
    finally:
        scheduler.shutdown()

    assert scheduler.stop_requested
    assert scheduler.job_states() == {"profile": JobState.STOPPED}


def test_stop_during_alignment_wait_never_runs_task():
    calls = []
    scheduler = PeriodicScheduler(
        [_job("scores", lambda: calls.append(1), period=3600)],
        now_fn=_fixed_now(TOP_OF_HOUR),
    )

    scheduler.start()
    assert scheduler.job_states() == {"scores": JobState.WAITING}
    scheduler.shutdown()

    assert calls == []
    assert scheduler.job_states() == {"scores": JobState.STOPPED}


def test_shutdown_waits_for_running_task_and_starts_no_new_tick():
    started = threading.Event()
    release = threading.Event()
    calls = []

    def slow_task():
        calls.append("start")
        started.set()
        release.wait(timeout=5)
        calls.append("end")

    scheduler = PeriodicScheduler(
        [_job("mining", slow_task)], now_fn=_fixed_now(JUST_BEFORE_SECOND)
    )
    scheduler.start()
    assert started.wait(timeout=5)

    stopper = threading.Thread(target=scheduler.shutdown)
    stopper.start()
    stopper.join(timeout=0.2)
    # task가 끝나기 전에는 shutdown이 반환되지 않는다.
    assert stopper.is_alive()
    assert scheduler.job_states() == {"mining": JobState.RUNNING}

    release.set()
    stopper.join(timeout=5)
    assert not stopper.is_alive()
    assert calls == ["start", "end"]
    assert scheduler.job_states() == {"mining": JobState.STOPPED}


def test_task_failure_does_not_stop_schedule_and_reports_each_tick():
    reports = []
    second_tick = threading.Event()
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise ValueError("boom")
        second_tick.set()

    scheduler = PeriodicScheduler(
        [_job("main_1m", flaky)],
        now_fn=_fixed_now(JUST_BEFORE_SECOND),
        on_result=reports.append,
    )
    scheduler.start()
    try:
        assert second_tick.wait(timeout=5)
    finally:
        scheduler.shutdown()

    assert reports[0].job_name == "main_1m"
    assert reports[0].result is TickResult.FAILED
    assert reports[0].error == "ValueError: boom"
    assert reports[1].result is TickResult.OK
    assert reports[1].error is None


def test_result_callback_errors_are_contained():
    ran = threading.Event()

    def broken_callback(report):
        ran.set()
        raise RuntimeError("callback broke")

    scheduler = PeriodicScheduler(
        [_job("profile", lambda: None)],
        now_fn=_fixed_now(JUST_BEFORE_SECOND),
        on_result=broken_callback,
    )
    scheduler.start()
    try:
        assert ran.wait(timeout=5)
    finally:
        scheduler.shutdown()

    assert scheduler.job_states() == {"profile": JobState.STOPPED}


def test_start_twice_raises_and_shutdown_is_idempotent():
    scheduler = PeriodicScheduler(
        [_job("scores", lambda: None, period=3600)], now_fn=_fixed_now(TOP_OF_HOUR)
    )
    scheduler.start()
    try:
        with pytest.raises(RuntimeError):
            scheduler.start()
    finally:
        scheduler.shutdown()
    scheduler.shutdown()


def test_run_forever_returns_after_request_stop():
    scheduler = PeriodicScheduler(
        [_job("scores", lambda: None, period=3600)], now_fn=_fixed_now(TOP_OF_HOUR)
    )
    timer = threading.Timer(0.1, scheduler.request_stop)
    timer.start()

    scheduler.run_forever(poll_seconds=0.05)

    assert scheduler.job_states() == {"scores": JobState.STOPPED}


def test_overrun_logs_every_tick_that_elapsed_while_running(caplog):
    readings = iter([100.0, 290.0])
    ran = threading.Event()

    scheduler = PeriodicScheduler(
        [_job("main_1m", ran.set, period=60)],
        logger=logging.getLogger("sheetfeed.tests.scheduler"),
        now_fn=_fixed_now(datetime(2026, 2, 10, 10, 0, 59, 900000, tzinfo=timezone.utc)),
        monotonic=lambda: next(readings, 290.0),
    )

    with caplog.at_level(logging.WARNING, logger="sheetfeed.tests.scheduler"):
        scheduler.start()
        try:
            assert ran.wait(timeout=5)
        finally:
            scheduler.shutdown()

    assert "3 tick(s) elapsed while running were skipped" in caplog.text
