"""
Phase-aligned periodic scheduler.

Why this module exists:
- job마다 독립 스레드/타이머를 두고, 첫 tick을 사람이 읽기 쉬운 wall-clock 경계
  (예: 매 30분 :05초)에 맞춘다. "프로세스 시작 + period"가 아니다.
- 종료 신호는 하나의 Event로 모든 job에 브로드캐스트하고, shutdown은 모든 job 스레드가
  끝날 때까지 기다린다 (실행 중인 task는 끝까지 실행).

Job lifecycle:
  waiting(초기 정렬 대기) -> running(steady tick) -> stopped
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from utils.delivery_contracts import (
    JobSpec,
    JobState,
    JobTickReport,
    TickResult,
)
from utils.logger import get_logger
from utils.time_alignment import next_tick_deadline, seconds_until_first_tick


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ScheduledJob:
    spec: JobSpec
    task: Callable[[], object]

    @property
    def name(self) -> str:
        return self.spec.name


class PeriodicScheduler:
    """
    ScheduledJob 목록을 각자의 주기로 반복 실행한다.

    Called from:
    - scripts.sheet_worker `run` 명령
    """

    def __init__(
        self,
        jobs: Sequence[ScheduledJob],
        *,
        logger=None,
        now_fn: Callable[[], datetime] = _utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        on_result: Callable[[JobTickReport], None] | None = None,
    ):
        names = [job.name for job in jobs]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate job names: {names}")
        self._jobs = list(jobs)
        self._logger = logger or get_logger(__name__)
        self._now = now_fn
        self._monotonic = monotonic
        self._on_result = on_result
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._states: dict[str, JobState] = {
            job.name: JobState.WAITING for job in self._jobs
        }
        self._states_lock = threading.Lock()
        self._started = False
        self._shutdown_done = False

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def job_states(self) -> dict[str, JobState]:
        with self._states_lock:
            return dict(self._states)

    def _set_state(self, name: str, state: JobState) -> None:
        with self._states_lock:
            self._states[name] = state

    def initial_wait_seconds(self, job: ScheduledJob) -> float:
        """
        현재 wall clock 기준 첫 tick까지 남은 시간. 시작 시점에 매번 다시 계산한다.
        """
        return seconds_until_first_tick(
            self._now(), job.spec.period_seconds, job.spec.offset_seconds
        )

    def start(self) -> None:
        if self._started:
            raise RuntimeError("Scheduler already started.")
        self._started = True

        for job in self._jobs:
            thread = threading.Thread(
                target=self._run_job,
                args=(job,),
                name=f"job-{job.name}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

        self._logger.info(
            "[Scheduler] started %d job(s): %s",
            len(self._jobs),
            ", ".join(
                f"{job.name}(every {job.spec.period_seconds}s +{job.spec.offset_seconds}s)"
                for job in self._jobs
            ),
        )

    def request_stop(self) -> None:
        """
        모든 job에 종료를 알린다. signal handler에서 호출해도 안전하다.
        """
        self._stop.set()

    def shutdown(self) -> None:
        """
        종료를 알리고 모든 job 스레드가 끝날 때까지 기다린다.
        """
        self.request_stop()
        if self._shutdown_done:
            return
        self._logger.info(
            "[Scheduler] shutdown requested, waiting for %d job(s)...",
            len(self._threads),
        )
        for thread in self._threads:
            thread.join()
        self._shutdown_done = True
        self._logger.info("[Scheduler] all jobs stopped.")

    def run_forever(self, poll_seconds: float = 1.0) -> None:
        """
        stop 요청이 올 때까지 호출 스레드를 붙잡고, 이후 shutdown까지 수행한다.
        """
        if not self._started:
            self.start()
        try:
            while not self._stop.wait(poll_seconds):
                pass
        finally:
            self.shutdown()

    def _run_job(self, job: ScheduledJob) -> None:
        spec = job.spec
        wait = self.initial_wait_seconds(job)
        first_tick_at = self._now() + timedelta(seconds=wait)
        self._logger.info(
            "[Scheduler] %s waiting %.2fs for first tick at %s",
            job.name,
            wait,
            first_tick_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

        if self._stop.wait(wait):
            # 정렬 대기 중 종료: 한 번도 실행하지 않는다.
            self._set_state(job.name, JobState.STOPPED)
            self._logger.info("[Scheduler] %s stopped before first tick.", job.name)
            return

        self._set_state(job.name, JobState.RUNNING)
        tick_deadline = self._monotonic()
        while True:
            self._run_tick(job)

            tick_deadline, skipped = next_tick_deadline(
                tick_deadline, spec.period_seconds, self._monotonic()
            )
            if skipped:
                self._logger.warning(
                    "[Scheduler] %s overran its period (%ss); "
                    "%d tick(s) elapsed while running were skipped.",
                    job.name,
                    spec.period_seconds,
                    skipped,
                )
            if self._stop.wait(max(0.0, tick_deadline - self._monotonic())):
                break

        self._set_state(job.name, JobState.STOPPED)
        self._logger.info("[Scheduler] %s stopped.", job.name)

    def _run_tick(self, job: ScheduledJob) -> None:
        started_at = self._now()
        error: str | None = None
        try:
            job.task()
            result = TickResult.OK
        except Exception as e:
            # task 실패는 이번 tick만 건너뛴다. 스케줄은 계속된다.
            result = TickResult.FAILED
            error = f"{type(e).__name__}: {e}"
            self._logger.exception("[Job] %s failed: %s", job.name, error)

        report = JobTickReport(
            job_name=job.name,
            result=result,
            started_at=started_at,
            finished_at=self._now(),
            error=error,
        )
        if result is TickResult.OK:
            self._logger.info(
                "[Job] %s finished in %.2fs", job.name, report.elapsed_seconds
            )

        if self._on_result is None:
            return
        try:
            self._on_result(report)
        except Exception:
            self._logger.exception("[Scheduler] %s result callback failed", job.name)
