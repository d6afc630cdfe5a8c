"""
Job name -> runnable task mapping.

Why this module exists:
- scheduler는 "이름 + 주기 + 인자 없는 task"만 알면 되도록 metrics/delivery 배선을 분리한다.
- 설정에 모르는 job 이름이 있으면 tick 시점이 아니라 시작 시점에 실패한다.
"""

from __future__ import annotations

from typing import Callable, Iterable

from scripts.worker_scheduling import ScheduledJob
from utils.delivery_contracts import JobConfigurationError, JobSpec
from utils.logger import get_logger
from workers import metrics as metrics_ops

logger = get_logger(__name__)

MAIN_JOB_PREFIX = "main_"

Task = Callable[[], object]


class JobRegistry:
    def __init__(self):
        self._tasks: dict[str, Task] = {}

    def register(self, name: str, task: Task) -> None:
        if name in self._tasks:
            raise ValueError(f"Job {name!r} is already registered.")
        self._tasks[name] = task

    def names(self) -> list[str]:
        return sorted(self._tasks)

    def task_for(self, name: str) -> Task:
        try:
            return self._tasks[name]
        except KeyError:
            raise JobConfigurationError(
                f"Unknown job {name!r}. Known jobs: {', '.join(self.names())}"
            ) from None

    def require_known(self, names: Iterable[str]) -> None:
        unknown = [name for name in names if name not in self._tasks]
        if unknown:
            raise JobConfigurationError(
                f"Unknown job(s): {', '.join(unknown)}. "
                f"Known jobs: {', '.join(self.names())}"
            )

    def resolve_jobs(self, specs: Iterable[JobSpec]) -> list[ScheduledJob]:
        """
        설정된 JobSpec 전체를 ScheduledJob으로 바꾼다. 하나라도 모르면 전부 거부한다.
        """
        specs = list(specs)
        self.require_known(spec.name for spec in specs)
        return [ScheduledJob(spec=spec, task=self._tasks[spec.name]) for spec in specs]


def make_delivery_task(
    name: str,
    build_batch: Callable[[], list],
    fanout,
    job_logger=None,
) -> Task:
    """
    build_batch()로 payload를 만든 뒤 fan-out으로 전송하는 task closure.

    build 실패(metrics source 오류)와 batch 전송 실패 모두 예외로 전파되어
    scheduler(run) 또는 CLI(once)가 처리한다.
    """
    log = job_logger or logger

    def run_job() -> None:
        batch = build_batch()
        log.info(
            "[Job] %s built %d payload(s): %s",
            name,
            len(batch),
            ",".join(label for _, label in batch),
        )
        fanout.deliver_all(batch)

    run_job.__name__ = f"run_{name}"
    return run_job


def default_registry(
    *,
    fanout,
    influx_source: Callable[[], object] | None,
    influx_bucket: str | None,
    influx_measurement: str,
    feesim_factory: Callable[[], metrics_ops.FeeSimClient],
    mining_cutoff_prob: float,
    job_logger=None,
) -> JobRegistry:
    """
    기본 job 세트를 등록한다.

    - main_1m / main_30m / main_3h / main_1d: InfluxDB main series
    - profile / mining / scores: fee simulation API
    influx_source는 query_api를 돌려주는 callable (연결은 첫 tick에서 재사용).
    """
    registry = JobRegistry()

    for resolution in metrics_ops.MAIN_RESOLUTIONS:

        def build_main(resolution: str = resolution) -> list:
            if influx_source is None or not influx_bucket:
                raise JobConfigurationError("InfluxDB is not configured.")
            return metrics_ops.build_main_batch(
                influx_source(),
                resolution,
                bucket=influx_bucket,
                measurement=influx_measurement,
            )

        name = f"{MAIN_JOB_PREFIX}{resolution}"
        registry.register(
            name, make_delivery_task(name, build_main, fanout, job_logger)
        )

    # requests.Session은 job 스레드 사이에 공유하지 않는다.
    profile_client = feesim_factory()
    mining_client = feesim_factory()
    scores_client = feesim_factory()

    registry.register(
        "profile",
        make_delivery_task(
            "profile",
            lambda: metrics_ops.build_profile_batch(profile_client),
            fanout,
            job_logger,
        ),
    )
    registry.register(
        "mining",
        make_delivery_task(
            "mining",
            lambda: metrics_ops.build_mining_batch(mining_client, mining_cutoff_prob),
            fanout,
            job_logger,
        ),
    )
    registry.register(
        "scores",
        make_delivery_task(
            "scores",
            lambda: metrics_ops.build_scores_batch(scores_client),
            fanout,
            job_logger,
        ),
    )
    return registry
