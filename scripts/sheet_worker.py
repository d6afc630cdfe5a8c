"""
Sheet worker entrypoint.

Why this file exists:
- 실행 모드 선택(once/run), 설정 검증, 알림, 상태 저장 같은 운영 제어면을 한곳에서 다룬다.
- 실제 데이터/전송 로직은 workers/*, 스케줄링은 scripts.worker_scheduling으로 분리한다.

Usage:
  sheet-worker --bin ./gspread_put --spreadsheet <id> --auth creds.json run
  sheet-worker --bin ./gspread_put --spreadsheet <id> --auth creds.json once profile
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests
from influxdb_client import InfluxDBClient

from scripts import worker_config as config
from scripts.job_registry import MAIN_JOB_PREFIX, JobRegistry, default_registry
from scripts.worker_scheduling import PeriodicScheduler
from utils.config import load_job_specs
from utils.delivery_contracts import (
    DeliveryTarget,
    JobConfigurationError,
    JobSpec,
    JobTickReport,
    TickResult,
)
from utils.job_status import JobStatusStore
from utils.logger import configure_logging, get_logger
from workers.fanout import FanOutAggregator
from workers.metrics import FeeSimClient
from workers.sheet_sink import SheetSink

logger = get_logger(__name__)


@dataclass
class RunConfig:
    command: str
    target: DeliveryTarget
    jobs: list[str]
    log_file: Optional[Path] = None
    debug: bool = False


def send_alert(message: str) -> None:
    """
    디스코드 webhook으로 알림 전송. URL이 없으면 로그만 남긴다.
    """
    if not config.DISCORD_WEBHOOK_URL:
        logger.warning(f"[Alert Ignored] {message}")
        return

    try:
        payload = {"content": f"**Sheet Worker Alert**\n```{message}```"}
        response = requests.post(config.DISCORD_WEBHOOK_URL, json=payload, timeout=5)
        response.raise_for_status()
    except Exception as e:
        logger.error(f"[Alert] Failed to send alert: {e}")


def build_tick_reporter(
    status_store: JobStatusStore, *, alert_after: int = config.ALERT_AFTER_FAILURES
):
    """
    scheduler on_result 콜백: 상태 파일 갱신 + 연속 실패/복구 알림.

    정책:
    - 연속 실패가 alert_after의 배수에 도달할 때마다 알림 (3, 6, 9...)
    - alert_after 이상 실패하던 job이 성공하면 recovery 알림
    """

    def report_tick(report: JobTickReport) -> None:
        previous_failures = status_store.get(report.job_name).consecutive_failures
        entry = status_store.record(report)

        if report.result is TickResult.FAILED:
            failures = entry.consecutive_failures
            if failures >= alert_after and failures % alert_after == 0:
                send_alert(
                    f"[{report.job_name}] failed {failures} times in a row\n"
                    f"error={report.error}"
                )
        elif previous_failures >= alert_after:
            send_alert(
                f"[{report.job_name}] recovered after {previous_failures} failures"
            )

    return report_tick


def parse_args(argv: Optional[list[str]] = None) -> RunConfig:
    p = argparse.ArgumentParser(
        prog="sheet-worker",
        description="Publish fee-estimation metrics to spreadsheet worksheets",
    )
    p.add_argument(
        "--bin",
        default=config.SHEET_BIN or None,
        required=not config.SHEET_BIN,
        help="Path to the worksheet upload program",
    )
    p.add_argument(
        "--spreadsheet",
        default=config.SHEET_SPREADSHEET_ID or None,
        required=not config.SHEET_SPREADSHEET_ID,
        help="Target spreadsheet identifier",
    )
    p.add_argument(
        "--auth",
        default=config.SHEET_AUTH_PATH or None,
        required=not config.SHEET_AUTH_PATH,
        help="Path to the credential file passed to the upload program",
    )
    p.add_argument("--log-file", type=Path, default=None, help="Write logs to this file")
    p.add_argument("--debug", action="store_true", help="Verbose logging")

    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run the periodic scheduler until SIGINT/SIGTERM")
    once = sub.add_parser("once", help="Run delivery cycles once, immediately")
    once.add_argument(
        "jobs",
        nargs="*",
        help="Job names to run (default: every configured job)",
    )
    args = p.parse_args(argv)

    return RunConfig(
        command=args.command,
        target=DeliveryTarget(
            program=args.bin,
            spreadsheet_id=args.spreadsheet,
            auth_ref=args.auth,
        ),
        jobs=list(getattr(args, "jobs", []) or []),
        log_file=args.log_file,
        debug=args.debug,
    )


def _validate_sources(job_names: list[str]) -> None:
    """
    main_* job이 설정돼 있으면 InfluxDB 설정이 모두 있어야 한다 (시작 시점 검증).
    """
    needs_influx = any(name.startswith(MAIN_JOB_PREFIX) for name in job_names)
    if not needs_influx:
        return
    missing = [
        name
        for name, value in (
            ("INFLUXDB_URL", config.INFLUXDB_URL),
            ("INFLUXDB_TOKEN", config.INFLUXDB_TOKEN),
            ("INFLUXDB_ORG", config.INFLUXDB_ORG),
            ("INFLUXDB_BUCKET", config.INFLUXDB_BUCKET),
        )
        if not value
    ]
    if missing:
        raise JobConfigurationError(
            f"main series jobs require {', '.join(missing)} to be set."
        )


class _InfluxSource:
    """
    InfluxDB client를 첫 사용 시점에 한 번 만들고 job 사이에 공유한다.

    main_* job 스레드들이 같은 경계에서 동시에 호출하므로 생성은 lock 안에서 한다.
    """

    def __init__(self):
        self._client: InfluxDBClient | None = None
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            if self._client is None:
                self._client = InfluxDBClient(
                    url=config.INFLUXDB_URL,
                    token=config.INFLUXDB_TOKEN,
                    org=config.INFLUXDB_ORG,
                    timeout=60000,
                )
            client = self._client
        return client.query_api()

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None


def build_registry(target: DeliveryTarget, influx_source) -> JobRegistry:
    sink = SheetSink(
        interrupt_after=config.SHEET_INTERRUPT_TIMEOUT_SECONDS,
        kill_after=config.SHEET_KILL_TIMEOUT_SECONDS,
        max_attempts=config.SHEET_MAX_ATTEMPTS,
    )
    fanout = FanOutAggregator(sink, target)
    return default_registry(
        fanout=fanout,
        influx_source=influx_source,
        influx_bucket=config.INFLUXDB_BUCKET,
        influx_measurement=config.INFLUXDB_MEASUREMENT,
        feesim_factory=lambda: FeeSimClient(
            config.FEESIM_HOST,
            config.FEESIM_PORT,
            timeout=config.FEESIM_TIMEOUT_SECONDS,
        ),
        mining_cutoff_prob=config.MINING_CUTOFF_PROB,
    )


def run_once(registry: JobRegistry, names: list[str]) -> int:
    """
    지정한 job들을 순서대로 한 번씩 실행한다. 하나라도 실패하면 1.
    """
    tasks = [(name, registry.task_for(name)) for name in names]
    failed: list[str] = []
    for name, task in tasks:
        try:
            task()
            logger.info(f"[Once] {name} ok")
        except Exception as e:
            logger.error(f"[Once] {name} failed: {e}")
            failed.append(name)

    if failed:
        logger.error(f"[Once] failed jobs: {', '.join(failed)}")
        return 1
    return 0


def run_scheduler(registry: JobRegistry, specs: list[JobSpec]) -> int:
    jobs = registry.resolve_jobs(specs)
    status_store = JobStatusStore(config.JOB_STATUS_FILE, logger)
    scheduler = PeriodicScheduler(
        jobs,
        logger=get_logger("scheduler"),
        on_result=build_tick_reporter(status_store),
    )

    def handle_signal(signum, frame):
        logger.info(
            f"[Scheduler] received {signal.Signals(signum).name}, shutting down..."
        )
        scheduler.request_stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    send_alert("Sheet worker started.")
    scheduler.run_forever()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    cfg = parse_args(argv)
    configure_logging(cfg.log_file, debug=cfg.debug)

    influx_source = _InfluxSource()
    try:
        specs = load_job_specs()
        if cfg.command == "once" and cfg.jobs:
            selected = cfg.jobs
        else:
            selected = [spec.name for spec in specs]
        registry = build_registry(cfg.target, influx_source)
        registry.require_known(selected)
        _validate_sources(selected)

        if cfg.command == "once":
            return run_once(registry, selected)
        return run_scheduler(registry, specs)
    except JobConfigurationError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2
    except Exception as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        if cfg.debug:
            raise
        return 3
    finally:
        influx_source.close()


if __name__ == "__main__":
    raise SystemExit(main())
