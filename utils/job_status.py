"""
Job run status store.

Why this module exists:
- 운영자가 로그를 뒤지지 않고도 job별 마지막 실행 결과를 볼 수 있게 한다.
- 연속 실패 횟수를 유지해 알림 임계치 판단에 사용한다.
- 파일 쓰기는 temp file + os.replace로 원자적으로 수행한다 (중간에 죽어도 기존 파일 유지).
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass, replace
from pathlib import Path

from utils.delivery_contracts import (
    JobStatusEntryPayload,
    JobStatusFilePayload,
    JobTickReport,
    TickResult,
    format_utc_datetime,
)
from utils.logger import get_logger


def _write_json_atomically(path: Path, payload) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", text=True
    )
    try:
        with os.fdopen(fd, "w") as temp_file:
            json.dump(payload, temp_file, indent=2, sort_keys=True)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        os.replace(temp_path, path)
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)


@dataclass(frozen=True)
class JobStatusEntry:
    last_started_at: str | None = None
    last_finished_at: str | None = None
    last_result: str | None = None
    last_error: str | None = None
    consecutive_failures: int = 0

    @classmethod
    def from_payload(cls, payload: dict) -> "JobStatusEntry":
        raw_failures = payload.get("consecutive_failures", 0)
        try:
            failures = max(0, int(raw_failures))
        except (TypeError, ValueError):
            failures = 0
        return cls(
            last_started_at=payload.get("last_started_at"),
            last_finished_at=payload.get("last_finished_at"),
            last_result=payload.get("last_result"),
            last_error=payload.get("last_error"),
            consecutive_failures=failures,
        )

    def to_payload(self) -> JobStatusEntryPayload:
        return {
            "last_started_at": self.last_started_at,
            "last_finished_at": self.last_finished_at,
            "last_result": self.last_result,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
        }


class JobStatusStore:
    """
    job_status.json 접근 계층. path가 None이면 메모리에만 유지한다.

    여러 job 스레드가 동시에 record()를 호출하므로 lock으로 직렬화한다.
    """

    def __init__(self, path: str | Path | None, logger=None):
        self._path = Path(path) if path is not None else None
        self._logger = logger or get_logger(__name__)
        self._lock = threading.Lock()
        self._entries: dict[str, JobStatusEntry] = self._load()

    def _load(self) -> dict[str, JobStatusEntry]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            with open(self._path, "r") as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self._logger.error(f"Failed to load job status file: {e}")
            return {}

        jobs = payload.get("jobs") if isinstance(payload, dict) else None
        if not isinstance(jobs, dict):
            self._logger.error("Invalid job status format: jobs is not a dict.")
            return {}
        return {
            name: JobStatusEntry.from_payload(raw if isinstance(raw, dict) else {})
            for name, raw in jobs.items()
            if isinstance(name, str) and name
        }

    def get(self, job_name: str) -> JobStatusEntry:
        with self._lock:
            return self._entries.get(job_name, JobStatusEntry())

    def record(self, report: JobTickReport) -> JobStatusEntry:
        """
        tick 결과를 반영하고 갱신된 entry를 반환한다.
        """
        with self._lock:
            previous = self._entries.get(report.job_name, JobStatusEntry())
            failed = report.result is TickResult.FAILED
            entry = replace(
                previous,
                last_started_at=format_utc_datetime(report.started_at),
                last_finished_at=format_utc_datetime(report.finished_at),
                last_result=report.result.value,
                last_error=report.error,
                consecutive_failures=(
                    previous.consecutive_failures + 1 if failed else 0
                ),
            )
            self._entries[report.job_name] = entry
            self._persist(report.finished_at)
            return entry

    def _persist(self, now) -> None:
        if self._path is None:
            return
        payload: JobStatusFilePayload = {
            "version": 1,
            "updated_at": format_utc_datetime(now) or "",
            "jobs": {name: entry.to_payload() for name, entry in self._entries.items()},
        }
        try:
            _write_json_atomically(self._path, payload)
        except OSError as e:
            self._logger.error(f"Job status update failed: {e}")
