"""
Sheet delivery contracts (DTO + Enum + errors).

Why this module exists:
- sink / fan-out / scheduler 사이를 오가는 값을 명시적인 타입으로 고정한다.
- 모든 DTO는 frozen dataclass로 두어 여러 스레드가 동시에 읽어도 안전하게 한다.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TypedDict

UTC_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def format_utc_datetime(value: datetime | None) -> str | None:
    """
    datetime을 프로젝트 표준 UTC 문자열로 직렬화한다.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        normalized = value.replace(tzinfo=timezone.utc)
    else:
        normalized = value.astimezone(timezone.utc)
    return normalized.strftime(UTC_DATETIME_FORMAT)


@dataclass(frozen=True)
class Payload:
    """
    렌더링된 CSV 한 장과 그 목적지 worksheet.
    """

    content: bytes
    worksheet: str


@dataclass(frozen=True)
class DeliveryTarget:
    """
    외부 업로드 프로그램 + 스프레드시트/인증 식별자.

    프로세스 수명 동안 한 번 만들어지고 모든 delivery가 읽기 전용으로 공유한다.
    """

    program: str
    spreadsheet_id: str
    auth_ref: str

    def command_for(self, worksheet: str) -> list[str]:
        return [self.program, self.spreadsheet_id, worksheet, self.auth_ref]


@dataclass(frozen=True)
class DeliveryOutcome:
    succeeded: bool
    diagnostic: str | None = None
    attempts: int = 1


@dataclass(frozen=True)
class JobSpec:
    """
    스케줄 설정 한 항목. period/offset 단위는 초.
    """

    name: str
    period_seconds: int
    offset_seconds: int = 0

    def __post_init__(self) -> None:
        if not self.name:
            raise JobConfigurationError("Job name must not be empty.")
        if self.period_seconds <= 0:
            raise JobConfigurationError(
                f"Job {self.name!r}: period must be positive, got {self.period_seconds}."
            )
        if self.offset_seconds < 0:
            raise JobConfigurationError(
                f"Job {self.name!r}: offset must not be negative, got {self.offset_seconds}."
            )


class JobState(str, Enum):
    """
    스케줄러 job 수명 주기.
    """

    WAITING = "waiting"
    RUNNING = "running"
    STOPPED = "stopped"


class TickResult(str, Enum):
    OK = "ok"
    FAILED = "failed"


@dataclass(frozen=True)
class JobTickReport:
    """
    tick 1회 실행 결과. scheduler의 on_result 콜백으로 전달된다.
    """

    job_name: str
    result: TickResult
    started_at: datetime
    finished_at: datetime
    error: str | None = None

    @property
    def elapsed_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


class JobStatusEntryPayload(TypedDict):
    last_started_at: str | None
    last_finished_at: str | None
    last_result: str | None
    last_error: str | None
    consecutive_failures: int


class JobStatusFilePayload(TypedDict):
    version: int
    updated_at: str
    jobs: dict[str, JobStatusEntryPayload]


class JobConfigurationError(ValueError):
    """
    시작 시점에 거부되는 설정 오류 (unknown job, 잘못된 period 등).
    """


class MetricsSourceError(RuntimeError):
    """
    InfluxDB / fee simulation API에서 받은 데이터가 기대와 다를 때.
    """


class SheetBatchDeliveryError(RuntimeError):
    """
    fan-out batch 중 하나 이상의 worksheet 전송이 최종 실패했을 때.
    """

    def __init__(
        self,
        failures: list[tuple[str, DeliveryOutcome]],
        total: int,
    ):
        self.failures = failures
        self.total = total
        last_label, last_outcome = failures[-1]
        super().__init__(
            f"{len(failures)}/{total} worksheet deliveries failed; "
            f"last={last_label}: {last_outcome.diagnostic}"
        )

    @property
    def failed_labels(self) -> list[str]:
        return [label for label, _ in self.failures]
