import os
import re

from utils.delivery_contracts import JobConfigurationError, JobSpec

# name -> (period_seconds, offset_seconds)
DEFAULT_JOB_SCHEDULE: dict[str, tuple[int, int]] = {
    "main_1m": (60, 5),
    "main_30m": (30 * 60, 5),
    "main_3h": (3 * 60 * 60, 5),
    "main_1d": (24 * 60 * 60, 5),
    "profile": (10 * 60, 0),
    "mining": (10 * 60, 30),
    "scores": (60 * 60, 60),
}

JOB_NAME_PATTERN = re.compile(r"^[a-z0-9_]+$")


def _parse_positive_int_env(raw: str | None, default: int) -> int:
    if raw is None:
        return default

    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _parse_positive_float_env(raw: str | None, default: float) -> float:
    if raw is None:
        return default

    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _parse_job_entry(chunk: str) -> JobSpec:
    """
    `name:period[:offset]` 한 항목을 JobSpec으로 변환한다.

    Rules:
    - period/offset은 정수 초
    - offset 생략 시 0
    - 형식 오류는 무시하지 않고 JobConfigurationError로 즉시 실패한다
    """
    parts = [part.strip() for part in chunk.split(":")]
    if len(parts) not in {2, 3} or not all(parts):
        raise JobConfigurationError(
            f"Malformed job entry {chunk!r}. Expected like 'main_30m:1800:5'."
        )

    name = parts[0].lower()
    if not JOB_NAME_PATTERN.fullmatch(name):
        raise JobConfigurationError(f"Invalid job name {parts[0]!r}.")

    try:
        period = int(parts[1])
        offset = int(parts[2]) if len(parts) == 3 else 0
    except ValueError as e:
        raise JobConfigurationError(
            f"Job {name!r}: period/offset must be integer seconds ({chunk!r})."
        ) from e

    return JobSpec(name=name, period_seconds=period, offset_seconds=offset)


def _parse_job_specs(
    raw: str | None,
    defaults: dict[str, tuple[int, int]] = DEFAULT_JOB_SCHEDULE,
) -> list[JobSpec]:
    """
    SHEET_JOBS 입력을 JobSpec 목록으로 파싱한다.

    Format: "main_1m:60:5,profile:600"
    - 비어 있으면 기본 스케줄 전체를 사용한다.
    - 같은 이름이 두 번 나오면 설정 오류.
    """
    if not raw or not raw.strip():
        return [
            JobSpec(name=name, period_seconds=period, offset_seconds=offset)
            for name, (period, offset) in defaults.items()
        ]

    specs: list[JobSpec] = []
    seen: set[str] = set()
    for chunk in raw.split(","):
        if not chunk.strip():
            continue
        spec = _parse_job_entry(chunk)
        if spec.name in seen:
            raise JobConfigurationError(f"Duplicate job entry {spec.name!r}.")
        seen.add(spec.name)
        specs.append(spec)

    if not specs:
        raise JobConfigurationError("SHEET_JOBS resolved to empty after parsing.")
    return specs


def load_job_specs() -> list[JobSpec]:
    """
    환경변수에서 스케줄 설정을 읽는다. 시작 시 한 번만 호출한다.
    """
    return _parse_job_specs(os.getenv("SHEET_JOBS"))
