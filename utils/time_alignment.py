from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _require_positive(value: float, name: str) -> None:
    if value <= 0:
        raise ValueError(f"{name} must be positive.")


def seconds_until_first_tick(
    now: datetime, period_seconds: float, offset_seconds: float = 0
) -> float:
    """
    Seconds to wait so the first tick lands on a multiple of `period` plus `offset`.
    Example: now=10:37:00, period=1800, offset=5 -> 1385 (first tick 11:00:05).

    The offset is added after the boundary and is not reduced modulo the
    period, so an offset >= period pushes the first tick past the next boundary.
    """
    _require_positive(period_seconds, "period_seconds")
    now_seconds = _to_utc(now).timestamp()
    return period_seconds - (now_seconds % period_seconds) + offset_seconds


def next_phase_boundary(
    now: datetime, period_seconds: float, offset_seconds: float = 0
) -> datetime:
    """
    Return the wall-clock time of the first tick strictly after `now` in UTC.
    """
    now_utc = _to_utc(now)
    wait = seconds_until_first_tick(now_utc, period_seconds, offset_seconds)
    return now_utc + timedelta(seconds=wait)


def next_tick_deadline(
    previous_deadline: float, period_seconds: float, now: float
) -> tuple[float, int]:
    """
    다음 steady-state tick의 monotonic deadline과 건너뛴 tick 수를 반환한다.

    skipped는 task 실행 중에 deadline이 지나가 실행되지 않는 tick 수다.
    예: previous=100, period=60, now=290 -> (340, 3) (160, 220, 280을 건너뜀)
    """
    _require_positive(period_seconds, "period_seconds")
    deadline = previous_deadline + period_seconds
    skipped = 0
    while deadline < now:
        deadline += period_seconds
        skipped += 1
    return deadline, skipped


@dataclass(frozen=True)
class SeriesWindow:
    start: datetime
    end: datetime
    resolution_seconds: int

    @property
    def row_count(self) -> int:
        return int((self.end - self.start).total_seconds()) // self.resolution_seconds

    def row_times(self) -> list[datetime]:
        """
        Row timestamps of the window, excluding `start` and including `end`.
        """
        step = timedelta(seconds=self.resolution_seconds)
        return [self.start + step * (i + 1) for i in range(self.row_count)]


def aligned_series_window(
    now: datetime, resolution_seconds: int, length_seconds: int
) -> SeriesWindow:
    """
    `length` 구간을 `resolution` 경계에 맞춰 자른 window를 반환한다.
    Example: now=10:37:12, res=60, length=600 -> 10:27:00 ~ 10:37:00.
    """
    _require_positive(resolution_seconds, "resolution_seconds")
    _require_positive(length_seconds, "length_seconds")
    if length_seconds % resolution_seconds != 0:
        raise ValueError("resolution must divide length.")

    now_seconds = int(_to_utc(now).timestamp())
    end_seconds = now_seconds - (now_seconds % resolution_seconds)
    end = datetime.fromtimestamp(end_seconds, tz=timezone.utc)
    return SeriesWindow(
        start=end - timedelta(seconds=length_seconds),
        end=end,
        resolution_seconds=resolution_seconds,
    )
