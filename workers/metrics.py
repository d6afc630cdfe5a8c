"""
Metrics -> CSV payload builders.

Why this module exists:
- 각 job이 시트에 올릴 worksheet payload 목록을 만든다 (sink/fan-out은 내용을 모른다).
- main series는 InfluxDB에서, fee profile/mining/scores는 fee simulation API에서 읽는다.
- CSV 렌더링은 pandas로 통일한다.
"""

from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import Any, Mapping

import pandas as pd
import requests

from utils.delivery_contracts import MetricsSourceError, Payload
from utils.logger import get_logger
from utils.time_alignment import SeriesWindow, aligned_series_window

logger = get_logger(__name__)

# resolution label(=worksheet) -> (resolution_seconds, length_seconds)
MAIN_RESOLUTIONS: dict[str, tuple[int, int]] = {
    "1m": (60, 3 * 60 * 60),
    "30m": (30 * 60, 2 * 24 * 60 * 60),
    "3h": (3 * 60 * 60, 14 * 24 * 60 * 60),
    "1d": (24 * 60 * 60, 180 * 24 * 60 * 60),
}
PROFILE_POINTS = 50
_INFLUX_META_COLUMNS = {"result", "table", "_start", "_stop", "_measurement"}

Batch = list[tuple[Payload, str]]

# strftime("%b")는 locale을 따르므로 RFC 822 월 이름은 고정 표를 쓴다.
_RFC822_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


def _to_payload(content: bytes, worksheet: str) -> tuple[Payload, str]:
    return Payload(content=content, worksheet=worksheet), worksheet


def render_timestamp_csv(now: datetime) -> bytes:
    """
    `*_time` worksheet용 생성 시각 (RFC 822, UTC).
    """
    now_utc = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    month = _RFC822_MONTHS[now_utc.month - 1]
    stamp = f"{now_utc.day:02d} {month} {now_utc.year % 100:02d} {now_utc:%H:%M} UTC"
    return f"timestr\n{stamp}\n".encode()


def render_xy_csv(series: Mapping[str, Any]) -> bytes:
    """
    {"x": [...], "y": [...]} -> "x,y" CSV. x는 정수로 반올림한다.
    """
    x = series.get("x") if isinstance(series, Mapping) else None
    y = series.get("y") if isinstance(series, Mapping) else None
    if x is None or y is None:
        raise MetricsSourceError("Series is missing x/y values.")
    if len(x) != len(y):
        raise MetricsSourceError(
            f"Series length mismatch: len(x)={len(x)}, len(y)={len(y)}"
        )

    try:
        df = pd.DataFrame(
            {
                "x": pd.Series(x, dtype="float64"),
                "y": pd.Series(y, dtype="float64"),
            }
        )
        df["x"] = df["x"].round().astype("int64")
    except (TypeError, ValueError) as e:
        raise MetricsSourceError(f"Series values must be finite numbers: {e}") from e
    return df.to_csv(index=False, float_format="%f", lineterminator="\n").encode()


def conf_times_by_feerate(estimates: list[float]) -> dict[str, list[int]]:
    """
    estimatefee 결과(index+1 = 확인 블록 수)를 fee rate별 최소 확인 시간으로 정리한다.

    같은 fee rate가 여러 번 나오면 가장 작은 confirmation time만 남기고,
    fee rate 오름차순으로 정렬한다.
    """
    conf_times: dict[int, int] = {}
    for index, feerate in enumerate(estimates):
        key = int(feerate)
        conf_time = index + 1
        previous = conf_times.get(key)
        if previous is None or conf_time < previous:
            conf_times[key] = conf_time

    feerates = sorted(conf_times)
    return {"x": feerates, "y": [conf_times[rate] for rate in feerates]}


def render_columns_csv(columns: Mapping[str, list]) -> bytes:
    if not columns:
        raise MetricsSourceError("Empty column set.")
    try:
        df = pd.DataFrame(dict(columns))
    except ValueError as e:
        raise MetricsSourceError(f"Malformed column set: {e}") from e
    return df.to_csv(index=False, lineterminator="\n").encode()


# ── Main series (InfluxDB) ──


def _main_series_query(
    bucket: str, measurement: str, window: SeriesWindow
) -> str:
    return f"""
    from(bucket: "{bucket}")
      |> range(start: {int(window.start.timestamp())}, stop: {int(window.end.timestamp())})
      |> filter(fn: (r) => r["_measurement"] == "{measurement}")
      |> aggregateWindow(every: {window.resolution_seconds}s, fn: mean, createEmpty: true)
      |> pivot(rowKey:["_time"], columnKey: ["_field"], valueColumn: "_value")
      |> sort(columns: ["_time"], desc: false)
    """


def fetch_main_series(
    query_api,
    resolution: str,
    *,
    bucket: str,
    measurement: str,
    now: datetime | None = None,
) -> pd.DataFrame:
    """
    resolution별 main series를 정렬된 시간 격자 위의 DataFrame으로 반환한다.

    - 격자: window.start(제외) ~ window.end(포함), resolution 간격
    - DB에 없는 row는 NaN으로 남긴다 (CSV에서 빈 칸)
    """
    if resolution not in MAIN_RESOLUTIONS:
        raise MetricsSourceError(f"Unknown main series resolution: {resolution!r}")
    res_seconds, length_seconds = MAIN_RESOLUTIONS[resolution]
    window = aligned_series_window(
        now or datetime.now(timezone.utc), res_seconds, length_seconds
    )

    result = query_api.query_data_frame(
        _main_series_query(bucket, measurement, window)
    )
    if isinstance(result, list):
        frames = [f for f in result if isinstance(f, pd.DataFrame) and not f.empty]
        df = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()
    else:
        df = result

    if not isinstance(df, pd.DataFrame) or df.empty or "_time" not in df.columns:
        raise MetricsSourceError(
            f"No main series rows for {resolution} in {window.start}..{window.end}"
        )

    value_columns = sorted(
        c for c in df.columns if c != "_time" and c not in _INFLUX_META_COLUMNS
    )
    df = df.assign(_time=pd.to_datetime(df["_time"], utc=True))
    df = df.drop_duplicates(subset=["_time"], keep="last").set_index("_time")

    grid = pd.DatetimeIndex(window.row_times(), name="_time")
    aligned = df[value_columns].reindex(grid)
    aligned.insert(0, "time", [int(ts.timestamp()) for ts in grid])
    return aligned.reset_index(drop=True)


def render_main_csv(df: pd.DataFrame) -> bytes:
    return df.to_csv(index=False, float_format="%f", lineterminator="\n").encode()


def build_main_batch(
    query_api,
    resolution: str,
    *,
    bucket: str,
    measurement: str,
    now: datetime | None = None,
) -> Batch:
    df = fetch_main_series(
        query_api, resolution, bucket=bucket, measurement=measurement, now=now
    )
    logger.info("[Metrics] main %s rows=%d cols=%d", resolution, len(df), len(df.columns))
    return [_to_payload(render_main_csv(df), resolution)]


# ── Fee simulation API ──


class FeeSimClient:
    """
    fee simulation 데몬의 JSON-RPC API 클라이언트.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        timeout: float = 15.0,
        session: requests.Session | None = None,
    ):
        self.url = f"http://{host}:{port}/"
        self.timeout = timeout
        self._session = session or requests.Session()
        self._request_ids = itertools.count(1)

    def call(self, method: str, *params) -> Any:
        body = {"method": method, "params": list(params), "id": next(self._request_ids)}
        try:
            response = self._session.post(self.url, json=body, timeout=self.timeout)
            response.raise_for_status()
            reply = response.json()
        except (requests.RequestException, ValueError) as e:
            raise MetricsSourceError(f"feesim {method} request failed: {e}") from e

        if not isinstance(reply, dict):
            raise MetricsSourceError(f"feesim {method}: unexpected reply {reply!r}")
        if reply.get("error"):
            raise MetricsSourceError(f"feesim {method}: {reply['error']}")
        return reply.get("result")

    def estimate_fee(self, n: int = 0) -> list[float]:
        result = self.call("estimatefee", n)
        if not isinstance(result, list):
            raise MetricsSourceError("feesim estimatefee: expected a list")
        return [float(v) for v in result]

    def tx_rate(self, n: int = PROFILE_POINTS) -> dict:
        return self.call("txrate", n)

    def cap_rate(self, n: int = PROFILE_POINTS) -> dict:
        return self.call("caprate", n)

    def mempool_size(self, n: int = PROFILE_POINTS) -> dict:
        return self.call("mempoolsize", n)

    def mining(self, cutoff_prob: float) -> dict:
        return self.call("mining", cutoff_prob)

    def predict_scores(self) -> dict:
        return self.call("predictscores")


def build_profile_batch(client: FeeSimClient, *, now: datetime | None = None) -> Batch:
    """
    profile_conf / profile_txrate / profile_caprate / profile_mempool / profile_time.

    모든 API 호출이 성공해야 payload를 만든다 (부분 업로드로 시트가 섞이지 않게).
    """
    conf = render_xy_csv(conf_times_by_feerate(client.estimate_fee(0)))
    txrate = render_xy_csv(client.tx_rate())
    caprate = render_xy_csv(client.cap_rate())
    mempool = render_xy_csv(client.mempool_size())
    return [
        _to_payload(conf, "profile_conf"),
        _to_payload(txrate, "profile_txrate"),
        _to_payload(caprate, "profile_caprate"),
        _to_payload(mempool, "profile_mempool"),
        _to_payload(render_timestamp_csv(now or datetime.now(timezone.utc)), "profile_time"),
    ]


def build_mining_batch(
    client: FeeSimClient, cutoff_prob: float, *, now: datetime | None = None
) -> Batch:
    stats = client.mining(cutoff_prob)
    if not isinstance(stats, dict) or "mfr" not in stats or "mbs" not in stats:
        raise MetricsSourceError("feesim mining: expected mfr/mbs series")
    return [
        _to_payload(render_xy_csv(stats["mfr"]), "mining_mfr"),
        _to_payload(render_xy_csv(stats["mbs"]), "mining_mbs"),
        _to_payload(render_timestamp_csv(now or datetime.now(timezone.utc)), "mining_time"),
    ]


def build_scores_batch(client: FeeSimClient, *, now: datetime | None = None) -> Batch:
    scores = client.predict_scores()
    if not isinstance(scores, dict):
        raise MetricsSourceError("feesim predictscores: expected column mapping")
    return [
        _to_payload(render_columns_csv(scores), "predictscores"),
        _to_payload(
            render_timestamp_csv(now or datetime.now(timezone.utc)),
            "predictscores_time",
        ),
    ]

