"""
Worker configuration constants.

Why this module exists:
- sheet_worker.py의 상수/설정값을 분리해 오케스트레이션 코드의 인지 부하를 줄인다.
- 상수 변경 시 영향 범위를 이 파일로 한정한다.
"""

import os
from pathlib import Path

from utils.config import _parse_positive_float_env, _parse_positive_int_env

# ── Delivery target (CLI flag default) ──
SHEET_BIN = os.getenv("SHEET_BIN", "")
SHEET_SPREADSHEET_ID = os.getenv("SHEET_SPREADSHEET_ID", "")
SHEET_AUTH_PATH = os.getenv("SHEET_AUTH_PATH", "")

# ── Delivery sink ──
# 실행 시작 기준 2분 후 SIGINT, 3분 후 SIGKILL.
SHEET_INTERRUPT_TIMEOUT_SECONDS = _parse_positive_float_env(
    os.getenv("SHEET_INTERRUPT_TIMEOUT_SECONDS"), 120.0
)
SHEET_KILL_TIMEOUT_SECONDS = _parse_positive_float_env(
    os.getenv("SHEET_KILL_TIMEOUT_SECONDS"), 180.0
)
SHEET_MAX_ATTEMPTS = _parse_positive_int_env(os.getenv("SHEET_MAX_ATTEMPTS"), 3)

# ── InfluxDB (main series) ──
INFLUXDB_URL = os.getenv("INFLUXDB_URL")
INFLUXDB_TOKEN = os.getenv("INFLUXDB_TOKEN")
INFLUXDB_ORG = os.getenv("INFLUXDB_ORG")
INFLUXDB_BUCKET = os.getenv("INFLUXDB_BUCKET")
INFLUXDB_MEASUREMENT = os.getenv("INFLUXDB_MEASUREMENT", "feesim_main")

# ── Fee simulation API ──
FEESIM_HOST = os.getenv("FEESIM_HOST", "localhost")
FEESIM_PORT = _parse_positive_int_env(os.getenv("FEESIM_PORT"), 8350)
FEESIM_TIMEOUT_SECONDS = _parse_positive_float_env(
    os.getenv("FEESIM_TIMEOUT_SECONDS"), 15.0
)
MINING_CUTOFF_PROB = _parse_positive_float_env(
    os.getenv("MINING_CUTOFF_PROB"), 0.9
)

# ── Alerting ──
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "")
ALERT_AFTER_FAILURES = _parse_positive_int_env(
    os.getenv("ALERT_AFTER_FAILURES"), 3
)

# ── State file paths ──
JOB_STATUS_FILE = (
    Path(os.environ["JOB_STATUS_FILE"]) if os.getenv("JOB_STATUS_FILE") else None
)
