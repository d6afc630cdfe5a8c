"""
Project logger helpers.

Why this module exists:
- 모든 모듈이 `logger = get_logger(__name__)` 한 줄로 같은 포맷을 공유한다.
- handler 설정은 CLI 진입점에서 한 번만 수행한다 (`configure_logging`).
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
ROOT_LOGGER_NAME = "sheetfeed"


def get_logger(name: str) -> logging.Logger:
    """
    프로젝트 root logger 하위의 named logger를 반환한다.
    """
    if name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def configure_logging(
    log_file: str | Path | None = None, *, debug: bool = False
) -> logging.Logger:
    """
    root logger에 handler 하나를 설치한다.

    - log_file이 없으면 stderr로 출력한다.
    - 재호출 시 기존 handler를 교체한다 (중복 출력 방지).

    Called from:
    - scripts.sheet_worker.main()
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(path, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)

    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    return root
