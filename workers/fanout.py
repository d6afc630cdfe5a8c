"""
Concurrent worksheet fan-out.

Why this module exists:
- 한 job이 만든 여러 worksheet payload를 동시에 sink로 보내고 결과를 하나로 모은다.
- 하나가 실패해도 나머지는 끝까지 보낸다 (best-effort).
- pool context를 벗어나기 전에 모든 delivery가 끝나므로 호출 후 남는 백그라운드 작업이 없다.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

from utils.delivery_contracts import (
    DeliveryOutcome,
    DeliveryTarget,
    Payload,
    SheetBatchDeliveryError,
)
from utils.logger import get_logger


class FanOutAggregator:
    def __init__(self, sink, target: DeliveryTarget, logger=None):
        self._sink = sink
        self._target = target
        self._logger = logger or get_logger(__name__)

    def _deliver_one(self, payload: Payload, label: str) -> DeliveryOutcome:
        try:
            return self._sink.deliver(payload, self._target)
        except Exception as e:
            # sink 버그가 형제 delivery를 막지 않도록 실패 결과로 변환한다.
            self._logger.exception("[FanOut] %s delivery raised", label)
            return DeliveryOutcome(
                succeeded=False, diagnostic=f"{type(e).__name__}: {e}"
            )

    def deliver_all(
        self, batch: Sequence[tuple[Payload, str]]
    ) -> list[DeliveryOutcome]:
        """
        batch의 모든 payload를 동시에 전송한다.

        Returns:
          - 입력 순서와 같은 DeliveryOutcome 목록 (전부 성공 시)
        Raises:
          - SheetBatchDeliveryError: 하나 이상 최종 실패 시 (모든 전송이 끝난 뒤)
        """
        if not batch:
            return []

        with ThreadPoolExecutor(
            max_workers=len(batch), thread_name_prefix="fanout"
        ) as pool:
            futures = [
                (label, pool.submit(self._deliver_one, payload, label))
                for payload, label in batch
            ]
            results = [(label, future.result()) for label, future in futures]

        failures = [
            (label, outcome) for label, outcome in results if not outcome.succeeded
        ]
        if failures:
            for label, outcome in failures:
                self._logger.error(
                    "[FanOut] %s failed after %d attempt(s): %s",
                    label,
                    outcome.attempts,
                    outcome.diagnostic,
                )
            raise SheetBatchDeliveryError(failures, total=len(batch))

        self._logger.info(
            "[FanOut] delivered %d worksheet(s): %s",
            len(batch),
            ",".join(label for _, label in batch),
        )
        return [outcome for _, outcome in results]
