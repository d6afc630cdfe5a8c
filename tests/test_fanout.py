import logging
import threading

import pytest

from utils.delivery_contracts import (
    DeliveryOutcome,
    DeliveryTarget,
    Payload,
    SheetBatchDeliveryError,
)
from workers.fanout import FanOutAggregator

TARGET = DeliveryTarget(program="sheet-put", spreadsheet_id="s", auth_ref="a")


class FakeSink:
    def __init__(self, failing=(), raising=()):
        self.failing = set(failing)
        self.raising = set(raising)
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def deliver(self, payload, target):
        with self._lock:
            self.calls.append(payload.worksheet)
        if payload.worksheet in self.raising:
            raise RuntimeError("sink exploded")
        if payload.worksheet in self.failing:
            return DeliveryOutcome(
                succeeded=False, diagnostic=f"exit status 1: {payload.worksheet}", attempts=3
            )
        return DeliveryOutcome(succeeded=True)


def _batch(*labels):
    return [(Payload(content=label.encode(), worksheet=label), label) for label in labels]


def test_deliver_all_returns_outcomes_in_batch_order():
    sink = FakeSink()
    outcomes = FanOutAggregator(sink, TARGET).deliver_all(
        _batch("profile_conf", "profile_txrate", "profile_time")
    )

    assert [o.succeeded for o in outcomes] == [True, True, True]
    assert sorted(sink.calls) == ["profile_conf", "profile_time", "profile_txrate"]


def test_deliver_all_attempts_every_payload_when_some_fail():
    sink = FakeSink(failing={"mining_mfr"})

    with pytest.raises(SheetBatchDeliveryError) as excinfo:
        FanOutAggregator(sink, TARGET).deliver_all(
            _batch("mining_mfr", "mining_mbs", "mining_time")
        )

    assert len(sink.calls) == 3
    assert excinfo.value.failed_labels == ["mining_mfr"]
    assert excinfo.value.total == 3
    assert "1/3 worksheet deliveries failed" in str(excinfo.value)
    assert "mining_mfr" in str(excinfo.value)


def test_deliver_all_reports_every_failed_label():
    sink = FakeSink(failing={"a", "c"})

    with pytest.raises(SheetBatchDeliveryError) as excinfo:
        FanOutAggregator(sink, TARGET).deliver_all(_batch("a", "b", "c"))

    assert excinfo.value.failed_labels == ["a", "c"]
    assert str(excinfo.value).startswith("2/3")


def test_deliver_all_with_empty_batch_makes_no_calls():
    sink = FakeSink()
    assert FanOutAggregator(sink, TARGET).deliver_all([]) == []
    assert sink.calls == []


def test_sink_exception_becomes_failed_outcome_without_stopping_siblings():
    sink = FakeSink(raising={"predictscores"})

    with pytest.raises(SheetBatchDeliveryError) as excinfo:
        FanOutAggregator(sink, TARGET).deliver_all(
            _batch("predictscores", "predictscores_time")
        )

    assert sorted(sink.calls) == ["predictscores", "predictscores_time"]
    (label, outcome), = excinfo.value.failures
    assert label == "predictscores"
    assert outcome.succeeded is False
    assert "RuntimeError: sink exploded" in outcome.diagnostic


def test_deliveries_run_concurrently():
    barrier = threading.Barrier(3, timeout=5)

    class BarrierSink:
        def deliver(self, payload, target):
            # 세 delivery가 동시에 진행 중이어야 barrier를 통과한다.
            barrier.wait()
            return DeliveryOutcome(succeeded=True)

    outcomes = FanOutAggregator(BarrierSink(), TARGET).deliver_all(_batch("x", "y", "z"))
    assert len(outcomes) == 3


def test_successful_batch_returns_without_error_and_logs_labels(caplog):
    logger = logging.getLogger("sheetfeed.tests.fanout")

    with caplog.at_level(logging.INFO, logger="sheetfeed.tests.fanout"):
        outcomes = FanOutAggregator(FakeSink(), TARGET, logger=logger).deliver_all(
            _batch("mining_mfr", "mining_time")
        )

    assert [o.succeeded for o in outcomes] == [True, True]
    assert "delivered 2 worksheet(s): mining_mfr,mining_time" in caplog.text
