import json
import logging
from datetime import datetime, timezone

from utils.delivery_contracts import JobTickReport, TickResult
from utils.job_status import JobStatusStore

LOGGER = logging.getLogger("sheetfeed.tests.job_status")


def _report(name, result, error=None, minute=0):
    started = datetime(2026, 2, 10, 10, minute, 0, tzinfo=timezone.utc)
    finished = datetime(2026, 2, 10, 10, minute, 7, tzinfo=timezone.utc)
    return JobTickReport(
        job_name=name,
        result=result,
        started_at=started,
        finished_at=finished,
        error=error,
    )


def test_record_tracks_consecutive_failures_and_resets_on_success():
    store = JobStatusStore(None, LOGGER)

    assert store.record(_report("profile", TickResult.FAILED, "boom")).consecutive_failures == 1
    assert store.record(_report("profile", TickResult.FAILED, "boom")).consecutive_failures == 2
    entry = store.record(_report("profile", TickResult.OK))

    assert entry.consecutive_failures == 0
    assert entry.last_result == "ok"
    assert entry.last_error is None
    assert store.get("scores").consecutive_failures == 0


def test_record_persists_status_file(tmp_path):
    path = tmp_path / "state" / "job_status.json"
    store = JobStatusStore(path, LOGGER)

    store.record(_report("mining", TickResult.FAILED, "exit status 1", minute=10))

    payload = json.loads(path.read_text())
    assert payload["version"] == 1
    assert payload["updated_at"] == "2026-02-10T10:10:07Z"
    assert payload["jobs"]["mining"] == {
        "last_started_at": "2026-02-10T10:10:00Z",
        "last_finished_at": "2026-02-10T10:10:07Z",
        "last_result": "failed",
        "last_error": "exit status 1",
        "consecutive_failures": 1,
    }
    # temp file이 남지 않는다.
    assert [p.name for p in path.parent.iterdir()] == ["job_status.json"]


def test_store_reloads_previous_failure_count(tmp_path):
    path = tmp_path / "job_status.json"
    JobStatusStore(path, LOGGER).record(_report("main_1m", TickResult.FAILED, "x"))

    reloaded = JobStatusStore(path, LOGGER)
    assert reloaded.get("main_1m").consecutive_failures == 1
    assert reloaded.record(_report("main_1m", TickResult.FAILED, "x")).consecutive_failures == 2


def test_corrupt_status_file_starts_empty(tmp_path, caplog):
    path = tmp_path / "job_status.json"
    path.write_text("{invalid-json")

    with caplog.at_level(logging.ERROR):
        store = JobStatusStore(path, LOGGER)

    assert store.get("profile").consecutive_failures == 0
    assert "Failed to load job status file" in caplog.text


def test_invalid_failure_count_is_normalized(tmp_path):
    path = tmp_path / "job_status.json"
    path.write_text(
        json.dumps({"version": 1, "jobs": {"scores": {"consecutive_failures": "many"}}})
    )
    assert JobStatusStore(path, LOGGER).get("scores").consecutive_failures == 0


def test_write_failure_is_logged_not_raised(tmp_path, caplog):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("")
    store = JobStatusStore(blocker / "job_status.json", LOGGER)

    with caplog.at_level(logging.ERROR):
        entry = store.record(_report("profile", TickResult.OK))

    assert entry.last_result == "ok"
    assert "Job status update failed" in caplog.text
