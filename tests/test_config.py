import pytest

from utils.config import (
    DEFAULT_JOB_SCHEDULE,
    _parse_job_specs,
    _parse_positive_float_env,
    _parse_positive_int_env,
    load_job_specs,
)
from utils.delivery_contracts import JobConfigurationError, JobSpec


def test_parse_job_specs_returns_default_schedule_on_empty_input():
    for raw in (None, "", "   "):
        specs = _parse_job_specs(raw)
        assert [spec.name for spec in specs] == list(DEFAULT_JOB_SCHEDULE)


def test_parse_job_specs_reads_period_and_optional_offset():
    specs = _parse_job_specs(" main_30m:1800:5 , profile:600 ,,")
    assert specs == [
        JobSpec(name="main_30m", period_seconds=1800, offset_seconds=5),
        JobSpec(name="profile", period_seconds=600, offset_seconds=0),
    ]


def test_parse_job_specs_normalizes_name_case():
    specs = _parse_job_specs("Profile:600")
    assert specs[0].name == "profile"


@pytest.mark.parametrize(
    "raw",
    [
        "profile",
        "profile:",
        "profile:abc",
        "profile:600:x",
        "profile:600:5:1",
        "profile:0",
        "profile:-60",
        "profile:600:-5",
        "pro-file:600",
    ],
)
def test_parse_job_specs_rejects_malformed_entries(raw):
    with pytest.raises(JobConfigurationError):
        _parse_job_specs(raw)


def test_parse_job_specs_rejects_duplicate_names():
    with pytest.raises(JobConfigurationError) as excinfo:
        _parse_job_specs("profile:600,profile:1200")
    assert "Duplicate" in str(excinfo.value)


def test_parse_job_specs_rejects_only_separators():
    with pytest.raises(JobConfigurationError):
        _parse_job_specs(",,")


def test_job_configuration_error_is_a_value_error():
    with pytest.raises(ValueError):
        JobSpec(name="profile", period_seconds=0)


def test_load_job_specs_reads_environment(monkeypatch):
    monkeypatch.setenv("SHEET_JOBS", "scores:3600:60")
    assert load_job_specs() == [
        JobSpec(name="scores", period_seconds=3600, offset_seconds=60)
    ]


def test_parse_positive_numbers_fall_back_to_default():
    assert _parse_positive_int_env(None, 3) == 3
    assert _parse_positive_int_env("5", 3) == 5
    assert _parse_positive_int_env("0", 3) == 3
    assert _parse_positive_int_env("abc", 3) == 3
    assert _parse_positive_float_env("1.5", 2.0) == 1.5
    assert _parse_positive_float_env("-1", 2.0) == 2.0
    assert _parse_positive_float_env("nope", 2.0) == 2.0
