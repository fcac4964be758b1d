"""Unit tests for jobs."""

from datetime import date, datetime

import pytest

from promoter.job import Job


def test_job_create_from_iso_date() -> None:
    """Test creating a job from YYYY-MM-DD."""
    job = Job.create("bucket", "ndt", "ndt7", "2019-03-04")
    assert job.date == date(2019, 3, 4)
    assert job.partition == "20190304"
    assert job.date_literal == "2019-03-04"
    assert job.key == "bucket/ndt/ndt7/2019-03-04"


def test_job_create_from_compact_date() -> None:
    """Test creating a job from YYYYMMDD."""
    assert Job.create("bucket", "ndt", "ndt7", "20190304").date == date(2019, 3, 4)


def test_job_datetime_truncated_to_date() -> None:
    """Test datetimes keep only the calendar date."""
    job = Job("bucket", "ndt", "ndt7", datetime(2019, 3, 4, 23, 59))
    assert job.date == date(2019, 3, 4)
    assert type(job.date) is date


def test_job_invalid_date() -> None:
    """Test unparseable dates."""
    with pytest.raises(ValueError):
        Job.create("bucket", "ndt", "ndt7", "2019-13-01")


def test_job_is_immutable_and_hashable() -> None:
    """Test jobs can be used as dict keys."""
    job = Job.create("bucket", "ndt", "ndt7", "2019-03-04")
    with pytest.raises(AttributeError):
        job.datatype = "ndt5"  # type: ignore[misc]
    assert {job: 1}[Job.create("bucket", "ndt", "ndt7", date(2019, 3, 4))] == 1


def test_job_to_dict() -> None:
    """Test dictionary conversion."""
    job = Job.create("bucket", "ndt", "ndt7", "2019-03-04")
    assert job.to_dict() == {
        "bucket": "bucket",
        "experiment": "ndt",
        "datatype": "ndt7",
        "date": "2019-03-04",
    }
