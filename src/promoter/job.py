"""Work items assigned by the tracker."""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Union


@dataclass(frozen=True)
class Job:
    """One partition of one datatype to promote.

    Jobs are produced by the tracker and never modified by the promoter.
    """

    bucket: str
    experiment: str
    datatype: str
    date: date

    def __post_init__(self) -> None:
        # datetime is a date subclass; keep only the calendar date
        if isinstance(self.date, datetime):
            object.__setattr__(self, "date", self.date.date())

    @property
    def partition(self) -> str:
        """Partition suffix in YYYYMMDD form."""
        return self.date.strftime("%Y%m%d")

    @property
    def date_literal(self) -> str:
        """Date in YYYY-MM-DD form, as used in SQL literals."""
        return self.date.strftime("%Y-%m-%d")

    @property
    def key(self) -> str:
        """Stable identity for logs and error context."""
        return f"{self.bucket}/{self.experiment}/{self.datatype}/{self.date_literal}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "bucket": self.bucket,
            "experiment": self.experiment,
            "datatype": self.datatype,
            "date": self.date_literal,
        }

    @classmethod
    def create(
        cls,
        bucket: str,
        experiment: str,
        datatype: str,
        day: Union[str, date],
    ) -> "Job":
        """Create a job, accepting the date as YYYY-MM-DD, YYYYMMDD or a date.

        Raises:
            ValueError: If the date string cannot be parsed
        """
        if isinstance(day, str):
            fmt = "%Y%m%d" if day.isdigit() else "%Y-%m-%d"
            day = datetime.strptime(day, fmt).date()
        return cls(bucket=bucket, experiment=experiment, datatype=datatype, date=day)
