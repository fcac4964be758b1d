"""Per-datatype deduplication and comparison policies."""

from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Mapping, Optional

from promoter.exceptions import ConfigurationError, DatatypeNotSupportedError


class Datatype(StrEnum):
    """Datatypes with built-in policies."""

    ANNOTATION = "annotation"
    NDT5 = "ndt5"
    NDT7 = "ndt7"
    TCPINFO = "tcpinfo"


@dataclass(frozen=True)
class DatatypePolicy:
    """How rows of one datatype are partitioned, deduplicated and counted.

    ``partition_keys`` maps the logical key name (the column name in the
    keep set) to the fully qualified column path in the table. Two rows are
    the same logical record when every key matches.

    Tables are partitioned on ``partition_date_column`` unless
    ``ingestion_time_partitioned`` is set, in which case partition detail
    selects rows by ``_PARTITIONTIME``.
    """

    datatype: str
    partition_date_column: str
    partition_keys: Mapping[str, str]
    tie_break_order: str = ""
    parse_time_column: str = "parser.Time"
    record_id_column: Optional[str] = None
    source_file_column: Optional[str] = None
    ingestion_time_partitioned: bool = False
    description: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        if not self.datatype:
            raise ConfigurationError("Policy datatype must not be empty")
        if not self.partition_date_column:
            raise ConfigurationError(
                "Policy needs a partition date column",
                context={"datatype": self.datatype},
            )
        if not self.partition_keys:
            raise ConfigurationError(
                "Policy needs at least one partition key",
                context={"datatype": self.datatype},
            )
        columns = list(self.partition_keys.values())
        if len(set(columns)) != len(columns):
            raise ConfigurationError(
                "Partition key columns must be unique",
                context={"datatype": self.datatype, "columns": columns},
            )
        if (self.record_id_column is None) != (self.source_file_column is None):
            raise ConfigurationError(
                "record_id_column and source_file_column must be set together",
                context={"datatype": self.datatype},
            )
        object.__setattr__(self, "partition_keys", MappingProxyType(dict(self.partition_keys)))

    @property
    def parse_time_alias(self) -> str:
        """Column name the parse time gets in the keep set."""
        return self.parse_time_column.rsplit(".", 1)[-1]

    @property
    def has_detail(self) -> bool:
        """Whether promotions compare distinct file and record counts."""
        return self.record_id_column is not None


_BUILTIN_POLICIES: tuple[DatatypePolicy, ...] = (
    DatatypePolicy(
        datatype=Datatype.ANNOTATION,
        partition_date_column="date",
        partition_keys={"id": "id"},
    ),
    DatatypePolicy(
        datatype=Datatype.NDT5,
        partition_date_column="DATE(log_time)",
        partition_keys={"test_id": "test_id"},
        record_id_column="test_id",
        source_file_column="ParseInfo.TaskFileName",
    ),
    DatatypePolicy(
        datatype=Datatype.NDT7,
        partition_date_column="date",
        partition_keys={"id": "id"},
        record_id_column="id",
        source_file_column="parser.ArchiveURL",
    ),
    DatatypePolicy(
        datatype=Datatype.TCPINFO,
        partition_date_column="DATE(TestTime)",
        partition_keys={"uuid": "uuid", "Timestamp": "FinalSnapshot.Timestamp"},
        tie_break_order="ARRAY_LENGTH(Snapshots) DESC, ParseInfo.TaskFileName",
        parse_time_column="ParseInfo.ParseTime",
        record_id_column="uuid",
        source_file_column="ParseInfo.TaskFileName",
    ),
)

_registry: dict[str, DatatypePolicy] = {p.datatype: p for p in _BUILTIN_POLICIES}


def register_policy(policy: DatatypePolicy, replace: bool = False) -> None:
    """Register a policy for a datatype.

    Raises:
        ConfigurationError: If the datatype already has a policy and replace is False
    """
    if policy.datatype in _registry and not replace:
        raise ConfigurationError(
            f"Policy already registered for datatype {policy.datatype!r}",
            context={"datatype": policy.datatype},
        )
    _registry[policy.datatype] = policy


def unregister_policy(datatype: str) -> None:
    """Remove a registered policy. Built-in policies are restored instead."""
    builtin = {p.datatype: p for p in _BUILTIN_POLICIES}
    if datatype in builtin:
        _registry[datatype] = builtin[datatype]
    else:
        _registry.pop(datatype, None)


def get_policy(datatype: str) -> DatatypePolicy:
    """Look up the policy for a datatype.

    Raises:
        DatatypeNotSupportedError: If no policy is registered
    """
    try:
        return _registry[datatype]
    except KeyError:
        raise DatatypeNotSupportedError(
            f"Datatype not supported: {datatype!r}",
            context={"datatype": datatype, "supported": sorted(_registry)},
        ) from None


def supported_datatypes() -> list[str]:
    """Return the sorted list of datatypes with a policy."""
    return sorted(_registry)
