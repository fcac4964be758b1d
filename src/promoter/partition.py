"""Table and partition name parsing."""

import re
from dataclasses import dataclass
from datetime import datetime

from promoter.exceptions import InvalidPartitionNameError

# prefix, then either "$digits" (declared partition) or "_8digits" (sharded table)
_PARTITION_SUFFIX = re.compile(r"^(?P<prefix>[^$]*)\$(?P<digits>[^$]*)$")
_SHARD_SUFFIX = re.compile(r"^(?P<prefix>.+?)_(?P<digits>\d{8})$")


@dataclass(frozen=True)
class TableParts:
    """Components of a table name."""

    prefix: str
    is_partitioned: bool
    partition_date: str = ""

    @property
    def has_date(self) -> bool:
        return bool(self.partition_date)


def _validate_date(table_name: str, digits: str) -> None:
    if len(digits) != 8 or not digits.isdigit():
        raise InvalidPartitionNameError(
            f"Partition suffix must be exactly 8 digits: {table_name!r}",
            context={"table": table_name},
        )
    try:
        datetime.strptime(digits, "%Y%m%d")
    except ValueError:
        raise InvalidPartitionNameError(
            f"Partition suffix is not a valid date: {table_name!r}",
            context={"table": table_name},
        ) from None


def get_table_parts(table_name: str) -> TableParts:
    """Separate a table name into prefix, partition kind and date.

    ``name$YYYYMMDD`` is a declared partition, ``name_YYYYMMDD`` a sharded
    table. Anything else is a plain table without a date.

    Args:
        table_name: Table id, without project or dataset

    Returns:
        Parsed table parts

    Raises:
        InvalidPartitionNameError: If the name is ambiguous or the date is invalid
    """
    if table_name.count("$") > 1:
        raise InvalidPartitionNameError(
            f"Multiple partition separators in {table_name!r}",
            context={"table": table_name},
        )

    match = _PARTITION_SUFFIX.match(table_name)
    if match:
        prefix = match.group("prefix")
        if not prefix:
            raise InvalidPartitionNameError(
                f"Missing table name before partition in {table_name!r}",
                context={"table": table_name},
            )
        if _SHARD_SUFFIX.match(prefix):
            raise InvalidPartitionNameError(
                f"Both shard and partition suffix in {table_name!r}",
                context={"table": table_name},
            )
        _validate_date(table_name, match.group("digits"))
        return TableParts(prefix=prefix, is_partitioned=True, partition_date=match.group("digits"))

    match = _SHARD_SUFFIX.match(table_name)
    if match:
        _validate_date(table_name, match.group("digits"))
        return TableParts(
            prefix=match.group("prefix"),
            is_partitioned=False,
            partition_date=match.group("digits"),
        )

    return TableParts(prefix=table_name, is_partitioned=False)


def partition_name(base: str, yyyymmdd: str) -> str:
    """Build a partition reference such as ``ndt7$20190304``."""
    _validate_date(f"{base}${yyyymmdd}", yyyymmdd)
    return f"{base}${yyyymmdd}"
