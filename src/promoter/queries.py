"""SQL construction for deduplication, cleanup and partition detail queries.

Rendering is a pure function of project, job and policy: the same inputs
always produce byte-identical text.
"""

from typing import Optional

from promoter.job import Job
from promoter.partition import get_table_parts
from promoter.policy import DatatypePolicy, get_policy
from promoter.warehouse import TableRef
from utils import safe_identifier

DEFAULT_STAGING_PREFIX = "staging_"
DEFAULT_ARCHIVE_PREFIX = "archive_"


class QueryBuilder:
    """Renders the queries for one job."""

    def __init__(
        self,
        project: str,
        job: Job,
        policy: Optional[DatatypePolicy] = None,
        staging_prefix: str = DEFAULT_STAGING_PREFIX,
        archive_prefix: str = DEFAULT_ARCHIVE_PREFIX,
    ) -> None:
        """Initialize query builder.

        Args:
            project: Warehouse project holding staging and archive datasets
            job: Job to build queries for
            policy: Policy override (looked up by job datatype if None)
            staging_prefix: Dataset prefix of the staging tables
            archive_prefix: Dataset prefix of the archive tables

        Raises:
            DatatypeNotSupportedError: If no policy exists for the job datatype
        """
        self.project = project
        self.job = job
        self.policy = policy or get_policy(job.datatype)
        self.staging_prefix = staging_prefix
        self.archive_prefix = archive_prefix

    @property
    def staging_table(self) -> TableRef:
        return TableRef(
            self.project, f"{self.staging_prefix}{self.job.experiment}", self.job.datatype
        )

    @property
    def archive_table(self) -> TableRef:
        return TableRef(
            self.project, f"{self.archive_prefix}{self.job.experiment}", self.job.datatype
        )

    @property
    def staging_partition(self) -> TableRef:
        return self.staging_table.partition(self.job.partition)

    @property
    def archive_partition(self) -> TableRef:
        return self.archive_table.partition(self.job.partition)

    def _date_filter(self) -> str:
        return f'{self.policy.partition_date_column} = "{self.job.date_literal}"'

    def dedup_query(self) -> str:
        """Render the query deleting all but the preferred row per logical record.

        Within the job's partition, rows are grouped by the policy's partition
        keys and ranked by the tie-break order followed by parse time,
        newest first. Every row that does not match its group's first row on
        all keys and parse time is deleted. With no duplicates every row
        matches, so the query affects nothing.
        """
        policy = self.policy
        table = safe_identifier(self.staging_table.full_name)
        date_filter = self._date_filter()
        parse_time = policy.parse_time_column

        key_columns = "".join(f"{column}, " for column in policy.partition_keys.values())
        partition_by = ", ".join(policy.partition_keys.values())
        order_by = f"{parse_time} DESC"
        if policy.tie_break_order:
            order_by = f"{policy.tie_break_order.rstrip(', ')}, {order_by}"
        key_matches = "".join(
            f"target.{column} = keep.{name} AND\n    "
            for name, column in policy.partition_keys.items()
        )

        return f"""#standardSQL
# Delete all duplicate rows based on key and preferred priority ordering.
# The query is very cheap if there are no duplicates.
DELETE
FROM {table} AS target
WHERE {date_filter}
# Rows that don't match a row to preserve.
AND NOT EXISTS (
  # Rows to preserve, based on key and priority.
  WITH keep AS (
  SELECT * EXCEPT(row_number) FROM (
    SELECT
      {key_columns}{parse_time},
      ROW_NUMBER() OVER (
        PARTITION BY {partition_by}
        ORDER BY {order_by}
      ) row_number
      FROM (
        SELECT * FROM {table}
        WHERE {date_filter}
      )
    )
    WHERE row_number = 1
  )
  SELECT * FROM keep
  # Sufficient keys must be used to distinguish the preferred row from the others.
  WHERE
    {key_matches}target.{parse_time} = keep.{policy.parse_time_alias}
)"""

    def cleanup_query(self) -> str:
        """Render the query deleting every staging row of the job's partition."""
        table = safe_identifier(self.staging_table.full_name)
        return f"""#standardSQL
# Remove the promoted partition from staging.
DELETE
FROM {table}
WHERE {self._date_filter()}"""

    def detail_query(self, table: TableRef) -> str:
        """Render the aggregate query counting distinct records and source files.

        Partition references select the same rows as dedup and cleanup, by
        the policy date column; sharded and plain tables are scanned whole.

        Raises:
            ValueError: If the policy does not define detail columns
            InvalidPartitionNameError: If the table id is malformed
        """
        return detail_query(table, self.policy)


def detail_query(table: TableRef, policy: DatatypePolicy) -> str:
    """Render the distinct-count query for a table or partition."""
    if not policy.has_detail:
        raise ValueError(f"Datatype {policy.datatype} has no detail columns")

    parts = get_table_parts(table.table_id)
    if parts.is_partitioned:
        source = safe_identifier(f"{table.project}.{table.dataset}.{parts.prefix}")
        day = parts.partition_date
        if policy.ingestion_time_partitioned:
            where = f'WHERE _PARTITIONTIME = PARSE_TIMESTAMP("%Y%m%d", "{day}")'
        else:
            where = f'WHERE {policy.partition_date_column} = "{day[:4]}-{day[4:6]}-{day[6:]}"'
    else:
        source = safe_identifier(table.full_name)
        where = ""

    return f"""#standardSQL
SELECT
  COUNT(DISTINCT {policy.record_id_column}) AS record_count,
  COUNT(DISTINCT {policy.source_file_column}) AS source_file_count
FROM {source}
{where}""".rstrip()
