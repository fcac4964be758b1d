"""Partition Promoter - Shared utilities."""

import re

_SEGMENT = re.compile(r"^[a-zA-Z0-9_][a-zA-Z0-9_\-]*$")


def safe_identifier(name: str) -> str:
    """Validate and quote a warehouse table path to prevent SQL injection.

    Accepts ``dataset.table`` or ``project.dataset.table``. Project ids may
    contain hyphens; other segments are letters, digits and underscores.

    Args:
        name: Dotted table path

    Returns:
        Backtick-quoted path (e.g., '`my-project.staging_ndt.ndt7`')

    Raises:
        ValueError: If any segment contains invalid characters
    """
    segments = name.split(".")
    if not 1 <= len(segments) <= 3:
        raise ValueError(f"Invalid table path: {name!r}")

    for i, segment in enumerate(segments):
        if not _SEGMENT.match(segment):
            raise ValueError(
                f"Invalid SQL identifier: {name!r}. "
                "Only letters, digits, underscores (and hyphens in project ids) are allowed."
            )
        # Only the project segment may contain hyphens
        if "-" in segment and not (len(segments) == 3 and i == 0):
            raise ValueError(
                f"Invalid SQL identifier: {name!r}. Hyphens only allowed in project id."
            )

    return f"`{name}`"
