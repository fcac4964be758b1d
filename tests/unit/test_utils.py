"""Unit tests for shared utilities."""

import pytest

from utils import safe_identifier


@pytest.mark.parametrize(
    "name, expected",
    [
        ("ndt7", "`ndt7`"),
        ("staging_ndt.ndt7", "`staging_ndt.ndt7`"),
        ("mlab-sandbox.staging_ndt.ndt7", "`mlab-sandbox.staging_ndt.ndt7`"),
    ],
)
def test_safe_identifier(name: str, expected: str) -> None:
    """Test valid table paths are quoted."""
    assert safe_identifier(name) == expected


@pytest.mark.parametrize(
    "name",
    [
        "",
        "a.b.c.d",
        "staging-ndt.ndt7",
        "p.staging-ndt.ndt7",
        "p.d.ndt7$20190304",
        "p.d.t`; DROP TABLE x",
        "p..t",
    ],
)
def test_safe_identifier_invalid(name: str) -> None:
    """Test unsafe or malformed paths are rejected."""
    with pytest.raises(ValueError):
        safe_identifier(name)
