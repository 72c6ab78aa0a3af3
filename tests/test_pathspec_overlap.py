"""Overlap semantics for reservation path patterns."""

from __future__ import annotations

import pytest

from agent_mail_core.reservations import normalize_path, paths_overlap


@pytest.mark.parametrize(
    ("a", "b", "expected"),
    [
        ("x/y", "x/y", True),
        ("x/y", "x/y/z", True),
        ("x/y/z", "x/y", True),
        ("x/y", "x/yz", False),
        ("src/", "src/app.py", True),
        ("docs", "src/docs/a.md", False),
        ("src/*.py", "src/app.py", True),
        ("src/*.py", "src/app.md", False),
        ("**/*.py", "lib/deep/x.py", True),
        ("*.py", "lib/x.py", True),
        ("src/app.py", "./src//app.py", True),
        ("src/[ab].py", "src/a.py", True),
        ("src/[ab].py", "src/c.py", False),
        ("src/*.py", "src/test_*", True),
        ("*.py", "test_*", True),
        ("src/*.py", "src/*.md", False),
        ("src/test_*", "src/spec_*", False),
        ("src/*.py", "lib/test_*", False),
    ],
)
def test_paths_overlap(a, b, expected):
    assert paths_overlap(a, b) is expected
    assert paths_overlap(b, a) is expected


def test_empty_patterns_never_overlap():
    assert paths_overlap("", "src") is False
    assert paths_overlap("./", "src") is False


def test_normalize_path_strips_leading_markers():
    assert normalize_path("././a/b/") == "a/b"
    assert normalize_path("//a//b") == "a/b"
    assert normalize_path("a\\b\\c.py") == "a/b/c.py"
