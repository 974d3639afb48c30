"""Tests for the format library."""

import io

from release_gate.tool.format import format_columns, print_sections, PrintFormatter


def test_format_columns_empty() -> None:
    """Tests with no columns."""
    assert list(format_columns([], [])) == []


def test_format_columns_empty_rows() -> None:
    """Tests with no rows."""
    assert list(format_columns(["a", "b", "c"], [])) == ["a    b    c"]


def test_format_columns_rows() -> None:
    """Tests format with normal rows"""
    assert list(
        format_columns(
            ["stage", "status"], [["Validate", "Pass"], ["HealthGate", "Fail"]]
        )
    ) == [
        "stage         status",
        "Validate      Pass",
        "HealthGate    Fail",
    ]


def test_print_formatter() -> None:
    """Print formatting with empty data."""
    formatter = PrintFormatter()
    assert list(formatter.format([])) == []


def test_print_formatter_keys() -> None:
    """Print formatting selected keys, with missing values left blank."""
    formatter = PrintFormatter(["service", "health", "reason"])
    assert list(
        formatter.format(
            [
                {"service": "db", "health": "Healthy", "reason": None},
                {"service": "web", "health": "Timeout", "reason": "state exited"},
            ]
        )
    ) == [
        "SERVICE    HEALTH     REASON",
        "db         Healthy",
        "web        Timeout    state exited",
    ]


def test_print_formatter_multiline() -> None:
    """Only the first line of a multi-line value is shown."""
    formatter = PrintFormatter(["stage", "reason"])
    assert list(
        formatter.format(
            [{"stage": "Validate", "reason": "Invalid topology\n  - missing image"}]
        )
    ) == [
        "STAGE       REASON",
        "Validate    Invalid topology",
    ]


def test_print_sections() -> None:
    """Each section is printed under its own heading."""
    out = io.StringIO()
    print_sections({"web logs": "line 1\nline 2\n"}, file=out)
    assert out.getvalue() == "--- web logs ---\nline 1\nline 2\n"
