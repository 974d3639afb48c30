"""Library for formatting console output of the release-gate actions."""

from collections.abc import Generator, Mapping
import sys
from typing import Any, TextIO

PADDING = 4


def _cell(value: Any) -> str:
    """Render a table cell, keeping only the first line of multi-line text."""
    if value is None:
        return ""
    text = str(value)
    return text.split("\n", 1)[0]


def column_widths(rows: list[list[str]]) -> list[int]:
    """Return the max width of each column."""
    widths = [0] * len(rows[0])
    for row in rows:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(value))
    return widths


def format_columns(
    headers: list[str], rows: list[list[str]]
) -> Generator[str, None, None]:
    """Yield the header and rows aligned in columns."""
    if not headers:
        return
    data = [headers] + rows
    widths = column_widths(data)
    for row in data:
        yield "".join(
            value.ljust(width + PADDING) for value, width in zip(row, widths)
        ).rstrip()


class PrintFormatter:
    """A formatter that prints a human readable table."""

    def __init__(self, keys: list[str] | None = None):
        """Initialize the PrintFormatter with optional keys to print."""
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Format the data objects, one row each."""
        if not data:
            return
        keys = self._keys if self._keys is not None else list(data[0])
        rows = [[_cell(row.get(key)) for key in keys] for row in data]
        yield from format_columns([key.upper() for key in keys], rows)

    def print(
        self, data: list[dict[str, Any]], file: TextIO | None = None
    ) -> None:
        """Output the data objects, to stdout by default."""
        for result in self.format(data):
            print(result, file=file or sys.stdout)


def print_sections(sections: Mapping[str, str], file: TextIO | None = None) -> None:
    """Print blocks of text, each under a `--- name ---` heading, to stderr."""
    file = file or sys.stderr
    for name, text in sections.items():
        print(f"--- {name} ---", file=file)
        print(text.rstrip(), file=file)
