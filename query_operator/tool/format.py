"""Library for formatting command output."""

from collections.abc import Generator
import json
import sys
from typing import Any, TextIO

import yaml

PADDING = 4


def format_columns(
    headers: list[str], rows: list[list[str]]
) -> Generator[str, None, None]:
    """Yield the rows aligned on the max width of each column."""
    if not headers:
        return
    data = [headers] + rows
    widths = [max(len(str(row[i])) for row in data) for i in range(len(headers))]
    format_string = "".join(f"{{:{w + PADDING}}}" for w in widths)
    for row in data:
        yield format_string.format(*[str(x) for x in row]).rstrip()


class PrintFormatter:
    """A formatter that prints a table of the selected keys."""

    def __init__(self, keys: list[str]):
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Format the data objects as rows of columns."""
        if not data:
            return
        rows = [[str(row.get(key, "")) for key in self._keys] for row in data]
        yield from format_columns([key.upper() for key in self._keys], rows)

    def print(self, data: list[dict[str, Any]], file: TextIO = sys.stdout) -> None:
        for line in self.format(data):
            print(line, file=file)


class YamlFormatter:
    """A formatter that prints a yaml document stream."""

    def print(self, data: list[Any], file: TextIO = sys.stdout) -> None:
        if not data:
            return
        print(
            yaml.dump_all(data, sort_keys=False, explicit_start=True), end="", file=file
        )


class JsonFormatter:
    """A formatter that prints a json list."""

    def print(self, data: list[Any], file: TextIO = sys.stdout) -> None:
        json.dump(data, sort_keys=False, indent=4, fp=file)
        print(file=file)


def get_formatter(output: str) -> YamlFormatter | JsonFormatter:
    """Return the formatter for the output flag."""
    if output == "json":
        return JsonFormatter()
    return YamlFormatter()
