"""Library for formatting output."""

import sys
from typing import Any, TextIO

import yaml


PADDING = 4


def format_table(columns: list[str], rows: list[dict[str, Any]]) -> list[str]:
    """Return the rows as lines aligned under upper case column headers."""
    table = [[col.upper() for col in columns]]
    table.extend([str(row.get(col, "")) for col in columns] for row in rows)
    widths = [
        max(len(line[i]) for line in table) + PADDING for i in range(len(columns))
    ]
    return ["".join(value.ljust(w) for value, w in zip(line, widths)) for line in table]


def print_table(
    columns: list[str], rows: list[dict[str, Any]], file: TextIO | None = None
) -> None:
    """Output the rows as a table."""
    for line in format_table(columns, rows):
        print(line, file=sys.stdout if file is None else file)


def print_yaml(data: Any, file: TextIO | None = None) -> None:
    """Output the data object as a yaml document."""
    print(
        yaml.dump(data, sort_keys=False, explicit_start=True),
        end="",
        file=sys.stdout if file is None else file,
    )


def print_messages(
    title: str, messages: list[str], file: TextIO | None = None
) -> None:
    """Print a list of multi-line messages under a heading."""
    if not messages:
        return
    out = sys.stderr if file is None else file
    print(f"{title}:", file=out)
    for message in messages:
        lines = message.split("\n")
        print(f"  - {lines[0]}", file=out)
        for line in lines[1:]:
            print(f"    {line}" if line else "", file=out)
