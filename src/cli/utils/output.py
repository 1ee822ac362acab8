"""Output formatting helpers for CLI."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence

import click


def format_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    """Format a simple table with padded columns."""
    rows_list: List[List[str]] = [list(map(str, row)) for row in rows]
    widths = [len(str(h)) for h in headers]
    for row in rows_list:
        for idx, cell in enumerate(row):
            if idx >= len(widths):
                widths.append(len(cell))
            else:
                widths[idx] = max(widths[idx], len(cell))

    header_line = " ".join(str(h).ljust(widths[i]) for i, h in enumerate(headers))
    separator = "-" * len(header_line)
    body_lines = [
        " ".join(str(cell).ljust(widths[i]) for i, cell in enumerate(row))
        for row in rows_list
    ]
    return "\n".join([header_line, separator] + body_lines)


def echo_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    """Echo a simple table."""
    click.echo(format_table(headers, rows))


def echo_json(data) -> None:
    """Echo JSON with UTF-8 characters preserved (datetime / Enum は文字列化)."""
    click.echo(json.dumps(data, ensure_ascii=False, indent=2, default=_json_default))


def format_percent(value: Optional[float], digits: int = 1) -> str:
    """パーセント値を表示用に整形（None は "-"）"""
    if value is None:
        return "-"
    return f"{value:.{digits}f}%"


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
