"""Helpers for formatting CLI output safely across terminals."""

from __future__ import annotations

import sys

from rich.console import Console

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def _encoding_supports(text: str, encoding: str | None) -> bool:
    if not encoding:
        return False
    try:
        text.encode(encoding)
    except (LookupError, UnicodeEncodeError):
        return False
    return True


def supports_unicode_output(console: Console | None = None) -> bool:
    sample = "✓✗→"
    if console is not None and _encoding_supports(sample, console.encoding):
        return True
    return _encoding_supports(sample, sys.stdout.encoding)


def format_status_icon(passed: bool, console: Console | None = None) -> str:
    if supports_unicode_output(console):
        return "[green]✓[/green]" if passed else "[red]✗[/red]"
    return "[green]OK[/green]" if passed else "[red]X[/red]"


def format_verify_status(status: str) -> str:
    """Return a colored, fixed-width label for a library verify status."""

    label = status.upper().ljust(8)
    if status in {"valid", "fixed"}:
        return f"[green]{label}[/green]"
    if status == "missing":
        return f"[yellow]{label}[/yellow]"
    return f"[red]{label}[/red]"


def format_size(size_bytes: int | None) -> str:
    """Return a human readable byte count (1024 based)."""

    value = float(size_bytes or 0)
    for unit in _SIZE_UNITS:
        if value < 1024 or unit == _SIZE_UNITS[-1]:
            if unit == "B":
                return f"{int(value)} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{int(size_bytes or 0)} B"
