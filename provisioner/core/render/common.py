"""Helpers shared by the line-oriented renderers."""

from __future__ import annotations

from collections.abc import Iterator

MANAGED_HEADER = "# Managed by provision. Local edits are overwritten on the next apply."


def content_lines(text: str) -> Iterator[tuple[int, str]]:
    """Yield ``(line_number, stripped_line)`` skipping blanks and comments."""
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if line and not line.startswith("#"):
            yield lineno, line
