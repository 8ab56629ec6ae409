"""
flyrun — diagnostic model

File: src/flyrun/models.py

Purpose
- Defines the uniform records shared by the transport, extraction, and runner layers.

What should be included in this file
- ``Severity`` levels and the ``None`` suppression sentinel.
- ``Diagnostic`` records and the ``ReportBatch`` alias.
- ``InputSource`` snapshots with line/column to offset helpers.

Functional requirements
- Diagnostic ranges are character offsets into the analysed text.
- A snapshot never changes after capture.
"""

from __future__ import annotations

import bisect
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Final, NoReturn, TypeAlias

_WORD_RE: Final[re.Pattern[str]] = re.compile(r"\w+")
_DEFAULT_ENCODING: Final[str] = "utf-8"


class Severity(StrEnum):
    """Diagnostic severity levels understood by report consumers."""

    ERROR = "error"
    WARNING = "warning"
    NOTE = "note"


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """One diagnostic found in checker output."""

    start: int
    end: int
    severity: Severity
    message: str
    checker: str = ""

    def __post_init__(self) -> None:
        _as_offset(self.start, "Diagnostic.start")
        _as_offset(self.end, "Diagnostic.end")
        if self.end < self.start:
            _fail("Diagnostic.end", f"must be >= start ({self.start}), got {self.end}")
        if not isinstance(self.severity, Severity):
            _fail("Diagnostic.severity", f"expected Severity, got {type(self.severity).__name__}")
        if not isinstance(self.message, str):
            _fail("Diagnostic.message", f"expected string, got {type(self.message).__name__}")

    @property
    def span(self) -> tuple[int, int]:
        return (self.start, self.end)

    def to_dict(self) -> dict[str, object]:
        return {
            "checker": self.checker,
            "start": self.start,
            "end": self.end,
            "severity": self.severity.value,
            "message": self.message,
        }


ReportBatch: TypeAlias = tuple[Diagnostic, ...]


@dataclass(frozen=True, slots=True)
class InputSource:
    """Immutable snapshot of the full text under analysis.

    ``name`` is the document name (usually a file path); staged-file transport
    names its temporary file after it so extension-sensitive tools behave.
    """

    text: str
    name: str | None = None
    encoding: str = _DEFAULT_ENCODING
    _line_starts: tuple[int, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.text, str):
            _fail("InputSource.text", f"expected string, got {type(self.text).__name__}")
        if self.name is not None and not isinstance(self.name, str):
            _fail("InputSource.name", f"expected string, got {type(self.name).__name__}")
        starts = [0]
        starts.extend(match.end() for match in re.finditer("\n", self.text))
        object.__setattr__(self, "_line_starts", tuple(starts))

    @property
    def line_count(self) -> int:
        return len(self._line_starts)

    def encode(self) -> bytes:
        return self.text.encode(self.encoding)

    def offset_of(self, line: int, column: int = 1) -> int:
        """Return the offset of 1-based ``line``/``column``, clamped to the text."""

        line_start, line_end = self._line_bounds(line)
        column = max(column, 1)
        return min(line_start + column - 1, line_end)

    def line_region(self, line: int, column: int | None = None) -> tuple[int, int]:
        """
        Return a ``(start, end)`` region for a tool-reported location.

        Without a column the region covers the line minus leading indentation.
        With a column it covers the word starting there, or one character when
        no word starts at that column. Out-of-range lines clamp to the nearest line.
        """

        line_start, line_end = self._line_bounds(line)
        if column is None:
            content = self.text[line_start:line_end]
            start = line_start + (len(content) - len(content.lstrip()))
            if start == line_end:
                return (line_start, line_end)
            return (start, line_end)

        start = self.offset_of(line, column)
        word = _WORD_RE.match(self.text, start, line_end)
        if word is not None:
            return (start, word.end())
        return (start, min(start + 1, line_end))

    def _line_bounds(self, line: int) -> tuple[int, int]:
        index = min(max(line, 1), self.line_count) - 1
        line_start = self._line_starts[index]
        if index + 1 < self.line_count:
            return (line_start, self._line_starts[index + 1] - 1)
        return (line_start, len(self.text))

    def line_of(self, offset: int) -> int:
        """Return the 1-based line containing ``offset``."""

        return bisect.bisect_right(self._line_starts, max(offset, 0))


def _as_offset(value: object, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if value < 0:
        _fail(path, "must be >= 0")
    return value


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


__all__ = [
    "Diagnostic",
    "InputSource",
    "ReportBatch",
    "Severity",
]
