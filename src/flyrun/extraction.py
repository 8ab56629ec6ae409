"""
flyrun — diagnostic extraction pipeline

File: src/flyrun/extraction.py

Purpose
- Turn completed checker output into an ordered ``ReportBatch`` using a
  caller-supplied regular expression and mapping function.

What should be included in this file
- ``MatchRecord``: immutable copy of one regex match handed to mapping code.
- ``DiagnosticPattern``: pattern plus mapping function.
- ``extract``: scan, map, suppress ``None`` severities, keep discovery order.
- Generic mapping helpers (label tables, line/column mapper).

Functional requirements
- Mapping functions never see scanner state; each gets its own record.
- Results are in match order, never re-sorted by position.
- Ranges must lie within the analysed text.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Final, NamedTuple, TypeAlias

from flyrun.models import Diagnostic, ReportBatch, Severity

if TYPE_CHECKING:
    from flyrun.definitions import RunContext


class ExtractionError(ValueError):
    """Raised when a match cannot be turned into a diagnostic."""


class DiagnosticFields(NamedTuple):
    """Fields produced by a mapping function for one match."""

    start: int
    end: int
    severity: Severity | str | None
    message: str


@dataclass(frozen=True, slots=True)
class MatchRecord:
    """Frozen view of one regex match in checker output."""

    text: str
    start: int
    end: int
    groups: tuple[str | None, ...]
    named: Mapping[str, str | None]

    @classmethod
    def from_match(cls, match: re.Match[str]) -> MatchRecord:
        return cls(
            text=match.group(0),
            start=match.start(),
            end=match.end(),
            groups=match.groups(),
            named=MappingProxyType(dict(match.groupdict())),
        )

    def group(self, key: int | str = 0) -> str | None:
        if isinstance(key, str):
            if key not in self.named:
                raise ExtractionError(f"match: no group named {key!r}")
            return self.named[key]
        if key == 0:
            return self.text
        if key < 0 or key > len(self.groups):
            raise ExtractionError(f"match: no group {key}")
        return self.groups[key - 1]

    def __getitem__(self, key: int | str) -> str | None:
        return self.group(key)

    def has_group(self, name: str) -> bool:
        return self.named.get(name) is not None


MatchMapper: TypeAlias = Callable[
    [MatchRecord, "RunContext"],
    "DiagnosticFields | Sequence[object]",
]
SeverityResolver: TypeAlias = Callable[[str], Severity | None]


@dataclass(frozen=True, slots=True)
class DiagnosticPattern:
    """
    Search pattern plus mapping function for one checker.

    String patterns are compiled with ``re.MULTILINE`` so ``^``/``$`` anchor
    on output lines.
    """

    regex: re.Pattern[str]
    mapper: MatchMapper

    def __post_init__(self) -> None:
        if isinstance(self.regex, str):
            object.__setattr__(self, "regex", re.compile(self.regex, re.MULTILINE))
        elif not isinstance(self.regex, re.Pattern):
            raise ValueError(
                f"DiagnosticPattern.regex: expected pattern or string, got {type(self.regex).__name__}"
            )
        if not callable(self.mapper):
            raise ValueError("DiagnosticPattern.mapper: must be callable")


def extract(output: str, pattern: DiagnosticPattern, context: RunContext) -> ReportBatch:
    """Scan ``output`` and return the diagnostics it describes, in match order."""

    limit = len(context.source.text)
    diagnostics: list[Diagnostic] = []
    for index, match in enumerate(pattern.regex.finditer(output)):
        fields = _as_fields(pattern.mapper(MatchRecord.from_match(match), context), index)
        severity = coerce_severity(fields.severity)
        if severity is None:
            continue
        try:
            diagnostic = Diagnostic(
                start=fields.start,
                end=fields.end,
                severity=severity,
                message=fields.message,
                checker=context.name,
            )
        except ValueError as exc:
            raise ExtractionError(f"match[{index}]: {exc}") from exc
        if diagnostic.end > limit:
            raise ExtractionError(
                f"match[{index}]: end {diagnostic.end} is past the end of the source ({limit} characters)"
            )
        diagnostics.append(diagnostic)
    return tuple(diagnostics)


def coerce_severity(value: object) -> Severity | None:
    if value is None or isinstance(value, Severity):
        return value
    if isinstance(value, str):
        try:
            return Severity(value.strip().lower())
        except ValueError:
            pass
    raise ExtractionError(f"severity: unsupported value {value!r}")


DEFAULT_SEVERITY_LABELS: Final[Mapping[str, Severity | None]] = MappingProxyType(
    {
        "error": Severity.ERROR,
        "fatal": Severity.ERROR,
        "e": Severity.ERROR,
        "warning": Severity.WARNING,
        "warn": Severity.WARNING,
        "w": Severity.WARNING,
        "note": Severity.NOTE,
        "info": Severity.NOTE,
        "hint": Severity.NOTE,
    }
)

_RAISE: Final = object()


def severity_from_labels(
    labels: Mapping[str, Severity | str | None] = DEFAULT_SEVERITY_LABELS,
    *,
    default: object = _RAISE,
) -> SeverityResolver:
    """Build a case-insensitive label -> severity lookup.

    Labels mapped to ``None`` suppress the diagnostic. Unknown labels resolve to
    ``default`` when given, otherwise raise ``ExtractionError``.
    """

    table = {key.strip().lower(): coerce_severity(value) for key, value in labels.items()}
    fallback = None if default is _RAISE else coerce_severity(default)

    def resolve(label: str) -> Severity | None:
        key = label.strip().lower()
        if key in table:
            return table[key]
        if default is _RAISE:
            raise ExtractionError(f"severity: unknown label {label!r}")
        return fallback

    return resolve


def line_mapper(
    *,
    line_group: str = "line",
    column_group: str = "column",
    severity_group: str = "severity",
    message_group: str = "message",
    severity: SeverityResolver | Mapping[str, Severity | str | None] | None = None,
    default_severity: Severity | None = Severity.ERROR,
) -> MatchMapper:
    """
    Mapping function for the common ``line[:column]: severity: message`` shape.

    Line and column are 1-based and converted with ``InputSource.line_region``.
    Missing optional groups fall back to whole-line regions and
    ``default_severity``.
    """

    if severity is None:
        resolver = severity_from_labels(default=default_severity)
    elif isinstance(severity, Mapping):
        resolver = severity_from_labels(severity, default=default_severity)
    else:
        resolver = severity

    def mapper(match: MatchRecord, context: RunContext) -> DiagnosticFields:
        line = _as_int_group(match, line_group)
        column = _as_int_group(match, column_group) if match.has_group(column_group) else None
        start, end = context.source.line_region(line, column)

        label = match.named.get(severity_group)
        resolved = resolver(label) if label is not None else default_severity

        message = match.named.get(message_group)
        if message is None:
            raise ExtractionError(f"match: group {message_group!r} did not participate")
        return DiagnosticFields(start, end, resolved, message.strip())

    return mapper


def _as_int_group(match: MatchRecord, name: str) -> int:
    raw = match.group(name)
    if raw is None:
        raise ExtractionError(f"match: group {name!r} did not participate")
    try:
        return int(raw)
    except ValueError:
        raise ExtractionError(f"match: group {name!r} is not an integer: {raw!r}") from None


def _as_fields(value: object, index: int) -> DiagnosticFields:
    if isinstance(value, DiagnosticFields):
        return value
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        if len(value) != 4:
            raise ExtractionError(
                f"match[{index}]: mapper must return (start, end, severity, message), "
                f"got {len(value)} item(s)"
            )
        start, end, severity, message = value
        return DiagnosticFields(start, end, severity, message)  # type: ignore[arg-type]
    raise ExtractionError(
        f"match[{index}]: mapper must return DiagnosticFields, got {type(value).__name__}"
    )


__all__ = [
    "DEFAULT_SEVERITY_LABELS",
    "DiagnosticFields",
    "DiagnosticPattern",
    "ExtractionError",
    "MatchMapper",
    "MatchRecord",
    "SeverityResolver",
    "coerce_severity",
    "extract",
    "line_mapper",
    "severity_from_labels",
]
