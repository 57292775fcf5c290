"""Diagnostic value objects and the filter/prioritize stages of the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ocaml_mcp_server.glob_matcher import FilePattern
from ocaml_mcp_server.schema_types import (
    BUILD_STATUSES,
    BuildSummaryPayload,
    DiagnosticPayload,
)


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        """Map a provider severity label onto one of the two variants."""

        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            for member in cls:
                if len(value) == len(member.value) and value.lower() == member.value:
                    return member
        raise ValueError(f"unknown diagnostic severity {value!r}")


class SeverityFilter(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    ALL = "all"

    def accepts(self, severity: Severity) -> bool:
        if self is SeverityFilter.ALL:
            return True
        return self.value == severity.value


@dataclass(frozen=True)
class Diagnostic:
    """One compiler finding. Line is 1-based; column 0 means unknown."""

    severity: Severity
    file: str
    line: int
    column: int
    message: str

    def __post_init__(self) -> None:
        if not isinstance(self.severity, Severity):
            raise ValueError(f"severity must be a Severity, got {self.severity!r}")
        if self.line < 1:
            raise ValueError(f"line must be >= 1, got {self.line}")
        if self.column < 0:
            raise ValueError(f"column must be >= 0, got {self.column}")

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Diagnostic":
        return cls(
            severity=Severity.parse(data.get("severity")),
            file=str(data.get("file", "")),
            line=int(data.get("line", 1)),
            column=int(data.get("column", 0)),
            message=str(data.get("message", "")),
        )

    def to_payload(self) -> DiagnosticPayload:
        return {
            "severity": self.severity.value,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "message": self.message,
        }


@dataclass(frozen=True)
class BuildSummary:
    completed: int
    remaining: int
    failed: int

    def to_payload(self) -> BuildSummaryPayload:
        return {
            "completed": self.completed,
            "remaining": self.remaining,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class BuildSnapshot:
    """Everything the build layer hands over for one request."""

    status: str
    diagnostics: Sequence[Diagnostic] = field(default_factory=tuple)
    build_summary: Optional[BuildSummary] = None

    def __post_init__(self) -> None:
        if self.status not in BUILD_STATUSES:
            raise ValueError(f"unknown build status {self.status!r}")


def filter_diagnostics(
    diagnostics: Iterable[Diagnostic],
    severity_filter: SeverityFilter = SeverityFilter.ALL,
    file_pattern: Optional[str] = None,
) -> List[Diagnostic]:
    """Keep diagnostics passing the severity and file-glob predicates, in order.

    The pattern is compiled once per call. Results are cached per distinct
    file; wildcard segment results are shared across files by the compiled
    pattern.
    """

    matcher = FilePattern(file_pattern) if file_pattern is not None else None
    file_matches: Dict[str, bool] = {}
    kept: List[Diagnostic] = []
    for diag in diagnostics:
        if not severity_filter.accepts(diag.severity):
            continue
        if matcher is not None:
            matched = file_matches.get(diag.file)
            if matched is None:
                matched = matcher(diag.file)
                file_matches[diag.file] = matched
            if not matched:
                continue
        kept.append(diag)
    return kept


def prioritize(diagnostics: Iterable[Diagnostic]) -> List[Diagnostic]:
    """Stable partition: errors first, then warnings, each in input order."""

    errors: List[Diagnostic] = []
    warnings: List[Diagnostic] = []
    for diag in diagnostics:
        if diag.severity is Severity.ERROR:
            errors.append(diag)
        elif diag.severity is Severity.WARNING:
            warnings.append(diag)
        else:
            raise ValueError(f"unexpected severity {diag.severity!r} for {diag.file}")
    errors.extend(warnings)
    return errors


def count_by_severity(diagnostics: Iterable[Diagnostic]) -> Tuple[int, int]:
    """Return ``(error_count, warning_count)``."""

    errors = 0
    warnings = 0
    for diag in diagnostics:
        if diag.severity is Severity.ERROR:
            errors += 1
        else:
            warnings += 1
    return errors, warnings


__all__ = [
    "BuildSnapshot",
    "BuildSummary",
    "Diagnostic",
    "Severity",
    "SeverityFilter",
    "count_by_severity",
    "filter_diagnostics",
    "prioritize",
]
