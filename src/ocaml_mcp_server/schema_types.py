"""Typed response primitives for the OCaml MCP server."""

from __future__ import annotations

from typing import List, Optional, TypedDict

# ----- Error codes ---------------------------------------------------------
ERROR_BAD_REQUEST = "bad_request"
ERROR_CLIENT_NOT_READY = "client_not_ready"
ERROR_IO_FAILURE = "io_failure"
ERROR_UNKNOWN = "unknown"


# ----- Build status --------------------------------------------------------
STATUS_SUCCESS = "success"
STATUS_SUCCESS_WITH_WARNINGS = "success_with_warnings"
STATUS_FAILED = "failed"
STATUS_BUILDING = "building"

BUILD_STATUSES = (
    STATUS_SUCCESS,
    STATUS_SUCCESS_WITH_WARNINGS,
    STATUS_FAILED,
    STATUS_BUILDING,
)


# ----- Project structure ---------------------------------------------------
COMPONENT_LIBRARY = "library"
COMPONENT_EXECUTABLE = "executable"


# ----- Shared structures ---------------------------------------------------
class DiagnosticPayload(TypedDict):
    severity: str
    file: str
    line: int
    column: int
    message: str


class BuildSummaryPayload(TypedDict):
    completed: int
    remaining: int
    failed: int


class DiagnosticsSummaryPayload(TypedDict):
    total_diagnostics: int
    returned_diagnostics: int
    error_count: int
    warning_count: int
    build_summary: Optional[BuildSummaryPayload]


class BuildStatusPayload(TypedDict):
    status: str
    diagnostics: List[DiagnosticPayload]
    truncated: bool
    truncation_reason: Optional[str]
    next_cursor: Optional[str]
    token_count: int
    summary: DiagnosticsSummaryPayload


class BuildTargetPayload(TypedDict):
    targets: List[str]
    success: bool
    exit_code: Optional[int]
    output: str


class ProjectComponentPayload(TypedDict):
    kind: str
    name: str
    directory: str
    modules: List[str]
    dependencies: List[str]


class ProjectStructurePayload(TypedDict):
    project_root: str
    build_context: str
    library_count: int
    executable_count: int
    components: List[ProjectComponentPayload]


__all__ = [
    "BUILD_STATUSES",
    "BuildStatusPayload",
    "BuildSummaryPayload",
    "BuildTargetPayload",
    "COMPONENT_EXECUTABLE",
    "COMPONENT_LIBRARY",
    "DiagnosticPayload",
    "DiagnosticsSummaryPayload",
    "ERROR_BAD_REQUEST",
    "ERROR_CLIENT_NOT_READY",
    "ERROR_IO_FAILURE",
    "ERROR_UNKNOWN",
    "ProjectComponentPayload",
    "ProjectStructurePayload",
    "STATUS_BUILDING",
    "STATUS_FAILED",
    "STATUS_SUCCESS",
    "STATUS_SUCCESS_WITH_WARNINGS",
]
