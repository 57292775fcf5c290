"""Build status request pipeline: filter, prioritize, page, assemble."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Tuple

from mcp.server.fastmcp.utilities.logging import get_logger

from ocaml_mcp_server.diagnostics import (
    BuildSnapshot,
    BuildSummary,
    Diagnostic,
    count_by_severity,
    filter_diagnostics,
    prioritize,
)
from ocaml_mcp_server.pagination import (
    BudgetSettings,
    PageResult,
    assemble_page,
    token_limit_reason,
)
from ocaml_mcp_server.schema_types import BuildStatusPayload
from ocaml_mcp_server.token_estimator import TokenEstimator
from ocaml_mcp_server.tool_inputs import BuildStatusInput

logger = get_logger(__name__)

# token_count is part of the estimated payload, so its own digits feed back
# into the estimate. A few rounds always settle it.
_TOKEN_COUNT_ROUNDS = 5


@dataclass(frozen=True)
class BuildStatusResponse:
    status: str
    diagnostics: Tuple[Diagnostic, ...]
    truncated: bool
    truncation_reason: Optional[str]
    next_cursor: Optional[str]
    token_count: int
    total_diagnostics: int
    error_count: int
    warning_count: int
    build_summary: Optional[BuildSummary] = None

    @property
    def returned_diagnostics(self) -> int:
        return len(self.diagnostics)

    def to_payload(self) -> BuildStatusPayload:
        return {
            "status": self.status,
            "diagnostics": [diag.to_payload() for diag in self.diagnostics],
            "truncated": self.truncated,
            "truncation_reason": self.truncation_reason,
            "next_cursor": self.next_cursor,
            "token_count": self.token_count,
            "summary": {
                "total_diagnostics": self.total_diagnostics,
                "returned_diagnostics": self.returned_diagnostics,
                "error_count": self.error_count,
                "warning_count": self.warning_count,
                "build_summary": (
                    self.build_summary.to_payload() if self.build_summary is not None else None
                ),
            },
        }


def assemble_response(
    snapshot: BuildSnapshot,
    page: PageResult,
    *,
    total_diagnostics: int,
    error_count: int,
    warning_count: int,
) -> BuildStatusResponse:
    """Combine a page with the snapshot's status; ``token_count`` is filled later."""

    return BuildStatusResponse(
        status=snapshot.status,
        diagnostics=page.diagnostics,
        truncated=page.truncated,
        truncation_reason=page.truncation_reason,
        next_cursor=page.next_cursor,
        token_count=0,
        total_diagnostics=total_diagnostics,
        error_count=error_count,
        warning_count=warning_count,
        build_summary=snapshot.build_summary,
    )


class BuildStatusPipeline:
    """Runs one validated request against one build snapshot.

    Instances hold no per-request state and may be shared between threads;
    the only shared mutable state is the estimator's cache.
    """

    def __init__(
        self,
        estimator: TokenEstimator | None = None,
        settings: BudgetSettings | None = None,
    ) -> None:
        self.estimator = estimator if estimator is not None else TokenEstimator()
        self.settings = settings if settings is not None else BudgetSettings()

    def run(self, request: BuildStatusInput, snapshot: BuildSnapshot) -> BuildStatusResponse:
        filtered = filter_diagnostics(
            snapshot.diagnostics,
            request.severity_filter,
            request.file_pattern,
        )
        error_count, warning_count = count_by_severity(filtered)
        prioritized = prioritize(filtered)
        page = assemble_page(
            prioritized,
            request.max_diagnostics,
            request.page,
            self.estimator,
            self.settings,
        )
        response = assemble_response(
            snapshot,
            page,
            total_diagnostics=len(filtered),
            error_count=error_count,
            warning_count=warning_count,
        )
        return self.enforce_budget(response, start_index=page.start_index)

    def measure(self, response: BuildStatusResponse) -> BuildStatusResponse:
        """Return ``response`` with ``token_count`` set to its own estimate."""

        count = 0
        for _ in range(_TOKEN_COUNT_ROUNDS):
            candidate = replace(response, token_count=count)
            estimate = self.estimator.estimate_response(candidate.to_payload())
            if estimate <= count:
                return candidate
            count = estimate
        return replace(response, token_count=count)

    def enforce_budget(
        self, response: BuildStatusResponse, start_index: int = 0
    ) -> BuildStatusResponse:
        """Drop trailing diagnostics until the measured response fits the budget."""

        budget = self.settings.token_budget
        measured = self.measure(response)
        if measured.token_count <= budget:
            return measured

        diagnostics = list(measured.diagnostics)
        while diagnostics and measured.token_count > budget:
            diagnostics.pop()
            measured = self.measure(
                replace(
                    measured,
                    diagnostics=tuple(diagnostics),
                    truncated=True,
                    truncation_reason=token_limit_reason(
                        len(diagnostics), measured.token_count, budget, start_index
                    ),
                )
            )
        logger.debug(
            "Budget guard trimmed response to %d diagnostics (%d tokens)",
            len(diagnostics),
            measured.token_count,
        )
        return measured


__all__ = [
    "BuildStatusPipeline",
    "BuildStatusResponse",
    "assemble_response",
]
