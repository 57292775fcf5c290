"""Token-budgeted page assembly over a prioritized diagnostic sequence."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Sequence, Tuple

from mcp.server.fastmcp.utilities.logging import get_logger

from ocaml_mcp_server.diagnostics import Diagnostic
from ocaml_mcp_server.token_estimator import TokenEstimator

logger = get_logger(__name__)


TOKEN_BUDGET = 25_000
DEFAULT_METADATA_RESERVE = 1_000
DEFAULT_SAFETY_FACTOR = 1.4

SAFETY_FACTOR_ENV = "OCAML_MCP_TOKEN_SAFETY_FACTOR"
METADATA_RESERVE_ENV = "OCAML_MCP_METADATA_RESERVE"

PAGINATED_REASON = "Results paginated - use next_cursor to get more pages"


def resume_after(start_index: int, returned: int) -> Tuple[int, int]:
    """Return ``(page, page_size)`` resuming right after a token-limited page.

    The page size is the largest one not above ``returned`` whose page
    boundary falls on the first diagnostic left out. When nothing fit, the
    oversized diagnostic is stepped over with a page size of one.
    """

    if returned < 1:
        return start_index + 1, 1
    resume = start_index + returned
    size = next(size for size in range(returned, 0, -1) if resume % size == 0)
    return resume // size, size


def token_limit_reason(
    returned: int,
    tokens_used: int,
    budget: int = TOKEN_BUDGET,
    start_index: int = 0,
) -> str:
    page, page_size = resume_after(start_index, returned)
    if returned < 1:
        hint = (
            "the next diagnostic alone exceeds the budget; "
            f"skip it with page={page} max_diagnostics={page_size}"
        )
    else:
        hint = f"continue with page={page} max_diagnostics={page_size}"
    return (
        f"Response truncated after {returned} diagnostics due to {budget:,} token limit "
        f"(estimated {tokens_used} tokens used); {hint}"
    )


@dataclass(frozen=True)
class BudgetSettings:
    """Calibration of the truncator.

    ``metadata_reserve`` covers every non-diagnostic field of a response;
    ``safety_factor`` inflates each diagnostic estimate to hedge against the
    estimator undercounting.
    """

    token_budget: int = TOKEN_BUDGET
    metadata_reserve: int = DEFAULT_METADATA_RESERVE
    safety_factor: float = DEFAULT_SAFETY_FACTOR

    def __post_init__(self) -> None:
        if self.token_budget < 1:
            raise ValueError(f"token_budget must be >= 1, got {self.token_budget}")
        if not 0 <= self.metadata_reserve < self.token_budget:
            raise ValueError(
                f"metadata_reserve must be in [0, {self.token_budget}), got {self.metadata_reserve}"
            )
        if not (math.isfinite(self.safety_factor) and self.safety_factor >= 1.0):
            raise ValueError(f"safety_factor must be >= 1.0, got {self.safety_factor}")

    @property
    def available(self) -> int:
        return self.token_budget - self.metadata_reserve

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BudgetSettings":
        """Build settings from ``OCAML_MCP_*`` overrides; bad values are ignored."""

        env = os.environ if environ is None else environ
        defaults = cls()

        safety_factor = defaults.safety_factor
        raw_factor = env.get(SAFETY_FACTOR_ENV, "").strip()
        if raw_factor:
            try:
                candidate = float(raw_factor)
            except ValueError:
                candidate = None
            if candidate is not None and math.isfinite(candidate) and candidate >= 1.0:
                safety_factor = candidate
            else:
                logger.warning(
                    "Ignoring %s=%r; expected a number >= 1.0", SAFETY_FACTOR_ENV, raw_factor
                )

        metadata_reserve = defaults.metadata_reserve
        raw_reserve = env.get(METADATA_RESERVE_ENV, "").strip()
        if raw_reserve:
            try:
                reserve = int(raw_reserve)
            except ValueError:
                reserve = None
            if reserve is not None and 0 <= reserve < defaults.token_budget:
                metadata_reserve = reserve
            else:
                logger.warning(
                    "Ignoring %s=%r; expected an integer in [0, %d)",
                    METADATA_RESERVE_ENV,
                    raw_reserve,
                    defaults.token_budget,
                )

        return cls(metadata_reserve=metadata_reserve, safety_factor=safety_factor)


class StopReason(str, Enum):
    TOKEN_LIMIT = "token_limit"
    PAGE_FULL = "page_full"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class PageResult:
    diagnostics: Tuple[Diagnostic, ...]
    truncated: bool
    truncation_reason: Optional[str]
    next_cursor: Optional[str]
    has_more: bool
    tokens_used: int
    stop_reason: StopReason
    start_index: int


def hedged_cost(estimate: int, safety_factor: float) -> int:
    """Inflate a raw estimate by the safety factor, rounding up."""

    return math.ceil(estimate * safety_factor)


def assemble_page(
    prioritized: Sequence[Diagnostic],
    page_size: int,
    page_index: int,
    estimator: TokenEstimator,
    settings: BudgetSettings | None = None,
) -> PageResult:
    """Select one page of ``prioritized`` that fits the token budget.

    The walk starts at ``page_index * page_size`` and stops at the first of:
    the hedged running total would exceed the available budget, ``page_size``
    diagnostics are included, or the sequence is exhausted.

    ``next_cursor`` points at the next nominal page whenever diagnostics exist
    past this page's nominal end. After a token-limit stop the diagnostics
    between the stop and that end are not on either page; the reason names a
    page and page size that resume right after the last returned diagnostic.
    """

    if page_size < 1:
        raise ValueError(f"page_size must be >= 1, got {page_size}")
    if page_index < 0:
        raise ValueError(f"page_index must be >= 0, got {page_index}")

    budget = settings if settings is not None else BudgetSettings()
    available = budget.available
    total = len(prioritized)
    start = page_index * page_size
    nominal_end = start + page_size

    page: list[Diagnostic] = []
    tokens_used = 0
    stop_reason = StopReason.EXHAUSTED
    index = start
    while index < total:
        if len(page) >= page_size:
            stop_reason = StopReason.PAGE_FULL
            break
        candidate = prioritized[index]
        cost = hedged_cost(estimator.estimate_diagnostic(candidate), budget.safety_factor)
        if tokens_used + cost > available:
            stop_reason = StopReason.TOKEN_LIMIT
            break
        page.append(candidate)
        tokens_used += cost
        index += 1

    has_more = index < total
    next_cursor = str(page_index + 1) if nominal_end < total else None

    if stop_reason is StopReason.TOKEN_LIMIT:
        truncated = True
        reason: Optional[str] = token_limit_reason(
            len(page), tokens_used, budget.token_budget, start
        )
    elif stop_reason is StopReason.PAGE_FULL:
        truncated = True
        reason = PAGINATED_REASON
    else:
        truncated = False
        reason = None

    logger.debug(
        "Assembled page %d from index %d: %d of %d diagnostics, %d tokens, stop=%s",
        page_index,
        start,
        len(page),
        total,
        tokens_used,
        stop_reason.value,
    )

    return PageResult(
        diagnostics=tuple(page),
        truncated=truncated,
        truncation_reason=reason,
        next_cursor=next_cursor,
        has_more=has_more,
        tokens_used=tokens_used,
        stop_reason=stop_reason,
        start_index=start,
    )


__all__ = [
    "BudgetSettings",
    "DEFAULT_METADATA_RESERVE",
    "DEFAULT_SAFETY_FACTOR",
    "METADATA_RESERVE_ENV",
    "PAGINATED_REASON",
    "PageResult",
    "SAFETY_FACTOR_ENV",
    "StopReason",
    "TOKEN_BUDGET",
    "assemble_page",
    "hedged_cost",
    "resume_after",
    "token_limit_reason",
]
