from __future__ import annotations

import sys
from pathlib import Path
from threading import Lock
from types import SimpleNamespace
from typing import Iterable, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ocaml_mcp_server.diagnostics import BuildSnapshot, BuildSummary, Diagnostic, Severity  # noqa: E402
from ocaml_mcp_server.pagination import BudgetSettings  # noqa: E402
from ocaml_mcp_server.pipeline import BuildStatusPipeline  # noqa: E402
from ocaml_mcp_server.token_estimator import TokenCache, TokenEstimator  # noqa: E402


def make_diagnostic(
    severity: str = "error",
    file: str = "src/main.ml",
    line: int = 1,
    column: int = 1,
    message: str = "Unbound value foo",
) -> Diagnostic:
    return Diagnostic(
        severity=Severity.parse(severity),
        file=file,
        line=line,
        column=column,
        message=message,
    )


def make_mixed_diagnostics(count: int, *, message: str = "Unused variable x") -> List[Diagnostic]:
    """``count`` diagnostics alternating warning/error, each with a unique line."""

    return [
        make_diagnostic(
            severity="warning" if index % 2 == 0 else "error",
            file=f"src/file{index % 7}.ml",
            line=index + 1,
            column=(index % 80) + 1,
            message=f"{message} {index}",
        )
        for index in range(count)
    ]


def make_snapshot(
    diagnostics: Iterable[Diagnostic] = (),
    status: str = "failed",
    build_summary: Optional[BuildSummary] = None,
) -> BuildSnapshot:
    return BuildSnapshot(status=status, diagnostics=tuple(diagnostics), build_summary=build_summary)


def make_ctx(
    *,
    provider=None,
    builder=None,
    project_root: Optional[str] = "/tmp/project",
    settings: Optional[BudgetSettings] = None,
) -> SimpleNamespace:
    estimator = TokenEstimator(TokenCache())
    lifespan = SimpleNamespace(
        project_root=project_root,
        provider=provider,
        builder=builder,
        estimator=estimator,
        pipeline=BuildStatusPipeline(estimator, settings),
        provider_lock=Lock(),
    )
    return SimpleNamespace(request_context=SimpleNamespace(lifespan_context=lifespan))


@pytest.fixture
def estimator() -> TokenEstimator:
    return TokenEstimator(TokenCache())


@pytest.fixture
def pipeline(estimator: TokenEstimator) -> BuildStatusPipeline:
    return BuildStatusPipeline(estimator)


__all__ = [
    "make_ctx",
    "make_diagnostic",
    "make_mixed_diagnostics",
    "make_snapshot",
]
