from __future__ import annotations

import orjson
import pytest

from conftest import make_diagnostic, make_mixed_diagnostics, make_snapshot
from ocaml_mcp_server.diagnostics import BuildSummary
from ocaml_mcp_server.pagination import PAGINATED_REASON, BudgetSettings
from ocaml_mcp_server.pipeline import BuildStatusPipeline
from ocaml_mcp_server.token_estimator import TokenCache, TokenEstimator
from ocaml_mcp_server.tool_inputs import validate_build_status_request


def _run(pipeline: BuildStatusPipeline, diagnostics, **request):
    return pipeline.run(validate_build_status_request(request), make_snapshot(diagnostics)).to_payload()


def test_end_to_end_pagination_of_150_diagnostics(pipeline: BuildStatusPipeline) -> None:
    diags = make_mixed_diagnostics(150)

    first = _run(pipeline, diags, max_diagnostics=50, page=0)
    assert len(first["diagnostics"]) == 50
    assert first["truncated"] is True
    assert first["truncation_reason"] == PAGINATED_REASON
    assert first["next_cursor"] == "1"
    assert first["summary"]["total_diagnostics"] == 150
    assert first["summary"]["returned_diagnostics"] == 50
    assert first["summary"]["error_count"] == 75
    assert first["summary"]["warning_count"] == 75
    assert all(entry["severity"] == "error" for entry in first["diagnostics"])

    last = _run(pipeline, diags, max_diagnostics=50, page=2)
    assert len(last["diagnostics"]) == 50
    assert last["truncated"] is False
    assert last["next_cursor"] is None
    assert last["truncation_reason"] is None
    assert all(entry["severity"] == "warning" for entry in last["diagnostics"])


def test_summary_counts_cover_filtered_set(pipeline: BuildStatusPipeline) -> None:
    diags = [
        make_diagnostic(severity="error", file="src/a.ml"),
        make_diagnostic(severity="warning", file="src/b.ml"),
        make_diagnostic(severity="warning", file="test/c.ml"),
    ]

    payload = _run(pipeline, diags, file_pattern="src/*.ml", max_diagnostics=1)

    assert payload["summary"]["total_diagnostics"] == 2
    assert payload["summary"]["returned_diagnostics"] == 1
    assert payload["summary"]["error_count"] == 1
    assert payload["summary"]["warning_count"] == 1


def test_severity_filter_applies_before_paging(pipeline: BuildStatusPipeline) -> None:
    payload = _run(pipeline, make_mixed_diagnostics(20), severity_filter="WARNING")
    assert payload["summary"]["total_diagnostics"] == 10
    assert payload["summary"]["error_count"] == 0
    assert {entry["severity"] for entry in payload["diagnostics"]} == {"warning"}


def test_status_and_build_summary_pass_through(pipeline: BuildStatusPipeline) -> None:
    snapshot = make_snapshot(
        [make_diagnostic()],
        status="building",
        build_summary=BuildSummary(completed=10, remaining=3, failed=1),
    )
    payload = pipeline.run(validate_build_status_request({}), snapshot).to_payload()
    assert payload["status"] == "building"
    assert payload["summary"]["build_summary"] == {"completed": 10, "remaining": 3, "failed": 1}


def test_empty_build_reports_zero_counts(pipeline: BuildStatusPipeline) -> None:
    payload = pipeline.run(validate_build_status_request({}), make_snapshot([], status="success")).to_payload()
    assert payload["diagnostics"] == []
    assert payload["truncated"] is False
    assert payload["summary"]["build_summary"] is None
    assert payload["token_count"] > 0


def test_token_count_matches_response_estimate(estimator: TokenEstimator) -> None:
    pipeline = BuildStatusPipeline(estimator)
    payload = _run(pipeline, make_mixed_diagnostics(40))
    assert payload["token_count"] >= estimator.estimate_response(payload)
    assert payload["token_count"] - estimator.estimate_response(payload) <= 1


@pytest.mark.parametrize(
    "message_factory",
    [
        lambda index: "Unbound value " + " ".join(f"name_{index}_{n}" for n in range(300)),
        lambda index: "é" * 5_000,
        lambda index: "/".join(["deeply", "nested", "dir"] * 300) + ".ml",
        lambda index: "x" * 50_000,
    ],
)
def test_token_ceiling_holds_for_adversarial_input(message_factory) -> None:
    estimator = TokenEstimator(TokenCache())
    pipeline = BuildStatusPipeline(estimator)
    diags = [
        make_diagnostic(
            severity="error" if index % 3 else "warning",
            file="/".join(["very"] * 40) + f"/file_{index}.ml",
            line=index + 1,
            column=index % 200,
            message=message_factory(index),
        )
        for index in range(300)
    ]

    payload = _run(pipeline, diags, max_diagnostics=1000)

    assert payload["token_count"] <= 25_000
    assert estimator.estimate_response(payload) <= 25_000
    assert payload["truncated"] is True


def test_budget_guard_trims_when_reserve_is_understated() -> None:
    estimator = TokenEstimator(TokenCache())
    # No reserve and no hedging: the page alone may fill the whole budget.
    pipeline = BuildStatusPipeline(
        estimator, BudgetSettings(metadata_reserve=0, safety_factor=1.0)
    )
    message = " ".join(f"symbol_{n}" for n in range(100))
    diags = [make_diagnostic(message=message, line=index + 1) for index in range(1_000)]

    payload = _run(pipeline, diags, max_diagnostics=1000)

    assert payload["token_count"] <= 25_000
    assert payload["truncated"] is True
    assert "token limit" in payload["truncation_reason"]


def test_payload_is_json_serialisable(pipeline: BuildStatusPipeline) -> None:
    payload = _run(pipeline, make_mixed_diagnostics(5))
    decoded = orjson.loads(orjson.dumps(payload))
    assert decoded == payload
    assert set(decoded) == {
        "status",
        "diagnostics",
        "truncated",
        "truncation_reason",
        "next_cursor",
        "token_count",
        "summary",
    }
