"""Markdown renderings of build status and build target results."""

from __future__ import annotations

from typing import List, Mapping, Optional, Sequence

from ocaml_mcp_server.schema_types import (
    BuildStatusPayload,
    BuildTargetPayload,
    DiagnosticPayload,
    ProjectStructurePayload,
)

DEFAULT_RESPONSE_FORMAT = "markdown"
JSON_RESPONSE_FORMAT = "json"
_VALID_RESPONSE_FORMATS = {DEFAULT_RESPONSE_FORMAT, JSON_RESPONSE_FORMAT}

# Markdown is a convenience view; the structured payload is authoritative.
MAX_MARKDOWN_DIAGNOSTICS = 20
MAX_MARKDOWN_OUTPUT_LINES = 40
MAX_MARKDOWN_COMPONENTS = 30


def normalize_response_format(value: Optional[str]) -> str:
    """Return a normalised response format string with a Markdown default."""

    if value is None:
        return DEFAULT_RESPONSE_FORMAT

    normalized = value.strip().lower()
    if normalized in _VALID_RESPONSE_FORMATS:
        return normalized

    return DEFAULT_RESPONSE_FORMAT


def build_markdown_summary(summary: str, details: Sequence[str] | None = None) -> str:
    """Return a Markdown summary block."""

    headline = summary.strip() or "(no summary provided)"
    lines = [f"**Summary:** {headline}"]

    if details:
        for detail in details:
            detail_text = (detail or "").strip()
            if detail_text:
                lines.append(f"- {detail_text}")

    return "\n".join(lines)


def format_diagnostic_line(diagnostic: Mapping[str, object] | DiagnosticPayload) -> str:
    """``file:line:column: severity: first message line``."""

    message = str(diagnostic["message"]).strip().splitlines()
    first_line = message[0] if message else ""
    location = f"{diagnostic['file']}:{diagnostic['line']}"
    if diagnostic["column"]:
        location += f":{diagnostic['column']}"
    return f"`{location}` {diagnostic['severity']}: {first_line}"


def render_build_status(payload: BuildStatusPayload) -> str:
    summary = payload["summary"]
    headline = (
        f"Build {payload['status']}: {summary['error_count']} error(s), "
        f"{summary['warning_count']} warning(s); showing "
        f"{summary['returned_diagnostics']} of {summary['total_diagnostics']}."
    )

    details: List[str] = []
    diagnostics = payload["diagnostics"]
    for entry in diagnostics[:MAX_MARKDOWN_DIAGNOSTICS]:
        details.append(format_diagnostic_line(entry))
    hidden = len(diagnostics) - MAX_MARKDOWN_DIAGNOSTICS
    if hidden > 0:
        details.append(f"... {hidden} more in structured content")

    if payload["truncation_reason"]:
        details.append(payload["truncation_reason"])
    if payload["next_cursor"] is not None:
        details.append(f"next_cursor: `{payload['next_cursor']}`")

    build_summary = summary.get("build_summary")
    if build_summary is not None:
        details.append(
            "Build progress: {completed} completed, {remaining} remaining, {failed} failed".format(
                **build_summary
            )
        )
    details.append(f"Estimated tokens: {payload['token_count']}")
    return build_markdown_summary(headline, details)


def render_build_target(payload: BuildTargetPayload) -> str:
    targets = " ".join(payload["targets"])
    outcome = "succeeded" if payload["success"] else "failed"
    headline = f"`dune build {targets}` {outcome}."

    output_lines = payload["output"].splitlines()
    shown = output_lines[-MAX_MARKDOWN_OUTPUT_LINES:]
    details: List[str] = []
    if len(output_lines) > len(shown):
        details.append(f"(last {len(shown)} of {len(output_lines)} output lines)")
    summary = build_markdown_summary(headline, details)
    if not shown:
        return summary
    return summary + "\n\n```\n" + "\n".join(shown) + "\n```"


def render_project_structure(payload: ProjectStructurePayload) -> str:
    headline = (
        f"{payload['library_count']} library(s) and {payload['executable_count']} "
        f"executable(s) in `{payload['project_root']}` (context `{payload['build_context']}`)."
    )

    details: List[str] = []
    components = payload["components"]
    for component in components[:MAX_MARKDOWN_COMPONENTS]:
        line = f"{component['kind']} `{component['name']}` in `{component['directory']}`"
        if component["modules"]:
            line += f"; modules: {', '.join(component['modules'])}"
        if component["dependencies"]:
            line += f"; requires: {', '.join(component['dependencies'])}"
        details.append(line)
    hidden = len(components) - MAX_MARKDOWN_COMPONENTS
    if hidden > 0:
        details.append(f"... {hidden} more in structured content")
    return build_markdown_summary(headline, details)


__all__ = [
    "DEFAULT_RESPONSE_FORMAT",
    "JSON_RESPONSE_FORMAT",
    "build_markdown_summary",
    "format_diagnostic_line",
    "normalize_response_format",
    "render_build_status",
    "render_build_target",
    "render_project_structure",
]
