from __future__ import annotations

import os
import subprocess
from collections.abc import AsyncIterator, Iterator, Mapping
from contextlib import asynccontextmanager, contextmanager
from importlib.metadata import PackageNotFoundError, version
from threading import Lock
from typing import Annotated, Any, Dict, List, Optional

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.utilities.logging import get_logger
from pydantic import WithJsonSchema

from ocaml_mcp_server.dune_provider import (
    BuildStatusProvider,
    DuneBuildProvider,
    DuneUnavailableError,
    check_dune_status,
    format_build_output,
)
from ocaml_mcp_server.file_utils import find_project_root, valid_dune_project_path
from ocaml_mcp_server.instructions import INSTRUCTIONS
from ocaml_mcp_server.pagination import BudgetSettings
from ocaml_mcp_server.pipeline import BuildStatusPipeline
from ocaml_mcp_server.project_structure import DescribeError
from ocaml_mcp_server.response_formatter import (
    JSON_RESPONSE_FORMAT,
    build_markdown_summary,
    normalize_response_format,
    render_build_status,
    render_build_target,
    render_project_structure,
)
from ocaml_mcp_server.schema import json_item, mcp_result, resource_item, text_item
from ocaml_mcp_server.schema_types import (
    ERROR_BAD_REQUEST,
    ERROR_CLIENT_NOT_READY,
    ERROR_IO_FAILURE,
    ERROR_UNKNOWN,
    BuildTargetPayload,
)
from ocaml_mcp_server.token_estimator import TokenEstimator
from ocaml_mcp_server.tool_inputs import (
    BuildStatusInput,
    BuildTargetInput,
    OcamlToolSpecInput,
    ProjectStructureInput,
    RequestValidationError,
    inline_json_schema,
    validate_build_status_request,
)
from ocaml_mcp_server.tool_spec import (
    TOOL_ANNOTATIONS,
    TOOL_DEFINITIONS,
    TOOL_SPEC_VERSION,
    build_tool_spec,
    render_tool_spec_json,
)

try:  # pragma: no cover - metadata lookup may fail in tests
    SERVER_VERSION = version("ocaml-mcp-server")
except PackageNotFoundError:  # pragma: no cover - local dev fallback
    SERVER_VERSION = None


logger = get_logger(__name__)

PROJECT_ROOT_ENV = "OCAML_MCP_PROJECT_ROOT"
NO_DUNE_ENV = "OCAML_MCP_NO_DUNE"

TOOL_SPEC_RESOURCE_URI = f"tool-spec://ocaml_mcp_server/{TOOL_SPEC_VERSION}.json"

_TOOL_DESCRIPTIONS = {name: meta["description"] for name, meta in TOOL_DEFINITIONS}

# Validated by hand for field-level errors, advertised with the model's schema.
BuildStatusParams = Annotated[
    Optional[Dict[str, Any]],
    WithJsonSchema(inline_json_schema(BuildStatusInput)),
]


# Server and context
class AppContext:
    project_root: str | None
    provider: BuildStatusProvider | None
    builder: DuneBuildProvider | None
    estimator: TokenEstimator
    pipeline: BuildStatusPipeline
    provider_lock: Lock

    def __init__(
        self,
        *,
        project_root: str | None,
        provider: BuildStatusProvider | None,
        builder: DuneBuildProvider | None,
        estimator: TokenEstimator,
        pipeline: BuildStatusPipeline,
        provider_lock: Lock,
    ) -> None:
        self.project_root = project_root
        self.provider = provider
        self.builder = builder
        self.estimator = estimator
        self.pipeline = pipeline
        self.provider_lock = provider_lock


def resolve_project_root(environ: Mapping[str, str] | None = None) -> str | None:
    env = os.environ if environ is None else environ
    configured = env.get(PROJECT_ROOT_ENV, "").strip()
    if configured:
        root = os.path.abspath(configured)
        if not valid_dune_project_path(root):
            logger.warning("%s=%s has no dune-project file", PROJECT_ROOT_ENV, root)
        return root
    return find_project_root()


def build_app_context(environ: Mapping[str, str] | None = None) -> AppContext:
    """Assemble the per-server state from the environment."""

    env = os.environ if environ is None else environ
    project_root = resolve_project_root(env)
    if project_root:
        logger.info("Using OCaml project root %s", project_root)
    else:
        logger.warning(
            "No dune-project found; set %s to point the server at your project", PROJECT_ROOT_ENV
        )

    builder: DuneBuildProvider | None = None
    if env.get(NO_DUNE_ENV, "").strip():
        logger.info("%s is set; dune integration disabled", NO_DUNE_ENV)
    elif project_root:
        available, message = check_dune_status()
        if available:
            builder = DuneBuildProvider(project_root)
        else:
            logger.warning(message)

    estimator = TokenEstimator()
    return AppContext(
        project_root=project_root,
        provider=builder,
        builder=builder,
        estimator=estimator,
        pipeline=BuildStatusPipeline(estimator, BudgetSettings.from_env(env)),
        provider_lock=Lock(),
    )


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    context = build_app_context()
    try:
        yield context
    finally:
        logger.info("Shutting down ocaml_mcp_server")


mcp = FastMCP(
    name="ocaml_mcp_server",
    instructions=INSTRUCTIONS,
    lifespan=app_lifespan,
)


def _set_response_format_hint(ctx: Context | None, response_format: Optional[str]) -> None:
    """Stash the caller's preferred response format on the request context."""

    if ctx is None:
        return

    request_context = getattr(ctx, "request_context", None)
    if request_context is not None:
        setattr(request_context, "_response_format_hint", response_format)


def _lifespan(ctx: Context) -> AppContext:
    return ctx.request_context.lifespan_context


@contextmanager
def provider_session(ctx: Context, attribute: str = "provider") -> Iterator[Any]:
    """Yield the configured provider while holding the dune lock.

    Dune serialises builds in one workspace anyway; taking the lock here keeps
    concurrent tool calls from queueing inside dune with a timeout ticking.
    """

    lifespan = _lifespan(ctx)
    lock = getattr(lifespan, "provider_lock", None)
    provider = getattr(lifespan, attribute, None)
    if lock is None:
        yield provider
        return
    with lock:
        yield provider


class ToolError(Exception):
    """Internal control-flow exception carrying a ready-to-send MCP response."""

    def __init__(self, payload: Dict[str, Any]):
        super().__init__(payload.get("structuredContent", {}).get("message", "Tool error"))
        self.payload = payload


def _requested_format(ctx: Context | None, response_format: str | None) -> str:
    if response_format is None and ctx is not None:
        request_context = getattr(ctx, "request_context", None)
        if request_context is not None:
            response_format = getattr(request_context, "_response_format_hint", None)
    return normalize_response_format(response_format)


def success_result(
    *,
    summary: str,
    structured: Dict[str, Any] | None,
    ctx: Context | None = None,
    markdown: str | None = None,
    content: List[Dict[str, Any]] | None = None,
    response_format: str | None = None,
) -> Dict[str, Any]:
    """Wrap a tool's structured payload with a human-readable summary.

    ``markdown`` replaces the default one-line summary block. In ``json`` mode
    the first content item is the structured payload as an ``application/json``
    resource so generic clients can read it without ``structuredContent``.
    """

    additional_items = list(content or [])
    selected_format = _requested_format(ctx, response_format)
    summary_markdown = markdown if markdown is not None else build_markdown_summary(summary)

    if selected_format == JSON_RESPONSE_FORMAT:
        structured_for_json = structured if structured is not None else {"summary": summary}
        return mcp_result(
            content=[json_item(structured_for_json), *additional_items],
            structured=structured_for_json,
        )

    return mcp_result(
        content=[text_item(summary_markdown), *additional_items],
        structured=structured,
    )


def _derive_error_hints(
    *,
    code: str | None,
    details: Dict[str, Any] | None,
    ctx: Context | None,
) -> List[str]:
    hints: List[str] = []

    def _append(text: str | None) -> None:
        candidate = (text or "").strip()
        if candidate and candidate not in hints:
            hints.append(candidate)

    lifespan = None
    if ctx is not None:
        lifespan = getattr(ctx.request_context, "lifespan_context", None)
    project_root = getattr(lifespan, "project_root", None) if lifespan else None

    if code == ERROR_CLIENT_NOT_READY:
        _append(
            "Install dune (`opam install dune`), make sure it is on PATH, and unset "
            f"`{NO_DUNE_ENV}` if it is set."
        )

    if code in {ERROR_CLIENT_NOT_READY, ERROR_BAD_REQUEST} and not project_root:
        _append(
            f"Set `{PROJECT_ROOT_ENV}` or start the server with `--project-root` so it knows your dune project."
        )

    if code == ERROR_BAD_REQUEST:
        field = details.get("field") if isinstance(details, dict) else None
        if field == "page":
            _append("Pages are zero-based; pass `next_cursor` from the previous response as `page`.")
        elif field == "file_pattern":
            _append("Use at most 200 characters and 10 `*` wildcards, e.g. `src/**/*.ml`.")
        _append("Call `ocaml_tool_spec` to review required parameters and defaults for this tool.")

    if code == ERROR_IO_FAILURE:
        detail_keys = details.keys() if isinstance(details, dict) else []
        if "output" in detail_keys or "error" in detail_keys:
            _append("Inspect the failure details (e.g. `output` or `error`) to fix the underlying dune command before retrying.")
        if "stderr" in detail_keys:
            _append("`dune describe` must load every dune file in the workspace; fix the errors in `stderr` first.")
        _append("Run `dune_build_status` after addressing the issue to see the remaining diagnostics.")

    if not hints:
        _append("If the problem persists, rerun `dune_build_status` and check the server log.")

    return hints


def error_result(
    *,
    message: str,
    ctx: Context | None = None,
    code: str | None = None,
    category: str | None = None,
    details: Dict[str, Any] | None = None,
    hints: List[str] | None = None,
    response_format: str | None = None,
) -> Dict[str, Any]:
    structured: Dict[str, Any] = {"message": message}
    if code:
        structured["code"] = code
    if category:
        structured["category"] = category
    if details:
        structured["details"] = details

    derived_hints = _derive_error_hints(code=code, details=details, ctx=ctx)
    combined_hints: List[str] = []
    for source in (hints or [], derived_hints):
        for hint in source:
            if hint not in combined_hints:
                combined_hints.append(hint)
    if combined_hints:
        structured["hints"] = combined_hints

    detail_bullets: List[str] = []
    if code:
        detail_bullets.append(f"Code: `{code}`")
    if category:
        detail_bullets.append(f"Category: {category}")
    detail_bullets.extend(f"Hint: {hint}" for hint in combined_hints)

    selected_format = _requested_format(ctx, response_format)
    if selected_format == JSON_RESPONSE_FORMAT:
        return mcp_result(
            content=[json_item(structured)],
            structured=structured,
            is_error=True,
        )

    summary_markdown = build_markdown_summary(f"Error: {message}", detail_bullets)
    return mcp_result(
        content=[text_item(summary_markdown)],
        structured=structured,
        is_error=True,
    )


def _raw_response_format(raw: Any) -> Optional[str]:
    if isinstance(raw, Mapping):
        value = raw.get("_format", raw.get("response_format"))
        if isinstance(value, str):
            return value
    return None


def _require_provider(ctx: Context, provider: Any, response_format: Optional[str]) -> Any:
    if provider is not None:
        return provider
    raise ToolError(
        error_result(
            message="dune is not available for this server.",
            code=ERROR_CLIENT_NOT_READY,
            ctx=ctx,
            response_format=response_format,
        )
    )


@mcp.tool(
    "dune_build_status",
    description=_TOOL_DESCRIPTIONS["dune_build_status"],
    annotations=TOOL_ANNOTATIONS["dune_build_status"],
)
def dune_build_status(ctx: Context, params: BuildStatusParams = None) -> Any:
    """Report build status and one token-bounded page of diagnostics.

    Parameters
    ----------
    params : dict, optional
        Raw request object; every field is optional.
        - ``targets`` (list[str]): dune targets, ``@check`` when omitted.
        - ``max_diagnostics`` (int, 1-1000, default 50): page size.
        - ``page`` (int, >= 0, default 0): zero-based page index.
        - ``severity_filter`` (``error``/``warning``/``all``, case-insensitive).
        - ``file_pattern`` (str): glob over project-relative paths.

    Returns
    -------
    BuildStatus
        ``structuredContent`` holds ``status``, ``diagnostics`` (errors before
        warnings), ``truncated``, ``truncation_reason``, ``next_cursor``,
        ``token_count`` and ``summary``. The estimated ``token_count`` never
        exceeds 25,000.

    Error handling
    --------------
    - Invalid fields return ``bad_request`` naming the field, value and bound.
    - A missing or disabled dune returns ``client_not_ready``.
    - Failure to launch dune returns ``io_failure``.
    """

    response_format = _raw_response_format(params)
    try:
        request = validate_build_status_request(params)
    except RequestValidationError as exc:
        return error_result(
            message=str(exc),
            code=ERROR_BAD_REQUEST,
            details=exc.to_details(),
            ctx=ctx,
            response_format=response_format,
        )

    _set_response_format_hint(ctx, request.response_format)
    lifespan = _lifespan(ctx)
    try:
        with provider_session(ctx) as provider:
            provider = _require_provider(ctx, provider, request.response_format)
            snapshot = provider.fetch(request.targets)
        response = lifespan.pipeline.run(request, snapshot)
    except ToolError as exc:
        return exc.payload
    except DuneUnavailableError as exc:
        return error_result(
            message=str(exc),
            code=ERROR_CLIENT_NOT_READY,
            ctx=ctx,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        return error_result(
            message=f"Failed to run dune: {exc}",
            code=ERROR_IO_FAILURE,
            details={"error": str(exc)},
            ctx=ctx,
        )
    except Exception as exc:
        logger.exception("dune_build_status failed")
        return error_result(
            message=f"Unexpected error: {exc}",
            code=ERROR_UNKNOWN,
            details={"error": str(exc)},
            ctx=ctx,
        )

    payload = response.to_payload()
    summary = (
        f"Build {payload['status']}: {response.returned_diagnostics} of "
        f"{response.total_diagnostics} diagnostics"
    )
    return success_result(
        summary=summary,
        structured=payload,
        markdown=render_build_status(payload),
        ctx=ctx,
    )


@mcp.tool(
    "dune_build_target",
    description=_TOOL_DESCRIPTIONS["dune_build_target"],
    annotations=TOOL_ANNOTATIONS["dune_build_target"],
)
def dune_build_target(ctx: Context, params: BuildTargetInput) -> Any:
    """Build specific dune targets and return the combined output.

    Parameters
    ----------
    params : BuildTargetInput
        - ``targets`` (list[str]): 1-64 targets such as ``@check`` or ``bin/main.exe``.

    Returns
    -------
    BuildTarget
        ``structuredContent`` includes ``targets``, ``success``, ``exit_code``
        and ``output``. A failed build is reported as ``io_failure`` with the
        same fields under ``details``.

    Avoid when
    ----------
    - You want a filtered, paginated list of diagnostics; use
      *dune_build_status* instead.
    """

    response_format = params.response_format
    _set_response_format_hint(ctx, response_format)
    try:
        with provider_session(ctx, "builder") as builder:
            builder = _require_provider(ctx, builder, response_format)
            run = builder.run_build(params.targets)
    except ToolError as exc:
        return exc.payload
    except DuneUnavailableError as exc:
        return error_result(message=str(exc), code=ERROR_CLIENT_NOT_READY, ctx=ctx)
    except (OSError, subprocess.SubprocessError) as exc:
        return error_result(
            message=f"Failed to run dune: {exc}",
            code=ERROR_IO_FAILURE,
            details={"error": str(exc)},
            ctx=ctx,
        )
    except Exception as exc:
        logger.exception("dune_build_target failed")
        return error_result(
            message=f"Unexpected error: {exc}",
            code=ERROR_UNKNOWN,
            details={"error": str(exc)},
            ctx=ctx,
        )

    payload: BuildTargetPayload = {
        "targets": list(run.targets),
        "success": run.success,
        "exit_code": run.exit_code,
        "output": format_build_output(run),
    }
    if not run.success:
        return error_result(
            message=f"`dune build {' '.join(run.targets)}` failed",
            code=ERROR_IO_FAILURE,
            details=dict(payload),
            ctx=ctx,
        )

    logger.info("Built %s", " ".join(run.targets))
    return success_result(
        summary=f"Built {' '.join(run.targets)}",
        structured=dict(payload),
        markdown=render_build_target(payload),
        ctx=ctx,
    )


@mcp.tool(
    "dune_project_structure",
    description=_TOOL_DESCRIPTIONS["dune_project_structure"],
    annotations=TOOL_ANNOTATIONS["dune_project_structure"],
)
def dune_project_structure(ctx: Context, params: ProjectStructureInput) -> Any:
    """List the local libraries and executables of the dune workspace.

    Returns
    -------
    ProjectStructure
        ``structuredContent`` includes ``project_root``, ``build_context``,
        ``library_count``, ``executable_count`` and ``components``; each
        component has ``kind``, ``name``, ``directory``, ``modules`` and
        ``dependencies``.

    Error handling
    --------------
    - A failing or unreadable ``dune describe`` returns ``io_failure`` with
      ``exit_code`` and ``stderr`` under ``details``.
    """

    response_format = params.response_format
    _set_response_format_hint(ctx, response_format)
    try:
        with provider_session(ctx, "builder") as builder:
            builder = _require_provider(ctx, builder, response_format)
            structure = builder.describe()
    except ToolError as exc:
        return exc.payload
    except DuneUnavailableError as exc:
        return error_result(message=str(exc), code=ERROR_CLIENT_NOT_READY, ctx=ctx)
    except DescribeError as exc:
        return error_result(
            message=str(exc),
            code=ERROR_IO_FAILURE,
            details=exc.to_details(),
            ctx=ctx,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        return error_result(
            message=f"Failed to run dune: {exc}",
            code=ERROR_IO_FAILURE,
            details={"error": str(exc)},
            ctx=ctx,
        )
    except Exception as exc:
        logger.exception("dune_project_structure failed")
        return error_result(
            message=f"Unexpected error: {exc}",
            code=ERROR_UNKNOWN,
            details={"error": str(exc)},
            ctx=ctx,
        )

    payload = structure.to_payload()
    return success_result(
        summary=(
            f"{payload['library_count']} libraries, {payload['executable_count']} executables"
        ),
        structured=dict(payload),
        markdown=render_project_structure(payload),
        ctx=ctx,
    )


@mcp.tool(
    "ocaml_tool_spec",
    description=_TOOL_DESCRIPTIONS["ocaml_tool_spec"],
    annotations=TOOL_ANNOTATIONS["ocaml_tool_spec"],
)
def ocaml_tool_spec(ctx: Context, params: OcamlToolSpecInput) -> Any:
    """Return the published OCaml MCP tool specification.

    ``structuredContent`` is the result of
    ``ocaml_mcp_server.tool_spec.build_tool_spec``; the JSON is also attached
    as a resource whose URI encodes the spec version for caching.
    """

    _set_response_format_hint(ctx, params.response_format)
    spec = build_tool_spec()
    return success_result(
        summary="OCaml MCP tool specification ready.",
        structured=spec,
        content=[
            resource_item(TOOL_SPEC_RESOURCE_URI, render_tool_spec_json(), mime_type="application/json")
        ],
        ctx=ctx,
    )


@mcp.resource(
    TOOL_SPEC_RESOURCE_URI,
    name="ocaml_tool_spec",
    description="Structured metadata for all OCaml MCP tools, including schemas and annotations.",
    mime_type="application/json",
)
def tool_spec_resource() -> str:
    """Return the tool specification JSON payload."""

    return render_tool_spec_json()
