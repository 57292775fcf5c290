from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Type

import orjson
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from ocaml_mcp_server.diagnostics import SeverityFilter
from ocaml_mcp_server.glob_matcher import MAX_PATTERN_LENGTH, MAX_WILDCARDS, count_wildcards

DEFAULT_MAX_DIAGNOSTICS = 50
MAX_DIAGNOSTICS_LIMIT = 1000
MAX_BUILD_TARGETS = 64

_SEVERITY_KEYWORDS = tuple(member.value for member in SeverityFilter)


class RequestValidationError(ValueError):
    """A request field failed validation; nothing downstream has run yet."""

    def __init__(self, field: str | None, value: Any, constraint: str) -> None:
        self.field = field
        self.value = value
        self.constraint = constraint
        if field is None:
            message = f"Invalid request: {constraint}"
        else:
            message = f"Invalid {field} value {value!r}: {constraint}"
        super().__init__(message)

    def to_details(self) -> Dict[str, Any]:
        details: Dict[str, Any] = {"constraint": self.constraint}
        if self.field is not None:
            details["field"] = self.field
        if _is_json_scalar(self.value):
            details["value"] = self.value
        else:
            details["value"] = repr(self.value)
        return details


def _is_json_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def parse_severity_filter(value: Any) -> SeverityFilter:
    """Map ``error``/``warning``/``all`` in any letter case onto the enum.

    Only strings with the length of one of the three keywords are ever
    lower-cased.
    """

    if isinstance(value, SeverityFilter):
        return value
    if isinstance(value, str):
        for keyword in _SEVERITY_KEYWORDS:
            if len(value) == len(keyword) and value.lower() == keyword:
                return SeverityFilter(keyword)
    raise ValueError("expected one of 'error', 'warning', or 'all' (case-insensitive)")


class ToolInputBase(BaseModel):
    """Shared configuration for structured tool inputs."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
    )

    response_format: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("_format", "response_format"),
        serialization_alias="_format",
        description="Optional response rendering hint: `markdown` (default) or `json`.",
    )


class BuildStatusInput(ToolInputBase):
    targets: Optional[List[str]] = Field(
        default=None,
        description="Build targets to report on; passed through to dune.",
    )
    max_diagnostics: int = Field(
        default=DEFAULT_MAX_DIAGNOSTICS,
        ge=1,
        le=MAX_DIAGNOSTICS_LIMIT,
        strict=True,
        description="Page size: maximum number of diagnostics to return (1-1000).",
    )
    page: int = Field(
        default=0,
        ge=0,
        strict=True,
        description="Zero-based page index; pass back `next_cursor` to continue.",
    )
    severity_filter: SeverityFilter = Field(
        default=SeverityFilter.ALL,
        description="Filter by severity: `error`, `warning` or `all` (case-insensitive).",
    )
    file_pattern: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=MAX_PATTERN_LENGTH,
        description=(
            "Glob over project-relative paths, e.g. `src/**/*.ml`. A pattern without `/` "
            "matches the file name only (`main.ml` selects `src/main.ml`); one with `/` "
            "must match the whole path."
        ),
    )

    @field_validator("targets", mode="before")
    @classmethod
    def _validate_targets(cls, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ValueError("expected a list of strings")
        return value

    @field_validator("severity_filter", mode="before")
    @classmethod
    def _validate_severity(cls, value: Any) -> SeverityFilter:
        return parse_severity_filter(value)

    @field_validator("file_pattern", mode="before")
    @classmethod
    def _validate_file_pattern_type(cls, value: Any) -> Any:
        if value is not None and not isinstance(value, str):
            raise ValueError("expected a string")
        return value

    @field_validator("file_pattern")
    @classmethod
    def _validate_wildcards(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and count_wildcards(value) > MAX_WILDCARDS:
            raise ValueError(f"too many wildcards (max {MAX_WILDCARDS})")
        return value


class BuildTargetInput(ToolInputBase):
    targets: List[str] = Field(
        ...,
        min_length=1,
        max_length=MAX_BUILD_TARGETS,
        description="Dune targets to build, e.g. `@check`, `bin/main.exe`, `@runtest`.",
    )

    @field_validator("targets")
    @classmethod
    def _validate_target_names(cls, value: List[str]) -> List[str]:
        cleaned = [item.strip() for item in value]
        if any(not item for item in cleaned):
            raise ValueError("targets cannot contain empty strings")
        if any(item.startswith("-") and not item.startswith("--") for item in cleaned):
            raise ValueError("targets cannot be command-line flags")
        return cleaned


class ProjectStructureInput(ToolInputBase):
    """Input for `dune_project_structure`; accepts optional formatting hints only."""

    pass


class OcamlToolSpecInput(ToolInputBase):
    """Input for `ocaml_tool_spec`; accepts optional formatting hints only."""

    pass


def inline_json_schema(model: Type[BaseModel]) -> Dict[str, Any]:
    """Return ``model``'s JSON schema with local ``$ref`` pointers expanded.

    Tools that take a raw object still advertise the model's shape; the schema
    is embedded under a property there, where root-relative references would
    not resolve.
    """

    schema = model.model_json_schema()
    definitions = schema.pop("$defs", {})

    def expand(node: Any) -> Any:
        if isinstance(node, list):
            return [expand(item) for item in node]
        if not isinstance(node, dict):
            return node
        ref = node.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/$defs/"):
            target = expand(definitions[ref[len("#/$defs/"):]])
            siblings = {key: expand(value) for key, value in node.items() if key != "$ref"}
            return {**target, **siblings}
        return {key: expand(value) for key, value in node.items()}

    return expand(schema)


_CONSTRAINT_TEMPLATES = {
    "greater_than_equal": "must be >= {ge}",
    "less_than_equal": "must be <= {le}",
    "string_too_short": "cannot be empty",
    "string_too_long": "too long (max {max_length} chars)",
    "too_short": "must contain at least {min_length} item(s)",
    "too_long": "must contain at most {max_length} item(s)",
    "int_type": "expected an integer",
    "string_type": "expected a string",
    "list_type": "expected a list",
}


def _translate_validation_error(exc: ValidationError) -> RequestValidationError:
    first = exc.errors(include_url=False)[0]
    loc = first.get("loc") or ()
    field_name = str(loc[0]) if loc else None
    error_type = first.get("type", "")
    ctx = first.get("ctx") or {}

    if error_type == "value_error" and "error" in ctx:
        constraint = str(ctx["error"])
    elif error_type in _CONSTRAINT_TEMPLATES:
        constraint = _CONSTRAINT_TEMPLATES[error_type].format(**ctx)
    else:
        constraint = first.get("msg", "invalid value")
    return RequestValidationError(field_name, first.get("input"), constraint)


def decode_request(raw: Any) -> Any:
    """Decode a raw JSON document; mappings and other values pass through."""

    if isinstance(raw, (bytes, bytearray, memoryview, str)):
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise RequestValidationError(None, None, f"malformed JSON ({exc})") from exc
    return raw


def validate_build_status_request(raw: Any) -> BuildStatusInput:
    """Validate a `dune_build_status` request into a canonical, immutable model.

    ``raw`` may be a JSON document (``str``/``bytes``) or an already-decoded
    mapping; ``None`` is treated as an empty request. Unrecognised fields are
    ignored. Any failure raises :class:`RequestValidationError` naming the
    field, the offending value and the violated bound.
    """

    data = decode_request(raw)
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise RequestValidationError(
            None, data, f"expected a JSON object, got {type(data).__name__}"
        )
    try:
        return BuildStatusInput.model_validate(dict(data))
    except ValidationError as exc:
        raise _translate_validation_error(exc) from exc


def validate_build_target_request(raw: Any) -> BuildTargetInput:
    data = decode_request(raw)
    if not isinstance(data, Mapping):
        raise RequestValidationError(
            None, data, f"expected a JSON object, got {type(data).__name__}"
        )
    try:
        return BuildTargetInput.model_validate(dict(data))
    except ValidationError as exc:
        raise _translate_validation_error(exc) from exc


__all__ = [
    "BuildStatusInput",
    "BuildTargetInput",
    "DEFAULT_MAX_DIAGNOSTICS",
    "MAX_DIAGNOSTICS_LIMIT",
    "OcamlToolSpecInput",
    "ProjectStructureInput",
    "RequestValidationError",
    "ToolInputBase",
    "decode_request",
    "inline_json_schema",
    "parse_severity_filter",
    "validate_build_status_request",
    "validate_build_target_request",
]
