from __future__ import annotations

import pytest
from pydantic import ValidationError

from ocaml_mcp_server.diagnostics import SeverityFilter
from ocaml_mcp_server.tool_inputs import (
    BuildStatusInput,
    BuildTargetInput,
    RequestValidationError,
    inline_json_schema,
    validate_build_status_request,
    validate_build_target_request,
)


def test_empty_request_uses_defaults() -> None:
    request = validate_build_status_request({})
    assert request.targets is None
    assert request.max_diagnostics == 50
    assert request.page == 0
    assert request.severity_filter is SeverityFilter.ALL
    assert request.file_pattern is None


def test_none_is_an_empty_request() -> None:
    assert validate_build_status_request(None) == validate_build_status_request({})


def test_json_text_is_decoded() -> None:
    request = validate_build_status_request(
        '{"targets": ["@check"], "max_diagnostics": 10, "page": 2, "severity_filter": "Warning"}'
    )
    assert request.targets == ["@check"]
    assert request.max_diagnostics == 10
    assert request.page == 2
    assert request.severity_filter is SeverityFilter.WARNING


def test_json_bytes_are_decoded() -> None:
    assert validate_build_status_request(b'{"page": 1}').page == 1


@pytest.mark.parametrize("raw", ["[]", "42", '"text"', "null", [], 3])
def test_non_object_requests_are_rejected(raw) -> None:
    if raw == "null":
        # JSON null decodes to None, which is treated as an empty request.
        assert validate_build_status_request(raw).page == 0
        return
    with pytest.raises(RequestValidationError) as excinfo:
        validate_build_status_request(raw)
    assert excinfo.value.field is None
    assert "expected a JSON object" in excinfo.value.constraint


def test_malformed_json_is_rejected() -> None:
    with pytest.raises(RequestValidationError) as excinfo:
        validate_build_status_request("{not json")
    assert "malformed JSON" in str(excinfo.value)


def test_unknown_fields_are_ignored() -> None:
    request = validate_build_status_request({"page": 1, "future_option": True})
    assert request.page == 1
    assert not hasattr(request, "future_option")


@pytest.mark.parametrize(
    "value,accepted",
    [(0, False), (1, True), (1000, True), (1001, False)],
)
def test_max_diagnostics_boundaries(value: int, accepted: bool) -> None:
    if accepted:
        assert validate_build_status_request({"max_diagnostics": value}).max_diagnostics == value
        return
    with pytest.raises(RequestValidationError) as excinfo:
        validate_build_status_request({"max_diagnostics": value})
    error = excinfo.value
    assert error.field == "max_diagnostics"
    assert error.value == value
    bound = ">= 1" if value < 1 else "<= 1000"
    assert str(error) == f"Invalid max_diagnostics value {value}: must be {bound}"


@pytest.mark.parametrize("value,accepted", [(-1, False), (0, True), (10_000, True)])
def test_page_boundaries(value: int, accepted: bool) -> None:
    if accepted:
        assert validate_build_status_request({"page": value}).page == value
        return
    with pytest.raises(RequestValidationError) as excinfo:
        validate_build_status_request({"page": value})
    assert excinfo.value.field == "page"
    assert excinfo.value.value == -1
    assert "must be >= 0" in str(excinfo.value)


@pytest.mark.parametrize("value", ["10", 2.5, True, None])
def test_integer_fields_are_strict(value) -> None:
    with pytest.raises(RequestValidationError) as excinfo:
        validate_build_status_request({"max_diagnostics": value})
    assert excinfo.value.field == "max_diagnostics"


@pytest.mark.parametrize(
    "pattern,accepted",
    [
        ("", False),
        ("a" * 200, True),
        ("a" * 201, False),
        ("*" * 10, True),
        ("*" * 11, False),
        ("src/**/*.ml", True),
    ],
)
def test_file_pattern_boundaries(pattern: str, accepted: bool) -> None:
    if accepted:
        assert validate_build_status_request({"file_pattern": pattern}).file_pattern == pattern
        return
    with pytest.raises(RequestValidationError) as excinfo:
        validate_build_status_request({"file_pattern": pattern})
    assert excinfo.value.field == "file_pattern"


def test_file_pattern_messages_name_the_bound() -> None:
    with pytest.raises(RequestValidationError, match="too many wildcards \\(max 10\\)"):
        validate_build_status_request({"file_pattern": "*" * 11})
    with pytest.raises(RequestValidationError, match="too long \\(max 200 chars\\)"):
        validate_build_status_request({"file_pattern": "a" * 201})
    with pytest.raises(RequestValidationError, match="cannot be empty"):
        validate_build_status_request({"file_pattern": ""})


@pytest.mark.parametrize("label", ["error", "Error", "ERROR"])
def test_severity_filter_case_insensitive(label: str) -> None:
    assert validate_build_status_request({"severity_filter": label}).severity_filter is SeverityFilter.ERROR


@pytest.mark.parametrize("label", ["err", "errors", "fatal", "", 3])
def test_severity_filter_rejects_unknown_values(label) -> None:
    with pytest.raises(RequestValidationError) as excinfo:
        validate_build_status_request({"severity_filter": label})
    assert excinfo.value.field == "severity_filter"
    assert "'error', 'warning', or 'all'" in excinfo.value.constraint


def test_targets_must_be_strings() -> None:
    with pytest.raises(RequestValidationError) as excinfo:
        validate_build_status_request({"targets": ["@check", 3]})
    assert excinfo.value.field == "targets"


def test_validated_request_is_immutable() -> None:
    request = validate_build_status_request({})
    with pytest.raises(ValidationError):
        request.page = 3


def test_error_details_are_json_friendly() -> None:
    with pytest.raises(RequestValidationError) as excinfo:
        validate_build_status_request({"targets": {"a": 1}})
    details = excinfo.value.to_details()
    assert details["field"] == "targets"
    assert isinstance(details["value"], str)


def test_format_alias_is_accepted() -> None:
    request = validate_build_status_request({"_format": "json"})
    assert request.response_format == "json"


def test_build_target_input_requires_targets() -> None:
    with pytest.raises(RequestValidationError) as excinfo:
        validate_build_target_request({"targets": []})
    assert excinfo.value.field == "targets"


def test_build_target_input_rejects_blank_and_flag_targets() -> None:
    with pytest.raises(ValidationError):
        BuildTargetInput(targets=["  "])
    with pytest.raises(ValidationError):
        BuildTargetInput(targets=["-p"])
    assert BuildTargetInput(targets=[" @runtest "]).targets == ["@runtest"]


def test_build_status_model_can_be_constructed_directly() -> None:
    request = BuildStatusInput(severity_filter="WARNING", page=1)
    assert request.severity_filter is SeverityFilter.WARNING


def test_inline_json_schema_expands_enum_references() -> None:
    schema = inline_json_schema(BuildStatusInput)

    assert "$defs" not in schema
    severity = schema["properties"]["severity_filter"]
    assert "$ref" not in severity
    assert severity["enum"] == ["error", "warning", "all"]
    assert severity["default"] == "all"
    assert schema["properties"]["file_pattern"]["anyOf"][0]["maxLength"] == 200
