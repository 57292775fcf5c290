"""Token estimation for build status responses.

The estimator is calibrated for OCaml/dune diagnostic text: a vocabulary of
compiler and build jargon with measured costs, plus length heuristics for
everything else. It is an estimator, not a tokenizer; callers hedge with a
safety factor when enforcing budgets.
"""

from __future__ import annotations

import re
from threading import Lock
from typing import Callable, Dict, Literal, Mapping, Optional, Sequence, Tuple

from mcp.server.fastmcp.utilities.logging import get_logger

from ocaml_mcp_server.diagnostics import Diagnostic

logger = get_logger(__name__)


FieldKind = Literal["string", "number", "boolean", "array", "object"]

DEFAULT_CACHE_CAPACITY = 2048

# Costs measured against real tokenizers on dune/ocamlc output.
VOCABULARY: Dict[str, int] = {
    "Error": 1, "error": 1, "Warning": 1, "warning": 1,
    "Unbound": 2, "unbound": 2, "module": 1, "Module": 1,
    "expected": 1, "Expected": 1, "found": 1, "Found": 1,
    "type": 1, "Type": 1, "mismatch": 2, "Mismatch": 2,
    "syntax": 1, "Syntax": 1, "parse": 1, "Parse": 1,
    "compile": 1, "Compile": 1, "build": 1, "Build": 1,
    "interface": 2, "Interface": 2, "signature": 2, "Signature": 2,
    "undefined": 2, "Undefined": 2, "variable": 2, "Variable": 2,
    "function": 1, "Function": 1, "value": 1, "Value": 1,
    "constructor": 2, "Constructor": 2, "field": 1, "Field": 1,
    "record": 1, "Record": 1, "variant": 1, "Variant": 1,
    "match": 1, "Match": 1, "pattern": 1, "Pattern": 1,
    "exhaustive": 2, "Exhaustive": 2, "unused": 1, "Unused": 1,
    "deprecated": 2, "Deprecated": 2, "ocamlopt": 2, "ocamlc": 2,
    "dune": 1, "Dune": 1, "opam": 1, "Opam": 1,
    "at": 1, "line": 1, "column": 1, "character": 2, "characters": 2,
    "in": 1, "file": 1, "File": 1, "from": 1, "to": 1,
    # Path fragments
    "src/": 1, "lib/": 1, "bin/": 1, "test/": 1, "tests/": 1,
    ".ml": 1, ".mli": 1, ".mll": 1, ".mly": 1, ".cmi": 1, ".cmo": 1,
    "/": 1,
    # Phrases
    "This expression": 2, "this expression": 2, "The type": 2, "the type": 2,
    "is not": 2, "cannot be": 3, "should be": 2, "must be": 2,
}

_SEGMENT_SEPARATORS = re.compile(r"[./]")

# Marginal cost of characters past the 12th: (chars in tier, chars per token).
# The last tier is open-ended.
_LONG_WORD_TIERS: Tuple[Tuple[Optional[int], int], ...] = ((36, 8), (None, 10))

_FIELD_KIND_OVERHEAD: Dict[str, int] = {
    "string": 2,
    "number": 0,
    "boolean": 0,
    "array": 2,
    "object": 3,
}


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def length_tokens(length: int) -> int:
    """Cost of an unknown word of ``length`` characters.

    ``ceil(length / 6)`` up to 12 characters, then progressively cheaper per
    character so very long runs do not dominate the estimate.
    """

    if length <= 0:
        return 0
    if length <= 12:
        return _ceil_div(length, 6)

    tokens = 2
    remaining = length - 12
    for span, chars_per_token in _LONG_WORD_TIERS:
        taken = remaining if span is None else min(remaining, span)
        tokens += _ceil_div(taken, chars_per_token)
        remaining -= taken
        if remaining <= 0:
            break
    return tokens


def number_tokens(value: int) -> int:
    """Cost of a serialized integer, growing with its digit count."""

    digits = len(str(abs(int(value))))
    return max(1, (digits + 1) // 2)


def estimate_json_field_overhead(field_name: str, kind: FieldKind) -> int:
    """Cost of a JSON field's name, punctuation and value delimiters."""

    return _ceil_div(len(field_name), 4) + _FIELD_KIND_OVERHEAD[kind] + 1


DIAGNOSTIC_FIELDS: Sequence[Tuple[str, FieldKind]] = (
    ("severity", "string"),
    ("file", "string"),
    ("line", "number"),
    ("column", "number"),
    ("message", "string"),
)

# Braces and separators of one diagnostic object.
DIAGNOSTIC_OBJECT_OVERHEAD = 3

DIAGNOSTIC_STRUCTURAL_OVERHEAD = (
    sum(estimate_json_field_overhead(name, kind) for name, kind in DIAGNOSTIC_FIELDS)
    + DIAGNOSTIC_OBJECT_OVERHEAD
)

RESPONSE_OBJECT_OVERHEAD = 10


class TokenCache:
    """Bounded memo of text estimates shared by concurrent requests.

    When the cache is full the next insert clears it wholesale. Workloads are
    bursty within a build and rarely repeat across builds, so incremental
    eviction buys nothing.
    """

    def __init__(self, capacity: int = DEFAULT_CACHE_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.clears = 0
        self._entries: Dict[str, int] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get_or_compute(self, key: str, compute: Callable[[str], int]) -> int:
        # Plain dict reads are atomic; only mutation takes the lock.
        cached = self._entries.get(key)
        if cached is not None:
            return cached

        value = compute(key)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.capacity:
                self._entries.clear()
                self.clears += 1
                logger.debug("Token cache reached %d entries; cleared", self.capacity)
            self._entries[key] = value
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class TokenEstimator:
    """Deterministic text → token estimates backed by a :class:`TokenCache`."""

    def __init__(
        self,
        cache: TokenCache | None = None,
        vocabulary: Mapping[str, int] | None = None,
    ) -> None:
        self.cache = cache if cache is not None else TokenCache()
        self.vocabulary: Mapping[str, int] = dict(vocabulary) if vocabulary is not None else VOCABULARY

    def estimate(self, text: str) -> int:
        """Return the estimated token cost of ``text`` (never less than 1)."""

        if not text:
            return 1
        return self.cache.get_or_compute(text, self._estimate_uncached)

    def estimate_diagnostic(self, diagnostic: Diagnostic) -> int:
        return self.estimate_diagnostic_fields(
            severity=diagnostic.severity.value,
            file=diagnostic.file,
            line=diagnostic.line,
            column=diagnostic.column,
            message=diagnostic.message,
        )

    def estimate_diagnostic_fields(
        self,
        *,
        severity: str,
        file: str,
        line: int,
        column: int,
        message: str,
    ) -> int:
        return (
            self.estimate(severity)
            + self.estimate(file)
            + number_tokens(line)
            + number_tokens(column)
            + self.estimate(message)
            + DIAGNOSTIC_STRUCTURAL_OVERHEAD
        )

    def estimate_response_metadata(self, payload: Mapping) -> int:
        """Cost of everything in a response payload except the diagnostic entries."""

        def optional_text(value: Optional[str]) -> int:
            return 1 if value is None else self.estimate(value)

        tokens = self.estimate(payload["status"]) + estimate_json_field_overhead("status", "string")
        tokens += estimate_json_field_overhead("diagnostics", "array") + len(payload["diagnostics"])
        tokens += 1 + estimate_json_field_overhead("truncated", "boolean")
        tokens += optional_text(payload.get("truncation_reason")) + estimate_json_field_overhead(
            "truncation_reason", "string"
        )
        tokens += optional_text(payload.get("next_cursor")) + estimate_json_field_overhead(
            "next_cursor", "string"
        )
        tokens += number_tokens(payload.get("token_count", 0)) + estimate_json_field_overhead(
            "token_count", "number"
        )

        summary = payload["summary"]
        summary_tokens = 0
        for name in ("total_diagnostics", "returned_diagnostics", "error_count", "warning_count"):
            summary_tokens += number_tokens(summary[name]) + estimate_json_field_overhead(name, "number")

        build_summary = summary.get("build_summary")
        if build_summary is None:
            summary_tokens += 1 + estimate_json_field_overhead("build_summary", "object")
        else:
            for name in ("completed", "remaining", "failed"):
                summary_tokens += number_tokens(build_summary[name]) + estimate_json_field_overhead(
                    name, "number"
                )
            summary_tokens += estimate_json_field_overhead("build_summary", "object") + 3

        tokens += summary_tokens + estimate_json_field_overhead("summary", "object") + 3
        return tokens + RESPONSE_OBJECT_OVERHEAD

    def estimate_response(self, payload: Mapping) -> int:
        """Estimated cost of a full build status payload."""

        diagnostics_tokens = sum(
            self.estimate_diagnostic_fields(
                severity=entry["severity"],
                file=entry["file"],
                line=entry["line"],
                column=entry["column"],
                message=entry["message"],
            )
            for entry in payload["diagnostics"]
        )
        return diagnostics_tokens + self.estimate_response_metadata(payload)

    # ----- internals -----------------------------------------------------
    def _estimate_uncached(self, text: str) -> int:
        exact = self.vocabulary.get(text)
        if exact is not None:
            return exact

        word_tokens = sum(self._word_tokens(word) for word in text.split())
        non_ascii = sum(1 for byte in text.encode("utf-8", "surrogatepass") if byte > 127)
        return max(1, word_tokens + non_ascii // 4)

    def _word_tokens(self, word: str) -> int:
        known = self.vocabulary.get(word)
        if known is not None:
            return known
        if len(word) <= 2:
            return 1
        if "." in word or "/" in word:
            segments = [segment for segment in _SEGMENT_SEPARATORS.split(word) if segment]
            return max(1, sum(self._segment_tokens(segment) for segment in segments))
        return length_tokens(len(word))

    def _segment_tokens(self, segment: str) -> int:
        known = self.vocabulary.get(segment)
        if known is not None:
            return known
        if len(segment) <= 2:
            return 1
        return length_tokens(len(segment))


__all__ = [
    "DEFAULT_CACHE_CAPACITY",
    "DIAGNOSTIC_STRUCTURAL_OVERHEAD",
    "RESPONSE_OBJECT_OVERHEAD",
    "TokenCache",
    "TokenEstimator",
    "VOCABULARY",
    "estimate_json_field_overhead",
    "length_tokens",
    "number_tokens",
]
