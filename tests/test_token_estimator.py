from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import make_diagnostic
from ocaml_mcp_server import token_estimator
from ocaml_mcp_server.token_estimator import TokenCache, TokenEstimator


def test_empty_text_costs_one(estimator: TokenEstimator) -> None:
    assert estimator.estimate("") == 1


def test_vocabulary_terms_use_calibrated_costs(estimator: TokenEstimator) -> None:
    assert estimator.estimate("Error") == 1
    assert estimator.estimate("Unbound") == 2
    assert estimator.estimate("cannot be") == 3
    assert estimator.estimate(".mli") == 1


def test_words_are_summed(estimator: TokenEstimator) -> None:
    # "Unbound" 2 + "module" 1 + "Foo" ceil(3/6)=1
    assert estimator.estimate("Unbound module Foo") == 4


def test_short_words_cost_one(estimator: TokenEstimator) -> None:
    assert estimator.estimate("a b cd") == 3


def test_paths_are_split_on_separators(estimator: TokenEstimator) -> None:
    # "src" 1 (ceil(3/6)), "main" 1, "ml" 1
    assert estimator.estimate("src/main.ml") == 3


@pytest.mark.parametrize(
    "length,expected",
    [(0, 0), (1, 1), (6, 1), (7, 2), (12, 2), (13, 3), (48, 2 + 5), (49, 2 + 5 + 1), (100, 2 + 5 + 6)],
)
def test_length_tokens_grow_sub_linearly(length: int, expected: int) -> None:
    assert token_estimator.length_tokens(length) == expected


def test_long_words_are_cheaper_per_character(estimator: TokenEstimator) -> None:
    long_word = "x" * 600
    assert estimator.estimate(long_word) < 600 / 6


def test_non_ascii_adds_overhead(estimator: TokenEstimator) -> None:
    ascii_cost = estimator.estimate("value")
    # Each "é" is two UTF-8 bytes; eight of them add 16 // 4 = 4.
    accented = estimator.estimate("valu" + "é" * 8)
    assert accented > ascii_cost


def test_estimate_is_deterministic_with_and_without_cache() -> None:
    cached = TokenEstimator(TokenCache())
    text = "This expression has type int but an expression was expected of type string"
    first = cached.estimate(text)
    second = cached.estimate(text)
    fresh = TokenEstimator(TokenCache()).estimate(text)
    assert first == second == fresh


@pytest.mark.parametrize(
    "name,kind,expected",
    [
        ("status", "string", 2 + 2 + 1),
        ("line", "number", 1 + 0 + 1),
        ("truncated", "boolean", 3 + 0 + 1),
        ("diagnostics", "array", 3 + 2 + 1),
        ("summary", "object", 2 + 3 + 1),
    ],
)
def test_json_field_overhead(name: str, kind: str, expected: int) -> None:
    assert token_estimator.estimate_json_field_overhead(name, kind) == expected


def test_diagnostic_structural_overhead_is_documented_constant() -> None:
    assert token_estimator.DIAGNOSTIC_STRUCTURAL_OVERHEAD == 22


def test_estimate_diagnostic_adds_fields_and_overhead(estimator: TokenEstimator) -> None:
    diag = make_diagnostic(severity="error", file="src/main.ml", line=10, column=5, message="Unbound module Foo")
    expected = (
        estimator.estimate("error")
        + estimator.estimate("src/main.ml")
        + token_estimator.number_tokens(10)
        + token_estimator.number_tokens(5)
        + estimator.estimate("Unbound module Foo")
        + token_estimator.DIAGNOSTIC_STRUCTURAL_OVERHEAD
    )
    assert estimator.estimate_diagnostic(diag) == expected


@pytest.mark.parametrize("value,expected", [(0, 1), (7, 1), (42, 1), (999, 2), (25000, 3)])
def test_number_tokens_scale_with_digits(value: int, expected: int) -> None:
    assert token_estimator.number_tokens(value) == expected


def test_cache_clears_wholesale_at_capacity() -> None:
    cache = TokenCache(capacity=3)
    estimator = TokenEstimator(cache)
    for text in ("alpha one", "beta two", "gamma three"):
        estimator.estimate(text)
    assert len(cache) == 3
    assert cache.clears == 0

    estimator.estimate("delta four")

    assert cache.clears == 1
    assert len(cache) == 1
    assert "delta four" in cache
    assert "alpha one" not in cache


def test_cache_hit_does_not_trigger_clear() -> None:
    cache = TokenCache(capacity=2)
    estimator = TokenEstimator(cache)
    estimator.estimate("alpha one")
    estimator.estimate("beta two")
    estimator.estimate("alpha one")
    assert cache.clears == 0
    assert len(cache) == 2


def test_cache_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError):
        TokenCache(capacity=0)


def test_cache_is_safe_under_concurrent_inserts() -> None:
    cache = TokenCache(capacity=64)
    estimator = TokenEstimator(cache)
    texts = [f"Unbound value item_{index}" for index in range(500)]
    expected = {text: TokenEstimator(TokenCache()).estimate(text) for text in texts}

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(estimator.estimate, texts * 4))

    assert results == [expected[text] for text in texts * 4]
    assert len(cache) <= cache.capacity
    assert cache.clears > 0
