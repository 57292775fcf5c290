"""Bounded glob matching for diagnostic file filters.

Supported syntax:

- ``*`` matches any run of characters inside a single path segment.
- ``?`` matches exactly one character other than ``/``.
- ``**`` used as a whole segment (``src/**/*.ml``) matches zero or more path
  segments.

Patterns are compiled once into per-segment predicates. Literal segments are
compared directly, single-``*`` segments become prefix/suffix checks, and the
rest use a greedy scan with one fallback point, so the worst case per segment
is ``O(len(part) * len(segment))`` no matter how the wildcards are arranged.
Nothing here raises: a pattern that looks malformed simply fails to match.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Sequence

MAX_PATTERN_LENGTH = 200
MAX_WILDCARDS = 10
GLOBSTAR = "**"

_WILDCARD_CHARS = ("*", "?")

SegmentMatcher = Callable[[str], bool]


def count_wildcards(pattern: str) -> int:
    """Return the number of ``*`` characters in ``pattern``."""

    return pattern.count("*")


def matches_recursive(pattern: str, path: str) -> bool:
    """Match a slash-separated ``pattern`` against ``path`` segment by segment.

    A ``**`` segment may absorb any number of path segments, including none.
    """

    return SegmentPattern(pattern.split("/")).match_parts(path.split("/"))


def _match_segment(part: str, segment: str) -> bool:
    # Neither side contains "/" here, so "*" and "?" may take any character.
    # Greedy scan that falls back to the most recent "*": O(len(part) * len(segment)).
    p = s = 0
    star = -1
    mark = 0
    plen = len(part)
    slen = len(segment)
    while s < slen:
        if p < plen and (part[p] == "?" or part[p] == segment[s]):
            p += 1
            s += 1
        elif p < plen and part[p] == "*":
            star = p
            mark = s
            p += 1
        elif star >= 0:
            p = star + 1
            mark += 1
            s = mark
        else:
            return False
    while p < plen and part[p] == "*":
        p += 1
    return p == plen


def _segment_matcher(part: str) -> SegmentMatcher:
    """Compile one slash-free pattern segment into a predicate."""

    if not any(char in part for char in _WILDCARD_CHARS):
        return lambda segment: segment == part

    if "?" not in part and part.count("*") == 1:
        prefix, suffix = part.split("*")
        min_length = len(prefix) + len(suffix)
        return lambda segment: (
            len(segment) >= min_length and segment.startswith(prefix) and segment.endswith(suffix)
        )

    seen: Dict[str, bool] = {}

    def match(segment: str) -> bool:
        result = seen.get(segment)
        if result is None:
            result = _match_segment(part, segment)
            seen[segment] = result
        return result

    return match


class SegmentPattern:
    """A slash-separated pattern split into segment predicates once.

    The pattern is cut at its ``**`` segments into runs of ordinary segments.
    The first run is anchored at the start of the path and the last at the
    end. Runs in between are placed at their leftmost match, which is always
    sufficient because ``**`` absorbs whatever lies between them. Results for
    wildcard segments are remembered for the lifetime of the instance, so one
    instance should serve a whole filtering pass.
    """

    def __init__(self, parts: Sequence[str]) -> None:
        runs: List[List[SegmentMatcher]] = [[]]
        for part in parts:
            if part == GLOBSTAR:
                runs.append([])
            else:
                runs[-1].append(_segment_matcher(part))

        self.has_globstar = len(runs) > 1
        self._head = runs[0]
        self._tail = runs[-1] if self.has_globstar else []
        self._middle = [run for run in runs[1:-1] if run]
        self._min_parts = len(self._head) + len(self._tail) + sum(len(run) for run in self._middle)

    @staticmethod
    def _run_matches(run: Sequence[SegmentMatcher], parts: Sequence[str], offset: int) -> bool:
        for index, matcher in enumerate(run):
            if not matcher(parts[offset + index]):
                return False
        return True

    def match_parts(self, parts: Sequence[str]) -> bool:
        size = len(parts)
        if not self.has_globstar:
            return size == len(self._head) and self._run_matches(self._head, parts, 0)

        if size < self._min_parts:
            return False
        if not self._run_matches(self._head, parts, 0):
            return False
        limit = size - len(self._tail)
        if not self._run_matches(self._tail, parts, limit):
            return False

        position = len(self._head)
        for run in self._middle:
            while position + len(run) <= limit:
                if self._run_matches(run, parts, position):
                    break
                position += 1
            else:
                return False
            position += len(run)
        return True


class FilePattern:
    """A diagnostic file filter compiled once and applied to many paths.

    Patterns containing ``/`` are matched against the whole project-relative
    path. Patterns without ``/`` are matched against the file name only, so
    ``*.ml`` selects every ``.ml`` file and ``main.ml`` selects ``src/main.ml``.
    Patterns over the length or wildcard caps match nothing.
    """

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        self.valid = (
            0 < len(pattern) <= MAX_PATTERN_LENGTH and count_wildcards(pattern) <= MAX_WILDCARDS
        )
        self.basename_only = "/" not in pattern
        self._basename: Optional[SegmentMatcher] = None
        self._segments: Optional[SegmentPattern] = None
        if not self.valid:
            return
        if self.basename_only:
            self._basename = _segment_matcher(pattern)
        elif any(char in pattern for char in _WILDCARD_CHARS):
            self._segments = SegmentPattern(pattern.split("/"))

    def __call__(self, path: str) -> bool:
        if not self.valid:
            return False
        if self._basename is not None:
            return self._basename(path.rsplit("/", 1)[-1])
        if self._segments is None:
            return path == self.pattern
        return self._segments.match_parts(path.split("/"))


__all__ = [
    "FilePattern",
    "GLOBSTAR",
    "MAX_PATTERN_LENGTH",
    "MAX_WILDCARDS",
    "SegmentPattern",
    "count_wildcards",
    "matches_recursive",
]
