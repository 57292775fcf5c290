"""Build status providers backed by dune."""

from __future__ import annotations

import platform
import re
import shutil
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from mcp.server.fastmcp.utilities.logging import get_logger

from ocaml_mcp_server.diagnostics import BuildSnapshot, BuildSummary, Diagnostic, Severity
from ocaml_mcp_server.file_utils import normalize_diagnostic_path
from ocaml_mcp_server.project_structure import (
    DescribeError,
    ProjectStructure,
    parse_describe_output,
)
from ocaml_mcp_server.schema_types import (
    STATUS_FAILED,
    STATUS_SUCCESS,
    STATUS_SUCCESS_WITH_WARNINGS,
)

logger = get_logger(__name__)


INSTALL_URL = "https://dune.readthedocs.io/en/stable/quick-start.html"
DEFAULT_TARGETS = ("@check",)
DEFAULT_TIMEOUT_SECONDS = 600.0

_PLATFORM_INSTRUCTIONS: dict[str, Iterable[str]] = {
    "Windows": ("winget install Git.Git OCaml.opam", "opam install dune"),
    "Darwin": ("brew install opam", "opam init && opam install dune"),
    "Linux": (
        "sudo apt-get install opam",
        "opam init && opam install dune",
    ),
}

_LOCATION_RE = re.compile(
    r'^File "(?P<file>[^"]+)", lines? (?P<line>\d+)(?:-(?P<end_line>\d+))?'
    r"(?:, characters (?P<start>\d+)-(?P<stop>\d+))?:"
)
_SEVERITY_RE = re.compile(r"^(?P<label>Error|Warning|Alert)\b")


class DuneUnavailableError(RuntimeError):
    """The dune binary is missing or was disabled for this server."""


class BuildStatusProvider(Protocol):
    def fetch(self, targets: Optional[Sequence[str]] = None) -> BuildSnapshot:
        ...


def check_dune_status() -> tuple[bool, str]:
    """Check whether ``dune`` is available on PATH and return status + message."""

    if shutil.which("dune"):
        return True, ""

    system = platform.system()
    platform_instructions = _PLATFORM_INSTRUCTIONS.get(
        system, ("Install opam, then run `opam install dune`.",)
    )

    lines = [
        "dune was not found on your PATH. The build status tools run `dune build` to collect diagnostics.",
        "",
        "Installation options:",
        *(f"  - {item}" for item in platform_instructions),
        f"More installation options: {INSTALL_URL}",
    ]

    return False, "\n".join(lines)


def _severity_for(label_line: str) -> Severity:
    # "Error (warning 26 ...)" is a warning promoted to an error.
    if label_line.startswith("Error"):
        return Severity.ERROR
    return Severity.WARNING


def parse_dune_output(output: str, project_root: str) -> List[Diagnostic]:
    """Parse OCaml compiler messages from ``dune build`` output.

    Each message starts with a ``File "...", line N, characters A-B:`` header,
    is followed by an optional source excerpt, then an ``Error``, ``Warning``
    or ``Alert`` body whose indented or ``Hint:`` continuation lines belong to
    the same message. Lines outside such blocks (dune action echoes, progress)
    are ignored. Columns are 1-based; 0 means the header had no character
    range.
    """

    diagnostics: List[Diagnostic] = []
    location: Optional[tuple[str, int, int]] = None
    severity: Optional[Severity] = None
    body: List[str] = []

    def flush() -> None:
        nonlocal severity, body
        if location is not None and severity is not None:
            file, line, column = location
            diagnostics.append(
                Diagnostic(
                    severity=severity,
                    file=file,
                    line=line,
                    column=column,
                    message="\n".join(body).strip(),
                )
            )
        severity = None
        body = []

    for raw_line in output.splitlines():
        header = _LOCATION_RE.match(raw_line)
        if header:
            flush()
            start = header.group("start")
            location = (
                normalize_diagnostic_path(project_root, header.group("file")),
                max(1, int(header.group("line"))),
                int(start) + 1 if start is not None else 0,
            )
            continue

        label = _SEVERITY_RE.match(raw_line)
        if label and location is not None:
            flush()
            severity = _severity_for(raw_line)
            body = [raw_line]
            continue

        if severity is not None:
            if raw_line[:1].isspace() or raw_line.startswith("Hint:"):
                body.append(raw_line.rstrip())
                continue
            flush()
            location = None

    flush()
    return diagnostics


def snapshot_from_run(exit_code: int, diagnostics: Sequence[Diagnostic]) -> BuildSnapshot:
    failed = sum(1 for diag in diagnostics if diag.is_error)
    if exit_code != 0:
        status = STATUS_FAILED
    elif diagnostics:
        status = STATUS_SUCCESS_WITH_WARNINGS
    else:
        status = STATUS_SUCCESS
    return BuildSnapshot(
        status=status,
        diagnostics=tuple(diagnostics),
        build_summary=BuildSummary(
            completed=1 if exit_code == 0 else 0,
            remaining=0,
            failed=failed,
        ),
    )


@dataclass(frozen=True)
class BuildRun:
    targets: tuple[str, ...]
    exit_code: Optional[int]
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class DuneBuildProvider:
    """Runs ``dune build`` in the project root and parses its diagnostics."""

    def __init__(
        self,
        project_root: str,
        *,
        dune_binary: str = "dune",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.project_root = project_root
        self.dune_binary = dune_binary
        self.timeout = timeout

    def run_build(self, targets: Optional[Sequence[str]] = None) -> BuildRun:
        selected = tuple(targets) if targets else DEFAULT_TARGETS
        command = [self.dune_binary, "build", *selected, "--display=short"]
        logger.info("Running %s in %s", " ".join(command), self.project_root)
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                cwd=self.project_root,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise DuneUnavailableError(f"`{self.dune_binary}` was not found on PATH") from exc
        except subprocess.TimeoutExpired as exc:
            logger.warning("dune build timed out after %.0fs", self.timeout)
            return BuildRun(
                targets=selected,
                exit_code=None,
                stdout=_decode_partial(exc.stdout),
                stderr=_decode_partial(exc.stderr) + f"\ndune build timed out after {self.timeout:.0f}s",
            )
        return BuildRun(
            targets=selected,
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def fetch(self, targets: Optional[Sequence[str]] = None) -> BuildSnapshot:
        run = self.run_build(targets)
        diagnostics = parse_dune_output(run.stderr + "\n" + run.stdout, self.project_root)
        exit_code = run.exit_code if run.exit_code is not None else -1
        return snapshot_from_run(exit_code, diagnostics)

    def describe(self) -> ProjectStructure:
        """Run ``dune describe workspace`` and parse the libraries and executables."""

        command = [self.dune_binary, "describe", "workspace", "--format=csexp"]
        logger.info("Running %s in %s", " ".join(command), self.project_root)
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                cwd=self.project_root,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise DuneUnavailableError(f"`{self.dune_binary}` was not found on PATH") from exc
        except subprocess.TimeoutExpired as exc:
            raise DescribeError(
                f"dune describe timed out after {self.timeout:.0f}s",
                stderr=_decode_partial(exc.stderr),
            ) from exc

        stderr = _decode_partial(completed.stderr)
        if completed.returncode != 0:
            raise DescribeError(
                f"dune describe failed with exit code {completed.returncode}",
                exit_code=completed.returncode,
                stderr=stderr,
            )
        return parse_describe_output(completed.stdout or b"", self.project_root)


def _decode_partial(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", "replace")
    return data


def format_build_output(run: BuildRun) -> str:
    """Human-readable transcript of a ``dune build`` run."""

    lines = [f"Building targets: {' '.join(run.targets)}"]
    for stream in (run.stdout, run.stderr):
        lines.extend(line for line in stream.splitlines() if line)

    if not run.success:
        if run.exit_code is not None:
            lines.append(f"[Exit code: {run.exit_code}]")
        else:
            lines.append("[Process failed with unknown error]")
    elif not any(line.strip() in ("Success", "Success.") for line in lines):
        lines.append("Success")
    return "\n".join(lines)


class StaticBuildProvider:
    """Serves a fixed snapshot regardless of the requested targets."""

    def __init__(self, snapshot: BuildSnapshot) -> None:
        self.snapshot = snapshot
        self.requests: List[Optional[tuple[str, ...]]] = []

    def fetch(self, targets: Optional[Sequence[str]] = None) -> BuildSnapshot:
        self.requests.append(tuple(targets) if targets is not None else None)
        return self.snapshot


__all__ = [
    "BuildRun",
    "BuildStatusProvider",
    "DEFAULT_TARGETS",
    "DuneBuildProvider",
    "DuneUnavailableError",
    "StaticBuildProvider",
    "check_dune_status",
    "format_build_output",
    "parse_dune_output",
    "snapshot_from_run",
]
