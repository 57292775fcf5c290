"""Project layout from ``dune describe workspace --format=csexp``.

dune prints one canonical s-expression: a list of ``(root ...)``,
``(build_context ...)``, ``(library (...))`` and ``(executables (...))``
entries whose payloads are ``(field value)`` association lists. Library
dependencies are given as opaque uids and resolved to names here.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from mcp.server.fastmcp.utilities.logging import get_logger

from ocaml_mcp_server.file_utils import normalize_diagnostic_path
from ocaml_mcp_server.schema_types import (
    COMPONENT_EXECUTABLE,
    COMPONENT_LIBRARY,
    ProjectComponentPayload,
    ProjectStructurePayload,
)

logger = get_logger(__name__)

SExp = Union[str, List["SExp"]]

_WHITESPACE = b" \t\r\n"


class DescribeError(RuntimeError):
    """``dune describe`` failed or printed something unreadable."""

    def __init__(self, message: str, *, exit_code: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr

    def to_details(self) -> Dict[str, Any]:
        details: Dict[str, Any] = {"exit_code": self.exit_code}
        if self.stderr:
            details["stderr"] = self.stderr
        return details


def parse_csexp(data: Union[bytes, str]) -> SExp:
    """Decode one canonical s-expression into nested lists of ``str`` atoms.

    Atoms are ``<length>:<bytes>``; lists are parenthesised with no
    separators. Surrounding whitespace is tolerated. Raises ``ValueError`` on
    malformed input.
    """

    raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    stack: List[List[SExp]] = []
    result: Optional[SExp] = None
    index = 0
    size = len(raw)

    while index < size:
        byte = raw[index]
        if byte in _WHITESPACE and not stack:
            index += 1
            continue

        if byte == 0x28:  # (
            stack.append([])
            index += 1
            continue

        if byte == 0x29:  # )
            if not stack:
                raise ValueError(f"unbalanced ')' at offset {index}")
            value: SExp = stack.pop()
            index += 1
        elif 0x30 <= byte <= 0x39:
            colon = raw.find(b":", index)
            digits = raw[index:colon] if colon != -1 else b""
            if not digits.isdigit():
                raise ValueError(f"bad atom length at offset {index}")
            start = colon + 1
            end = start + int(digits)
            if end > size:
                raise ValueError(f"atom at offset {index} runs past the end of input")
            value = raw[start:end].decode("utf-8", "replace")
            index = end
        else:
            raise ValueError(f"unexpected byte {raw[index:index + 1]!r} at offset {index}")

        if stack:
            stack[-1].append(value)
        elif result is None:
            result = value
        else:
            raise ValueError(f"trailing data at offset {index}")

    if stack:
        raise ValueError("unterminated list")
    if result is None:
        raise ValueError("empty input")
    return result


def _fields(node: SExp) -> Dict[str, SExp]:
    fields: Dict[str, SExp] = {}
    if isinstance(node, list):
        for entry in node:
            if isinstance(entry, list) and len(entry) == 2 and isinstance(entry[0], str):
                fields.setdefault(entry[0], entry[1])
    return fields


def _atoms(node: Optional[SExp]) -> List[str]:
    if isinstance(node, str):
        return [node]
    if isinstance(node, list):
        return [item for item in node if isinstance(item, str)]
    return []


def _atom(node: Optional[SExp], default: str = "") -> str:
    atoms = _atoms(node)
    return atoms[0] if atoms else default


@dataclass(frozen=True)
class ProjectComponent:
    kind: str
    name: str
    directory: str
    modules: Tuple[str, ...] = ()
    dependencies: Tuple[str, ...] = ()

    def to_payload(self) -> ProjectComponentPayload:
        return {
            "kind": self.kind,
            "name": self.name,
            "directory": self.directory,
            "modules": list(self.modules),
            "dependencies": list(self.dependencies),
        }


@dataclass(frozen=True)
class ProjectStructure:
    project_root: str
    build_context: str
    components: Tuple[ProjectComponent, ...] = field(default_factory=tuple)

    def count(self, kind: str) -> int:
        return sum(1 for component in self.components if component.kind == kind)

    def to_payload(self) -> ProjectStructurePayload:
        return {
            "project_root": self.project_root,
            "build_context": self.build_context,
            "library_count": self.count(COMPONENT_LIBRARY),
            "executable_count": self.count(COMPONENT_EXECUTABLE),
            "components": [component.to_payload() for component in self.components],
        }


def _module_names(modules: Optional[SExp]) -> Tuple[str, ...]:
    names: List[str] = []
    for module in modules if isinstance(modules, list) else []:
        name = _atom(_fields(module).get("name"))
        if name and name not in names:
            names.append(name)
    return tuple(names)


def _module_directory(modules: Optional[SExp], project_root: str) -> Optional[str]:
    for module in modules if isinstance(modules, list) else []:
        fields = _fields(module)
        for key in ("impl", "intf"):
            source = _atom(fields.get(key))
            if source:
                relative = normalize_diagnostic_path(project_root, source)
                return posixpath.dirname(relative) or "."
    return None


def _dependencies(requires: Optional[SExp], names_by_uid: Dict[str, str]) -> Tuple[str, ...]:
    resolved: List[str] = []
    for uid in _atoms(requires):
        name = names_by_uid.get(uid, uid)
        if name not in resolved:
            resolved.append(name)
    return tuple(resolved)


def parse_describe_output(data: Union[bytes, str], project_root: str) -> ProjectStructure:
    """Turn ``dune describe workspace --format=csexp`` output into a structure.

    Only local libraries become components; external ones (present with
    ``--with-deps``) are used to name dependencies. Each executable name in an
    ``executables`` stanza becomes its own component.
    """

    try:
        tree = parse_csexp(data)
    except ValueError as exc:
        raise DescribeError(f"Failed to parse dune describe output: {exc}", exit_code=0) from exc
    if not isinstance(tree, list):
        raise DescribeError("Failed to parse dune describe output: expected a list", exit_code=0)

    entries: List[Tuple[str, SExp]] = [
        (entry[0], entry[1])
        for entry in tree
        if isinstance(entry, list) and len(entry) == 2 and isinstance(entry[0], str)
    ]

    names_by_uid: Dict[str, str] = {}
    for tag, payload in entries:
        if tag == "library":
            fields = _fields(payload)
            uid = _atom(fields.get("uid"))
            if uid:
                names_by_uid[uid] = _atom(fields.get("name"), uid)

    root = project_root
    build_context = "default"
    components: List[ProjectComponent] = []
    for tag, payload in entries:
        if tag == "root":
            root = _atom(payload, project_root)
        elif tag == "build_context":
            build_context = posixpath.basename(_atom(payload).rstrip("/")) or build_context
        elif tag == "library":
            components.extend(_library_components(_fields(payload), project_root, names_by_uid))
        elif tag == "executables":
            components.extend(_executable_components(_fields(payload), project_root, names_by_uid))

    logger.debug("Parsed %d components from dune describe", len(components))
    return ProjectStructure(
        project_root=root,
        build_context=build_context,
        components=tuple(components),
    )


def _library_components(
    fields: Dict[str, SExp],
    project_root: str,
    names_by_uid: Dict[str, str],
) -> Iterable[ProjectComponent]:
    if _atom(fields.get("local"), "true") != "true":
        return ()
    modules = fields.get("modules")
    directory = _atom(fields.get("source_dir")) or _module_directory(modules, project_root) or "."
    return (
        ProjectComponent(
            kind=COMPONENT_LIBRARY,
            name=_atom(fields.get("name")),
            directory=normalize_diagnostic_path(project_root, directory),
            modules=_module_names(modules),
            dependencies=_dependencies(fields.get("requires"), names_by_uid),
        ),
    )


def _executable_components(
    fields: Dict[str, SExp],
    project_root: str,
    names_by_uid: Dict[str, str],
) -> Iterable[ProjectComponent]:
    modules = fields.get("modules")
    directory = _module_directory(modules, project_root) or "."
    module_names = _module_names(modules)
    dependencies = _dependencies(fields.get("requires"), names_by_uid)
    return [
        ProjectComponent(
            kind=COMPONENT_EXECUTABLE,
            name=name,
            directory=directory,
            modules=module_names,
            dependencies=dependencies,
        )
        for name in _atoms(fields.get("names"))
    ]


__all__ = [
    "DescribeError",
    "ProjectComponent",
    "ProjectStructure",
    "parse_csexp",
    "parse_describe_output",
]
