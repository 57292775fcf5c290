from __future__ import annotations

import os
from typing import Optional

PROJECT_MARKERS = ("dune-project", ".git")


def valid_dune_project_path(path: str) -> bool:
    """Return whether ``path`` is a directory holding a ``dune-project`` file."""

    return os.path.isfile(os.path.join(path, "dune-project"))


def find_project_root(start: Optional[str] = None) -> Optional[str]:
    """Walk up from ``start`` to the nearest project root.

    A directory containing ``dune-project`` wins over one containing ``.git``
    so that nested dune projects inside a repository resolve to themselves.
    The outermost ``dune-project`` is not sought; dune itself picks the
    nearest one when invoked from the returned directory.
    """

    current = os.path.abspath(start or os.getcwd())
    git_root: Optional[str] = None
    while True:
        if valid_dune_project_path(current):
            return current
        if git_root is None and os.path.exists(os.path.join(current, ".git")):
            git_root = current
        parent = os.path.dirname(current)
        if parent == current:
            return git_root
        current = parent


def get_relative_file_path(project_root: str, file_path: str) -> Optional[str]:
    """Convert a path to project-relative form if it stays within the project root.

    Relative inputs are resolved against ``project_root``. The result always
    uses ``/`` separators.
    """

    root = os.path.abspath(project_root)
    if os.path.isabs(file_path):
        candidate = os.path.abspath(file_path)
    else:
        candidate = os.path.abspath(os.path.join(root, file_path))

    try:
        if os.path.commonpath([candidate, root]) != root:
            return None
    except ValueError:
        return None
    return os.path.relpath(candidate, root).replace(os.sep, "/")


def normalize_diagnostic_path(project_root: str, file_path: str) -> str:
    """Project-relative path for a compiler-reported file, best effort.

    Dune reports paths relative to the workspace root, sometimes under
    ``_build/default``; that prefix is stripped. Paths outside the project are
    returned with ``/`` separators but otherwise untouched.
    """

    cleaned = file_path.replace("\\", "/")
    for prefix in ("_build/default/", "./"):
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
    relative = get_relative_file_path(project_root, cleaned)
    return relative if relative is not None else cleaned
