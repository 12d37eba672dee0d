"""
Path sandboxing for phase context files.

WHAT THIS FILE DOES:
-------------------
Phases reference files by short, portable names (``src/foo.py``,
``workspace/TOOLS.md``). Before anything reads those files, or hands them to
an agent, they are resolved against exactly one of two permitted roots:

    workspace/<rest>   ->  <workspace_root>/<rest>
    anything else      ->  <project_root>/<path>

Resolution refuses to leave both roots, whether by ``..`` segments or by a
symlink that points elsewhere. Files that don't exist yet are fine as long as
their real parent is inside a root, because an earlier implement phase may
be about to create them.
"""

import os
import re
from pathlib import Path
from typing import Iterable, Optional


WORKSPACE_PREFIX = "workspace/"


class PathOutOfBoundsError(ValueError):
    """A context file resolved outside both the project and workspace roots."""


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def resolve_context_path(file_path: str, project_root: Path, workspace_root: Path) -> Path:
    """
    Resolve a context file entry to an absolute path inside a permitted root.

    Path.resolve() follows symlinks through every existing ancestor and
    appends the non-existent remainder, so one canonical comparison catches
    both lexical traversal and symlink escape.

    Args:
        file_path: Entry from PlanPhase.context_files
        project_root: Project source directory
        workspace_root: Workspace (plans, notes) directory

    Returns:
        Absolute, normalized path (symlinks not expanded)

    Raises:
        PathOutOfBoundsError: If the path escapes both roots
    """
    if file_path.startswith(WORKSPACE_PREFIX):
        candidate = Path(workspace_root) / file_path[len(WORKSPACE_PREFIX):]
    else:
        candidate = Path(project_root) / file_path

    real_project = Path(project_root).resolve()
    real_workspace = Path(workspace_root).resolve()
    real_candidate = candidate.resolve()

    if _is_within(real_candidate, real_project) or _is_within(real_candidate, real_workspace):
        return Path(os.path.abspath(candidate))

    raise PathOutOfBoundsError(
        f"Context file path '{file_path}' resolves to '{real_candidate}' which is outside "
        f"allowed roots (project: {real_project}, workspace: {real_workspace})"
    )


def normalize_workspace_path(file_path: str, workspace_files: Iterable[str]) -> str:
    """
    Give bare workspace file names their canonical ``workspace/`` prefix.

    ``TOOLS.md`` -> ``workspace/TOOLS.md``; ``docs/TOOLS.md`` and already
    prefixed paths are left alone.
    """
    if "/" in file_path or file_path.startswith(WORKSPACE_PREFIX):
        return file_path
    if file_path in set(workspace_files):
        return WORKSPACE_PREFIX + file_path
    return file_path


def plan_file_reference(plan_path: Path, workspace_root: Path) -> str:
    """
    The portable reference stored in PlanPhases.plan_file.

    Plans under the workspace become ``workspace/<relative>``; anything else
    keeps its absolute path.
    """
    real_plan = Path(plan_path).resolve()
    real_workspace = Path(workspace_root).resolve()
    if _is_within(real_plan, real_workspace):
        return WORKSPACE_PREFIX + real_plan.relative_to(real_workspace).as_posix()
    return str(real_plan)


_PROJECT_FIELD = re.compile(r"^\*\*Project:\*\*\s*(.+)$", re.MULTILINE)


def resolve_project_root(
    plan_content: str,
    projects: dict[str, Path],
    default_root: Optional[Path] = None,
) -> Path:
    """
    Work out which source tree a plan targets.

    A ``**Project:** name`` line selects an entry from the configured
    project map; without one the default root is used.

    Raises:
        ValueError: Unknown project name, no project at all, or a root that
                    is missing or not a directory
    """
    match = _PROJECT_FIELD.search(plan_content)
    if match:
        name = match.group(1).strip()
        if name not in projects:
            raise ValueError(
                f"Project '{name}' is not in the project map. "
                f"Known projects: {', '.join(sorted(projects)) or '(none)'}"
            )
        root = Path(projects[name]).expanduser()
    elif default_root is not None:
        root = Path(default_root).expanduser()
    else:
        raise ValueError("Plan has no **Project:** field and no default project root is configured")

    if not root.exists():
        raise ValueError(f"Project directory does not exist: {root}")
    if not root.is_dir():
        raise ValueError(f"Project directory is not a directory: {root}")

    return root.resolve()
