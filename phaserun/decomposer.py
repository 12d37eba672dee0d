"""
Plan decomposition: plan text -> dependency graph of phases.

HOW IT WORKS:
------------
1. Find the files the plan touches:
   a. an explicit ``## Change Manifest`` fenced JSON array, used verbatim, or
   b. backtick-wrapped paths in the ``## Changes`` section (list items,
      headings, bold/italic wrapped), filtered to things that look like paths
2. Group the files into batches (module + test pairs, directory clusters,
   capped at max_files_per_phase)
3. Emit one implement phase per batch, chained in order, each carrying the
   Changes text for its own files
4. Finish with one audit phase that depends on every implement phase

Plans that name no files get a fixed read -> implement -> audit skeleton.

Decomposition is pure and deterministic: the same text always yields the same
ids, titles, context files and dependency graph.
"""

import hashlib
import posixpath
import re
from typing import Iterable, Optional

from .config import DEFAULT_WORKSPACE_FILES
from .plan_parser import extract_change_manifest, get_section, is_fence, parse_plan
from .schemas import PhaseKind, PlanPhase, PlanPhases, now_iso
from .workspace import normalize_workspace_path


DEFAULT_MAX_FILES_PER_PHASE = 5

# A file reference: list item, heading, or emphasis, then a backtick span.
_ENTRY = re.compile(
    r"^(?P<indent>[ \t]*)"
    r"(?:(?P<marker>[-*+]|\d+[.)]|#{1,6})[ \t]+)?"
    r"(?P<emph>\*\*|__|\*|_)?"
    r"`(?P<path>[^`]+)`"
)
_HEADING = re.compile(r"^(#{1,6})\s")
_LIST_ITEM = re.compile(r"^([ \t]*)(?:[-*+]|\d+[.)])\s")

_ALL_CAPS = re.compile(r"^[A-Z][A-Z0-9_]+$")
_HAS_EXTENSION = re.compile(r"\.\w+$")

# JS/TS style: foo.test.ts, foo.spec.js
_DOTTED_TEST = re.compile(r"^(?P<stem>.+)\.(?:test|spec)(?P<ext>\.\w+)$")
# Python/Go style: test_foo.py, foo_test.py, foo_test.go
_PREFIX_TEST = re.compile(r"^test_(?P<stem>.+)(?P<ext>\.py)$")
_SUFFIX_TEST = re.compile(r"^(?P<stem>.+)_test(?P<ext>\.\w+)$")


# =============================================================================
# HASHING
# =============================================================================

def compute_plan_hash(plan_content: str) -> str:
    """First 16 hex chars of the SHA-256 of the plan text."""
    return hashlib.sha256(plan_content.encode("utf-8")).hexdigest()[:16]


# =============================================================================
# FILE EXTRACTION
# =============================================================================

def is_likely_file_path(candidate: str) -> bool:
    """
    Tell file paths apart from the other things people put in backticks.

    Rejects type names (``PlanPhase``), config keys and env vars
    (``PLAN_PHASES_ENABLED``), quoted literals (``'pending'``), commands and
    call expressions.
    """
    s = candidate.strip()
    if not s or any(ch.isspace() for ch in s):
        return False
    if s[0] in "'\"-":
        return False
    if any(ch in s for ch in "()<>=,;|$"):
        return False
    if "://" in s:
        return False
    if "/" not in s and "." not in s:
        return False
    if _ALL_CAPS.match(s):
        return False
    if "/" not in s and not _HAS_EXTENSION.search(s):
        return False
    return True


def _fence_mask(lines: list[str]) -> list[bool]:
    """True for every line that is a fence or inside one."""
    mask = []
    in_fence = False
    for line in lines:
        if is_fence(line):
            mask.append(True)
            in_fence = not in_fence
        else:
            mask.append(in_fence)
    return mask


def _match_entry(line: str) -> Optional[re.Match]:
    match = _ENTRY.match(line)
    if not match:
        return None
    if not match.group("marker") and not match.group("emph"):
        return None
    return match


def extract_file_paths(changes_section: str) -> list[str]:
    """
    Heuristically pull file paths out of a Changes section.

    Returns:
        Paths in order of first mention, without duplicates
    """
    paths: list[str] = []
    seen: set[str] = set()
    lines = changes_section.split("\n")

    for line, fenced in zip(lines, _fence_mask(lines)):
        if fenced:
            continue
        match = _match_entry(line)
        if not match:
            continue
        candidate = match.group("path").strip()
        if not is_likely_file_path(candidate) or candidate in seen:
            continue
        seen.add(candidate)
        paths.append(candidate)

    return paths


# =============================================================================
# GROUPING
# =============================================================================

def _module_name_for_test(basename: str) -> Optional[str]:
    """``foo.test.ts`` -> ``foo.ts``; ``test_foo.py`` -> ``foo.py``; else None."""
    for pattern in (_DOTTED_TEST, _PREFIX_TEST, _SUFFIX_TEST):
        match = pattern.match(basename)
        if match:
            return match.group("stem") + match.group("ext")
    return None


def _find_module(test_path: str, file_paths: list[str]) -> Optional[str]:
    module_name = _module_name_for_test(posixpath.basename(test_path))
    if not module_name:
        return None

    same_dir = posixpath.join(posixpath.dirname(test_path), module_name)
    if same_dir in file_paths:
        return same_dir

    # Tests kept in a separate tests/ tree: match on basename
    for fp in file_paths:
        if fp != test_path and posixpath.basename(fp) == module_name:
            return fp
    return None


def group_files(file_paths: list[str], max_per_group: int) -> list[list[str]]:
    """
    Batch files for implement phases.

    1. Pair each test file with its module (a module may collect several tests)
    2. Cluster the remaining files by directory
    3. Merge neighbouring directory clusters that share a parent while the
       batch stays under the cap
    4. Split anything larger than the cap

    Batches are ordered by the first mention of any of their files.
    """
    if max_per_group < 1:
        raise ValueError("max_per_group must be at least 1")
    if not file_paths:
        return []

    position = {fp: i for i, fp in enumerate(file_paths)}

    pairs: dict[str, list[str]] = {}
    paired: set[str] = set()
    for fp in file_paths:
        module = _find_module(fp, file_paths)
        if module is None or module in paired and module not in pairs:
            continue
        pairs.setdefault(module, [module]).append(fp)
        paired.update((module, fp))

    by_dir: dict[str, list[str]] = {}
    for fp in file_paths:
        if fp in paired:
            continue
        by_dir.setdefault(posixpath.dirname(fp), []).append(fp)

    # (first position, is_dir_cluster, directory, files)
    clusters = [(position[files[0]], False, posixpath.dirname(module), files) for module, files in pairs.items()]
    clusters += [(position[files[0]], True, directory, files) for directory, files in by_dir.items()]
    clusters.sort(key=lambda c: c[0])

    merged: list[tuple[bool, str, list[str]]] = []
    for _, is_dir, directory, files in clusters:
        if merged:
            prev_is_dir, prev_dir, prev_files = merged[-1]
            if (
                is_dir
                and prev_is_dir
                and posixpath.dirname(prev_dir) == posixpath.dirname(directory)
                and len(prev_files) + len(files) <= max_per_group
            ):
                merged[-1] = (True, prev_dir, prev_files + files)
                continue
        merged.append((is_dir, directory, list(files)))

    groups: list[list[str]] = []
    for _, _, files in merged:
        for i in range(0, len(files), max_per_group):
            groups.append(files[i:i + max_per_group])
    return groups


# =============================================================================
# CHANGE SPECS
# =============================================================================

def _capture_entry(lines: list[str], fenced: list[bool], target: str, workspace_files: Iterable[str]) -> Optional[str]:
    """The Changes text describing ``target``: its entry line plus its body."""
    for i, line in enumerate(lines):
        if fenced[i]:
            continue
        match = _match_entry(line)
        if not match:
            continue
        if normalize_workspace_path(match.group("path").strip(), workspace_files) != target:
            continue

        marker = match.group("marker") or ""
        heading_level = len(marker) if marker.startswith("#") else None
        indent = len(match.group("indent").expandtabs(4))

        end = len(lines)
        for j in range(i + 1, len(lines)):
            if fenced[j]:
                continue
            heading = _HEADING.match(lines[j])
            if heading:
                if heading_level is None or len(heading.group(1)) <= heading_level:
                    end = j
                    break
                continue
            if heading_level is None:
                item = _LIST_ITEM.match(lines[j])
                if item and len(item.group(1).expandtabs(4)) <= indent:
                    end = j
                    break

        return "\n".join(lines[i:end]).rstrip()
    return None


def extract_change_spec(
    changes_section: str,
    file_paths: list[str],
    workspace_files: Iterable[str] = DEFAULT_WORKSPACE_FILES,
) -> str:
    """
    Collect the Changes-section text for a batch of files.

    A list-item entry runs until the next item at the same or shallower
    indent (nested bullets belong to it) or the next heading. A heading entry
    runs until the next heading of the same or higher level. Files with no
    entry get a fallback note.
    """
    workspace_files = list(workspace_files)
    lines = changes_section.split("\n")
    fenced = _fence_mask(lines)

    blocks = []
    for fp in file_paths:
        target = normalize_workspace_path(fp, workspace_files)
        block = _capture_entry(lines, fenced, target, workspace_files)
        if block:
            blocks.append(block)
        else:
            blocks.append(f"File `{fp}`: not described in the Changes section; create or update it per the Objective.")

    return "\n\n".join(blocks)


# =============================================================================
# DECOMPOSITION
# =============================================================================

def _format_group_title(files: list[str]) -> str:
    if len(files) == 1:
        return posixpath.basename(files[0])
    directory = posixpath.dirname(files[0])
    if all(posixpath.dirname(f) == directory for f in files):
        return f"{directory or '.'}/ ({len(files)} files)"
    return f"{len(files)} files"


def _dedupe(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def _skeleton_phases(plan_file: str) -> list[PlanPhase]:
    return [
        PlanPhase(
            id="phase-1",
            title="Read and analyze plan",
            kind=PhaseKind.READ,
            description="Read the plan file and produce analysis notes. Do not modify anything.",
            context_files=[plan_file],
        ),
        PlanPhase(
            id="phase-2",
            title="Implement plan",
            kind=PhaseKind.IMPLEMENT,
            description="Execute the plan objectives. The plan names no specific files, so work across the project as needed.",
            depends_on=["phase-1"],
        ),
        PlanPhase(
            id="phase-3",
            title="Post-implementation audit",
            kind=PhaseKind.AUDIT,
            description="Audit all changes against the plan specification.",
            depends_on=["phase-2"],
            context_files=[plan_file],
        ),
    ]


def decompose_plan(
    plan_content: str,
    plan_id: str,
    plan_file: str,
    max_files_per_phase: int = DEFAULT_MAX_FILES_PER_PHASE,
    workspace_files: Iterable[str] = DEFAULT_WORKSPACE_FILES,
) -> PlanPhases:
    """
    Turn plan text into a fresh PlanPhases aggregate.

    Args:
        plan_content: Full plan markdown
        plan_id: Stable plan identifier (e.g. "plan-011")
        plan_file: Portable reference to the plan (e.g. "workspace/plans/plan-011.md")
        max_files_per_phase: Hard cap on files per implement phase
        workspace_files: Bare names that belong to the workspace root

    Returns:
        PlanPhases with every phase pending

    Raises:
        ValueError: If the generated graph is malformed (duplicate ids)
    """
    workspace_files = list(workspace_files)
    doc = parse_plan(plan_content)
    changes_section = get_section(doc, "Changes")

    manifest = extract_change_manifest(doc)
    raw_paths = manifest if manifest is not None else extract_file_paths(changes_section)
    file_paths = _dedupe(normalize_workspace_path(p, workspace_files) for p in raw_paths)

    if not file_paths:
        phases = _skeleton_phases(plan_file)
    else:
        phases = []
        impl_ids: list[str] = []
        for i, group in enumerate(group_files(file_paths, max_files_per_phase)):
            phase_id = f"phase-{i + 1}"
            phases.append(PlanPhase(
                id=phase_id,
                title=f"Implement {_format_group_title(group)}",
                kind=PhaseKind.IMPLEMENT,
                description="Implement changes for: " + ", ".join(f"`{f}`" for f in group),
                depends_on=[impl_ids[-1]] if impl_ids else [],
                context_files=group,
                change_spec=extract_change_spec(changes_section, group, workspace_files),
            ))
            impl_ids.append(phase_id)

        phases.append(PlanPhase(
            id=f"phase-{len(impl_ids) + 1}",
            title="Post-implementation audit",
            kind=PhaseKind.AUDIT,
            description="Audit all changes against the plan specification.",
            depends_on=list(impl_ids),
            context_files=_dedupe(f for phase in phases for f in phase.context_files),
        ))

    now = now_iso()
    return PlanPhases(
        plan_id=plan_id,
        plan_file=plan_file,
        plan_content_hash=compute_plan_hash(plan_content),
        created_at=now,
        updated_at=now,
        phases=phases,
    )
