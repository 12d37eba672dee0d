"""
Phase state persistence.

WHAT THIS FILE DOES:
-------------------
Saves and loads the PlanPhases aggregate for one plan as two files:

    <state_dir>/<plan_id>-phases.json   authoritative, versioned
    <state_dir>/<plan_id>-phases.md     human-readable rendering

Both are written atomically (temp file in the same directory, fsync, rename),
so a reader never sees a half-written file.

READ PATH:
---------
    JSON  --decode ok-->  validate  -->  PlanPhases
      |
      decode failed (or JSON missing, rendering present)
      v
    markdown rendering  --parse ok-->  rewrite JSON (self-heal)  -->  PlanPhases
      |
      parse failed
      v
    PhaseStateError

Validation is strict everywhere: an unknown status, kind or format version is
a PhaseStateError, never a silent default.
"""

import contextlib
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .schemas import PlanPhases


logger = logging.getLogger("phaserun.store")

FORMAT_VERSION = 1


class PhaseStateError(ValueError):
    """Phase state on disk is malformed and could not be recovered."""


# =============================================================================
# ATOMIC WRITES
# =============================================================================

def atomic_write(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` so readers see the old or new file, never a mix."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


# =============================================================================
# JSON
# =============================================================================

def phases_to_json(phases: PlanPhases) -> str:
    data = {"version": FORMAT_VERSION}
    data.update(phases.model_dump(mode="json", by_alias=True, exclude_none=True))
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def _validate(data: Any) -> PlanPhases:
    try:
        return PlanPhases.model_validate(data)
    except ValidationError as e:
        raise PhaseStateError(f"Invalid phase state: {e}") from e


def phases_from_json(text: str) -> PlanPhases:
    """
    Decode and validate a JSON state document.

    Raises:
        json.JSONDecodeError: If the text is not JSON at all
        PhaseStateError: If it is JSON but not a valid version-1 document
    """
    data = json.loads(text)
    if not isinstance(data, dict):
        raise PhaseStateError("Phase state must be a JSON object")

    version = data.pop("version", None)
    if version != FORMAT_VERSION:
        raise PhaseStateError(f"Unsupported phase state version: {version!r}")

    return _validate(data)


# =============================================================================
# MARKDOWN RENDERING
# =============================================================================
# Layout:
#
#   # Plan phases: plan-011
#
#   **Plan ID:** plan-011
#   **Plan file:** workspace/plans/plan-011.md
#   ...
#
#   ## Phase phase-1
#   **Title:** Implement src/ (2 files)
#   **Kind:** implement
#   **Depends on:** []
#   **Description:**
#   ```
#   free text
#   ```
#
# List and map fields are inline JSON. Text that is empty, multi-line or
# padded with whitespace goes in a fence longer than any backtick run inside
# it, so agent output full of markdown round-trips unchanged.

_HEADER_FIELDS = [
    ("Plan ID", "plan_id"),
    ("Plan file", "plan_file"),
    ("Plan content hash", "plan_content_hash"),
    ("Created", "created_at"),
    ("Updated", "updated_at"),
    ("Format version", "version"),
]

_PHASE_FIELDS = [
    ("Title", "title"),
    ("Kind", "kind"),
    ("Status", "status"),
    ("Depends on", "depends_on"),
    ("Context files", "context_files"),
    ("Git commit", "git_commit"),
    ("Modified files", "modified_files"),
    ("Failure hashes", "failure_hashes"),
    ("Description", "description"),
    ("Change spec", "change_spec"),
    ("Output", "output"),
    ("Error", "error"),
]

_JSON_FIELDS = {"depends_on", "context_files", "modified_files", "failure_hashes", "version"}
_ALWAYS_FENCED = {"description", "change_spec", "output", "error"}

_FIELD_LINE = re.compile(r"^\*\*(?P<label>[^*]+):\*\*(?: (?P<value>.*))?$")
_PHASE_HEADING = re.compile(r"^## Phase (?P<id>\S+)\s*$")
_BACKTICK_RUN = re.compile(r"`+")


def _fence_for(text: str) -> str:
    longest = max((len(run) for run in _BACKTICK_RUN.findall(text)), default=0)
    return "`" * max(3, longest + 1)


def _render_field(label: str, name: str, value: Any) -> list[str]:
    if value is None:
        return []
    if name in _JSON_FIELDS:
        return [f"**{label}:** {json.dumps(value, ensure_ascii=False)}"]

    text = value.value if hasattr(value, "value") else str(value)
    if name not in _ALWAYS_FENCED and text and "\n" not in text and text == text.strip():
        return [f"**{label}:** {text}"]

    fence = _fence_for(text)
    lines = [f"**{label}:**", fence]
    if text:
        lines.extend(text.split("\n"))
    lines.append(fence)
    return lines


def render_markdown(phases: PlanPhases) -> str:
    lines = [f"# Plan phases: {phases.plan_id}", ""]

    header = phases.model_dump()
    header["version"] = FORMAT_VERSION
    for label, name in _HEADER_FIELDS:
        lines.extend(_render_field(label, name, header[name]))

    for phase in phases.phases:
        lines.extend(["", f"## Phase {phase.id}"])
        for label, name in _PHASE_FIELDS:
            lines.extend(_render_field(label, name, getattr(phase, name)))

    return "\n".join(lines) + "\n"


def _parse_fields(lines: list[str], start: int, labels: dict[str, str]) -> tuple[dict[str, Any], int]:
    """Read ``**Label:** value`` fields from ``start`` until the next phase heading."""
    fields: dict[str, Any] = {}
    i = start
    while i < len(lines):
        line = lines[i]
        if _PHASE_HEADING.match(line):
            break
        if not line.strip():
            i += 1
            continue

        match = _FIELD_LINE.match(line)
        if not match:
            raise PhaseStateError(f"Unexpected line {i + 1} in phase rendering: {line!r}")
        label = match.group("label")
        if label not in labels:
            raise PhaseStateError(f"Unknown field {label!r} on line {i + 1}")
        name = labels[label]
        if name in fields:
            raise PhaseStateError(f"Duplicate field {label!r} on line {i + 1}")

        value = match.group("value")
        if value:
            if name in _JSON_FIELDS:
                try:
                    fields[name] = json.loads(value)
                except json.JSONDecodeError as e:
                    raise PhaseStateError(f"Bad JSON for {label!r} on line {i + 1}") from e
            else:
                fields[name] = value
            i += 1
            continue

        # Fenced value: the closing line is exactly the opening fence
        if i + 1 >= len(lines) or not lines[i + 1].startswith("```"):
            raise PhaseStateError(f"Field {label!r} on line {i + 1} has no value")
        fence = lines[i + 1]
        try:
            end = lines.index(fence, i + 2)
        except ValueError:
            raise PhaseStateError(f"Unterminated block for {label!r} on line {i + 1}") from None
        fields[name] = "\n".join(lines[i + 2:end])
        i = end + 1

    return fields, i


def parse_markdown(text: str) -> PlanPhases:
    """
    Rebuild PlanPhases from its markdown rendering.

    Raises:
        PhaseStateError: If the rendering is malformed or fails validation
    """
    lines = text.split("\n")
    if not lines or not lines[0].startswith("# Plan phases:"):
        raise PhaseStateError("Not a phase state rendering (missing title line)")

    header, i = _parse_fields(lines, 1, dict(_HEADER_FIELDS))
    if header.pop("version", None) != FORMAT_VERSION:
        raise PhaseStateError("Unsupported or missing format version in rendering")

    phase_labels = dict(_PHASE_FIELDS)
    phases: list[dict[str, Any]] = []
    while i < len(lines):
        heading = _PHASE_HEADING.match(lines[i])
        if not heading:
            i += 1
            continue
        fields, i = _parse_fields(lines, i + 1, phase_labels)
        fields["id"] = heading.group("id")
        phases.append(fields)

    header["phases"] = phases
    return _validate(header)


# =============================================================================
# STORE
# =============================================================================

class PhaseStore:
    """
    Reads and writes phase state files in one directory.

    Example:
        store = PhaseStore(Path("~/.phaserun/workspace/plans").expanduser())
        store.save(phases)
        phases = store.load("plan-011")
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    def json_path(self, plan_id: str) -> Path:
        return self.state_dir / f"{plan_id}-phases.json"

    def markdown_path(self, plan_id: str) -> Path:
        return self.state_dir / f"{plan_id}-phases.md"

    def exists(self, plan_id: str) -> bool:
        return self.json_path(plan_id).exists() or self.markdown_path(plan_id).exists()

    def save(self, phases: PlanPhases) -> None:
        atomic_write(self.json_path(phases.plan_id), phases_to_json(phases))
        atomic_write(self.markdown_path(phases.plan_id), render_markdown(phases))

    def load(self, plan_id: str) -> Optional[PlanPhases]:
        """
        Load phase state, recovering from a corrupt JSON file if possible.

        Returns:
            The stored PlanPhases, or None if no state exists for the plan

        Raises:
            PhaseStateError: If the state is malformed and cannot be recovered
        """
        json_path = self.json_path(plan_id)
        md_path = self.markdown_path(plan_id)

        if json_path.exists():
            try:
                return phases_from_json(json_path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                reason = f"{json_path.name} is not valid JSON ({e})"
        elif md_path.exists():
            reason = f"{json_path.name} is missing"
        else:
            return None

        if not md_path.exists():
            raise PhaseStateError(f"{reason} and no markdown rendering exists to recover from")

        try:
            md_text = md_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise PhaseStateError(f"{reason} and {md_path.name} is unreadable: {e}") from e
        phases = parse_markdown(md_text)

        if phases.plan_id != plan_id:
            raise PhaseStateError(f"{md_path.name} holds state for {phases.plan_id}, expected {plan_id}")

        atomic_write(json_path, phases_to_json(phases))
        logger.warning(f"Recovered phase state for {plan_id} from {md_path.name}: {reason}")
        return phases

