"""
Markdown plan parsing.

Plans are markdown documents:

    # Plan: Add a plan manager
    **ID:** plan-011
    **Project:** discoclaw

    ## Objective
    ...
    ## Changes
    ...
    ## Risks
    ...

Section scanning is fence-aware: a ``## Heading`` inside a fenced code block
is example content, not structure.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


_SECTION_HEADING = re.compile(r"^##\s+(.+?)\s*$")
_PLAN_ID_PREFIX = re.compile(r"^(plan-\d+)")


def is_fence(line: str) -> bool:
    return line.lstrip().startswith("```")


@dataclass
class ParsedPlan:
    """A plan split into title, leading metadata and level-2 sections."""
    title: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    sections: dict[str, str] = field(default_factory=dict)


def _parse_metadata_line(line: str) -> Optional[tuple[str, str]]:
    """``**Key:** value`` -> (key, value)."""
    stripped = line.strip()
    if not stripped.startswith("**"):
        return None
    sep = stripped.find(":**")
    if sep == -1:
        return None
    key = stripped[2:sep].strip()
    if not key:
        return None
    return key, stripped[sep + 3:].strip()


def parse_plan(content: str) -> ParsedPlan:
    """
    Split a plan into title, metadata and sections.

    Metadata lines are only recognized before the first section. Section
    bodies are stripped; repeated section names keep the first occurrence.
    """
    doc = ParsedPlan()
    in_fence = False
    current: Optional[str] = None
    body: list[str] = []

    def flush() -> None:
        if current is not None and current not in doc.sections:
            doc.sections[current] = "\n".join(body).strip()

    for line in content.split("\n"):
        if is_fence(line):
            in_fence = not in_fence
        elif not in_fence:
            if line.startswith("# Plan:") and not doc.title:
                doc.title = line[len("# Plan:"):].strip()

            if current is None:
                meta = _parse_metadata_line(line)
                if meta:
                    doc.metadata.setdefault(meta[0], meta[1])

            heading = _SECTION_HEADING.match(line)
            if heading:
                flush()
                current = heading.group(1).strip()
                body = []
                continue

        if current is not None:
            body.append(line)

    flush()
    return doc


def get_section(doc: ParsedPlan, *names: str) -> str:
    """First non-empty section among ``names`` (case-insensitive)."""
    lowered = {name.lower(): text for name, text in doc.sections.items()}
    for name in names:
        text = lowered.get(name.lower())
        if text:
            return text
    return ""


def extract_objective(plan_content: str) -> str:
    return get_section(parse_plan(plan_content), "Objective") or "(no objective found in plan)"


def first_fenced_block(text: str) -> Optional[str]:
    """Body of the first fenced code block in ``text``, if any."""
    lines = text.split("\n")
    start = None
    for i, line in enumerate(lines):
        if is_fence(line):
            if start is None:
                start = i
            else:
                return "\n".join(lines[start + 1:i])
    return None


def extract_change_manifest(doc: ParsedPlan) -> Optional[list[str]]:
    """
    File list from an explicit ``## Change Manifest`` section.

    The section must contain a fenced block whose body is a JSON array of
    strings. Anything else (no section, no block, bad JSON, wrong shape)
    returns None so the caller falls back to heuristic extraction.
    """
    section = get_section(doc, "Change Manifest")
    if not section:
        return None

    block = first_fenced_block(section)
    if block is None:
        return None

    try:
        data = json.loads(block)
    except json.JSONDecodeError:
        return None

    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        return None

    return data


def derive_plan_id(plan_path: Path, plan_content: str) -> str:
    """
    Plan id from ``**ID:**`` metadata, a ``plan-NNN`` file prefix, or the stem.
    """
    doc = parse_plan(plan_content)
    explicit = doc.metadata.get("ID", "").strip()
    if explicit:
        return explicit.split()[0]

    stem = Path(plan_path).stem
    match = _PLAN_ID_PREFIX.match(stem)
    return match.group(1) if match else stem
