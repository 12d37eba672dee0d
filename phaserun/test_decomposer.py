"""
Plan parsing and decomposition tests.

Test list:
1. test_plan_hash - Stable 16-hex digest, different for different text
2. test_parse_plan_ignores_fenced_headings - ## inside ``` is not a section
3. test_extract_file_paths - List items, headings, emphasis; rejects non-paths
4. test_change_manifest_wins - Explicit manifest used verbatim
5. test_group_files - Test pairing, directory clustering, size cap
6. test_extract_change_spec - Nested bullets kept, fallback note for missing files
7. test_decompose_end_to_end - Implement batches chained, one audit over all
8. test_decompose_skeleton - No files -> read / implement / audit
9. test_decompose_is_deterministic - Same text, same phases
10. test_workspace_files_normalized - TOOLS.md -> workspace/TOOLS.md
"""

import pytest

from .conftest import NO_FILES_PLAN, SAMPLE_PLAN
from .decomposer import (
    compute_plan_hash,
    decompose_plan,
    extract_change_spec,
    extract_file_paths,
    group_files,
    is_likely_file_path,
)
from .plan_parser import (
    derive_plan_id,
    extract_change_manifest,
    extract_objective,
    get_section,
    parse_plan,
)
from .schemas import PhaseKind, PhaseStatus


# =============================================================================
# HASHING AND PARSING
# =============================================================================

def test_plan_hash():
    """
    Test 1: The plan hash is a stable 16-hex fingerprint.
    """
    h = compute_plan_hash(SAMPLE_PLAN)
    assert h == compute_plan_hash(SAMPLE_PLAN)
    assert len(h) == 16
    assert all(c in "0123456789abcdef" for c in h)
    assert h != compute_plan_hash(SAMPLE_PLAN + " ")
    assert compute_plan_hash("a") != compute_plan_hash("b")


def test_parse_plan_ignores_fenced_headings():
    """
    Test 2: Headings inside fenced code are content, not structure.
    """
    plan = """# Plan: Docs
**ID:** plan-003
**Project:** docs-site

## Objective
Document the format:

```markdown
## Changes
- `fake/path.py`: not real
```

## Changes
- `real/path.py`: real change
"""
    doc = parse_plan(plan)

    assert doc.title == "Docs"
    assert doc.metadata == {"ID": "plan-003", "Project": "docs-site"}
    assert list(doc.sections) == ["Objective", "Changes"]
    assert "## Changes" in doc.sections["Objective"]
    assert extract_file_paths(get_section(doc, "changes")) == ["real/path.py"]


def test_extract_objective_and_plan_id(tmp_path):
    assert extract_objective(SAMPLE_PLAN).startswith("Throttle outgoing API calls")
    assert extract_objective("# Plan: nothing\n") == "(no objective found in plan)"

    assert derive_plan_id(tmp_path / "whatever.md", SAMPLE_PLAN) == "plan-007"
    assert derive_plan_id(tmp_path / "plan-042-cleanup.md", NO_FILES_PLAN.replace("**ID:** plan-008\n", "")) == "plan-042"
    assert derive_plan_id(tmp_path / "cleanup.md", "# Plan: x\n") == "cleanup"


# =============================================================================
# FILE EXTRACTION
# =============================================================================

def test_extract_file_paths():
    """
    Test 3: File references are found in every supported form.

    Verifies:
    - Bulleted, numbered, heading and emphasis forms are recognized
    - Type names, env vars, quoted literals and calls are rejected
    - Results are deduplicated in order of first mention
    """
    changes = """
- `src/a.py`: first
1. `src/b.ts`: numbered
### `docs/guide.md`
**`Makefile.am`** gets a new target
_`config/app.yaml`_
- `PlanPhase`: type name, not a file
- `RATE_LIMIT_PER_SEC`: env var
- `'pending'`: quoted literal
- `run_all()`: function call
- `src/a.py`: mentioned again
- `has space.py`: whitespace
Some prose mentioning `src/ignored.py` mid-sentence.
"""
    assert extract_file_paths(changes) == [
        "src/a.py",
        "src/b.ts",
        "docs/guide.md",
        "Makefile.am",
        "config/app.yaml",
    ]


@pytest.mark.parametrize("candidate, expected", [
    ("src/limiter.py", True),
    ("README.md", True),
    ("scripts/deploy", True),
    ("PlanPhase", False),
    ("MAX_RETRIES", False),
    ('"done"', False),
    ("--verbose", False),
    ("https://example.com/x.js", False),
    ("foo", False),
])
def test_is_likely_file_path(candidate, expected):
    assert is_likely_file_path(candidate) is expected


def test_change_manifest_wins():
    """
    Test 4: An explicit Change Manifest is used verbatim.
    """
    plan = """# Plan: Manifest
## Objective
Do it.

## Change Manifest
```json
["lib/one.py", "lib/two.py", "TOOLS.md"]
```

## Changes
- `lib/ignored.py`: heuristic would find this
"""
    doc = parse_plan(plan)
    assert extract_change_manifest(doc) == ["lib/one.py", "lib/two.py", "TOOLS.md"]

    phases = decompose_plan(plan, "plan-009", "workspace/plans/plan-009.md")
    files = [f for p in phases.phases if p.kind == PhaseKind.IMPLEMENT for f in p.context_files]
    assert files == ["lib/one.py", "lib/two.py", "workspace/TOOLS.md"]


def test_manifest_entries_untouched():
    plan = '## Change Manifest\n```json\n["lib/a b.py", " lib/c.py", "lib/c.py"]\n```\n'
    assert extract_change_manifest(parse_plan(plan)) == ["lib/a b.py", " lib/c.py", "lib/c.py"]


def test_bad_manifest_falls_back():
    plan = "## Change Manifest\n```json\n{\"not\": \"a list\"}\n```\n\n## Changes\n- `lib/x.py`: change\n"
    assert extract_change_manifest(parse_plan(plan)) is None
    phases = decompose_plan(plan, "plan-010", "plan-010.md")
    assert phases.phases[0].context_files == ["lib/x.py"]


# =============================================================================
# GROUPING
# =============================================================================

def test_group_files():
    """
    Test 5: Module/test pairing, directory clustering, hard cap.
    """
    files = [
        "src/a.ts",
        "src/b.ts",
        "src/c.ts",
        "src/c.test.ts",
        "pkg/util.py",
        "tests/test_util.py",
    ]
    groups = group_files(files, max_per_group=5)

    assert ["src/c.ts", "src/c.test.ts"] in groups
    assert ["pkg/util.py", "tests/test_util.py"] in groups
    assert ["src/a.ts", "src/b.ts"] in groups
    assert sorted(f for g in groups for f in g) == sorted(files)

    capped = group_files([f"src/f{i}.py" for i in range(7)], max_per_group=3)
    assert [len(g) for g in capped] == [3, 3, 1]
    assert all(len(g) <= 3 for g in capped)


def test_group_files_merges_sibling_directories():
    groups = group_files(["src/api/a.py", "src/db/b.py", "docs/c.md"], max_per_group=5)
    assert groups == [["src/api/a.py", "src/db/b.py"], ["docs/c.md"]]

    # Over the cap: siblings stay apart
    groups = group_files(["src/api/a.py", "src/api/b.py", "src/db/c.py"], max_per_group=2)
    assert groups == [["src/api/a.py", "src/api/b.py"], ["src/db/c.py"]]


def test_group_files_rejects_bad_cap():
    with pytest.raises(ValueError):
        group_files(["a.py"], 0)


# =============================================================================
# CHANGE SPECS
# =============================================================================

def test_extract_change_spec():
    """
    Test 6: Change specs carry each file's own entry.

    Verifies:
    - Nested bullets belong to their parent entry
    - The next same-level item ends the entry
    - Undescribed files get a fallback note
    """
    changes = get_section(parse_plan(SAMPLE_PLAN), "Changes")
    spec = extract_change_spec(changes, ["src/limiter.py", "src/missing.py"])

    assert "new TokenBucket class" in spec
    assert "`acquire()` blocks until a token is free" in spec
    assert "RATE_LIMIT_PER_SEC" in spec
    assert "unit tests for TokenBucket" not in spec
    assert "File `src/missing.py`: not described in the Changes section" in spec


def test_change_spec_heading_entries():
    changes = """### `src/a.py`
Rewrite the parser.
- keep the public API
#### Details
Use a state machine.
### `src/b.py`
Unrelated.
"""
    spec = extract_change_spec(changes, ["src/a.py"])
    assert "keep the public API" in spec
    assert "Use a state machine." in spec
    assert "Unrelated." not in spec


# =============================================================================
# DECOMPOSITION
# =============================================================================

def test_decompose_end_to_end():
    """
    Test 7: Two same-directory files plus a module with its test.

    Verifies:
    - Implement phases respect the cap and are chained
    - Exactly one audit phase, depending on every implement phase
    - The audit sees the union of all context files
    """
    phases = decompose_plan(SAMPLE_PLAN, "plan-007", "workspace/plans/plan-007.md", max_files_per_phase=5)

    implement = [p for p in phases.phases if p.kind == PhaseKind.IMPLEMENT]
    audits = [p for p in phases.phases if p.kind == PhaseKind.AUDIT]

    assert [p.context_files for p in implement] == [
        ["src/client/http.py", "src/client/retry.py"],
        ["src/limiter.py", "tests/test_limiter.py"],
    ]
    assert implement[0].depends_on == []
    assert implement[1].depends_on == [implement[0].id]
    assert all(p.status == PhaseStatus.PENDING for p in phases.phases)

    assert len(audits) == 1
    assert phases.phases[-1] is audits[0]
    assert audits[0].depends_on == [p.id for p in implement]
    assert sorted(audits[0].context_files) == sorted(f for p in implement for f in p.context_files)

    assert phases.plan_content_hash == compute_plan_hash(SAMPLE_PLAN)
    assert "back off on 429" in implement[0].change_spec


def test_decompose_respects_cap():
    phases = decompose_plan(SAMPLE_PLAN, "plan-007", "plan-007.md", max_files_per_phase=1)
    implement = [p for p in phases.phases if p.kind == PhaseKind.IMPLEMENT]
    assert len(implement) == 4
    assert all(len(p.context_files) == 1 for p in implement)
    assert phases.phases[-1].depends_on == [p.id for p in implement]


def test_decompose_skeleton():
    """
    Test 8: A plan with no files gets read -> implement -> audit.
    """
    phases = decompose_plan(NO_FILES_PLAN, "plan-008", "workspace/plans/plan-008.md")

    assert [(p.id, p.kind) for p in phases.phases] == [
        ("phase-1", PhaseKind.READ),
        ("phase-2", PhaseKind.IMPLEMENT),
        ("phase-3", PhaseKind.AUDIT),
    ]
    read, implement, audit = phases.phases
    assert read.context_files == ["workspace/plans/plan-008.md"]
    assert implement.context_files == []
    assert implement.depends_on == ["phase-1"]
    assert audit.depends_on == ["phase-2"]
    assert audit.context_files == ["workspace/plans/plan-008.md"]


def test_decompose_is_deterministic():
    """
    Test 9: Identical text yields identical phases.
    """
    first = decompose_plan(SAMPLE_PLAN, "plan-007", "plan-007.md")
    second = decompose_plan(SAMPLE_PLAN, "plan-007", "plan-007.md")

    assert first.phases == second.phases
    assert first.plan_content_hash == second.plan_content_hash


def test_workspace_files_normalized():
    """
    Test 10: Bare workspace file names get the workspace/ prefix once.
    """
    plan = "## Changes\n- `TOOLS.md`: add the new tool\n- `workspace/AGENTS.md`: note it\n- `docs/TOOLS.md`: unrelated\n"
    phases = decompose_plan(plan, "plan-012", "plan-012.md", max_files_per_phase=2)

    assert phases.phases[0].context_files == ["workspace/TOOLS.md", "workspace/AGENTS.md"]
    assert "add the new tool" in phases.phases[0].change_spec
    assert phases.phases[1].context_files == ["docs/TOOLS.md"]
