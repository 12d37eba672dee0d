"""
Single-phase execution tests.

Test list:
1. test_tools_per_kind - Read/audit are read-only, implement can write and run Bash
2. test_implement_never_gets_workspace - Even when configured as an extra dir
3. test_prompt_sections - Objective, change spec, context files, instructions
4. test_injected_workspace_context - workspace/ files pasted in, missing noted
5. test_success_commits - One commit per phase with "{plan} {phase}: {title}"
6. test_failure_records_hashes - Partial changes fingerprinted, not committed
7. test_cancelled_outcome - Cancellation returns PENDING with the changed files
8. test_out_of_bounds_context - Escaping context file fails the phase
9. test_runtime_exception_fails_phase - Unexpected runtime errors are failures, not crashes
10. test_already_dirty_file_counts_when_edited - Content hashes, not path sets, decide what changed
11. test_revert_failed_attempt - Retry reverts only files untouched since the failure
"""

import asyncio

import pytest

from .conftest import SAMPLE_PLAN, FakeRuntime, error, writes
from .execution import (
    MAX_INJECTED_CHARS,
    PhaseExecutor,
    build_injected_context,
    build_phase_prompt,
    extra_dirs_for_phase,
    tools_for_phase,
)
from .schemas import PhaseKind, PhaseStatus, PlanPhase
from .vcs import hash_file_content, hash_modified_files


IMPLEMENT_PHASE = PlanPhase(
    id="phase-2",
    title="Implement 2 files",
    kind=PhaseKind.IMPLEMENT,
    description="Implement changes for: `src/limiter.py`, `tests/test_limiter.py`",
    depends_on=[],
    context_files=["src/limiter.py", "tests/test_limiter.py"],
    change_spec="- **`src/limiter.py`**: new TokenBucket class",
)


def _executor(runtime, project_root, workspace_root, vcs=None, **kwargs):
    return PhaseExecutor(runtime, "opus", project_root, workspace_root, vcs=vcs, **kwargs)


# =============================================================================
# GRANTS AND PROMPTS
# =============================================================================

def test_tools_per_kind():
    """
    Test 1: Tool grants follow the phase kind.
    """
    assert "Bash" in tools_for_phase(PhaseKind.IMPLEMENT)
    assert "Write" in tools_for_phase(PhaseKind.IMPLEMENT)
    for kind in (PhaseKind.READ, PhaseKind.AUDIT):
        tools = tools_for_phase(kind)
        assert set(tools) == {"Read", "Glob", "Grep"}


def test_implement_never_gets_workspace(tmp_path, workspace_root):
    """
    Test 2: The workspace is withheld from implement phases, granted to the rest.
    """
    shared = tmp_path / "shared"
    shared.mkdir()
    extra = [workspace_root, workspace_root / "plans", shared]

    implement_dirs = extra_dirs_for_phase(PhaseKind.IMPLEMENT, workspace_root, extra)
    assert implement_dirs == [shared]

    audit_dirs = extra_dirs_for_phase(PhaseKind.AUDIT, workspace_root, extra)
    assert audit_dirs[0] == workspace_root
    assert audit_dirs.count(workspace_root) == 1
    assert shared in audit_dirs


def test_prompt_sections():
    """
    Test 3: Each kind gets its own instructions on top of the shared sections.
    """
    prompt = build_phase_prompt(IMPLEMENT_PHASE, SAMPLE_PLAN)
    assert prompt.startswith("# phase-2: Implement 2 files")
    assert "Throttle outgoing API calls" in prompt
    assert "## Change Specification" in prompt
    assert "new TokenBucket class" in prompt
    assert "- `tests/test_limiter.py`" in prompt
    assert "Do not create commits" in prompt
    assert "## Progress" in prompt

    audit = IMPLEMENT_PHASE.model_copy(update={"kind": PhaseKind.AUDIT, "change_spec": None})
    audit_prompt = build_phase_prompt(audit, SAMPLE_PLAN)
    assert "**Severity:**" in audit_prompt
    assert "maxSeverity" in audit_prompt
    assert "## Change Specification" not in audit_prompt

    read = IMPLEMENT_PHASE.model_copy(update={"kind": PhaseKind.READ})
    assert "read-only" in build_phase_prompt(read, SAMPLE_PLAN)


def test_injected_workspace_context(project_root, workspace_root):
    """
    Test 4: Implement phases get workspace files pasted into the prompt.
    """
    (workspace_root / "AGENTS.md").write_text("x" * (MAX_INJECTED_CHARS + 10))
    phase = IMPLEMENT_PHASE.model_copy(update={
        "context_files": ["workspace/TOOLS.md", "workspace/AGENTS.md", "workspace/MEMORY.md", "src/limiter.py"],
    })

    injected = build_injected_context(phase, project_root, workspace_root)

    assert "### File: workspace/TOOLS.md\n```\n# Tools\n- git\n" in injected
    assert "... (truncated)" in injected
    assert "### File: workspace/MEMORY.md\n(File not found)" in injected
    assert "src/limiter.py" not in injected

    audit = phase.model_copy(update={"kind": PhaseKind.AUDIT})
    assert build_injected_context(audit, project_root, workspace_root) == ""


# =============================================================================
# EXECUTION
# =============================================================================

@pytest.mark.asyncio
async def test_success_commits(project_root, workspace_root, fake_vcs):
    """
    Test 5: A successful phase commits exactly the files it changed.
    """
    runtime = FakeRuntime(writes(project_root, {
        "src/limiter.py": "class TokenBucket: ...\n",
        "tests/test_limiter.py": "def test_bucket(): ...\n",
    }, text="Added TokenBucket"))
    executor = _executor(runtime, project_root, workspace_root, fake_vcs)

    outcome = await executor.execute(IMPLEMENT_PHASE, SAMPLE_PLAN, "plan-007")

    assert outcome.status == PhaseStatus.DONE
    assert outcome.output == "Added TokenBucket"
    assert outcome.modified_files == ["src/limiter.py", "tests/test_limiter.py"]
    assert outcome.git_commit == "c1"
    assert fake_vcs.commits == [("c1", "plan-007 phase-2: Implement 2 files", outcome.modified_files)]

    request = runtime.requests[0]
    assert request.cwd == project_root
    assert request.model == "opus"
    assert "Bash" in request.tools
    assert workspace_root not in request.extra_dirs


@pytest.mark.asyncio
async def test_success_commit_failure_is_not_fatal(project_root, workspace_root, fake_vcs):
    fake_vcs.fail_commit = True
    runtime = FakeRuntime(writes(project_root, {"src/limiter.py": "x\n"}))

    outcome = await _executor(runtime, project_root, workspace_root, fake_vcs).execute(
        IMPLEMENT_PHASE, SAMPLE_PLAN, "plan-007",
    )

    assert outcome.status == PhaseStatus.DONE
    assert outcome.git_commit is None
    assert outcome.modified_files == ["src/limiter.py"]


@pytest.mark.asyncio
async def test_failure_records_hashes(project_root, workspace_root, fake_vcs):
    """
    Test 6: A failed phase fingerprints its partial changes.
    """
    runtime = FakeRuntime(writes(project_root, {"src/limiter.py": "class Token"}, fail="agent crashed"))
    executor = _executor(runtime, project_root, workspace_root, fake_vcs)

    outcome = await executor.execute(IMPLEMENT_PHASE, SAMPLE_PLAN, "plan-007")

    assert outcome.status == PhaseStatus.FAILED
    assert outcome.error == "agent crashed"
    assert outcome.modified_files == ["src/limiter.py"]
    assert outcome.failure_hashes == {
        "src/limiter.py": hash_file_content(project_root / "src" / "limiter.py"),
    }
    assert fake_vcs.commits == []


@pytest.mark.asyncio
async def test_failure_without_changes(project_root, workspace_root, fake_vcs):
    runtime = FakeRuntime(error("nope"))
    outcome = await _executor(runtime, project_root, workspace_root, fake_vcs).execute(
        IMPLEMENT_PHASE, SAMPLE_PLAN, "plan-007",
    )
    assert outcome.status == PhaseStatus.FAILED
    assert outcome.modified_files == []
    assert outcome.failure_hashes is None


@pytest.mark.asyncio
async def test_cancelled_outcome(project_root, workspace_root, fake_vcs):
    """
    Test 7: Cancellation is reported as PENDING, with what changed on disk.
    """
    cancel = asyncio.Event()

    def cancel_midway(request):
        (project_root / "src" / "limiter.py").write_text("half")
        cancel.set()
        return "partial"

    executor = _executor(FakeRuntime(cancel_midway), project_root, workspace_root, fake_vcs)
    outcome = await executor.execute(IMPLEMENT_PHASE, SAMPLE_PLAN, "plan-007", cancel_event=cancel)

    assert outcome.cancelled
    assert outcome.status == PhaseStatus.PENDING
    assert outcome.modified_files == ["src/limiter.py"]
    assert fake_vcs.commits == []


@pytest.mark.asyncio
async def test_out_of_bounds_context(project_root, workspace_root):
    """
    Test 8: A workspace context file escaping the roots fails the phase.
    """
    phase = IMPLEMENT_PHASE.model_copy(update={"context_files": ["workspace/../../../etc/passwd"]})
    runtime = FakeRuntime()

    outcome = await _executor(runtime, project_root, workspace_root).execute(phase, SAMPLE_PLAN, "plan-007")

    assert outcome.status == PhaseStatus.FAILED
    assert "outside allowed roots" in outcome.error
    assert runtime.requests == []


@pytest.mark.asyncio
async def test_without_version_control(project_root, workspace_root):
    runtime = FakeRuntime(writes(project_root, {"src/limiter.py": "x\n"}))
    outcome = await _executor(runtime, project_root, workspace_root).execute(IMPLEMENT_PHASE, SAMPLE_PLAN, "plan-007")

    assert outcome.status == PhaseStatus.DONE
    assert outcome.modified_files == []
    assert outcome.git_commit is None


@pytest.mark.asyncio
async def test_runtime_exception_fails_phase(project_root, workspace_root, fake_vcs, caplog):
    """
    Test 9: Whatever the runtime raises becomes a FAILED outcome.
    """
    def explode(request):
        (project_root / "src" / "limiter.py").write_text("class Tok")
        raise RuntimeError("runtime exploded")

    executor = _executor(FakeRuntime(explode), project_root, workspace_root, fake_vcs)
    with caplog.at_level("ERROR", logger="phaserun.execution"):
        outcome = await executor.execute(IMPLEMENT_PHASE, SAMPLE_PLAN, "plan-007")

    assert outcome.status == PhaseStatus.FAILED
    assert outcome.error == "RuntimeError: runtime exploded"
    assert outcome.modified_files == ["src/limiter.py"]
    assert set(outcome.failure_hashes) == {"src/limiter.py"}
    assert "agent runtime raised RuntimeError" in caplog.text


@pytest.mark.asyncio
async def test_already_dirty_file_counts_when_edited(project_root, workspace_root, fake_vcs):
    """
    Test 10: A file that was dirty before the run is committed once the run edits it.
    """
    (project_root / "src" / "client" / "retry.py").write_text("RETRIES = ")
    (project_root / "src" / "client" / "http.py").write_text("untouched by the agent\n")
    runtime = FakeRuntime(writes(project_root, {"src/client/retry.py": "RETRIES = 5\n"}))

    outcome = await _executor(runtime, project_root, workspace_root, fake_vcs).execute(
        IMPLEMENT_PHASE, SAMPLE_PLAN, "plan-007",
    )

    assert outcome.status == PhaseStatus.DONE
    assert outcome.modified_files == ["src/client/retry.py"]
    assert outcome.git_commit == "c1"
    assert fake_vcs.changed_files() == {"src/client/http.py"}


# =============================================================================
# RETRY REVERT
# =============================================================================

@pytest.mark.asyncio
async def test_revert_failed_attempt(project_root, workspace_root, fake_vcs):
    """
    Test 11: Files still matching the failure fingerprint are reverted.

    Verifies:
    - A tracked file goes back to its committed content
    - A file the failed attempt created is removed
    - A file edited since the failure is kept, with a progress note
    """
    retry = project_root / "src" / "client" / "retry.py"
    http = project_root / "src" / "client" / "http.py"
    limiter = project_root / "src" / "limiter.py"
    retry.write_text("RETRIES = ")
    http.write_text("def get(url):\n    limiter.acq")
    limiter.write_text("class Tok")
    files = ["src/client/http.py", "src/client/retry.py", "src/limiter.py"]
    failed = IMPLEMENT_PHASE.model_copy(update={
        "status": PhaseStatus.FAILED,
        "modified_files": files,
        "failure_hashes": hash_modified_files(files, project_root, workspace_root),
    })
    http.write_text("def get(url):\n    limiter.acquire()\n")
    messages = []

    async def progress(message):
        messages.append(message)

    executor = _executor(FakeRuntime(), project_root, workspace_root, fake_vcs)
    reverted = await executor.revert_failed_attempt(failed, progress)

    assert reverted == ["src/client/retry.py", "src/limiter.py"]
    assert retry.read_text() == "RETRIES = 3\n"
    assert not limiter.exists()
    assert http.read_text() == "def get(url):\n    limiter.acquire()\n"
    assert any("Skipping revert of `src/client/http.py`" in m for m in messages)
    assert fake_vcs.reverts == [reverted]


@pytest.mark.asyncio
async def test_revert_needs_fingerprints(project_root, workspace_root, fake_vcs):
    failed = IMPLEMENT_PHASE.model_copy(update={
        "status": PhaseStatus.FAILED,
        "modified_files": ["src/client/retry.py"],
    })
    executor = _executor(FakeRuntime(), project_root, workspace_root, fake_vcs)

    assert await executor.revert_failed_attempt(failed) == []
    assert await _executor(FakeRuntime(), project_root, workspace_root).revert_failed_attempt(failed) == []
    assert fake_vcs.reverts == []
