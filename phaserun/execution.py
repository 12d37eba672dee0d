"""
Phase Execution for phaserun.

WHAT THIS FILE DOES:
-------------------
Runs exactly one phase through the agent runtime and records what happened:

    1. Fingerprint the working tree's changed files (if under version control)
    2. Build the role-specific prompt and tool list for the phase kind
    3. Invoke the agent and collect its final text
    4. Files whose fingerprint changed are the phase's modified files
    5. Success: commit the new changes, one commit per phase
       Failure: fingerprint the partially written files

Retrying a failed phase first reverts the files it left behind, as long as
they still match the failure fingerprints (revert_failed_attempt).

PHASE KINDS:
-----------
    read       Read, Glob, Grep               workspace readable
    implement  Read, Write, Edit, Glob, Grep, Bash   workspace NOT granted
    audit      Read, Glob, Grep               workspace readable

The executor does not persist anything. PhaseEngine turns the returned
ExecutionOutcome into a phase state transition.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .plan_parser import extract_objective
from .runtime import (
    AgentCancelledError,
    AgentRunError,
    AgentRuntime,
    EventObserver,
    InvokeRequest,
    collect_runtime_text,
)
from .schemas import PhaseKind, PhaseStatus, PlanPhase
from .vcs import (
    VersionControl,
    VersionControlError,
    changed_between,
    fingerprint_changes,
    hash_file_content,
    hash_modified_files,
)
from .workspace import WORKSPACE_PREFIX, PathOutOfBoundsError, resolve_context_path


logger = logging.getLogger("phaserun.execution")

ProgressCallback = Callable[[str], Awaitable[None]]

READ_TOOLS = ["Read", "Glob", "Grep"]
IMPLEMENT_TOOLS = ["Read", "Write", "Edit", "Glob", "Grep", "Bash"]
AUDIT_TOOLS = ["Read", "Glob", "Grep"]

# Injected workspace files larger than this are truncated
MAX_INJECTED_CHARS = 50_000


# =============================================================================
# PROMPTS AND GRANTS
# =============================================================================

def tools_for_phase(kind: PhaseKind) -> list[str]:
    if kind == PhaseKind.IMPLEMENT:
        return list(IMPLEMENT_TOOLS)
    if kind == PhaseKind.AUDIT:
        return list(AUDIT_TOOLS)
    return list(READ_TOOLS)


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def extra_dirs_for_phase(kind: PhaseKind, workspace_root: Path, extra_dirs: list[Path]) -> list[Path]:
    """
    Extra directories the agent may access for a phase.

    Implement phases never get the workspace (plans and notes live there);
    read and audit phases get it first so they can read the plan.
    """
    workspace_root = Path(workspace_root)
    real_workspace = workspace_root.resolve()

    if kind == PhaseKind.IMPLEMENT:
        allowed = []
        for directory in extra_dirs:
            if _is_within(Path(directory).resolve(), real_workspace):
                logger.warning(f"Not granting {directory} to implement phase: it is inside the workspace")
                continue
            allowed.append(Path(directory))
        return allowed

    dirs = [workspace_root]
    for directory in extra_dirs:
        if Path(directory).resolve() != real_workspace:
            dirs.append(Path(directory))
    return dirs


def build_injected_context(phase: PlanPhase, project_root: Path, workspace_root: Path) -> str:
    """
    Pre-read the workspace files an implement phase refers to.

    Implement phases cannot reach the workspace themselves, so the content of
    their ``workspace/`` context files is pasted into the prompt.

    Raises:
        PathOutOfBoundsError: If a context file escapes the permitted roots
    """
    if phase.kind != PhaseKind.IMPLEMENT:
        return ""

    blocks = []
    for file_path in phase.context_files:
        if not file_path.startswith(WORKSPACE_PREFIX):
            continue
        resolved = resolve_context_path(file_path, project_root, workspace_root)
        try:
            content = resolved.read_text(encoding="utf-8")
        except FileNotFoundError:
            blocks.append(f"### File: {file_path}\n(File not found)")
            continue
        if len(content) > MAX_INJECTED_CHARS:
            content = content[:MAX_INJECTED_CHARS] + "\n... (truncated)"
        longest = max((len(run) for run in re.findall(r"`+", content)), default=0)
        fence = "`" * max(3, longest + 1)
        blocks.append(f"### File: {file_path}\n{fence}\n{content}\n{fence}")

    return "\n\n".join(blocks)


def _file_list(files: list[str]) -> list[str]:
    return [f"- `{f}`" for f in files]


def build_phase_prompt(phase: PlanPhase, plan_content: str, injected_context: str = "") -> str:
    """
    Build the agent prompt for one phase.

    Args:
        phase: Phase to run
        plan_content: Full plan markdown (for the objective)
        injected_context: Pre-read file contents (implement phases)

    Returns:
        Prompt text
    """
    lines = [
        f"# {phase.id}: {phase.title}",
        "",
        "## Objective",
        "",
        extract_objective(plan_content),
        "",
    ]

    if injected_context:
        lines += ["## Pre-read Context Files", "", injected_context, ""]

    lines += ["## Task", "", phase.description or phase.title, ""]

    if phase.kind == PhaseKind.IMPLEMENT:
        if phase.change_spec:
            lines += ["## Change Specification", "", phase.change_spec, ""]
        lines += ["## Context Files", ""]
        if phase.context_files:
            lines.append("Read these files to understand the current state, then implement the changes:")
            lines += _file_list(phase.context_files)
        else:
            lines.append("No specific files were declared; make whatever changes the objective requires.")
        lines += [
            "",
            "## Instructions",
            "",
            "Implement the specified changes using the Read, Write, Edit, Glob, Grep and Bash tools.",
            "Stay within the files and changes described above. Do not create commits; "
            "changes are committed automatically when the phase completes.",
            "After making changes, output a brief summary of what was changed.",
        ]

    elif phase.kind == PhaseKind.READ:
        lines += ["## Context Files", ""]
        if phase.context_files:
            lines.append("Read and analyze these files:")
            lines += _file_list(phase.context_files)
        lines += [
            "",
            "## Instructions",
            "",
            "This phase is read-only. Use the Read, Glob and Grep tools only and do not modify anything.",
            "Produce analysis notes that a later implementation phase can act on.",
        ]

    else:
        lines += ["## Context Files", ""]
        if phase.context_files:
            lines.append("Audit these files against the plan specification:")
            lines += _file_list(phase.context_files)
        lines += [
            "",
            "## Instructions",
            "",
            "Compare the actual working tree against the plan. Report deviations, missing pieces "
            "and defects. Use the Read, Glob and Grep tools only.",
            "Give every concern a severity line of the form `**Severity:** <level>` where level is "
            "one of: blocking, medium, minor, suggestion. Use blocking only for problems that must "
            "be fixed before the plan can be considered done.",
            "Finish with a JSON verdict object on its own, for example:",
            '{"maxSeverity": "minor", "shouldLoop": false, "concerns": [{"title": "...", "severity": "minor"}]}',
        ]

    lines += [
        "",
        "## Progress",
        "",
        "Narrate your progress as you work: say briefly what you are about to do before each step.",
    ]
    return "\n".join(lines)


# =============================================================================
# EXECUTOR
# =============================================================================

@dataclass
class ExecutionOutcome:
    """What one agent run did. status is DONE, FAILED, or PENDING when cancelled."""
    status: PhaseStatus
    output: str = ""
    error: Optional[str] = None
    modified_files: list[str] = field(default_factory=list)
    failure_hashes: Optional[dict[str, str]] = None
    git_commit: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.status == PhaseStatus.PENDING


def snapshot_changes(vcs: Optional[VersionControl], root: Path) -> dict[str, str]:
    """Changed files right now with their content hashes; empty without version control."""
    if vcs is None:
        return {}
    try:
        return fingerprint_changes(vcs, root)
    except VersionControlError as e:
        logger.warning(f"Could not list changed files: {e}")
        return {}


class PhaseExecutor:
    """
    Runs single phases against one project.

    Example:
        executor = PhaseExecutor(
            runtime=ClaudeCliRuntime(),
            model="opus",
            project_root=Path("~/code/app").expanduser(),
            workspace_root=Path("~/.phaserun/workspace").expanduser(),
            vcs=GitVCS(project_root),
        )
        outcome = await executor.execute(phase, plan_content, "plan-011")
    """

    def __init__(
        self,
        runtime: AgentRuntime,
        model: str,
        project_root: Path,
        workspace_root: Path,
        vcs: Optional[VersionControl] = None,
        extra_dirs: Optional[list[Path]] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.runtime = runtime
        self.model = model
        self.project_root = Path(project_root)
        self.workspace_root = Path(workspace_root)
        self.vcs = vcs
        self.extra_dirs = [Path(d) for d in (extra_dirs or [])]
        self.timeout_seconds = timeout_seconds

    def build_request(
        self,
        prompt: str,
        kind: PhaseKind,
        tools: Optional[list[str]] = None,
        cancel_event=None,
    ) -> InvokeRequest:
        return InvokeRequest(
            prompt=prompt,
            model=self.model,
            cwd=self.project_root,
            tools=tools if tools is not None else tools_for_phase(kind),
            extra_dirs=extra_dirs_for_phase(kind, self.workspace_root, self.extra_dirs),
            timeout_seconds=self.timeout_seconds,
            cancel_event=cancel_event,
        )

    async def execute(
        self,
        phase: PlanPhase,
        plan_content: str,
        plan_id: str,
        on_progress: Optional[ProgressCallback] = None,
        observer: Optional[EventObserver] = None,
        cancel_event=None,
    ) -> ExecutionOutcome:
        """
        Run one phase and report the outcome.

        Never raises: agent failures, sandbox violations and unexpected
        runtime errors come back as a FAILED outcome, cancellation as PENDING.
        """
        pre_snapshot = snapshot_changes(self.vcs, self.project_root)

        output = ""
        error: Optional[str] = None
        status = PhaseStatus.DONE
        try:
            injected = build_injected_context(phase, self.project_root, self.workspace_root)
            prompt = build_phase_prompt(phase, plan_content, injected)
            request = self.build_request(prompt, phase.kind, cancel_event=cancel_event)
            output = await collect_runtime_text(self.runtime, request, observer)
        except AgentCancelledError as e:
            status, error = PhaseStatus.PENDING, str(e)
        except (AgentRunError, PathOutOfBoundsError) as e:
            status, error = PhaseStatus.FAILED, str(e)
        except Exception as e:
            logger.error(f"{plan_id} {phase.id}: agent runtime raised {type(e).__name__}", exc_info=True)
            status, error = PhaseStatus.FAILED, f"{type(e).__name__}: {e}"

        modified = changed_between(pre_snapshot, snapshot_changes(self.vcs, self.project_root))
        outcome = ExecutionOutcome(status=status, output=output, error=error, modified_files=modified)

        if status == PhaseStatus.FAILED:
            logger.info(f"{plan_id} {phase.id} failed: {error}")
            if modified:
                outcome.failure_hashes = hash_modified_files(modified, self.project_root, self.workspace_root)
            return outcome

        if status == PhaseStatus.PENDING:
            logger.info(f"{plan_id} {phase.id} cancelled with {len(modified)} changed file(s) on disk")
            return outcome

        if self.vcs is not None and modified:
            if on_progress:
                await on_progress(f"Committing {len(modified)} file(s) for {phase.id}...")
            outcome.git_commit = self.commit(f"{plan_id} {phase.id}: {phase.title}", modified)
        elif self.vcs is not None and phase.kind == PhaseKind.IMPLEMENT:
            logger.warning(f"{plan_id} {phase.id} completed but no files were modified")

        return outcome

    async def revert_failed_attempt(
        self,
        phase: PlanPhase,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[str]:
        """
        Undo a failed attempt's partial edits before retrying the phase.

        Only files whose content still matches the fingerprint taken at
        failure time are reverted. Files edited since then are kept and the
        retry works on top of them.

        Returns:
            The reverted paths
        """
        if self.vcs is None or not phase.modified_files or not phase.failure_hashes:
            return []

        to_revert = []
        for file_path in phase.modified_files:
            if file_path.startswith(WORKSPACE_PREFIX):
                continue
            try:
                resolved = resolve_context_path(file_path, self.project_root, self.workspace_root)
            except PathOutOfBoundsError as e:
                logger.warning(f"Not reverting {file_path}: {e}")
                continue
            current = hash_file_content(resolved) or "deleted"
            if phase.failure_hashes.get(file_path) != current:
                if on_progress:
                    await on_progress(f"Skipping revert of `{file_path}`: modified since last attempt, retrying on top of it")
                continue
            to_revert.append(file_path)

        if not to_revert:
            return []
        try:
            self.vcs.revert_files(to_revert)
        except VersionControlError as e:
            logger.warning(f"Reverting failed attempt of {phase.id} failed: {e}")
            if on_progress:
                await on_progress(f"Could not revert the failed attempt of {phase.id}; retrying with the current tree")
            return []

        logger.info(f"Reverted {len(to_revert)} file(s) left by the failed attempt of {phase.id}")
        if on_progress:
            await on_progress(f"Reverted {len(to_revert)} file(s) from the failed attempt")
        return to_revert

    def commit(self, message: str, files: list[str]) -> Optional[str]:
        """Commit files, logging (not raising) on failure."""
        try:
            return self.vcs.commit(message, files)
        except VersionControlError as e:
            logger.warning(f"Commit failed for '{message}': {e}")
            return None
