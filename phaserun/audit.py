"""
Audit verdicts and the bounded audit-fix loop.

VERDICTS:
--------
An audit agent reports concerns in prose. parse_audit_verdict() grades that
prose on the ordered Severity scale:

    1. A JSON verdict object ({"maxSeverity": ..., "concerns": [...]}) wins
    2. Otherwise severity markers are collected:
           **Severity:** blocking     | medium |     (minor)
       "high" counts as blocking and "low" as minor
    3. No markers at all: "needs revision" means blocking, anything else is clean

Only verdicts at or above BLOCKING_THRESHOLD loop; lower severities
auto-approve.

FIX LOOP:
--------
    remember HEAD
    for attempt in 1..N:
        fix agent (Read/Write/Edit/Glob/Grep, no Bash)
        re-audit
        passing?  -> done
    exhausted     -> git reset --hard HEAD-before-loop, put back the
                     uncommitted pre-loop changes, audit_failed
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from .execution import (
    PhaseExecutor,
    ProgressCallback,
    build_phase_prompt,
    snapshot_changes,
)
from .plan_parser import extract_objective
from .runtime import AgentCancelledError, AgentRunError, EventObserver, collect_runtime_text
from .schemas import AuditVerdict, PhaseKind, PlanPhase, Severity
from .vcs import (
    VersionControl,
    VersionControlError,
    changed_between,
    restore_dirty_files,
    save_dirty_files,
)


logger = logging.getLogger("phaserun.audit")

FIX_TOOLS = ["Read", "Write", "Edit", "Glob", "Grep"]

SEVERITY_WORDS: dict[str, Severity] = {
    "blocking": Severity.BLOCKING,
    "high": Severity.BLOCKING,
    "medium": Severity.MEDIUM,
    "minor": Severity.MINOR,
    "low": Severity.MINOR,
    "suggestion": Severity.SUGGESTION,
}

_WORDS = "|".join(SEVERITY_WORDS)
_SEVERITY_MARKERS = [
    re.compile(rf"\bseverity\b[\s:*]*({_WORDS})\b", re.IGNORECASE),
    re.compile(rf"\|\s*\**\s*({_WORDS})\s*\**\s*\|", re.IGNORECASE),
    re.compile(rf"\(\s*({_WORDS})\s*\)", re.IGNORECASE),
]
_NEEDS_REVISION = re.compile(r"\bneeds?\s+revision\b", re.IGNORECASE)


# =============================================================================
# VERDICT PARSING
# =============================================================================

def _severity_of(value: Any) -> Optional[Severity]:
    if not isinstance(value, str):
        return None
    word = value.strip().lower()
    if word == "none":
        return Severity.NONE
    return SEVERITY_WORDS.get(word)


def _find_json_verdict(text: str) -> Optional[dict]:
    """Last JSON object in ``text`` that looks like a verdict."""
    decoder = json.JSONDecoder()
    found = None
    pos = text.find("{")
    while pos != -1:
        try:
            obj, end = decoder.raw_decode(text, pos)
        except json.JSONDecodeError:
            pos = text.find("{", pos + 1)
            continue
        if isinstance(obj, dict) and ("maxSeverity" in obj or "concerns" in obj):
            found = obj
        pos = text.find("{", end)
    return found


def _severity_from_json(verdict: dict) -> Optional[Severity]:
    severities = []
    top = _severity_of(verdict.get("maxSeverity"))
    if top is not None:
        severities.append(top)
    concerns = verdict.get("concerns")
    if isinstance(concerns, list):
        for concern in concerns:
            if isinstance(concern, dict):
                severity = _severity_of(concern.get("severity"))
                if severity is not None:
                    severities.append(severity)
    if not severities:
        return None
    return max(severities)


def parse_audit_verdict(output: str) -> AuditVerdict:
    """
    Grade audit output.

    Example:
        >>> parse_audit_verdict("1. Missing test\\n**Severity:** blocking").max_severity
        <Severity.BLOCKING: 4>
        >>> parse_audit_verdict("Looks good (minor)").should_loop
        False
    """
    findings = output.strip()

    json_verdict = _find_json_verdict(output)
    if json_verdict is not None:
        severity = _severity_from_json(json_verdict)
        if severity is not None:
            return AuditVerdict.from_severity(severity, findings)

    found = [
        SEVERITY_WORDS[match.group(1).lower()]
        for pattern in _SEVERITY_MARKERS
        for match in pattern.finditer(output)
    ]
    if found:
        return AuditVerdict.from_severity(max(found), findings)

    if _NEEDS_REVISION.search(output):
        return AuditVerdict.from_severity(Severity.BLOCKING, findings)
    return AuditVerdict.from_severity(Severity.NONE, findings)


# =============================================================================
# FIX PROMPT
# =============================================================================

def build_audit_fix_prompt(
    plan_content: str,
    findings: str,
    modified_files: list[str],
    attempt: int,
    max_attempts: int,
) -> str:
    lines = [
        f"# Audit fix (attempt {attempt}/{max_attempts})",
        "",
        "## Objective",
        "",
        extract_objective(plan_content),
        "",
        "## Audit Findings",
        "",
        findings or "(the audit reported blocking concerns without details)",
        "",
        "## Files Modified So Far",
        "",
    ]
    lines += [f"- `{f}`" for f in modified_files] or ["(none recorded)"]
    lines += [
        "",
        "## Instructions",
        "",
        "Fix every high and medium severity concern raised by the audit.",
        "Use the Read, Write and Edit tools to change files, and Glob and Grep to search. "
        "You cannot run shell commands.",
        "Do not make changes beyond what the findings require.",
    ]
    if attempt >= max_attempts:
        lines += [
            "",
            "This is the FINAL attempt. If the blocking concerns are still present after this "
            "fix, every change made since the audit began will be rolled back. "
            "Address all of them now.",
        ]
    lines += ["", "When finished, summarize what you changed for each concern."]
    return "\n".join(lines)


# =============================================================================
# FIX LOOP
# =============================================================================

@dataclass
class FixLoopOutcome:
    passed: bool
    verdict: AuditVerdict
    attempts_used: int
    output: str = ""
    cancelled: bool = False
    git_commit: Optional[str] = None
    modified_files: list[str] = field(default_factory=list)
    rollback_warning: Optional[str] = None


class AuditFixLoop:
    """
    Bounded audit -> fix -> re-audit cycle with rollback on exhaustion.

    Rollback is a hard reset to the pre-loop HEAD plus `git clean -fd`,
    after which the files that were already dirty before the loop get their
    pre-loop contents back. Staged changes come back unstaged.

    Args:
        executor: Executor for the project (provides runtime, model, VCS)
        vcs: Version control for the project (required for rollback)
        max_attempts: Fix attempts before giving up
    """

    def __init__(self, executor: PhaseExecutor, vcs: VersionControl, max_attempts: int):
        self.executor = executor
        self.vcs = vcs
        self.max_attempts = max_attempts

    async def run(
        self,
        phase: PlanPhase,
        plan_content: str,
        plan_id: str,
        verdict: AuditVerdict,
        modified_files: list[str],
        on_progress: Optional[ProgressCallback] = None,
        observer: Optional[EventObserver] = None,
        cancel_event=None,
    ) -> FixLoopOutcome:
        async def progress(message: str) -> None:
            if on_progress:
                await on_progress(message)

        pre_loop_head = self.vcs.head()
        root = self.executor.project_root
        pre_loop_changes = snapshot_changes(self.vcs, root)
        saved = save_dirty_files(root, pre_loop_changes)
        audit_prompt = build_phase_prompt(phase, plan_content)
        attempts = 0
        output = verdict.findings

        for attempt in range(1, self.max_attempts + 1):
            attempts = attempt
            await progress(f"Fix attempt {attempt}/{self.max_attempts}: addressing {verdict.max_severity.label} audit concerns...")

            touched = sorted(set(modified_files) | set(changed_between(pre_loop_changes, snapshot_changes(self.vcs, root))))
            fix_prompt = build_audit_fix_prompt(plan_content, verdict.findings, touched, attempt, self.max_attempts)
            fix_request = self.executor.build_request(
                fix_prompt, PhaseKind.IMPLEMENT, tools=list(FIX_TOOLS), cancel_event=cancel_event,
            )
            try:
                await collect_runtime_text(self.executor.runtime, fix_request, observer)
            except AgentCancelledError:
                return await self._give_up(pre_loop_head, saved, verdict, attempts, output, cancelled=True, progress=progress)
            except Exception as e:
                logger.warning(f"{plan_id} {phase.id}: fix attempt {attempt} failed: {e}", exc_info=not isinstance(e, AgentRunError))
                await progress(f"Fix attempt {attempt}/{self.max_attempts} failed: {e}")
                continue

            await progress(f"Re-running audit after fix attempt {attempt}/{self.max_attempts}...")
            audit_request = self.executor.build_request(audit_prompt, PhaseKind.AUDIT, cancel_event=cancel_event)
            try:
                output = await collect_runtime_text(self.executor.runtime, audit_request, observer)
            except AgentCancelledError:
                return await self._give_up(pre_loop_head, saved, verdict, attempts, output, cancelled=True, progress=progress)
            except Exception as e:
                logger.warning(f"{plan_id} {phase.id}: re-audit after attempt {attempt} failed: {e}", exc_info=not isinstance(e, AgentRunError))
                continue

            verdict = parse_audit_verdict(output)
            if not verdict.should_loop:
                logger.info(f"{plan_id} {phase.id}: audit passed after {attempt} fix attempt(s)")
                fixed = changed_between(pre_loop_changes, snapshot_changes(self.vcs, root))
                commit = None
                if fixed:
                    commit = self.executor.commit(f"{plan_id} {phase.id}: audit fixes", fixed)
                return FixLoopOutcome(
                    passed=True,
                    verdict=verdict,
                    attempts_used=attempt,
                    output=output,
                    git_commit=commit,
                    modified_files=fixed,
                )

        return await self._give_up(pre_loop_head, saved, verdict, attempts, output, cancelled=False, progress=progress)

    async def _give_up(self, pre_loop_head, saved, verdict, attempts, output, cancelled, progress) -> FixLoopOutcome:
        await progress(f"Rolling back to {pre_loop_head[:12]} (pre-fix state)...")
        problems = []
        try:
            self.vcs.hard_reset(pre_loop_head)
        except VersionControlError as e:
            problems.append(f"Rollback to {pre_loop_head} failed: {e}")
        try:
            restore_dirty_files(self.executor.project_root, saved)
        except OSError as e:
            problems.append(f"Restoring uncommitted pre-fix changes failed: {e}")

        warning = "; ".join(problems) or None
        if warning:
            logger.warning(warning)
        return FixLoopOutcome(
            passed=False,
            verdict=verdict,
            attempts_used=attempts,
            output=output,
            cancelled=cancelled,
            rollback_warning=warning,
        )
