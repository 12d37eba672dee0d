"""
Next-phase selection, staleness detection and the retry guard.

Selection priority:
    1. a phase left in-progress (resume after a crash)
    2. a failed phase (subject to check_retry)
    3. the first pending phase whose dependencies are all done or skipped
"""

import re
from dataclasses import dataclass
from typing import Optional

from .decomposer import compute_plan_hash
from .schemas import TERMINAL_STATUSES, PhaseKind, PhaseStatus, PlanPhase, PlanPhases


# Error signatures that point at the environment rather than the task.
# A failure matching one of these may always be retried.
TRANSIENT_ERROR_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("missing_session", re.compile(r"no (?:conversation|session) found|(?:session|conversation) (?:not found|does not exist)", re.IGNORECASE)),
    ("stream_truncated", re.compile(r"stream ended without (?:a )?final|unexpected end of stream", re.IGNORECASE)),
    ("connection_reset", re.compile(r"ECONNRESET|connection reset|socket hang up", re.IGNORECASE)),
    ("provider_overloaded", re.compile(r"overloaded|rate[ _-]?limit|too many requests", re.IGNORECASE)),
]


@dataclass
class StalenessCheck:
    stale: bool
    message: str = ""


@dataclass
class RetryDecision:
    """Whether a failed phase may run again, and why not if it may not."""
    allowed: bool
    message: str = ""
    transient: Optional[str] = None  # name of the matched transient pattern


def get_next_phase(phases: PlanPhases) -> Optional[PlanPhase]:
    for phase in phases.phases:
        if phase.status == PhaseStatus.IN_PROGRESS:
            return phase

    for phase in phases.phases:
        if phase.status == PhaseStatus.FAILED:
            return phase

    status_by_id = {phase.id: phase.status for phase in phases.phases}
    for phase in phases.phases:
        if phase.status != PhaseStatus.PENDING:
            continue
        if all(status_by_id.get(dep) in TERMINAL_STATUSES for dep in phase.depends_on):
            return phase

    return None


def find_blocked_phases(phases: PlanPhases) -> list[PlanPhase]:
    """
    Pending phases that can never become eligible.

    A pending phase can eventually run if every dependency is not pending, or
    is itself a pending phase that can eventually run. Whatever is left after
    that fixpoint sits on a dependency cycle (or depends on one).
    """
    reachable = {phase.id for phase in phases.phases if phase.status != PhaseStatus.PENDING}
    pending = [phase for phase in phases.phases if phase.status == PhaseStatus.PENDING]

    changed = True
    while changed:
        changed = False
        for phase in pending:
            if phase.id not in reachable and all(dep in reachable for dep in phase.depends_on):
                reachable.add(phase.id)
                changed = True

    return [phase for phase in pending if phase.id not in reachable]


def check_staleness(phases: PlanPhases, plan_content: str) -> StalenessCheck:
    current = compute_plan_hash(plan_content)
    if current == phases.plan_content_hash:
        return StalenessCheck(stale=False)
    return StalenessCheck(
        stale=True,
        message=(
            f"Plan {phases.plan_id} has changed since its phases were generated "
            f"(hash {phases.plan_content_hash} -> {current}). "
            f"Regenerate phases before running again."
        ),
    )


def match_transient_error(error: Optional[str]) -> Optional[str]:
    """Name of the first transient pattern matching ``error``, if any."""
    if not error:
        return None
    for name, pattern in TRANSIENT_ERROR_PATTERNS:
        if pattern.search(error):
            return name
    return None


def check_retry(phase: PlanPhase) -> RetryDecision:
    """
    Retry guard for failed phases.

    A failed phase may only run again if the failed attempt left evidence of
    forward progress: a non-empty modified_files list AND a failure_hashes
    map. Transient infrastructure errors bypass the guard. Audit phases are
    never guarded; they have the fix loop.
    """
    if phase.status != PhaseStatus.FAILED or phase.kind == PhaseKind.AUDIT:
        return RetryDecision(allowed=True)

    transient = match_transient_error(phase.error)
    if transient:
        return RetryDecision(allowed=True, transient=transient)

    hint = "Skip the phase or regenerate phases to continue."
    if not phase.modified_files:
        return RetryDecision(
            allowed=False,
            message=(
                f"Phase {phase.id} ({phase.title}) failed with no modifiedFiles recorded; "
                f"retrying would repeat the same failure. {hint}"
            ),
        )
    if not phase.failure_hashes:
        return RetryDecision(
            allowed=False,
            message=(
                f"Phase {phase.id} ({phase.title}) failed with no failureHashes recorded; "
                f"its partial progress cannot be verified. {hint}"
            ),
        )
    return RetryDecision(allowed=True)
