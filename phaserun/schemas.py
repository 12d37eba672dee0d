"""
Pydantic schemas for phase state and run results.

WHY THIS FILE EXISTS:
--------------------
A plan is executed as a sequence of phases, and the state of those phases
must survive crashes, restarts and operator edits. Every piece of that state
is defined here as a validated Pydantic model so that:

1. Corrupt state is rejected loudly (an unknown status is a ValidationError,
   never a silent default)
2. State is immutable: models are frozen, and the only way to change a phase
   is update_phase(), which returns a new aggregate
3. The on-disk JSON uses the camelCase field names operators already know
   (planId, dependsOn, failureHashes, ...)

MODEL OVERVIEW:
--------------
    PlanPhases (one per plan)
    └── PlanPhase[]  (read / implement / audit)

    AuditVerdict      - outcome of an audit phase
    RunPhaseResult    - tagged union returned by PhaseEngine.run_next_phase()
    EngineEvent       - one event streamed from the agent runtime
    RunEvent          - phase_start / phase_complete notifications for UIs
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


# =============================================================================
# ENUMS
# =============================================================================

class PhaseKind(str, Enum):
    """What a phase is allowed to do."""
    READ = "read"
    IMPLEMENT = "implement"
    AUDIT = "audit"


class PhaseStatus(str, Enum):
    """Lifecycle status of a phase."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


# A dependency in one of these states no longer blocks its dependents
TERMINAL_STATUSES = frozenset({PhaseStatus.DONE, PhaseStatus.SKIPPED})


class Severity(IntEnum):
    """
    Ordered audit severity scale.

    The numeric values ARE the ordering, so comparisons like
    ``verdict.max_severity >= BLOCKING_THRESHOLD`` work directly.
    NONE means the audit reported no findings at all.
    """
    NONE = 0
    SUGGESTION = 1
    MINOR = 2
    MEDIUM = 3
    BLOCKING = 4

    @property
    def label(self) -> str:
        return self.name.lower()


# Verdicts at or above this severity send the audit into the fix loop
BLOCKING_THRESHOLD = Severity.BLOCKING


def now_iso() -> str:
    """Timestamp format used for createdAt/updatedAt."""
    return datetime.now().isoformat(timespec="seconds")


# =============================================================================
# PHASE STATE
# =============================================================================

class _StateModel(BaseModel):
    """Base for persisted models: frozen, camelCase on disk, no unknown keys."""
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class PlanPhase(_StateModel):
    """
    One bounded unit of agent work.

    Example:
        PlanPhase(
            id="phase-1",
            title="Implement src/ (2 files)",
            kind=PhaseKind.IMPLEMENT,
            description="Implement changes for: `src/a.py`, `src/b.py`",
            context_files=["src/a.py", "src/b.py"],
            change_spec="- `src/a.py`: add the parser ...",
        )
    """
    id: str
    title: str
    kind: PhaseKind
    description: str = ""
    status: PhaseStatus = PhaseStatus.PENDING
    depends_on: list[str] = Field(default_factory=list)
    context_files: list[str] = Field(default_factory=list)

    # Implement phases only: the plan text describing the required edits
    change_spec: Optional[str] = None

    # Execution record
    output: Optional[str] = None
    error: Optional[str] = None
    git_commit: Optional[str] = None
    modified_files: Optional[list[str]] = None
    failure_hashes: Optional[dict[str, str]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class PlanPhases(_StateModel):
    """
    The aggregate root: every phase derived from one plan.

    Persisted as one unit by PhaseStore. Construction validates the two
    structural invariants (unique ids, resolvable dependencies); violating
    either is a programming error and raises ValueError.
    """
    plan_id: str
    plan_file: str
    plan_content_hash: str
    created_at: str
    updated_at: str
    phases: list[PlanPhase]

    @model_validator(mode="after")
    def _check_graph(self) -> "PlanPhases":
        seen: set[str] = set()
        for phase in self.phases:
            if phase.id in seen:
                raise ValueError(f"Duplicate phase id: {phase.id}")
            seen.add(phase.id)

        for phase in self.phases:
            for dep in phase.depends_on:
                if dep not in seen:
                    raise ValueError(f"Phase {phase.id} depends on unknown phase: {dep}")
        return self

    def get_phase(self, phase_id: str) -> Optional[PlanPhase]:
        """Get a phase by id."""
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    @property
    def is_complete(self) -> bool:
        return all(phase.is_terminal for phase in self.phases)


def update_phase(phases: PlanPhases, phase_id: str, **changes) -> PlanPhases:
    """
    Return a copy of ``phases`` with one phase changed.

    This is the only sanctioned way to mutate phase state. The input is
    never modified; callers persist the returned value.

    Args:
        phases: Current aggregate
        phase_id: Phase to change
        **changes: PlanPhase field values (snake_case), e.g. status=..., error=None

    Returns:
        New PlanPhases with updated_at refreshed

    Raises:
        ValueError: If phase_id is unknown
    """
    if phases.get_phase(phase_id) is None:
        raise ValueError(f"Unknown phase: {phase_id}")

    unknown = set(changes) - set(PlanPhase.model_fields)
    if unknown:
        raise ValueError(f"Unknown phase fields: {sorted(unknown)}")

    new_phases = [
        phase.model_copy(update=changes) if phase.id == phase_id else phase
        for phase in phases.phases
    ]
    return phases.model_copy(update={"phases": new_phases, "updated_at": now_iso()})


# =============================================================================
# AUDIT VERDICT
# =============================================================================

class AuditVerdict(BaseModel):
    """
    Summary of an audit phase's output.

    should_loop is derived from max_severity; lower severities auto-approve
    so that nitpicks never halt the pipeline.
    """
    max_severity: Severity = Severity.NONE
    should_loop: bool = False
    findings: str = ""

    @classmethod
    def from_severity(cls, severity: Severity, findings: str = "") -> "AuditVerdict":
        return cls(
            max_severity=severity,
            should_loop=severity >= BLOCKING_THRESHOLD,
            findings=findings,
        )


# =============================================================================
# RUN RESULTS
# =============================================================================
# run_next_phase() never raises for runtime conditions; it returns one of
# these, discriminated on the ``result`` field.

class PhaseDone(BaseModel):
    result: Literal["done"] = "done"
    phase: PlanPhase
    output: str = ""
    next_phase: Optional[PlanPhase] = None


class PhaseFailed(BaseModel):
    result: Literal["failed"] = "failed"
    phase: PlanPhase
    output: str = ""
    error: str


class AuditFailed(BaseModel):
    result: Literal["audit_failed"] = "audit_failed"
    phase: PlanPhase
    verdict: AuditVerdict
    # None when the fix loop was skipped (no VCS or a zero budget)
    fix_attempts_used: Optional[int] = None
    rollback_warning: Optional[str] = None


class StaleResult(BaseModel):
    result: Literal["stale"] = "stale"
    message: str


class CorruptResult(BaseModel):
    result: Literal["corrupt"] = "corrupt"
    message: str


class RetryBlocked(BaseModel):
    result: Literal["retry_blocked"] = "retry_blocked"
    phase: PlanPhase
    message: str


class NothingToRun(BaseModel):
    """Every phase is done or skipped."""
    result: Literal["nothing_to_run"] = "nothing_to_run"


class Deadlocked(BaseModel):
    """Pending phases remain but none of them can ever become eligible."""
    result: Literal["deadlocked"] = "deadlocked"
    message: str
    blocked_phase_ids: list[str] = Field(default_factory=list)


RunPhaseResult = Annotated[
    Union[
        PhaseDone,
        PhaseFailed,
        AuditFailed,
        StaleResult,
        CorruptResult,
        RetryBlocked,
        NothingToRun,
        Deadlocked,
    ],
    Field(discriminator="result"),
]


# =============================================================================
# EVENTS
# =============================================================================

class EngineEvent(BaseModel):
    """
    One event from the agent runtime stream.

    text_delta carries incremental text, text_final the complete answer,
    error a failure message. tool_start / tool_end / log_line are only
    forwarded to observers.
    """
    type: Literal["text_delta", "text_final", "error", "tool_start", "tool_end", "log_line"]
    text: str = ""
    message: str = ""
    tool: Optional[str] = None


class RunEvent(BaseModel):
    """Structured notification for live progress UIs."""
    type: Literal["phase_start", "phase_complete"]
    plan_id: str
    phase_id: str
    phase_title: str
    phase_kind: PhaseKind
    # Set on phase_complete: the RunPhaseResult tag
    status: Optional[str] = None
