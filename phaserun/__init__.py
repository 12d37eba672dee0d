"""
phaserun - run a long-form change plan as durable, audited agent phases.

A plan (markdown with ## Objective / ## Changes) is decomposed into a
dependency graph of read, implement and audit phases. Each call to
PhaseEngine.run_next_phase() runs one phase through an agent runtime,
commits what it changed, and persists the result so a crash or restart
picks up where it left off.

MODULES:
-------
schemas      Phase state, verdicts, run results (pydantic)
decomposer   Plan text -> PlanPhases
store        Atomic JSON + markdown persistence with self-healing reads
scheduler    Next-phase selection, staleness, retry guard
execution    Prompt building and single-phase execution
audit        Severity verdicts and the audit-fix loop
engine       run_next_phase() and friends
"""

__version__ = "0.1.0"

# Re-export key classes for convenience
from .schemas import (
    PhaseKind,
    PhaseStatus,
    Severity,
    PlanPhase,
    PlanPhases,
    AuditVerdict,
    RunPhaseResult,
    EngineEvent,
    RunEvent,
    update_phase,
)

from .decomposer import (
    compute_plan_hash,
    decompose_plan,
)

from .store import (
    PhaseStore,
    PhaseStateError,
)

from .runtime import (
    AgentRuntime,
    InvokeRequest,
    ClaudeCliRuntime,
    collect_runtime_text,
)

from .vcs import (
    VersionControl,
    GitVCS,
)

from .audit import parse_audit_verdict

from .engine import (
    PhaseEngine,
    PlanLockRegistry,
)

from .config import (
    Config,
    load_config,
)

from .workspace import PathOutOfBoundsError

__all__ = [
    # Schemas
    "PhaseKind",
    "PhaseStatus",
    "Severity",
    "PlanPhase",
    "PlanPhases",
    "AuditVerdict",
    "RunPhaseResult",
    "EngineEvent",
    "RunEvent",
    "update_phase",
    # Decomposition and state
    "compute_plan_hash",
    "decompose_plan",
    "PhaseStore",
    "PhaseStateError",
    # Capabilities
    "AgentRuntime",
    "InvokeRequest",
    "ClaudeCliRuntime",
    "collect_runtime_text",
    "VersionControl",
    "GitVCS",
    # Engine
    "parse_audit_verdict",
    "PhaseEngine",
    "PlanLockRegistry",
    # Config
    "Config",
    "load_config",
    "PathOutOfBoundsError",
]
