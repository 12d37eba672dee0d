"""
Phase engine: the top-level run loop for one plan.

WHAT THIS FILE DOES:
-------------------
PhaseEngine.run_next_phase() is the one operation callers drive, usually in
a loop until it stops returning ``done``:

    load state (self-healing)       -> corrupt
    compare plan hash                -> stale
    pick next phase                  -> nothing_to_run / deadlocked
    retry guard (git projects only)  -> retry_blocked
    persist in-progress
    retry: revert the failed attempt's untouched files
    execute (audit: verdict + fix loop)
    persist done / failed            -> done / failed / audit_failed

Every runtime condition comes back as a RunPhaseResult; nothing in that list
raises. State is persisted in-progress BEFORE the agent runs, so a crash
leaves a marker the scheduler resumes on the next call.

USAGE:
-----
    engine = PhaseEngine.from_config(config, store=PhaseStore(plan.parent))
    while True:
        result = await engine.run_next_phase("plan-011", plan)
        if result.result != "done":
            break
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

from .audit import AuditFixLoop, parse_audit_verdict
from .config import DEFAULT_WORKSPACE_FILES, Config
from .decomposer import DEFAULT_MAX_FILES_PER_PHASE, decompose_plan
from .execution import ExecutionOutcome, PhaseExecutor, ProgressCallback
from .runtime import AgentRuntime, ClaudeCliRuntime, EventObserver
from .scheduler import check_retry, check_staleness, find_blocked_phases, get_next_phase
from .schemas import (
    AuditFailed,
    CorruptResult,
    Deadlocked,
    NothingToRun,
    PhaseDone,
    PhaseFailed,
    PhaseKind,
    PhaseStatus,
    PlanPhase,
    PlanPhases,
    RetryBlocked,
    RunEvent,
    RunPhaseResult,
    StaleResult,
    update_phase,
)
from .store import PhaseStateError, PhaseStore
from .vcs import GitVCS, VersionControl, VersionControlError
from .workspace import plan_file_reference, resolve_project_root


logger = logging.getLogger("phaserun.engine")

RunEventCallback = Callable[[RunEvent], Awaitable[None]]
VCSFactory = Callable[[Path], VersionControl]


class PlanLockRegistry:
    """
    One asyncio.Lock per plan id.

    Hand a registry to PhaseEngine to serialize run_next_phase() calls for the
    same plan within one process.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, plan_id: str) -> asyncio.Lock:
        if plan_id not in self._locks:
            self._locks[plan_id] = asyncio.Lock()
        return self._locks[plan_id]

    def is_locked(self, plan_id: str) -> bool:
        lock = self._locks.get(plan_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, plan_id: str):
        async with self.lock_for(plan_id):
            yield


class PhaseEngine:
    """
    Runs the phases of a plan one at a time.

    Args:
        runtime: Agent runtime used for every phase
        store: Where phase state lives
        model: Model name passed to the runtime
        workspace_root: Directory holding plans and workspace files
        default_project_root: Project used when a plan has no **Project:** line
        projects: **Project:** name -> directory
        extra_dirs: Extra directories granted to agents (filtered per phase kind)
        timeout_seconds: Per-invocation timeout forwarded to the runtime
        max_files_per_phase: Decomposition batch cap
        max_audit_fix_attempts: Fix loop budget; 0 disables the loop
        workspace_files: Bare file names that belong to the workspace
        vcs_factory: Builds the VersionControl for a project root
        locks: Optional per-plan lock registry
    """

    def __init__(
        self,
        runtime: AgentRuntime,
        store: PhaseStore,
        model: str,
        workspace_root: Path,
        default_project_root: Optional[Path] = None,
        projects: Optional[dict[str, Path]] = None,
        extra_dirs: Optional[list[Path]] = None,
        timeout_seconds: Optional[float] = None,
        max_files_per_phase: int = DEFAULT_MAX_FILES_PER_PHASE,
        max_audit_fix_attempts: int = 2,
        workspace_files: Iterable[str] = DEFAULT_WORKSPACE_FILES,
        vcs_factory: VCSFactory = GitVCS,
        locks: Optional[PlanLockRegistry] = None,
    ):
        self.runtime = runtime
        self.store = store
        self.model = model
        self.workspace_root = Path(workspace_root)
        self.default_project_root = Path(default_project_root) if default_project_root else None
        self.projects = {name: Path(path) for name, path in (projects or {}).items()}
        self.extra_dirs = [Path(d) for d in (extra_dirs or [])]
        self.timeout_seconds = timeout_seconds
        self.max_files_per_phase = max_files_per_phase
        self.max_audit_fix_attempts = max_audit_fix_attempts
        self.workspace_files = list(workspace_files)
        self.vcs_factory = vcs_factory
        self.locks = locks

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: PhaseStore,
        runtime: Optional[AgentRuntime] = None,
        locks: Optional[PlanLockRegistry] = None,
    ) -> "PhaseEngine":
        return cls(
            runtime=runtime or ClaudeCliRuntime(binary=config.runtime.binary),
            store=store,
            model=config.runtime.model,
            workspace_root=config.paths.workspace_path,
            default_project_root=config.paths.project_path,
            projects=config.project_map(),
            extra_dirs=config.runtime.extra_dir_paths(),
            timeout_seconds=config.runtime.timeout_seconds,
            max_files_per_phase=config.phases.max_files_per_phase,
            max_audit_fix_attempts=config.phases.max_audit_fix_attempts,
            workspace_files=config.phases.workspace_files,
            locks=locks,
        )

    # =========================================================================
    # STATE MANAGEMENT
    # =========================================================================

    def ensure_phases(self, plan_id: str, plan_path: Path, regenerate: bool = False) -> PlanPhases:
        """
        Load the plan's phases, decomposing the plan first if needed.

        Args:
            plan_id: Plan identifier
            plan_path: Plan markdown file
            regenerate: Discard existing state and decompose again

        Raises:
            PhaseStateError: If existing state is corrupt (and regenerate is False)
            OSError: If the plan cannot be read
        """
        if not regenerate:
            existing = self.store.load(plan_id)
            if existing is not None:
                return existing

        plan_path = Path(plan_path)
        plan_content = plan_path.read_text(encoding="utf-8")
        phases = decompose_plan(
            plan_content,
            plan_id=plan_id,
            plan_file=plan_file_reference(plan_path, self.workspace_root),
            max_files_per_phase=self.max_files_per_phase,
            workspace_files=self.workspace_files,
        )
        self.store.save(phases)
        logger.info(f"{'Regenerated' if regenerate else 'Generated'} {len(phases.phases)} phases for {plan_id}")
        return phases

    def skip_phase(self, plan_id: str) -> Optional[PlanPhase]:
        """
        Mark the first in-progress or failed phase as skipped.

        Returns:
            The skipped phase, or None if there was nothing to skip
        """
        phases = self.store.load(plan_id)
        if phases is None:
            return None

        target = next((p for p in phases.phases if p.status == PhaseStatus.IN_PROGRESS), None)
        if target is None:
            target = next((p for p in phases.phases if p.status == PhaseStatus.FAILED), None)
        if target is None:
            return None

        phases = update_phase(phases, target.id, status=PhaseStatus.SKIPPED)
        self.store.save(phases)
        logger.info(f"Skipped {plan_id} {target.id} (was {target.status.value})")
        return phases.get_phase(target.id)

    def is_complete(self, plan_id: str) -> bool:
        phases = self.store.load(plan_id)
        return phases is not None and phases.is_complete

    # =========================================================================
    # RUN LOOP
    # =========================================================================

    async def run_next_phase(
        self,
        plan_id: str,
        plan_path: Path,
        on_progress: Optional[ProgressCallback] = None,
        on_run_event: Optional[RunEventCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        observer: Optional[EventObserver] = None,
    ) -> RunPhaseResult:
        """
        Execute the next eligible phase of a plan.

        Args:
            plan_id: Plan identifier
            plan_path: Plan markdown file
            on_progress: async (message) callback for human-readable progress
            on_run_event: async (RunEvent) callback for phase_start/phase_complete
            cancel_event: Set it to cancel the running agent cooperatively
            observer: Receives every EngineEvent streamed by the agent

        Returns:
            One of the RunPhaseResult variants
        """
        hold = self.locks.hold(plan_id) if self.locks else contextlib.nullcontext()
        async with hold:
            return await self._run_next_phase(plan_id, Path(plan_path), on_progress, on_run_event, cancel_event, observer)

    async def _run_next_phase(self, plan_id, plan_path, on_progress, on_run_event, cancel_event, observer) -> RunPhaseResult:
        async def progress(message: str) -> None:
            if on_progress:
                await on_progress(message)

        try:
            plan_content = plan_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return CorruptResult(message=f"Failed to read plan file {plan_path}: {e}")

        try:
            phases = self.ensure_phases(plan_id, plan_path)
        except PhaseStateError as e:
            return CorruptResult(message=f"Phase state for {plan_id} is unreadable: {e}")

        staleness = check_staleness(phases, plan_content)
        if staleness.stale:
            return StaleResult(message=staleness.message)

        phase = get_next_phase(phases)
        if phase is None:
            blocked = find_blocked_phases(phases)
            if blocked:
                ids = [p.id for p in blocked]
                return Deadlocked(
                    message=(
                        f"Phases {', '.join(ids)} can never run: their dependencies form a cycle. "
                        f"Regenerate phases or skip them."
                    ),
                    blocked_phase_ids=ids,
                )
            return NothingToRun()

        try:
            project_root = resolve_project_root(plan_content, self.projects, self.default_project_root)
        except ValueError as e:
            return PhaseFailed(phase=phase, error=str(e))

        vcs = self._vcs_for(project_root)

        # Without version control nothing is recorded to guard on
        if vcs is not None:
            retry = check_retry(phase)
            if not retry.allowed:
                return RetryBlocked(phase=phase, message=retry.message)
            if retry.transient:
                logger.info(f"Retrying {plan_id} {phase.id} after transient error ({retry.transient})")

        executor = PhaseExecutor(
            runtime=self.runtime,
            model=self.model,
            project_root=project_root,
            workspace_root=self.workspace_root,
            vcs=vcs,
            extra_dirs=self.extra_dirs,
            timeout_seconds=self.timeout_seconds,
        )

        await progress(f"Running {phase.id}: {phase.title}...")
        phases = update_phase(phases, phase.id, status=PhaseStatus.IN_PROGRESS, error=None)
        self.store.save(phases)
        logger.info(f"{plan_id} {phase.id} in-progress ({phase.kind.value}: {phase.title})")
        await self._emit(on_run_event, "phase_start", plan_id, phase)

        if phase.status == PhaseStatus.FAILED:
            await executor.revert_failed_attempt(phase, on_progress)

        outcome = await executor.execute(phase, plan_content, plan_id, on_progress, observer, cancel_event)

        if outcome.cancelled:
            result = self._record_cancelled(phases, phase, outcome)
        elif phase.kind == PhaseKind.AUDIT and outcome.status == PhaseStatus.DONE:
            result = await self._finish_audit(
                phases, phase, outcome, executor, vcs, plan_content, plan_id,
                on_progress, observer, cancel_event,
            )
        else:
            result = self._record_outcome(phases, phase, outcome)

        await self._emit(on_run_event, "phase_complete", plan_id, phase, status=result.result)
        return result

    def _vcs_for(self, project_root: Path) -> Optional[VersionControl]:
        vcs = self.vcs_factory(project_root)
        if vcs.is_repository():
            return vcs
        logger.info(f"{project_root} is not under version control; auto-commit and fix loop disabled")
        return None

    async def _emit(self, callback, event_type: str, plan_id: str, phase: PlanPhase, status: Optional[str] = None) -> None:
        if callback is None:
            return
        await callback(RunEvent(
            type=event_type,
            plan_id=plan_id,
            phase_id=phase.id,
            phase_title=phase.title,
            phase_kind=phase.kind,
            status=status,
        ))

    def _save_phase(self, phases: PlanPhases, phase_id: str, **changes) -> tuple[PlanPhases, PlanPhase]:
        phases = update_phase(phases, phase_id, **changes)
        self.store.save(phases)
        return phases, phases.get_phase(phase_id)

    def _record_cancelled(self, phases: PlanPhases, phase: PlanPhase, outcome: ExecutionOutcome) -> RunPhaseResult:
        # Partial edits stay on disk; the phase restarts from scratch next run
        phases, updated = self._save_phase(
            phases, phase.id,
            status=PhaseStatus.PENDING,
            output=outcome.output or None,
            error=None,
            modified_files=outcome.modified_files or None,
        )
        logger.info(f"{phases.plan_id} {phase.id} cancelled; reset to pending")
        return PhaseFailed(phase=updated, output=outcome.output, error=f"Phase {phase.id} cancelled: {outcome.error}")

    def _record_outcome(self, phases: PlanPhases, phase: PlanPhase, outcome: ExecutionOutcome) -> RunPhaseResult:
        phases, updated = self._save_phase(
            phases, phase.id,
            status=outcome.status,
            output=outcome.output,
            error=outcome.error,
            git_commit=outcome.git_commit,
            modified_files=outcome.modified_files or None,
            failure_hashes=outcome.failure_hashes,
        )
        logger.info(f"{phases.plan_id} {phase.id} {outcome.status.value}")

        if outcome.status == PhaseStatus.DONE:
            return PhaseDone(phase=updated, output=outcome.output, next_phase=get_next_phase(phases))
        return PhaseFailed(phase=updated, output=outcome.output, error=outcome.error or "Unknown error")

    async def _finish_audit(
        self, phases, phase, outcome, executor, vcs, plan_content, plan_id, on_progress, observer, cancel_event,
    ) -> RunPhaseResult:
        verdict = parse_audit_verdict(outcome.output)
        logger.info(f"{plan_id} {phase.id} audit verdict: {verdict.max_severity.label}")

        if not verdict.should_loop:
            return self._record_outcome(phases, phase, outcome)

        def failed(output: str, attempts: Optional[int], warning: Optional[str], audit_verdict) -> RunPhaseResult:
            _, updated = self._save_phase(
                phases, phase.id,
                status=PhaseStatus.FAILED,
                output=output,
                error=f"Audit found {audit_verdict.max_severity.label} severity concerns",
            )
            return AuditFailed(
                phase=updated,
                verdict=audit_verdict,
                fix_attempts_used=attempts,
                rollback_warning=warning,
            )

        if vcs is None or self.max_audit_fix_attempts <= 0:
            return failed(outcome.output, None, None, verdict)

        modified_so_far = sorted({f for p in phases.phases for f in (p.modified_files or [])})
        loop = AuditFixLoop(executor, vcs, self.max_audit_fix_attempts)
        try:
            fix = await loop.run(
                phase, plan_content, plan_id, verdict, modified_so_far,
                on_progress=on_progress, observer=observer, cancel_event=cancel_event,
            )
        except (VersionControlError, OSError) as e:
            logger.warning(f"{plan_id} {phase.id}: fix loop unavailable: {e}")
            return failed(outcome.output, None, str(e), verdict)

        if fix.cancelled:
            cancelled = ExecutionOutcome(status=PhaseStatus.PENDING, output=fix.output, error="cancelled during fix loop")
            return self._record_cancelled(phases, phase, cancelled)

        if fix.passed:
            fixed = ExecutionOutcome(
                status=PhaseStatus.DONE,
                output=fix.output,
                modified_files=fix.modified_files,
                git_commit=fix.git_commit,
            )
            return self._record_outcome(phases, phase, fixed)

        return failed(fix.output, fix.attempts_used, fix.rollback_warning, fix.verdict)
