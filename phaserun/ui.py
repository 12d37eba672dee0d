"""
Rich terminal UI components for phaserun.

WHY THIS FILE EXISTS:
--------------------
The CLI needs to show phase tables, run results and a live feed of what the
agent is doing. Rich provides the tables, panels and colors.

COMPONENTS:
----------
- show_phases() - Phase table for one plan
- show_run_result() - Outcome of one run_next_phase() call
- show_progress() - Progress callback for the engine
- render_stream_event() - Event observer for the agent stream
"""

from typing import Optional

from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from .schemas import EngineEvent, PlanPhases, Severity

# Global console instance for consistent output
console = Console()


# =============================================================================
# COLOR SCHEMES
# =============================================================================

STATUS_COLORS = {
    "pending": "dim",
    "in-progress": "yellow",
    "done": "green",
    "failed": "red",
    "skipped": "blue",
}

SEVERITY_COLORS = {
    Severity.BLOCKING: "red bold",
    Severity.MEDIUM: "yellow",
    Severity.MINOR: "cyan",
    Severity.SUGGESTION: "blue",
    Severity.NONE: "green",
}

KIND_COLORS = {
    "read": "cyan",
    "implement": "magenta",
    "audit": "yellow",
}


# =============================================================================
# HEADER/SECTION UTILITIES
# =============================================================================

def show_header(title: str, subtitle: str = "") -> None:
    """Display a section header."""
    console.print()
    console.rule(f"[bold blue]{title}[/bold blue]")
    if subtitle:
        console.print(f"[dim]{subtitle}[/dim]", justify="center")
    console.print()


def show_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def show_error(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")


def show_warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {message}")


def show_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


# =============================================================================
# PHASE DISPLAY
# =============================================================================

def show_phases(phases: PlanPhases) -> None:
    """
    Display every phase of a plan as a table.

    Args:
        phases: The PlanPhases to display
    """
    done = sum(1 for p in phases.phases if p.is_terminal)
    show_header(f"Phases: {phases.plan_id}", f"{phases.plan_file} ({done}/{len(phases.phases)} complete)")

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Kind", justify="center")
    table.add_column("Status", justify="center")
    table.add_column("Title", style="white")
    table.add_column("Depends on", style="dim")
    table.add_column("Commit", style="dim")

    for phase in phases.phases:
        status_color = STATUS_COLORS.get(phase.status.value, "white")
        kind_color = KIND_COLORS.get(phase.kind.value, "white")
        table.add_row(
            phase.id,
            f"[{kind_color}]{phase.kind.value}[/{kind_color}]",
            f"[{status_color}]{phase.status.value}[/{status_color}]",
            phase.title,
            ", ".join(phase.depends_on) or "-",
            phase.git_commit or "-",
        )

    console.print(table)

    for phase in phases.phases:
        if phase.error:
            console.print(f"\n[red]{phase.id} error:[/red] {phase.error}")

    console.print(f"\n[dim]Plan hash {phases.plan_content_hash}, updated {phases.updated_at}[/dim]")


def show_run_result(result) -> None:
    """
    Display the outcome of one run_next_phase() call.

    Args:
        result: Any RunPhaseResult variant
    """
    kind = result.result

    if kind == "done":
        show_success(f"{result.phase.id} done: {result.phase.title}")
        if result.phase.git_commit:
            console.print(f"  [dim]commit {result.phase.git_commit} ({len(result.phase.modified_files or [])} files)[/dim]")
        if result.output:
            console.print(Panel(Markdown(result.output), title="[bold]Agent output[/bold]", border_style="green", box=box.ROUNDED))
        if result.next_phase:
            show_info(f"Next: {result.next_phase.id} {result.next_phase.title}")

    elif kind == "failed":
        show_error(f"{result.phase.id} failed: {result.error}")
        if result.phase.modified_files:
            console.print(f"  [dim]partial changes: {', '.join(result.phase.modified_files)}[/dim]")

    elif kind == "audit_failed":
        color = SEVERITY_COLORS.get(result.verdict.max_severity, "white")
        show_error(
            f"{result.phase.id} audit failed with "
            f"[{color}]{result.verdict.max_severity.label}[/{color}] concerns"
        )
        if result.fix_attempts_used is not None:
            console.print(f"  [dim]after {result.fix_attempts_used} automatic fix attempt(s); changes rolled back[/dim]")
        if result.rollback_warning:
            show_warning(result.rollback_warning)
        if result.verdict.findings:
            console.print(Panel(Markdown(result.verdict.findings), title="[bold]Findings[/bold]", border_style="red", box=box.ROUNDED))

    elif kind == "retry_blocked":
        show_warning(result.message)

    elif kind == "nothing_to_run":
        show_success("All phases complete.")

    else:
        # stale, corrupt, deadlocked
        show_error(f"{kind}: {result.message}")


# =============================================================================
# LIVE FEEDBACK
# =============================================================================

async def show_progress(message: str) -> None:
    """Progress callback: one dim line per engine step."""
    console.print(f"[dim]→ {message}[/dim]")


def render_stream_event(event: EngineEvent, verbose: bool = False) -> Optional[str]:
    """
    Print one agent event. Text deltas only in verbose mode.

    Returns:
        The line printed, if any
    """
    line = None
    if event.type == "tool_start" and event.tool:
        line = f"[cyan]  ⚙ {event.tool}[/cyan]"
    elif event.type == "error":
        line = f"[red]  agent error: {event.message}[/red]"
    elif verbose and event.type == "text_delta" and event.text.strip():
        line = f"[dim]  {event.text.strip()}[/dim]"
    elif verbose and event.type == "log_line":
        line = f"[dim]  {event.text}[/dim]"

    if line:
        console.print(line)
    return line
