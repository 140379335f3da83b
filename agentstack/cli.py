"""Command-line entry point for agentstack."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .agents.registry import AgentRegistry
from .config import settings
from .errors import AgentStackError
from .runtime import AgentStack

console = Console()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
    )


def _run(body: Callable[[AgentStack], Awaitable[Any]]) -> Any:
    """Run ``body`` against a started stack and always shut it down."""

    async def runner() -> Any:
        stack = AgentStack(settings)
        await stack.start()
        try:
            return await body(stack)
        finally:
            await stack.stop()

    try:
        return asyncio.run(runner())
    except AgentStackError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1) from e


def _ts(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def _short(text: str | None, width: int = 50) -> str:
    if not text:
        return "-"
    return text[:width] + "..." if len(text) > width else text


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Override AGENTSTACK_LOG_LEVEL")
def main(log_level: str | None) -> None:
    """Multi-agent orchestration: spawn agents, gate risky work, watch resource usage."""
    _configure_logging(log_level or settings.log_level)


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables (use alembic for managed deployments)."""

    async def do_init() -> None:
        stack = AgentStack(settings)
        try:
            await stack.db.init_db()
        finally:
            await stack.db.dispose()

    asyncio.run(do_init())
    console.print("[green]Database schema created[/green]")


# =============================================================================
# Agents
# =============================================================================


@main.group()
def agents() -> None:
    """Spawn, list and run agents."""


@agents.command(name="types")
def agent_types() -> None:
    """List registered agent types."""
    registry = AgentRegistry()
    table = Table(title="Agent Types")
    table.add_column("Type", style="cyan")
    table.add_column("Name")
    table.add_column("Capabilities")
    for definition in registry.list_definitions():
        table.add_row(definition.type, definition.name, ", ".join(definition.capabilities))
    console.print(table)


@agents.command(name="list")
@click.option("--session", "session_id", default=None, help="Filter by session")
def list_agents(session_id: str | None) -> None:
    """List live agents."""

    async def body(stack: AgentStack) -> None:
        live = stack.spawner.list(session_id)
        if not live:
            console.print("[yellow]No agents running[/yellow]")
            return
        table = Table(title="Agents")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Status")
        table.add_column("Created")
        for agent in live:
            table.add_row(agent.id, agent.name, agent.type, agent.status.value, _ts(agent.created_at))
        console.print(table)

    _run(body)


@agents.command(name="spawn")
@click.argument("agent_type")
@click.option("--name", default=None, help="Unique agent name")
@click.option("--session", "session_id", default=None, help="Session to associate with")
@click.option("--identity", "identity_id", default=None, help="Bind the agent to a persistent identity")
def spawn_agent(agent_type: str, name: str | None, session_id: str | None, identity_id: str | None) -> None:
    """Spawn an agent of AGENT_TYPE (ignored when --identity is given)."""

    async def body(stack: AgentStack) -> None:
        if identity_id:
            agent = await stack.spawn_for_identity(identity_id, name=name, session_id=session_id)
        else:
            agent = stack.spawner.spawn(agent_type, name=name, session_id=session_id)
        console.print(f"[green]Spawned {agent.name}[/green] ({agent.id})")

    _run(body)


@agents.command(name="stop")
@click.argument("agent")
def stop_agent(agent: str) -> None:
    """Stop an agent by id or name."""

    async def body(stack: AgentStack) -> None:
        if stack.spawner.stop(agent) or stack.spawner.stop_by_name(agent):
            console.print(f"[green]Stopped {agent}[/green]")
        else:
            console.print(f"[red]Agent not found: {agent}[/red]")

    _run(body)


@agents.command(name="run")
@click.argument("agent_type")
@click.argument("task")
@click.option("--provider", default=None, help="Provider name (defaults to AGENTSTACK_DEFAULT_PROVIDER)")
@click.option("--model", default=None, help="Model override")
def run_agent(agent_type: str, task: str, provider: str | None, model: str | None) -> None:
    """Run TASK on a pooled agent of AGENT_TYPE."""

    async def body(stack: AgentStack) -> None:
        with console.status(f"Running {agent_type}..."):
            result = await stack.spawner.run_agent(agent_type, task, provider=provider, model=model)
        console.print(
            Panel(result.response, title=f"{agent_type} ({result.model}, {result.duration_ms}ms)")
        )

    _run(body)


# =============================================================================
# Identities
# =============================================================================


@main.group()
def identity() -> None:
    """Manage persistent agent identities."""


def _print_identity(ident) -> None:
    console.print(
        Panel(
            f"Type: [cyan]{ident.agent_type}[/cyan]\n"
            f"Status: {ident.status}\n"
            f"Version: {ident.version}\n"
            f"Capabilities: {', '.join(ident.capabilities or []) or '-'}\n"
            f"Description: {ident.description or '-'}\n"
            f"Created: {_ts(ident.created_at)}\n"
            f"Last active: {_ts(ident.last_active_at)}"
            + (f"\nRetired: {_ts(ident.retired_at)} ({ident.retirement_reason or 'no reason'})" if ident.retired_at else ""),
            title=f"{ident.display_name or 'Identity'} ({ident.agent_id})",
        )
    )


@identity.command(name="create")
@click.argument("agent_type")
@click.option("--name", "display_name", default=None, help="Display name")
@click.option("--description", default=None)
@click.option("--capability", "capabilities", multiple=True, help="Repeatable")
@click.option("--activate", is_flag=True, help="Activate immediately")
@click.option("--created-by", default=None)
def create_identity(
    agent_type: str,
    display_name: str | None,
    description: str | None,
    capabilities: tuple[str, ...],
    activate: bool,
    created_by: str | None,
) -> None:
    """Create an identity for AGENT_TYPE."""

    async def body(stack: AgentStack) -> None:
        ident = await stack.identities.create_identity(
            agent_type,
            display_name=display_name,
            description=description,
            capabilities=list(capabilities),
            created_by=created_by,
            auto_activate=activate,
        )
        _print_identity(ident)

    _run(body)


@identity.command(name="list")
@click.option("--status", default=None)
@click.option("--type", "agent_type", default=None)
@click.option("--limit", default=50)
def list_identities(status: str | None, agent_type: str | None, limit: int) -> None:
    """List identities."""

    async def body(stack: AgentStack) -> None:
        rows = await stack.identities.list_identities(status=status, agent_type=agent_type, limit=limit)
        if not rows:
            console.print("[yellow]No identities found[/yellow]")
            return
        table = Table(title="Identities")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Status")
        table.add_column("Version")
        table.add_column("Last active")
        for row in rows:
            table.add_row(
                row.agent_id, row.display_name or "-", row.agent_type, row.status, str(row.version), _ts(row.last_active_at)
            )
        console.print(table)

    _run(body)


@identity.command(name="show")
@click.argument("agent_id")
def show_identity(agent_id: str) -> None:
    async def body(stack: AgentStack) -> None:
        ident = await stack.identities.get_identity(agent_id)
        if ident is None:
            console.print(f"[red]Identity not found: {agent_id}[/red]")
            return
        _print_identity(ident)

    _run(body)


@identity.command(name="activate")
@click.argument("agent_id")
def activate_identity(agent_id: str) -> None:
    async def body(stack: AgentStack) -> None:
        ident = await stack.identities.activate_identity(agent_id, actor_id="cli")
        console.print(f"[green]{ident.agent_id} is {ident.status}[/green]")

    _run(body)


@identity.command(name="deactivate")
@click.argument("agent_id")
@click.option("--reason", default=None)
def deactivate_identity(agent_id: str, reason: str | None) -> None:
    async def body(stack: AgentStack) -> None:
        ident = await stack.identities.deactivate_identity(agent_id, reason=reason, actor_id="cli")
        console.print(f"[green]{ident.agent_id} is {ident.status}[/green]")

    _run(body)


@identity.command(name="retire")
@click.argument("agent_id")
@click.option("--reason", default=None)
def retire_identity(agent_id: str, reason: str | None) -> None:
    """Retire an identity. This cannot be undone."""

    async def body(stack: AgentStack) -> None:
        ident = await stack.identities.retire_identity(agent_id, reason=reason, actor_id="cli")
        console.print(f"[green]{ident.agent_id} retired[/green]")

    _run(body)


@identity.command(name="audit")
@click.argument("agent_id")
@click.option("--limit", default=100)
def identity_audit(agent_id: str, limit: int) -> None:
    """Show the audit trail, newest first."""

    async def body(stack: AgentStack) -> None:
        entries = await stack.identities.get_audit_trail(agent_id, limit)
        table = Table(title=f"Audit: {agent_id}")
        table.add_column("When", style="cyan")
        table.add_column("Action")
        table.add_column("Transition")
        table.add_column("Actor")
        table.add_column("Reason")
        for entry in entries:
            transition = f"{entry.previous_status or '-'} -> {entry.new_status}" if entry.new_status else "-"
            table.add_row(_ts(entry.timestamp), entry.action, transition, entry.actor_id or "-", entry.reason or "-")
        console.print(table)

    _run(body)


# =============================================================================
# Tasks
# =============================================================================


@main.group()
def task() -> None:
    """Create and inspect tasks."""


@task.command(name="create")
@click.argument("input_text")
@click.option("--type", "agent_type", default=None, help="Agent type (dispatched automatically if omitted)")
@click.option("--parent", "parent_task_id", default=None)
@click.option("--session", "session_id", default=None)
@click.option("--priority", default=5)
def create_task(
    input_text: str, agent_type: str | None, parent_task_id: str | None, session_id: str | None, priority: int
) -> None:
    """Create a task from INPUT_TEXT."""

    async def body(stack: AgentStack) -> None:
        result = await stack.tasks.create_task(
            input_text, agent_type, session_id=session_id, parent_task_id=parent_task_id, priority=priority
        )
        lines = [
            f"Type: [cyan]{result.task.agent_type}[/cyan]",
            f"Risk: {result.task.risk_level}  Depth: {result.task.depth}",
        ]
        if result.dispatch:
            lines.append(f"Dispatched: {result.dispatch.confidence:.2f} ({result.dispatch.reasoning})")
        if result.drift and result.drift.action.value != "allowed":
            lines.append(f"[yellow]Drift {result.drift.action.value}: {result.drift.max_similarity:.3f}[/yellow]")
        if result.awaiting_consensus:
            lines.append(f"[yellow]Awaiting consensus: checkpoint {result.checkpoint_id}[/yellow]")
        console.print(Panel("\n".join(lines), title=f"Task {result.task.id}"))

    _run(body)


@task.command(name="list")
@click.option("--status", default=None)
@click.option("--session", "session_id", default=None)
@click.option("--limit", default=20)
def list_tasks(status: str | None, session_id: str | None, limit: int) -> None:
    async def body(stack: AgentStack) -> None:
        rows = await stack.tasks.list_tasks(status=status, session_id=session_id, limit=limit)
        if not rows:
            console.print("[yellow]No tasks found[/yellow]")
            return
        table = Table(title="Tasks")
        table.add_column("ID", style="cyan")
        table.add_column("Type")
        table.add_column("Status")
        table.add_column("Risk")
        table.add_column("Input")
        table.add_column("Created")
        for row in rows:
            table.add_row(row.id, row.agent_type, row.status, row.risk_level or "-", _short(row.input, 40), _ts(row.created_at))
        console.print(table)

    _run(body)


@task.command(name="show")
@click.argument("task_id")
def show_task(task_id: str) -> None:
    async def body(stack: AgentStack) -> None:
        row = await stack.tasks.get_task(task_id)
        if row is None:
            console.print(f"[red]Task not found: {task_id}[/red]")
            return
        relationships = await stack.drift.get_task_relationships(task_id)
        console.print(
            Panel(
                f"{row.input}\n\n"
                f"Type: [cyan]{row.agent_type}[/cyan]\n"
                f"Status: {row.status}\n"
                f"Priority: {row.priority}\n"
                f"Parent: {row.parent_task_id or '-'}\n"
                f"Checkpoint: {row.consensus_checkpoint_id or '-'}\n"
                f"Relationships: {len(relationships)}\n"
                f"Output: {_short(row.output, 200)}",
                title=f"Task {row.id}",
            )
        )

    _run(body)


@task.command(name="delete")
@click.argument("task_id")
def delete_task(task_id: str) -> None:
    async def body(stack: AgentStack) -> None:
        if await stack.tasks.delete_task(task_id):
            console.print(f"[green]Deleted {task_id}[/green]")
        else:
            console.print(f"[red]Task not found: {task_id}[/red]")

    _run(body)


# =============================================================================
# Consensus
# =============================================================================


@main.group()
def consensus() -> None:
    """Review consensus checkpoints."""


@consensus.command(name="pending")
@click.option("--limit", default=50)
def pending_checkpoints(limit: int) -> None:
    async def body(stack: AgentStack) -> None:
        rows = await stack.consensus.list_pending(limit)
        if not rows:
            console.print("[yellow]No pending checkpoints[/yellow]")
            return
        table = Table(title="Pending Checkpoints")
        table.add_column("ID", style="cyan")
        table.add_column("Task")
        table.add_column("Risk")
        table.add_column("Subtasks")
        table.add_column("Expires")
        for row in rows:
            table.add_row(row.id, row.task_id, row.risk_level, str(len(row.proposed_subtasks)), _ts(row.expires_at))
        console.print(table)

    _run(body)


@consensus.command(name="show")
@click.argument("checkpoint_id")
def show_checkpoint(checkpoint_id: str) -> None:
    async def body(stack: AgentStack) -> None:
        checkpoint = await stack.consensus.get_checkpoint(checkpoint_id)
        if checkpoint is None:
            console.print(f"[red]Checkpoint not found: {checkpoint_id}[/red]")
            return
        subtasks = "\n".join(
            f"  {s['id']} [{s['agent_type']}] {_short(s['input'], 60)}" for s in checkpoint.proposed_subtasks
        )
        console.print(
            Panel(
                f"Status: [cyan]{checkpoint.status}[/cyan]\n"
                f"Risk: {checkpoint.risk_level}\n"
                f"Strategy: {checkpoint.reviewer_strategy}\n"
                f"Expires: {_ts(checkpoint.expires_at)}\n"
                f"Subtasks:\n{subtasks}",
                title=f"Checkpoint {checkpoint.id}",
            )
        )
        events = await stack.consensus.get_checkpoint_events(checkpoint_id)
        for event in events:
            console.print(f"  {_ts(event.created_at)} {event.event_type} by {event.actor_id or event.actor_type}")

    _run(body)


@consensus.command(name="approve")
@click.argument("checkpoint_id")
@click.option("--by", "reviewed_by", default="cli")
@click.option("--feedback", default=None)
def approve_checkpoint(checkpoint_id: str, reviewed_by: str, feedback: str | None) -> None:
    async def body(stack: AgentStack) -> None:
        await stack.consensus.approve_checkpoint(checkpoint_id, reviewed_by, feedback)
        released = await stack.tasks.release_approved(checkpoint_id)
        console.print(f"[green]Approved; {len(released)} task(s) released[/green]")

    _run(body)


@consensus.command(name="reject")
@click.argument("checkpoint_id")
@click.option("--by", "reviewed_by", default="cli")
@click.option("--feedback", default=None)
def reject_checkpoint(checkpoint_id: str, reviewed_by: str, feedback: str | None) -> None:
    async def body(stack: AgentStack) -> None:
        await stack.consensus.reject_checkpoint(checkpoint_id, reviewed_by, feedback)
        await stack.tasks.release_approved(checkpoint_id)
        console.print("[green]Rejected[/green]")

    _run(body)


@consensus.command(name="expire")
def expire_checkpoints() -> None:
    """Expire every pending checkpoint past its deadline."""

    async def body(stack: AgentStack) -> None:
        count = await stack.consensus.expire_checkpoints()
        console.print(f"Expired {count} checkpoint(s)")

    _run(body)


# =============================================================================
# Drift
# =============================================================================


@main.group()
def drift() -> None:
    """Semantic drift detection."""


@drift.command(name="check")
@click.argument("input_text")
@click.option("--type", "agent_type", required=True)
@click.option("--parent", "parent_task_id", default=None)
def check_drift(input_text: str, agent_type: str, parent_task_id: str | None) -> None:
    async def body(stack: AgentStack) -> None:
        if not stack.drift.is_enabled():
            console.print("[yellow]Drift detection is disabled or has no embedding provider[/yellow]")
        result = await stack.drift.check_drift(input_text, agent_type, parent_task_id)
        console.print(
            Panel(
                f"Drift: {'[red]yes[/red]' if result.is_drift else 'no'}\n"
                f"Action: {result.action.value}\n"
                f"Max similarity: {result.max_similarity:.3f}\n"
                f"Most similar: {result.most_similar_task_id or '-'}\n"
                f"Ancestors checked: {result.checked_ancestors}",
                title="Drift Check",
            )
        )

    _run(body)


@drift.command(name="metrics")
@click.option("--since", type=click.DateTime(), default=None)
def drift_metrics(since: datetime | None) -> None:
    async def body(stack: AgentStack) -> None:
        metrics = await stack.drift.get_drift_detection_metrics(since)
        table = Table(title="Drift Detection")
        table.add_column("Metric", style="cyan")
        table.add_column("Value")
        for key, value in metrics.items():
            table.add_row(key, f"{value:.3f}" if isinstance(value, float) else str(value))
        console.print(table)

    _run(body)


@drift.command(name="events")
@click.option("--limit", default=50)
def drift_events(limit: int) -> None:
    async def body(stack: AgentStack) -> None:
        rows = await stack.drift.get_recent_drift_events(limit)
        if not rows:
            console.print("[yellow]No drift events[/yellow]")
            return
        table = Table(title="Drift Events")
        table.add_column("When", style="cyan")
        table.add_column("Type")
        table.add_column("Ancestor")
        table.add_column("Similarity")
        table.add_column("Action")
        for row in rows:
            table.add_row(
                _ts(row.created_at), row.task_type, row.ancestor_task_id, f"{row.similarity_score:.3f}", row.action_taken
            )
        console.print(table)

    _run(body)


# =============================================================================
# Resources, dispatch, review
# =============================================================================


@main.group()
def resources() -> None:
    """Resource exhaustion monitoring."""


@resources.command(name="show")
def show_resources() -> None:
    async def body(stack: AgentStack) -> None:
        summary = await stack.resources.get_resource_metrics()
        phases = ", ".join(f"{k}={v}" for k, v in summary["agents_by_phase"].items())
        console.print(
            Panel(
                f"Tracked agents: {summary['total_agents_tracked']}\n"
                f"By phase: {phases}\n"
                f"Paused: {summary['paused_agents']}\n"
                f"Warnings: {summary['total_warnings']}  "
                f"Interventions: {summary['total_interventions']}  "
                f"Terminations: {summary['total_terminations']}",
                title="Resource Exhaustion",
            )
        )
        for event in summary["recent_events"]:
            console.print(f"  {_ts(event.created_at)} {event.agent_id} {event.phase} ({event.triggered_by})")

    _run(body)


@main.command()
@click.argument("description")
def dispatch(description: str) -> None:
    """Show which agent type DESCRIPTION would be routed to."""

    async def body(stack: AgentStack) -> None:
        decision = await stack.dispatcher.dispatch(description)
        if decision is None:
            console.print("[yellow]Smart dispatcher is not enabled or no provider available[/yellow]")
            return
        console.print(
            Panel(
                f"Agent type: [cyan]{decision.agent_type}[/cyan]\n"
                f"Confidence: {decision.confidence:.2f}\n"
                f"Reasoning: {decision.reasoning}\n"
                f"Cached: {decision.cached}  Latency: {decision.latency_ms}ms",
                title="Dispatch",
            )
        )

    _run(body)


@main.command()
@click.argument("code_input")
@click.option("--max-iterations", default=None, type=int)
@click.option("--provider", default=None)
def review(code_input: str, max_iterations: int | None, provider: str | None) -> None:
    """Run a coder/adversarial review loop on CODE_INPUT."""

    async def body(stack: AgentStack) -> None:
        with console.status("Running review loop..."):
            state = await stack.review_loops.run(code_input, max_iterations=max_iterations, provider=provider)
        colour = "green" if state.final_verdict == "APPROVE" else "yellow"
        console.print(
            Panel(
                state.current_code or "",
                title=f"[{colour}]{state.status.value}[/{colour}] after {state.iteration} iteration(s)",
            )
        )
        if state.reviews:
            last = state.reviews[-1]
            for issue in last.issues:
                console.print(f"  [{issue.severity}] {issue.title}")

    _run(body)


if __name__ == "__main__":
    main()
