"""
Consensus Gate Example

Shows a risky subtask held at a consensus checkpoint, approved by a
reviewer and then released to a hierarchical coordinator.

Usage:
    python examples/consensus_analysis.py
"""

import asyncio

from rich.console import Console
from rich.table import Table

from agentstack import AgentStack, ConsensusConfig, Settings

console = Console()


async def main() -> None:
    settings = Settings(
        database_url_override="sqlite+aiosqlite:///agentstack-example.db",
        consensus=ConsensusConfig(enabled=True),
    )
    stack = AgentStack(settings, embedding_provider=None, dispatch_provider=None)
    await stack.start(init_schema=True)
    try:
        parent = (await stack.tasks.create_task("Clean up the reporting schema", "architect")).task
        child = await stack.tasks.create_task(
            "Drop the unused report_archive table", "coder", parent_task_id=parent.id
        )
        console.print(f"[yellow]{child.consensus.reason}[/yellow]")

        checkpoint = await stack.consensus.get_checkpoint(child.checkpoint_id)
        table = Table(title=f"Checkpoint {checkpoint.id[:8]}")
        table.add_column("Subtask", style="cyan")
        table.add_column("Agent")
        table.add_column("Risk")
        for subtask in checkpoint.proposed_subtasks:
            table.add_row(subtask["input"], subtask["agent_type"], subtask["estimated_risk_level"])
        console.print(table)

        await stack.consensus.approve_checkpoint(checkpoint.id, "example-reviewer", "Archive is backed up")
        coordinator = stack.create_coordinator("example")
        coordinator.initialize()
        released = await stack.tasks.release_approved(checkpoint.id, coordinator)
        console.print(f"[green]Released {len(released)} task(s)[/green]")
        console.print(coordinator.get_status()["queue"])
        coordinator.shutdown()
    finally:
        await stack.stop()


if __name__ == "__main__":
    asyncio.run(main())
