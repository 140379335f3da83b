"""
Basic Task Example

Creates a task, spawns an agent of the chosen type and runs the task through it.

Usage:
    AGENTSTACK_ANTHROPIC_API_KEY=... python examples/basic_task.py
"""

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agentstack import AgentStack, Settings
from agentstack.tasks.service import task_to_dict

console = Console()


async def main() -> None:
    settings = Settings(database_url_override="sqlite+aiosqlite:///agentstack-example.db")
    stack = AgentStack(settings)
    await stack.start(init_schema=True)
    try:
        console.print("\n[bold blue]Creating task...[/bold blue]")
        created = await stack.tasks.create_task("Write a function that reverses the words in a sentence")
        task = created.task
        if created.dispatch:
            console.print(
                f"Dispatched to [cyan]{created.dispatch.agent_type}[/cyan] "
                f"(confidence {created.dispatch.confidence:.2f})"
            )

        agent = stack.spawner.spawn(task.agent_type, session_id="example")
        await stack.tasks.assign_task(task.id, agent.id)
        result = await stack.spawner.execute_agent(agent.id, task.input)
        task = await stack.tasks.complete_task(task.id, result.response)

        table = Table(title="Task Information")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="magenta")
        for key in ("id", "agent_type", "status", "risk_level", "created_at", "completed_at"):
            table.add_row(key, str(task_to_dict(task)[key]))
        console.print(table)
        console.print(Panel(result.response, title=f"{agent.name} ({result.duration_ms} ms)"))
    finally:
        await stack.stop()


if __name__ == "__main__":
    asyncio.run(main())
