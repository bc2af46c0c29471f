"""Handoff - reviewer console."""

import asyncio
import os
import shlex

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

# Load environment variables from .env file
load_dotenv()

from handoff import HandoffConfig, HandoffError, create_service
from handoff.learning import ReviewDecision
from handoff.log import setup_logging
from handoff.service import HandoffService


console = Console()

HELP = """[bold]Commands[/bold]
  pending [shop_id]                 list items awaiting review
  approve <item_id>                 approve an item
  reject <item_id> <reason...>      reject an item (reason required)
  apply [shop_id]                   apply approved items now
  search <shop_id> <query...>       search the knowledge base
  history <knowledge_id>            version history of a knowledge item
  restore <knowledge_id> <version>  restore an earlier version as a new one
  audit <item_id>                   audit trail of a learning item
  review                            conversations flagged for review
  stats                             performance statistics
  cache                             embedding cache statistics
  metrics [shop_id]                 learning metrics
  health                            health verdict and active alerts
  help                              this text
  quit                              exit"""


def print_welcome(service: HandoffService, reviewer: str):
    """Print welcome message."""
    cfg = service.config
    console.print(Panel.fit(
        "[bold blue]Handoff[/bold blue] - Knowledge Review Console\n"
        f"Reviewer: {reviewer}\n"
        f"Database: {cfg.postgres.host}:{cfg.postgres.port}/{cfg.postgres.database}\n"
        f"Embedding model: {cfg.encoder.embedding_model} ({cfg.encoder.embedding_dim}d)",
        title="Welcome"
    ))
    console.print("\n[dim]Type 'help' for commands, 'quit' to exit[/dim]\n")


def print_items(items):
    if not items:
        console.print("[dim]Nothing here.[/dim]")
        return
    table = Table(title="Learning Queue")
    for column in ("id", "shop", "priority", "status", "conf", "cycles", "content"):
        table.add_column(column)
    for item in items:
        table.add_row(
            item.id[:8],
            str(item.shop_id),
            item.priority.value,
            item.status.value,
            f"{item.confidence_score:.0f}",
            str(item.review_cycles),
            item.proposed_content[:60],
        )
    console.print(table)


async def resolve_item_id(service: HandoffService, prefix: str) -> str:
    """Accept the short ids shown in tables."""
    if len(prefix) >= 32:
        return prefix
    matches = [
        item.id for item in await service.list_learning_items(status=None, limit=1000)
        if item.id.startswith(prefix)
    ]
    if len(matches) != 1:
        raise HandoffError(f"'{prefix}' matches {len(matches)} items")
    return matches[0]


async def handle(service: HandoffService, reviewer: str, command: str, args: list[str]) -> None:
    if command == "pending":
        shop_id = int(args[0]) if args else None
        print_items(await service.list_learning_items(shop_id=shop_id))

    elif command == "approve" and args:
        item_id = await resolve_item_id(service, args[0])
        status = await service.review_learning_item(item_id, ReviewDecision.APPROVE, reviewer)
        console.print(f"[green]{item_id[:8]} -> {status.value}[/green]")

    elif command == "reject" and len(args) >= 2:
        item_id = await resolve_item_id(service, args[0])
        status = await service.review_learning_item(
            item_id, ReviewDecision.REJECT, reviewer, reason=" ".join(args[1:])
        )
        console.print(f"[yellow]{item_id[:8]} -> {status.value}[/yellow]")

    elif command == "apply":
        shop_id = int(args[0]) if args else None
        result = await service.apply_approved_items(shop_id=shop_id)
        console.print(
            f"Applied {result.applied_count}, flagged {result.flagged_count}, "
            f"failed {len(result.failures)} ({result.duration_ms:.0f} ms)"
        )
        for failure in result.failures:
            console.print(f"  [red]{failure.id[:8]}: {failure.reason}[/red]")

    elif command == "search" and len(args) >= 2:
        hits = await service.search_knowledge(" ".join(args[1:]), shop_id=int(args[0]))
        table = Table(title="Knowledge")
        table.add_column("similarity")
        table.add_column("category")
        table.add_column("v")
        table.add_column("content")
        for hit in hits:
            table.add_row(f"{hit.similarity:.3f}", hit.item.category, str(hit.item.version), hit.item.content[:80])
        console.print(table)

    elif command == "history" and args:
        for version in await service.knowledge_history(args[0]):
            console.print(f"v{version.version} [{version.change_type}] {version.content[:80]}")

    elif command == "restore" and len(args) >= 2:
        item = await service.restore_knowledge_version(args[0], int(args[1]), reviewer)
        console.print(f"[green]Restored v{args[1]} as v{item.version}[/green]")

    elif command == "audit" and args:
        item_id = await resolve_item_id(service, args[0])
        for event in await service.audit_log(item_id):
            console.print(
                f"{event.from_status.value if event.from_status else '-'} -> "
                f"{event.to_status.value} by {event.actor}"
                + (f": {event.reason}" if event.reason else "")
            )

    elif command == "review":
        for record in await service.conversations_needing_review():
            console.print(
                f"{record.id[:8]} [{record.metadata.get('review_priority', 'normal')}] "
                f"{record.metadata.get('review_reason', '')}"
            )

    elif command == "stats":
        console.print(service.monitor.summary_table())

    elif command == "cache":
        console.print(Panel(str(service.cache_stats()), title="Embedding Cache"))

    elif command == "metrics":
        shop_id = int(args[0]) if args else None
        console.print(Panel(str(await service.learning_metrics(shop_id)), title="Learning Metrics"))

    elif command == "health":
        snapshot = service.health_status()
        console.print(f"[bold]Health:[/bold] {snapshot['health']}")
        for alert in snapshot["alerts"]:
            console.print(f"  {alert['severity']}: {alert['message']}")

    else:
        console.print(HELP)


async def run_interactive(service: HandoffService, reviewer: str):
    """Run interactive session."""
    while True:
        try:
            user_input = Prompt.ask("[bold green]review[/bold green]")
            if not user_input.strip():
                continue

            command, *args = shlex.split(user_input)
            command = command.lower()
            if command in ("quit", "exit"):
                console.print("[dim]Goodbye![/dim]")
                break

            await handle(service, reviewer, command, args)

        except KeyboardInterrupt:
            console.print("\n[dim]Interrupted. Type 'quit' to exit.[/dim]")
        except (HandoffError, ValueError) as e:
            console.print(f"[red]Error: {e}[/red]")


async def main():
    """Main entry point."""
    config = HandoffConfig.from_env()
    setup_logging(config.log_level, console)
    reviewer = os.getenv("REVIEWER", os.getenv("USER", "reviewer"))

    async with create_service(config) as service:
        print_welcome(service, reviewer)
        await run_interactive(service, reviewer)


if __name__ == "__main__":
    asyncio.run(main())
