#!/usr/bin/env python3
"""Reset the PostgreSQL schema used by Handoff.

This script:
1. Drops the conversation, knowledge and learning tables
2. Recreates them (with the configured embedding width) on reconnect
"""

import asyncio

from dotenv import load_dotenv
load_dotenv()

from rich.console import Console

from handoff import HandoffConfig, PersistenceError
from handoff.storage.postgres import PostgresStore


console = Console()


async def reset_postgres(config: HandoffConfig) -> bool:
    """Drop and recreate all tables."""
    console.print("\n[bold]=== Resetting PostgreSQL ===[/bold]")
    pg = config.postgres
    console.print(f"Connecting to PostgreSQL at {pg.host}:{pg.port}/{pg.database}...")

    store = PostgresStore(pg)
    try:
        await store.connect()
        console.print("  Dropping existing tables...")
        await store.drop_schema()
        await store.disconnect()
        console.print("  ✓ Tables dropped")

        console.print(f"  Recreating schema (vector({pg.embedding_dim}))...")
        await store.connect()
        console.print("  ✓ Schema created")
        return True
    except PersistenceError as e:
        console.print(f"[red]✗ PostgreSQL reset failed: {e}[/red]")
        return False
    finally:
        await store.disconnect()


async def main():
    console.print("=" * 60)
    console.print("Database Reset Script")
    console.print("=" * 60)
    console.print("\nThis will DELETE ALL DATA in PostgreSQL!")
    console.print("Press Ctrl+C within 3 seconds to cancel...")

    try:
        await asyncio.sleep(3)
    except KeyboardInterrupt:
        console.print("\nCancelled.")
        return

    console.print("\nProceeding with reset...")
    ok = await reset_postgres(HandoffConfig.from_env())

    console.print("\n" + "=" * 60)
    console.print(f"PostgreSQL: {'✓ OK' if ok else '✗ FAILED'}")
    console.print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
