#!/usr/bin/env python3
"""
Run one sleep cycle by hand.

Promotes a project's new feedback events into the knowledge graph and the
vector index, then prints what happened:

    python scripts/sleep_cycle.py /path/to/project
    python scripts/sleep_cycle.py .  --context   # also print the context block
"""

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv

from mnemo.config import MnemoConfig
from mnemo.consolidation import summarize
from mnemo.errors import MnemoError
from mnemo.orchestrator import MemoryOrchestrator


async def sleep_cycle(root: str, show_context: bool) -> int:
    print(f"🌙 Running sleep cycle for {root}...\n")

    async with MemoryOrchestrator(root, config=MnemoConfig.load()) as memory:
        report = await memory.run_consolidation()

        print(f"✅ {summarize(report)}")
        for failure in report.failures:
            print(f"   ⚠️  event #{failure.event_id} ({failure.stage}): {failure.cause}")

        stats = await memory.stats()
        print(f"\n📊 {stats['events']} events, {stats['vectors']} vectors, "
              f"{stats['graph']['entity_count']} entities, {stats['graph']['relation_count']} relations")

        if show_context:
            block = await memory.context_block()
            print(f"\n{block.text}")

    return 0 if not report.failures else 1


def main() -> int:
    # MNEMO_* overrides may live in a .env file
    load_dotenv(Path.home() / ".mnemo" / ".env", override=False)
    load_dotenv(".env", override=False)

    parser = argparse.ArgumentParser(description="Run one Mnemo consolidation pass")
    parser.add_argument("root", help="Project root directory")
    parser.add_argument("--context", action="store_true", help="Print the context block afterwards")
    args = parser.parse_args()

    try:
        return asyncio.run(sleep_cycle(args.root, args.context))
    except MnemoError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
