#!/usr/bin/env python3
"""Inspect and maintain conversation memory.

Usage examples:
    # Turn/pin/summary counts for a conversation
    uv run python scripts/memory_admin.py stats conv_123

    # Show the context the next reply would receive
    uv run python scripts/memory_admin.py context conv_123 --budget 1500

    # Recompute importance scores for every turn
    uv run python scripts/memory_admin.py rescore conv_123

    # Summarize the next window if one is due
    uv run python scripts/memory_admin.py summarize conv_123

    # Pin a fact
    uv run python scripts/memory_admin.py pin conv_123 "Allergic to penicillin" --importance 0.95
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from chat_memory.config import settings
from chat_memory.memory import CreatePinRequest, MemoryEngine

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)


async def show_stats(engine: MemoryEngine, conversation_id: str) -> None:
    stats = await engine.get_stats(conversation_id)
    needs = await engine.needs_summarization(conversation_id)
    print(f"Conversation:      {conversation_id}")
    print(f"Turns:             {stats.total_turns}")
    print(f"Summaries:         {stats.total_summaries}")
    print(f"Pins:              {stats.total_pins}")
    print(f"Oldest turn:       {stats.oldest_turn_at or '-'}")
    print(f"Newest turn:       {stats.newest_turn_at or '-'}")
    print(f"Avg importance:    {stats.average_importance:.2f}")
    print(f"Needs summary:     {'yes' if needs else 'no'}")


async def show_context(engine: MemoryEngine, conversation_id: str, budget: int | None) -> None:
    context = await engine.build_context(conversation_id, budget)
    flag = " (truncated)" if context.truncated else ""
    print(f"--- ~{context.total_tokens} tokens{flag} ---\n")
    block = context.render_block()
    if block:
        print(block)
        print()
    for turn in context.recent_turns:
        print(f"{turn.role.upper():9s} {turn.text[:120]}")


async def run(args: argparse.Namespace) -> None:
    engine = MemoryEngine.get()
    if args.command == "stats":
        await show_stats(engine, args.conversation_id)
    elif args.command == "context":
        await show_context(engine, args.conversation_id, args.budget)
    elif args.command == "rescore":
        count = await engine.score_conversation(args.conversation_id)
        print(f"Rescored {count} turns.")
    elif args.command == "summarize":
        summary = await engine.auto_summarize(args.conversation_id)
        if summary is None:
            print("Not enough unsummarized turns yet.")
        else:
            kind = "fallback" if summary.is_fallback else "generated"
            print(f"[{kind}] turns {summary.start_turn_id}-{summary.end_turn_id}: {summary.text}")
    elif args.command == "pin":
        pin = await engine.create_pin(
            CreatePinRequest(
                conversation_id=args.conversation_id,
                content=args.content,
                importance_score=args.importance,
                kind=args.kind,
            )
        )
        print(f"Pinned {pin.id} ({pin.importance_score:.2f})")


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect and maintain conversation memory")
    sub = parser.add_subparsers(dest="command", required=True)

    stats = sub.add_parser("stats", help="Show memory statistics")
    stats.add_argument("conversation_id")

    context = sub.add_parser("context", help="Show the assembled context")
    context.add_argument("conversation_id")
    context.add_argument("--budget", type=int, help="Token budget (default from settings)")

    rescore = sub.add_parser("rescore", help="Recompute turn importance scores")
    rescore.add_argument("conversation_id")

    summarize = sub.add_parser("summarize", help="Summarize the next window if due")
    summarize.add_argument("conversation_id")

    pin = sub.add_parser("pin", help="Pin a fact")
    pin.add_argument("conversation_id")
    pin.add_argument("content")
    pin.add_argument("--importance", type=float, help="0.0-1.0 (default 0.8)")
    pin.add_argument("--kind", default="manual", help="manual, auto, concept or system")

    asyncio.run(run(parser.parse_args()))


if __name__ == "__main__":
    main()
