"""
Inspect the suspended turn of a conversation: state, stored fragments, timer and lock.

Usage:
  python -m scripts.admin.inspect_turn --conversation conv_01
  python -m scripts.admin.inspect_turn --list
"""

from __future__ import annotations

import argparse
import asyncio
import json
import time
from typing import Any, Dict

from core.app_config import load_app_config
from infra.service_context import ServiceContext


def _dump(label: str, value: Any) -> None:
    print(f"== {label}")
    print(json.dumps(value, ensure_ascii=False, indent=2, default=str))


async def _inspect(ctx: ServiceContext, conversation_id: str) -> None:
    stores = ctx.stores
    state = await stores.turn_state_store().load(conversation_id)
    if state is None:
        print(f"No suspended turn for conversation={conversation_id}")
    else:
        _dump(
            "state",
            {
                "conversation_id": state.conversation_id,
                "pending_id": state.pending_id,
                "turn": state.turn,
                "tool_call_ids": state.tool_call_ids,
                "messages": len(state.messages),
                "model": state.params.model,
            },
        )
        fragments = await stores.tool_result_store().load(conversation_id, state.turn, state.tool_call_ids)
        report: Dict[str, Any] = {}
        for tool_call_id in state.tool_call_ids:
            fragment = fragments.get(tool_call_id)
            report[tool_call_id] = fragment.result if fragment else "<missing>"
        _dump(f"fragments (turn {state.turn})", report)

    handle = await stores.timeout_scheduler().get(conversation_id)
    if handle is None:
        print("== timer: none")
    else:
        print(f"== timer: fires in {handle.fire_at - time.time():.1f}s (timer_id={handle.timer_id})")
    held = await stores.race_guard().is_held(conversation_id)
    print(f"== race guard: {'held' if held else 'free'}")


async def run(conversation_id: str | None, list_all: bool) -> None:
    ctx = ServiceContext.from_config(load_app_config())
    await ctx.nats.connect()
    try:
        if list_all:
            for conv in await ctx.stores.turn_state_store().list_conversations():
                print(conv)
            return
        await _inspect(ctx, conversation_id or "")
    finally:
        await ctx.nats.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect a suspended turn in JetStream KV.")
    parser.add_argument("--conversation", dest="conversation_id")
    parser.add_argument("--list", dest="list_all", action="store_true", help="List conversations with a suspended turn.")
    args = parser.parse_args()
    if not args.list_all and not args.conversation_id:
        parser.error("--conversation is required unless --list is given")
    asyncio.run(run(args.conversation_id, args.list_all))


if __name__ == "__main__":
    main()
