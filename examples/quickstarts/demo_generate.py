"""
Demo: one durable turn end to end.

Goals:
- Publish a turn request to the worker: dt.v1.cmd.turn.{worker_target}.generate
- Print pending updates: dt.v1.evt.turn.{conversation_id}.pending
- Wait for the final event: dt.v1.evt.turn.{conversation_id}.result|failed

Notes:
- With `--model mock-tool` the worker calls `lookup` once; run
  `python -m services.tools.mock_lookup` alongside so the call gets a result.
- Without the lookup service the turn fails with "Timeout" after the wait window.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Dict

import uuid6

from core.app_config import config_to_dict, load_app_config
from core.protocol import GenerateRequest
from core.subject import turn_event_subject, turn_generate_subject
from core.trace import ensure_trace_headers
from infra.nats_client import NATSClient
from services.tools.mock_lookup import BLOCK_ID


def _build_request(*, conversation_id: str, prompt: str, model: str, with_tool: bool) -> GenerateRequest:
    tools = []
    if with_tool:
        tools.append(
            {
                "block_id": BLOCK_ID,
                "name": "lookup",
                "description": "Look up a short fact.",
                "input_schema": {
                    "type": "object",
                    "properties": {"q": {"type": "string"}},
                    "required": ["q"],
                },
            }
        )
    return GenerateRequest(
        conversation_id=conversation_id,
        prompt=prompt,
        model=model,
        thinking=False,
        tool_definitions=tools,
    )


async def run(*, prompt: str, model: str, with_tool: bool, timeout_seconds: int) -> None:
    cfg = config_to_dict(load_app_config())
    nats = NATSClient(config=cfg.get("nats", {}))
    await nats.connect()

    conversation_id = f"demo_{uuid6.uuid7().hex}"
    headers, trace_id = ensure_trace_headers({})
    print(f"[demo] conversation_id={conversation_id} trace_id={trace_id}")

    done = asyncio.Event()
    final: Dict[str, Any] = {}

    async def on_event(msg) -> None:
        try:
            data = json.loads(msg.data.decode("utf-8"))
        except ValueError:
            return
        suffix = msg.subject.rsplit(".", 1)[-1]
        if suffix == "pending":
            print(f"[demo] {data.get('description')}")
            return
        final.update(data)
        done.set()

    await nats.subscribe_core(turn_event_subject(conversation_id, "*"), on_event)

    request = _build_request(conversation_id=conversation_id, prompt=prompt, model=model, with_tool=with_tool)
    worker_target = cfg.get("worker", {}).get("worker_target", "turn_worker")
    await nats.publish_event(
        turn_generate_subject(worker_target),
        request.model_dump(mode="json", by_alias=True),
        headers=headers,
    )

    try:
        await asyncio.wait_for(done.wait(), timeout=timeout_seconds)
        print("[demo] Final event:", json.dumps(final, ensure_ascii=False, indent=2))
    except asyncio.TimeoutError:
        print(f"[demo] No final event within {timeout_seconds}s")
    finally:
        await nats.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Send one turn request and follow its pending lifecycle.")
    parser.add_argument("--prompt", default="x")
    parser.add_argument("--model", default="mock-tool")
    parser.add_argument("--no-tool", action="store_true", help="Do not offer the lookup tool.")
    parser.add_argument("--timeout", type=int, default=180)
    args = parser.parse_args()
    asyncio.run(
        run(prompt=args.prompt, model=args.model, with_tool=not args.no_tool, timeout_seconds=args.timeout)
    )


if __name__ == "__main__":
    main()
