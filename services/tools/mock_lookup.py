"""
Mock Lookup Tool Service

Listens on: dt.{PROTOCOL_VERSION}.cmd.tool.demo_tools.call
Behavior: answers `lookup` calls from a static table so demos with the
`mock-tool` model run without any external executor.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from core.app_config import load_app_config
from core.utils import set_loop_policy
from services.tools.tool_bridge import ToolBridgeService

set_loop_policy()

logger = logging.getLogger("LookupMock")

BLOCK_ID = "demo_tools"

DEFAULT_ANSWERS = {
    "x": "42",
    "nats": "NATS is a connective technology for distributed systems.",
}


async def lookup(parameters: Dict[str, Any]) -> str:
    query = str(parameters.get("q") or "").strip().lower()
    answer = DEFAULT_ANSWERS.get(query)
    if answer is None:
        logger.info("No canned answer for q=%r", query)
        return f"No results for {query!r}"
    return answer


async def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    service = ToolBridgeService(load_app_config(), block_id=BLOCK_ID, handlers={"lookup": lookup})
    try:
        await service.start()
    finally:
        await service.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
