"""Turn Worker loop entrypoint."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import ValidationError

from core.app_config import LLMSectionConfig, TurnConfig, load_app_config
from core.config import PROTOCOL_VERSION
from core.errors import ConfigurationError, DTError
from core.protocol import GenerateRequest, ToolResultMessage
from core.subject import tool_result_subject, turn_generate_subject
from core.turn_config import validate_generate_request
from core.utils import set_loop_policy
from infra.event_emitter import PendingEmitter
from infra.llm_gateway import LLMService, LLMWrapper
from infra.mock_llm_handler import mock_chat
from infra.observability.otel import get_tracer, start_span
from infra.service_runtime import ServiceBase
from infra.tool_dispatch import ToolDispatcher

from .models import ModelSettings, ResultDisposition, RetrySettings, TimeoutDisposition
from .result_handler import ToolResultHandler
from .timeout_reconciler import TimeoutReconciler
from .turn_executor import TurnExecutor

set_loop_policy()

# ----------------------------- Logging Setup ----------------------------- #
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("TurnWorker")
_TRACER = get_tracer("services.turn_worker.loop")


@dataclass(frozen=True)
class TurnWorkerSettings:
    worker_target: str
    max_concurrency: int
    watchdog_interval_seconds: float
    result_redelivery_delay_seconds: float
    preserve_state_on_timeout: bool
    llm: LLMSectionConfig
    turn: TurnConfig

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "TurnWorkerSettings":
        worker_cfg = cfg.get("worker", {}) if isinstance(cfg, dict) else {}
        turn = TurnConfig.model_validate(cfg.get("turn", {}))
        return cls(
            worker_target=str(worker_cfg.get("worker_target") or "turn_worker"),
            max_concurrency=max(1, int(worker_cfg.get("max_concurrency", 1))),
            watchdog_interval_seconds=float(worker_cfg.get("watchdog_interval_seconds", 5.0)),
            result_redelivery_delay_seconds=float(worker_cfg.get("result_redelivery_delay_seconds", 5.0)),
            preserve_state_on_timeout=bool(turn.preserve_state_on_timeout),
            llm=LLMSectionConfig.model_validate(cfg.get("llm", {})),
            turn=turn,
        )


class TurnWorker(ServiceBase):
    def __init__(self, config: Optional[Dict[str, Any]] = None, *, llm: Any = None):
        super().__init__(config, service_name="turn_worker")
        self.settings = TurnWorkerSettings.from_config(self.cfg)
        stores = self.ctx.stores

        self.state_store = self.register_store(stores.turn_state_store())
        self.result_store = self.register_store(stores.tool_result_store())
        self.guard = self.register_store(stores.race_guard())
        self.timeouts = self.register_store(stores.timeout_scheduler())

        llm_cfg = self.settings.llm
        self.executor = TurnExecutor(
            llm=llm or LLMWrapper(LLMService(), mock_chat=mock_chat),
            emitter=PendingEmitter(self.nats),
            state_store=self.state_store,
            timeouts=self.timeouts,
            dispatcher=ToolDispatcher(
                self.nats, reply_subject=tool_result_subject(self.settings.worker_target)
            ),
            retry=RetrySettings(
                max_attempts=llm_cfg.api_max_attempts,
                backoff_base_seconds=llm_cfg.backoff_base_seconds,
                backoff_max_seconds=llm_cfg.backoff_max_seconds,
            ),
            model=ModelSettings(api_key=llm_cfg.api_key, stream=llm_cfg.stream, mcp_beta=llm_cfg.mcp_beta),
        )
        self.reconciler = TimeoutReconciler(
            executor=self.executor,
            state_store=self.state_store,
            results=self.result_store,
            guard=self.guard,
            preserve_state=self.settings.preserve_state_on_timeout,
        )
        self.result_handler = ToolResultHandler(
            executor=self.executor,
            state_store=self.state_store,
            results=self.result_store,
            guard=self.guard,
            timeouts=self.timeouts,
        )
        self._watchdog_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        await self.open()
        target = self.settings.worker_target

        generate_subject = turn_generate_subject(target)
        await self.nats.subscribe_cmd(
            generate_subject,
            f"{target}_generate",
            self._handle_generate,
            durable_name=f"{target}_generate_{PROTOCOL_VERSION}",
            max_inflight=self.settings.max_concurrency,
        )
        result_subject = tool_result_subject(target)
        await self.nats.subscribe_cmd_with_ack(
            result_subject,
            f"{target}_results",
            self._handle_tool_result,
            durable_name=f"{target}_results_{PROTOCOL_VERSION}",
            max_inflight=self.settings.max_concurrency,
        )
        logger.info("Started. Listening on %s and %s", generate_subject, result_subject)

        self._watchdog_task = asyncio.create_task(self._watchdog_loop(), name="turn_worker:watchdog")

        # Keep alive
        while True:
            await asyncio.sleep(1)

    async def close(self) -> None:
        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None
        await super().close()

    async def _handle_generate(self, subject: str, data: Dict[str, Any], headers: Dict[str, str]) -> None:
        try:
            request = GenerateRequest.model_validate(data or {})
        except ValidationError as exc:
            logger.error("Malformed turn request subject=%s: %s", subject, exc)
            return
        try:
            params = validate_generate_request(
                request, llm_config=self.settings.llm, turn_config=self.settings.turn
            )
        except ConfigurationError as exc:
            logger.error("Rejected turn request conversation=%s: %s", request.conversation_id, exc.message)
            return

        with start_span(
            _TRACER,
            "turn.generate",
            headers=headers,
            attributes={"dt.conversation_id": request.conversation_id, "dt.model": params.model},
        ):
            try:
                await self.executor.start_turn(request, params)
            except DTError as exc:
                logger.error("Turn failed conversation=%s code=%s: %s", request.conversation_id, exc.code, exc)

    async def _handle_tool_result(self, msg: Any, subject: str, data: Dict[str, Any], headers: Dict[str, str]) -> None:
        try:
            message = ToolResultMessage.model_validate(data or {})
        except ValidationError as exc:
            logger.error("Malformed tool result subject=%s: %s", subject, exc)
            await msg.ack()
            return

        with start_span(
            _TRACER,
            "turn.tool_result",
            headers=headers,
            attributes={"dt.conversation_id": message.conversation_id, "dt.tool_call_id": message.tool_call_id},
        ):
            disposition = await self.result_handler.on_tool_result(
                message.conversation_id,
                message.tool_call_id,
                message.result,
                turn=message.turn,
            )
        if disposition is ResultDisposition.DEFERRED:
            await msg.nak(delay=self.settings.result_redelivery_delay_seconds)
            return
        await msg.ack()

    async def _watchdog_loop(self) -> None:
        logger.info("Turn watchdog started interval=%ss", self.settings.watchdog_interval_seconds)
        while True:
            try:
                await self.fire_due_timeouts()
            except Exception as exc:  # noqa: BLE001
                logger.error("Watchdog tick failed: %s", exc, exc_info=True)
            await asyncio.sleep(self.settings.watchdog_interval_seconds)

    async def fire_due_timeouts(self, now: Optional[float] = None) -> int:
        fired = 0
        for handle in await self.timeouts.due(now):
            if not await self.timeouts.claim(handle):
                continue
            disposition = await self.reconciler.fire(handle.conversation_id)
            if disposition is TimeoutDisposition.BUSY:
                await self.timeouts.set(handle.conversation_id, delay_s=self.settings.watchdog_interval_seconds)
            logger.info("Timeout fired conversation=%s disposition=%s", handle.conversation_id, disposition)
            fired += 1
        return fired


async def main() -> None:
    worker = TurnWorker(load_app_config())
    try:
        await worker.start()
    finally:
        await worker.close()
