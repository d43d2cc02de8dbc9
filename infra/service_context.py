from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.app_config import AppConfig, config_to_dict
from infra.nats_client import NATSClient
from infra.stores import ToolExecutionStore, ToolResultStore, TurnStateStore
from infra.worker_helpers import RaceGuard, TimeoutScheduler


@dataclass(frozen=True)
class StoreFactory:
    nats: NATSClient
    kv_cfg: Dict[str, Any]
    tool_wait_seconds: float

    def turn_state_store(self) -> TurnStateStore:
        return TurnStateStore(
            self.nats,
            bucket_name=str(self.kv_cfg["state_bucket"]),
            ttl_s=int(self.kv_cfg["state_ttl_seconds"]),
        )

    def tool_result_store(self) -> ToolResultStore:
        return ToolResultStore(
            self.nats,
            bucket_name=str(self.kv_cfg["results_bucket"]),
            ttl_s=int(self.kv_cfg["results_ttl_seconds"]),
        )

    def race_guard(self) -> RaceGuard:
        return RaceGuard(
            self.nats,
            bucket_name=str(self.kv_cfg["locks_bucket"]),
            ttl_s=int(self.kv_cfg["locks_ttl_seconds"]),
        )

    def tool_execution_store(self) -> ToolExecutionStore:
        return ToolExecutionStore(
            self.nats,
            bucket_name=str(self.kv_cfg["executions_bucket"]),
            ttl_s=int(self.kv_cfg["executions_ttl_seconds"]),
        )

    def timeout_scheduler(self) -> TimeoutScheduler:
        return TimeoutScheduler(
            self.nats,
            bucket_name=str(self.kv_cfg["timers_bucket"]),
            delay_s=self.tool_wait_seconds,
        )


@dataclass(frozen=True)
class ServiceContext:
    cfg: Dict[str, Any]
    nats_cfg: Dict[str, Any]
    nats: NATSClient
    stores: StoreFactory

    @classmethod
    def from_config(cls, config: Optional[AppConfig | Dict[str, Any]] = None) -> "ServiceContext":
        cfg = config_to_dict(config)
        nats_cfg = cfg.get("nats", {}) if isinstance(cfg, dict) else {}
        nats = NATSClient(config=nats_cfg)
        turn_cfg = cfg.get("turn", {})
        return cls(
            cfg=cfg,
            nats_cfg=nats_cfg,
            nats=nats,
            stores=StoreFactory(
                nats=nats,
                kv_cfg=cfg.get("kv", {}),
                tool_wait_seconds=float(turn_cfg.get("tool_wait_seconds")),
            ),
        )
