from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TypeVar

from core.app_config import AppConfig, normalize_config
from infra.observability.otel import init_otel, shutdown_otel
from infra.service_context import ServiceContext
from infra.stores.kv_base import BaseKvStore


logger = logging.getLogger(__name__)

StoreT = TypeVar("StoreT", bound=BaseKvStore)


@dataclass
class ServiceRuntime:
    """
    Process lifecycle for one service: tracing, the NATS connection and the
    KV buckets its registered stores live in.
    """

    ctx: ServiceContext
    service_name: Optional[str] = None
    stores: List[BaseKvStore] = field(default_factory=list)
    _opened: bool = False
    _otel_ready: bool = False

    @classmethod
    def from_config(
        cls,
        config: Optional[AppConfig | Dict[str, Any]] = None,
        *,
        service_name: Optional[str] = None,
    ) -> "ServiceRuntime":
        cfg = normalize_config(config)
        return cls(ctx=ServiceContext.from_config(cfg), service_name=service_name)

    def register_store(self, store: StoreT) -> StoreT:
        self.stores.append(store)
        return store

    async def open(self) -> None:
        if self._opened:
            return
        self._otel_ready = init_otel(cfg=self.ctx.cfg, service_name=self.service_name)
        await self.ctx.nats.connect()
        # Buckets exist before the first message is consumed.
        for store in self.stores:
            await store.ensure_bucket()
        logger.info(
            "Service %s ready buckets=%s",
            self.service_name,
            sorted({store.bucket_name for store in self.stores}),
        )
        self._opened = True

    async def close(self) -> None:
        if not self._opened:
            return
        try:
            await self.ctx.nats.close()
        except Exception as exc:
            logger.warning("ServiceRuntime NATS close failed: %s", exc, exc_info=True)
        finally:
            if self._otel_ready:
                shutdown_otel()
                self._otel_ready = False
            self._opened = False


class ServiceBase:
    def __init__(
        self,
        config: Optional[AppConfig | Dict[str, Any]] = None,
        *,
        service_name: Optional[str] = None,
    ) -> None:
        self.runtime = ServiceRuntime.from_config(
            config,
            service_name=service_name or self.__class__.__name__,
        )
        self.ctx = self.runtime.ctx
        self.cfg = self.ctx.cfg
        self.nats = self.ctx.nats

    def register_store(self, store: StoreT) -> StoreT:
        return self.runtime.register_store(store)

    async def open(self) -> None:
        await self.runtime.open()

    async def close(self) -> None:
        await self.runtime.close()
