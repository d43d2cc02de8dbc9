"""
JetStream transport shared by the turn worker and the tool executors.

Commands (`dt.{v}.cmd.>`) and events (`dt.{v}.evt.>`) live in two streams with
different retention. Consumers are durable pull subscriptions with bounded
in-flight handling.
"""

import os
import ssl
import json
import time
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from nats.aio.client import Client as NATS
from nats.errors import TimeoutError as FetchTimeoutError
from nats.js.api import AckPolicy, ConsumerConfig, DeliverPolicy
from nats.js.errors import NotFoundError

from core.config_defaults import DEFAULT_NATS_CERT_DIR, DEFAULT_NATS_SERVERS
from core.subject import PROTOCOL_VERSION, parse_subject, subject_prefix
from core.trace import TRACEPARENT_HEADER, ensure_trace_headers
from infra.observability.otel import (
    get_tracer,
    inject_context_to_headers,
    mark_span_error,
    start_span,
)


logger = logging.getLogger("NATSClient")
_TRACER = get_tracer("infra.nats_client")

# (subject, data, headers); acked by the client once it returns
AutoAckCallback = Callable[[str, Dict[str, Any], Dict[str, str]], Awaitable[None]]
# (msg, subject, data, headers); the callback acks or naks `msg` itself
ManualAckCallback = Callable[[Any, str, Dict[str, Any], Dict[str, str]], Awaitable[None]]

DURABLE_NAME_MAX_LEN = 64


@dataclass(frozen=True)
class StreamSpec:
    name: str
    subjects: str
    max_age_seconds: int


def protocol_streams(protocol_version: str = PROTOCOL_VERSION) -> Tuple[StreamSpec, ...]:
    prefix = subject_prefix(protocol_version)
    return (
        StreamSpec(f"dt_cmd_{protocol_version}", f"{prefix}.cmd.>", 24 * 60 * 60),
        StreamSpec(f"dt_evt_{protocol_version}", f"{prefix}.evt.>", 7 * 24 * 60 * 60),
    )


def durable_name_for(subject: str, queue_group: str) -> str:
    """Derive a consumer name from the subject; long names fall back to a short hash."""
    readable = subject.replace(".", "_").replace("*", "ALL").replace(">", "REST")
    name = f"{queue_group}_{readable}"
    if len(name) <= DURABLE_NAME_MAX_LEN:
        return name
    return f"{queue_group}_{hashlib.sha1(subject.encode()).hexdigest()[:8]}"


def _span_attributes(subject: str, operation: str) -> Dict[str, Any]:
    attrs: Dict[str, Any] = {
        "messaging.system": "nats",
        "messaging.destination": subject,
        "messaging.operation": operation,
    }
    parts = parse_subject(subject)
    if parts:
        attrs["dt.category"] = parts.category
        attrs["dt.component"] = parts.component
        attrs["dt.target"] = parts.target
        attrs["dt.suffix"] = parts.suffix
    return attrs


def _tls_context(cert_dir: str) -> Optional[ssl.SSLContext]:
    ctx = ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH)
    try:
        ctx.load_verify_locations(os.path.join(cert_dir, "ca.crt"))
        ctx.load_cert_chain(
            certfile=os.path.join(cert_dir, "client.crt"),
            keyfile=os.path.join(cert_dir, "client.key"),
        )
    except FileNotFoundError:
        logger.warning("TLS files not found under %s, switching to non-TLS connection", cert_dir)
        return None
    ctx.check_hostname = False
    return ctx


@dataclass(frozen=True)
class NATSSubscriptionHandle:
    """Handle returned by subscribe_* helpers for lifecycle management."""

    durable_name: str
    task: asyncio.Task

    def stop(self) -> None:
        self.task.cancel()

    async def wait(self) -> None:
        try:
            await self.task
        except asyncio.CancelledError:
            pass


class NATSClient:
    """NATS/JetStream connection with traced publishing and durable pull consumers."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        cfg = config or {}
        servers = [s.strip() for s in (cfg.get("servers") or []) if isinstance(s, str) and s.strip()]
        self.servers = servers or list(DEFAULT_NATS_SERVERS)
        self.tls_enabled = bool(cfg.get("tls_enabled", False))
        self.cert_dir = str(cfg.get("cert_dir") or DEFAULT_NATS_CERT_DIR)

        pull_cfg = cfg.get("pull") if isinstance(cfg.get("pull"), dict) else {}
        self.fetch_batch = max(1, int(pull_cfg.get("batch_size", 1)))
        self.fetch_timeout_seconds = float(pull_cfg.get("fetch_timeout_seconds", 5.0)) or 5.0
        self.sender = os.getenv("DT_SENDER", "dt-nats-client")

        self.nc = NATS()
        self.js = None
        self._tasks: Set[asyncio.Task] = set()
        self._streams_ready = False

    async def connect(self) -> None:
        tls = _tls_context(self.cert_dir) if self.tls_enabled else None
        await self.nc.connect(servers=self.servers, tls=tls)
        self.js = self.nc.jetstream()
        await self._ensure_streams()
        logger.info("Connected to %s (%s)", self.servers, "tls" if tls else "plain")

    def _require_js(self):
        if not self.js:
            raise RuntimeError("NATS JetStream not connected")
        return self.js

    async def _ensure_streams(self) -> None:
        if self._streams_ready:
            return
        js = self._require_js()
        for spec in protocol_streams():
            try:
                await js.stream_info(spec.name)
                continue
            except NotFoundError:
                pass
            logger.info("Creating stream %s subjects=%s", spec.name, spec.subjects)
            try:
                await js.add_stream(name=spec.name, subjects=[spec.subjects], max_age=spec.max_age_seconds)
            except Exception as exc:
                raise RuntimeError(
                    f"Failed to create JetStream stream {spec.name!r}; "
                    "an existing stream with overlapping subjects must be removed first."
                ) from exc
        self._streams_ready = True

    def _outgoing_headers(self, headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        final_headers: Dict[str, str] = dict(headers or {})
        inject_context_to_headers(final_headers)
        final_headers, _ = ensure_trace_headers(final_headers)
        final_headers.setdefault("DT-Timestamp", str(int(time.time() * 1000)))
        final_headers.setdefault("DT-Version", PROTOCOL_VERSION)
        final_headers.setdefault("DT-Sender", self.sender)
        return final_headers

    async def publish_event(
        self,
        subject: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ):
        """Publish JSON to JetStream and wait for the stream ack; failures propagate."""
        js = self._require_js()
        await self._ensure_streams()

        with start_span(_TRACER, "nats.publish", headers=headers, attributes=_span_attributes(subject, "publish")) as span:
            data = json.dumps(payload, default=str).encode("utf-8")
            try:
                return await js.publish(subject, data, headers=self._outgoing_headers(headers))
            except Exception as exc:
                mark_span_error(span, exc)
                logger.error("publish failed subject=%s: %s", subject, exc)
                raise

    async def subscribe_cmd(
        self,
        subject: str,
        queue_group: str,
        callback: AutoAckCallback,
        durable_name: Optional[str] = None,
        *,
        ack_wait: int = 600,
        max_deliver: int = 3,
        max_inflight: int = 1,
    ) -> NATSSubscriptionHandle:
        """Pull-subscribe; the message is acked after `callback(subject, data, headers)` returns."""
        return await self._pull_subscribe(
            subject,
            durable_name or durable_name_for(subject, queue_group),
            partial(self._deliver, callback=callback, auto_ack=True),
            ack_wait=ack_wait,
            max_deliver=max_deliver,
            max_inflight=max_inflight,
        )

    async def subscribe_cmd_with_ack(
        self,
        subject: str,
        queue_group: str,
        callback: ManualAckCallback,
        durable_name: Optional[str] = None,
        *,
        ack_wait: int = 600,
        max_deliver: int = -1,
        max_inflight: int = 1,
    ) -> NATSSubscriptionHandle:
        """Pull-subscribe; `callback(msg, subject, data, headers)` acks or naks itself."""
        return await self._pull_subscribe(
            subject,
            durable_name or durable_name_for(subject, queue_group),
            partial(self._deliver, callback=callback, auto_ack=False),
            ack_wait=ack_wait,
            max_deliver=max_deliver,
            max_inflight=max_inflight,
        )

    async def _pull_subscribe(
        self,
        subject: str,
        durable: str,
        handler: Callable[[Any], Awaitable[None]],
        *,
        ack_wait: int,
        max_deliver: int,
        max_inflight: int,
    ) -> NATSSubscriptionHandle:
        js = self._require_js()
        await self._ensure_streams()

        consumer_cfg = ConsumerConfig(
            durable_name=durable,
            deliver_policy=DeliverPolicy.ALL,
            ack_policy=AckPolicy.EXPLICIT,
            ack_wait=int(ack_wait),
            max_deliver=int(max_deliver),
        )
        sub = await js.pull_subscribe(subject, durable=durable, config=consumer_cfg)
        logger.info("Pull-Subscribed to %s (Durable: %s)", subject, durable)

        task = asyncio.create_task(self._consume(sub, durable, handler, max_inflight), name=f"nats_worker:{durable}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return NATSSubscriptionHandle(durable_name=durable, task=task)

    async def _deliver(self, msg: Any, *, callback: Callable, auto_ack: bool) -> None:
        try:
            data = json.loads(msg.data.decode("utf-8"))
        except ValueError as exc:
            # Poison message: acknowledge so it is not redelivered forever.
            logger.error("Decode error subject=%s: %s", msg.subject, exc)
            await msg.ack()
            return

        headers = msg.headers or {}
        if not headers.get(TRACEPARENT_HEADER):
            logger.debug("missing traceparent header (subject=%s)", msg.subject)

        with start_span(
            _TRACER, "nats.consume", headers=headers, attributes=_span_attributes(msg.subject, "process")
        ) as span:
            try:
                if auto_ack:
                    await callback(msg.subject, data, headers)
                    await msg.ack()
                else:
                    await callback(msg, msg.subject, data, headers)
            except Exception as exc:  # noqa: BLE001
                mark_span_error(span, exc)
                logger.error("Error processing message subject=%s: %s", msg.subject, exc, exc_info=True)
                try:
                    await msg.nak()
                except Exception as nak_exc:  # noqa: BLE001
                    logger.warning("nak failed subject=%s: %s", msg.subject, nak_exc)

    async def _consume(
        self,
        sub: Any,
        durable: str,
        handler: Callable[[Any], Awaitable[None]],
        max_inflight: int,
    ) -> None:
        slots = asyncio.Semaphore(max(1, int(max_inflight)))
        inflight: Set[asyncio.Task] = set()

        def _done(task: asyncio.Task) -> None:
            inflight.discard(task)
            slots.release()

        try:
            while True:
                try:
                    msgs = await sub.fetch(self.fetch_batch, timeout=self.fetch_timeout_seconds)
                except FetchTimeoutError:
                    continue
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Fetch failed durable=%s: %s", durable, exc)
                    await asyncio.sleep(1)
                    continue
                for msg in msgs:
                    await slots.acquire()
                    task = asyncio.create_task(handler(msg), name=f"nats_msg:{durable}")
                    inflight.add(task)
                    task.add_done_callback(_done)
        except asyncio.CancelledError:
            # Graceful shutdown: stop pulling more messages.
            pass
        finally:
            for task in list(inflight):
                task.cancel()
            if inflight:
                await asyncio.gather(*list(inflight), return_exceptions=True)

    async def subscribe_core(self, subject: str, callback: Callable[[Any], Awaitable[None]]):
        """Core NATS subscription (at-most-once, no consumer state); `callback(msg)`."""
        if not self.nc.is_connected:
            raise RuntimeError("NATS not connected")
        return await self.nc.subscribe(subject, cb=callback)

    async def close(self) -> None:
        if self._tasks:
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.nc.close()
