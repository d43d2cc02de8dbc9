from __future__ import annotations

from contextlib import contextmanager
import logging
import os
import threading
from typing import Any, Dict, Iterator, Mapping, MutableMapping, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import extract as otel_extract
from opentelemetry.propagate import inject as otel_inject
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode


logger = logging.getLogger("OTel")

_state_lock = threading.Lock()
_otel_initialized = False
_otel_enabled = False
_otel_provider: Optional[TracerProvider] = None


def _resolve_otel_cfg(cfg: Mapping[str, Any] | None) -> Dict[str, Any]:
    if not isinstance(cfg, Mapping):
        return {}
    obs = cfg.get("observability")
    if not isinstance(obs, Mapping):
        return {}
    otel_cfg = obs.get("otel")
    return dict(otel_cfg) if isinstance(otel_cfg, Mapping) else {}


def init_otel(
    *,
    cfg: Mapping[str, Any] | None = None,
    service_name: Optional[str] = None,
) -> bool:
    """Install an OTLP tracer provider once per process when enabled in config."""
    global _otel_initialized
    global _otel_enabled
    global _otel_provider

    with _state_lock:
        if _otel_initialized:
            return _otel_enabled
        _otel_initialized = True

        otel_cfg = _resolve_otel_cfg(cfg)
        if not bool(otel_cfg.get("enabled", False)):
            return False

        resolved_service_name = (
            service_name
            or str(otel_cfg.get("service_name") or "")
            or os.getenv("OTEL_SERVICE_NAME")
            or "turn-worker"
        )
        otlp_endpoint = (
            str(otel_cfg.get("otlp_endpoint") or "")
            or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
            or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
            or ""
        )
        sampler_ratio = float(otel_cfg.get("sampler_ratio", 1.0))

        resource = Resource.create(
            {
                "service.name": resolved_service_name,
                "service.namespace": str(otel_cfg.get("service_namespace") or "durable-turns"),
                "service.version": str(otel_cfg.get("service_version") or "0.1.0"),
            }
        )
        provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(sampler_ratio)))
        exporter = OTLPSpanExporter(endpoint=otlp_endpoint) if otlp_endpoint else OTLPSpanExporter()
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)

        _otel_provider = provider
        _otel_enabled = True
        logger.info(
            "OpenTelemetry enabled service=%s endpoint=%s sampler_ratio=%s",
            resolved_service_name,
            otlp_endpoint or "default",
            sampler_ratio,
        )
        return True


def shutdown_otel() -> None:
    provider = _otel_provider
    if provider is None:
        return
    try:
        provider.force_flush()
    except Exception as exc:  # noqa: BLE001
        logger.warning("OpenTelemetry flush failed: %s", exc)


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def extract_context_from_headers(headers: Mapping[str, str] | None) -> Any:
    carrier = {str(k): str(v) for k, v in (headers or {}).items()}
    return otel_extract(carrier)


def inject_context_to_headers(headers: MutableMapping[str, str]) -> MutableMapping[str, str]:
    # An explicit upstream traceparent wins over the current span context.
    injected: Dict[str, str] = {}
    otel_inject(injected)
    for k, v in injected.items():
        if not headers.get(k):
            headers[k] = v
    return headers


@contextmanager
def start_span(
    tracer: trace.Tracer,
    name: str,
    *,
    headers: Mapping[str, str] | None = None,
    attributes: Mapping[str, Any] | None = None,
) -> Iterator[trace.Span]:
    cleaned = {str(k): v for k, v in (attributes or {}).items() if v is not None}
    context = extract_context_from_headers(headers) if headers else None
    with tracer.start_as_current_span(name, context=context, attributes=cleaned) as span:
        yield span


def mark_span_error(span: Any, exc: BaseException) -> None:
    if span is None:
        return
    summary = str(exc)[:512] or type(exc).__name__
    span.record_exception(exc)
    span.set_attribute("dt.error.type", type(exc).__name__)
    span.set_status(Status(StatusCode.ERROR, description=summary))
