from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.config_defaults import (
    DEFAULT_KV_EXECUTIONS_BUCKET,
    DEFAULT_KV_EXECUTIONS_TTL_S,
    DEFAULT_KV_LOCKS_BUCKET,
    DEFAULT_KV_LOCKS_TTL_S,
    DEFAULT_KV_RESULTS_BUCKET,
    DEFAULT_KV_RESULTS_TTL_S,
    DEFAULT_KV_STATE_BUCKET,
    DEFAULT_KV_STATE_TTL_S,
    DEFAULT_KV_TIMERS_BUCKET,
    DEFAULT_LLM_API_KEY,
    DEFAULT_LLM_API_MAX_ATTEMPTS,
    DEFAULT_LLM_BACKOFF_BASE_SECONDS,
    DEFAULT_LLM_BACKOFF_MAX_SECONDS,
    DEFAULT_LLM_MCP_BETA,
    DEFAULT_LLM_MODEL,
    DEFAULT_LLM_STREAM,
    DEFAULT_NATS_CERT_DIR,
    DEFAULT_NATS_SERVERS,
    DEFAULT_NATS_TLS_ENABLED,
    DEFAULT_OBS_OTEL_ENABLED,
    DEFAULT_OBS_OTEL_OTLP_ENDPOINT,
    DEFAULT_OBS_OTEL_SAMPLER_RATIO,
    DEFAULT_OBS_OTEL_SERVICE_NAME,
    DEFAULT_OBS_OTEL_SERVICE_NAMESPACE,
    DEFAULT_OBS_OTEL_SERVICE_VERSION,
    DEFAULT_PROTOCOL_VERSION,
    DEFAULT_TURN_MAX_RETRIES,
    DEFAULT_TURN_MAX_TOKENS,
    DEFAULT_TURN_PRESERVE_STATE_ON_TIMEOUT,
    DEFAULT_TURN_THINKING,
    DEFAULT_TURN_THINKING_BUDGET,
    DEFAULT_TURN_TOOL_WAIT_SECONDS,
    DEFAULT_WORKER_MAX_CONCURRENCY,
    DEFAULT_WORKER_RESULT_REDELIVERY_DELAY_SECONDS,
    DEFAULT_WORKER_TARGET,
    DEFAULT_WORKER_WATCHDOG_INTERVAL_SECONDS,
    default_config,
)
from core.config_loader import (
    apply_defaults,
    apply_env_overrides,
    apply_legacy_env_overrides,
    _load_raw_config,
)


class ProtocolConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    version: str = DEFAULT_PROTOCOL_VERSION


class NatsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    servers: list[str] = Field(default_factory=lambda: list(DEFAULT_NATS_SERVERS))
    tls_enabled: bool = DEFAULT_NATS_TLS_ENABLED
    cert_dir: str = DEFAULT_NATS_CERT_DIR


class LLMSectionConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    api_key: str = DEFAULT_LLM_API_KEY
    default_model: str = DEFAULT_LLM_MODEL
    api_max_attempts: int = DEFAULT_LLM_API_MAX_ATTEMPTS
    backoff_base_seconds: float = DEFAULT_LLM_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = DEFAULT_LLM_BACKOFF_MAX_SECONDS
    stream: bool = DEFAULT_LLM_STREAM
    mcp_beta: str = DEFAULT_LLM_MCP_BETA


class TurnConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    tool_wait_seconds: float = DEFAULT_TURN_TOOL_WAIT_SECONDS
    max_tokens: int = DEFAULT_TURN_MAX_TOKENS
    thinking: bool = DEFAULT_TURN_THINKING
    thinking_budget: int = DEFAULT_TURN_THINKING_BUDGET
    max_retries: int = DEFAULT_TURN_MAX_RETRIES
    preserve_state_on_timeout: bool = DEFAULT_TURN_PRESERVE_STATE_ON_TIMEOUT


class KvConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    state_bucket: str = DEFAULT_KV_STATE_BUCKET
    state_ttl_seconds: int = DEFAULT_KV_STATE_TTL_S
    results_bucket: str = DEFAULT_KV_RESULTS_BUCKET
    results_ttl_seconds: int = DEFAULT_KV_RESULTS_TTL_S
    locks_bucket: str = DEFAULT_KV_LOCKS_BUCKET
    locks_ttl_seconds: int = DEFAULT_KV_LOCKS_TTL_S
    timers_bucket: str = DEFAULT_KV_TIMERS_BUCKET
    executions_bucket: str = DEFAULT_KV_EXECUTIONS_BUCKET
    executions_ttl_seconds: int = DEFAULT_KV_EXECUTIONS_TTL_S


class WorkerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    worker_target: str = DEFAULT_WORKER_TARGET
    max_concurrency: int = DEFAULT_WORKER_MAX_CONCURRENCY
    watchdog_interval_seconds: float = DEFAULT_WORKER_WATCHDOG_INTERVAL_SECONDS
    result_redelivery_delay_seconds: float = DEFAULT_WORKER_RESULT_REDELIVERY_DELAY_SECONDS


class ObservabilityOTelConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    enabled: bool = DEFAULT_OBS_OTEL_ENABLED
    service_namespace: str = DEFAULT_OBS_OTEL_SERVICE_NAMESPACE
    service_name: str = DEFAULT_OBS_OTEL_SERVICE_NAME
    service_version: str = DEFAULT_OBS_OTEL_SERVICE_VERSION
    otlp_endpoint: str = DEFAULT_OBS_OTEL_OTLP_ENDPOINT
    sampler_ratio: float = DEFAULT_OBS_OTEL_SAMPLER_RATIO


class ObservabilityConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    otel: ObservabilityOTelConfig = Field(default_factory=ObservabilityOTelConfig)


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    nats: NatsConfig = Field(default_factory=NatsConfig)
    llm: LLMSectionConfig = Field(default_factory=LLMSectionConfig)
    turn: TurnConfig = Field(default_factory=TurnConfig)
    kv: KvConfig = Field(default_factory=KvConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def load_app_config(path: Optional[Path] = None) -> AppConfig:
    raw = _load_raw_config(path=path)
    return AppConfig.model_validate(raw)


def normalize_config(config: Optional[AppConfig | Dict[str, Any]]) -> AppConfig:
    if config is None:
        return load_app_config()
    if isinstance(config, AppConfig):
        return config
    if isinstance(config, dict):
        raw = apply_legacy_env_overrides(dict(config))
        raw = apply_env_overrides(raw)
        raw = apply_defaults(raw, default_config())
        return AppConfig.model_validate(raw)
    raise TypeError("config must be AppConfig, dict, or None")


def config_to_dict(config: Optional[AppConfig | Dict[str, Any]]) -> Dict[str, Any]:
    return normalize_config(config).model_dump(mode="python")
