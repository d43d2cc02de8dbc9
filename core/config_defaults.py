from __future__ import annotations

from typing import Any, Dict


DEFAULT_PROTOCOL_VERSION = "v1"

DEFAULT_NATS_SERVERS = ["nats://localhost:4222"]
DEFAULT_NATS_TLS_ENABLED = False
DEFAULT_NATS_CERT_DIR = "./nats-js-test"

DEFAULT_LLM_API_KEY = ""
DEFAULT_LLM_MODEL = "anthropic/claude-sonnet-4-5"
DEFAULT_LLM_API_MAX_ATTEMPTS = 3
DEFAULT_LLM_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_LLM_BACKOFF_MAX_SECONDS = 10.0
DEFAULT_LLM_STREAM = True
DEFAULT_LLM_MCP_BETA = "mcp-client-2025-04-04"

DEFAULT_TURN_TOOL_WAIT_SECONDS = 120.0
DEFAULT_TURN_MAX_TOKENS = 4096
DEFAULT_TURN_THINKING = True
DEFAULT_TURN_THINKING_BUDGET = 2048
DEFAULT_TURN_MAX_RETRIES = 1
DEFAULT_TURN_PRESERVE_STATE_ON_TIMEOUT = False

DEFAULT_KV_STATE_BUCKET = "dt_turn_state"
DEFAULT_KV_STATE_TTL_S = 24 * 60 * 60
DEFAULT_KV_RESULTS_BUCKET = "dt_turn_results"
DEFAULT_KV_RESULTS_TTL_S = 5 * 60
DEFAULT_KV_LOCKS_BUCKET = "dt_turn_locks"
DEFAULT_KV_LOCKS_TTL_S = 5 * 60
DEFAULT_KV_TIMERS_BUCKET = "dt_turn_timers"
DEFAULT_KV_EXECUTIONS_BUCKET = "dt_tool_exec"
DEFAULT_KV_EXECUTIONS_TTL_S = 60 * 60

DEFAULT_WORKER_TARGET = "turn_worker"
DEFAULT_WORKER_MAX_CONCURRENCY = 4
DEFAULT_WORKER_WATCHDOG_INTERVAL_SECONDS = 5.0
DEFAULT_WORKER_RESULT_REDELIVERY_DELAY_SECONDS = 5.0

DEFAULT_OBS_OTEL_ENABLED = False
DEFAULT_OBS_OTEL_SERVICE_NAMESPACE = "durable-turns"
DEFAULT_OBS_OTEL_SERVICE_NAME = "turn-worker"
DEFAULT_OBS_OTEL_SERVICE_VERSION = "0.1.0"
DEFAULT_OBS_OTEL_OTLP_ENDPOINT = ""
DEFAULT_OBS_OTEL_SAMPLER_RATIO = 1.0


def default_config() -> Dict[str, Any]:
    return {
        "protocol": {"version": DEFAULT_PROTOCOL_VERSION},
        "nats": {
            "servers": list(DEFAULT_NATS_SERVERS),
            "tls_enabled": DEFAULT_NATS_TLS_ENABLED,
            "cert_dir": DEFAULT_NATS_CERT_DIR,
        },
        "llm": {
            "api_key": DEFAULT_LLM_API_KEY,
            "default_model": DEFAULT_LLM_MODEL,
            "api_max_attempts": DEFAULT_LLM_API_MAX_ATTEMPTS,
            "backoff_base_seconds": DEFAULT_LLM_BACKOFF_BASE_SECONDS,
            "backoff_max_seconds": DEFAULT_LLM_BACKOFF_MAX_SECONDS,
            "stream": DEFAULT_LLM_STREAM,
            "mcp_beta": DEFAULT_LLM_MCP_BETA,
        },
        "turn": {
            "tool_wait_seconds": DEFAULT_TURN_TOOL_WAIT_SECONDS,
            "max_tokens": DEFAULT_TURN_MAX_TOKENS,
            "thinking": DEFAULT_TURN_THINKING,
            "thinking_budget": DEFAULT_TURN_THINKING_BUDGET,
            "max_retries": DEFAULT_TURN_MAX_RETRIES,
            "preserve_state_on_timeout": DEFAULT_TURN_PRESERVE_STATE_ON_TIMEOUT,
        },
        "kv": {
            "state_bucket": DEFAULT_KV_STATE_BUCKET,
            "state_ttl_seconds": DEFAULT_KV_STATE_TTL_S,
            "results_bucket": DEFAULT_KV_RESULTS_BUCKET,
            "results_ttl_seconds": DEFAULT_KV_RESULTS_TTL_S,
            "locks_bucket": DEFAULT_KV_LOCKS_BUCKET,
            "locks_ttl_seconds": DEFAULT_KV_LOCKS_TTL_S,
            "timers_bucket": DEFAULT_KV_TIMERS_BUCKET,
            "executions_bucket": DEFAULT_KV_EXECUTIONS_BUCKET,
            "executions_ttl_seconds": DEFAULT_KV_EXECUTIONS_TTL_S,
        },
        "worker": {
            "worker_target": DEFAULT_WORKER_TARGET,
            "max_concurrency": DEFAULT_WORKER_MAX_CONCURRENCY,
            "watchdog_interval_seconds": DEFAULT_WORKER_WATCHDOG_INTERVAL_SECONDS,
            "result_redelivery_delay_seconds": DEFAULT_WORKER_RESULT_REDELIVERY_DELAY_SECONDS,
        },
        "observability": {
            "otel": {
                "enabled": DEFAULT_OBS_OTEL_ENABLED,
                "service_namespace": DEFAULT_OBS_OTEL_SERVICE_NAMESPACE,
                "service_name": DEFAULT_OBS_OTEL_SERVICE_NAME,
                "service_version": DEFAULT_OBS_OTEL_SERVICE_VERSION,
                "otlp_endpoint": DEFAULT_OBS_OTEL_OTLP_ENDPOINT,
                "sampler_ratio": DEFAULT_OBS_OTEL_SAMPLER_RATIO,
            },
        },
    }
