"""
Raw configuration assembly: built-in defaults, then a TOML file, then the
environment. The result is a plain dict; `core.app_config` validates it.
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from core.config_defaults import default_config
from core.errors import ConfigurationError
from core.utils import REPO_ROOT

logger = logging.getLogger(__name__)

ENV_PREFIX = "DT__"
ENV_SEPARATOR = "__"
CONFIG_PATH_ENV = "DT_CONFIG_TOML"
DEFAULT_CONFIG_FILE = REPO_ROOT / "config.toml"


def read_config_file(path: Path, *, required: bool = False) -> Dict[str, Any]:
    """
    Load one TOML file. A missing file is only an error when it was named
    explicitly; a malformed one always is.
    """
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid config file {path}: {exc}") from exc


def decode_env_value(raw: str) -> Any:
    value = (raw or "").strip()
    if value == "":
        return ""
    try:
        return json.loads(value)
    except ValueError:
        return value


def _set_path(cfg: Dict[str, Any], path: List[str], value: Any) -> None:
    node = cfg
    for segment in path[:-1]:
        child = node.get(segment)
        if not isinstance(child, dict):
            child = {}
            node[segment] = child
        node = child
    node[path[-1]] = value


def apply_env_overrides(
    cfg: Dict[str, Any],
    *,
    prefix: str = ENV_PREFIX,
    separator: str = ENV_SEPARATOR,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Apply `DT__SECTION__KEY=value` overrides; values are JSON-decoded when possible."""
    env = os.environ if environ is None else environ
    for env_key in sorted(env):
        if not env_key.startswith(prefix):
            continue
        path = [p.strip().lower() for p in env_key[len(prefix) :].split(separator) if p.strip()]
        if path:
            _set_path(cfg, path, decode_env_value(env[env_key]))
    return cfg


def apply_legacy_env_overrides(
    cfg: Dict[str, Any], *, environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """
    Unprefixed variables from older deployments. `ANTHROPIC_API_KEY` never
    replaces a key set in the file; `NATS_SERVERS` is a comma-separated list.
    """
    env = os.environ if environ is None else environ
    api_key = env.get("ANTHROPIC_API_KEY")
    if api_key:
        cfg.setdefault("llm", {}).setdefault("api_key", api_key)
    servers = [s.strip() for s in (env.get("NATS_SERVERS") or "").split(",") if s.strip()]
    if servers:
        cfg.setdefault("nats", {})["servers"] = servers
    return cfg


def apply_defaults(cfg: Dict[str, Any], defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Fill keys that are missing or None, recursing into tables present on both sides."""
    for key, default in (defaults or {}).items():
        current = cfg.get(key)
        if current is None:
            cfg[key] = apply_defaults({}, default) if isinstance(default, dict) else default
        elif isinstance(default, dict) and isinstance(current, dict):
            apply_defaults(current, default)
    return cfg


def _load_raw_config(
    path: Optional[Path] = None,
    *,
    env_prefix: str = ENV_PREFIX,
    env_separator: str = ENV_SEPARATOR,
) -> Dict[str, Any]:
    explicit = path or os.environ.get(CONFIG_PATH_ENV)
    cfg_path = Path(explicit) if explicit else DEFAULT_CONFIG_FILE
    cfg = read_config_file(cfg_path, required=bool(explicit))
    if cfg:
        logger.debug("Loaded config file %s", cfg_path)

    apply_legacy_env_overrides(cfg)
    apply_env_overrides(cfg, prefix=env_prefix, separator=env_separator)
    return apply_defaults(cfg, default_config())
