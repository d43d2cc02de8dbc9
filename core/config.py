"""Process-wide constants resolved once from the layered configuration.

Layers, lowest first: built-in defaults, `config.toml` (or the file named by
`DT_CONFIG_TOML`), then `DT__SECTION__KEY` environment overrides.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict

from core.app_config import load_app_config, config_to_dict


@lru_cache(maxsize=1)
def _cfg() -> Dict[str, Any]:
    return config_to_dict(load_app_config())


def _require_str(section: str, key: str) -> str:
    val = (_cfg().get(section) or {}).get(key)
    if not isinstance(val, str) or not val:
        raise RuntimeError(f"Missing required config: [{section}].{key}")
    return val


# Second segment of every subject and suffix of every durable consumer name
PROTOCOL_VERSION = _require_str("protocol", "version")
