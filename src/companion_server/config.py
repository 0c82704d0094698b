"""Configuration loading utilities for the companion server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable COMPANION_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``COMPANION__`` (e.g., COMPANION__MODEL__BACKEND=openai).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "COMPANION__"
ENV_CONFIG_PATH = "COMPANION_CONFIG"

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "model": {
        "backend": "llama",
        "model_dir": "models",
        "model_path": "model.gguf",
        "temperature": 1.0,
    },
    "roster": {"personas_file": None, "active": None},
    "conversation": {
        "window": 10,
        "fallback_persona": "moyan",
        "fallback_text": "星能波动剧烈，传输中断。",
        "greeting_persona": "xiaozhi",
        "greeting_text": "诶诶诶！念主终于开启共生空间啦！",
        "open_placeholder": "thinking…",
        "closed_placeholder": "...",
    },
    "notes": {"data_dir": "data", "default_tag": "空间灵感"},
}


def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix COMPANION__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., COMPANION__CONVERSATION__WINDOW -> cfg["conversation"]["window"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge ``override`` into a copy of ``base``."""
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the companion server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``COMPANION_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the file, with environment overrides applied.
    """
    if path is None:
        path = os.environ.get(ENV_CONFIG_PATH, "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, cfg))
