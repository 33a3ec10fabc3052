# moderation_gateway/config.py
"""Handles loading and accessing the application configuration.

Configuration is layered: ``DEFAULT_CONFIG``, then the TOML file named by
``CONFIG_PATH``, then environment overrides. It is read once at startup.
Credentials are never part of it; backends read them from the environment.
"""
import copy
import logging
import os
import tomllib
from typing import Any, Dict, Optional

from .analyzer import DEFAULT_MAX_CONCURRENCY, DEFAULT_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "backend": {
        "kind": "ollama",
        "timeout_seconds": 60.0,
        "max_concurrency": DEFAULT_MAX_CONCURRENCY,
    },
    "moderation": {
        "system_prompt": DEFAULT_SYSTEM_PROMPT,
    },
    "ollama": {
        "base_url": "http://localhost:11434",
        "model": "llama-guard3:1b",
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
    },
    "replicate": {
        "base_url": "https://api.replicate.com",
        "model": "meta/llama-guard-3-8b",
    },
    "server": {
        "host": "0.0.0.0",
        "port": 80,
        "cors_allow_origins": ["*"],
    },
    "audit": {
        "enabled": True,
    },
}

# env var -> (section, key)
ENV_OVERRIDES = {
    "MODERATION_BACKEND": ("backend", "kind"),
    "OLLAMA_URL": ("ollama", "base_url"),
    "OLLAMA_MODEL": ("ollama", "model"),
    "OPENAI_API_BASE": ("openai", "base_url"),
    "OPENAI_MODEL": ("openai", "model"),
    "REPLICATE_MODEL": ("replicate", "model"),
    "PORT": ("server", "port"),
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k].update(v)
        else:
            merged[k] = v
    return merged


def _apply_env(cfg: Dict[str, Any], environ) -> Dict[str, Any]:
    for var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            cfg.setdefault(section, {})[key] = value
    cfg["server"]["port"] = int(cfg["server"]["port"])
    return cfg


def load_config(path: Optional[str] = None, environ=None) -> Dict[str, Any]:
    """Builds the effective configuration.

    A missing file means defaults. A file that cannot be parsed is logged and
    ignored.
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get("CONFIG_PATH", "config.toml")
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if os.path.exists(path):
        try:
            with open(path, "rb") as f:
                cfg = _merge(DEFAULT_CONFIG, tomllib.load(f))
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.error("[config] failed to load %s: %s", path, e)
    return _apply_env(cfg, environ)
