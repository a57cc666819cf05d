"""Configuration loader.

Reads renderer settings from a YAML config file with ``${ENV_VAR}``
interpolation.  Settings the file leaves out fall back to the environment
variables the render server has always honoured (``TEMP_DIR``,
``DEFAULT_ENGINE`` ...).
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .models import RendererConfig

load_dotenv()

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# YAML loading with ${ENV_VAR} interpolation
# ---------------------------------------------------------------------------

_ENV_RE = re.compile(r"\$\{([^}]+)\}")

# RendererConfig field -> environment variable
ENV_FALLBACKS: dict[str, str] = {
    "temp_dir": "TEMP_DIR",
    "default_engine": "DEFAULT_ENGINE",
    "default_format": "DEFAULT_FORMAT",
    "log_level": "LOG_LEVEL",
    "enable_progressive_rendering": "ENABLE_PROGRESSIVE_RENDERING",
    "enable_smart_preprocessing": "ENABLE_SMART_PREPROCESSING",
    "max_rendering_attempts": "MAX_RENDERING_ATTEMPTS",
}


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${ENV_VAR}`` references in strings."""
    if isinstance(value, str):
        def _replace(m: re.Match) -> str:
            return os.environ.get(m.group(1), "")
        return _ENV_RE.sub(_replace, value)
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(v) for v in value]
    return value


def apply_env_fallbacks(config: RendererConfig) -> RendererConfig:
    """Fill settings not explicitly configured from environment variables.

    Returns a new validated config; invalid values raise ``ValidationError``.
    """
    updates: dict[str, str] = {}
    for field_name, env_name in ENV_FALLBACKS.items():
        if field_name in config.model_fields_set:
            continue
        value = os.getenv(env_name, "")
        if value:
            updates[field_name] = value
    if not updates:
        return config
    logger.debug("Config fields from environment: %s", ", ".join(sorted(updates)))
    return RendererConfig.model_validate({**config.model_dump(exclude_unset=True), **updates})


def load_config(config_path: str | Path) -> RendererConfig:
    """Load a ``RendererConfig`` from a YAML file.

    Environment variables referenced as ``${VAR_NAME}`` are resolved.
    Fields the file does not set fall back to the well-known environment
    variables listed in ``ENV_FALLBACKS``.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    resolved = _resolve_env_vars(raw)
    config = RendererConfig.model_validate(resolved)
    return apply_env_fallbacks(config)
