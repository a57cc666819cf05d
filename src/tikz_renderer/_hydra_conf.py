"""Hydra structured config dataclasses.

These mirror the Pydantic ``RendererConfig`` for Hydra schema validation.
At runtime the Hydra DictConfig is converted to ``RendererConfig`` via
``cli._to_renderer_config()``.
"""

from __future__ import annotations

from dataclasses import dataclass

from hydra.core.config_store import ConfigStore

from .models import DEFAULT_PREAMBLE


@dataclass
class TikzConf:
    # --- Dispatch + CLI-only fields ---
    mode: str = "render"
    verbose: bool = False
    quiet: bool = False
    source_file: str | None = None
    output: str | None = None
    format: str | None = None
    engine: str | None = None
    preamble_file: str | None = None
    log_file: str | None = None
    refresh: bool = False

    # --- RendererConfig fields (1:1 mapping) ---
    temp_dir: str = "${oc.env:TEMP_DIR,''}"
    default_engine: str = "${oc.env:DEFAULT_ENGINE,pdflatex}"
    default_format: str = "${oc.env:DEFAULT_FORMAT,svg}"
    default_preamble: str = DEFAULT_PREAMBLE

    compilation_timeout: float = 30.0
    converter_timeout: float = 15.0
    probe_timeout: float = 5.0
    optimizer_timeout: float = 10.0
    request_timeout: float | None = 120.0

    # None defers to ENABLE_PROGRESSIVE_RENDERING etc., then the model default
    enable_progressive_rendering: bool | None = None
    enable_smart_preprocessing: bool | None = None
    max_rendering_attempts: int | None = None

    log_level: str = "${oc.env:LOG_LEVEL,info}"


# Keys present in TikzConf that are NOT part of RendererConfig.
CLI_ONLY_KEYS = frozenset({
    "mode", "verbose", "quiet", "source_file", "output", "format",
    "engine", "preamble_file", "log_file", "refresh",
})


def register_configs() -> None:
    """Register the structured config schema with Hydra's ConfigStore."""
    cs = ConfigStore.instance()
    cs.store(name="tikz_schema", node=TikzConf)
