"""CLI entry point using Hydra.

Usage examples:
  tikz-renderer mode=render source_file=diagram.tikz output=diagram.svg
  tikz-renderer mode=render source_file=plot.tikz format=pdf engine=lualatex
  tikz-renderer mode=health refresh=true
  tikz-renderer mode=classify log_file=tikz.log
  tikz-renderer mode=preprocess source_file=diagram.tikz preamble_file=preamble.tex
"""

from __future__ import annotations

import asyncio
import base64
import sys
from pathlib import Path
from typing import Any

import hydra
from omegaconf import DictConfig, OmegaConf

from ._hydra_conf import CLI_ONLY_KEYS, register_configs
from .config import apply_env_fallbacks
from .exceptions import RenderError
from .logging_config import RichCallbacks, availability_table, console, setup_logging
from .models import OutputFormat, RendererConfig

register_configs()

# ---------------------------------------------------------------------------
# Hydra DictConfig → Pydantic RendererConfig bridge
# ---------------------------------------------------------------------------


def _to_renderer_config(cfg: DictConfig) -> RendererConfig:
    """Convert a Hydra *DictConfig* to a Pydantic ``RendererConfig``.

    CLI-only keys (``mode``, ``verbose``, etc.) are stripped before validation,
    as are empty values so model defaults apply.  Environment fallbacks are
    applied afterwards.
    """
    container: dict[str, Any] = OmegaConf.to_container(cfg, resolve=True)  # type: ignore[assignment]
    for key in CLI_ONLY_KEYS:
        container.pop(key, None)
    container = {k: v for k, v in container.items() if v is not None and v != ""}
    config = RendererConfig.model_validate(container)
    return apply_env_fallbacks(config)


def _read_required(cfg: DictConfig, key: str) -> str:
    value = cfg.get(key)
    if not value:
        console.print(f"[red]{key} is required for {cfg.get('mode')} mode[/]")
        sys.exit(1)
    path = Path(value)
    if not path.exists():
        console.print(f"[red]File not found: {path}[/]")
        sys.exit(1)
    return path.read_text(encoding="utf-8")


def _read_preamble(cfg: DictConfig, config: RendererConfig) -> str:
    preamble_file = cfg.get("preamble_file")
    if not preamble_file:
        return config.default_preamble
    return Path(preamble_file).read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# Mode handlers
# ---------------------------------------------------------------------------


def _render_mode(cfg: DictConfig) -> None:
    from .service import RenderService
    from .tools.error_classifier import format_error

    config = _to_renderer_config(cfg)
    source = _read_required(cfg, "source_file")
    service = RenderService(config, callbacks=RichCallbacks())
    try:
        request = service.parse_request({
            "source": source,
            "format": cfg.get("format") or None,
            "engine": cfg.get("engine") or None,
            "preamble": _read_preamble(cfg, config),
        })
    except RenderError as e:
        console.print("[bold red]Invalid render options.[/]")
        console.print(format_error(e.record), markup=False, highlight=False)
        sys.exit(1)

    console.print(f"[bold]Rendering {cfg.source_file} → {request.format.value}...[/]")
    try:
        result = asyncio.run(service.render_result(request))
    except RenderError as e:
        console.print("[bold red]Render failed.[/]")
        console.print(format_error(e.record), markup=False, highlight=False)
        sys.exit(1)

    output = Path(cfg.get("output") or Path(cfg.source_file).with_suffix(f".{result.format.value}"))
    if result.format == OutputFormat.PDF:
        output.write_bytes(base64.b64decode(result.content))
    else:
        output.write_text(result.content, encoding="utf-8")
    console.print(f"[green]Written to {output}[/]")
    if result.width is not None:
        console.print(f"  Size: {result.width:g} x {result.height:g}")


def _health_mode(cfg: DictConfig) -> None:
    from .service import RenderService

    config = _to_renderer_config(cfg)
    service = RenderService(config)
    health = asyncio.run(service.health(refresh=bool(cfg.get("refresh", False))))

    console.print(f"[bold]tikz-renderer {health['version']}[/] status: {health['status']}")
    console.print(availability_table(health["engines"], health["converters"]))
    if not any(health["engines"].values()):
        console.print("[red]No LaTeX engine found on PATH.[/]")
        sys.exit(1)


def _classify_mode(cfg: DictConfig) -> None:
    from .tools.error_classifier import classify, format_error

    log_text = _read_required(cfg, "log_file")
    record = classify(log_text)
    console.print(f"[bold]Category:[/] {record.category.value}")
    console.print(format_error(record), markup=False, highlight=False)


def _preprocess_mode(cfg: DictConfig) -> None:
    from .tools.preprocessor import DocumentPreprocessor

    config = _to_renderer_config(cfg)
    source = _read_required(cfg, "source_file")
    result = DocumentPreprocessor().preprocess(source, _read_preamble(cfg, config))

    console.print(f"[bold]Structure:[/] {result.structure.value}")
    if result.extracted_libraries:
        console.print(f"  Extracted libraries: {', '.join(result.extracted_libraries)}")
    if result.detected_libraries:
        console.print(f"  Detected libraries: {', '.join(result.detected_libraries)}")
    if result.document.syntax_fixes_applied:
        console.print("  [yellow]Syntax fixes applied[/]")

    output = cfg.get("output")
    if output:
        Path(output).write_text(result.document.text, encoding="utf-8")
        console.print(f"[green]Written to {output}[/]")
    else:
        console.print(result.document.text, markup=False, highlight=False)


_MODE_DISPATCH: dict[str, Any] = {
    "render": _render_mode,
    "health": _health_mode,
    "classify": _classify_mode,
    "preprocess": _preprocess_mode,
}


# ---------------------------------------------------------------------------
# Hydra entry point
# ---------------------------------------------------------------------------


@hydra.main(config_path="conf", config_name="config", version_base=None)
def hydra_entry(cfg: DictConfig) -> None:
    """Hydra-managed CLI entry point."""
    setup_logging(
        verbose=cfg.get("verbose", False),
        quiet=cfg.get("quiet", False),
        level=cfg.get("log_level") or "info",
    )

    mode = cfg.get("mode", "render")
    handler = _MODE_DISPATCH.get(mode)
    if handler is None:
        console.print(f"[red]Unknown mode: {mode!r}. Choose from: {', '.join(_MODE_DISPATCH)}[/]")
        sys.exit(1)

    handler(cfg)


def main() -> None:
    """Package entry point (``[project.scripts]`` target)."""
    hydra_entry()  # pylint: disable=no-value-for-parameter
