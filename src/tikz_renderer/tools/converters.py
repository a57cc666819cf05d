"""PDF → SVG conversion with an ordered fallback chain."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ..models import EngineAvailability
from .dependencies import find_tool
from .process import run_command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Converter:
    name: str
    args: Callable[[Path, Path], list[str]]

    def command(self, pdf_path: Path, svg_path: Path) -> list[str]:
        return [find_tool(self.name) or self.name, *self.args(pdf_path, svg_path)]


CONVERTERS: tuple[Converter, ...] = (
    Converter("pdf2svg", lambda pdf, svg: [str(pdf), str(svg)]),
    Converter("inkscape", lambda pdf, svg: ["--export-type=svg", f"--export-filename={svg}", str(pdf)]),
    Converter("pdftocairo", lambda pdf, svg: ["-svg", str(pdf), str(svg)]),
)


async def convert_pdf_to_svg(
    pdf_path: str | Path,
    svg_path: str | Path,
    availability: EngineAvailability,
    timeout: float = 15.0,
) -> str | None:
    """Try each installed converter in order.

    Returns the name of the converter that produced *svg_path*, or None when
    every candidate was missing or failed.
    """
    pdf_path, svg_path = Path(pdf_path), Path(svg_path)
    logger.debug("Converting PDF to SVG: %s -> %s", pdf_path, svg_path)

    for converter in CONVERTERS:
        if not availability.converter_available(converter.name):
            logger.debug("Skipping %s: not installed", converter.name)
            continue

        svg_path.unlink(missing_ok=True)
        result = await run_command(converter.command(pdf_path, svg_path), timeout=timeout)
        if result.ok and svg_path.exists() and svg_path.stat().st_size > 0:
            logger.debug("PDF converted to SVG using %s", converter.name)
            return converter.name

        reason = (
            result.spawn_error
            or ("timed out" if result.timed_out else f"exit code {result.returncode}")
        )
        if result.ok:
            reason = "no output file"
        logger.warning("%s conversion failed: %s, trying alternatives", converter.name, reason)

    logger.error("Failed to convert PDF to SVG: no working converter among %s",
                 ", ".join(c.name for c in CONVERTERS))
    return None
