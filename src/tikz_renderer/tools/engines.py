"""Engine selection and command construction."""

from __future__ import annotations

import logging
from pathlib import Path

from ..models import EngineAvailability, LatexEngine

logger = logging.getLogger(__name__)

ENGINE_PRIORITY: tuple[LatexEngine, ...] = (
    LatexEngine.PDFLATEX,
    LatexEngine.LUALATEX,
    LatexEngine.XELATEX,
)

ENGINE_ARGS = ["-interaction=nonstopmode", "-halt-on-error"]


def select_engine(requested: LatexEngine, availability: EngineAvailability) -> LatexEngine:
    """Return *requested* if installed, else the first installed engine by priority.

    With no engine installed the requested one is returned anyway so the
    compile step fails with an attributable error.
    """
    if availability.engine_available(requested):
        return requested
    if not availability.any_engine:
        logger.error("No LaTeX engines available; keeping %s", requested.value)
        return requested

    fallback = next(engine for engine in ENGINE_PRIORITY if availability.engine_available(engine))
    logger.warning("Requested engine %s not available, falling back to %s", requested.value, fallback.value)
    return fallback


def engine_command(engine: LatexEngine, output_dir: str | Path, tex_file: str | Path) -> list[str]:
    """Build the argv for one non-interactive, halt-on-error engine run."""
    return [engine.value, *ENGINE_ARGS, f"-output-directory={output_dir}", str(tex_file)]
