"""Single-shot compilation of a complete document to SVG or PDF.

Each job gets its own work directory named after a hash of its inputs, so
identical concurrent jobs serialize on one directory and different jobs
never touch each other's files.  Every failure leaves this module as a
:class:`RenderError` carrying a classified record.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import shutil
import weakref
from pathlib import Path

from ..exceptions import RenderError
from ..models import (
    CompilationOutcome,
    EngineAvailability,
    ErrorCategory,
    ErrorRecord,
    LatexEngine,
    OutputFormat,
    RendererConfig,
    RenderResult,
)
from .converters import convert_pdf_to_svg
from .dependencies import AvailabilityCache
from .engines import engine_command, select_engine
from .error_classifier import classify
from .process import run_command
from .svg_optimizer import optimize

logger = logging.getLogger(__name__)

TEX_NAME = "tikz.tex"
PDF_NAME = "tikz.pdf"
SVG_NAME = "tikz.svg"


def job_key(document: str, format: OutputFormat, engine: LatexEngine) -> str:
    """Content hash naming the work directory for one job."""
    digest = hashlib.sha256()
    for part in (document, format.value, engine.value):
        digest.update(part.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()[:32]


class DirectRenderer:
    """Compile one document with one engine and convert the result."""

    def __init__(self, config: RendererConfig, availability: AvailabilityCache) -> None:
        self.config = config
        self.availability = availability
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def render_once(
        self,
        document: str,
        format: OutputFormat,
        engine: LatexEngine,
        timeout: float | None = None,
    ) -> RenderResult:
        """Compile *document* and return inline SVG or base64 PDF.

        Raises:
            RenderError: on engine, compilation or conversion failure.
        """
        availability = await self.availability.get()
        selected = select_engine(engine, availability)
        key = job_key(document, format, selected)
        work_dir = Path(self.config.temp_dir) / key

        async with self._lock_for(key):
            work_dir.mkdir(parents=True, exist_ok=True)
            try:
                tex_path = work_dir / TEX_NAME
                pdf_path = work_dir / PDF_NAME
                tex_path.write_text(document, encoding="utf-8")
                pdf_path.unlink(missing_ok=True)

                await self._compile(selected, work_dir, document, timeout or self.config.compilation_timeout)

                if format == OutputFormat.PDF:
                    content = base64.b64encode(pdf_path.read_bytes()).decode("ascii")
                    return RenderResult(content=content, format=OutputFormat.PDF)
                return await self._to_svg(pdf_path, work_dir / SVG_NAME, availability)
            finally:
                shutil.rmtree(work_dir, ignore_errors=True)

    async def _compile(
        self,
        engine: LatexEngine,
        work_dir: Path,
        document: str,
        timeout: float,
    ) -> CompilationOutcome:
        cmd = engine_command(engine, work_dir, work_dir / TEX_NAME)
        result = await run_command(cmd, timeout=timeout, cwd=work_dir)

        if result.spawn_error:
            logger.error("Could not start %s: %s", engine.value, result.spawn_error)
            raise RenderError(ErrorRecord(
                category=ErrorCategory.ENGINE_UNAVAILABLE,
                message=f"LaTeX engine {engine.value} is not available: {result.spawn_error}",
                suggestion=(
                    "Install a TeX distribution that provides pdflatex, lualatex or xelatex "
                    "and make sure it is on PATH."
                ),
                code=engine.value,
            ))

        outcome = CompilationOutcome(
            success=result.ok and (work_dir / PDF_NAME).exists(),
            output=result.output,
            returncode=result.returncode,
            timed_out=result.timed_out,
            elapsed=result.elapsed,
        )
        logger.info(
            "%s finished: returncode=%s, success=%s, elapsed=%.2fs",
            engine.value, outcome.returncode, outcome.success, outcome.elapsed,
        )
        if outcome.success:
            return outcome

        logger.debug("%s output (last 1000 chars):\n%s", engine.value, outcome.output[-1000:])
        record = classify(outcome.output, document)
        if outcome.timed_out and record.is_generic:
            record = record.model_copy(update={
                "message": f"Compilation timed out after {timeout:g}s",
                "suggestion": record.suggestion or "Simplify the diagram or raise compilation_timeout.",
            })
        raise RenderError(record)

    async def _to_svg(
        self,
        pdf_path: Path,
        svg_path: Path,
        availability: EngineAvailability,
    ) -> RenderResult:
        used = await convert_pdf_to_svg(pdf_path, svg_path, availability, self.config.converter_timeout)
        if used is None:
            raise RenderError(ErrorRecord(
                category=ErrorCategory.NO_CONVERTER,
                message="Failed to convert PDF to SVG. Please install pdf2svg, Inkscape, or pdftocairo.",
                suggestion="Install one of pdf2svg, inkscape or pdftocairo (poppler-utils), or request PDF output.",
            ))
        optimized = await optimize(svg_path, self.config.optimizer_timeout)
        return RenderResult(
            content=optimized.content,
            format=OutputFormat.SVG,
            width=optimized.width,
            height=optimized.height,
        )
