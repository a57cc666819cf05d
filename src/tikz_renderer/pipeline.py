"""Progressive rendering: up to four strategies, best error wins.

Attempt 1: original source,     original preamble
Attempt 2: preprocessed source, original preamble
Attempt 3: original source,     enhanced preamble
Attempt 4: preprocessed source, enhanced preamble

The first success is returned.  When every attempt fails, the most
informative failure is reported, annotated with what was tried.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from .exceptions import RenderError
from .logging_config import RenderCallbacks, RichCallbacks
from .models import (
    CompiledDocument,
    ErrorCategory,
    ErrorRecord,
    LatexEngine,
    OutputFormat,
    PreprocessResult,
    RendererConfig,
    RenderResult,
)
from .tools.error_classifier import fallback_suggestion
from .tools.preprocessor import DocumentPreprocessor
from .tools.renderer import DirectRenderer

logger = logging.getLogger(__name__)

STRATEGIES = (
    "original source with original preamble",
    "preprocessed source with original preamble",
    "original source with enhanced preamble",
    "preprocessed source with enhanced preamble",
)

PROGRESSIVE_NOTE = (
    "Multiple rendering strategies were attempted but all failed. "
    "The error shown is from the most informative attempt."
)
SYNTAX_FIX_NOTE = (
    "Some common syntax issues were automatically fixed during rendering attempts, "
    "but the error persisted. Check for more complex syntax problems."
)

SPECIFIC_CATEGORIES = frozenset({
    ErrorCategory.UNDEFINED_COMMAND,
    ErrorCategory.MISSING_PACKAGE,
    ErrorCategory.MATH_MODE,
    ErrorCategory.UNCLOSED_DOCUMENT,
    ErrorCategory.NO_LINE_TO_END,
})


# ---------------------------------------------------------------------------
# Informativeness
# ---------------------------------------------------------------------------


def informativeness_key(record: ErrorRecord) -> tuple[bool, bool, bool, bool, bool]:
    """Sort key: categorized, has suggestion, has context, has line, specific category."""
    return (
        not record.is_generic,
        bool(record.suggestion),
        bool(record.context),
        record.line is not None,
        record.category in SPECIFIC_CATEGORIES,
    )


def compare_informativeness(a: ErrorRecord, b: ErrorRecord) -> int:
    """-1 if *a* is less informative than *b*, 1 if more, 0 if tied."""
    ka, kb = informativeness_key(a), informativeness_key(b)
    return (ka > kb) - (ka < kb)


def select_most_informative(failures: Sequence[ErrorRecord]) -> ErrorRecord | None:
    """Most informative record; ties keep the earliest."""
    best: ErrorRecord | None = None
    for record in failures:
        if best is None or compare_informativeness(record, best) > 0:
            best = record
    return best


# ---------------------------------------------------------------------------
# Progressive renderer
# ---------------------------------------------------------------------------


@dataclass
class Attempt:
    number: int
    strategy: str
    document: CompiledDocument


class ProgressiveRenderer:
    """Retry a render under increasingly aggressive normalization."""

    def __init__(
        self,
        config: RendererConfig,
        renderer: DirectRenderer,
        preprocessor: DocumentPreprocessor | None = None,
        callbacks: RenderCallbacks | None = None,
    ) -> None:
        self.config = config
        self.renderer = renderer
        self.preprocessor = preprocessor or DocumentPreprocessor()
        self.callbacks = callbacks or RichCallbacks()

    def plan(self, source: str, preamble: str) -> tuple[list[Attempt], PreprocessResult | None]:
        """Documents for each strategy, in order."""
        attempts = [Attempt(1, STRATEGIES[0], self.preprocessor.wrap(source, preamble))]
        if not self.config.enable_smart_preprocessing:
            return attempts, None

        result = self.preprocessor.preprocess(source, preamble)
        attempts += [
            Attempt(2, STRATEGIES[1], self.preprocessor.with_preamble(result, preamble)),
            Attempt(3, STRATEGIES[2], self.preprocessor.wrap(source, result.enhanced_preamble)),
            Attempt(4, STRATEGIES[3], result.document),
        ]
        return attempts, result

    async def render(
        self,
        source: str,
        format: OutputFormat,
        engine: LatexEngine,
        preamble: str,
    ) -> RenderResult:
        """Render *source*, raising :class:`RenderError` once every strategy fails."""
        attempts, result = self.plan(source, preamble)
        budget = self.config.max_rendering_attempts
        tried: list[str] = []
        failures: list[ErrorRecord] = []

        for attempt in attempts:
            if len(tried) >= budget:
                logger.info("Rendering attempt budget (%d) exhausted", budget)
                break
            text = attempt.document.text
            if text in tried:
                self.callbacks.on_attempt_skipped(attempt.number, attempt.strategy, "identical to an earlier attempt")
                logger.debug("Skipping attempt %d: document unchanged", attempt.number)
                continue

            tried.append(text)
            self.callbacks.on_attempt_start(attempt.number, attempt.strategy)
            logger.info("Attempt %d: %s", attempt.number, attempt.strategy)
            try:
                rendered = await self.renderer.render_once(text, format, engine)
            except RenderError as e:
                failures.append(e.record)
                self.callbacks.on_attempt_failed(attempt.number, attempt.strategy, e.record.message)
                logger.info("Attempt %d failed: %s", attempt.number, e.record.message)
                continue

            self.callbacks.on_success(attempt.number, attempt.strategy)
            return rendered

        best = select_most_informative(failures)
        assert best is not None  # attempt 1 always runs
        raise RenderError(self._annotate(best, len(tried), result, source))

    def _annotate(
        self,
        record: ErrorRecord,
        attempts_run: int,
        result: PreprocessResult | None,
        source: str,
    ) -> ErrorRecord:
        update: dict[str, str] = {}
        if not record.suggestion:
            update["suggestion"] = fallback_suggestion(record, source)
        if attempts_run > 1:
            update["progressive_note"] = PROGRESSIVE_NOTE
        if result is not None and result.document.syntax_fixes_applied:
            update["syntax_fix_note"] = SYNTAX_FIX_NOTE
        return record.model_copy(update=update)
