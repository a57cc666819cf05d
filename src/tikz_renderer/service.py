"""Request-level entry point: validation, deadlines and wire payloads."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from . import __version__
from .config import apply_env_fallbacks
from .exceptions import RenderError
from .logging_config import RenderCallbacks
from .models import (
    ErrorCategory,
    ErrorRecord,
    HealthResponse,
    RendererConfig,
    RenderRequest,
    RenderResult,
)
from .pipeline import ProgressiveRenderer
from .tools.dependencies import AvailabilityCache
from .tools.error_classifier import format_error_html
from .tools.preprocessor import DocumentPreprocessor
from .tools.renderer import DirectRenderer

logger = logging.getLogger(__name__)

MISSING_SOURCE = ErrorRecord(
    message="Missing tikzCode in request",
    suggestion="Make sure your TikZ code block is not empty.",
)


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def render_cache_key(request: RenderRequest, extracted_libraries: Iterable[str] = ()) -> str:
    """Stable fingerprint of everything that determines a render's output."""
    parts = [
        request.source,
        request.format.value,
        request.engine.value,
        _sha256(request.preamble or ""),
        _sha256(",".join(sorted(set(extracted_libraries)))),
    ]
    return _sha256("\0".join(parts))


def failure_payload(record: ErrorRecord) -> dict[str, Any]:
    return {
        "success": False,
        "error": record.message,
        "errorInfo": record.to_error_info(),
        "errorHTML": format_error_html(record),
    }


class RenderService:
    """Owns the availability cache and the renderers for one process."""

    def __init__(
        self,
        config: RendererConfig | None = None,
        availability: AvailabilityCache | None = None,
        callbacks: RenderCallbacks | None = None,
    ) -> None:
        self.config = config or apply_env_fallbacks(RendererConfig())
        self.availability = availability or AvailabilityCache(self.config.probe_timeout)
        self.preprocessor = DocumentPreprocessor()
        self.renderer = DirectRenderer(self.config, self.availability)
        self.progressive = ProgressiveRenderer(
            self.config, self.renderer, self.preprocessor, callbacks,
        )

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def parse_request(self, payload: Mapping[str, Any] | RenderRequest) -> RenderRequest:
        """Validate *payload*, filling format and engine from config defaults."""
        if isinstance(payload, RenderRequest):
            request = payload
        else:
            data = dict(payload or {})
            if data.get("format") is None:
                data["format"] = self.config.default_format.value
            if data.get("engine") is None:
                data["engine"] = self.config.default_engine.value
            source = data.get("source", data.get("tikzCode"))
            if not isinstance(source, str):
                raise RenderError(MISSING_SOURCE)
            try:
                request = RenderRequest.model_validate(data)
            except ValidationError as e:
                first = e.errors()[0]
                field = ".".join(str(p) for p in first["loc"])
                raise RenderError(ErrorRecord(
                    message=f"Invalid render request: {field}: {first['msg']}",
                    suggestion="Use format 'svg' or 'pdf' and engine 'pdflatex', 'lualatex' or 'xelatex'.",
                )) from e

        if not request.source.strip():
            raise RenderError(MISSING_SOURCE)
        return request

    async def render(self, payload: Mapping[str, Any] | RenderRequest) -> dict[str, Any]:
        """Render and return the wire payload; failures never raise."""
        try:
            request = self.parse_request(payload)
            result = await self.render_result(request)
        except RenderError as e:
            logger.warning("Render failed: %s", e)
            return failure_payload(e.record)
        return result.to_payload()

    async def render_result(self, request: RenderRequest) -> RenderResult:
        """Render for in-process callers.

        Raises:
            RenderError: when every strategy fails or the request deadline passes.
        """
        preamble = request.preamble or self.config.default_preamble
        timeout = self.config.request_timeout
        if timeout is None:
            return await self._render(request, preamble)
        try:
            return await asyncio.wait_for(self._render(request, preamble), timeout)
        except asyncio.TimeoutError:
            logger.error("Render exceeded request deadline of %gs", timeout)
            raise RenderError(ErrorRecord(
                category=ErrorCategory.GENERIC,
                message=f"Rendering timed out after {timeout:g}s",
                suggestion="Simplify the diagram or raise request_timeout.",
            )) from None

    async def _render(self, request: RenderRequest, preamble: str) -> RenderResult:
        if self.config.enable_progressive_rendering:
            return await self.progressive.render(request.source, request.format, request.engine, preamble)

        if self.config.enable_smart_preprocessing:
            document = self.preprocessor.preprocess(request.source, preamble).document
        else:
            document = self.preprocessor.wrap(request.source, preamble)
        return await self.renderer.render_once(document.text, request.format, request.engine)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(self, refresh: bool = False) -> dict[str, Any]:
        availability = await (self.availability.refresh() if refresh else self.availability.get())
        return HealthResponse(
            version=__version__,
            engines={engine.value: ok for engine, ok in availability.engines.items()},
            converters=dict(availability.converters),
        ).model_dump()
