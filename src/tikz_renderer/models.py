"""Pydantic models for the TikZ render pipeline."""

from __future__ import annotations

import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class OutputFormat(str, Enum):
    SVG = "svg"
    PDF = "pdf"


class LatexEngine(str, Enum):
    PDFLATEX = "pdflatex"
    LUALATEX = "lualatex"
    XELATEX = "xelatex"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ErrorCategory(str, Enum):
    UNDEFINED_COMMAND = "undefined-command"
    MATH_MODE = "math-mode"
    UNCLOSED_GROUP = "unclosed-group"
    MISSING_PACKAGE = "missing-package"
    UNCLOSED_DOCUMENT = "unclosed-document-structure"
    UNCLOSED_ENVIRONMENT = "unclosed-environment"
    PREAMBLE_MISUSE = "preamble-misuse"
    DIMENSION_OVERFLOW = "dimension-overflow"
    NO_LINE_TO_END = "no-line-to-end"
    PGFPLOTS = "pgfplots-error"
    GENERIC = "generic"
    NO_CONVERTER = "no-converter-available"
    ENGINE_UNAVAILABLE = "engine-unavailable"


class StructureCase(str, Enum):
    """How the preprocessor completed the document structure."""
    AS_IS = "as_is"
    CLOSE_DOCUMENT = "close_document"
    WRAP_DOCUMENT = "wrap_document"
    CLOSE_DRAWING = "close_drawing"
    CLOSE_SUB_ENVIRONMENT = "close_sub_environment"
    WRAP_BARE = "wrap_bare"


# ---------------------------------------------------------------------------
# Requests and documents
# ---------------------------------------------------------------------------

class RenderRequest(BaseModel):
    """A render call as received from the caller."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source: str = Field(
        ...,
        validation_alias=AliasChoices("source", "tikzCode"),
        description="TikZ markup: full document, fragment, or bare drawing commands",
    )
    format: OutputFormat = Field(default=OutputFormat.SVG)
    engine: LatexEngine = Field(default=LatexEngine.PDFLATEX)
    preamble: str | None = Field(default=None, description="Custom preamble; config default when omitted")


class CompiledDocument(BaseModel):
    """A full LaTeX document ready to hand to the engine."""
    model_config = ConfigDict(frozen=True)

    text: str = Field(..., description="Complete .tex content")
    document_structure_added: bool = Field(default=False)
    syntax_fixes_applied: bool = Field(default=False)


class PreprocessResult(BaseModel):
    """Everything the preprocessor derived from one source/preamble pair."""
    document: CompiledDocument
    processed_source: str = Field(..., description="Repaired, library-free, structure-completed body")
    enhanced_preamble: str = Field(..., description="User preamble plus auto-detected requirements")
    extracted_libraries: list[str] = Field(default_factory=list)
    detected_libraries: list[str] = Field(default_factory=list)
    structure: StructureCase = Field(default=StructureCase.AS_IS)


# ---------------------------------------------------------------------------
# Tool availability and compilation
# ---------------------------------------------------------------------------

class EngineAvailability(BaseModel):
    """Which engines and SVG converters are installed on this host."""
    engines: dict[LatexEngine, bool] = Field(
        default_factory=lambda: {engine: False for engine in LatexEngine}
    )
    converters: dict[str, bool] = Field(default_factory=dict)
    probed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def engine_available(self, engine: LatexEngine) -> bool:
        return self.engines.get(engine, False)

    def converter_available(self, name: str) -> bool:
        return self.converters.get(name, False)

    @property
    def any_engine(self) -> bool:
        return any(self.engines.values())


class CompilationOutcome(BaseModel):
    """Raw result of one engine invocation."""
    success: bool
    output: str = Field(default="", description="Combined stdout/stderr")
    returncode: int | None = Field(default=None)
    timed_out: bool = Field(default=False)
    elapsed: float = Field(default=0.0, description="Wall-clock seconds")


class ErrorRecord(BaseModel):
    """A classified compiler or pipeline failure."""
    model_config = ConfigDict(frozen=True)

    category: ErrorCategory = Field(default=ErrorCategory.GENERIC)
    message: str = Field(..., description="Human-readable error message")
    line: int | None = Field(default=None, description="Line in the compiled document")
    context: str = Field(default="", description="Compiler output around the error")
    suggestion: str = Field(default="", description="Remediation hint")
    code: str = Field(default="", description="Offending command, key or file")
    severity: Severity = Field(default=Severity.ERROR)
    source_excerpt: str = Field(default="", description="Document lines around `line`")
    progressive_note: str = Field(default="")
    syntax_fix_note: str = Field(default="")

    @property
    def is_generic(self) -> bool:
        return self.category == ErrorCategory.GENERIC

    def to_error_info(self) -> dict:
        """Wire representation used by the display layer."""
        info = {
            "message": self.message,
            "errorType": self.category.value,
            "severity": self.severity.value,
            "context": self.context,
            "suggestion": self.suggestion,
            "code": self.code,
        }
        if self.line is not None:
            info["line"] = self.line
        if self.source_excerpt:
            info["sourceExcerpt"] = self.source_excerpt
        if self.progressive_note:
            info["progressiveNote"] = self.progressive_note
        if self.syntax_fix_note:
            info["syntaxFixNote"] = self.syntax_fix_note
        return info


class RenderResult(BaseModel):
    """Successful render: inline SVG markup or base64 PDF."""
    content: str
    format: OutputFormat
    width: float | None = Field(default=None)
    height: float | None = Field(default=None)

    def to_payload(self) -> dict:
        payload: dict = {"content": self.content, "format": self.format.value}
        if self.width is not None:
            payload["width"] = self.width
        if self.height is not None:
            payload["height"] = self.height
        return payload


class HealthResponse(BaseModel):
    """Capability snapshot for settings UIs and connection tests."""
    status: str = Field(default="ok")
    version: str
    engines: dict[str, bool] = Field(default_factory=dict)
    converters: dict[str, bool] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_PREAMBLE = (
    "\\usepackage{tikz}\n"
    "\\usepackage{pgfplots}\n"
    "\\pgfplotsset{compat=1.18}\n"
    "\\usepackage{amsmath}\n"
    "\\usepackage{amssymb}"
)


class RendererConfig(BaseModel):
    """Service configuration loaded from YAML, Hydra or the environment."""
    temp_dir: str = Field(
        default_factory=lambda: str(Path(tempfile.gettempdir()) / "tikz-renderer"),
        description="Root for per-job work directories",
    )
    default_engine: LatexEngine = Field(default=LatexEngine.PDFLATEX)
    default_format: OutputFormat = Field(default=OutputFormat.SVG)
    default_preamble: str = Field(default=DEFAULT_PREAMBLE)

    compilation_timeout: float = Field(default=30.0, gt=0, description="Seconds per engine run")
    converter_timeout: float = Field(default=15.0, gt=0, description="Seconds per converter run")
    probe_timeout: float = Field(default=5.0, gt=0, description="Seconds per version probe")
    optimizer_timeout: float = Field(default=10.0, gt=0, description="Seconds for svgo")
    request_timeout: float | None = Field(default=120.0, description="Whole-pipeline deadline; None disables")

    enable_progressive_rendering: bool = Field(default=True)
    enable_smart_preprocessing: bool = Field(default=True)
    max_rendering_attempts: int = Field(default=4, ge=1)

    log_level: str = Field(default="info")
