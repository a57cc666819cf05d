"""TikZ renderer: compile TikZ markup to SVG or PDF with progressive retries."""

__version__ = "1.0.0"

from .exceptions import RenderError
from .models import ErrorCategory, ErrorRecord, LatexEngine, OutputFormat, RendererConfig, RenderRequest, RenderResult
from .service import RenderService

__all__ = [
    "ErrorCategory",
    "ErrorRecord",
    "LatexEngine",
    "OutputFormat",
    "RenderError",
    "RenderRequest",
    "RenderResult",
    "RenderService",
    "RendererConfig",
    "__version__",
]
