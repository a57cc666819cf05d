"""SVG cleanup and dimension extraction.

Prefers ``svgo`` when it is on PATH; otherwise a regex pass strips the
converter's boilerplate.  Either way the root element ends up with a viewBox.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from .dependencies import find_tool
from .process import run_command

logger = logging.getLogger(__name__)

_ROOT_RE = re.compile(r"<svg\b[^>]*>", re.DOTALL)
_NUMBER_RE = re.compile(r"^\s*(-?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)")

_XML_DECL_RE = re.compile(r"<\?xml[^>]*\?>")
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_EMPTY_GROUP_RE = re.compile(r"<g\b[^>]*>\s*</g>|<g\b[^>]*/>")
_INTER_TAG_WS_RE = re.compile(r">\s+<")


@dataclass
class OptimizedSvg:
    content: str
    width: float
    height: float


# ---------------------------------------------------------------------------
# Root attributes
# ---------------------------------------------------------------------------


def _root_tag(content: str) -> re.Match | None:
    return _ROOT_RE.search(content)


def _attribute(tag: str, name: str) -> str | None:
    # lookbehind keeps stroke-width and friends out
    m = re.search(rf"""(?<![-\w:]){name}\s*=\s*["']([^"']*)["']""", tag)
    return m.group(1) if m else None


def _number(value: str | None) -> float:
    if not value:
        return 0.0
    m = _NUMBER_RE.match(value)
    return float(m.group(1)) if m else 0.0


def extract_dimensions(content: str) -> tuple[float, float]:
    """Return ``(width, height)`` from the root viewBox, else width/height.

    Unparsable values yield 0.
    """
    root = _root_tag(content)
    if root is None:
        return 0.0, 0.0
    tag = root.group(0)

    view_box = _attribute(tag, "viewBox")
    if view_box:
        parts = re.split(r"[\s,]+", view_box.strip())
        if len(parts) == 4:
            try:
                return float(parts[2]), float(parts[3])
            except ValueError:
                pass

    return _number(_attribute(tag, "width")), _number(_attribute(tag, "height"))


def ensure_viewbox(content: str) -> str:
    """Add ``viewBox="0 0 w h"`` to the root element when it has none."""
    root = _root_tag(content)
    if root is None:
        return content
    tag = root.group(0)
    if _attribute(tag, "viewBox") is not None:
        return content
    width = _number(_attribute(tag, "width"))
    height = _number(_attribute(tag, "height"))
    if width <= 0 or height <= 0:
        return content
    new_tag = tag.replace("<svg", f'<svg viewBox="0 0 {width:g} {height:g}"', 1)
    return content[: root.start()] + new_tag + content[root.end():]


# ---------------------------------------------------------------------------
# Optimization
# ---------------------------------------------------------------------------


def basic_optimize(content: str) -> str:
    """Regex cleanup used when svgo is unavailable."""
    optimized = _XML_DECL_RE.sub("", content)
    optimized = _COMMENT_RE.sub("", optimized)
    # nested empty groups collapse one level per pass
    previous = None
    while previous != optimized:
        previous = optimized
        optimized = _EMPTY_GROUP_RE.sub("", optimized)
    optimized = _INTER_TAG_WS_RE.sub("><", optimized)
    return ensure_viewbox(optimized.strip())


async def _optimize_with_svgo(svg_path: Path, timeout: float) -> str | None:
    svgo = find_tool("svgo")
    if not svgo:
        logger.debug("svgo not available, falling back to basic optimization")
        return None
    result = await run_command([svgo, "--input", str(svg_path), "--output", "-"], timeout=timeout)
    if not result.ok or "<svg" not in result.output:
        logger.debug("svgo failed (rc=%s), falling back to basic optimization", result.returncode)
        return None
    logger.debug("SVG optimized with svgo")
    return ensure_viewbox(result.output.strip())


async def optimize(svg_path: str | Path, timeout: float = 10.0) -> OptimizedSvg:
    """Optimize the SVG at *svg_path* and measure it."""
    path = Path(svg_path)
    content = await _optimize_with_svgo(path, timeout)
    if content is None:
        content = basic_optimize(path.read_text(encoding="utf-8", errors="replace"))
    width, height = extract_dimensions(content)
    return OptimizedSvg(content=content, width=width, height=height)
