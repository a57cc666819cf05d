"""Host tool detection for LaTeX engines and PDF-to-SVG converters."""

from __future__ import annotations

import asyncio
import logging
import shutil

from ..models import EngineAvailability, LatexEngine
from .process import run_command

logger = logging.getLogger(__name__)

# Converters in fallback priority order.  ``None`` means PATH presence decides:
# pdf2svg has no version flag and pdftocairo's exit code for ``-v`` varies
# across poppler releases.
CONVERTER_PROBES: dict[str, list[str] | None] = {
    "pdf2svg": None,
    "inkscape": ["--version"],
    "pdftocairo": None,
}

_ENGINE_PROBE = ["--version"]


# ---------------------------------------------------------------------------
# Tool availability
# ---------------------------------------------------------------------------


def find_tool(name: str) -> str | None:
    """Find an executable on PATH, checking both Unix and Windows (.exe) names."""
    path = shutil.which(name)
    if path:
        return path
    return shutil.which(f"{name}.exe")


async def check_tool(name: str, version_args: list[str] | None, timeout: float) -> bool:
    """Return True when *name* is installed and its version check exits 0."""
    path = find_tool(name)
    if not path:
        return False
    if version_args is None:
        return True
    result = await run_command([path, *version_args], timeout=timeout)
    return result.ok


async def probe(timeout: float = 5.0) -> EngineAvailability:
    """Detect every engine and converter; unavailable or failing tools yield False."""
    engine_names = list(LatexEngine)
    checks = [check_tool(engine.value, _ENGINE_PROBE, timeout) for engine in engine_names]
    checks += [check_tool(name, args, timeout) for name, args in CONVERTER_PROBES.items()]

    results = await asyncio.gather(*checks, return_exceptions=True)
    flags = [r is True for r in results]
    for r in results:
        if isinstance(r, BaseException):
            logger.debug("Probe error treated as unavailable: %s", r)

    engines = dict(zip(engine_names, flags[: len(engine_names)]))
    converters = dict(zip(CONVERTER_PROBES, flags[len(engine_names):]))
    availability = EngineAvailability(engines=engines, converters=converters)

    logger.info(
        "LaTeX engines available: %s; converters: %s",
        {e.value: ok for e, ok in engines.items()},
        converters,
    )
    return availability


# ---------------------------------------------------------------------------
# Process-wide cache
# ---------------------------------------------------------------------------


class AvailabilityCache:
    """Lazily probed, single-flight availability snapshot.

    Concurrent first callers of :meth:`get` share one probe.  Components hold a
    reference to the cache rather than reading a module global, so tests can
    inject a fixed map with :meth:`fixed`.
    """

    def __init__(self, probe_timeout: float = 5.0) -> None:
        self.probe_timeout = probe_timeout
        self._value: EngineAvailability | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def fixed(cls, availability: EngineAvailability) -> AvailabilityCache:
        cache = cls()
        cache._value = availability
        return cache

    async def get(self) -> EngineAvailability:
        if self._value is not None:
            return self._value
        async with self._lock:
            if self._value is None:
                self._value = await probe(self.probe_timeout)
            return self._value

    async def refresh(self) -> EngineAvailability:
        async with self._lock:
            self._value = await probe(self.probe_timeout)
            return self._value
