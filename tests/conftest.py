"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from tikz_renderer.models import EngineAvailability, LatexEngine, RendererConfig
from tikz_renderer.tools.dependencies import AvailabilityCache
from tikz_renderer.tools.process import CommandResult

FIXTURES_DIR = Path(__file__).parent / "fixtures"
SAMPLE_LOGS = FIXTURES_DIR / "sample_logs"

SAMPLE_SVG = (FIXTURES_DIR / "sample.svg").read_text(encoding="utf-8")


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture
def sample_logs_dir() -> Path:
    return SAMPLE_LOGS


@pytest.fixture
def sample_svg() -> str:
    return SAMPLE_SVG


@pytest.fixture
def undefined_command_log() -> str:
    return (SAMPLE_LOGS / "undefined_command.log").read_text(encoding="utf-8")


@pytest.fixture
def undefined_command_log_path() -> Path:
    return SAMPLE_LOGS / "undefined_command.log"


@pytest.fixture
def config(tmp_path: Path) -> RendererConfig:
    return RendererConfig(temp_dir=str(tmp_path / "jobs"))


@pytest.fixture
def full_availability() -> EngineAvailability:
    return EngineAvailability(
        engines={engine: True for engine in LatexEngine},
        converters={"pdf2svg": True, "inkscape": True, "pdftocairo": True},
    )


@pytest.fixture
def availability_cache(full_availability: EngineAvailability) -> AvailabilityCache:
    return AvailabilityCache.fixed(full_availability)


@pytest.fixture
def quiet_callbacks() -> MagicMock:
    return MagicMock()


def _output_dir(cmd: list[str]) -> Path:
    for arg in cmd:
        if arg.startswith("-output-directory="):
            return Path(arg.split("=", 1)[1])
    raise AssertionError(f"no output directory in {cmd}")


def _svg_target(cmd: list[str]) -> Path:
    for arg in cmd:
        if arg.startswith("--export-filename="):
            return Path(arg.split("=", 1)[1])
    return Path(cmd[-1])


@pytest.fixture
def fake_engine():
    """``run_command`` stand-in that writes tikz.pdf like a successful engine run."""

    async def _run(cmd, *, timeout, cwd=None):
        (_output_dir(cmd) / "tikz.pdf").write_bytes(b"%PDF-1.5 fake")
        return CommandResult(cmd=cmd, returncode=0, output="Output written on tikz.pdf (1 page).")

    return _run


@pytest.fixture
def fake_converter():
    """``run_command`` stand-in that writes SAMPLE_SVG to the converter's target."""

    async def _run(cmd, *, timeout, cwd=None):
        _svg_target(cmd).write_text(SAMPLE_SVG, encoding="utf-8")
        return CommandResult(cmd=cmd, returncode=0)

    return _run


@pytest.fixture
def sample_config_path() -> Path:
    return FIXTURES_DIR / "sample_config.yaml"


@pytest.fixture
def clean_env(monkeypatch):
    """Remove the renderer's environment fallbacks for the test."""
    from tikz_renderer.config import ENV_FALLBACKS

    for env_name in ENV_FALLBACKS.values():
        monkeypatch.delenv(env_name, raising=False)
    return monkeypatch
