"""Tests for tools/renderer.py: one compile/convert pass with mocked tools."""

from __future__ import annotations

import asyncio
import base64
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from tikz_renderer.exceptions import RenderError
from tikz_renderer.models import (
    EngineAvailability,
    ErrorCategory,
    LatexEngine,
    OutputFormat,
)
from tikz_renderer.tools.dependencies import AvailabilityCache
from tikz_renderer.tools.process import CommandResult
from tikz_renderer.tools.renderer import DirectRenderer, job_key

DOCUMENT = (
    "\\documentclass[tikz,border=2pt]{standalone}\n"
    "\\usepackage{tikz}\n\n"
    "\\begin{document}\n"
    "\\begin{tikzpicture}\n"
    "\\draw (0,0) circle (1cm);\n"
    "\\end{tikzpicture}\n"
    "\\end{document}\n"
)


def _render(renderer, document=DOCUMENT, format=OutputFormat.SVG, engine=LatexEngine.PDFLATEX, timeout=None):
    return asyncio.run(renderer.render_once(document, format, engine, timeout))


def _failing_engine(output: str, **kwargs):
    async def _run(cmd, *, timeout, cwd=None):
        return CommandResult(cmd=cmd, returncode=kwargs.get("returncode", 1), output=output,
                             timed_out=kwargs.get("timed_out", False))
    return _run


class TestJobKey:
    def test_stable_and_distinct(self):
        key = job_key(DOCUMENT, OutputFormat.SVG, LatexEngine.PDFLATEX)
        assert key == job_key(DOCUMENT, OutputFormat.SVG, LatexEngine.PDFLATEX)
        assert len(key) == 32
        assert key != job_key(DOCUMENT, OutputFormat.PDF, LatexEngine.PDFLATEX)
        assert key != job_key(DOCUMENT, OutputFormat.SVG, LatexEngine.XELATEX)
        assert key != job_key(DOCUMENT + " ", OutputFormat.SVG, LatexEngine.PDFLATEX)


class TestRenderOnce:
    def test_pdf_is_base64(self, config, availability_cache, fake_engine):
        renderer = DirectRenderer(config, availability_cache)
        with patch("tikz_renderer.tools.renderer.run_command", side_effect=fake_engine):
            result = _render(renderer, format=OutputFormat.PDF)
        assert result.format == OutputFormat.PDF
        assert base64.b64decode(result.content) == b"%PDF-1.5 fake"
        assert result.width is None

    @patch("tikz_renderer.tools.svg_optimizer.find_tool", return_value=None)
    @patch("tikz_renderer.tools.converters.find_tool", return_value=None)
    def test_svg_converted_and_optimized(self, _, __, config, availability_cache, fake_engine, fake_converter):
        renderer = DirectRenderer(config, availability_cache)
        with patch("tikz_renderer.tools.renderer.run_command", side_effect=fake_engine), \
                patch("tikz_renderer.tools.converters.run_command", side_effect=fake_converter):
            result = _render(renderer)
        assert result.format == OutputFormat.SVG
        assert result.content.startswith("<svg")
        assert "<?xml" not in result.content
        assert result.width == pytest.approx(58.69)
        assert result.height == pytest.approx(58.69)

    def test_work_dir_removed(self, config, availability_cache, fake_engine):
        renderer = DirectRenderer(config, availability_cache)
        with patch("tikz_renderer.tools.renderer.run_command", side_effect=fake_engine):
            _render(renderer, format=OutputFormat.PDF)
        key = job_key(DOCUMENT, OutputFormat.PDF, LatexEngine.PDFLATEX)
        assert not (Path(config.temp_dir) / key).exists()

    def test_tex_written_and_engine_invoked(self, config, availability_cache, fake_engine):
        seen = {}

        async def _spy(cmd, *, timeout, cwd=None):
            seen["tex"] = Path(cmd[-1]).read_text(encoding="utf-8")
            seen["cmd"] = cmd
            seen["timeout"] = timeout
            return await fake_engine(cmd, timeout=timeout, cwd=cwd)

        renderer = DirectRenderer(config, availability_cache)
        with patch("tikz_renderer.tools.renderer.run_command", side_effect=_spy):
            _render(renderer, format=OutputFormat.PDF, timeout=7)
        assert seen["tex"] == DOCUMENT
        assert seen["cmd"][0] == "pdflatex"
        assert "-halt-on-error" in seen["cmd"]
        assert seen["timeout"] == 7

    def test_engine_fallback(self, config, fake_engine):
        availability = AvailabilityCache.fixed(EngineAvailability(engines={
            LatexEngine.PDFLATEX: False,
            LatexEngine.LUALATEX: True,
            LatexEngine.XELATEX: False,
        }))
        commands = []

        async def _spy(cmd, *, timeout, cwd=None):
            commands.append(cmd)
            return await fake_engine(cmd, timeout=timeout, cwd=cwd)

        renderer = DirectRenderer(config, availability)
        with patch("tikz_renderer.tools.renderer.run_command", side_effect=_spy):
            _render(renderer, format=OutputFormat.PDF)
        assert commands[0][0] == "lualatex"


class TestRenderFailures:
    def test_compile_error_classified(self, config, availability_cache, undefined_command_log):
        renderer = DirectRenderer(config, availability_cache)
        with patch("tikz_renderer.tools.renderer.run_command", side_effect=_failing_engine(undefined_command_log)):
            with pytest.raises(RenderError) as exc_info:
                _render(renderer)
        record = exc_info.value.record
        assert record.category == ErrorCategory.UNDEFINED_COMMAND
        assert record.code == "\\celsius"
        assert record.source_excerpt

    def test_zero_exit_without_pdf_fails(self, config, availability_cache):
        renderer = DirectRenderer(config, availability_cache)
        engine = _failing_engine("No pages of output.", returncode=0)
        with patch("tikz_renderer.tools.renderer.run_command", side_effect=engine):
            with pytest.raises(RenderError) as exc_info:
                _render(renderer)
        assert exc_info.value.record.message == "LaTeX compilation failed"

    def test_spawn_failure(self, config, availability_cache):
        async def _spawn_error(cmd, *, timeout, cwd=None):
            return CommandResult(cmd=cmd, returncode=None, spawn_error="No such file or directory")

        renderer = DirectRenderer(config, availability_cache)
        with patch("tikz_renderer.tools.renderer.run_command", side_effect=_spawn_error):
            with pytest.raises(RenderError) as exc_info:
                _render(renderer)
        record = exc_info.value.record
        assert record.category == ErrorCategory.ENGINE_UNAVAILABLE
        assert record.code == "pdflatex"

    def test_timeout_message(self, config, availability_cache):
        renderer = DirectRenderer(config, availability_cache)
        engine = _failing_engine("(./tikz.tex", returncode=None, timed_out=True)
        with patch("tikz_renderer.tools.renderer.run_command", side_effect=engine):
            with pytest.raises(RenderError) as exc_info:
                _render(renderer, timeout=2)
        record = exc_info.value.record
        assert record.category == ErrorCategory.GENERIC
        assert record.message == "Compilation timed out after 2s"

    @patch("tikz_renderer.tools.renderer.convert_pdf_to_svg", new_callable=AsyncMock, return_value=None)
    def test_no_converter(self, _, config, availability_cache, fake_engine):
        renderer = DirectRenderer(config, availability_cache)
        with patch("tikz_renderer.tools.renderer.run_command", side_effect=fake_engine):
            with pytest.raises(RenderError) as exc_info:
                _render(renderer)
        record = exc_info.value.record
        assert record.category == ErrorCategory.NO_CONVERTER
        assert "pdf2svg" in record.message

    def test_failed_job_cleans_up(self, config, availability_cache):
        renderer = DirectRenderer(config, availability_cache)
        with patch("tikz_renderer.tools.renderer.run_command", side_effect=_failing_engine("! Oops.")):
            with pytest.raises(RenderError):
                _render(renderer)
        assert list(Path(config.temp_dir).iterdir()) == []
