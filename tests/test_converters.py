"""Tests for tools/converters.py: the PDF to SVG fallback chain."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

from tikz_renderer.models import EngineAvailability
from tikz_renderer.tools.converters import CONVERTERS, convert_pdf_to_svg
from tikz_renderer.tools.process import CommandResult

SVG_TEXT = '<svg xmlns="http://www.w3.org/2000/svg" width="10pt" height="10pt"><path d="M0 0"/></svg>'


def _availability(**converters: bool) -> EngineAvailability:
    return EngineAvailability(converters=converters)


class _Recorder:
    """run_command stand-in; converters named in *working* write the SVG."""

    def __init__(self, working=(), ok_without_file=()):
        self.working = set(working)
        self.ok_without_file = set(ok_without_file)
        self.calls: list[str] = []

    async def run(self, cmd, *, timeout, cwd=None):
        name = next(c.name for c in CONVERTERS if cmd[0].endswith(c.name))
        self.calls.append(name)
        if name in self.working:
            target = cmd[-1]
            for arg in cmd:
                if arg.startswith("--export-filename="):
                    target = arg.split("=", 1)[1]
            with open(target, "w", encoding="utf-8") as fh:
                fh.write(SVG_TEXT)
            return CommandResult(cmd=cmd, returncode=0)
        if name in self.ok_without_file:
            return CommandResult(cmd=cmd, returncode=0)
        return CommandResult(cmd=cmd, returncode=1, output="conversion error")


@patch("tikz_renderer.tools.converters.find_tool", side_effect=lambda name: name)
class TestConvertPdfToSvg:
    def test_first_available_wins(self, _, tmp_path):
        recorder = _Recorder(working={"pdf2svg", "inkscape"})
        with patch("tikz_renderer.tools.converters.run_command", side_effect=recorder.run):
            used = asyncio.run(convert_pdf_to_svg(
                tmp_path / "a.pdf", tmp_path / "a.svg",
                _availability(pdf2svg=True, inkscape=True, pdftocairo=True),
            ))
        assert used == "pdf2svg"
        assert recorder.calls == ["pdf2svg"]

    def test_skips_unavailable(self, _, tmp_path):
        recorder = _Recorder(working={"inkscape"})
        with patch("tikz_renderer.tools.converters.run_command", side_effect=recorder.run):
            used = asyncio.run(convert_pdf_to_svg(
                tmp_path / "a.pdf", tmp_path / "a.svg",
                _availability(pdf2svg=False, inkscape=True, pdftocairo=True),
            ))
        assert used == "inkscape"
        assert recorder.calls == ["inkscape"]
        assert (tmp_path / "a.svg").read_text(encoding="utf-8") == SVG_TEXT

    def test_falls_back_on_failure(self, _, tmp_path):
        recorder = _Recorder(working={"pdftocairo"})
        with patch("tikz_renderer.tools.converters.run_command", side_effect=recorder.run):
            used = asyncio.run(convert_pdf_to_svg(
                tmp_path / "a.pdf", tmp_path / "a.svg",
                _availability(pdf2svg=True, inkscape=True, pdftocairo=True),
            ))
        assert used == "pdftocairo"
        assert recorder.calls == ["pdf2svg", "inkscape", "pdftocairo"]

    def test_ok_without_output_is_failure(self, _, tmp_path):
        recorder = _Recorder(ok_without_file={"pdf2svg"}, working={"pdftocairo"})
        with patch("tikz_renderer.tools.converters.run_command", side_effect=recorder.run):
            used = asyncio.run(convert_pdf_to_svg(
                tmp_path / "a.pdf", tmp_path / "a.svg",
                _availability(pdf2svg=True, pdftocairo=True),
            ))
        assert used == "pdftocairo"

    def test_all_fail(self, _, tmp_path):
        recorder = _Recorder()
        with patch("tikz_renderer.tools.converters.run_command", side_effect=recorder.run):
            used = asyncio.run(convert_pdf_to_svg(
                tmp_path / "a.pdf", tmp_path / "a.svg",
                _availability(pdf2svg=True, inkscape=True, pdftocairo=True),
            ))
        assert used is None

    def test_nothing_installed(self, _, tmp_path):
        recorder = _Recorder(working={"pdf2svg"})
        with patch("tikz_renderer.tools.converters.run_command", side_effect=recorder.run):
            used = asyncio.run(convert_pdf_to_svg(tmp_path / "a.pdf", tmp_path / "a.svg", _availability()))
        assert used is None
        assert recorder.calls == []

    def test_stale_output_removed(self, _, tmp_path):
        svg = tmp_path / "a.svg"
        svg.write_text("stale", encoding="utf-8")
        recorder = _Recorder(ok_without_file={"pdf2svg"})
        with patch("tikz_renderer.tools.converters.run_command", side_effect=recorder.run):
            used = asyncio.run(convert_pdf_to_svg(tmp_path / "a.pdf", svg, _availability(pdf2svg=True)))
        assert used is None
        assert not svg.exists()


class TestConverterCommands:
    @patch("tikz_renderer.tools.converters.find_tool", return_value=None)
    def test_argument_order(self, _, tmp_path):
        pdf, svg = tmp_path / "in.pdf", tmp_path / "out.svg"
        by_name = {c.name: c.command(pdf, svg) for c in CONVERTERS}
        assert by_name["pdf2svg"] == ["pdf2svg", str(pdf), str(svg)]
        assert by_name["inkscape"] == ["inkscape", "--export-type=svg", f"--export-filename={svg}", str(pdf)]
        assert by_name["pdftocairo"] == ["pdftocairo", "-svg", str(pdf), str(svg)]
