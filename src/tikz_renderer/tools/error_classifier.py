"""Compiler output classification.

Turns raw engine output into an :class:`ErrorRecord` with a category, the
offending line, a context window and a remediation hint.  Rules are tried in
order and the first one that produces a record wins.
"""

from __future__ import annotations

import html
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from ..models import ErrorCategory, ErrorRecord

logger = logging.getLogger(__name__)

CONTEXT_WINDOW = 5
SOURCE_WINDOW = 3
TAIL_LINES = 10

# ---------------------------------------------------------------------------
# Suggestion table
# ---------------------------------------------------------------------------

COMMAND_LIBRARIES: dict[str, str] = {
    **dict.fromkeys(["edge", "plate", "factor", "latent", "obs"], "bayesnet"),
    **dict.fromkeys(["state", "accepting", "initial"], "automata"),
    **dict.fromkeys(["cylinder", "ellipse", "diamond", "star", "regular"], "shapes.geometric"),
    **dict.fromkeys(["matrix", "m"], "matrix"),
    **dict.fromkeys(["spy", "magnify"], "spy"),
    **dict.fromkeys(["decorate", "decoration"], "decorations.pathmorphing"),
    "fit": "fit",
    **dict.fromkeys(["graph", "Graph"], "graphs"),
    **dict.fromkeys(["Stealth", "Latex", "Computer"], "arrows.meta"),
    **dict.fromkeys(["above", "below", "left", "right"], "positioning"),
}

COMMAND_PACKAGES: dict[str, str] = {
    **dict.fromkeys(
        ["addplot", "axis", "semilogxaxis", "semilogyaxis", "loglogaxis", "pgfplotsset"], "pgfplots",
    ),
    **dict.fromkeys(["SI", "si", "celsius", "ohm", "qty", "unit"], "siunitx"),
    **dict.fromkeys(["mathbb", "mathfrak"], "amssymb"),
    **dict.fromkeys(["align", "gather", "multline", "tag", "text"], "amsmath"),
    "tdplotsetmaincoords": "tikz-3dplot",
    "mathscr": "mathrsfs",
    **dict.fromkeys(["usetikzlibrary", "tikz"], "tikz"),
}

KEY_LIBRARIES: dict[str, str] = {
    **dict.fromkeys(["rectangle split", "circle split"], "shapes.multipart"),
    "on background layer": "backgrounds",
    "pattern": "patterns",
    "name intersections": "intersections",
    **dict.fromkeys(["mindmap", "concept"], "mindmap"),
    "cloud": "shapes.symbols",
    "single arrow": "shapes.arrows",
    "drop shadow": "shadows",
    "start chain": "chains",
    "grow cyclic": "trees",
}


def library_for(name: str) -> str | None:
    """TikZ library that defines command, key, shape or arrow tip *name*."""
    return KEY_LIBRARIES.get(name) or COMMAND_LIBRARIES.get(name)


def suggestion_for_command(command: str) -> str | None:
    library = library_for(command)
    if library:
        return (
            f"The command \\{command} requires the {library} library. "
            f"Add \\usetikzlibrary{{{library}}} to your preamble."
        )
    package = COMMAND_PACKAGES.get(command)
    if package:
        return (
            f"The command \\{command} requires the {package} package. "
            f"Add \\usepackage{{{package}}} to your preamble."
        )
    return None


_MESSAGE_CS_RE = re.compile(r"\\([A-Za-z]+)")
_MISSING_FILE_RE = re.compile(r"File [`']([^'`]+)' not found")


def suggest_libraries(error_message: str) -> tuple[list[str], list[str]]:
    """Reverse lookup: ``(libraries, packages)`` likely to fix *error_message*."""
    libraries: list[str] = []
    packages: list[str] = []

    def _add(target: list[str], name: str) -> None:
        if name not in target:
            target.append(name)

    for command in _MESSAGE_CS_RE.findall(error_message):
        library = library_for(command)
        if library:
            _add(libraries, library)
        elif command in COMMAND_PACKAGES:
            _add(packages, COMMAND_PACKAGES[command])

    m = _MISSING_FILE_RE.search(error_message)
    if m:
        _add(packages, m.group(1).removesuffix(".sty"))
    if "Missing $ inserted" in error_message:
        _add(packages, "amsmath")
    if "Paragraph ended before" in error_message:
        if "axis" in error_message:
            _add(packages, "pgfplots")
        if "tikzpicture" in error_message:
            _add(packages, "tikz")

    if libraries or packages:
        logger.debug("Suggested libraries=%s packages=%s", libraries, packages)
    return libraries, packages


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

_LINE_MARK_RE = re.compile(r"^l\.(\d+)([^\n]*)", re.MULTILINE)
_CS_RE = re.compile(r"\\([A-Za-z@]+)")


def _context_around(output: str, pos: int, window: int = CONTEXT_WINDOW) -> str:
    """±*window* output lines around the line containing *pos*."""
    lines = output.split("\n")
    idx = output.count("\n", 0, pos)
    return "\n".join(lines[max(0, idx - window): idx + window + 1]).strip()


def _last_lines(output: str, count: int = TAIL_LINES) -> str:
    return "\n".join(output.rstrip("\n").split("\n")[-count:])


def _error_line(output: str, pos: int) -> tuple[int | None, str, str]:
    """Find the ``l.N`` marker after *pos*.

    Returns ``(line, text_on_marker_line, lines_between)``.
    """
    after = output[pos:pos + 600]
    m = _LINE_MARK_RE.search(after)
    if m is None:
        return None, "", ""
    return int(m.group(1)), m.group(2), after[:m.start()]


def source_excerpt(source: str, line: int, window: int = SOURCE_WINDOW) -> str:
    """Extract ±window lines around a line number from .tex source."""
    lines = source.split("\n")
    start = max(0, line - 1 - window)
    end = min(len(lines), line + window)
    excerpt: list[str] = []
    for i in range(start, end):
        marker = ">>>" if i == line - 1 else "   "
        excerpt.append(f"{marker} {i + 1:4d} | {lines[i]}")
    return "\n".join(excerpt)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ErrorRule:
    """Named pattern plus the extractor that builds a record from its match.

    ``extract`` may return None to let the next rule try.
    """
    name: str
    pattern: re.Pattern
    extract: Callable[[re.Match, str], ErrorRecord | None]


def _undefined_command(m: re.Match, output: str) -> ErrorRecord | None:
    line, tail, between = _error_line(output, m.end())
    command = None
    for text in between.split("\n"):
        if text.startswith(("<recently read>", "<argument>")):
            names = _CS_RE.findall(text)
            if names:
                command = names[-1]
                break
    if command is None:
        names = _CS_RE.findall(tail)
        command = names[-1] if names else None
    if command is None:
        return None
    return ErrorRecord(
        category=ErrorCategory.UNDEFINED_COMMAND,
        message=f"Undefined control sequence: \\{command}",
        line=line,
        context=_context_around(output, m.start()),
        suggestion=suggestion_for_command(command) or (
            f"The command \\{command} is not recognized. "
            "Check for typos or make sure you've loaded the required package."
        ),
        code=f"\\{command}",
    )


def _undefined_sequence(m: re.Match, output: str) -> ErrorRecord:
    line, _, _ = _error_line(output, m.end())
    return ErrorRecord(
        category=ErrorCategory.UNDEFINED_COMMAND,
        message="Undefined control sequence",
        line=line,
        context=_context_around(output, m.start()),
        suggestion=(
            "A command in your TikZ code is not recognized. "
            "Check for typos or make sure you've loaded the required package."
        ),
    )


def _simple(
    category: ErrorCategory,
    message: str,
    suggestion: str = "",
) -> Callable[[re.Match, str], ErrorRecord]:
    def _extract(m: re.Match, output: str) -> ErrorRecord:
        line, _, _ = _error_line(output, m.end())
        return ErrorRecord(
            category=category,
            message=message,
            line=line,
            context=_context_around(output, m.start()),
            suggestion=suggestion,
        )
    return _extract


def _library_record(name: str, line: int | None, context: str) -> ErrorRecord:
    return ErrorRecord(
        category=ErrorCategory.MISSING_PACKAGE,
        message=f"Unknown TikZ library: {name}",
        line=line,
        context=context,
        suggestion=(
            f"The TikZ library '{name}' does not exist or is not installed. "
            "Check the name in your \\usetikzlibrary declaration."
        ),
        code=name,
    )


def _unknown_library(m: re.Match, output: str) -> ErrorRecord:
    line, _, _ = _error_line(output, m.end())
    return _library_record(m.group(1), line, _context_around(output, m.start()))


def _missing_file(m: re.Match, output: str) -> ErrorRecord:
    name = m.group(1)
    line, _, _ = _error_line(output, m.end())
    context = _context_around(output, m.start())
    library = re.fullmatch(r"(?:tikz|pgf)library(.+)\.code\.tex", name)
    if library:
        return _library_record(library.group(1), line, context)
    return ErrorRecord(
        category=ErrorCategory.MISSING_PACKAGE,
        message=f"Package not found: {name}",
        line=line,
        context=context,
        suggestion=(
            f"The package {name} is not installed. "
            "Add it to your LaTeX distribution or check the package name for typos."
        ),
        code=name,
    )


def _preamble_only(m: re.Match, output: str) -> ErrorRecord:
    line, tail, _ = _error_line(output, m.end())
    names = _CS_RE.findall(tail)
    command = f"\\{names[-1]}" if names else ""
    return ErrorRecord(
        category=ErrorCategory.PREAMBLE_MISUSE,
        message=f"{command}: Can be used only in preamble" if command else "Can be used only in preamble",
        line=line,
        context=_context_around(output, m.start()),
        suggestion=(
            "This command can only be used in the document preamble (before \\begin{document}). "
            "Move it into the preamble setting instead of the diagram code."
        ),
        code=command,
    )


def _unknown_name(kind: str) -> Callable[[re.Match, str], ErrorRecord]:
    def _extract(m: re.Match, output: str) -> ErrorRecord:
        name = m.group(1).strip()
        line, _, _ = _error_line(output, m.end())
        library = library_for(name)
        if library:
            suggestion = (
                f"The {kind} '{name}' requires the {library} library. "
                f"Add \\usetikzlibrary{{{library}}} to your preamble."
            )
        else:
            suggestion = f"Check the spelling of '{name}' or load the TikZ library that defines it."
        return ErrorRecord(
            category=ErrorCategory.UNDEFINED_COMMAND,
            message=f"Unknown {kind}: {name}",
            line=line,
            context=_context_around(output, m.start()),
            suggestion=suggestion,
            code=name,
        )
    return _extract


def _pgfplots(m: re.Match, output: str) -> ErrorRecord:
    line, _, _ = _error_line(output, m.end())
    return ErrorRecord(
        category=ErrorCategory.PGFPLOTS,
        message=f"PGFPlots: {m.group(1).strip()}",
        line=line,
        context=_context_around(output, m.start()),
        suggestion=(
            "Check your pgfplots syntax or version compatibility. "
            "You might need to update your pgfplots package or adjust your syntax."
        ),
    )


def _mismatched_environment(m: re.Match, output: str) -> ErrorRecord:
    opened, opened_at, closed = m.group(1), int(m.group(2)), m.group(3)
    line, _, _ = _error_line(output, m.end())
    return ErrorRecord(
        category=ErrorCategory.UNCLOSED_ENVIRONMENT,
        message=f"\\begin{{{opened}}} on input line {opened_at} ended by \\end{{{closed}}}",
        line=line if line is not None else opened_at,
        context=_context_around(output, m.start()),
        suggestion=f"Close the {opened} environment with \\end{{{opened}}} before \\end{{{closed}}}.",
        code=f"\\begin{{{opened}}}",
    )


_PARAGRAPH_ENDED_RE = re.compile(r"Paragraph ended before ([^\n]+?) was complete")


def _runaway(m: re.Match, output: str) -> ErrorRecord:
    ended = _PARAGRAPH_ENDED_RE.search(output)
    env = ended.group(1) if ended else "environment"
    line, _, _ = _error_line(output, m.end())
    return ErrorRecord(
        category=ErrorCategory.UNCLOSED_ENVIRONMENT,
        message=f"Runaway argument - unclosed {env}",
        line=line,
        context=_context_around(output, m.start()),
        suggestion=(
            "Check for missing closing braces or unclosed environments. "
            "Make sure all your environments (like tikzpicture, axis) are properly closed."
        ),
    )


def _paragraph_ended(m: re.Match, output: str) -> ErrorRecord:
    env = m.group(1)
    if "pgfplots" in env:
        suggestion = (
            "Make sure your PGFPlots environments are properly closed and don't contain blank lines. "
            "Each \\addplot command should end with a semicolon."
        )
    elif "tikzpicture" in env:
        suggestion = (
            "Make sure your TikZ picture environment is properly closed "
            "and all commands end with semicolons."
        )
    elif "axis" in env:
        suggestion = (
            "Make sure your axis environment is properly closed with \\end{axis} "
            "and all \\addplot commands end with semicolons."
        )
    else:
        suggestion = "Check for missing closing braces or semicolons."
    line, _, _ = _error_line(output, m.end())
    return ErrorRecord(
        category=ErrorCategory.UNCLOSED_ENVIRONMENT,
        message=f"Paragraph ended before {env} was complete",
        line=line,
        context=_context_around(output, m.start()),
        suggestion=suggestion,
    )


def _generic(m: re.Match, output: str) -> ErrorRecord:
    line, _, _ = _error_line(output, m.end())
    return ErrorRecord(
        category=ErrorCategory.GENERIC,
        message=m.group(1).strip(),
        line=line,
        context=_context_around(output, m.start()),
    )


_UNDEFINED_CS_RE = re.compile(r"^! Undefined control sequence\.", re.MULTILINE)

RULES: list[ErrorRule] = [
    ErrorRule("undefined-command", _UNDEFINED_CS_RE, _undefined_command),
    ErrorRule("undefined-sequence", _UNDEFINED_CS_RE, _undefined_sequence),
    ErrorRule("missing-dollar", re.compile(r"^! Missing \$ inserted\.", re.MULTILINE), _simple(
        ErrorCategory.MATH_MODE,
        "Missing $ inserted (math mode error)",
        "You're using math commands outside of math mode. Enclose them in $...$ or use \\(...\\) for inline math.",
    )),
    ErrorRule("missing-brace", re.compile(r"^! Missing \} inserted\.", re.MULTILINE), _simple(
        ErrorCategory.UNCLOSED_GROUP,
        "Missing } inserted (unclosed group)",
        "You have an unclosed group. Check for missing closing braces } in your code.",
    )),
    ErrorRule("missing-file", _MISSING_FILE_RE, _missing_file),
    ErrorRule("unknown-library", re.compile(r"I did not find the tikz library '([^']+)'"), _unknown_library),
    ErrorRule("no-line-to-end", re.compile(r"There's no line here to end\."), _simple(
        ErrorCategory.NO_LINE_TO_END,
        "There's no line here to end",
        "You might have an empty line or a command that expects text but found none. Check your TikZ syntax.",
    )),
    ErrorRule("preamble-only", re.compile(r"Can be used only in preamble"), _preamble_only),
    ErrorRule(
        "unknown-key",
        re.compile(r"I do not know the key '(?:/tikz/|/pgfplots/|/pgf/)?([^']+)'"),
        _unknown_name("key"),
    ),
    ErrorRule("unknown-arrow-tip", re.compile(r"Unknown arrow tip kind '([^']+)'"), _unknown_name("arrow tip")),
    ErrorRule("unknown-shape", re.compile(r"No shape named [`']?([^'`]+)' is known"), _unknown_name("shape")),
    ErrorRule(
        "pgfplots",
        re.compile(r"Package pgfplots (?:Error|Warning): (?!running in backwards compatibility mode)([^\n]+)"),
        _pgfplots,
    ),
    ErrorRule("missing-begin-document", re.compile(r"Missing \\begin\{document\}"), _simple(
        ErrorCategory.UNCLOSED_DOCUMENT,
        "Missing \\begin{document}",
        "The renderer adds document structure automatically, but your code may contain text "
        "outside of proper LaTeX environments.",
    )),
    ErrorRule("no-legal-end", re.compile(r"\*\*\* \(job aborted, no legal \\end found\)"), _simple(
        ErrorCategory.UNCLOSED_DOCUMENT,
        "Document ended without \\end{document}",
        "Make sure your code ends with \\end{document} when it includes \\begin{document}.",
    )),
    ErrorRule(
        "mismatched-environment",
        re.compile(r"\\begin\{([^}]+)\} on input line (\d+) ended by \\end\{([^}]+)\}"),
        _mismatched_environment,
    ),
    ErrorRule("dimension-too-large", re.compile(r"^! Dimension too large\.", re.MULTILINE), _simple(
        ErrorCategory.DIMENSION_OVERFLOW,
        "Dimension too large",
        "You've specified a dimension that's too large for TeX to handle. "
        "Check your coordinate values or scaling factors.",
    )),
    ErrorRule("runaway-argument", re.compile(r"Runaway argument\?"), _runaway),
    ErrorRule("paragraph-ended", _PARAGRAPH_ENDED_RE, _paragraph_ended),
    ErrorRule("latex-error", re.compile(r"^! LaTeX Error: ([^\n]+)", re.MULTILINE), _generic),
    ErrorRule("tex-error", re.compile(r"^! ([^\n]+)", re.MULTILINE), _generic),
]


def classify(raw_output: str, source: str | None = None) -> ErrorRecord:
    """Classify engine output; *source* is the compiled document for excerpts."""
    record = None
    for rule in RULES:
        m = rule.pattern.search(raw_output)
        if m is None:
            continue
        record = rule.extract(m, raw_output)
        if record is not None:
            logger.debug("Compiler output matched rule %s", rule.name)
            break

    if record is None:
        record = ErrorRecord(
            category=ErrorCategory.GENERIC,
            message="LaTeX compilation failed",
            context=_last_lines(raw_output),
        )

    if source and record.line is not None:
        record = record.model_copy(update={"source_excerpt": source_excerpt(source, record.line)})
    return record


# ---------------------------------------------------------------------------
# Fallback suggestions
# ---------------------------------------------------------------------------


def fallback_suggestion(record: ErrorRecord, source: str) -> str:
    """A remediation hint for *record*, using the user's *source* as a clue."""
    category = record.category
    if category == ErrorCategory.UNDEFINED_COMMAND:
        if "\\celsius" in source or "\\textcelsius" in source:
            return (
                "The \\celsius or \\textcelsius command requires the siunitx package. "
                "Try adding \"\\usepackage{siunitx}\" to your preamble, or use $^{\\circ}$C instead."
            )
        if "\\begin{axis}" in source or "\\addplot" in source:
            return (
                "You are using PGFPlots commands. Make sure to add "
                "\"\\usepackage{pgfplots}\\pgfplotsset{compat=1.18}\" to your preamble."
            )
        libraries, packages = suggest_libraries(f"{record.message} {record.code}")
        if libraries or packages:
            additions = [f"\\usetikzlibrary{{{','.join(libraries)}}}"] if libraries else []
            additions += [f"\\usepackage{{{p}}}" for p in packages]
            return f"Try adding {' and '.join(additions)} to your preamble."
        return record.suggestion or "Check for typos or make sure you've loaded the required package for this command."
    if category == ErrorCategory.UNCLOSED_DOCUMENT:
        return (
            "Your code might contain text outside of proper LaTeX environments. "
            "Make sure all your content is inside the tikzpicture environment."
        )
    if category == ErrorCategory.MISSING_PACKAGE:
        return (
            f"The package {record.code} is not installed or not found. "
            "Add it to your LaTeX distribution or check for typos in the package name."
        )
    if category == ErrorCategory.MATH_MODE:
        return "You're using math commands outside of math mode. Enclose them in $...$ or use \\(...\\) for inline math."
    if category == ErrorCategory.NO_LINE_TO_END:
        return (
            "You might have an empty line or a command that expects text but found none. "
            "Check your TikZ syntax and remove blank lines inside environments."
        )
    if category == ErrorCategory.DIMENSION_OVERFLOW:
        return (
            "You've specified a dimension that's too large for TeX to handle. "
            "Check your coordinate values or scaling factors."
        )
    return record.suggestion or "Check your TikZ code for syntax errors."


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_error(record: ErrorRecord) -> str:
    """Plain-text rendering for logs and the CLI."""
    parts = [f"Error: {record.message}"]
    if record.line is not None:
        parts.append(f"Line: {record.line}")
    text = "\n".join(parts)
    if record.suggestion:
        text += f"\n\nSuggestion: {record.suggestion}"
    if record.source_excerpt:
        text += f"\n\nSource:\n{record.source_excerpt}"
    if record.context:
        text += f"\n\nContext:\n{record.context}"
    if record.progressive_note:
        text += f"\n\nNote: {record.progressive_note}"
    if record.syntax_fix_note:
        text += f"\n\nSyntax Fix: {record.syntax_fix_note}"
    return text


def format_error_html(record: ErrorRecord) -> str:
    """Escaped HTML fragment for display next to the diagram source."""
    esc = html.escape
    specific = " specific-error" if not record.is_generic else ""
    parts = [
        '<div class="tikz-error-container">',
        f'<div class="tikz-error-header {record.severity.value}">',
        '<span class="tikz-error-icon"></span>',
        '<span class="tikz-error-title">TikZ Error</span>',
        '<span class="tikz-error-toggle">\u25bc</span>',
        "</div>",
        f'<div class="tikz-error-message{specific}">{esc(record.message)}</div>',
        '<div class="tikz-error-details">',
    ]
    if record.line is not None:
        parts.append(f'<div class="tikz-error-line">Line: {record.line}</div>')
    if record.suggestion:
        parts.append(
            f'<div class="tikz-error-suggestion"><strong>Suggestion:</strong> {esc(record.suggestion)}</div>'
        )
    if record.code:
        parts.append(
            f'<div class="tikz-error-code"><strong>Problematic code:</strong> <code>{esc(record.code)}</code></div>'
        )
    if record.source_excerpt:
        parts.append(f'<div class="tikz-error-source"><strong>Source:</strong><pre>{esc(record.source_excerpt)}</pre></div>')
    if record.context:
        parts.append(f'<div class="tikz-error-context"><strong>Context:</strong><pre>{esc(record.context)}</pre></div>')
    parts.append("</div>")
    if record.progressive_note:
        parts.append(f'<div class="tikz-error-progressive-note">{esc(record.progressive_note)}</div>')
    if record.syntax_fix_note:
        parts.append(f'<div class="tikz-error-syntax-fix-note">{esc(record.syntax_fix_note)}</div>')
    parts.append(
        '<div class="tikz-error-note">For more details, check the server logs '
        "or try running the TikZ code in a LaTeX editor.</div>"
    )
    parts.append("</div>")
    return "".join(parts)
