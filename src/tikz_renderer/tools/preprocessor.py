"""TikZ input normalization: syntax repair, library extraction, structure
completion and preamble enhancement.

Accepts anything from a complete ``standalone`` document down to a single
``\\draw`` command and produces a document the engine can attempt to compile.
Nothing here raises; unmet requirements surface later as compiler errors.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from ..models import CompiledDocument, PreprocessResult, StructureCase

logger = logging.getLogger(__name__)

DOCUMENT_CLASS = "\\documentclass[tikz,border=2pt]{standalone}"

# ---------------------------------------------------------------------------
# Syntax repair
# ---------------------------------------------------------------------------

_NUMBER = r"-?(?:\d+\.?\d*|\.\d+)"
_COORD_RE = re.compile(rf"\(\s*({_NUMBER})\s+({_NUMBER})\s*\)")

_BARE_DIRECTIVE_RE = re.compile(
    r"\\(usetikzlibrary|usepackage|usepgfplotslibrary)[ \t]+"
    r"([A-Za-z][\w.\-]*(?:[ \t]*,[ \t]*[A-Za-z][\w.\-]*)*)"
)

_STATEMENT_START_RE = re.compile(
    r"^\\(?:draw|node|path|fill|filldraw|shade|shadedraw|clip|coordinate|addplot3?|pic)\b"
)
# A statement ending in one of these continues on the next line.
_CONTINUATION_RE = re.compile(r"(?:--|\.\.|-\||\|-|\bto|\bcontrols|\band|\bnode|\bedge|\+)\s*$")
_COMMENT_RE = re.compile(r"(?<!\\)%")

_BARE_NODE_RE = re.compile(r"\\node\b([^;{}\n]*);")
_NODE_KEYWORD_RE = re.compile(r"^(?:at|child|edge|to|--)\b")

_BRACKET_PAIRS = (("(", ")"), ("[", "]"), ("{", "}"))


def _split_comment(line: str) -> tuple[str, str]:
    m = _COMMENT_RE.search(line)
    if m is None:
        return line, ""
    return line[: m.start()], line[m.start():]


def _balanced(text: str) -> bool:
    return all(text.count(open_) == text.count(close) for open_, close in _BRACKET_PAIRS)


def _statement_ends_here(lines: list[str], index: int) -> bool:
    """True when the next non-blank line starts a new command (or there is none)."""
    for nxt in lines[index + 1:]:
        body = _split_comment(nxt)[0].strip()
        if body:
            return body.startswith("\\")
    return True


def fix_coordinate_separators(code: str) -> tuple[str, bool]:
    """``(1 2)`` → ``(1,2)``."""
    fixed = _COORD_RE.sub(r"(\1,\2)", code)
    return fixed, fixed != code


def fix_bare_directive_arguments(code: str) -> tuple[str, bool]:
    """``\\usetikzlibrary arrows.meta, calc`` → ``\\usetikzlibrary{arrows.meta,calc}``."""
    def _wrap(m: re.Match) -> str:
        names = ",".join(n.strip() for n in m.group(2).split(","))
        return f"\\{m.group(1)}{{{names}}}"

    fixed = _BARE_DIRECTIVE_RE.sub(_wrap, code)
    return fixed, fixed != code


def fix_missing_terminators(code: str) -> tuple[str, bool]:
    """Append ``;`` to single-line drawing statements that lack one.

    Only statements whose brackets balance on the line and which are not
    continued on the following line are touched.
    """
    lines = code.split("\n")
    changed = False
    for i, line in enumerate(lines):
        body, comment = _split_comment(line)
        stripped = body.rstrip()
        if not stripped or stripped.endswith(";"):
            continue
        segment = stripped.rsplit(";", 1)[-1].strip()
        if not _STATEMENT_START_RE.match(segment) or not _balanced(segment):
            continue
        if _CONTINUATION_RE.search(segment) or not _statement_ends_here(lines, i):
            continue
        lines[i] = stripped + ";" + body[len(stripped):] + comment
        changed = True
    return "\n".join(lines), changed


def fix_bare_node_labels(code: str) -> tuple[str, bool]:
    """``\\node at (0,0) Label;`` → ``\\node at (0,0) {Label};``."""
    def _wrap(m: re.Match) -> str:
        content = m.group(1)
        cut = max(content.rfind(")"), content.rfind("]"))
        head, label = content[: cut + 1], content[cut + 1:].strip()
        if not label or _NODE_KEYWORD_RE.match(label) or any(c in label for c in "()[]"):
            return m.group(0)
        return f"\\node{head.rstrip()} {{{label}}};"

    fixed = _BARE_NODE_RE.sub(_wrap, code)
    return fixed, fixed != code


_SYNTAX_FIXES = (
    fix_coordinate_separators,
    fix_bare_directive_arguments,
    fix_missing_terminators,
    fix_bare_node_labels,
)


def repair_syntax(code: str) -> tuple[str, bool]:
    """Apply every conservative syntax fix in order.

    Returns ``(fixed_code, any_fix_applied)``.  Running it on its own output
    is a no-op.
    """
    any_fixed = False
    for fix in _SYNTAX_FIXES:
        code, fixed = fix(code)
        if fixed:
            logger.debug("Syntax fix applied: %s", fix.__name__)
            any_fixed = True
    return code, any_fixed


# ---------------------------------------------------------------------------
# Library declarations
# ---------------------------------------------------------------------------

_LIBRARY_RE = re.compile(r"\\usetikzlibrary\s*\{([^}]*)\}")


def _dedupe(names: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(n for n in names if n))


def existing_libraries(text: str) -> list[str]:
    """Library names loaded by ``\\usetikzlibrary`` anywhere in *text*."""
    return _dedupe(
        name.strip()
        for m in _LIBRARY_RE.finditer(text)
        for name in m.group(1).split(",")
    )


def extract_library_declarations(code: str) -> tuple[str, list[str]]:
    """Remove ``\\usetikzlibrary{...}`` directives, returning ``(code, names)``.

    Lines left blank by the removal are dropped; other blank lines are kept.
    """
    libraries = existing_libraries(code)
    if not libraries:
        return code, []

    kept: list[str] = []
    for line in code.split("\n"):
        if _LIBRARY_RE.search(line):
            line = _LIBRARY_RE.sub("", line)
            if not line.strip():
                continue
        kept.append(line)

    logger.info("Extracted library declarations from user code: %s", ", ".join(libraries))
    return "\n".join(kept), libraries


# ---------------------------------------------------------------------------
# Structure detection
# ---------------------------------------------------------------------------

_DOCCLASS_RE = re.compile(r"\\documentclass")
_BEGIN_DOC_RE = re.compile(r"\\begin\s*\{\s*document\s*\}")
_END_DOC_RE = re.compile(r"\\end\s*\{\s*document\s*\}")
_BEGIN_TIKZ_RE = re.compile(r"\\begin\s*\{\s*tikzpicture\s*\}")
_END_TIKZ_RE = re.compile(r"\\end\s*\{\s*tikzpicture\s*\}")
_AXIS_ENVS = r"(axis|semilogxaxis|semilogyaxis|loglogaxis|polaraxis)"
_BEGIN_AXIS_RE = re.compile(rf"\\begin\s*\{{\s*{_AXIS_ENVS}\s*\}}")
_END_AXIS_RE = re.compile(rf"\\end\s*\{{\s*{_AXIS_ENVS}\s*\}}")
_PREAMBLE_LINE_RE = re.compile(
    r"\s*(?:%|$|\\(?:documentclass|usepackage|RequirePackage|usetikzlibrary|usepgfplotslibrary"
    r"|pgfplotsset|tikzset|newcommand|renewcommand|providecommand|definecolor|colorlet"
    r"|newlength|setlength|def|let)\b)"
)


def _uncomment(code: str) -> str:
    return "\n".join(_split_comment(line)[0] for line in code.split("\n"))


def _open_axis_environments(code: str) -> list[str]:
    """Axis-family environments opened but not closed, innermost first."""
    stack: list[str] = []
    events = sorted(
        [(m.start(), "begin", m.group(1)) for m in _BEGIN_AXIS_RE.finditer(code)]
        + [(m.start(), "end", m.group(1)) for m in _END_AXIS_RE.finditer(code)]
    )
    for _, kind, name in events:
        if kind == "begin":
            stack.append(name)
        elif name in stack:
            del stack[len(stack) - 1 - stack[::-1].index(name)]
    return stack[::-1]


def _split_header(code: str) -> tuple[str, str]:
    """Split a source with a class but no ``\\begin{document}`` into (header, body).

    The header is the leading run of preamble directives, comments and blank
    lines; a directive whose braces span several lines keeps its continuation.
    """
    lines = code.split("\n")
    depth = 0
    for i, line in enumerate(lines):
        if depth <= 0 and not _PREAMBLE_LINE_RE.match(line):
            return "\n".join(lines[:i]).rstrip("\n"), "\n".join(lines[i:])
        text = _split_comment(line)[0]
        depth += text.count("{") + text.count("[") - text.count("}") - text.count("]")
    return code.rstrip("\n"), ""


def detect_structure(code: str) -> StructureCase:
    """Classify *code* on the document and drawing axes.

    ========================  ==========================  ======================
    document \\ drawing       complete / open / none
    ========================  ==========================  ======================
    full (class+begin+end)    AS_IS
    open (begin, no end)      CLOSE_DOCUMENT
    header only (class)       CLOSE_DOCUMENT
    none                      WRAP_DOCUMENT / CLOSE_DRAWING / CLOSE_SUB_ENVIRONMENT or WRAP_BARE
    ========================  ==========================  ======================
    """
    text = _uncomment(code)
    has_class = bool(_DOCCLASS_RE.search(text))
    begin_doc = len(_BEGIN_DOC_RE.findall(text))
    end_doc = len(_END_DOC_RE.findall(text))

    if has_class and begin_doc and end_doc:
        return StructureCase.AS_IS
    if begin_doc and not end_doc:
        return StructureCase.CLOSE_DOCUMENT
    if begin_doc:
        # begin/end present without a class: the document is complete apart
        # from its header, which assembly supplies
        return StructureCase.AS_IS
    if has_class:
        return StructureCase.CLOSE_DOCUMENT

    begin_tikz = len(_BEGIN_TIKZ_RE.findall(text))
    end_tikz = len(_END_TIKZ_RE.findall(text))
    if begin_tikz and end_tikz >= begin_tikz:
        return StructureCase.WRAP_DOCUMENT
    if begin_tikz:
        return StructureCase.CLOSE_DRAWING
    if _open_axis_environments(text):
        return StructureCase.CLOSE_SUB_ENVIRONMENT
    return StructureCase.WRAP_BARE


def complete_structure(code: str, structure: StructureCase) -> str:
    """Return *code* with the closing markers and wrappers *structure* calls for."""
    body = code.strip("\n")
    if structure is StructureCase.AS_IS:
        return body
    if structure is StructureCase.CLOSE_DOCUMENT:
        if not _BEGIN_DOC_RE.search(_uncomment(body)):
            logger.debug("Adding missing begin{document} after the document header")
            header, rest = _split_header(body)
            rest = _END_DOC_RE.sub("", rest).strip("\n")
            inner = detect_structure(rest)
            if inner is StructureCase.CLOSE_DOCUMENT:
                inner = StructureCase.WRAP_BARE
            return f"{header}\n{complete_structure(rest, inner)}"
        logger.debug("Adding missing end{document}")
        return f"{body}\n\\end{{document}}"

    if structure is StructureCase.WRAP_DOCUMENT:
        logger.debug("Adding document structure around complete tikzpicture")
    elif structure is StructureCase.CLOSE_DRAWING:
        logger.debug("Adding missing end{tikzpicture} and document structure")
        closers = "".join(f"\n\\end{{{env}}}" for env in _open_axis_environments(_uncomment(body)))
        body = f"{body}{closers}\n\\end{{tikzpicture}}"
    elif structure is StructureCase.CLOSE_SUB_ENVIRONMENT:
        logger.debug("Adding missing end{axis} and tikzpicture wrapper")
        closers = "".join(f"\n\\end{{{env}}}" for env in _open_axis_environments(_uncomment(body)))
        body = f"\\begin{{tikzpicture}}\n{body}{closers}\n\\end{{tikzpicture}}"
    else:
        logger.debug("Adding tikzpicture environment and document structure")
        body = f"\\begin{{tikzpicture}}\n{body}\n\\end{{tikzpicture}}"
    return f"\\begin{{document}}\n{body}\n\\end{{document}}"


# ---------------------------------------------------------------------------
# Preamble enhancement
# ---------------------------------------------------------------------------

_PGFPLOTS_RE = re.compile(r"\\begin\s*\{\s*(?:axis|semilogxaxis|semilogyaxis|loglogaxis|polaraxis)\s*\}|\\addplot")
_PGFPLOTS_COMPAT_RE = re.compile(r"\\pgfplotsset\s*\{\s*compat")
_SIUNITX_RE = re.compile(r"\\(?:si|SI|qty|unit|num|ang)\s*\{|\\(?:celsius|degreeCelsius|ohm|micro|kilo|mega)\b")
_AMSMATH_RE = re.compile(
    r"\\begin\s*\{\s*(?:align|gather|multline|equation\*|pmatrix|bmatrix|cases)\s*\}"
    r"|\\(?:text|tag|notag|intertext|substack|overset|underset|dfrac|tfrac|binom|dbinom|tbinom)\b"
)
_AMSSYMB_RE = re.compile(
    r"\\(?:mathbb|mathfrak|blacksquare|square|blacktriangle|blacklozenge|lozenge|bigstar"
    r"|measuredangle|sphericalangle|circledS|circledR|circledast|circleddash|boxplus|boxminus"
    r"|boxtimes|boxdot|leqslant|geqslant|lesssim|gtrsim|lessgtr|gtrless|varnothing|checkmark)\b"
)


def _has_package(preamble: str, name: str) -> bool:
    pattern = r"\\usepackage\s*(?:\[[^\]]*\])?\s*\{[^}]*" + re.escape(name)
    return re.search(pattern, preamble) is not None


def needs_pgfplots(code: str) -> bool:
    return _PGFPLOTS_RE.search(code) is not None


def needs_siunitx(code: str) -> bool:
    return _SIUNITX_RE.search(code) is not None


def needs_amsmath(code: str) -> bool:
    return _AMSMATH_RE.search(code) is not None


def needs_amssymb(code: str) -> bool:
    return _AMSSYMB_RE.search(code) is not None


_OPT = r"\[[^\]]*\b{}\b[^\]]*\]"

# (library, pattern, description); order is the order names are emitted.
LIBRARY_RULES: list[tuple[str, re.Pattern, str]] = [
    ("arrows.meta", re.compile(
        r"(?:^|[-<>=\[,\s{])(?:Stealth|Latex|Straight Barb|Kite|Rays|Hooks|Arc Barb|Tee Barb)"
        r"(?:\[[^\]]*\])?(?=\s*[-,\]}])"
    ), "Arrow tips"),
    ("positioning", re.compile(r"\b(?:above|below|left|right)(?:\s+(?:left|right))?\s*=[^,\]]*\bof\b"), "Node positioning"),
    ("calc", re.compile(r"\$\s*\(|\blet\s+\\[pn]"), "Coordinate calculations"),
    ("automata", re.compile(_OPT.format(r"(?:state|accepting|initial)")), "State machines"),
    ("shapes.geometric", re.compile(_OPT.format(
        r"(?:diamond|trapezium|semicircle|regular polygon|star|cylinder|dart|isosceles triangle|kite|circular sector|ellipse)"
    )), "Geometric shapes"),
    ("shapes.multipart", re.compile(r"\b(?:circle|rectangle|ellipse) split\b"), "Multipart shapes"),
    ("shapes.symbols", re.compile(_OPT.format(
        r"(?:cloud|starburst|signal|tape|forbidden sign|magnifying glass)"
    )), "Symbol shapes"),
    ("shapes.arrows", re.compile(r"\b(?:single arrow|double arrow|arrow box)\b"), "Arrow shapes"),
    ("shapes.callouts", re.compile(r"\b(?:rectangle|ellipse|cloud) callout\b"), "Callout shapes"),
    ("shapes.misc", re.compile(r"\b(?:cross out|strike out|rounded rectangle|chamfered rectangle)\b"), "Miscellaneous shapes"),
    ("fit", re.compile(r"\bfit\s*="), "Fitting nodes"),
    ("backgrounds", re.compile(r"on background layer|background rectangle|show background"), "Background layers"),
    ("matrix", re.compile(r"matrix of (?:math )?nodes"), "Matrices of nodes"),
    ("patterns", re.compile(r"\bpattern\s*="), "Fill patterns"),
    ("shadows", re.compile(r"\b(?:drop|circular|copy) shadow\b"), "Shadows"),
    ("decorations.pathmorphing", re.compile(
        r"decoration\s*=\s*\{?\s*(?:zigzag|snake|coil|bumps|random steps|saw)\b"
    ), "Path morphing decorations"),
    ("decorations.pathreplacing", re.compile(
        r"decoration\s*=\s*\{?\s*(?:brace|border|ticks|expanding waves|waves)\b"
    ), "Path replacing decorations"),
    ("decorations.markings", re.compile(r"\bmarkings\b|mark\s*=\s*at position"), "Markings"),
    ("decorations.text", re.compile(r"text along path|decoration\s*=\s*\{?\s*text effects"), "Text decorations"),
    ("intersections", re.compile(r"\bname path\b|\bname intersections\b"), "Path intersections"),
    ("through", re.compile(r"\bcircle through\b"), "Circles through points"),
    ("mindmap", re.compile(_OPT.format(r"(?:mindmap|concept)")), "Mind maps"),
    ("trees", re.compile(r"\bgrow cyclic\b|\bgrow via three points\b"), "Tree growth functions"),
    ("chains", re.compile(r"\bstart chain\b|\bon chain\b|\\chainin\b"), "Chains"),
    ("spy", re.compile(r"\\spy\b|\bspy using\b"), "Magnification"),
    ("quotes", re.compile(r"(?:edge|node|\\draw|\\path)\s*\[\s*\""), "Edge quotes"),
    ("angles", re.compile(r"\bpic\s*(?:\[[^\]]*\])?\s*\{\s*(?:right\s+)?angle\b"), "Angles"),
    ("3d", re.compile(r"\bcanvas is (?:xy|yz|xz|zy|yx|zx) plane at\b"), "3D canvases"),
    ("perspective", re.compile(r"\b(?:3d view|isometric view)\b|\btpp cs\b"), "Perspective"),
    ("petri", re.compile(_OPT.format(r"(?:place|transition)") + r"|\btokens\s*="), "Petri nets"),
    ("fadings", re.compile(r"\\tikzfading\b|\bpath fading\b"), "Fadings"),
    ("graphs", re.compile(r"\\graph\b"), "Graph syntax"),
    ("calendar", re.compile(r"\\calendar\b"), "Calendars"),
    ("lindenmayersystems", re.compile(r"\\pgfdeclarelindenmayersystem\b|\blindenmayer system\b"), "L-systems"),
    ("datavisualization", re.compile(r"\\datavisualization\b"), "Data visualization"),
    ("circuits.ee.IEC", re.compile(r"\bcircuit ee IEC\b"), "IEC circuit symbols"),
    ("circuits.logic.US", re.compile(r"\bcircuit logic US\b"), "US logic gates"),
    ("circuits.logic.IEC", re.compile(r"\bcircuit logic IEC\b"), "IEC logic gates"),
]


def detect_required_libraries(code: str) -> list[str]:
    """Return TikZ libraries *code* appears to need, in rule order."""
    libraries: list[str] = []
    for library, pattern, description in LIBRARY_RULES:
        if pattern.search(code):
            logger.debug("Detected library: %s (%s)", library, description)
            libraries.append(library)
    return libraries


def library_line(libraries: Iterable[str], already_loaded: str = "") -> str:
    """A single ``\\usetikzlibrary`` directive for names not loaded in *already_loaded*."""
    loaded = set(existing_libraries(already_loaded))
    new = [name for name in _dedupe(libraries) if name not in loaded]
    if not new:
        return ""
    return f"\\usetikzlibrary{{{','.join(new)}}}"


def enhance_preamble(
    user_preamble: str,
    code: str,
    extracted_libraries: Iterable[str] = (),
) -> tuple[str, list[str]]:
    """Append auto-detected packages and one consolidated library directive.

    Returns ``(enhanced_preamble, detected_libraries)``.  Anything the user
    preamble already loads is left out.
    """
    parts = [user_preamble.rstrip()] if user_preamble.strip() else []

    if not _has_package(user_preamble, "tikz"):
        parts.append("\\usepackage{tikz}")

    has_pgfplots = _has_package(user_preamble, "pgfplots")
    wants_pgfplots = needs_pgfplots(code)
    if wants_pgfplots and not has_pgfplots:
        parts.append("\\usepackage{pgfplots}")
    if (wants_pgfplots or has_pgfplots) and not _PGFPLOTS_COMPAT_RE.search(user_preamble):
        parts.append("\\pgfplotsset{compat=1.18}")

    for package, needed in (
        ("siunitx", needs_siunitx),
        ("amsmath", needs_amsmath),
        ("amssymb", needs_amssymb),
    ):
        if needed(code) and not _has_package(user_preamble, package):
            parts.append(f"\\usepackage{{{package}}}")

    detected = detect_required_libraries(code)
    line = library_line([*extracted_libraries, *detected], user_preamble)
    if line:
        logger.info("Adding libraries to preamble: %s", line)
        parts.append(line)

    return "\n".join(parts), detected


# ---------------------------------------------------------------------------
# Document assembly
# ---------------------------------------------------------------------------


def _insert_before_begin_document(document: str, line: str) -> str:
    m = _BEGIN_DOC_RE.search(document)
    if not line or m is None:
        return document
    return f"{document[: m.start()]}{line}\n{document[m.start():]}"


def build_document(
    body: str,
    preamble: str,
    structure: StructureCase,
    libraries: Iterable[str] = (),
) -> str:
    """Assemble the complete .tex text.

    A body that carries its own ``\\documentclass`` is used verbatim, with any
    missing *libraries* inserted once before ``\\begin{document}``.  Otherwise
    a ``standalone`` header with *preamble* is prepended.
    """
    if _DOCCLASS_RE.search(_uncomment(body)):
        return _insert_before_begin_document(body, library_line(libraries, body)) + "\n"

    header = [DOCUMENT_CLASS]
    if preamble.strip():
        header.append(preamble.strip())
    line = library_line(libraries, preamble)
    if line:
        header.append(line)
    return "\n".join(header) + "\n\n" + body + "\n"


class DocumentPreprocessor:
    """Turns user input into compilable documents for each render strategy."""

    def preprocess(self, source: str, user_preamble: str) -> PreprocessResult:
        """Full normalization: repair, extract, complete, enhance."""
        logger.debug("Preprocessing TikZ code")
        repaired, fixed = repair_syntax(source)
        structure = detect_structure(repaired)

        if structure is StructureCase.AS_IS or _DOCCLASS_RE.search(_uncomment(repaired)):
            # The document carries its own preamble; leave its directives in place.
            _, extracted = extract_library_declarations(repaired)
            processed = complete_structure(repaired, structure)
            enhanced, detected = user_preamble, []
            text = build_document(processed, user_preamble, structure)
        else:
            code, extracted = extract_library_declarations(repaired)
            processed = complete_structure(code, structure)
            enhanced, detected = enhance_preamble(user_preamble, code, extracted)
            text = build_document(processed, enhanced, structure)

        document = CompiledDocument(
            text=text,
            document_structure_added=structure is not StructureCase.AS_IS,
            syntax_fixes_applied=fixed,
        )
        return PreprocessResult(
            document=document,
            processed_source=processed,
            enhanced_preamble=enhanced,
            extracted_libraries=extracted,
            detected_libraries=detected,
            structure=structure,
        )

    def wrap(self, source: str, preamble: str) -> CompiledDocument:
        """Structure completion only; the source text is otherwise untouched."""
        structure = detect_structure(source)
        body = complete_structure(source, structure)
        return CompiledDocument(
            text=build_document(body, preamble, structure),
            document_structure_added=structure is not StructureCase.AS_IS,
        )

    def with_preamble(self, result: PreprocessResult, preamble: str) -> CompiledDocument:
        """The preprocessed source under a different preamble.

        Libraries extracted from the source are re-declared so moving them out
        of the body never loses them.
        """
        return CompiledDocument(
            text=build_document(
                result.processed_source, preamble, result.structure, result.extracted_libraries,
            ),
            document_structure_added=result.document.document_structure_added,
            syntax_fixes_applied=result.document.syntax_fixes_applied,
        )
