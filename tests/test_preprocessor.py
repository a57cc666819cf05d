"""Tests for tools/preprocessor.py: repair, extraction, structure, preamble."""

from __future__ import annotations

import pytest

from tikz_renderer.models import StructureCase
from tikz_renderer.tools.preprocessor import (
    DOCUMENT_CLASS,
    DocumentPreprocessor,
    build_document,
    complete_structure,
    detect_required_libraries,
    detect_structure,
    enhance_preamble,
    extract_library_declarations,
    fix_bare_node_labels,
    fix_missing_terminators,
    repair_syntax,
)

FULL_DOCUMENT = r"""\documentclass[tikz]{standalone}
\usetikzlibrary{calc}
\begin{document}
\begin{tikzpicture}
\draw (0,0) -- ($(0,0)+(1,1)$);
\end{tikzpicture}
\end{document}"""


class TestRepairSyntax:
    def test_space_separated_coordinates(self):
        fixed, changed = repair_syntax(r"\draw (0 0) -- (1.5 -2);")
        assert fixed == r"\draw (0,0) -- (1.5,-2);"
        assert changed

    def test_bare_library_argument(self):
        fixed, changed = repair_syntax(r"\usetikzlibrary arrows.meta, calc")
        assert fixed == r"\usetikzlibrary{arrows.meta,calc}"
        assert changed

    def test_braced_library_argument_untouched(self):
        code = r"\usetikzlibrary{arrows.meta}"
        assert repair_syntax(code) == (code, False)

    def test_missing_semicolon_added(self):
        code = "\\draw (0,0) -- (1,1)\n\\draw (1,1) -- (2,0);"
        fixed, changed = repair_syntax(code)
        assert fixed == "\\draw (0,0) -- (1,1);\n\\draw (1,1) -- (2,0);"
        assert changed

    def test_semicolon_goes_before_comment(self):
        fixed, _ = fix_missing_terminators(r"\draw (0,0) circle (1) % unit circle")
        assert fixed == r"\draw (0,0) circle (1); % unit circle"

    def test_continued_statement_untouched(self):
        code = "\\draw (0,0) --\n  (1,1);"
        assert fix_missing_terminators(code) == (code, False)

    def test_statement_continuing_on_next_line_untouched(self):
        code = "\\draw (0,0)\n  -- (1,1);"
        assert fix_missing_terminators(code) == (code, False)

    def test_unbalanced_statement_untouched(self):
        code = "\\draw[\n  thick] (0,0) -- (1,1);"
        assert fix_missing_terminators(code) == (code, False)

    def test_last_statement_on_line_checked(self):
        fixed, changed = fix_missing_terminators(r"\draw (0,0) -- (1,0); \draw (1,0) -- (1,1)")
        assert fixed == r"\draw (0,0) -- (1,0); \draw (1,0) -- (1,1);"
        assert changed

    def test_bare_node_label_wrapped(self):
        fixed, changed = fix_bare_node_labels(r"\node at (0,0) Hello world;")
        assert fixed == r"\node at (0,0) {Hello world};"
        assert changed

    def test_bare_node_label_after_options(self):
        fixed, _ = fix_bare_node_labels(r"\node[draw] $x^2$;")
        assert fixed == r"\node[draw] {$x^2$};"

    @pytest.mark.parametrize("code", [
        r"\node at (0,0) {Hello};",
        r"\node (a) at (1,1) {};",
        r"\node (a) at (1,1);",
    ])
    def test_node_with_label_untouched(self, code):
        assert fix_bare_node_labels(code) == (code, False)

    def test_bare_draw_command(self):
        fixed, changed = repair_syntax(r"\draw (0 0) circle (1cm)")
        assert fixed == r"\draw (0,0) circle (1cm);"
        assert changed

    @pytest.mark.parametrize("code", [
        r"\draw (0 0) circle (1cm)",
        "\\usetikzlibrary positioning\n\\node at (0 0) Start\n\\draw (0,0) -- (1 1) % edge",
        "\\begin{axis}\n\\addplot coordinates {(0,0) (1,1)}\n\\end{axis}",
        r"\node[draw] Label",
        FULL_DOCUMENT,
        "",
    ])
    def test_idempotent(self, code):
        once, _ = repair_syntax(code)
        twice, changed = repair_syntax(once)
        assert twice == once
        assert not changed


class TestExtractLibraryDeclarations:
    def test_collects_in_order_without_duplicates(self):
        code = (
            "\\usetikzlibrary{arrows.meta, calc}\n"
            "\\draw (0,0) -- (1,1);\n"
            "\\usetikzlibrary{calc,positioning}"
        )
        stripped, libraries = extract_library_declarations(code)
        assert libraries == ["arrows.meta", "calc", "positioning"]
        assert stripped == "\\draw (0,0) -- (1,1);"

    def test_no_declarations(self):
        code = "\\draw (0,0) -- (1,1);"
        assert extract_library_declarations(code) == (code, [])

    def test_other_blank_lines_kept(self):
        code = "\\usetikzlibrary{fit}\n\\draw (0,0) -- (1,1);\n\n\\draw (1,1) -- (2,2);"
        stripped, _ = extract_library_declarations(code)
        assert stripped == "\\draw (0,0) -- (1,1);\n\n\\draw (1,1) -- (2,2);"


class TestDetectStructure:
    @pytest.mark.parametrize("code, expected", [
        (FULL_DOCUMENT, StructureCase.AS_IS),
        ("\\begin{document}\n\\begin{tikzpicture}\n\\draw (0,0) -- (1,1);\n\\end{tikzpicture}",
         StructureCase.CLOSE_DOCUMENT),
        ("\\begin{tikzpicture}\n\\draw (0,0) -- (1,1);\n\\end{tikzpicture}", StructureCase.WRAP_DOCUMENT),
        ("\\begin{tikzpicture}\n\\draw (0,0) -- (1,1);", StructureCase.CLOSE_DRAWING),
        ("\\begin{axis}\n\\addplot {x^2};", StructureCase.CLOSE_SUB_ENVIRONMENT),
        ("\\draw (0,0) circle (1cm);", StructureCase.WRAP_BARE),
        ("\\documentclass{article}\n\\usepackage{tikz}\n\\draw (0,0) -- (1,1);", StructureCase.CLOSE_DOCUMENT),
    ])
    def test_cases(self, code, expected):
        assert detect_structure(code) == expected

    def test_commented_markers_ignored(self):
        code = "% \\begin{tikzpicture}\n\\draw (0,0) -- (1,1);"
        assert detect_structure(code) == StructureCase.WRAP_BARE

    @pytest.mark.parametrize("code", [
        "", "}}}{{{", "\\end{document}", "\\end{tikzpicture}\\end{axis}",
        "\\documentclass{article}", "%%%%", "\\begin{", "\\begin{axis}\\begin{axis}",
    ])
    def test_never_raises(self, code):
        assert isinstance(detect_structure(code), StructureCase)


class TestCompleteStructure:
    def test_close_drawing_closes_open_axis_first(self):
        code = "\\begin{tikzpicture}\n\\begin{axis}\n\\addplot {x};"
        body = complete_structure(code, StructureCase.CLOSE_DRAWING)
        assert body.endswith("\\end{axis}\n\\end{tikzpicture}\n\\end{document}")
        assert body.startswith("\\begin{document}")

    def test_close_sub_environment_wraps_tikzpicture(self):
        body = complete_structure("\\begin{axis}\n\\addplot {x};", StructureCase.CLOSE_SUB_ENVIRONMENT)
        assert body == (
            "\\begin{document}\n\\begin{tikzpicture}\n\\begin{axis}\n\\addplot {x};"
            "\n\\end{axis}\n\\end{tikzpicture}\n\\end{document}"
        )

    def test_close_document(self):
        body = complete_structure("\\begin{document}\nx", StructureCase.CLOSE_DOCUMENT)
        assert body == "\\begin{document}\nx\n\\end{document}"

    def test_header_without_body_gets_begin_document(self):
        code = "\\documentclass{article}\n\\usepackage{tikz}\n\\draw (0,0) -- (1,1);"
        body = complete_structure(code, StructureCase.CLOSE_DOCUMENT)
        assert body == (
            "\\documentclass{article}\n\\usepackage{tikz}\n\\begin{document}\n\\begin{tikzpicture}"
            "\n\\draw (0,0) -- (1,1);\n\\end{tikzpicture}\n\\end{document}"
        )

    def test_multiline_class_options_stay_in_header(self):
        code = (
            "\\documentclass[tikz,\n  border=2pt]{standalone}\n"
            "\\begin{tikzpicture}\n\\draw (0,0) -- (1,1);\n\\end{tikzpicture}\n\\end{document}"
        )
        body = complete_structure(code, StructureCase.CLOSE_DOCUMENT)
        assert body.startswith("\\documentclass[tikz,\n  border=2pt]{standalone}\n\\begin{document}\n")
        assert body.endswith("\\end{tikzpicture}\n\\end{document}")
        assert body.count("\\end{document}") == 1

    def test_as_is_untouched(self):
        assert complete_structure(FULL_DOCUMENT, StructureCase.AS_IS) == FULL_DOCUMENT


class TestEnhancePreamble:
    def test_pgfplots_added_for_axis(self):
        preamble, _ = enhance_preamble("", "\\begin{axis}\\addplot {x};\\end{axis}")
        assert "\\usepackage{tikz}" in preamble
        assert "\\usepackage{pgfplots}" in preamble
        assert "\\pgfplotsset{compat=1.18}" in preamble

    def test_existing_packages_not_duplicated(self):
        user = "\\usepackage{tikz}\n\\usepackage{pgfplots}\n\\pgfplotsset{compat=1.17}"
        preamble, _ = enhance_preamble(user, "\\addplot {x};")
        assert preamble.count("\\usepackage{pgfplots}") == 1
        assert preamble.count("\\usepackage{tikz}") == 1
        assert "compat=1.18" not in preamble

    def test_siunitx_and_amssymb(self):
        preamble, _ = enhance_preamble("\\usepackage{tikz}", "\\node {\\SI{3}{\\metre} $\\mathbb{R}$};")
        assert "\\usepackage{siunitx}" in preamble
        assert "\\usepackage{amssymb}" in preamble

    def test_detected_libraries(self):
        code = "\\node[draw, diamond] (a) {A};\n\\node[right=of a] {B};"
        preamble, detected = enhance_preamble("\\usepackage{tikz}", code)
        assert "positioning" in detected
        assert "shapes.geometric" in detected
        assert preamble.count("\\usetikzlibrary") == 1

    def test_loaded_libraries_left_out(self):
        user = "\\usepackage{tikz}\n\\usetikzlibrary{calc}"
        preamble, _ = enhance_preamble(user, "\\draw (0,0) -- (1,1);", ["calc", "fit"])
        assert preamble.endswith("\\usetikzlibrary{fit}")

    def test_plain_circle_needs_no_library(self):
        assert detect_required_libraries("\\draw (0,0) circle (1cm);") == []

    @pytest.mark.parametrize("code, library", [
        ("\\draw[-Stealth] (0,0) -- (1,0);", "arrows.meta"),
        ("\\node[state, initial] (q0) {$q_0$};", "automata"),
        ("\\node[rectangle split, rectangle split parts=2] {a};", "shapes.multipart"),
        ("\\node[fit=(a)(b)] {};", "fit"),
        ("\\draw[decorate, decoration={zigzag}] (0,0) -- (1,0);", "decorations.pathmorphing"),
        ("\\draw[decorate, decoration={brace}] (0,0) -- (1,0);", "decorations.pathreplacing"),
        ("\\path[name path=a] (0,0) -- (1,1);", "intersections"),
        ("\\begin{scope}[on background layer]\\end{scope}", "backgrounds"),
        ("\\matrix[matrix of nodes] {a \\\\};", "matrix"),
        ("\\fill[pattern=north east lines] (0,0) rectangle (1,1);", "patterns"),
    ])
    def test_library_heuristics(self, code, library):
        assert library in detect_required_libraries(code)


class TestBuildDocument:
    def test_standalone_header(self):
        text = build_document("\\begin{document}\nx\n\\end{document}", "\\usepackage{tikz}", StructureCase.WRAP_BARE)
        assert text.startswith(DOCUMENT_CLASS + "\n\\usepackage{tikz}\n")

    def test_libraries_inserted_once_before_begin_document(self):
        doc = "\\documentclass{standalone}\n\\usepackage{tikz}\n\\begin{document}\nx\n\\end{document}"
        text = build_document(doc, "", StructureCase.AS_IS, ["calc", "fit"])
        assert "\\usetikzlibrary{calc,fit}\n\\begin{document}" in text
        assert text.count("\\usetikzlibrary") == 1

    def test_library_already_in_document_not_added(self):
        text = build_document(FULL_DOCUMENT, "", StructureCase.AS_IS, ["calc"])
        assert text.count("\\usetikzlibrary") == 1


class TestDocumentPreprocessor:
    def test_bare_draw(self):
        result = DocumentPreprocessor().preprocess("\\draw (0,0) circle (1cm)", "")
        text = result.document.text
        assert text.startswith(DOCUMENT_CLASS)
        assert "\\usepackage{tikz}" in text
        assert "\\begin{tikzpicture}\n\\draw (0,0) circle (1cm);\n\\end{tikzpicture}" in text
        assert text.rstrip().endswith("\\end{document}")
        assert result.structure == StructureCase.WRAP_BARE
        assert result.document.document_structure_added
        assert result.document.syntax_fixes_applied

    def test_full_document_kept_verbatim(self):
        result = DocumentPreprocessor().preprocess(FULL_DOCUMENT, "\\usepackage{tikz}")
        assert result.structure == StructureCase.AS_IS
        assert result.document.text == FULL_DOCUMENT + "\n"
        assert result.extracted_libraries == ["calc"]
        assert result.enhanced_preamble == "\\usepackage{tikz}"
        assert not result.document.document_structure_added

    def test_class_without_begin_document(self):
        source = "\\documentclass{article}\n\\usepackage{tikz}\n\\usetikzlibrary{calc}\n\\draw (0,0) -- (1,1)"
        result = DocumentPreprocessor().preprocess(source, "")
        text = result.document.text
        assert result.structure == StructureCase.CLOSE_DOCUMENT
        assert text.startswith("\\documentclass{article}")
        assert text.count("\\documentclass") == 1
        assert text.count("\\usetikzlibrary{calc}") == 1
        assert text.index("\\usetikzlibrary{calc}") < text.index("\\begin{document}")
        assert "\\begin{tikzpicture}\n\\draw (0,0) -- (1,1);\n\\end{tikzpicture}" in text
        assert result.extracted_libraries == ["calc"]

    def test_extracted_library_moves_to_preamble_once(self):
        source = "\\usetikzlibrary{calc}\n\\draw ($(0,0)+(1,1)$) -- (2,2);"
        result = DocumentPreprocessor().preprocess(source, "\\usepackage{tikz}")
        assert result.extracted_libraries == ["calc"]
        assert result.document.text.count("\\usetikzlibrary") == 1
        assert "\\usetikzlibrary{calc}" not in result.processed_source

    def test_wrap_does_not_repair(self):
        document = DocumentPreprocessor().wrap("\\draw (0 0) -- (1 1)", "")
        assert "(0 0)" in document.text
        assert not document.syntax_fixes_applied
        assert document.document_structure_added

    def test_with_preamble_redeclares_extracted_libraries(self):
        pre = DocumentPreprocessor()
        result = pre.preprocess("\\usetikzlibrary{calc}\n\\draw (0,0) -- (1,1);", "\\usepackage{tikz}")
        document = pre.with_preamble(result, "\\usepackage{tikz}")
        assert "\\usetikzlibrary{calc}" in document.text
