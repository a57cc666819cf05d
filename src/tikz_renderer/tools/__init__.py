"""Deterministic tools for TikZ normalization, compilation, and error classification."""

from .error_classifier import classify, format_error, format_error_html, suggest_libraries
from .preprocessor import DocumentPreprocessor, detect_structure, repair_syntax

__all__ = [
    "DocumentPreprocessor",
    "classify",
    "detect_structure",
    "format_error",
    "format_error_html",
    "repair_syntax",
    "suggest_libraries",
]
