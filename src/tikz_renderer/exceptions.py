"""Exceptions raised across the render pipeline."""

from __future__ import annotations

from .models import ErrorRecord


class RenderError(Exception):
    """
    Exception raised when a render fails.

    Attributes:
        record: Classified failure carried to the caller
    """

    def __init__(self, record: ErrorRecord):
        self.record = record
        super().__init__(record.message)

    @property
    def html(self) -> str:
        from .tools.error_classifier import format_error_html
        return format_error_html(self.record)

    def __str__(self) -> str:
        if self.record.line is not None:
            return f"{self.record.message} (line {self.record.line})"
        return self.record.message
