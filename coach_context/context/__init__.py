"""Prompt context assembly."""

from coach_context.context.engine import ContextEngine
from coach_context.context.formatter import (
    ContextTrace,
    FormattedContext,
    assemble,
    relative_time_label,
)

__all__ = [
    "ContextEngine",
    "ContextTrace",
    "FormattedContext",
    "assemble",
    "relative_time_label",
]
