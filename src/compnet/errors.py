"""
Exceptions raised by the network core.

Structural and format errors abort the whole call; soft irregularities are
logged instead (see the individual operations).
"""

from __future__ import annotations

from typing import Optional


class CompnetError(Exception):
    """Base class for all errors raised by compnet."""


class DuplicateNameError(CompnetError, ValueError):
    """Two nodes with the same name in one network."""


class UnknownNodeError(CompnetError, KeyError):
    """Lookup of a node name that is not present."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable.
        return str(self.args[0]) if self.args else ""


class GraphValidationError(CompnetError, ValueError):
    """Arity, shape or type mismatch, or an unmet structural requirement."""

    def __init__(self, message: str, node_name: Optional[str] = None) -> None:
        if node_name is not None:
            message = f"Node `{node_name}`: {message}"
        super().__init__(message)
        self.node_name = node_name


class FormatError(CompnetError, ValueError):
    """Malformed or truncated model stream."""


class UnsupportedFeatureError(FormatError):
    """A retired format feature is present with nonzero content."""


class StateError(CompnetError, RuntimeError):
    """Operation invoked in the wrong lifecycle state."""
