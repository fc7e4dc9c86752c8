"""Error types raised by the reconciliation core."""

from __future__ import annotations

from typing import Any


class ValidationError(ValueError):
    """A structurally invalid input container; the caller must skip the station."""


class ParseError(ValueError):
    """A single reading could not be interpreted."""

    def __init__(self, reason: str, value: Any = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.value = value
