"""Exception taxonomy for iterctl."""

from __future__ import annotations

from typing import Optional


class IterctlError(Exception):
    """Base class for all iterctl errors."""


class ConfigPermissionError(IterctlError):
    """Raised when a required engine setting could not be changed."""

    def __init__(self, setting: str, reason: str):
        self.setting = setting
        self.reason = reason
        super().__init__(f"cannot change setting {setting!r}: {reason}")


class EngineQueryError(IterctlError):
    """Raised by engine adapters when the query capability fails.

    The driver exception is chained as ``__cause__``. Fatal to the run.
    """

    def __init__(self, message: str, sql: Optional[str] = None):
        self.sql = sql
        super().__init__(message)


class UsageError(IterctlError):
    """Raised when an operation is called outside its contract."""
