"""Base dataclasses and protocols for engine access."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, ContextManager, Optional, Protocol


class Severity(str, Enum):
    """Notice severities, ordered as in PostgreSQL's client_min_messages."""

    DEBUG5 = "debug5"
    DEBUG4 = "debug4"
    DEBUG3 = "debug3"
    DEBUG2 = "debug2"
    DEBUG1 = "debug1"
    LOG = "log"
    NOTICE = "notice"
    WARNING = "warning"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @property
    def logging_level(self) -> int:
        """Python logging level used when forwarding a notice."""
        if self.rank <= Severity.DEBUG1.rank:
            return logging.DEBUG
        if self is Severity.LOG or self is Severity.NOTICE:
            return logging.INFO
        if self is Severity.WARNING:
            return logging.WARNING
        return logging.ERROR

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    @classmethod
    def parse(cls, value: str) -> "Severity":
        """Parse a severity name, accepting server prefixes like 'NOTICE:'."""
        return cls(value.strip().rstrip(":").lower())


_SEVERITY_ORDER = list(Severity)


@dataclass(frozen=True)
class SettingInfo:
    """Snapshot of one engine setting."""

    name: str
    """Setting name as known by the engine."""

    value: Optional[str]
    """Current value, or None when unavailable."""

    available: bool
    """False when the engine does not know the setting."""

    settable: bool = True
    """False when the setting exists but the session cannot change it."""

    @classmethod
    def unavailable(cls, name: str) -> "SettingInfo":
        return cls(name=name, value=None, available=False, settable=False)


class Engine(Protocol):
    """Protocol for the query/settings/notice capabilities the core consumes."""

    dialect: str
    """sqlglot dialect name used to render identifiers and literals."""

    def connect(self) -> None:
        """Open connection to the engine."""
        ...

    def close(self) -> None:
        """Close connection."""
        ...

    def execute(self, sql: str) -> list[dict[str, Any]]:
        """Execute SQL and return rows as dicts. Raises EngineQueryError."""
        ...

    def get_setting(self, name: str) -> SettingInfo:
        """Read a named engine setting."""
        ...

    def set_setting(self, name: str, value: str) -> None:
        """Set a named engine setting for the session."""
        ...

    def notice(self, severity: Severity, message: str) -> None:
        """Emit a diagnostic message at the given severity."""
        ...

    def transaction(self) -> ContextManager[None]:
        """Ambient unit of work: commit on success, rollback on failure."""
        ...


def forward_notice(source: str, severity: Severity, message: str) -> None:
    """Forward an engine notice to Python logging."""
    logging.getLogger(source).log(severity.logging_level, "%s: %s", severity.value.upper(), message)
