"""Structured SQL statement building with typed bindings.

Statements are written as templates with ``{name}`` placeholders. Every
placeholder must be bound to one of three typed values:

  - Identifier: relation/column name, validated and quoted via sqlglot
  - Literal:    Python scalar, rendered as an escaped SQL literal via sqlglot
  - Fragment:   trusted SQL text supplied by the algorithm driver

Raw strings are never accepted as bindings, so a value can only reach the
statement text as an escaped identifier, an escaped literal, or an explicit
fragment.

Usage:
    tpl = SqlTemplate("SELECT ({expr}) FROM {rel} WHERE _iteration = {it}")
    sql = tpl.render(
        "postgres",
        expr=Fragment("_state > 4"),
        rel=Identifier("madlib_tmp.state"),
        it=Literal(3),
    )
"""

from __future__ import annotations

from dataclasses import dataclass
from string import Formatter
from typing import Any, Union

from sqlglot import exp

from .errors import UsageError

_MAX_NAME_PARTS = 3  # catalog.schema.table


def _split_name(name: Any) -> list[str]:
    """Split a dotted name into parts, rejecting empty or malformed names."""
    if not isinstance(name, str) or not name:
        raise UsageError(f"Invalid identifier: {name!r}")
    if "\x00" in name:
        raise UsageError("Identifier contains NUL byte")
    parts = name.split(".")
    if len(parts) > _MAX_NAME_PARTS or any(not p for p in parts):
        raise UsageError(f"Invalid identifier: {name!r}")
    return parts


@dataclass(frozen=True)
class Identifier:
    """A possibly schema-qualified engine identifier."""

    name: str

    def __post_init__(self) -> None:
        _split_name(self.name)

    @property
    def parts(self) -> list[str]:
        return _split_name(self.name)

    @property
    def unqualified(self) -> str:
        """Last part of the name (the bare relation name)."""
        return self.parts[-1]

    def render(self, dialect: str) -> str:
        return ".".join(exp.to_identifier(p).sql(dialect=dialect) for p in self.parts)


@dataclass(frozen=True)
class Literal:
    """A scalar value rendered as an escaped SQL literal."""

    value: Union[None, bool, int, float, str]

    def render(self, dialect: str) -> str:
        if self.value is not None and not isinstance(self.value, (bool, int, float, str)):
            raise UsageError(
                f"Unsupported literal type: {type(self.value).__name__}"
            )
        return exp.convert(self.value).sql(dialect=dialect)


@dataclass(frozen=True)
class Fragment:
    """Trusted SQL text spliced verbatim."""

    sql: str

    def render(self, dialect: str) -> str:
        return self.sql


class SqlTemplate:
    """SQL text with ``{name}`` placeholders bound to typed values."""

    def __init__(self, text: str):
        self.text = text
        self._parsed = list(Formatter().parse(text))
        for _, field, spec, conversion in self._parsed:
            if field is not None and (spec or conversion):
                raise UsageError(
                    f"Format specs are not supported in SQL templates: {{{field}}}"
                )

    @property
    def placeholders(self) -> set[str]:
        return {field for _, field, _, _ in self._parsed if field is not None}

    def render(self, dialect: str, **bindings: Any) -> str:
        out: list[str] = []
        for literal_text, field, _, _ in self._parsed:
            out.append(literal_text)
            if field is None:
                continue
            if field not in bindings:
                raise UsageError(f"Missing binding for placeholder {{{field}}}")
            value = bindings[field]
            if not isinstance(value, (Identifier, Literal, Fragment)):
                raise UsageError(
                    f"Binding {field!r} must be Identifier, Literal or Fragment, "
                    f"got {type(value).__name__}"
                )
            out.append(value.render(dialect))
        return "".join(out)
