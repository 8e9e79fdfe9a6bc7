"""
Identifier quoting, literal rendering and expression sanitizing.

Every caller-supplied value reaches statement text through this module:
plain values become escaped literals, raw expressions must pass a
sanitizer first.
"""

import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from ..descriptors.model import BoundSentinel, SqlExpression
from ..descriptors.sanitize import Sanitizer, default_sanitizer, needs_quoting
from ..exceptions import SynthesisError


def quote_ident(name: str) -> str:
    """Render an identifier, quoting it only when it would not parse bare."""
    if not name:
        raise SynthesisError("Empty identifier")
    if "\x00" in name:
        raise SynthesisError("Identifier contains a NUL character", {"identifier": name})
    if needs_quoting(name):
        return '"' + name.replace('"', '""') + '"'
    return name


def qualify(name: str, schema: Optional[str] = None) -> str:
    if schema:
        return f"{quote_ident(schema)}.{quote_ident(name)}"
    return quote_ident(name)


def column_list(names: Iterable[str]) -> str:
    return ", ".join(quote_ident(n) for n in names)


def quote_string(value: str) -> str:
    if "\x00" in value:
        raise SynthesisError("String literal contains a NUL character")
    return "'" + value.replace("'", "''") + "'"


def render_literal(value: Any, sanitizer: Optional[Sanitizer] = None) -> str:
    """Render a Python value as a SQL literal.

    ``SqlExpression`` values are passed through ``sanitizer`` (the
    default sanitizer when none is given) and emitted verbatim.
    """
    if value is None:
        return "NULL"
    if isinstance(value, SqlExpression):
        return (sanitizer or default_sanitizer)(value.expression)
    if isinstance(value, BoundSentinel):
        return value.value
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise SynthesisError(f"Non-finite numeric literal: {value}")
        return format(value, "f")
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise SynthesisError(f"Non-finite numeric literal: {value}")
        return repr(value)
    if isinstance(value, datetime):
        keyword = "TIMESTAMPTZ" if value.tzinfo is not None else "TIMESTAMP"
        return f"{keyword} {quote_string(value.isoformat(sep=' '))}"
    if isinstance(value, date):
        return f"DATE {quote_string(value.isoformat())}"
    if isinstance(value, str):
        return quote_string(value)
    raise SynthesisError(f"Cannot render literal of type {type(value).__name__}")

