"""
Identifier rules and the default expression sanitizer.

Descriptor fields that carry free text (defaults, check expressions)
are untrusted. The validator and the synthesis engine both run them
through a sanitizer before any statement text is built.
"""

import re
from typing import Callable

from ..exceptions import UnsafeExpressionError


IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")

# Keywords PostgreSQL reserves in table and column names
RESERVED_WORDS = frozenset(
    """
    all analyse analyze and any array as asc asymmetric authorization binary both
    case cast check collate collation column concurrently constraint create cross
    current_catalog current_date current_role current_schema current_time
    current_timestamp current_user default deferrable desc distinct do else end
    except false fetch for foreign freeze from full grant group having ilike in
    initially inner intersect into is isnull join lateral leading left like limit
    localtime localtimestamp natural not notnull null offset on only or order outer
    overlaps placing primary references returning right select session_user
    similar some symmetric system_user table tablesample then to trailing true union
    unique user using variadic verbose when where window with
    """.split()
)

# Statement keywords that have no place inside a default or check expression
FORBIDDEN_KEYWORDS = frozenset(
    """
    alter call commit copy create deallocate delete do drop execute grant insert
    notify prepare revoke rollback savepoint select truncate update vacuum
    """.split()
)

Sanitizer = Callable[[str], str]


def needs_quoting(name: str) -> bool:
    """Names are case-preserving, so anything PostgreSQL would fold is quoted."""
    return (
        not IDENTIFIER_PATTERN.match(name)
        or name != name.lower()
        or name.lower() in RESERVED_WORDS
    )


def default_sanitizer(expression: str) -> str:
    """Reject expressions that could smuggle extra statements.

    Accepts function calls, operators, casts, quoted strings and quoted
    identifiers. Rejects statement separators, comments, dollar quoting,
    unbalanced quotes or parentheses and statement keywords outside
    string literals. Returns the stripped expression.
    """
    text = expression.strip() if expression else ""
    if not text:
        raise UnsafeExpressionError(expression or "", "empty expression")
    if "\x00" in text:
        raise UnsafeExpressionError(expression, "NUL character")

    depth = 0
    word = []
    i = 0
    length = len(text)

    def flush_word():
        if word:
            token = "".join(word).lower()
            word.clear()
            if token in FORBIDDEN_KEYWORDS:
                raise UnsafeExpressionError(expression, f"keyword '{token}' not allowed")

    while i < length:
        ch = text[i]
        nxt = text[i + 1] if i + 1 < length else ""

        if ch in ("'", '"'):
            if ch == "'" and "".join(word).lower() == "e":
                raise UnsafeExpressionError(expression, "escape string literal")
            flush_word()
            end = i + 1
            while True:
                end = text.find(ch, end)
                if end == -1:
                    raise UnsafeExpressionError(expression, "unterminated quote")
                if text[end - 1] == "\\":
                    raise UnsafeExpressionError(expression, "backslash-escaped quote")
                if end + 1 < length and text[end + 1] == ch:
                    end += 2
                    continue
                break
            i = end + 1
            continue

        if ch == ";":
            raise UnsafeExpressionError(expression, "statement separator")
        if ch == "-" and nxt == "-":
            raise UnsafeExpressionError(expression, "line comment")
        if ch == "/" and nxt == "*":
            raise UnsafeExpressionError(expression, "block comment")
        if ch == "$" and not word:
            raise UnsafeExpressionError(expression, "dollar quoting")

        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise UnsafeExpressionError(expression, "unbalanced parentheses")

        if ch.isalnum() or ch in "_$":
            word.append(ch)
        else:
            flush_word()
        i += 1

    flush_word()
    if depth != 0:
        raise UnsafeExpressionError(expression, "unbalanced parentheses")
    return text
