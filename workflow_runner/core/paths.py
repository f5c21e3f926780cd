"""Dot/bracket path expressions over JSON values.

Grammar::

    path     := segment ( "." name | "[" index "]" | "[" quoted "]" )*
    segment  := name
    name     := [A-Za-z0-9_-]+
    index    := [0-9]+
    quoted   := '"' chars '"' | "'" chars "'"

A name made only of digits indexes into lists, so ``feeds.0.url`` and
``feeds[0].url`` are equivalent.
"""

from typing import Any, List, Tuple, Union

from .exceptions import PathSyntaxError, UnresolvedPathError

Segment = Union[str, int]

_NAME_CHARS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_-")

_MISSING = object()


def parse_path(expression: str) -> List[Segment]:
    """Split a path expression into key and index segments.

    Raises:
        PathSyntaxError: If the expression is empty or malformed
    """
    text = (expression or "").strip()
    if not text:
        raise PathSyntaxError("Path expression cannot be empty", expression=expression or "")

    segments: List[Segment] = []
    pos = 0
    expect_name = True

    while pos < len(text):
        char = text[pos]
        if expect_name:
            name, pos = _read_name(text, pos, expression)
            segments.append(name)
            expect_name = False
        elif char == ".":
            pos += 1
            if pos >= len(text):
                raise PathSyntaxError("Path cannot end with '.'", expression=expression, position=pos)
            expect_name = True
        elif char == "[":
            segment, pos = _read_bracket(text, pos + 1, expression)
            segments.append(segment)
        else:
            raise PathSyntaxError(
                f"Unexpected character {char!r}", expression=expression, position=pos
            )

    return segments


def _read_name(text: str, pos: int, expression: str) -> Tuple[str, int]:
    start = pos
    while pos < len(text) and text[pos] in _NAME_CHARS:
        pos += 1
    if pos == start:
        raise PathSyntaxError("Expected a field name", expression=expression, position=start)
    return text[start:pos], pos


def _read_bracket(text: str, pos: int, expression: str) -> Tuple[Segment, int]:
    if pos >= len(text):
        raise PathSyntaxError("Unterminated '['", expression=expression, position=pos)

    quote = text[pos]
    if quote in ("'", '"'):
        end = text.find(quote, pos + 1)
        if end == -1:
            raise PathSyntaxError("Unterminated quoted key", expression=expression, position=pos)
        key = text[pos + 1:end]
        if end + 1 >= len(text) or text[end + 1] != "]":
            raise PathSyntaxError("Expected ']' after quoted key", expression=expression, position=end + 1)
        return key, end + 2

    end = text.find("]", pos)
    if end == -1:
        raise PathSyntaxError("Unterminated '['", expression=expression, position=pos)
    index = text[pos:end].strip()
    if not index.isdigit():
        raise PathSyntaxError(
            f"Bracket index must be a non-negative integer or quoted key, got {index!r}",
            expression=expression,
            position=pos
        )
    return int(index), end + 1


def _step(value: Any, segment: Segment) -> Any:
    if isinstance(value, dict):
        key = segment if isinstance(segment, str) else str(segment)
        return value.get(key, _MISSING)
    if isinstance(value, (list, tuple)):
        if isinstance(segment, str):
            if not segment.isdigit():
                return _MISSING
            segment = int(segment)
        return value[segment] if segment < len(value) else _MISSING
    return _MISSING


def lookup_path(data: Any, expression: str) -> Tuple[bool, Any]:
    """Resolve a path, returning ``(found, value)`` instead of raising on a miss.

    Raises:
        PathSyntaxError: If the expression is malformed
    """
    value = data
    for segment in parse_path(expression):
        value = _step(value, segment)
        if value is _MISSING:
            return False, None
    return True, value


def resolve_path(data: Any, expression: str) -> Any:
    """
    Resolve a path expression against nested dicts and lists.

    Raises:
        PathSyntaxError: If the expression is malformed
        UnresolvedPathError: If any segment is missing
    """
    value = data
    for segment in parse_path(expression):
        next_value = _step(value, segment)
        if next_value is _MISSING:
            raise UnresolvedPathError(expression.strip(), segment=segment)
        value = next_value
    return value


def resolve_mapping(mapping: dict, context: Any) -> dict:
    """Evaluate every path in an input mapping against the run context."""
    return {field: resolve_path(context, expression) for field, expression in mapping.items()}
