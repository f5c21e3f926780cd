"""Gate condition expressions.

A condition has the form::

    [not] operand [op literal]

where ``operand`` is a path or ``len(path)``, ``op`` is one of
``== != >= <= > <`` and ``literal`` is a JSON value (single-quoted strings
are also accepted). Without an operator the operand is tested for truthiness.
"""

import json
import re
from typing import Any, NamedTuple, Optional, Tuple

from .exceptions import ConfigurationError
from .paths import lookup_path, parse_path

_CONDITION = re.compile(
    r"""^\s*
    (?P<negate>not\s+)?
    (?:len\(\s*(?P<len_path>[^()]+?)\s*\)|(?P<path>[^\s=!<>]+))
    \s*
    (?:(?P<op>==|!=|>=|<=|>|<)\s*(?P<literal>.+?))?
    \s*$""",
    re.VERBOSE,
)

_OPERATORS = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    ">=": lambda a, b: a >= b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    "<": lambda a, b: a < b,
}


class Condition(NamedTuple):
    """A parsed gate condition."""
    expression: str
    path: str
    use_len: bool
    operator: Optional[str]
    literal: Any
    negate: bool


def _parse_literal(text: str, expression: str) -> Any:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] == "'":
        return text[1:-1]
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        raise ConfigurationError(
            f"Invalid literal {text!r} in condition: {expression}",
            config_key="condition"
        )


def parse_condition(expression: str) -> Condition:
    """
    Parse a condition expression.

    Raises:
        ConfigurationError: If the expression does not match the grammar
    """
    match = _CONDITION.match(expression or "")
    if not match:
        raise ConfigurationError(f"Invalid gate condition: {expression}", config_key="condition")

    path = match.group("len_path") or match.group("path")
    parse_path(path)

    operator = match.group("op")
    literal = _parse_literal(match.group("literal"), expression) if operator else None

    return Condition(
        expression=expression.strip(),
        path=path,
        use_len=match.group("len_path") is not None,
        operator=operator,
        literal=literal,
        negate=bool(match.group("negate")),
    )


def evaluate_condition(expression: str, data: Any) -> Tuple[bool, Any]:
    """
    Evaluate a condition against ``data``.

    Returns:
        ``(passed, actual)`` where ``actual`` is the operand value compared.
        A path that does not resolve makes the condition fail with ``actual`` None.

    Raises:
        ConfigurationError: If the expression is invalid, ``len`` is applied to a
            value without a length, or the comparison types are incompatible
    """
    condition = parse_condition(expression)
    found, value = lookup_path(data, condition.path)
    if not found:
        return False, None

    if condition.use_len:
        if not isinstance(value, (list, dict, str)):
            raise ConfigurationError(
                f"len() requires a list, object or string at '{condition.path}'",
                config_key="condition"
            )
        value = len(value)

    if condition.operator is None:
        passed = bool(value)
    else:
        try:
            passed = _OPERATORS[condition.operator](value, condition.literal)
        except TypeError:
            raise ConfigurationError(
                f"Cannot compare {type(value).__name__} with {type(condition.literal).__name__} "
                f"in condition: {condition.expression}",
                config_key="condition"
            )

    if condition.negate:
        passed = not passed
    return passed, value
