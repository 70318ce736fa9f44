"""
Minimal SCIM filter support.

Grammar: ``attribute operator "value"`` or ``attribute pr``, where the
operator is one of eq, ne, co, sw, ew, gt, ge, lt, le. ``true``, ``false``
and ``null`` may appear unquoted. Anything else is rejected with
``invalidFilter``; a filter is never silently dropped.
"""

import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from src.scim.types import SCIMError

COMPARISON_OPERATORS = ("eq", "ne", "co", "sw", "ew", "gt", "ge", "lt", "le")

_ATTRIBUTE = r"[A-Za-z][\w$-]*(?:\.[A-Za-z][\w$-]*)?(?:\[[^\]]*\])?(?:\.[A-Za-z][\w$-]*)?"

_COMPARISON_RE = re.compile(
    rf'^\s*({_ATTRIBUTE})\s+({"|".join(COMPARISON_OPERATORS)})\s+'
    r'(?:"((?:[^"\\]|\\.)*)"|(true|false|null))\s*$',
    re.IGNORECASE,
)
_PRESENT_RE = re.compile(rf"^\s*({_ATTRIBUTE})\s+pr\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class SCIMFilter:
    attribute: str
    operator: str
    value: Optional[str] = None  # None for pr and the null literal


def _invalid(detail: str) -> SCIMError:
    return SCIMError(400, detail, "invalidFilter")


def parse_filter(expression: Optional[str]) -> Optional[SCIMFilter]:
    """
    Parse a filter expression.

    Returns:
        None for an absent or blank filter, otherwise the parsed filter
        with a lower-cased attribute and operator

    Raises:
        SCIMError: invalidFilter for anything outside the grammar
    """
    if expression is None or not expression.strip():
        return None

    present = _PRESENT_RE.match(expression)
    if present:
        return SCIMFilter(attribute=present.group(1).lower(), operator="pr")

    match = _COMPARISON_RE.match(expression)
    if not match:
        raise _invalid(f"Unsupported filter expression: {expression}")

    attribute, operator, quoted, literal = match.groups()
    value: Optional[str]
    if quoted is not None:
        value = re.sub(r"\\(.)", r"\1", quoted)
    elif literal.lower() == "null":
        value = None
    else:
        value = literal.lower()

    return SCIMFilter(attribute=attribute.lower(), operator=operator.lower(), value=value)


def _normalize(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).lower()


def _compare(candidate: Optional[str], operator: str, expected: Optional[str]) -> bool:
    if operator == "eq":
        return candidate == expected
    if operator == "ne":
        return candidate != expected
    if candidate is None or expected is None:
        return False
    if operator == "co":
        return expected in candidate
    if operator == "sw":
        return candidate.startswith(expected)
    if operator == "ew":
        return candidate.endswith(expected)
    if operator == "gt":
        return candidate > expected
    if operator == "ge":
        return candidate >= expected
    if operator == "lt":
        return candidate < expected
    if operator == "le":
        return candidate <= expected
    raise _invalid(f"Unsupported filter operator: {operator}")


def matches(scim_filter: SCIMFilter, values: Iterable[Any]) -> bool:
    """
    Evaluate a filter against an attribute's values.

    Multi-valued attributes match when any value matches; ``ne`` requires
    that no value equals the operand. String comparison is case-insensitive.
    """
    normalized = [_normalize(v) for v in values]
    present = [v for v in normalized if v not in (None, "")]

    if scim_filter.operator == "pr":
        return bool(present)

    expected = _normalize(scim_filter.value)
    if scim_filter.operator == "ne":
        return all(_compare(v, "ne", expected) for v in normalized or [None])
    return any(_compare(v, scim_filter.operator, expected) for v in normalized or [None])
