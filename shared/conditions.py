"""Minimal condition evaluator used by condition nodes and guarded edges.

Supports a single ``<left> <op> <right>`` comparison with no arbitrary code
execution. Anything that does not look like a comparison evaluates to
True; a comparison that cannot be computed evaluates to False.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping

from shared.variables import resolve

logger = logging.getLogger(__name__)

_COMPARISON_PATTERN = re.compile(r"^\s*(?P<left>.+?)\s*(?P<op>==|!=|>|<)\s*(?P<right>.+?)\s*$", re.DOTALL)
_QUOTES = ("'", '"')


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in _QUOTES:
        return value[1:-1]
    return value


def parse_comparison(expression: str) -> tuple[str, str, str] | None:
    """Split an already-resolved expression into ``(left, op, right)``."""
    match = _COMPARISON_PATTERN.match(expression)
    if match is None:
        return None
    left = _unquote(match.group("left").strip())
    right = _unquote(match.group("right").strip())
    return left, match.group("op"), right


def _compare(left: str, op: str, right: str) -> bool:
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    if op == ">":
        return float(left) > float(right)
    if op == "<":
        return float(left) < float(right)
    raise ValueError(f"Unsupported comparison operator: {op}")


def evaluate_condition(
    expression: Any,
    variables: Mapping[str, Any] | None = None,
    context: Mapping[str, Any] | None = None,
) -> bool:
    """Resolve tokens in ``expression`` and evaluate it as a comparison."""
    try:
        resolved = resolve(expression, variables or {}, context or {})
        if not isinstance(resolved, str):
            resolved = str(resolved)
        parsed = parse_comparison(resolved)
        if parsed is None:
            logger.debug("Unrecognized condition shape, defaulting to true: %r", resolved)
            return True
        left, op, right = parsed
        return _compare(left, op, right)
    except Exception as exc:
        logger.warning("Error evaluating condition %r: %s", expression, exc)
        return False
