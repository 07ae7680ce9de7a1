"""Template token substitution for node configuration.

Tokens use the ``{{name}}`` form. ``{{context.name}}`` reads from the
read-only invocation context, anything else reads from the execution
variables. Unknown tokens are left untouched.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

_TOKEN_PATTERN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")
_MISSING = object()


def _lookup_path(source: Mapping[str, Any] | None, path: str) -> Any:
    if not isinstance(source, Mapping):
        return _MISSING
    if path in source:
        return source[path]

    current: Any = source
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def lookup_token(token: str, variables: Mapping[str, Any] | None, context: Mapping[str, Any] | None) -> Any:
    """Return the raw value behind a token, or None when it cannot be resolved."""
    key = token.strip()
    if key.startswith("context."):
        value = _lookup_path(context, key.removeprefix("context."))
    else:
        value = _lookup_path(variables, key)
    if value is _MISSING:
        return None
    return value


def resolve(text: Any, variables: Mapping[str, Any] | None, context: Mapping[str, Any] | None) -> Any:
    """Substitute ``{{token}}`` occurrences in ``text``.

    Non-string input is returned unchanged. A token whose value is missing
    (or None) is kept verbatim so the caller can see what did not resolve.
    """
    if not isinstance(text, str):
        return text

    def _replace(match: re.Match[str]) -> str:
        try:
            value = lookup_token(match.group(1), variables, context)
        except Exception:
            return match.group(0)
        if value is None:
            return match.group(0)
        return _format_value(value)

    return _TOKEN_PATTERN.sub(_replace, text)


def resolve_value(value: Any, variables: Mapping[str, Any] | None, context: Mapping[str, Any] | None) -> Any:
    """Apply :func:`resolve` to every string inside nested dicts/lists."""
    if isinstance(value, dict):
        return {key: resolve_value(item, variables, context) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, variables, context) for item in value]
    return resolve(value, variables, context)
