"""Safe lookups over parsed JSON of unknown shape.

Upstream payloads and request bodies are never trusted to have the
expected structure.  Every nested access goes through :func:`safe_get`,
which yields ``default`` as soon as a step is not an object.
"""

from __future__ import annotations

import json
from typing import Any


def is_plain_object(value: Any) -> bool:
    return isinstance(value, dict)


def is_non_empty_list(value: Any) -> bool:
    return isinstance(value, list) and len(value) > 0


def is_non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and len(value) > 0


def safe_get(obj: Any, *path: str, default: Any = None) -> Any:
    """Follow ``path`` through nested dicts.

    Returns ``default`` when any intermediate value is missing or is
    not a dict.  Lists are never indexed; callers pick elements
    themselves after checking the type.
    """
    current = obj
    for key in path:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


def dumps(data: Any) -> str:
    """Compact JSON matching what JavaScript clients put on the wire."""
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)
