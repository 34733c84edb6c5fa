"""
snake_case <-> camelCase conversion for rows and API payloads.

Only dict keys are rewritten; values are walked recursively through dicts,
lists and tuples. Anything else (None included) is returned unchanged.
"""

from __future__ import annotations

import re
from typing import Any, Callable

_SNAKE_PART = re.compile(r"_([a-z])")
_UPPER = re.compile(r"[A-Z]")


def camel_key(key: str) -> str:
    return _SNAKE_PART.sub(lambda m: m.group(1).upper(), key)


def snake_key(key: str) -> str:
    return _UPPER.sub(lambda m: "_" + m.group(0).lower(), key)


def _convert(value: Any, fn: Callable[[str], str]) -> Any:
    if isinstance(value, dict):
        return {
            (fn(k) if isinstance(k, str) else k): _convert(v, fn) for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_convert(v, fn) for v in value]
    return value


def to_camel_case(value: Any) -> Any:
    return _convert(value, camel_key)


def to_snake_case(value: Any) -> Any:
    return _convert(value, snake_key)
