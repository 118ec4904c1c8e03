from __future__ import annotations

import json
import math
import collections.abc
from typing import Any, Optional

import yaml

from buddyscript.buddy_datatypes import is_callable


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        return data.decode(encoding or 'utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _to_builtin(obj: Any) -> Any:
    """
    Converts a script value to plain json/yaml data. Functions are dropped
    from objects and become null inside arrays; non-finite numbers become
    null; integral floats become ints.
    """
    if isinstance(obj, bool) or obj is None or isinstance(obj, (str, int)):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            return None
        return int(obj) if obj.is_integer() else obj
    if isinstance(obj, (list, tuple)):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {str(k): _to_builtin(v) for k, v in obj.items() if not is_callable(v)}
    if is_callable(obj):
        return None
    return str(obj)


def detect_format(path: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns 'json' or 'yaml' from a file name suffix, falling back to simple
    sniffing of the data when given.
    """
    p = (path or "").lower()
    if p.endswith('.json'):
        return 'json'
    if p.endswith(('.yaml', '.yml')):
        return 'yaml'
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                fmt: Optional[str] = None,
                path: Optional[str] = None) -> Any:
    """
    Convert text to native structures. Supported fmt: 'json', 'yaml'.
    Without a format the file suffix, then sniffing, decides; unknown formats
    return the text unchanged. Malformed input raises ValueError.
    """
    text = _norm_text(data)
    f = fmt or detect_format(path, text)
    if f == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON: {e.msg} (line {e.lineno}, col {e.colno})") from e
    if f == 'yaml':
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML: {e}") from e
    return text


def serialize(value: Any,
              *,
              fmt: str,
              indent: Optional[int] = 2) -> str:
    """
    Convert a native value into text.
    - fmt: 'json' | 'yaml'
    - indent: JSON indentation; None gives compact output
    """
    f = (fmt or '').lower()
    built = _to_builtin(value)
    if f == 'json':
        if indent:
            return json.dumps(built, ensure_ascii=False, indent=indent)
        return json.dumps(built, ensure_ascii=False, separators=(',', ':'))
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
]
