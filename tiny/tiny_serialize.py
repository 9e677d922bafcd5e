from __future__ import annotations

import json
import re
from typing import Any, Optional
import collections.abc

import yaml

from tiny.tiny_datatypes import TinyInstance


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        enc = encoding or 'utf-8'
        try:
            return data.decode(enc, errors='replace')
        except LookupError:
            return data.decode('utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _encoding_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = re.search(r'charset\s*=\s*([^\s;]+)', content_type, re.IGNORECASE)
    if m:
        return m.group(1).strip('"').strip("'")
    return None


CYCLE_MARKER = "<cycle>"


def _to_builtin(obj: Any, _active: Optional[set] = None) -> Any:
    # Runtime containers (TinyDict/TinyList are Mapping/MutableSequence) become plain dicts/lists
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if _active is None:
        _active = set()
    # Only containers on the current path count; shared siblings are written twice.
    if id(obj) in _active:
        return CYCLE_MARKER
    _active.add(id(obj))
    try:
        if isinstance(obj, TinyInstance):
            return {'class': obj.klass.name, 'fields': _to_builtin(obj.fields, _active)}
        if isinstance(obj, collections.abc.Mapping):
            return {str(k): _to_builtin(v, _active) for k, v in obj.items()}
        if isinstance(obj, (list, tuple, collections.abc.MutableSequence)):
            return [_to_builtin(x, _active) for x in obj]
        return repr(obj)
    finally:
        _active.discard(id(obj))


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns a canonical format name among: 'json', 'yaml'.
    Uses Content-Type first; falls back to simple data sniffing if provided.
    """
    ct = (content_type or "").lower()
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct:
        return 'yaml'

    # Heuristics based on data
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            # Try JSON first; if it fails, YAML is a superset
            return 'json'
        if s:
            return 'yaml'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert document data (bytes/string) to plain Python structures.
    Supported fmt: 'json', 'yaml'.
    If fmt is None, uses content_type, then sniffing.
    Raises ValueError when the text is not a valid document of that format.
    """
    enc = _encoding_from_content_type(content_type)
    text = _norm_text(data, encoding=enc)
    f = (fmt or detect_format(content_type, text))
    if f == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            # Fallback to YAML if declared JSON but content is actually YAML-like
            try:
                return yaml.safe_load(text)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid JSON document: {e}") from e
    if f == 'yaml':
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML document: {e}") from e
    raise ValueError(f"Unsupported document format: {f!r}")


def serialize(value: Any,
              *,
              fmt: str,
              pretty: bool = True) -> str:
    """
    Convert a Python/TinyScript value into a textual representation.
    - fmt: 'json' | 'yaml'
    """
    f = (fmt or '').lower()
    built = _to_builtin(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
]
