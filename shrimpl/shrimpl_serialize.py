from __future__ import annotations

import json
import re
from typing import Any, Optional

import yaml

from shrimpl.shrimpl_datatypes import to_builtin


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


def format_number(value: float) -> str:
    """Renders a Number the way Shrimpl prints it: 3.0 -> '3', 2.5 -> '2.5'."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return repr(value)


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns a canonical format name among: 'json', 'yaml'.
    Uses Content-Type first; falls back to simple data sniffing if provided.
    """
    ct = (content_type or "").lower()
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct or 'x-yaml' in ct:
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
                content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert wire data (bytes/string) to native Python structures.
    Supported fmt: 'json', 'yaml'.
    If fmt is None, uses content_type, then sniffing.
    Returns dict/list/scalars for structured formats; returns raw text otherwise
    or when the declared format does not parse.
    """
    enc = _encoding_from_content_type(content_type)
    text = _norm_text(data, encoding=enc)
    f = (fmt or detect_format(content_type, text))
    if f == 'json':
        try:
            return json.loads(text)
        except ValueError:
            return text
    if f == 'yaml':
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError:
            return text
    return text


def serialize(value: Any, *, fmt: str = 'json', pretty: bool = False) -> str:
    """
    Convert a Shrimpl value (or plain data) into text.
    - fmt: 'json' | 'yaml'
    Integral Numbers are written without a fractional part.
    """
    f = (fmt or '').lower()
    built = to_builtin(value)
    if f == 'json':
        if pretty:
            return json.dumps(built, ensure_ascii=False, indent=2)
        return json.dumps(built, ensure_ascii=False, separators=(',', ':'))
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "format_number",
]
