"""
A pretty-printer for Shrimpl values.
"""
import collections.abc
import json
import re

from shrimpl.shrimpl_serialize import format_number

_BARE_KEY = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class Printer:
    """Formats Shrimpl values as Shrimpl literal source text."""

    def __init__(self, indent_width=2, max_inline=72):
        self._indent_char = " " * indent_width
        self._max_inline = max_inline

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        inline = self._inline(obj)
        if len(inline) <= self._max_inline or not isinstance(obj, (list, collections.abc.Mapping)):
            return inline
        if isinstance(obj, list):
            return self._pformat_block(
                "[", "]", [self.pformat(item, level + 1) for item in obj], level)
        return self._pformat_block(
            "{", "}", [f"{self._key(k)}: {self.pformat(v, level + 1)}" for k, v in obj.items()], level)

    def short(self, obj, limit=40):
        """One-line form, truncated; used in error messages."""
        text = self._inline(obj)
        if len(text) > limit:
            return text[:limit - 3] + "..."
        return text

    def _pformat_block(self, open_, close, items, level):
        if not items:
            return open_ + close
        inner = self._indent_char * (level + 1)
        outer = self._indent_char * level
        body = ",\n".join(f"{inner}{item}" for item in items)
        return f"{open_}\n{body}\n{outer}{close}"

    def _inline(self, obj):
        # bool first: True is an int in Python
        if isinstance(obj, bool):
            return 'true' if obj else 'false'
        if isinstance(obj, (int, float)):
            return format_number(float(obj))
        if isinstance(obj, str):
            return json.dumps(obj, ensure_ascii=False)
        if isinstance(obj, list):
            return "[" + ", ".join(self._inline(x) for x in obj) + "]"
        if isinstance(obj, collections.abc.Mapping):
            return "{" + ", ".join(f"{self._key(k)}: {self._inline(v)}" for k, v in obj.items()) + "}"
        return repr(obj)

    def _key(self, key):
        key = str(key)
        if _BARE_KEY.match(key):
            return key
        return json.dumps(key, ensure_ascii=False)
