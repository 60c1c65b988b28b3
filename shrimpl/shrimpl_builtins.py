"""
Built-in helper namespaces reachable through `Class.method(...)` calls.

Each `_<namespace>_<name>` method of `Builtins` is exposed to Shrimpl code as
`<namespace>.<name>`, e.g. `_text_upper` is `text.upper`. A user class with
the same name as a namespace hides the namespace completely.
"""

import inspect
import json
import math
from typing import Any, Callable, Dict, FrozenSet, Optional

from shrimpl.shrimpl_datatypes import ShrimplRuntimeError, finite, value_kind, values_equal, to_value
from shrimpl.shrimpl_printer import Printer
from shrimpl.shrimpl_serialize import format_number, serialize

NAMESPACES = ("text", "number", "list", "map", "json", "secret")


def _split_member(name: str):
    if not name.startswith('_') or name.startswith('__'):
        return None
    namespace, _, method = name[1:].partition('_')
    if namespace not in NAMESPACES or not method:
        return None
    return namespace, method


class Builtins:
    """Python implementations of the Shrimpl helper namespaces."""

    def __init__(self, evaluator):
        self.evaluator = evaluator
        self._printer = Printer()
        self._table: Dict[str, Dict[str, Callable]] = {ns: {} for ns in NAMESPACES}
        for name, member in inspect.getmembers(self, callable):
            parts = _split_member(name)
            if parts:
                self._table[parts[0]][parts[1]] = member

    def has_namespace(self, namespace: str) -> bool:
        return namespace in self._table

    def lookup(self, namespace: str, method: str) -> Optional[Callable]:
        return self._table.get(namespace, {}).get(method)

    def call(self, namespace: str, method: str, args: list, line: Optional[int] = None) -> Any:
        fn = self.lookup(namespace, method)
        if fn is None:
            if namespace in self._table:
                raise ShrimplRuntimeError(f"Unknown helper '{namespace}.{method}'", line)
            raise ShrimplRuntimeError(f"Unknown class '{namespace}'", line)
        try:
            inspect.signature(fn).bind(*args)
        except TypeError:
            expected = len(inspect.signature(fn).parameters)
            raise ShrimplRuntimeError(
                f"{namespace}.{method} expects {expected} argument(s), got {len(args)}", line) from None
        try:
            return fn(*args)
        except ShrimplRuntimeError as e:
            if e.line is None:
                e.line = line
            raise

    # --- argument checks ---
    def _expect(self, kind: str, value: Any, where: str) -> Any:
        if value_kind(value) != kind:
            raise ShrimplRuntimeError(
                f"{where} expects {kind}, got {value_kind(value)} {self._printer.short(value)}")
        return value

    def _expect_index(self, value: Any, where: str) -> int:
        self._expect("Number", value, where)
        if not float(value).is_integer():
            raise ShrimplRuntimeError(f"{where} expects a whole Number, got {format_number(value)}")
        return int(value)

    # --- text ---
    def _text_of(self, v):
        if isinstance(v, str):
            return v
        if isinstance(v, bool):
            return 'true' if v else 'false'
        if isinstance(v, (int, float)):
            return format_number(float(v))
        return serialize(v)

    def _text_len(self, s):
        return float(len(self._expect("Text", s, "text.len")))

    def _text_upper(self, s): return self._expect("Text", s, "text.upper").upper()
    def _text_lower(self, s): return self._expect("Text", s, "text.lower").lower()
    def _text_trim(self, s): return self._expect("Text", s, "text.trim").strip()

    def _text_contains(self, s, part):
        return self._expect("Text", part, "text.contains") in self._expect("Text", s, "text.contains")

    def _text_split(self, s, sep):
        self._expect("Text", s, "text.split")
        if not self._expect("Text", sep, "text.split"):
            raise ShrimplRuntimeError("text.split separator must not be empty")
        return s.split(sep)

    def _text_join(self, items, sep):
        self._expect("List", items, "text.join")
        self._expect("Text", sep, "text.join")
        return sep.join(self._text_of(x) for x in items)

    def _text_replace(self, s, old, new):
        self._expect("Text", s, "text.replace")
        if not self._expect("Text", old, "text.replace"):
            raise ShrimplRuntimeError("text.replace pattern must not be empty")
        return s.replace(old, self._expect("Text", new, "text.replace"))

    # --- number ---
    def _number_parse(self, v):
        if value_kind(v) == "Number":
            return float(v)
        self._expect("Text", v, "number.parse")
        try:
            result = float(v.strip())
        except ValueError:
            raise ShrimplRuntimeError(f"Cannot parse {json.dumps(v)} as a Number") from None
        if not math.isfinite(result):
            raise ShrimplRuntimeError(f"Cannot parse {json.dumps(v)} as a Number")
        return result

    def _number_floor(self, n): return float(math.floor(self._expect("Number", n, "number.floor")))

    def _number_round(self, n):
        # halves round away from zero
        n = self._expect("Number", n, "number.round")
        return float(math.copysign(math.floor(abs(n) + 0.5), n))

    def _number_abs(self, n): return float(abs(self._expect("Number", n, "number.abs")))

    def _number_min(self, a, b):
        return float(min(self._expect("Number", a, "number.min"), self._expect("Number", b, "number.min")))

    def _number_max(self, a, b):
        return float(max(self._expect("Number", a, "number.max"), self._expect("Number", b, "number.max")))

    # --- list ---
    def _list_len(self, xs): return float(len(self._expect("List", xs, "list.len")))

    def _list_get(self, xs, i):
        self._expect("List", xs, "list.get")
        idx = self._expect_index(i, "list.get")
        if not 0 <= idx < len(xs):
            raise ShrimplRuntimeError(f"list.get index {idx} out of range for List of length {len(xs)}")
        return xs[idx]

    def _list_push(self, xs, v): return list(self._expect("List", xs, "list.push")) + [v]

    def _list_concat(self, xs, ys):
        return list(self._expect("List", xs, "list.concat")) + list(self._expect("List", ys, "list.concat"))

    def _list_contains(self, xs, v):
        return any(values_equal(x, v) for x in self._expect("List", xs, "list.contains"))

    def _list_range(self, n):
        count = self._expect_index(n, "list.range")
        if count < 0:
            raise ShrimplRuntimeError(f"list.range expects a non-negative Number, got {count}")
        if count > self.evaluator.max_repeat:
            raise ShrimplRuntimeError(f"list.range({count}) exceeds the limit of {self.evaluator.max_repeat}")
        return [float(i) for i in range(count)]

    def _list_sum(self, xs):
        total = 0.0
        for x in self._expect("List", xs, "list.sum"):
            total += self._expect("Number", x, "list.sum")
        return finite(total)

    # --- map ---
    def _map_get(self, m, k):
        self._expect("Map", m, "map.get")
        if self._expect("Text", k, "map.get") not in m:
            raise ShrimplRuntimeError(f"Map has no key {json.dumps(k)}")
        return m[k]

    def _map_get_or(self, m, k, default):
        return self._expect("Map", m, "map.get_or").get(self._expect("Text", k, "map.get_or"), default)

    def _map_has(self, m, k):
        return self._expect("Text", k, "map.has") in self._expect("Map", m, "map.has")

    def _map_keys(self, m): return list(self._expect("Map", m, "map.keys").keys())
    def _map_values(self, m): return list(self._expect("Map", m, "map.values").values())

    def _map_set(self, m, k, v):
        result = dict(self._expect("Map", m, "map.set"))
        result[self._expect("Text", k, "map.set")] = v
        return result

    def _map_merge(self, a, b):
        result = dict(self._expect("Map", a, "map.merge"))
        result.update(self._expect("Map", b, "map.merge"))
        return result

    # --- json ---
    def _json_encode(self, v): return serialize(v)

    def _json_decode(self, s):
        self._expect("Text", s, "json.decode")
        try:
            return to_value(json.loads(s))
        except ValueError as e:
            raise ShrimplRuntimeError(f"Invalid JSON: {e}") from None

    # --- secret ---
    def _secret_get(self, name):
        self._expect("Text", name, "secret.get")
        return self.evaluator.resolve_secret(name)

    def _secret_has(self, name):
        self._expect("Text", name, "secret.has")
        return self.evaluator.secret_available(name)


def _namespace_table() -> Dict[str, FrozenSet[str]]:
    table: Dict[str, set] = {ns: set() for ns in NAMESPACES}
    for name, _ in inspect.getmembers(Builtins, inspect.isfunction):
        parts = _split_member(name)
        if parts:
            table[parts[0]].add(parts[1])
    return {ns: frozenset(methods) for ns, methods in table.items()}


# Namespace -> helper names; used by the checker without an evaluator.
BUILTIN_NAMESPACES = _namespace_table()
