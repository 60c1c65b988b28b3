import pytest

from shrimpl.shrimpl_builtins import BUILTIN_NAMESPACES
from shrimpl.shrimpl_runtime import ShrimplRunner


async def run_expr(src: str, program_src: str = "", *, secrets=None, bindings=None):
    values = dict(secrets or {})
    runner = ShrimplRunner(secret_resolver=values.get)
    program = runner.load_text(program_src) if program_src else None
    return await runner.evaluate_source(src, program, bindings)


def assert_ok(res, expected=None):
    assert res.status == 'success', f"Expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert res.value == expected, f"Expected {expected!r}, got {res.value!r}"


def assert_error(res, contains: str | None = None):
    assert res.status == 'error', f"Expected error, got success: {res.value!r}"
    if contains is not None:
        assert contains in (res.error_message or ""), f"error did not contain {contains!r}: {res.error_message!r}"


@pytest.mark.asyncio
@pytest.mark.parametrize("src, expected", [
    ("text.of(3)", "3"),
    ("text.of(2.5)", "2.5"),
    ("text.of(true)", "true"),
    ('text.of([1, "a"])', '[1,"a"]'),
    ('text.len("abc")', 3.0),
    ('text.upper("abc")', "ABC"),
    ('text.lower("AbC")', "abc"),
    ('text.trim("  x  ")', "x"),
    ('text.contains("hello", "ell")', True),
    ('text.split("a,b,,c", ",")', ["a", "b", "", "c"]),
    ('text.join(["a", 1, true], "-")', "a-1-true"),
    ('text.replace("a-b-c", "-", "+")', "a+b+c"),
])
async def test_text_helpers(src, expected):
    assert_ok(await run_expr(src), expected)


@pytest.mark.asyncio
@pytest.mark.parametrize("src, expected", [
    ('number.parse(" 42 ")', 42.0),
    ('number.parse("-1.5")', -1.5),
    ("number.parse(7)", 7.0),
    ("number.floor(2.9)", 2.0),
    ("number.round(2.5)", 3.0),
    ("number.round(-2.5)", -3.0),
    ("number.round(2.4)", 2.0),
    ("number.abs(-4)", 4.0),
    ("number.min(3, 1)", 1.0),
    ("number.max(3, 1)", 3.0),
])
async def test_number_helpers(src, expected):
    assert_ok(await run_expr(src), expected)


@pytest.mark.asyncio
@pytest.mark.parametrize("src, expected", [
    ("list.len([1, 2, 3])", 3.0),
    ('list.get(["a", "b"], 1)', "b"),
    ("list.push([1], 2)", [1.0, 2.0]),
    ("list.concat([1], [2, 3])", [1.0, 2.0, 3.0]),
    ("list.contains([[1], 2], [1])", True),
    ("list.contains([1], true)", False),
    ("list.range(3)", [0.0, 1.0, 2.0]),
    ("list.sum([1, 2, 3.5])", 6.5),
])
async def test_list_helpers(src, expected):
    assert_ok(await run_expr(src), expected)


@pytest.mark.asyncio
@pytest.mark.parametrize("src, expected", [
    ('map.get({a: 1}, "a")', 1.0),
    ('map.get_or({a: 1}, "b", 0)', 0.0),
    ('map.has({a: 1}, "a")', True),
    ("map.keys({a: 1, b: 2})", ["a", "b"]),
    ("map.values({a: 1, b: 2})", [1.0, 2.0]),
    ('map.set({a: 1}, "b", 2)', {"a": 1.0, "b": 2.0}),
    ("map.merge({a: 1, b: 1}, {b: 2})", {"a": 1.0, "b": 2.0}),
])
async def test_map_helpers(src, expected):
    assert_ok(await run_expr(src), expected)


@pytest.mark.asyncio
async def test_helpers_do_not_alias_inputs():
    res = await run_expr('[list.push(xs, 3), map.set(m, "k", 2), xs, m]',
                         bindings={"xs": [1.0], "m": {"k": 1.0}})
    assert_ok(res, [[1.0, 3.0], {"k": 2.0}, [1.0], {"k": 1.0}])


@pytest.mark.asyncio
async def test_json_helpers():
    assert_ok(await run_expr('json.encode({a: 1, b: [true, "x", 1.5]})'), '{"a":1,"b":[true,"x",1.5]}')
    assert_ok(await run_expr('json.decode("{\\"a\\": [1, null]}")'), {"a": [1.0, ""]})
    assert_error(await run_expr('json.decode("{oops")'), "Invalid JSON")


@pytest.mark.asyncio
@pytest.mark.parametrize("doc", ["NaN", "[1e400]", '{"x": -Infinity}', "1" + "0" * 400])
async def test_json_decode_rejects_numbers_out_of_range(doc):
    assert_error(await run_expr("json.decode(doc)", bindings={"doc": doc}), "Number out of range")
    res = await run_expr('try: json.decode(doc)\ncatch e: "caught: " + e', bindings={"doc": doc})
    assert_ok(res, "caught: Number out of range")


@pytest.mark.asyncio
async def test_list_sum_overflow_is_an_error():
    assert_error(await run_expr("list.sum([big, big])", bindings={"big": 1e308}), "Number out of range")


@pytest.mark.asyncio
async def test_secret_helpers():
    program = 'secret TOKEN = "SHRIMPL_TOKEN"\nsecret OTHER = "UNSET"\n'
    secrets = {"SHRIMPL_TOKEN": "abc"}
    assert_ok(await run_expr('secret.get("TOKEN")', program, secrets=secrets), "abc")
    assert_ok(await run_expr('[secret.has("TOKEN"), secret.has("OTHER"), secret.has("NOPE")]',
                             program, secrets=secrets), [True, False, False])
    assert_error(await run_expr('secret.get("OTHER")', program, secrets=secrets), "Secret 'OTHER' is not set")
    assert_error(await run_expr('secret.get("NOPE")', program, secrets=secrets), "Unknown secret 'NOPE'")


@pytest.mark.asyncio
@pytest.mark.parametrize("src, message", [
    ('text.upper("a", "b")', "text.upper expects 1 argument(s), got 2"),
    ("text.upper(1)", "text.upper expects Text, got Number 1"),
    ('text.nope("a")', "Unknown helper 'text.nope'"),
    ('number.parse("abc")', 'Cannot parse "abc" as a Number'),
    ("number.parse(true)", "number.parse expects Text, got Boolean"),
    ("list.get([1], 1)", "out of range"),
    ("list.get([1], 0.5)", "whole Number"),
    ("list.range(-1)", "non-negative"),
    ('list.sum([1, "2"])', "list.sum expects Number"),
    ('map.get({a: 1}, "b")', 'Map has no key "b"'),
    ('text.split("abc", "")', "must not be empty"),
])
async def test_helper_errors(src, message):
    assert_error(await run_expr(src), message)


@pytest.mark.asyncio
async def test_helper_errors_are_catchable():
    assert_ok(await run_expr('try: number.parse("x")\ncatch e: "bad"'), "bad")


def test_namespace_table():
    assert set(BUILTIN_NAMESPACES) == {"text", "number", "list", "map", "json", "secret"}
    assert "get_or" in BUILTIN_NAMESPACES["map"]
    assert "upper" in BUILTIN_NAMESPACES["text"]
    assert "expect" not in BUILTIN_NAMESPACES["text"]
