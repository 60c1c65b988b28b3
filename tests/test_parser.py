import pytest

from shrimpl.shrimpl_datatypes import (
    Number, Str, Bool, Var, ListExpr, MapExpr, Binary, Call, MethodCall, If, Repeat, Try,
    BinOp, Method, JsonRaw, TextExpr, ServerDecl, ShrimplSyntaxError,
)
from shrimpl.shrimpl_parser import parse_program


def body_of(src: str):
    """Parses `func f(): <src>` and returns the body expression."""
    return parse_program(f"func f(): {src}\n").functions["f"].body


def test_empty_program_defaults():
    program = parse_program("")
    assert program.server == ServerDecl(port=3000, tls=False)
    assert program.endpoints == ()
    assert program.functions == {}


def test_server_declaration():
    program = parse_program("server 8443 tls\n")
    assert program.server == ServerDecl(port=8443, tls=True)


def test_last_server_declaration_wins():
    program = parse_program("server 8080 tls\nserver 9090\n")
    assert program.server == ServerDecl(port=9090, tls=False)


@pytest.mark.parametrize("src", ["server 70000\n", "server 80.5\n"])
def test_invalid_port_is_rejected(src):
    with pytest.raises(ShrimplSyntaxError) as exc:
        parse_program(src)
    assert exc.value.line == 1


def test_endpoint_with_text_body():
    program = parse_program('endpoint GET "/health": "ok"\n')
    (endpoint,) = program.endpoints
    assert endpoint.method is Method.GET
    assert endpoint.path == "/health"
    assert endpoint.body == TextExpr(Str("ok"))
    assert endpoint.line == 1


def test_json_body_is_kept_verbatim():
    program = parse_program('endpoint GET "/static": json {"ok": true,  "n": [1, 2]}   # cached\n')
    assert program.endpoints[0].body == JsonRaw('{"ok": true,  "n": [1, 2]}')


def test_json_body_on_indented_line():
    src = 'endpoint POST "/cfg":\n    json [1, 2, 3]\n'
    assert parse_program(src).endpoints[0].body == JsonRaw("[1, 2, 3]")


def test_invalid_json_body_is_a_syntax_error():
    with pytest.raises(ShrimplSyntaxError, match="Invalid JSON"):
        parse_program('endpoint GET "/bad": json {"ok": }\n')


def test_json_body_spanning_lines():
    src = (
        'endpoint GET "/static": json {\n'
        '  "ok": true,\n'
        '\n'
        '  "tags": ["a", "b"]\n'
        '}  # cached\n'
        'endpoint GET "/after": "x"\n'
    )
    program = parse_program(src)
    assert program.endpoints[0].body == JsonRaw('{\n  "ok": true,\n\n  "tags": ["a", "b"]\n}')
    assert program.endpoints[1].path == "/after"
    assert program.endpoints[1].line == 6


@pytest.mark.parametrize("doc", ["NaN", "[1, Infinity]", '{"x": -Infinity}'])
def test_json_body_rejects_non_finite_constants(doc):
    with pytest.raises(ShrimplSyntaxError, match="not valid JSON"):
        parse_program(f'endpoint GET "/bad": json [{doc}]\n')


def test_number_literal_out_of_range():
    with pytest.raises(ShrimplSyntaxError, match="out of range") as exc:
        parse_program("func f():\n    1" + "0" * 400 + "\n")
    assert exc.value.line == 2


def test_secret_declaration():
    program = parse_program('secret API = "SHRIMPL_API_KEY"\n')
    assert program.secrets[0].name == "API"
    assert program.secrets[0].key == "SHRIMPL_API_KEY"


def test_functions_and_classes():
    src = (
        "func add(a, b): a + b\n"
        "class Math:\n"
        "    double(x): x * 2\n"
        "    square(x):\n"
        "        x * x\n"
        'endpoint GET "/sum": add(1, Math.double(2))\n'
    )
    program = parse_program(src)
    assert program.functions["add"].params == ("a", "b")
    assert set(program.classes["Math"].methods) == {"double", "square"}
    assert program.classes["Math"].methods["square"].body == Binary(Var("x"), BinOp.MUL, Var("x"))
    assert program.endpoints[0].body.expr == Call(
        "add", (Number(1.0), MethodCall("Math", "double", (Number(2.0),))))


def test_last_function_wins_but_declarations_keep_both():
    program = parse_program("func f(): 1\nfunc f(): 2\n")
    assert program.functions["f"].body == Number(2.0)
    assert [d.name for d in program.declarations] == ["f", "f"]


def test_duplicate_parameter_names_are_rejected():
    with pytest.raises(ShrimplSyntaxError, match="Duplicate parameter") as exc:
        parse_program("func ok(): 1\nfunc f(a, a): a\n")
    assert exc.value.line == 2


def test_precedence_and_associativity():
    assert body_of("1 + 2 * 3") == Binary(Number(1.0), BinOp.ADD, Binary(Number(2.0), BinOp.MUL, Number(3.0)))
    assert body_of("10 - 3 - 2") == Binary(Binary(Number(10.0), BinOp.SUB, Number(3.0)), BinOp.SUB, Number(2.0))
    assert body_of("(1 + 2) * 3") == Binary(Binary(Number(1.0), BinOp.ADD, Number(2.0)), BinOp.MUL, Number(3.0))


def test_logical_operators_bind_loosest():
    expected = Binary(
        Binary(Binary(Var("a"), BinOp.LT, Var("b")), BinOp.AND, Binary(Var("c"), BinOp.EQ, Var("d"))),
        BinOp.OR,
        Var("e"),
    )
    assert body_of("a < b and c == d or e") == expected


def test_unary_minus_is_zero_minus():
    assert body_of("-5") == Binary(Number(0.0), BinOp.SUB, Number(5.0))
    assert body_of("2 * -x") == Binary(Number(2.0), BinOp.MUL, Binary(Number(0.0), BinOp.SUB, Var("x")))


def test_literals():
    assert body_of("true") == Bool(True)
    assert body_of("3.75") == Number(3.75)
    assert body_of(r'"tab\there \"q\" é"') == Str('tab\there "q" é')
    assert body_of('[1, "a", [],]') == ListExpr((Number(1.0), Str("a"), ListExpr(())))


def test_map_keys_normalize_and_duplicates_are_kept():
    expr = body_of('{a: 1, "a": 2, "two words": 3,}')
    assert expr == MapExpr((("a", Number(1.0)), ("a", Number(2.0)), ("two words", Number(3.0))))


def test_newlines_inside_brackets_are_ignored():
    src = "func f():\n    add(\n        1,\n        2\n    )\nfunc add(a, b): a + b\n"
    assert parse_program(src).functions["f"].body == Call("add", (Number(1.0), Number(2.0)))


def test_if_elif_else():
    src = (
        "func sign(x):\n"
        "    if x > 0: \"positive\"\n"
        "    elif x == 0: \"zero\"\n"
        "    else:\n"
        "        \"negative\"\n"
    )
    expr = parse_program(src).functions["sign"].body
    assert isinstance(expr, If)
    assert [cond for cond, _ in expr.branches] == [
        Binary(Var("x"), BinOp.GT, Number(0.0)),
        Binary(Var("x"), BinOp.EQ, Number(0.0)),
    ]
    assert expr.else_branch == Str("negative")


def test_repeat_and_try():
    src = (
        'endpoint POST "/r":\n'
        "    try:\n"
        "        repeat n times: \"*\"\n"
        "    catch err:\n"
        "        \"failed: \" + err\n"
        "    finally: 0\n"
    )
    expr = parse_program(src).endpoints[0].body.expr
    assert expr == Try(
        Repeat(Var("n"), Str("*")),
        "err",
        Binary(Str("failed: "), BinOp.ADD, Var("err")),
        Number(0.0),
    )


def test_catch_without_variable():
    program = parse_program("func g():\n    try: 1 / 0\n    catch: \"x\"\n")
    assert program.functions["g"].body.catch_var is None
    assert program.functions["g"].body.catch_body == Str("x")


def test_comments_and_blank_lines():
    src = (
        "# leading comment\n"
        "\n"
        "server 4000  # port\n"
        "func f(x):\n"
        "    # explain\n"
        "\n"
        "    x + 1\n"
    )
    program = parse_program(src)
    assert program.server.port == 4000
    assert program.functions["f"].body == Binary(Var("x"), BinOp.ADD, Number(1.0))


def test_parsing_is_deterministic():
    src = 'func f(a): {k: [a, 1]}\nendpoint GET "/x": f(2)\n'
    assert parse_program(src) == parse_program(src)


def test_syntax_error_has_position_and_context():
    with pytest.raises(ShrimplSyntaxError) as exc:
        parse_program('endpoint GET "/x": 1 +\n')
    err = exc.value
    assert err.line == 1
    assert "line 1" in str(err)
    assert "^" in str(err)


def test_unknown_character():
    with pytest.raises(ShrimplSyntaxError, match="Unexpected character"):
        parse_program('endpoint GET "/x": 1 $ 2\n')


def test_bad_string_escape():
    with pytest.raises(ShrimplSyntaxError, match="escape"):
        parse_program(r'endpoint GET "/x": "bad \q"' + "\n")
