from toylang.lexer import Location
from toylang.syntax import (
    BinaryExpr,
    CallExpr,
    Expr,
    Function,
    LiteralExpr,
    Module,
    NumberExpr,
    PrintExpr,
    Prototype,
    ReturnExpr,
    VarDeclExpr,
    VariableExpr,
    VarType,
    dump,
)


def at(line, col):
    return Location("t.toy", line, col)


def single_function(body, name="main", params=()):
    args = [VariableExpr(at(1, 10), p) for p in params]
    return Module([Function(Prototype(at(1, 1), name, args), body)])


def indent_of(line):
    return len(line) - len(line.lstrip(" "))


def test_full_dump():
    literal = LiteralExpr(at(2, 14), [NumberExpr(at(2, 15), 1.0), NumberExpr(at(2, 18), 2.0)], [2])
    body = [
        VarDeclExpr(at(2, 3), "a", VarType([2]), literal),
        PrintExpr(at(3, 3), VariableExpr(at(3, 9), "a")),
        ReturnExpr(at(4, 3)),
    ]
    expected = (
        "  Module:\n"
        "    Function \n"
        "      Proto 'main' @t.toy:1:1\n"
        "      Params: []\n"
        "      Block {\n"
        "        VarDecl a<2> @t.toy:2:3\n"
        "          Literal: <2>[ 1.000000e+00, 2.000000e+00] @t.toy:2:14\n"
        "        Print [ @t.toy:3:3\n"
        "          var: a @t.toy:3:9\n"
        "        ]\n"
        "        Return\n"
        "          (void)\n"
        "      } // Block\n"
    )
    assert dump(single_function(body)) == expected


def test_params_are_listed():
    text = dump(single_function([], name="f", params=("x", "y")))
    assert "Params: [x, y]" in text
    assert "Proto 'f' @t.toy:1:1" in text


def test_nested_literal_dims():
    inner1 = LiteralExpr(at(1, 2), [NumberExpr(at(1, 3), 1.0), NumberExpr(at(1, 5), 2.0)], [2])
    inner2 = LiteralExpr(at(1, 8), [NumberExpr(at(1, 9), 3.0), NumberExpr(at(1, 11), 4.0)], [2])
    outer = LiteralExpr(at(1, 1), [inner1, inner2], [2, 2])
    text = dump(single_function([outer]))
    assert "Literal: <2, 2>[ <2>[ 1.000000e+00, 2.000000e+00], <2>[ 3.000000e+00, 4.000000e+00]]" in text


def test_return_with_value_nests_expression():
    body = [ReturnExpr(at(2, 3), VariableExpr(at(2, 10), "r"))]
    lines = dump(single_function(body)).splitlines()
    ret = next(i for i, line in enumerate(lines) if line.strip() == "Return")
    assert lines[ret + 1].strip() == "var: r @t.toy:2:10"
    assert indent_of(lines[ret + 1]) == indent_of(lines[ret]) + 2
    assert "(void)" not in "\n".join(lines)


def test_binary_operands_follow_operator():
    expr = BinaryExpr(at(2, 5), "+", VariableExpr(at(2, 3), "a"), VariableExpr(at(2, 7), "b"))
    lines = dump(single_function([expr])).splitlines()
    op = next(i for i, line in enumerate(lines) if "BinOp: +" in line)
    assert lines[op].strip() == "BinOp: + @t.toy:2:5"
    assert lines[op + 1].strip().startswith("var: a")
    assert lines[op + 2].strip().startswith("var: b")
    assert indent_of(lines[op + 1]) == indent_of(lines[op]) + 2


def test_call_arguments_and_closing_bracket():
    call = CallExpr(at(3, 3), "foo", [VariableExpr(at(3, 7), "a"), NumberExpr(at(3, 10), 5.0)])
    lines = dump(single_function([call])).splitlines()
    start = next(i for i, line in enumerate(lines) if "Call 'foo'" in line)
    assert lines[start].strip() == "Call 'foo' [ @t.toy:3:3"
    assert lines[start + 2].strip() == "5.000000e+00 @t.toy:3:10"
    assert lines[start + 3].strip() == "]"
    assert indent_of(lines[start + 3]) == indent_of(lines[start])


def test_vardecl_without_shape_prints_empty_type():
    decl = VarDeclExpr(at(2, 3), "v", VarType(), NumberExpr(at(2, 11), 3.0))
    text = dump(single_function([decl]))
    assert "VarDecl v<> @t.toy:2:3" in text


def test_unknown_expression_kind():
    text = dump(single_function([Expr(at(2, 1))]))
    assert "<unknown Expr, kind Expr>" in text


def test_module_iterates_functions_in_order():
    f1 = Function(Prototype(at(1, 1), "a", []), [])
    f2 = Function(Prototype(at(5, 1), "b", []), [])
    module = Module([f1, f2])
    assert [f.proto.name for f in module] == ["a", "b"]
    assert len(module) == 2
    text = dump(module)
    assert text.index("Proto 'a'") < text.index("Proto 'b'")
    assert text.count("Function \n") == 2


def test_empty_module_dump():
    assert dump(Module([])) == "  Module:\n"