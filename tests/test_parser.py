import pytest

from toylang.lexer import Lexer, Location
from toylang.parser import ParseError, Parser, parse_source
from toylang.syntax import (
    BinaryExpr,
    CallExpr,
    LiteralExpr,
    NumberExpr,
    PrintExpr,
    ReturnExpr,
    VarDeclExpr,
    VariableExpr,
    dump,
)


def _body(source):
    module = parse_source(source)
    return module.functions[0].body


def _flatten(expr):
    if isinstance(expr, NumberExpr):
        return [expr.value]
    out = []
    for value in expr.values:
        out.extend(_flatten(value))
    return out


def test_empty_main():
    module = parse_source("def main() { }")
    assert len(module) == 1
    func = module.functions[0]
    assert func.proto.name == "main"
    assert func.proto.args == []
    assert func.body == []


def test_parser_class_with_lexer():
    module = Parser(Lexer("def foo(x) { return x; }", "f.toy")).parse_module()
    assert module.functions[0].proto.name == "foo"
    assert [a.name for a in module.functions[0].proto.args] == ["x"]


def test_parameters_and_return_binop():
    module = parse_source("def f(a, b) { return a + b; }")
    func = module.functions[0]
    assert [arg.name for arg in func.proto.args] == ["a", "b"]
    ret = func.body[0]
    assert isinstance(ret, ReturnExpr)
    assert isinstance(ret.expr, BinaryExpr)
    assert ret.expr.op == "+"
    assert ret.expr.lhs.name == "a"
    assert ret.expr.rhs.name == "b"


def test_multiplication_binds_tighter():
    expr = _body("def f(a, b, c) { return a + b * c; }")[0].expr
    assert expr.op == "+"
    assert isinstance(expr.rhs, BinaryExpr) and expr.rhs.op == "*"
    expr = _body("def f(a, b, c) { return a * b + c; }")[0].expr
    assert expr.op == "+"
    assert isinstance(expr.lhs, BinaryExpr) and expr.lhs.op == "*"


def test_addition_is_left_associative():
    expr = _body("def f(a, b, c) { return a + b + c; }")[0].expr
    assert expr.op == "+"
    assert isinstance(expr.lhs, BinaryExpr)
    assert expr.rhs.name == "c"


def test_parentheses_group():
    expr = _body("def f(a, b, c) { return (a + b) * c; }")[0].expr
    assert expr.op == "*"
    assert isinstance(expr.lhs, BinaryExpr) and expr.lhs.op == "+"


def test_tensor_literal_dims_and_values():
    decl = _body("def main() { var a = [[1, 2, 3], [4, 5, 6]]; }")[0]
    assert isinstance(decl, VarDeclExpr)
    assert isinstance(decl.init, LiteralExpr)
    assert decl.init.dims == [2, 3]
    assert _flatten(decl.init) == [1.0, 2.0, 3.0, 4.0, 5.0, 6.0]
    assert all(inner.dims == [3] for inner in decl.init.values)


def test_declared_shape():
    decl = _body("def main() { var a<2, 3> = [1, 2, 3, 4, 5, 6]; }")[0]
    assert decl.name == "a"
    assert decl.var_type.shape == [2, 3]
    assert decl.init.dims == [6]


def test_declaration_without_shape():
    decl = _body("def main() { var b = 5.5; }")[0]
    assert decl.var_type.shape == []
    assert isinstance(decl.init, NumberExpr)
    assert decl.init.value == 5.5


def test_declaration_without_initializer_parses():
    decl = _body("def main() { var a = ; }")[0]
    assert isinstance(decl, VarDeclExpr)
    assert decl.init is None


def test_print_builtin():
    stmt = _body("def main() { print(a); }")[0]
    assert isinstance(stmt, PrintExpr)
    assert isinstance(stmt.arg, VariableExpr) and stmt.arg.name == "a"


def test_print_requires_one_argument():
    with pytest.raises(ParseError, match="as argument to print"):
        parse_source("def main() { print(a, b); }")


def test_call_expression():
    stmt = _body("def main() { var b = transpose(a); }")[0]
    assert isinstance(stmt.init, CallExpr)
    assert stmt.init.callee == "transpose"
    assert [arg.name for arg in stmt.init.args] == ["a"]


def test_call_without_arguments():
    stmt = _body("def main() { foo(); }")[0]
    assert isinstance(stmt, CallExpr)
    assert stmt.callee == "foo"
    assert stmt.args == []


def test_void_return():
    stmt = _body("def main() { return; }")[0]
    assert isinstance(stmt, ReturnExpr)
    assert stmt.expr is None


def test_extra_semicolons_are_swallowed():
    body = _body("def main() { ;; var a = 1;;; print(a); }")
    assert len(body) == 2
    assert isinstance(body[0], VarDeclExpr)
    assert isinstance(body[1], PrintExpr)


def test_comments_are_ignored():
    source = "# leading comment\ndef main() {\n  # inside\n  var a = 1;\n}\n"
    body = _body(source)
    assert len(body) == 1
    assert body[0].name == "a"


def test_multiple_functions_keep_order():
    module = parse_source("def one() { }\ndef two() { }\ndef three() { }")
    assert [f.proto.name for f in module] == ["one", "two", "three"]


def test_prototype_location_uses_filename():
    module = parse_source("def main() { }", "test.toy")
    assert module.functions[0].proto.location == Location("test.toy", 1, 1)


def test_non_uniform_literal_rejected():
    with pytest.raises(ParseError, match="uniform well-nested dimensions"):
        parse_source("def main() { var a = [[1, 2], [3]]; }")


def test_mixed_literal_rejected():
    with pytest.raises(ParseError, match="uniform well-nested dimensions"):
        parse_source("def main() { var a = [1, [2]]; }")


def test_empty_literal_rejected():
    with pytest.raises(ParseError, match="in literal expression"):
        parse_source("def main() { var a = []; }")


def test_missing_semicolon():
    with pytest.raises(ParseError, match="expected ';' after expression"):
        parse_source("def main() { return a b; }")


def test_unclosed_block():
    with pytest.raises(ParseError, match="to close block"):
        parse_source("def main() { var a = 1;")


def test_garbage_at_top_level():
    with pytest.raises(ParseError, match="in prototype"):
        parse_source("def main() { } foo")


def test_empty_input_is_an_error():
    with pytest.raises(ParseError, match="'def' in prototype"):
        parse_source("")


def test_unknown_token_in_expression():
    with pytest.raises(ParseError, match="unknown token"):
        parse_source("def main() { @; }")


def test_bad_parameter_list():
    with pytest.raises(ParseError, match="after ',' in function parameter list"):
        parse_source("def f(a, ) { }")


def test_error_carries_location():
    with pytest.raises(ParseError) as info:
        parse_source("def main() { return a b; }")
    assert info.value.location is not None
    assert info.value.location.line == 1


def test_dump_of_parsed_module():
    text = dump(parse_source("def main() { }", "f"))
    assert "Proto 'main' @f:1:1" in text
    assert text.startswith("  Module:\n")
    assert "} // Block" in text