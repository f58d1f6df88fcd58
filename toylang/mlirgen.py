"""Generation of Toy dialect IR from a Toy syntax tree."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import Optional

from .ir import (
    AddOp,
    ConstantOp,
    FuncOp,
    FunctionType,
    GenericCallOp,
    ModuleOp,
    MulOp,
    Operation,
    PrintOp,
    ReshapeOp,
    ReturnOp,
    SourceLocation,
    TensorType,
    TransposeOp,
    Value,
    VerificationError,
)
from .lexer import Location
from .syntax import (
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
)

# Kind numbers of the expression nodes, as reported for unhandled expressions.
_EXPR_KINDS = {
    VarDeclExpr: 0,
    ReturnExpr: 1,
    NumberExpr: 2,
    LiteralExpr: 3,
    VariableExpr: 4,
    BinaryExpr: 5,
    CallExpr: 6,
    PrintExpr: 7,
}


class CodegenError(Exception):
    """Raised when a syntax tree cannot be turned into valid IR."""

    def __init__(self, message: str, location: Optional[SourceLocation] = None) -> None:
        super().__init__(message)
        self.location = location


def _loc(location: Location) -> SourceLocation:
    return SourceLocation.from_location(location)


def _tensor_type(shape: Sequence[int]) -> TensorType:
    """An unranked tensor for an empty shape, a ranked one otherwise."""
    return TensorType(tuple(shape)) if shape else TensorType()


def _flatten(expr: Expr) -> Iterator[float]:
    """Yield the numbers of a nested literal in row-major order."""
    if isinstance(expr, LiteralExpr):
        for value in expr.values:
            yield from _flatten(value)
        return
    if not isinstance(expr, NumberExpr):
        raise CodegenError("expected literal or number expr", _loc(expr.location))
    yield expr.value


class _Generator:
    """Emits the operations of one module, one function at a time."""

    def __init__(self) -> None:
        self._module = ModuleOp()
        self._function: Optional[FuncOp] = None
        self._symbols: dict[str, Value] = {}

    def module(self, module_ast: Module) -> ModuleOp:
        for function_ast in module_ast:
            self._function_def(function_ast)
        try:
            self._module.verify()
        except VerificationError as exc:
            raise CodegenError(
                f"module verification error: {exc}", self._module.location
            ) from exc
        return self._module

    # -- functions --------------------------------------------------------

    def _declare(self, name: str, value: Value, location: SourceLocation) -> None:
        if name in self._symbols:
            raise CodegenError(f"redeclaration of variable '{name}'", location)
        self._symbols[name] = value

    def _prototype(self, proto: Prototype) -> FuncOp:
        inputs = tuple(TensorType() for _ in proto.args)
        return FuncOp(proto.name, FunctionType(inputs, ()), _loc(proto.location))

    def _emit(self, op: Operation) -> Operation:
        assert self._function is not None
        return self._function.append(op)

    def _function_def(self, function_ast: Function) -> FuncOp:
        proto = function_ast.proto
        function = self._module.append(self._prototype(proto))
        self._function = function
        self._symbols = {}
        try:
            for arg_ast, argument in zip(proto.args, function.arguments):
                self._declare(arg_ast.name, argument, _loc(arg_ast.location))
            self._block(function_ast.body)
        except CodegenError:
            function.erase()
            raise
        finally:
            self._function = None
            self._symbols = {}

        last = function.body[-1] if function.body else None
        if not isinstance(last, ReturnOp):
            function.append(ReturnOp((), _loc(proto.location)))
        elif last.has_operand:
            function.function_type = FunctionType(
                function.function_type.inputs, (TensorType(),)
            )

        if proto.name != "main":
            function.private = True
        return function

    def _block(self, body: Sequence[Expr]) -> None:
        for expr in body:
            if isinstance(expr, VarDeclExpr):
                self._var_decl(expr)
            elif isinstance(expr, ReturnExpr):
                self._return(expr)
                return
            elif isinstance(expr, PrintExpr):
                self._print(expr)
            else:
                self._expr(expr)

    # -- statements -------------------------------------------------------

    def _var_decl(self, decl: VarDeclExpr) -> Value:
        location = _loc(decl.location)
        if decl.init is None:
            raise CodegenError("missing initializer in variable declaration", location)
        value = self._expr(decl.init)
        if decl.var_type.shape:
            value = self._emit(
                ReshapeOp(value, _tensor_type(decl.var_type.shape), location)
            ).result
        self._declare(decl.name, value, location)
        return value

    def _return(self, ret: ReturnExpr) -> None:
        operands = () if ret.expr is None else (self._expr(ret.expr),)
        self._emit(ReturnOp(operands, _loc(ret.location)))

    def _print(self, node: PrintExpr) -> None:
        arg = self._expr(node.arg)
        self._emit(PrintOp(arg, _loc(node.location)))

    # -- expressions ------------------------------------------------------

    def _expr(self, expr: Expr) -> Value:
        match expr:
            case BinaryExpr():
                return self._binary(expr)
            case VariableExpr():
                return self._variable(expr)
            case LiteralExpr():
                return self._literal(expr)
            case CallExpr():
                return self._call(expr)
            case NumberExpr():
                return self._emit(
                    ConstantOp.scalar(expr.value, _loc(expr.location))
                ).result
            case _:
                kind = _EXPR_KINDS.get(type(expr), type(expr).__name__)
                raise CodegenError(
                    f"MLIR codegen encountered an unhandled expr kind '{kind}'",
                    _loc(expr.location),
                )

    def _binary(self, binop: BinaryExpr) -> Value:
        lhs = self._expr(binop.lhs)
        rhs = self._expr(binop.rhs)
        location = _loc(binop.location)
        if binop.op == "+":
            return self._emit(AddOp(lhs, rhs, location)).result
        if binop.op == "*":
            return self._emit(MulOp(lhs, rhs, location)).result
        raise CodegenError(f"invalid binary operator '{binop.op}'", location)

    def _variable(self, expr: VariableExpr) -> Value:
        value = self._symbols.get(expr.name)
        if value is None:
            raise CodegenError(
                f"error: unknown variable '{expr.name}'", _loc(expr.location)
            )
        return value

    def _literal(self, lit: LiteralExpr) -> Value:
        data = list(_flatten(lit))
        op = ConstantOp(data, lit.dims, _loc(lit.location), _tensor_type(lit.dims))
        return self._emit(op).result

    def _call(self, call: CallExpr) -> Value:
        location = _loc(call.location)
        operands = [self._expr(arg) for arg in call.args]
        if call.callee == "transpose":
            if len(call.args) != 1:
                raise CodegenError(
                    "MLIR codegen encountered an error: toy.transpose "
                    "does not accept multiple arguments",
                    location,
                )
            return self._emit(TransposeOp(operands[0], location)).result
        return self._emit(GenericCallOp(call.callee, operands, location)).result


def mlir_gen(module_ast: Module) -> ModuleOp:
    """Build and verify the IR module for a Toy syntax tree."""
    return _Generator().module(module_ast)