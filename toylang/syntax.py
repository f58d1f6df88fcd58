"""Syntax tree for Toy programs and its textual dump."""

from __future__ import annotations

import math
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

from .lexer import Location


@dataclass
class VarType:
    """The declared shape of a variable; empty means unknown."""

    shape: list[int] = field(default_factory=list)


@dataclass
class Expr:
    """Base of all expression nodes."""

    location: Location


@dataclass
class NumberExpr(Expr):
    value: float


@dataclass
class LiteralExpr(Expr):
    values: list[Expr]
    dims: list[int]


@dataclass
class VariableExpr(Expr):
    name: str


@dataclass
class VarDeclExpr(Expr):
    name: str
    var_type: VarType
    init: Optional[Expr]


@dataclass
class ReturnExpr(Expr):
    expr: Optional[Expr] = None


@dataclass
class BinaryExpr(Expr):
    op: str
    lhs: Expr
    rhs: Expr


@dataclass
class CallExpr(Expr):
    callee: str
    args: list[Expr]


@dataclass
class PrintExpr(Expr):
    arg: Expr


@dataclass
class Prototype:
    """A function's name and parameter names."""

    location: Location
    name: str
    args: list[VariableExpr]


@dataclass
class Function:
    proto: Prototype
    body: list[Expr]


@dataclass
class Module:
    """The functions of one source file."""

    functions: list[Function]

    def __iter__(self) -> Iterator[Function]:
        return iter(self.functions)

    def __len__(self) -> int:
        return len(self.functions)


def _format_double(value: float) -> str:
    if math.isnan(value):
        return "nan"
    if math.isinf(value):
        return "-INF" if value < 0 else "INF"
    return f"{value:e}"


def _loc(location: Location) -> str:
    return f"@{location.file}:{location.line}:{location.col}"


def _literal_text(node: Expr) -> str:
    if isinstance(node, NumberExpr):
        return _format_double(node.value)
    assert isinstance(node, LiteralExpr)
    dims = ", ".join(str(d) for d in node.dims)
    values = ", ".join(_literal_text(v) for v in node.values)
    return f"<{dims}>[ {values}]"


class _ASTDumper:
    def __init__(self) -> None:
        self._out: list[str] = []
        self._level = 0

    def text(self) -> str:
        return "".join(self._out)

    def _write(self, *parts: str) -> None:
        self._out.extend(parts)

    def _indent(self) -> None:
        self._out.append("  " * self._level)

    @contextmanager
    def _nested(self) -> Iterator[None]:
        self._level += 1
        self._indent()
        try:
            yield
        finally:
            self._level -= 1

    def module(self, node: Module) -> None:
        with self._nested():
            self._write("Module:\n")
            for function in node:
                self.function(function)

    def function(self, node: Function) -> None:
        with self._nested():
            self._write("Function \n")
            self.prototype(node.proto)
            self.block(node.body)

    def prototype(self, node: Prototype) -> None:
        with self._nested():
            self._write(f"Proto '{node.name}' {_loc(node.location)}\n")
            self._indent()
            names = ", ".join(arg.name for arg in node.args)
            self._write(f"Params: [{names}]\n")

    def block(self, body: list[Expr]) -> None:
        with self._nested():
            self._write("Block {\n")
            for expr in body:
                self.expr(expr)
            self._indent()
            self._write("} // Block\n")

    def expr(self, node: Optional[Expr]) -> None:
        if node is None:
            return
        match node:
            case VarDeclExpr():
                with self._nested():
                    shape = ", ".join(str(d) for d in node.var_type.shape)
                    self._write(f"VarDecl {node.name}<{shape}> {_loc(node.location)}\n")
                    self.expr(node.init)
            case NumberExpr():
                with self._nested():
                    self._write(f"{_format_double(node.value)} {_loc(node.location)}\n")
            case LiteralExpr():
                with self._nested():
                    self._write(f"Literal: {_literal_text(node)} {_loc(node.location)}\n")
            case VariableExpr():
                with self._nested():
                    self._write(f"var: {node.name} {_loc(node.location)}\n")
            case ReturnExpr():
                with self._nested():
                    self._write("Return\n")
                    if node.expr is not None:
                        self.expr(node.expr)
                    else:
                        with self._nested():
                            self._write("(void)\n")
            case BinaryExpr():
                with self._nested():
                    self._write(f"BinOp: {node.op} {_loc(node.location)}\n")
                    self.expr(node.lhs)
                    self.expr(node.rhs)
            case CallExpr():
                with self._nested():
                    self._write(f"Call '{node.callee}' [ {_loc(node.location)}\n")
                    for arg in node.args:
                        self.expr(arg)
                    self._indent()
                    self._write("]\n")
            case PrintExpr():
                with self._nested():
                    self._write(f"Print [ {_loc(node.location)}\n")
                    self.expr(node.arg)
                    self._indent()
                    self._write("]\n")
            case _:
                with self._nested():
                    self._write(f"<unknown Expr, kind {type(node).__name__}>\n")


def dump(module: Module) -> str:
    """Return the indented textual dump of a module's syntax tree."""
    dumper = _ASTDumper()
    dumper.module(module)
    return dumper.text()