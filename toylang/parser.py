"""Recursive-descent parser turning Toy tokens into a syntax tree."""

from __future__ import annotations

from typing import NoReturn, Optional

from .lexer import Lexer, Location, Token, TokenKind
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
    VarType,
)

_PRECEDENCE = {"-": 20, "+": 20, "*": 40}


class ParseError(Exception):
    """Raised when the token stream does not form a valid Toy program."""

    def __init__(self, message: str, location: Optional[Location] = None) -> None:
        super().__init__(message)
        self.location = location


def _describe(tok: TokenKind) -> str:
    """Render a token the way error messages show it: its code, then the character."""
    if isinstance(tok, Token):
        return str(int(tok))
    code = ord(tok)
    if 0x20 <= code < 0x7F:
        return f"{code} '{tok}'"
    return str(code)


class Parser:
    """Builds a syntax tree from the tokens of a lexer.

    No semantic checks are made: an undeclared variable parses fine.
    """

    def __init__(self, lexer: Lexer) -> None:
        self._lexer = lexer

    def parse_module(self) -> Module:
        """Parse a whole source file: a sequence of function definitions."""
        lexer = self._lexer
        lexer.next_token()
        functions: list[Function] = []
        while True:
            functions.append(self._parse_definition())
            if lexer.current is Token.EOF:
                break
        return Module(functions)

    # -- errors -----------------------------------------------------------

    def _error(self, expected: str, context: str = "") -> NoReturn:
        location = self._lexer.last_location
        message = (
            f"Parse error ({location.line}, {location.col}): expected "
            f"'{expected}' {context} but has Token {_describe(self._lexer.current)}"
        )
        raise ParseError(message, location)

    def _require(self, expr: Optional[Expr]) -> Expr:
        if expr is None:
            self._error("expression")
        return expr

    # -- expressions ------------------------------------------------------

    def _parse_return(self) -> ReturnExpr:
        lexer = self._lexer
        location = lexer.last_location
        lexer.consume(Token.RETURN)
        expr = None
        if lexer.current != ";":
            expr = self._parse_expression()
        return ReturnExpr(location, expr)

    def _parse_number(self) -> NumberExpr:
        lexer = self._lexer
        result = NumberExpr(lexer.last_location, lexer.value)
        lexer.consume(Token.NUMBER)
        return result

    def _parse_tensor_literal(self) -> LiteralExpr:
        lexer = self._lexer
        location = lexer.last_location
        lexer.consume("[")

        values: list[Expr] = []
        while True:
            if lexer.current == "[":
                values.append(self._parse_tensor_literal())
            elif lexer.current is Token.NUMBER:
                values.append(self._parse_number())
            else:
                self._error("<num> or [", "in literal expression")

            if lexer.current == "]":
                break
            if lexer.current != ",":
                self._error("] or ,", "in literal expression")
            lexer.next_token()
        lexer.next_token()

        dims = [len(values)]
        if any(isinstance(value, LiteralExpr) for value in values):
            first = values[0]
            if not isinstance(first, LiteralExpr):
                self._error("uniform well-nested dimensions", "inside literal expression")
            for value in values:
                if not isinstance(value, LiteralExpr) or value.dims != first.dims:
                    self._error(
                        "uniform well-nested dimensions", "inside literal expression"
                    )
            dims.extend(first.dims)
        return LiteralExpr(location, values, dims)

    def _parse_paren(self) -> Expr:
        lexer = self._lexer
        lexer.next_token()
        inner = self._require(self._parse_expression())
        if lexer.current != ")":
            self._error(")", "to close expression with parentheses")
        lexer.consume(")")
        return inner

    def _parse_identifier_expr(self) -> Expr:
        lexer = self._lexer
        name = lexer.identifier
        location = lexer.last_location
        lexer.next_token()

        if lexer.current != "(":
            return VariableExpr(location, name)

        lexer.consume("(")
        args: list[Expr] = []
        if lexer.current != ")":
            while True:
                args.append(self._require(self._parse_expression()))
                if lexer.current == ")":
                    break
                if lexer.current != ",":
                    self._error(", or )", "in argument list")
                lexer.next_token()
        lexer.consume(")")

        if name == "print":
            if len(args) != 1:
                self._error("<single arg>", "as argument to print()")
            return PrintExpr(location, args[0])
        return CallExpr(location, name, args)

    def _parse_primary(self) -> Optional[Expr]:
        current = self._lexer.current
        if current is Token.IDENTIFIER:
            return self._parse_identifier_expr()
        if current is Token.NUMBER:
            return self._parse_number()
        if current == "(":
            return self._parse_paren()
        if current == "[":
            return self._parse_tensor_literal()
        if current in (";", "}"):
            return None
        raise ParseError(
            f"unknown token '{_describe(current)}' when expecting an expression",
            self._lexer.last_location,
        )

    def _token_precedence(self) -> int:
        current = self._lexer.current
        if isinstance(current, Token):
            return -1
        return _PRECEDENCE.get(current, -1)

    def _parse_binop_rhs(self, expr_prec: int, lhs: Expr) -> Expr:
        lexer = self._lexer
        while True:
            tok_prec = self._token_precedence()
            if tok_prec < expr_prec:
                return lhs

            op = lexer.current
            assert isinstance(op, str)
            lexer.consume(op)
            location = lexer.last_location

            rhs = self._parse_primary()
            if rhs is None:
                self._error("expression", "to complete binary operator")

            if tok_prec < self._token_precedence():
                rhs = self._parse_binop_rhs(tok_prec + 1, rhs)

            lhs = BinaryExpr(location, op, lhs, rhs)

    def _parse_expression(self) -> Optional[Expr]:
        lhs = self._parse_primary()
        if lhs is None:
            return None
        return self._parse_binop_rhs(0, lhs)

    # -- declarations and blocks -----------------------------------------

    def _parse_type(self) -> VarType:
        lexer = self._lexer
        if lexer.current != "<":
            self._error("<", "to begin type")
        lexer.next_token()

        var_type = VarType()
        while lexer.current is Token.NUMBER:
            var_type.shape.append(int(lexer.value))
            lexer.next_token()
            if lexer.current == ",":
                lexer.next_token()

        if lexer.current != ">":
            self._error(">", "to end type")
        lexer.next_token()
        return var_type

    def _parse_declaration(self) -> VarDeclExpr:
        lexer = self._lexer
        if lexer.current is not Token.VAR:
            self._error("var", "to begin declaration")
        location = lexer.last_location
        lexer.next_token()

        if lexer.current is not Token.IDENTIFIER:
            self._error("identified", "after 'var' declaration")
        name = lexer.identifier
        lexer.next_token()

        var_type = self._parse_type() if lexer.current == "<" else VarType()

        if lexer.current != "=":
            self._error("=", "in variable declaration")
        lexer.consume("=")
        init = self._parse_expression()
        return VarDeclExpr(location, name, var_type, init)

    def _skip_semicolons(self) -> None:
        while self._lexer.current == ";":
            self._lexer.consume(";")

    def _parse_block(self) -> list[Expr]:
        lexer = self._lexer
        if lexer.current != "{":
            self._error("{", "to begin block")
        lexer.consume("{")

        body: list[Expr] = []
        self._skip_semicolons()

        while lexer.current != "}" and lexer.current is not Token.EOF:
            if lexer.current is Token.VAR:
                body.append(self._parse_declaration())
            elif lexer.current is Token.RETURN:
                body.append(self._parse_return())
            else:
                body.append(self._require(self._parse_expression()))

            if lexer.current != ";":
                self._error(";", "after expression")
            self._skip_semicolons()

        if lexer.current != "}":
            self._error("}", "to close block")
        lexer.consume("}")
        return body

    def _parse_prototype(self) -> Prototype:
        lexer = self._lexer
        location = lexer.last_location

        if lexer.current is not Token.DEF:
            self._error("def", "in prototype")
        lexer.consume(Token.DEF)

        if lexer.current is not Token.IDENTIFIER:
            self._error("function name", "in prototype")
        name = lexer.identifier
        lexer.consume(Token.IDENTIFIER)

        if lexer.current != "(":
            self._error("(", "in prototype")
        lexer.consume("(")

        args: list[VariableExpr] = []
        if lexer.current != ")":
            if lexer.current is not Token.IDENTIFIER:
                self._error("identifier", "in function parameter list")
            while True:
                args.append(VariableExpr(lexer.last_location, lexer.identifier))
                lexer.consume(Token.IDENTIFIER)
                if lexer.current != ",":
                    break
                lexer.consume(",")
                if lexer.current is not Token.IDENTIFIER:
                    self._error("identifier", "after ',' in function parameter list")

        if lexer.current != ")":
            self._error(")", "to end function prototype")
        lexer.consume(")")
        return Prototype(location, name, args)

    def _parse_definition(self) -> Function:
        proto = self._parse_prototype()
        body = self._parse_block()
        return Function(proto, body)


def parse_source(text: str, filename: str = "-") -> Module:
    """Parse Toy source text into a module syntax tree."""
    return Parser(Lexer(text, filename)).parse_module()