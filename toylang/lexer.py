"""Tokenizer for the Toy language."""

from __future__ import annotations

import enum
import re
import string
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Optional, Union

_SPACE = frozenset(string.whitespace)
_LETTERS = frozenset(string.ascii_letters)
_DIGITS = frozenset(string.digits)
_ALNUM = _LETTERS | _DIGITS
_NUMBER_PREFIX = re.compile(r"\d+\.?\d*|\.\d+")
_LINE = re.compile(r"[^\n]*\n|[^\n]+")


@dataclass(frozen=True)
class Location:
    """A position in a source file (1-based line and column)."""

    file: str
    line: int
    col: int

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.col}"


class Token(enum.IntEnum):
    """Special tokens. Any other character is returned as a one-character str."""

    EOF = -1
    RETURN = -2
    VAR = -3
    DEF = -4
    IDENTIFIER = -5
    NUMBER = -6


TokenKind = Union[Token, str]

_KEYWORDS = {"return": Token.RETURN, "def": Token.DEF, "var": Token.VAR}


def _lines(text: str) -> Iterator[str]:
    """Yield the lines of ``text`` with their newlines, stopping at a NUL."""
    text = text.split("\0", 1)[0]
    for match in _LINE.finditer(text):
        yield match.group(0)


def _parse_number(text: str) -> float:
    """Read the longest numeric prefix of ``text``; 0.0 when there is none."""
    match = _NUMBER_PREFIX.match(text)
    return float(match.group(0)) if match else 0.0


class Lexer:
    """Splits Toy source text into tokens, tracking locations as it goes."""

    def __init__(self, text: str, filename: str = "-") -> None:
        self._file = filename
        self._lines = _lines(text)
        self._buffer = "\n"
        self._pos = 0
        self._line = 0
        self._col = 0
        self._last_char: Optional[str] = " "
        self._current: TokenKind = Token.EOF
        self._last_location = Location(filename, 0, 0)
        self._identifier = ""
        self._value = 0.0

    @property
    def current(self) -> TokenKind:
        """The token most recently read."""
        return self._current

    @property
    def identifier(self) -> str:
        """The text of the current identifier token."""
        if self._current is not Token.IDENTIFIER:
            raise ValueError(f"current token {self._current!r} is not an identifier")
        return self._identifier

    @property
    def value(self) -> float:
        """The value of the current number token."""
        if self._current is not Token.NUMBER:
            raise ValueError(f"current token {self._current!r} is not a number")
        return self._value

    @property
    def last_location(self) -> Location:
        """Where the current token begins."""
        return self._last_location

    @property
    def line(self) -> int:
        return self._line

    @property
    def col(self) -> int:
        return self._col

    def next_token(self) -> TokenKind:
        """Advance to the next token and return it."""
        self._current = self._read_token()
        return self._current

    def consume(self, tok: TokenKind) -> None:
        """Advance past the current token, which must be ``tok``."""
        if tok != self._current:
            raise ValueError(f"expected token {tok!r}, found {self._current!r}")
        self.next_token()

    def _next_char(self) -> Optional[str]:
        if self._pos >= len(self._buffer):
            return None
        self._col += 1
        char = self._buffer[self._pos]
        self._pos += 1
        if self._pos >= len(self._buffer):
            self._buffer = next(self._lines, "")
            self._pos = 0
        if char == "\n":
            self._line += 1
            self._col = 0
        return char

    def _read_token(self) -> TokenKind:
        while True:
            while self._last_char is not None and self._last_char in _SPACE:
                self._last_char = self._next_char()

            self._last_location = Location(self._file, self._line, self._col)
            char = self._last_char
            if char is None:
                return Token.EOF

            if char in _LETTERS:
                chars = [char]
                self._last_char = self._next_char()
                while self._last_char is not None and (
                    self._last_char in _ALNUM or self._last_char == "_"
                ):
                    chars.append(self._last_char)
                    self._last_char = self._next_char()
                self._identifier = "".join(chars)
                return _KEYWORDS.get(self._identifier, Token.IDENTIFIER)

            if char in _DIGITS or char == ".":
                chars = []
                while self._last_char is not None and (
                    self._last_char in _DIGITS or self._last_char == "."
                ):
                    chars.append(self._last_char)
                    self._last_char = self._next_char()
                self._value = _parse_number("".join(chars))
                return Token.NUMBER

            if char == "#":
                self._last_char = self._next_char()
                while self._last_char is not None and self._last_char not in "\n\r":
                    self._last_char = self._next_char()
                if self._last_char is not None:
                    continue
                return Token.EOF

            self._last_char = self._next_char()
            return char