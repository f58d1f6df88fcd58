import pytest

from toylang.lexer import Lexer, Location, Token


def tokens(text):
    lexer = Lexer(text, "test.toy")
    result = []
    while lexer.next_token() is not Token.EOF:
        result.append(lexer.current)
    return result


def test_token_codes_match_format():
    lexer = Lexer("def x 1", "f")
    assert lexer.next_token() == -4
    assert lexer.next_token() == -5
    assert lexer.next_token() == -6
    assert lexer.next_token() == -1


def test_simple_function_tokens():
    text = "def main() { var a = [1, 2]; print(a); }"
    assert tokens(text) == [
        Token.DEF, Token.IDENTIFIER, "(", ")", "{",
        Token.VAR, Token.IDENTIFIER, "=", "[", Token.NUMBER, ",", Token.NUMBER, "]", ";",
        Token.IDENTIFIER, "(", Token.IDENTIFIER, ")", ";",
        "}",
    ]


def test_keywords():
    assert tokens("return var def") == [Token.RETURN, Token.VAR, Token.DEF]


def test_identifier_text_with_digits_and_underscore():
    lexer = Lexer("a_1b c", "f")
    assert lexer.next_token() is Token.IDENTIFIER
    assert lexer.identifier == "a_1b"
    assert lexer.next_token() is Token.IDENTIFIER
    assert lexer.identifier == "c"


def test_number_values():
    lexer = Lexer("1.5 42 .25", "f")
    values = []
    while lexer.next_token() is Token.NUMBER:
        values.append(lexer.value)
    assert values == [1.5, 42.0, 0.25]


def test_malformed_number_takes_numeric_prefix():
    lexer = Lexer("1.2.3", "f")
    assert lexer.next_token() is Token.NUMBER
    assert lexer.value == 1.2
    assert lexer.next_token() is Token.EOF


def test_comments_are_skipped():
    assert tokens("# a comment\nreturn # trailing\n") == [Token.RETURN]


def test_comment_at_end_of_input():
    assert tokens("var # no newline") == [Token.VAR]


def test_eof_is_sticky():
    lexer = Lexer("x", "f")
    lexer.next_token()
    assert lexer.next_token() is Token.EOF
    assert lexer.next_token() is Token.EOF


def test_nul_ends_input():
    assert tokens("var\0def") == [Token.VAR]


def test_empty_input():
    assert tokens("") == []


def test_first_token_location():
    lexer = Lexer("def main", "file.toy")
    lexer.next_token()
    assert lexer.last_location == Location("file.toy", 1, 1)


def test_locations_advance_across_lines():
    lexer = Lexer("var\nvar\n  var", "f")
    lines = []
    cols = []
    while lexer.next_token() is not Token.EOF:
        lines.append(lexer.last_location.line)
        cols.append(lexer.last_location.col)
    assert lines == [lines[0], lines[0] + 1, lines[0] + 2]
    assert cols[0] == cols[1]
    assert cols[2] == cols[1] + 2


def test_location_carries_filename():
    lexer = Lexer("x", "name.toy")
    lexer.next_token()
    assert lexer.last_location.file == "name.toy"


def test_consume_advances():
    lexer = Lexer("( )", "f")
    lexer.next_token()
    lexer.consume("(")
    assert lexer.current == ")"


def test_consume_mismatch_raises():
    lexer = Lexer("( )", "f")
    lexer.next_token()
    with pytest.raises(ValueError):
        lexer.consume(";")
    assert lexer.current == "("


def test_identifier_requires_identifier_token():
    lexer = Lexer("42", "f")
    lexer.next_token()
    with pytest.raises(ValueError):
        _ = lexer.identifier
    assert lexer.current is Token.NUMBER
    assert lexer.value == 42.0


def test_value_requires_number_token():
    lexer = Lexer("abc", "f")
    lexer.next_token()
    with pytest.raises(ValueError):
        _ = lexer.value
    assert lexer.current is Token.IDENTIFIER
    assert lexer.identifier == "abc"