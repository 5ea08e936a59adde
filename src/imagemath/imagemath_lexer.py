"""
Lexical analyzer for the ImageMath scripting language.

This module converts raw script text into a token stream:

Classes:
    CharacterStream: Stream abstraction for reading characters with line/column tracking.
    Token: Represents a single token with type, value, and source span.
    Lexer: Converts a CharacterStream into a sequence of tokens.

Features:
    - Skips whitespace, line comments (`//` and `#`) and block comments (`/* ... */`)
    - Single-character operators and delimiters
    - Recognizes:
        * Identifiers (Unicode letters, digits and `_`) and the keywords `fun`, `include`
        * Numbers with `_` separators and leading-dot floats (`.5`)
        * Single, double and triple-quoted strings

Raises:
    LexError: On unterminated strings or block comments and malformed numbers.

Example:
    >>> tokens = tokenize("a = img(0)")
    >>> tokens[0]
    Token(IDENT, a)

Exports:
    - CharacterStream
    - Token
    - Lexer
    - tokenize
"""

import logging
from typing import Any

from imagemath.imagemath_constants import keyword_tokens, token_hashmap
from imagemath.imagemath_errors import LexError

logger = logging.getLogger(__name__)


class CharacterStream:
    """
    Reads characters from a source string while tracking line and column.

    Attributes:
        source (str): The input source string.
        position (int): Current index in the source.
        line (int): Current line number (1-indexed).
        column (int): Current column number (1-indexed).
    """

    def __init__(self, source: str, position: int = 0, line: int = 1, column: int = 1):
        self.source = source
        self.position = position
        self.line = line
        self.column = column

    def next(self) -> str:
        """
        Returns the current character and moves past it.

        Raises:
            EOFError: If reading past the end of the source.
        """
        if self.position >= len(self.source):
            raise EOFError(
                f"Attempted to read past end of source at position={self.position}, line={self.line}"
            )
        char = self.source[self.position]
        if char == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.position += 1
        return char

    def peek(self, offset: int = 0) -> str:
        """Returns the character `offset` positions ahead, or "" when out of bounds."""
        index = self.position + offset
        if index < 0 or index >= len(self.source):
            return ""
        return self.source[index]

    def startswith(self, text: str) -> bool:
        return self.source.startswith(text, self.position)

    def end_of_file(self) -> bool:
        return self.position >= len(self.source)


class Token:
    """A single lexical token of an ImageMath script.

    Attributes:
        type (str): The canonical token type (e.g. 'IDENT', 'NUMBER', 'EOF').
        value (str): The lexeme. For strings this is the decoded content.
        line (int): The 1-based line where the token starts.
        col (int): The 1-based column where the token starts.
        end_line (int): The line just after the token.
        end_col (int): The column just after the token.
    """

    def __init__(
        self,
        type_: str,
        value: str,
        line: int = 0,
        col: int = 0,
        end_line: int | None = None,
        end_col: int | None = None,
    ):
        self.type = type_
        self.value = value
        self.line = line
        self.col = col
        self.end_line = line if end_line is None else end_line
        self.end_col = col + len(value) if end_col is None else end_col

    @property
    def span(self) -> tuple[int, int, int, int]:
        return (self.line, self.col, self.end_line, self.end_col)

    def __repr__(self) -> str:
        return f"Token({self.type}, {self.value})"

    def __eq__(self, other: Any) -> bool:
        return (
            isinstance(other, Token)
            and self.type == other.type
            and self.value == other.value
            and self.line == other.line
            and self.col == other.col
        )

    def __hash__(self) -> int:
        return hash((self.type, self.value, self.line, self.col))


class Lexer:
    """Lexical analyzer for ImageMath scripts.

    Attributes:
        stream (CharacterStream): The source stream to tokenize.
    """

    def __init__(self, stream: CharacterStream) -> None:
        self.stream = stream

    def peek(self, offset: int = 0) -> str:
        return self.stream.peek(offset)

    def advance(self) -> str:
        return self.stream.next()

    def skip_whitespace(self) -> None:
        """Skips whitespace and all three comment forms."""
        while not self.stream.end_of_file():
            ch = self.peek()
            if ch in " \t\r\n\ufeff":
                self.advance()
            elif ch == "#" or self.stream.startswith("//"):
                self.skip_line_comment()
            elif self.stream.startswith("/*"):
                self.skip_block_comment()
            else:
                break

    def skip_line_comment(self) -> None:
        while not self.stream.end_of_file() and self.peek() != "\n":
            self.advance()

    def skip_block_comment(self) -> None:
        line, col = self.stream.line, self.stream.column
        self.advance()
        self.advance()
        while not self.stream.end_of_file():
            if self.stream.startswith("*/"):
                self.advance()
                self.advance()
                return
            self.advance()
        raise LexError("Unterminated block comment", line, col)

    def match_operator(self) -> Token | None:
        """Reads an operator or delimiter; all of them are one character long."""
        ch = self.peek()
        if ch not in token_hashmap:
            return None
        line, col = self.stream.line, self.stream.column
        self.advance()
        return self._token(token_hashmap[ch], ch, line, col)

    def _token(self, type_: str, value: str, line: int, col: int) -> Token:
        return Token(type_, value, line, col, self.stream.line, self.stream.column)

    def read_number(self, line: int, col: int) -> Token:
        digits = ""
        seen_point = False
        while self.peek() and (self.peek().isdecimal() or self.peek() in "._"):
            if self.peek() == ".":
                if seen_point:
                    raise LexError("Invalid number format", line, col)
                seen_point = True
            digits += self.advance()
        return self._token("NUMBER", digits, line, col)

    def read_string(self, line: int, col: int) -> Token:
        quote = self.advance()
        if self.peek() == quote and self.peek(1) == quote:
            # Triple-quoted strings are raw
            self.advance()
            self.advance()
            closing = quote * 3
            val = ""
            while not self.stream.end_of_file():
                if self.stream.startswith(closing):
                    for _ in range(3):
                        self.advance()
                    return self._token("STRING", val, line, col)
                val += self.advance()
            raise LexError("Unterminated string", line, col)

        val = ""
        while not self.stream.end_of_file():
            ch = self.peek()
            if ch == "\\":
                self.advance()
                escaped = self.peek()
                if escaped in ("\\", quote):
                    val += self.advance()
                else:
                    val += "\\"
            elif ch == quote:
                self.advance()
                return self._token("STRING", val, line, col)
            else:
                val += self.advance()
        raise LexError("Unterminated string", line, col)

    def next_token(self) -> Token:
        """Reads one token, skipping the whitespace and comments before it.

        Raises:
            LexError: If a malformed token is encountered.
        """
        self.skip_whitespace()

        if self.stream.end_of_file():
            return Token("EOF", "", self.stream.line, self.stream.column)

        ch = self.peek()
        line, col = self.stream.line, self.stream.column

        # 1. Name or reserved word
        if ch.isalpha() or ch == "_":
            name = self.advance()
            while self.peek().isalnum() or self.peek() == "_":
                name += self.advance()
            kind = name.upper() if name in keyword_tokens else "IDENT"
            return self._token(kind, name, line, col)

        # 2. Number, including leading-dot floats
        if ch.isdecimal() or (ch == "." and self.peek(1).isdecimal()):
            return self.read_number(line, col)

        # 3. String
        if ch in ('"', "'"):
            return self.read_string(line, col)

        # 4. Operator or delimiter
        token = self.match_operator()
        if token:
            return token

        # 5. Unknown character
        return self._token("ERROR", self.advance(), line, col)


def tokenize(source: str) -> list[Token]:
    """Tokenizes a whole script. The returned list always ends with an EOF token."""
    lexer = Lexer(CharacterStream(source))
    tokens: list[Token] = []
    while True:
        tok = lexer.next_token()
        tokens.append(tok)
        if tok.type == "EOF":
            break
    logger.debug("Lexed %d tokens", len(tokens))
    return tokens


__all__ = ["CharacterStream", "Lexer", "Token", "tokenize"]
