"""
ImageMath Parser

Parses ImageMath tokens into an abstract syntax tree rooted at a `script` node.

Supported Constructs
--------------------
- Section headers: `[name]`, `[]`, and major headers `[[name]]`
- Assignments `name = expr` and anonymous expression statements
- Infix arithmetic with conventional precedence: `+ -` < `* /` < unary `+ -`
- Function calls with positional and named arguments, separated by `,` or `;`
- User function definitions: `[fun:name a b]` followed by their body
- Includes: `[include "file"]`
- Declarative blocks: `meta { ... }` and top-level parameter declarations `name { ... }`

Parser Behavior
---------------
- Fault tolerant: syntax problems are recorded in `Parser.errors` as `ParseError`
  instances and the offending construct is replaced by an `error` node. Parsing then
  resumes at the next line or section header.
- Lexing problems (`LexError`) are not handled here: they are fatal for the file.
- Includes are left `pending`; see `imagemath_includes` for resolution.

Entry Points
------------
- `parse()`: Parse a full script into a `script` node.
- `parse_expression()`: Parse a single expression.
- `parse_source(text)`: Lex and parse in one call, returning the script and its errors.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

from imagemath.imagemath_ast import INCLUDE_PENDING, ASTNode
from imagemath.imagemath_constants import (
    META_KEYWORD,
    PARAMS_KEYWORD,
    additive_ops,
    argument_separators,
    multiplicative_ops,
    unary_ops,
)
from imagemath.imagemath_errors import ParseError
from imagemath.imagemath_lexer import Token, tokenize

logger = logging.getLogger(__name__)

# Tokens a malformed primary must not swallow, so the enclosing rule can recover.
_STRUCTURAL = frozenset({"EOF", "LBRACK", "RBRACK", "RPAREN", "RBRACE", "COMMA", "SEMI"})

# Deeper nesting of parentheses, calls or braces is reported instead of parsed.
MAX_NESTING = 64


class ParseResult(NamedTuple):
    script: ASTNode
    errors: list[ParseError]


class Parser:
    """
    ImageMath Parser Class

    Attributes
    ----------
    tokens : list[Token]
        The input token stream, normally terminated by an EOF token.
    position : int
        Current index into the token stream.
    errors : list[ParseError]
        Problems recorded while parsing, in source order.
    """

    def __init__(self, tokens: list[Token]) -> None:
        self.tokens: list[Token] = tokens
        self.position: int = 0
        self.errors: list[ParseError] = []
        self.depth: int = 0

    def current(self) -> Token:
        return (
            self.tokens[self.position]
            if self.position < len(self.tokens)
            else Token("EOF", "")
        )

    def peek(self, offset: int = 1) -> Token:
        index = self.position + offset
        return self.tokens[index] if index < len(self.tokens) else Token("EOF", "")

    def advance(self) -> Token:
        tok = self.current()
        if self.position < len(self.tokens):
            self.position += 1
        return tok

    def match(self, *types: str, strict: bool = True) -> Token | None:
        tok = self.current()
        if tok.type in types:
            self.advance()
            return tok
        if strict:
            raise ParseError(
                f"Expected one of {types}, got {self.describe(tok)}", tok.line, tok.col
            )
        return None

    def expect(self, type_: str, what: str) -> Token | None:
        """Like `match`, but records the problem instead of raising."""
        tok = self.match(type_, strict=False)
        if tok is None:
            self.record(f"Expected {what}", self.current())
        return tok

    @staticmethod
    def describe(tok: Token) -> str:
        return "end of input" if tok.type == "EOF" else f"'{tok.value}'"

    def reported_at(self, tok: Token) -> bool:
        return bool(self.errors) and (self.errors[-1].line, self.errors[-1].col) == (tok.line, tok.col)

    def record(self, message: str, tok: Token) -> ParseError:
        """Records a problem at `tok`. Only the first problem at a position is kept."""
        if self.reported_at(tok):
            return self.errors[-1]
        error = ParseError(f"{message}, got {self.describe(tok)}", tok.line, tok.col)
        self.errors.append(error)
        return error

    def error_node(self, error: ParseError) -> ASTNode:
        return ASTNode("error", error.message, line=error.line, col=error.col)

    def synchronize(self, line: int) -> None:
        """Skips tokens up to the next line or section bracket."""
        while self.current().type not in ("EOF", "LBRACK") and self.current().line == line:
            self.advance()

    def at_block_start(self) -> bool:
        tok = self.current()
        return tok.type in ("EOF", "LBRACK") or (
            tok.type == "IDENT" and self.peek().type == "LBRACE"
        )

    def parse(self) -> ASTNode:
        """Parse a full script and return its `script` node."""
        children: list[ASTNode] = []
        section: ASTNode | None = None

        while self.current().type != "EOF":
            pos_before = self.position
            tok = self.current()
            try:
                if tok.type == "LBRACK":
                    if self.peek().type == "INCLUDE":
                        children.append(self.parse_include())
                        section = None
                    elif self.peek().type == "FUN":
                        children.append(self.parse_function_def())
                        section = None
                    else:
                        section = self.parse_section_start()
                        children.append(section)
                elif tok.type == "IDENT" and self.peek().type == "LBRACE":
                    if tok.value == META_KEYWORD:
                        children.append(self.parse_meta_block())
                    else:
                        children.append(self.parse_parameter_def())
                elif tok.type in _STRUCTURAL and self.reported_at(tok):
                    # left behind by the statement that failed here
                    self.advance()
                else:
                    if section is None:
                        section = ASTNode("section", None, line=tok.line, col=tok.col)
                        children.append(section)
                    section.children.append(self.parse_statement())
            except ParseError as e:
                self.errors.append(e)
                node = self.error_node(e)
                if section is None:
                    children.append(node)
                else:
                    section.children.append(node)
                self.synchronize(tok.line)
            if self.position == pos_before:
                self.advance()

        end = self.current()
        children.append(ASTNode("eof", line=end.line, col=end.col))
        logger.debug(
            "Parsed script with %d top-level nodes and %d errors",
            len(children) - 1,
            len(self.errors),
        )
        return ASTNode("script", children=children, line=1, col=1)

    def parse_statement(self) -> ASTNode:
        """Parse an assignment or an anonymous expression statement."""
        tok = self.current()
        if tok.type == "IDENT" and self.peek().type == "ASSIGN":
            self.advance()
            self.advance()
            expr = self.parse_expression()
            return ASTNode("assignment", tok.value, [expr], tok.line, tok.col)
        expr = self.parse_expression()
        return ASTNode("assignment", None, [expr], tok.line, tok.col)

    def parse_section_start(self) -> ASTNode:
        """Parse `[name]`, `[]` or `[[name]]` and return an empty section node."""
        open_tok = self.match("LBRACK")
        assert open_tok is not None  # for mypy
        major = False
        name: str | None = None
        if self.current().type == "LBRACK":
            self.advance()
            major = True
            name_tok = self.match("IDENT")
            assert name_tok is not None  # for mypy
            name = name_tok.value
            self.match("RBRACK")
        elif self.current().type == "IDENT":
            name = self.advance().value
        self.match("RBRACK")
        header = ASTNode(
            "section_header",
            name,
            line=open_tok.line,
            col=open_tok.col,
            attrs={"major": major},
        )
        return ASTNode("section", header, line=open_tok.line, col=open_tok.col)

    def parse_include(self) -> ASTNode:
        open_tok = self.match("LBRACK")
        assert open_tok is not None  # for mypy
        self.match("INCLUDE")
        path = self.match("STRING")
        assert path is not None  # for mypy
        self.match("RBRACK")
        return ASTNode(
            "include",
            path.value,
            line=open_tok.line,
            col=open_tok.col,
            attrs={"status": INCLUDE_PENDING, "included": [], "reason": None},
        )

    def parse_function_def(self) -> ASTNode:
        """Parse `[fun:name p1 p2]` and the assignments that follow it."""
        open_tok = self.match("LBRACK")
        assert open_tok is not None  # for mypy
        self.match("FUN")
        self.match("COLON")
        name = self.match("IDENT")
        assert name is not None  # for mypy
        params: list[str] = []
        while self.current().type == "IDENT":
            params.append(self.advance().value)
        self.match("RBRACK")

        body: list[ASTNode] = []
        while not self.at_block_start():
            pos_before = self.position
            body.append(self.parse_statement())
            if self.position == pos_before:
                self.advance()
        return ASTNode(
            "function_def",
            name.value,
            body,
            line=open_tok.line,
            col=open_tok.col,
            attrs={"params": params},
        )

    # Expressions, lowest precedence first

    def parse_expression(self) -> ASTNode:
        if self.depth >= MAX_NESTING:
            tok = self.current()
            error = self.record("Expression nested too deeply", tok)
            self.synchronize(tok.line)
            return self.error_node(error)
        self.depth += 1
        try:
            return self.parse_additive()
        finally:
            self.depth -= 1

    def parse_additive(self) -> ASTNode:
        left = self.parse_multiplicative()
        while self.current().type in additive_ops:
            op = self.advance()
            right = self.parse_multiplicative()
            left = ASTNode("binary", op.value, [left, right], left.line, left.col)
        return left

    def parse_multiplicative(self) -> ASTNode:
        left = self.parse_unary()
        while self.current().type in multiplicative_ops:
            op = self.advance()
            right = self.parse_unary()
            left = ASTNode("binary", op.value, [left, right], left.line, left.col)
        return left

    def parse_unary(self) -> ASTNode:
        if self.current().type in unary_ops:
            op = self.advance()
            operand = self.parse_primary()
            return ASTNode("unary", op.value, [operand], op.line, op.col)
        return self.parse_primary()

    def parse_primary(self) -> ASTNode:
        tok = self.current()
        if tok.type == "IDENT":
            if self.peek().type == "LPAREN":
                return self.parse_call()
            self.advance()
            return ASTNode("variable", tok.value, line=tok.line, col=tok.col)
        if tok.type == "STRING":
            self.advance()
            return ASTNode("string", tok.value, line=tok.line, col=tok.col)
        if tok.type == "NUMBER":
            self.advance()
            return self.number_node(tok)
        if tok.type == "LPAREN":
            self.advance()
            inner = self.parse_expression()
            self.expect("RPAREN", "')'")
            return ASTNode("group", None, [inner], tok.line, tok.col)

        error = self.record("Expected an expression", tok)
        if tok.type not in _STRUCTURAL:
            self.advance()
        return self.error_node(error)

    def number_node(self, tok: Token, sign: float = 1.0) -> ASTNode:
        try:
            value = float(tok.value.replace("_", ""))
        except ValueError:
            return self.error_node(self.record("Malformed number", tok))
        return ASTNode("number", sign * value, line=tok.line, col=tok.col)

    def parse_call(self) -> ASTNode:
        name = self.advance()
        self.advance()  # '('
        args: list[ASTNode] = []
        if self.current().type == "RPAREN":
            self.advance()
        else:
            while True:
                args.append(self.parse_argument())
                if self.current().type in argument_separators:
                    self.advance()
                    if self.current().type == "RPAREN":
                        self.advance()
                        break
                    continue
                if self.current().type == "RPAREN":
                    self.advance()
                    break
                self.record("Expected ',', ';' or ')'", self.current())
                break
        return ASTNode("call", name.value, args, name.line, name.col)

    def parse_argument(self) -> ASTNode:
        tok = self.current()
        if tok.type == "IDENT" and self.peek().type == "COLON":
            self.advance()
            self.advance()
            expr = self.parse_expression()
            return ASTNode("named_argument", tok.value, [expr], tok.line, tok.col)
        return self.parse_expression()

    # Declarative blocks

    def parse_meta_block(self) -> ASTNode:
        meta = self.advance()
        self.match("LBRACE")
        entries = self.parse_entries("meta")
        self.expect("RBRACE", "'}'")
        return ASTNode("meta_block", None, entries, meta.line, meta.col)

    def parse_parameter_def(self) -> ASTNode:
        name = self.advance()
        brace = self.match("LBRACE")
        assert brace is not None  # for mypy
        props = self.parse_entries("parameter")
        self.expect("RBRACE", "'}'")
        obj = ASTNode("parameter_object", None, props, brace.line, brace.col)
        return ASTNode("parameter_def", name.value, [obj], name.line, name.col)

    def parse_entries(self, context: str) -> list[ASTNode]:
        """
        Parse the entries of a `{ ... }` block up to, but excluding, the closing brace.

        `context` is one of "meta", "params" or "parameter" and selects the node
        kinds that are produced.
        """
        entries: list[ASTNode] = []
        while self.current().type not in ("RBRACE", "EOF"):
            if self.current().type in argument_separators:
                self.advance()
                continue
            key = self.current()
            if key.type != "IDENT":
                self.record("Expected a property name", key)
                self.advance()
                continue
            self.advance()
            if context == "params":
                if self.expect("LBRACE", "'{'") is None:
                    continue
                props = self.parse_entries("parameter")
                self.expect("RBRACE", "'}'")
                obj = ASTNode("parameter_object", None, props, key.line, key.col)
                entries.append(ASTNode("parameter_def", key.value, [obj], key.line, key.col))
                continue

            prop_kind = "meta_property" if context == "meta" else "parameter_property"
            value = self.parse_entry_value(context, key)
            if value is not None:
                entries.append(ASTNode(prop_kind, key.value, [value], key.line, key.col))
        return entries

    def parse_entry_value(self, context: str, key: Token) -> ASTNode | None:
        tok = self.current()
        if tok.type in ("ASSIGN", "COLON"):
            self.advance()
            tok = self.current()
            if tok.type != "LBRACE":
                return self.parse_literal_value()
        if tok.type == "LBRACE":
            self.advance()
            if self.depth >= MAX_NESTING:
                error = self.record("Block nested too deeply", tok)
                self.skip_block()
                self.expect("RBRACE", "'}'")
                return self.error_node(error)
            self.depth += 1
            try:
                if context == "meta" and key.value == PARAMS_KEYWORD:
                    nested = self.parse_entries("params")
                else:
                    nested = self.parse_entries(context)
            finally:
                self.depth -= 1
            self.expect("RBRACE", "'}'")
            kind = "meta_object" if context == "meta" else "parameter_object"
            return ASTNode(kind, None, nested, tok.line, tok.col)
        self.record(f"Expected '=' or '{{' after '{key.value}'", tok)
        return None

    def skip_block(self) -> None:
        """Skips the rest of a `{ ... }` block, stopping before its closing brace."""
        level = 0
        while self.current().type != "EOF":
            if self.current().type == "RBRACE":
                if level == 0:
                    return
                level -= 1
            elif self.current().type == "LBRACE":
                level += 1
            self.advance()

    def parse_literal_value(self) -> ASTNode:
        tok = self.current()
        if tok.type == "STRING":
            self.advance()
            return ASTNode("string", tok.value, line=tok.line, col=tok.col)
        if tok.type == "NUMBER":
            self.advance()
            return self.number_node(tok)
        if tok.type in unary_ops and self.peek().type == "NUMBER":
            self.advance()
            number = self.advance()
            node = self.number_node(number, -1.0 if tok.type == "MINUS" else 1.0)
            return node.replace(line=tok.line, col=tok.col)
        if tok.type == "IDENT":
            self.advance()
            return ASTNode("variable", tok.value, line=tok.line, col=tok.col)
        error = self.record("Expected a value", tok)
        if tok.type not in _STRUCTURAL:
            self.advance()
        return self.error_node(error)


def parse_source(source: str) -> ParseResult:
    """Lex and parse `source`.

    Raises:
        LexError: If the text cannot be tokenized.
    """
    parser = Parser(tokenize(source))
    script = parser.parse()
    return ParseResult(script, parser.errors)


__all__ = ["ParseResult", "Parser", "parse_source"]
