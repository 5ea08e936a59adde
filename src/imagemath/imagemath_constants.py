"""
Shared constants for the ImageMath scripting engine.

Exports:
    token_hashmap: Maps operator and delimiter symbols to canonical token types.
    keyword_tokens: The reserved words of the language.
    additive_ops / multiplicative_ops / unary_ops: Operator token types by precedence level.
    Well-known names used across the engine (section names, variables, file extension).
"""

ENGINE_VERSION = "5.2.0"

token_hashmap: dict[str, str] = {
    "+": "PLUS",
    "-": "MINUS",
    "*": "MULT",
    "/": "DIV",
    "=": "ASSIGN",
    "[": "LBRACK",
    "]": "RBRACK",
    "(": "LPAREN",
    ")": "RPAREN",
    "{": "LBRACE",
    "}": "RBRACE",
    ",": "COMMA",
    ";": "SEMI",
    ":": "COLON",
}

keyword_tokens: frozenset[str] = frozenset({"fun", "include"})

additive_ops: frozenset[str] = frozenset({"PLUS", "MINUS"})
multiplicative_ops: frozenset[str] = frozenset({"MULT", "DIV"})
unary_ops: frozenset[str] = additive_ops

argument_separators: frozenset[str] = frozenset({"COMMA", "SEMI"})

# Section and variable names with a meaning to the executor
BATCH_SECTION = "batch"
OUTPUTS_SECTION = "outputs"
RESULT_VARIABLE = "result"
META_KEYWORD = "meta"
PARAMS_KEYWORD = "params"
INTERNAL_PREFIX = "__"

INCLUDE_EXTENSION = ".math"

__all__ = [
    "BATCH_SECTION",
    "ENGINE_VERSION",
    "INCLUDE_EXTENSION",
    "INTERNAL_PREFIX",
    "META_KEYWORD",
    "OUTPUTS_SECTION",
    "PARAMS_KEYWORD",
    "RESULT_VARIABLE",
    "additive_ops",
    "argument_separators",
    "keyword_tokens",
    "multiplicative_ops",
    "token_hashmap",
    "unary_ops",
]
