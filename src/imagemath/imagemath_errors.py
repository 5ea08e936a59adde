"""
Error taxonomy of the ImageMath engine.

Lexing and parsing problems derive from the builtin `SyntaxError` so callers can
handle them like any other syntax failure. Everything raised while evaluating a
script derives from `EvaluationError`.

Classes:
    LexError: Unterminated literal or malformed number. Fatal for the lexed file.
    ParseError: Unexpected token. Recorded by the parser, which recovers from it.
    ImageMathError: Base class of the non-syntax errors.
    IncludeResolutionFailure: An include could not be loaded (non-fatal).
    EvaluationError: Failure while evaluating an expression.
    ArgumentValidationError: A function call with invalid arguments.
    UnresolvedNameError: Unknown variable or function.
    ForeignRuntimeError: Failure inside embedded Python code.
    ConfigError: Invalid engine configuration.
"""


class LexError(SyntaxError):
    def __init__(self, message: str, line: int = 0, col: int = 0) -> None:
        super().__init__(f"{message} at line {line}, col {col}")
        self.message = message
        self.line = line
        self.col = col
        self.lineno = line
        self.offset = col


class ParseError(SyntaxError):
    def __init__(self, message: str, line: int = 0, col: int = 0) -> None:
        super().__init__(f"{message} at line {line}, col {col}")
        self.message = message
        self.line = line
        self.col = col
        self.lineno = line
        self.offset = col


class ImageMathError(Exception):
    """Base class for engine errors that are not syntax errors."""


class IncludeResolutionFailure(ImageMathError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Unable to include '{path}': {reason}")
        self.path = path
        self.reason = reason


class EvaluationError(ImageMathError):
    """Raised when an expression cannot be evaluated.

    Attributes:
        line (int): Source line of the failing node, 0 when unknown.
        col (int): Source column of the failing node, 0 when unknown.
    """

    def __init__(self, message: str, line: int = 0, col: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.line = line
        self.col = col

    def located(self, line: int, col: int) -> "EvaluationError":
        """Attach a source location unless one is already known."""
        if not self.line:
            self.line = line
            self.col = col
        return self

    def __str__(self) -> str:
        if self.line:
            return f"{self.message} (line {self.line}, col {self.col})"
        return self.message


class ArgumentValidationError(EvaluationError):
    def __init__(self, function: str, argument: str | None, reason: str) -> None:
        super().__init__(reason)
        self.function = function
        self.argument = argument
        self.reason = reason


class UnresolvedNameError(EvaluationError):
    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"Unresolved {kind} '{name}'")
        self.kind = kind
        self.name = name


class ForeignRuntimeError(EvaluationError):
    PREFIX = "Python error: "

    def __init__(self, detail: str) -> None:
        super().__init__(f"{self.PREFIX}{detail}")
        self.detail = detail


class ConfigError(ImageMathError, ValueError):
    """Raised when the engine configuration cannot be loaded."""


__all__ = [
    "ArgumentValidationError",
    "ConfigError",
    "EvaluationError",
    "ForeignRuntimeError",
    "ImageMathError",
    "IncludeResolutionFailure",
    "LexError",
    "ParseError",
    "UnresolvedNameError",
]
