"""
Runtime values of the ImageMath interpreter and the arithmetic defined on them.

Value kinds:
    number   Python float (every numeric literal evaluates to a float)
    string   Python str
    boolean  Python bool
    list     Python list of values
    map      Python dict
    image    `Image`, a float32 numpy array plus metadata

Operators:
    - number op number: float arithmetic, division by zero is an error
    - `+` with a string operand: concatenation, numbers formatted with two decimals
    - list + list concatenates, list - list removes elements, list * / list is
      element-wise for equal sizes, list op scalar maps over the list
    - image op image (same size) and image op number: element-wise; a result with
      a negative minimum is shifted so that its minimum is 0
"""

from typing import Any

import numpy as np

from imagemath.imagemath_errors import EvaluationError


class Image:
    """An image value.

    Mono images are `height x width` arrays, colour images `3 x height x width`.

    Attributes:
        data (np.ndarray): Pixel values as float32.
        metadata (dict[str, Any]): Free-form metadata such as the pixel shift.
    """

    def __init__(self, data: Any, metadata: dict[str, Any] | None = None) -> None:
        array = np.asarray(data, dtype=np.float32)
        if array.ndim == 3 and array.shape[0] != 3:
            raise ValueError(f"Colour images need 3 channels, got {array.shape[0]}")
        if array.ndim not in (2, 3):
            raise ValueError(f"Images must have 2 or 3 dimensions, got {array.ndim}")
        self.data = array
        self.metadata: dict[str, Any] = dict(metadata or {})

    @classmethod
    def placeholder(cls, **metadata: Any) -> "Image":
        return cls(np.zeros((1, 1), dtype=np.float32), {"placeholder": True, **metadata})

    @property
    def is_placeholder(self) -> bool:
        return bool(self.metadata.get("placeholder"))

    @property
    def width(self) -> int:
        return int(self.data.shape[-1])

    @property
    def height(self) -> int:
        return int(self.data.shape[-2])

    @property
    def is_color(self) -> bool:
        return self.data.ndim == 3

    def derive(self, data: Any) -> "Image":
        """A new image with `data` and a copy of this image's metadata."""
        return Image(data, self.metadata)

    def __repr__(self) -> str:
        kind = "rgb" if self.is_color else "mono"
        return f"Image({kind} {self.width}x{self.height})"


def type_name(value: Any) -> str:
    if value is None:
        return "none"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Image):
        return "image"
    if isinstance(value, list):
        return "list"
    if isinstance(value, dict):
        return "map"
    return type(value).__name__


def to_float(value: Any, what: str = "value") -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                pass
        raise EvaluationError(f"Expected a number for {what}, got {type_name(value)}")
    return float(value)


def as_text(value: Any) -> str:
    """String form used by `+` concatenation."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return "%.2f" % value
    if isinstance(value, list):
        return "[" + ", ".join(as_text(v) for v in value) + "]"
    return str(value)


def normalize(data: np.ndarray) -> np.ndarray:
    if data.size and float(np.nanmin(data)) < 0:
        return data - np.nanmin(data)
    return data


def _numeric(op: str, left: float, right: float) -> float:
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if right == 0:
        raise EvaluationError("Division by zero")
    return left / right


def _broadcast(left: np.ndarray, right: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    # mono operands are applied to every channel of a colour operand
    if left.ndim == 2 and right.ndim == 3:
        left = np.broadcast_to(left, right.shape)
    elif left.ndim == 3 and right.ndim == 2:
        right = np.broadcast_to(right, left.shape)
    return left, right


def _image_op(op: str, left: Any, right: Any) -> Image:
    template = left if isinstance(left, Image) else right
    if isinstance(left, Image) and isinstance(right, Image):
        if (left.width, left.height) != (right.width, right.height):
            raise EvaluationError(
                f"Cannot apply '{op}' to images of different sizes "
                f"({left.width}x{left.height} and {right.width}x{right.height})"
            )
        a, b = _broadcast(left.data, right.data)
    else:
        a = left.data if isinstance(left, Image) else np.float32(to_float(left, f"'{op}' operand"))
        b = right.data if isinstance(right, Image) else np.float32(to_float(right, f"'{op}' operand"))

    with np.errstate(divide="ignore", invalid="ignore"):
        if op == "+":
            result = a + b
        elif op == "-":
            result = a - b
        elif op == "*":
            result = a * b
        else:
            result = np.where(b == 0, 0, a / np.where(b == 0, 1, b))
    return template.derive(normalize(np.asarray(result, dtype=np.float32)))


def apply_operator(op: str, left: Any, right: Any) -> Any:
    """Applies a binary arithmetic operator to two runtime values.

    Raises:
        EvaluationError: If the operator is not defined for the operand kinds.
    """
    if op == "+" and (isinstance(left, str) or isinstance(right, str)):
        return as_text(left) + as_text(right)

    if isinstance(left, list) and isinstance(right, list):
        if op == "+":
            return left + right
        if op == "-":
            return [v for v in left if not any(_same(v, r) for r in right)]
        if len(left) != len(right):
            raise EvaluationError(
                f"Cannot apply '{op}' to lists of different sizes ({len(left)} and {len(right)})"
            )
        return [apply_operator(op, a, b) for a, b in zip(left, right)]
    if isinstance(left, list):
        return [apply_operator(op, v, right) for v in left]
    if isinstance(right, list):
        return [apply_operator(op, left, v) for v in right]

    if isinstance(left, Image) or isinstance(right, Image):
        return _image_op(op, left, right)

    if isinstance(left, (int, float)) and isinstance(right, (int, float)) and not (
        isinstance(left, bool) or isinstance(right, bool)
    ):
        return _numeric(op, float(left), float(right))

    raise EvaluationError(
        f"Operator '{op}' is not defined for {type_name(left)} and {type_name(right)}"
    )


def negate(value: Any) -> Any:
    if isinstance(value, bool):
        raise EvaluationError("Cannot negate a boolean")
    if isinstance(value, (int, float)):
        return -float(value)
    return apply_operator("-", 0.0, value)


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, Image) or isinstance(b, Image):
        return a is b
    return bool(a == b)


__all__ = [
    "Image",
    "apply_operator",
    "as_text",
    "negate",
    "normalize",
    "to_float",
    "type_name",
]
