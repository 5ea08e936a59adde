"""
Built-in functions of the ImageMath language.

The catalog (names, argument contracts and documentation) is declared in
`imagemath_functions.yml` next to this module and loaded with ruamel.yaml. The
implementations are plain functions registered with the `@builtin` decorator.

Classes:
    Argument: One declared argument of a built-in.
    BuiltinFunction: Contract of a built-in: binding, validation, documentation.
    BuiltinRegistry: Catalog plus implementations, invoked by the evaluator.

Features:
    - Arguments are bound by name first, remaining positional values fill the
      remaining declared arguments in order.
    - Spread functions receive every argument in one list named `list`.
    - Derived constraints (such as the CLAHE tile size / bins ratio) are checked
      before any computation.
    - Functions flagged `map_over_lists` are applied element-wise when their
      first argument is a list.

Raises:
    ArgumentValidationError: On arity, unknown names, missing arguments or
        violated constraints.
    EvaluationError: When an implementation cannot compute its result.

Implementations receive a context object (the evaluator) providing
`load_image(shift)`, `run_python(script=..., file=...)` and `working_dir`.
"""

import logging
import math
from collections.abc import Callable
from pathlib import Path
from typing import Any, NamedTuple

import numpy as np
from ruamel.yaml import YAML

from imagemath.imagemath_errors import ArgumentValidationError, EvaluationError
from imagemath.imagemath_params import localize
from imagemath.imagemath_values import Image, normalize, to_float, type_name

logger = logging.getLogger(__name__)

CATALOG_FILE = Path(__file__).with_name("imagemath_functions.yml")
SPREAD_ARGUMENT = "list"
MAX_PIXEL = 65535.0

_yaml = YAML(typ="safe")

Implementation = Callable[[Any, dict[str, Any]], Any]
_IMPLEMENTATIONS: dict[str, Implementation] = {}
_CONSTRAINTS: dict[str, Callable[[dict[str, Any]], None]] = {}


class Argument(NamedTuple):
    name: str
    optional: bool = False
    description: dict[str, str] | None = None


class BuiltinFunction:
    """The declared contract of one built-in function.

    Attributes:
        name (str): Function name as written in scripts.
        category (str): Documentation category.
        arguments (tuple[Argument, ...]): Declared arguments in positional order.
        spread (bool): Whether every argument is collected into one list.
        map_over_lists (bool): Whether a list first argument maps the call.
        descriptions (dict[str, str]): Localized descriptions.
        examples (tuple[str, ...]): Usage examples.
    """

    def __init__(
        self,
        name: str,
        category: str = "utils",
        arguments: list[Argument] | None = None,
        spread: bool = False,
        map_over_lists: bool = False,
        descriptions: dict[str, str] | None = None,
        examples: list[str] | None = None,
    ) -> None:
        self.name = name
        self.category = category
        self.arguments = tuple(arguments or ())
        self.spread = spread
        self.map_over_lists = map_over_lists
        self.descriptions = descriptions or {}
        self.examples = tuple(examples or ())

    @classmethod
    def from_dict(cls, entry: dict[str, Any]) -> "BuiltinFunction":
        arguments = [
            Argument(str(arg["name"]), bool(arg.get("optional", False)), dict(arg.get("description") or {}))
            for arg in entry.get("arguments") or []
        ]
        return cls(
            name=str(entry["name"]),
            category=str(entry.get("category", "utils")),
            arguments=arguments,
            spread=bool(entry.get("spread", False)),
            map_over_lists=bool(entry.get("map_over_lists", False)),
            descriptions=dict(entry.get("description") or {}),
            examples=[str(e) for e in entry.get("examples") or []],
        )

    @property
    def required(self) -> list[str]:
        return [a.name for a in self.arguments if not a.optional]

    def get_description(self, language: str = "en") -> str | None:
        return localize(self.descriptions, language, None)

    def signature(self) -> str:
        if self.spread:
            return f"{self.name}(...)"
        names = ", ".join(a.name if not a.optional else f"[{a.name}]" for a in self.arguments)
        return f"{self.name}({names})"

    def _fail(self, argument: str | None, reason: str) -> ArgumentValidationError:
        return ArgumentValidationError(self.name, argument, f"Function '{self.name}' {reason}")

    def bind(self, positional: list[Any], named: dict[str, Any]) -> dict[str, Any]:
        """Maps call arguments onto the declared argument names, then validates them."""
        if self.spread:
            return self._bind_spread(positional, named)

        total = len(self.arguments)
        if len(positional) + len(named) > total:
            raise self._fail(None, self._arity_message())

        bound = dict(named)
        remaining = iter(a.name for a in self.arguments if a.name not in named)
        for value in positional:
            bound[next(remaining)] = value
        self.validate(bound)
        return bound

    def _bind_spread(self, positional: list[Any], named: dict[str, Any]) -> dict[str, Any]:
        unknown = [k for k in named if k != SPREAD_ARGUMENT]
        if unknown:
            raise self._fail(unknown[0], f"has unknown arguments: {', '.join(unknown)}")
        if SPREAD_ARGUMENT in named:
            given = named[SPREAD_ARGUMENT]
            values = list(given) if isinstance(given, list) else [given]
            return {SPREAD_ARGUMENT: values + list(positional)}
        return {SPREAD_ARGUMENT: list(positional)}

    def _arity_message(self) -> str:
        required = self.required
        if len(required) == len(self.arguments):
            names = ", ".join(required)
            return f"expects {len(required)} argument(s): {names}"
        names = ", ".join(a.name if not a.optional else f"[{a.name}]" for a in self.arguments)
        return f"expects between {len(required)} and {len(self.arguments)} arguments: {names}"

    def validate(self, bound: dict[str, Any]) -> None:
        declared = {a.name for a in self.arguments}
        unknown = [k for k in bound if k not in declared]
        if unknown:
            raise self._fail(unknown[0], f"has unknown arguments: {', '.join(unknown)}")
        missing = [name for name in self.required if name not in bound]
        if missing:
            raise self._fail(missing[0], f"is missing required arguments: {', '.join(missing)}")

    def __repr__(self) -> str:
        return f"BuiltinFunction({self.signature()})"


def load_catalog(path: str | Path = CATALOG_FILE) -> dict[str, BuiltinFunction]:
    """Reads a function catalog YAML file, a list of function entries."""
    path = Path(path)
    data = _yaml.load(path.read_text(encoding="utf-8")) or []
    if not isinstance(data, list):
        raise ValueError(f"Function catalog must be a list: {path}")
    catalog = {}
    for entry in data:
        function = BuiltinFunction.from_dict(entry)
        catalog[function.name] = function
    logger.debug("Loaded %d built-in functions from %s", len(catalog), path.name)
    return catalog


def builtin(name: str) -> Callable[[Implementation], Implementation]:
    def register(fn: Implementation) -> Implementation:
        _IMPLEMENTATIONS[name] = fn
        return fn

    return register


def constraint(name: str) -> Callable[[Callable[[dict[str, Any]], None]], Callable[[dict[str, Any]], None]]:
    def register(fn: Callable[[dict[str, Any]], None]) -> Callable[[dict[str, Any]], None]:
        _CONSTRAINTS[name] = fn
        return fn

    return register


class BuiltinRegistry:
    """Built-in functions available to scripts.

    Only catalog entries with an implementation are callable.
    """

    def __init__(self, catalog: dict[str, BuiltinFunction] | None = None) -> None:
        self.catalog = catalog if catalog is not None else load_catalog()
        missing = sorted(n for n in self.catalog if n not in _IMPLEMENTATIONS)
        if missing:
            logger.debug("Catalog functions without implementation: %s", ", ".join(missing))

    def __contains__(self, name: object) -> bool:
        return name in self.catalog and name in _IMPLEMENTATIONS

    def get(self, name: str) -> BuiltinFunction | None:
        return self.catalog.get(name) if name in self else None

    def names(self) -> list[str]:
        return sorted(n for n in self.catalog if n in self)

    def invoke(self, context: Any, name: str, positional: list[Any], named: dict[str, Any]) -> Any:
        function = self.catalog[name]
        args = function.bind(positional, named)
        first = function.arguments[0].name if function.arguments else None
        if function.map_over_lists and first is not None and isinstance(args.get(first), list):
            return [self._call(context, function, {**args, first: item}) for item in args[first]]
        return self._call(context, function, args)

    @staticmethod
    def _call(context: Any, function: BuiltinFunction, args: dict[str, Any]) -> Any:
        check = _CONSTRAINTS.get(function.name)
        if check is not None:
            check(args)
        return _IMPLEMENTATIONS[function.name](context, args)


# Helpers


def _flatten(values: list[Any]) -> list[Any]:
    flat: list[Any] = []
    for value in values:
        if isinstance(value, list):
            flat.extend(_flatten(value))
        else:
            flat.append(value)
    return flat


def _image(args: dict[str, Any], name: str, function: str) -> Image:
    value = args.get(name)
    if not isinstance(value, Image):
        raise ArgumentValidationError(
            function, name, f"Function '{function}' expects an image for '{name}', got {type_name(value)}"
        )
    return value


def _number(args: dict[str, Any], name: str, default: float | None = None) -> float:
    if name not in args:
        if default is None:
            raise EvaluationError(f"Missing argument '{name}'")
        return default
    return to_float(args[name], f"'{name}'")


def _reduce(function: str, values: list[Any], numbers: Callable[..., Any], pixels: Callable[..., Any]) -> Any:
    items = _flatten(values)
    if not items:
        raise EvaluationError(f"Function '{function}' needs at least one value")
    if all(isinstance(v, Image) for v in items):
        first = items[0]
        sizes = {(v.width, v.height, v.is_color) for v in items}
        if len(sizes) > 1:
            raise EvaluationError(f"Function '{function}' needs images of identical size")
        stack = np.stack([v.data for v in items])
        return first.derive(pixels(stack, axis=0))
    if all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in items):
        return float(numbers(np.asarray(items, dtype=np.float64)))
    kinds = sorted({type_name(v) for v in items})
    raise EvaluationError(f"Function '{function}' cannot combine {', '.join(kinds)}")


def _pixels_or_number(value: Any, op: Callable[[Any], Any]) -> Any:
    if isinstance(value, Image):
        with np.errstate(all="ignore"):
            data = np.asarray(op(value.data.astype(np.float64)), dtype=np.float32)
        return value.derive(normalize(np.nan_to_num(data, nan=0.0, posinf=MAX_PIXEL, neginf=0.0)))
    return float(op(to_float(value)))


# Loading


@builtin("img")
def img(context: Any, args: dict[str, Any]) -> Image:
    return context.load_image(to_float(args["ps"], "'ps'"))


@builtin("continuum")
def continuum(context: Any, args: dict[str, Any]) -> Image:
    image = context.load_image(0.0)
    return Image(image.data, {**image.metadata, "continuum": True})


def range_shifts(start: float, stop: float, step: float) -> list[float]:
    """Pixel shifts from `start` to `stop` inclusive, `step` apart."""
    if step <= 0:
        raise ArgumentValidationError("range", "step", "Function 'range' needs a positive step")
    if stop < start:
        return []
    count = int(math.floor((stop - start) / step + 1e-9)) + 1
    return [start + i * step for i in range(count)]


@builtin("range")
def range_(context: Any, args: dict[str, Any]) -> list[Image]:
    shifts = range_shifts(_number(args, "from"), _number(args, "to"), _number(args, "step", 1.0))
    return [context.load_image(shift) for shift in shifts]


@builtin("load")
def load(context: Any, args: dict[str, Any]) -> Image:
    path = Path(context.working_dir) / str(args["file"])
    if path.suffix.lower() != ".npy":
        raise EvaluationError(f"Unsupported image format: {path.name}")
    if not path.is_file():
        raise EvaluationError(f"Image file not found: {path}")
    data = np.load(path, allow_pickle=False)
    logger.debug("Loaded %s with shape %s", path, data.shape)
    try:
        return Image(data, {"file": str(path)})
    except ValueError as e:
        raise EvaluationError(f"Invalid image in {path.name}: {e}") from e


@builtin("load_many")
def load_many(context: Any, args: dict[str, Any]) -> list[Image]:
    directory = Path(context.working_dir) / str(args["dir"])
    if not directory.is_dir():
        raise EvaluationError(f"Directory not found: {directory}")
    pattern = str(args.get("pattern", "*.npy"))
    return [load(context, {"file": str(path)}) for path in sorted(directory.glob(pattern)) if path.is_file()]


# Lists and statistics


@builtin("list")
def list_(context: Any, args: dict[str, Any]) -> list[Any]:
    return list(args[SPREAD_ARGUMENT])


@builtin("concat")
def concat(context: Any, args: dict[str, Any]) -> list[Any]:
    result: list[Any] = []
    for value in args[SPREAD_ARGUMENT]:
        result.extend(value if isinstance(value, list) else [value])
    return result


@builtin("avg")
def avg(context: Any, args: dict[str, Any]) -> Any:
    return _reduce("avg", args[SPREAD_ARGUMENT], np.mean, np.mean)


@builtin("min")
def min_(context: Any, args: dict[str, Any]) -> Any:
    return _reduce("min", args[SPREAD_ARGUMENT], np.min, np.min)


@builtin("max")
def max_(context: Any, args: dict[str, Any]) -> Any:
    return _reduce("max", args[SPREAD_ARGUMENT], np.max, np.max)


@builtin("median")
def median(context: Any, args: dict[str, Any]) -> Any:
    return _reduce("median", args[SPREAD_ARGUMENT], np.median, np.median)


# Pixel math


@builtin("invert")
def invert(context: Any, args: dict[str, Any]) -> Image:
    image = _image(args, "img", "invert")
    return image.derive(np.clip(MAX_PIXEL - image.data, 0, MAX_PIXEL))


@builtin("pow")
def pow_(context: Any, args: dict[str, Any]) -> Any:
    exponent = _number(args, "exp")
    return _pixels_or_number(args["v"], lambda v: np.power(v, exponent))


@builtin("log")
def log(context: Any, args: dict[str, Any]) -> Any:
    base = _number(args, "base", math.e)
    if base <= 0 or base == 1:
        raise ArgumentValidationError("log", "base", f"Function 'log' needs a positive base other than 1, got {base}")
    value = args["v"]
    if not isinstance(value, Image) and to_float(value) <= 0:
        raise EvaluationError(f"Cannot compute the logarithm of {to_float(value)}")
    return _pixels_or_number(value, lambda v: np.log(np.maximum(v, 1e-12)) / math.log(base))


@builtin("exp")
def exp(context: Any, args: dict[str, Any]) -> Any:
    return _pixels_or_number(args["v"], np.exp)


# Enhancement


@builtin("linear_stretch")
def linear_stretch(context: Any, args: dict[str, Any]) -> Image:
    image = _image(args, "img", "linear_stretch")
    lo = _number(args, "lo", 0.0)
    hi = _number(args, "hi", MAX_PIXEL)
    data = image.data
    low, high = float(data.min()), float(data.max())
    if high == low:
        return image.derive(np.full_like(data, lo))
    return image.derive(lo + (data - low) * (hi - lo) / (high - low))


@constraint("clahe")
def _check_clahe(args: dict[str, Any]) -> None:
    ts = _number(args, "ts", 64.0)
    bins = _number(args, "bins", 256.0)
    clip = _number(args, "clip", 1.0)
    if ts < 1 or ts != int(ts):
        raise ArgumentValidationError("clahe", "ts", f"Function 'clahe' needs a positive integer tile size, got {ts}")
    if bins < 1 or bins != int(bins):
        raise ArgumentValidationError("clahe", "bins", f"Function 'clahe' needs a positive integer bin count, got {bins}")
    if clip <= 0:
        raise ArgumentValidationError("clahe", "clip", f"Function 'clahe' needs a positive clip limit, got {clip}")
    if ts * ts / bins < 1:
        raise ArgumentValidationError(
            "clahe",
            "bins",
            f"Function 'clahe' tile size squared divided by bins must be at least 1 (ts={ts:g}, bins={bins:g})",
        )


def equalize(channel: np.ndarray, tile: int, bins: int, clip: float) -> np.ndarray:
    """Tile-wise clipped histogram equalization of one channel scaled to [0, 1]."""
    out = np.empty_like(channel)
    height, width = channel.shape
    for y in range(0, height, tile):
        for x in range(0, width, tile):
            block = channel[y : y + tile, x : x + tile]
            hist, _ = np.histogram(block, bins=bins, range=(0.0, 1.0))
            hist = hist.astype(np.float64)
            limit = max(1.0, clip * block.size / bins)
            excess = np.maximum(hist - limit, 0).sum()
            hist = np.minimum(hist, limit) + excess / bins
            cdf = np.cumsum(hist)
            cdf /= cdf[-1]
            index = np.clip((block * bins).astype(np.int64), 0, bins - 1)
            out[y : y + tile, x : x + tile] = cdf[index]
    return out


@builtin("clahe")
def clahe(context: Any, args: dict[str, Any]) -> Image:
    image = _image(args, "img", "clahe")
    tile = int(_number(args, "ts", 64.0))
    bins = int(_number(args, "bins", 256.0))
    clip = _number(args, "clip", 1.0)
    scaled = np.clip(image.data / MAX_PIXEL, 0.0, 1.0)
    if image.is_color:
        result = np.stack([equalize(c, tile, bins, clip) for c in scaled])
    else:
        result = equalize(scaled, tile, bins, clip)
    return image.derive(result * MAX_PIXEL)


# Geometry and colour


@builtin("crop")
def crop(context: Any, args: dict[str, Any]) -> Image:
    image = _image(args, "img", "crop")
    left, top, width, height = (int(_number(args, k)) for k in ("left", "top", "width", "height"))
    if left < 0 or top < 0 or width <= 0 or height <= 0 or left + width > image.width or top + height > image.height:
        raise EvaluationError(
            f"Crop area {left},{top} {width}x{height} is outside the {image.width}x{image.height} image"
        )
    return image.derive(image.data[..., top : top + height, left : left + width])


@builtin("rgb")
def rgb(context: Any, args: dict[str, Any]) -> Image:
    channels = [_image(args, name, "rgb") for name in ("r", "g", "b")]
    if any(c.is_color for c in channels):
        raise EvaluationError("Function 'rgb' expects mono images")
    if len({(c.width, c.height) for c in channels}) > 1:
        raise EvaluationError("Function 'rgb' needs images of identical size")
    return channels[0].derive(np.stack([c.data for c in channels]))


@builtin("mono")
def mono(context: Any, args: dict[str, Any]) -> Image:
    image = _image(args, "img", "mono")
    if not image.is_color:
        return image
    return image.derive(image.data.mean(axis=0))


@builtin("saturate")
def saturate(context: Any, args: dict[str, Any]) -> Image:
    image = _image(args, "img", "saturate")
    factor = _number(args, "factor")
    if not image.is_color:
        return image
    gray = image.data.mean(axis=0)
    return image.derive(np.clip(gray + (image.data - gray) * factor, 0, MAX_PIXEL))


@builtin("width")
def width(context: Any, args: dict[str, Any]) -> float:
    return float(_image(args, "img", "width").width)


@builtin("height")
def height(context: Any, args: dict[str, Any]) -> float:
    return float(_image(args, "img", "height").height)


# Scripting


@builtin("python")
def python(context: Any, args: dict[str, Any]) -> Any:
    return context.run_python(script=str(args["script"]))


@builtin("python_file")
def python_file(context: Any, args: dict[str, Any]) -> Any:
    return context.run_python(file=Path(context.working_dir) / str(args["file"]))


__all__ = [
    "Argument",
    "BuiltinFunction",
    "BuiltinRegistry",
    "MAX_PIXEL",
    "builtin",
    "equalize",
    "load_catalog",
    "range_shifts",
]
