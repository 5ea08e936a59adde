"""
Embedded Python runtime for the `python()` and `python_file()` built-ins.

Each evaluation run owns one `PythonContext`: a persistent namespace, so names
defined by one snippet are visible to the next snippet of the same run. Contexts
are handed out by a `ContextRegistry` that the caller creates and disposes.

Before each execution the script variables are copied into the namespace,
`result` is cleared and an `imagemath` object (an `ImageMathBridge`) is exposed.
The value of `result` after execution is the value of the call.

    result = imagemath.get_variable("shift", 0) * 2
    data = imagemath.get_data(imagemath.get_variable("img"))

Conversions from Python values:
    bool, str          unchanged
    int, float         float
    numpy scalars      float (or bool)
    numpy 2D/3D arrays Image
    list, tuple        list, converted element-wise
    dict               dict with string keys, converted value-wise
    Image              unchanged
    None               no result

Raises:
    ForeignRuntimeError: For any exception raised by guest code.
"""

import builtins
import logging
import threading
import traceback
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import numpy as np

from imagemath.imagemath_errors import ForeignRuntimeError
from imagemath.imagemath_values import Image

logger = logging.getLogger(__name__)

BRIDGE_NAME = "imagemath"
INLINE_FILENAME = "<imagemath>"


def from_guest(value: Any) -> Any:
    """Converts a value produced by Python code into an ImageMath value."""
    if value is None or isinstance(value, (bool, str, Image)):
        return value
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, (int, float, np.integer, np.floating)):
        return float(value)
    if isinstance(value, np.ndarray):
        if value.ndim in (2, 3):
            return Image(value)
        return [from_guest(v) for v in value.tolist()]
    if isinstance(value, (list, tuple)):
        return [from_guest(v) for v in value]
    if isinstance(value, dict):
        return {str(k): from_guest(v) for k, v in value.items()}
    return value


def to_guest(value: Any) -> Any:
    """Copies an ImageMath value for Python code. Images are passed as handles."""
    if isinstance(value, list):
        return [to_guest(v) for v in value]
    if isinstance(value, dict):
        return {k: to_guest(v) for k, v in value.items()}
    return value


def describe_exception(error: BaseException, filename: str) -> str:
    if isinstance(error, SyntaxError):
        return f"SyntaxError: {error.msg} (line {error.lineno})"
    lines = [f.lineno for f in traceback.extract_tb(error.__traceback__) if f.filename == filename]
    location = f" (line {lines[-1]})" if lines else ""
    return f"{type(error).__name__}: {error}{location}"


class ImageMathBridge:
    """The `imagemath` object seen by Python code.

    Args:
        evaluator: Evaluator of the current run, used for `call()`.
        env: Scope of the calling expression, used for variables.
    """

    def __init__(self, evaluator: Any, env: Any) -> None:
        self._evaluator = evaluator
        self._env = env

    def get_variable(self, name: str, default: Any = None) -> Any:
        if name in self._env:
            return to_guest(self._env.lookup(name))
        return default

    def set_variable(self, name: str, value: Any) -> None:
        self._env.assign(name, from_guest(value))

    @staticmethod
    def width(image: Image) -> int:
        return image.width

    @staticmethod
    def height(image: Image) -> int:
        return image.height

    @staticmethod
    def get_data(image: Image) -> np.ndarray:
        return image.data.copy()

    @staticmethod
    def create_mono(width: int, height: int, data: Any) -> Image:
        array = np.asarray(data, dtype=np.float32)
        if array.size != width * height:
            raise ValueError(f"Expected {width * height} values for a {width}x{height} image, got {array.size}")
        return Image(array.reshape(height, width))

    @staticmethod
    def create_rgb(r: Image, g: Image, b: Image) -> Image:
        return Image(np.stack([r.data, g.data, b.data]))

    def call(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """Calls an ImageMath function, built-in or user-defined."""
        positional = [from_guest(a) for a in args]
        named = {k: from_guest(v) for k, v in kwargs.items()}
        return to_guest(self._evaluator.invoke(name, positional, named, self._env))


class PythonContext:
    """A persistent Python namespace for one run.

    Executions are serialized by the context lock.
    """

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self.namespace: dict[str, Any] = {"__name__": "__imagemath__", "__builtins__": builtins}
        self.lock = threading.RLock()
        self.closed = False

    def execute_inline(self, script: str, variables: dict[str, Any] | None = None, bridge: Any = None) -> Any:
        return self._execute(script, INLINE_FILENAME, variables, bridge)

    def execute_file(self, path: str | Path, variables: dict[str, Any] | None = None, bridge: Any = None) -> Any:
        path = Path(path)
        try:
            source = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ForeignRuntimeError(f"cannot read {path}: {e.strerror or e}") from e
        with self.lock:
            self.namespace["__file__"] = str(path)
            return self._execute(source, str(path), variables, bridge)

    def _execute(self, source: str, filename: str, variables: dict[str, Any] | None, bridge: Any) -> Any:
        with self.lock:
            if self.closed:
                raise ForeignRuntimeError(f"context {self.run_id} is closed")
            for name, value in (variables or {}).items():
                self.namespace[name] = to_guest(value)
            self.namespace.pop("result", None)
            if bridge is not None:
                self.namespace[BRIDGE_NAME] = bridge
            logger.debug("Executing Python code from %s in context %s", filename, self.run_id)
            try:
                code = compile(source, filename, "exec")
                exec(code, self.namespace)
            except Exception as e:
                raise ForeignRuntimeError(describe_exception(e, filename)) from e
            return from_guest(self.namespace.get("result"))

    def close(self) -> None:
        with self.lock:
            self.namespace.clear()
            self.closed = True


class ContextRegistry:
    """Maps run ids to their Python context."""

    def __init__(self) -> None:
        self._contexts: dict[str, PythonContext] = {}
        self._lock = threading.Lock()

    def get_or_create(self, run_id: str) -> PythonContext:
        with self._lock:
            context = self._contexts.get(run_id)
            if context is None:
                context = PythonContext(run_id)
                self._contexts[run_id] = context
                logger.debug("Created Python context %s", run_id)
            return context

    def dispose(self, run_id: str) -> None:
        with self._lock:
            context = self._contexts.pop(run_id, None)
        if context is not None:
            context.close()
            logger.debug("Disposed Python context %s", run_id)

    def dispose_all(self) -> None:
        with self._lock:
            run_ids = list(self._contexts)
        for run_id in run_ids:
            self.dispose(run_id)

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return run_id in self._contexts

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    @contextmanager
    def run(self, run_id: str | None = None) -> Iterator[str]:
        """Yields a run id whose context is disposed on exit."""
        run_id = run_id or uuid.uuid4().hex
        try:
            yield run_id
        finally:
            self.dispose(run_id)


__all__ = [
    "ContextRegistry",
    "ImageMathBridge",
    "PythonContext",
    "from_guest",
    "to_guest",
]
