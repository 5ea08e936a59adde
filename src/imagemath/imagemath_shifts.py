"""
Static discovery of the pixel shifts a script needs.

The collector runs the interpreter without images: `img()`, `continuum()` and
`range()` record the shifts they would load and return placeholder images,
file loads return placeholders and Python calls return no result. Arithmetic
with a placeholder operand gives a placeholder. A failing call or statement
yields a placeholder, so later statements that use it are still visited.

    shifts = collect_shifts(script, params={"doppler_shift": 7})
"""

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from imagemath.imagemath_ast import ASTNode, SectionKind, find_sections, function_defs
from imagemath.imagemath_builtins import BuiltinRegistry, range_shifts
from imagemath.imagemath_config import EngineConfig
from imagemath.imagemath_errors import EvaluationError
from imagemath.imagemath_eval import Environment, Evaluator, UserFunction
from imagemath.imagemath_params import ParameterExtractor
from imagemath.imagemath_values import Image, to_float

logger = logging.getLogger(__name__)

_LOADERS = ("load", "load_many")


def _is_placeholder(value: Any) -> bool:
    if isinstance(value, Image):
        return value.is_placeholder
    if isinstance(value, list):
        return any(_is_placeholder(v) for v in value)
    return False


class ShiftCollectingEvaluator(Evaluator):
    """An Evaluator that records pixel shifts instead of loading images."""

    def load_image(self, shift: float) -> Image:
        shift = float(shift)
        self.shifts.add(shift)
        return Image.placeholder(shift=shift)

    def run_python(self, script: str | None = None, file: str | Path | None = None) -> Any:
        return None

    def combine(self, op: str, left: Any, right: Any) -> Any:
        if _is_placeholder(left) or _is_placeholder(right):
            return Image.placeholder()
        return super().combine(op, left, right)

    def negate(self, value: Any) -> Any:
        if _is_placeholder(value):
            return Image.placeholder()
        return super().negate(value)

    def call_builtin(self, name: str, positional: list[Any], named: dict[str, Any]) -> Any:
        if name in _LOADERS:
            return Image.placeholder()
        if name == "range":
            return self.collect_range(positional, named)
        try:
            return super().call_builtin(name, positional, named)
        except EvaluationError as e:
            logger.debug("Ignoring failure of '%s' while collecting shifts: %s", name, e)
            return Image.placeholder()

    def collect_range(self, positional: list[Any], named: dict[str, Any]) -> Any:
        function = self.registry.get("range")
        try:
            if function is None:
                raise EvaluationError("Function 'range' is not available")
            args = function.bind(positional, named)
            shifts = range_shifts(
                to_float(args["from"]), to_float(args["to"]), to_float(args.get("step", 1.0))
            )
        except EvaluationError as e:
            logger.debug("Ignoring invalid range while collecting shifts: %s", e)
            return Image.placeholder()
        return [self.load_image(shift) for shift in shifts]

    def call_user_function(self, function: UserFunction, positional: list[Any], named: dict[str, Any]) -> Any:
        try:
            return super().call_user_function(function, positional, named)
        except EvaluationError as e:
            logger.debug("Ignoring failure of '%s' while collecting shifts: %s", function.name, e)
            return Image.placeholder()

    def run_body_statement(self, function: UserFunction, statement: ASTNode, local: Environment) -> Any:
        try:
            return super().run_body_statement(function, statement, local)
        except EvaluationError as e:
            logger.debug("Statement at line %d of '%s' has no value: %s", statement.line, function.name, e)
            return Image.placeholder()


def collect_shifts(
    script: ASTNode,
    inputs: Mapping[str, Any] | None = None,
    params: Mapping[str, Any] | None = None,
    config: EngineConfig | None = None,
    registry: BuiltinRegistry | None = None,
) -> set[float]:
    """Returns the distinct pixel shifts a script with inlined includes would load."""
    env = Environment()
    env.variables.update(ParameterExtractor().extract_from_ast(script).default_values())
    env.variables.update(params or {})
    env.variables.update(inputs or {})
    evaluator = ShiftCollectingEvaluator(
        globals=env,
        functions={n.value: UserFunction.from_node(n) for n in function_defs(script)},
        registry=registry,
        config=config,
    )

    sections = find_sections(script, SectionKind.SINGLE) + find_sections(script, SectionKind.BATCH)
    for section in sections:
        for statement in section.children:
            if statement.kind != "assignment":
                continue
            try:
                value = evaluator.evaluate(statement.children[0], env)
            except EvaluationError as e:
                logger.debug("Statement at line %d has no value: %s", statement.line, e)
                value = Image.placeholder()
            if statement.value:
                env.assign(statement.value, value)

    logger.debug("Collected %d pixel shifts", len(evaluator.shifts))
    return set(evaluator.shifts)


__all__ = ["ShiftCollectingEvaluator", "collect_shifts"]
