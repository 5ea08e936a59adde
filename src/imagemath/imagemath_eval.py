"""
Evaluation of ImageMath scripts.

Classes:
    ImageProvider / MappingImageProvider: Source of the images returned by `img(shift)`.
    Environment: Variable scope with an optional parent scope.
    UserFunction: A `[fun:name params]` definition.
    Evaluator: Walks expression nodes and dispatches function calls.
    InvalidExpression: A statement that failed, with its error and location.
    ScriptResult: Outputs and diagnostics of one run.
    ScriptExecutor: Runs the standard or batch sections of a script.
    BatchRunner / BatchResult: Per-item runs followed by one batch pass.

Function resolution order is built-in, then user function, then an
`UnresolvedNameError`. Variables resolve in the local function scope, then in
the script scope.

Example:
    >>> from imagemath.imagemath_parser import parse_source
    >>> script = parse_source("[outputs]\\nx = 1 + 2 * 3")[0]
    >>> ScriptExecutor(script).execute().outputs
    {'x': 7.0}
"""

import itertools
import logging
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any, Callable, NamedTuple, Protocol

from imagemath.imagemath_ast import (
    ASTNode,
    SectionKind,
    find_sections,
    function_defs,
    section_name,
)
from imagemath.imagemath_bridge import ContextRegistry, ImageMathBridge
from imagemath.imagemath_builtins import BuiltinRegistry
from imagemath.imagemath_config import EngineConfig
from imagemath.imagemath_constants import (
    BATCH_SECTION,
    INTERNAL_PREFIX,
    OUTPUTS_SECTION,
    RESULT_VARIABLE,
)
from imagemath.imagemath_errors import (
    ArgumentValidationError,
    EvaluationError,
    UnresolvedNameError,
)
from imagemath.imagemath_params import ParameterExtractor
from imagemath.imagemath_printer import to_source
from imagemath.imagemath_values import Image, apply_operator, negate

logger = logging.getLogger(__name__)

_run_ids = itertools.count()


class ImageProvider(Protocol):
    def get(self, shift: float) -> Image: ...


class MappingImageProvider:
    """Serves images from a mapping of pixel shift to image."""

    def __init__(self, images: Mapping[float, Image] | None = None) -> None:
        self.images = {float(k): v for k, v in (images or {}).items()}

    def get(self, shift: float) -> Image:
        try:
            return self.images[float(shift)]
        except KeyError:
            raise EvaluationError(f"No image available for pixel shift {shift:g}") from None


def as_provider(images: ImageProvider | Mapping[float, Image] | None) -> ImageProvider:
    if images is None or isinstance(images, Mapping):
        return MappingImageProvider(images)
    return images


class Environment:
    """A variable scope. Lookups fall back to the parent scope."""

    def __init__(self, parent: "Environment | None" = None) -> None:
        self.variables: dict[str, Any] = {}
        self.parent = parent

    def lookup(self, name: str) -> Any:
        scope: Environment | None = self
        while scope is not None:
            if name in scope.variables:
                return scope.variables[name]
            scope = scope.parent
        raise UnresolvedNameError("variable", name)

    def assign(self, name: str, value: Any) -> None:
        self.variables[name] = value

    def __contains__(self, name: object) -> bool:
        return name in self.variables or (self.parent is not None and name in self.parent)

    def flatten(self) -> dict[str, Any]:
        """All visible variables, inner scopes overriding outer ones."""
        merged = self.parent.flatten() if self.parent is not None else {}
        merged.update(self.variables)
        return merged


class UserFunction(NamedTuple):
    name: str
    params: tuple[str, ...]
    body: tuple[ASTNode, ...]

    @classmethod
    def from_node(cls, node: ASTNode) -> "UserFunction":
        return cls(node.value, tuple(node.attrs.get("params", ())), tuple(node.children))


class Evaluator:
    """Evaluates expression nodes against an environment.

    Attributes:
        globals (Environment): Script scope, parent of every function scope.
        functions (dict[str, UserFunction]): User functions by name.
        shifts (set[float]): Pixel shifts loaded so far.
    """

    def __init__(
        self,
        globals: Environment | None = None,
        functions: Mapping[str, UserFunction] | None = None,
        images: ImageProvider | Mapping[float, Image] | None = None,
        registry: BuiltinRegistry | None = None,
        config: EngineConfig | None = None,
        contexts: ContextRegistry | None = None,
        run_id: str | None = None,
    ) -> None:
        self.globals = globals if globals is not None else Environment()
        self.functions = dict(functions or {})
        self.images = as_provider(images)
        self.registry = registry if registry is not None else default_registry()
        self.config = config or EngineConfig()
        self.contexts = contexts
        self.run_id = run_id or f"run-{next(_run_ids)}"
        self.shifts: set[float] = set()
        self.depth = 0
        self.active_env = self.globals

    @property
    def working_dir(self) -> Path:
        return self.config.working_dir or Path.cwd()

    def evaluate(self, node: ASTNode, env: Environment) -> Any:
        match node.kind:
            case "number":
                return float(node.value)
            case "string":
                return node.value
            case "variable":
                try:
                    return env.lookup(node.value)
                except EvaluationError as e:
                    raise e.located(node.line, node.col)
            case "group":
                return self.evaluate(node.children[0], env)
            case "unary":
                value = self.evaluate(node.children[0], env)
                return self.negate(value) if node.value == "-" else value
            case "binary":
                left = self.evaluate(node.children[0], env)
                right = self.evaluate(node.children[1], env)
                try:
                    return self.combine(node.value, left, right)
                except EvaluationError as e:
                    raise e.located(node.line, node.col)
            case "call":
                try:
                    return self.call(node, env)
                except EvaluationError as e:
                    raise e.located(node.line, node.col)
            case "error":
                raise EvaluationError(f"Syntax error: {node.value}", node.line, node.col)
            case _:
                raise EvaluationError(f"Cannot evaluate a '{node.kind}' node", node.line, node.col)

    def combine(self, op: str, left: Any, right: Any) -> Any:
        return apply_operator(op, left, right)

    def negate(self, value: Any) -> Any:
        return negate(value)

    def call(self, node: ASTNode, env: Environment) -> Any:
        positional: list[Any] = []
        named: dict[str, Any] = {}
        for arg in node.children:
            if arg.kind == "named_argument":
                if arg.value in named:
                    raise ArgumentValidationError(
                        node.value, arg.value, f"Function '{node.value}' has duplicate argument '{arg.value}'"
                    )
                named[arg.value] = self.evaluate(arg.children[0], env)
            else:
                positional.append(self.evaluate(arg, env))
        return self.invoke(node.value, positional, named, env)

    def invoke(self, name: str, positional: list[Any], named: dict[str, Any], env: Environment) -> Any:
        """Calls a built-in or user function with already evaluated arguments."""
        if name in self.registry:
            previous, self.active_env = self.active_env, env
            try:
                return self.call_builtin(name, positional, named)
            finally:
                self.active_env = previous
        if name in self.functions:
            return self.call_user_function(self.functions[name], positional, named)
        raise UnresolvedNameError("function", name)

    def call_builtin(self, name: str, positional: list[Any], named: dict[str, Any]) -> Any:
        try:
            return self.registry.invoke(self, name, positional, named)
        except (ValueError, TypeError, ArithmeticError, OSError) as e:
            raise EvaluationError(f"Function '{name}' failed: {e}") from e

    def bind_user_arguments(
        self, function: UserFunction, positional: list[Any], named: dict[str, Any]
    ) -> dict[str, Any]:
        unknown = [k for k in named if k not in function.params]
        if unknown:
            raise ArgumentValidationError(
                function.name, unknown[0], f"Function '{function.name}' has unknown arguments: {', '.join(unknown)}"
            )
        free = [p for p in function.params if p not in named]
        given = len(positional) + len(named)
        if given > len(function.params) or (self.config.strict_function_arity and given < len(function.params)):
            raise ArgumentValidationError(
                function.name,
                None,
                f"Function '{function.name}' expects {len(function.params)} argument(s): "
                f"{', '.join(function.params)}",
            )
        bound = dict(zip(free, positional))
        bound.update(named)
        return bound

    def call_user_function(self, function: UserFunction, positional: list[Any], named: dict[str, Any]) -> Any:
        bound = self.bind_user_arguments(function, positional, named)
        first = function.params[0] if function.params else None
        if first is not None and isinstance(bound.get(first), list):
            items = bound[first]
            return [self.call_user_function(function, [], {**bound, first: item}) for item in items]

        if self.depth >= self.config.max_call_depth:
            raise EvaluationError(
                f"Maximum call depth of {self.config.max_call_depth} exceeded in function '{function.name}'"
            )
        local = Environment(self.globals)
        for name, value in bound.items():
            local.assign(name, value)

        self.depth += 1
        try:
            last: Any = None
            for statement in function.body:
                value = self.run_body_statement(function, statement, local)
                if statement.kind == "assignment" and statement.value:
                    local.assign(statement.value, value)
                last = value
        finally:
            self.depth -= 1
        if RESULT_VARIABLE in local.variables:
            return local.variables[RESULT_VARIABLE]
        return last

    def run_body_statement(self, function: UserFunction, statement: ASTNode, local: Environment) -> Any:
        if statement.kind != "assignment":
            raise EvaluationError(
                f"Syntax error in function '{function.name}': {statement.value}",
                statement.line,
                statement.col,
            )
        return self.evaluate(statement.children[0], local)

    def load_image(self, shift: float) -> Image:
        shift = float(shift)
        image = self.images.get(shift)
        self.shifts.add(shift)
        return image

    def run_python(self, script: str | None = None, file: str | Path | None = None) -> Any:
        """Runs embedded Python in the context of the current run."""
        if not self.config.python_enabled:
            raise EvaluationError("Python execution is disabled")
        if self.contexts is None:
            self.contexts = ContextRegistry()
        context = self.contexts.get_or_create(self.run_id)
        env = self.active_env
        bridge = ImageMathBridge(self, env)
        variables = env.flatten()
        if file is not None:
            return context.execute_file(file, variables, bridge)
        return context.execute_inline(script or "", variables, bridge)


_default_registry: BuiltinRegistry | None = None


def default_registry() -> BuiltinRegistry:
    global _default_registry
    if _default_registry is None:
        _default_registry = BuiltinRegistry()
    return _default_registry


class InvalidExpression(NamedTuple):
    label: str | None
    source: str
    error: str
    line: int
    col: int

    def __str__(self) -> str:
        target = f"{self.label} = " if self.label else ""
        return f"line {self.line}: {target}{self.source}: {self.error}"


class ScriptResult:
    """Result of one execution.

    Attributes:
        outputs (dict[str, Any]): Reported outputs; image lists are expanded to `name_i`.
        values (dict[str, Any]): Output variables before list expansion.
        invalid_expressions (list[InvalidExpression]): Statements that failed.
        variables (dict[str, Any]): Script scope at the end of the run.
        shifts (set[float]): Pixel shifts that were loaded.
    """

    def __init__(
        self,
        outputs: dict[str, Any] | None = None,
        values: dict[str, Any] | None = None,
        invalid_expressions: list[InvalidExpression] | None = None,
        variables: dict[str, Any] | None = None,
        shifts: set[float] | None = None,
    ) -> None:
        self.outputs = outputs or {}
        self.values = values or {}
        self.invalid_expressions = invalid_expressions or []
        self.variables = variables or {}
        self.shifts = shifts or set()

    @property
    def succeeded(self) -> bool:
        return not self.invalid_expressions

    def image_outputs(self) -> dict[str, Image]:
        return {k: v for k, v in self.outputs.items() if isinstance(v, Image)}

    def __repr__(self) -> str:
        return f"ScriptResult(outputs={sorted(self.outputs)}, invalid={len(self.invalid_expressions)})"


def expand_outputs(values: Mapping[str, Any]) -> dict[str, Any]:
    """Reported outputs: lists holding images become `label_0`, `label_1`, ..."""
    outputs: dict[str, Any] = {}
    for label, value in values.items():
        if value is None or label.startswith(INTERNAL_PREFIX):
            continue
        if isinstance(value, list) and any(isinstance(v, Image) for v in value):
            for i, item in enumerate(value):
                if isinstance(item, Image):
                    outputs[f"{label}_{i}"] = item
        else:
            outputs[label] = value
    return outputs


def output_section(sections: tuple[ASTNode, ...], kind: SectionKind) -> ASTNode | None:
    named = next((s for s in sections if section_name(s) == OUTPUTS_SECTION), None)
    if named is not None:
        return named
    unnamed = next((s for s in sections if not section_name(s)), None)
    if unnamed is not None:
        return unnamed
    if kind is SectionKind.BATCH:
        return next((s for s in sections if section_name(s) == BATCH_SECTION), None)
    return None


class ScriptExecutor:
    """Runs a parsed script whose includes are already inlined.

    Args:
        script: Script node.
        config: Engine configuration.
        registry: Built-in functions, the shared default catalog when None.
        contexts: Python contexts shared with the caller. A private registry is
            created when None; `close()` disposes the context of `run_id`.
        run_id: Identifier of the Python context used by this executor.
    """

    evaluator_class: Callable[..., Evaluator] = Evaluator

    def __init__(
        self,
        script: ASTNode,
        config: EngineConfig | None = None,
        registry: BuiltinRegistry | None = None,
        contexts: ContextRegistry | None = None,
        run_id: str | None = None,
    ) -> None:
        self.script = script
        self.config = config or EngineConfig()
        self.registry = registry
        self.contexts = contexts if contexts is not None else ContextRegistry()
        self.run_id = run_id or f"run-{next(_run_ids)}"
        self.functions = {n.value: UserFunction.from_node(n) for n in function_defs(script)}
        self.defaults = ParameterExtractor().extract_from_ast(script).default_values()
        self._runs = itertools.count()

    def close(self) -> None:
        """Disposes the Python context of this executor's run."""
        self.contexts.dispose(self.run_id)

    def __enter__(self) -> "ScriptExecutor":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def create_evaluator(self, globals: Environment, images: Any) -> Evaluator:
        return self.evaluator_class(
            globals=globals,
            functions=self.functions,
            images=images,
            registry=self.registry,
            config=self.config,
            contexts=self.contexts,
            run_id=self.run_id,
        )

    def execute(
        self,
        kind: SectionKind = SectionKind.SINGLE,
        images: ImageProvider | Mapping[float, Image] | None = None,
        inputs: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> ScriptResult:
        """Runs the sections of `kind` once.

        Raises:
            EvaluationError: Only with `fail_fast`, for the first failing statement.
        """
        run = next(self._runs)
        env = Environment()
        env.variables.update(self.defaults)
        env.variables.update(params or {})
        env.variables.update(inputs or {})
        evaluator = self.create_evaluator(env, images)

        sections = find_sections(self.script, kind)
        outputs_in = output_section(sections, kind)
        labels: list[str] = []
        invalid: list[InvalidExpression] = []
        counter = itertools.count()
        logger.debug("Running %d %s sections", len(sections), kind.name.lower())

        for section in sections:
            for statement in section.children:
                label = statement.value if statement.kind == "assignment" else None
                if section is outputs_in and statement.kind == "assignment":
                    label = label or f"imagemath_{run}_{next(counter)}"
                    labels.append(label)
                try:
                    value = self.run_statement(evaluator, statement, env)
                except EvaluationError as e:
                    if self.config.fail_fast:
                        raise
                    invalid.append(self.invalid_expression(statement, label, e))
                    continue
                if label:
                    env.assign(label, value)

        values = {label: env.variables.get(label) for label in labels}
        return ScriptResult(
            outputs=expand_outputs(values),
            values=values,
            invalid_expressions=invalid,
            variables=dict(env.variables),
            shifts=set(evaluator.shifts),
        )

    @staticmethod
    def run_statement(evaluator: Evaluator, statement: ASTNode, env: Environment) -> Any:
        if statement.kind != "assignment":
            raise EvaluationError(f"Syntax error: {statement.value}", statement.line, statement.col)
        return evaluator.evaluate(statement.children[0], env)

    @staticmethod
    def invalid_expression(statement: ASTNode, label: str | None, error: EvaluationError) -> InvalidExpression:
        if statement.kind == "assignment":
            source = to_source(statement.children[0])
        else:
            source = str(statement.value)
        error.located(statement.line, statement.col)
        logger.warning("Invalid expression at line %d: %s", error.line, error.message)
        return InvalidExpression(label, source, error.message, error.line, error.col)


class BatchResult(NamedTuple):
    items: list[ScriptResult]
    batch: ScriptResult

    @property
    def succeeded(self) -> bool:
        return all(item.succeeded for item in self.items) and self.batch.succeeded


class BatchRunner:
    """Runs the standard sections once per item, then the batch sections once.

    Output values of every item are merged by name into lists, which the batch
    sections see as variables.
    """

    def __init__(self, executor: ScriptExecutor) -> None:
        self.executor = executor
        self.items: list[ScriptResult] = []

    def run_item(
        self,
        images: ImageProvider | Mapping[float, Image] | None,
        inputs: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> ScriptResult:
        result = self.executor.execute(SectionKind.SINGLE, images, inputs, params)
        self.items.append(result)
        return result

    def merged(self) -> dict[str, list[Any]]:
        merged: dict[str, list[Any]] = {}
        for item in self.items:
            for name, value in item.values.items():
                if value is not None and not name.startswith(INTERNAL_PREFIX):
                    merged.setdefault(name, []).append(value)
        return merged

    def finish(self, params: Mapping[str, Any] | None = None) -> BatchResult:
        batch = self.executor.execute(SectionKind.BATCH, None, self.merged(), params)
        return BatchResult(list(self.items), batch)

    def __iter__(self) -> Iterator[ScriptResult]:
        return iter(self.items)


__all__ = [
    "BatchResult",
    "BatchRunner",
    "Environment",
    "Evaluator",
    "ImageProvider",
    "InvalidExpression",
    "MappingImageProvider",
    "ScriptExecutor",
    "ScriptResult",
    "UserFunction",
    "default_registry",
    "expand_outputs",
    "output_section",
]
