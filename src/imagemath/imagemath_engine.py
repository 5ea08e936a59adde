"""
Entry points of the ImageMath engine.

Functions:
    parse(text): Script node of `text` (parse errors become `error` nodes).
    parse_script(text): ParseResult with the script node and the parse errors.
    parse_and_inline_includes(text, include_dir): Parsed script with includes inlined.
    extract_parameters(source, include_dir): Metadata of script text or of a script file.
    evaluate(script, ...): Runs the standard sections of a script.
    evaluate_batch(script, items, ...): Runs every item, then the batch sections.
    collect_shifts(script, ...): Pixel shifts needed by a script.

Scripts may be passed as text or as parsed (and inlined) script nodes.

Raises:
    LexError: From parsing functions, when the text cannot be tokenized.
"""

import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from imagemath.imagemath_ast import ASTNode
from imagemath.imagemath_bridge import ContextRegistry
from imagemath.imagemath_builtins import BuiltinRegistry
from imagemath.imagemath_config import EngineConfig
from imagemath.imagemath_eval import (
    BatchResult,
    BatchRunner,
    ImageProvider,
    ScriptExecutor,
    ScriptResult,
)
from imagemath.imagemath_includes import IncludeResolver, inline
from imagemath.imagemath_params import ParameterExtractionResult, ParameterExtractor
from imagemath.imagemath_parser import ParseResult, parse_source
from imagemath.imagemath_shifts import collect_shifts as _collect_shifts
from imagemath.imagemath_values import Image

logger = logging.getLogger(__name__)

Images = ImageProvider | Mapping[float, Image]


def parse_script(text: str) -> ParseResult:
    return parse_source(text)


def parse(text: str) -> ASTNode:
    return parse_source(text).script


def parse_and_inline_includes(
    text: str,
    include_dir: str | Path | None = None,
    resolver: IncludeResolver | None = None,
) -> ASTNode:
    resolver = resolver or IncludeResolver(include_dir)
    return inline(resolver.resolve(parse(text)))


def extract_parameters(
    source: str | Path, include_dir: str | Path | None = None
) -> ParameterExtractionResult:
    """Extracts metadata from script text, or from a file when `source` is a Path."""
    extractor = ParameterExtractor(include_dir)
    if isinstance(source, Path):
        return extractor.extract_from_file(source)
    return extractor.extract_parameters(source)


def _prepare(script: str | ASTNode, config: EngineConfig) -> ASTNode:
    if isinstance(script, ASTNode):
        return script
    return parse_and_inline_includes(script, config.include_dir)


def evaluate(
    script: str | ASTNode,
    inputs: Mapping[str, Any] | None = None,
    params: Mapping[str, Any] | None = None,
    images: Images | None = None,
    config: EngineConfig | None = None,
    registry: ContextRegistry | None = None,
    run_id: str | None = None,
    builtins: BuiltinRegistry | None = None,
) -> ScriptResult:
    """Runs the standard sections of `script`.

    When `registry` is given, the Python context of `run_id` is kept for the
    caller to dispose; otherwise it is disposed before returning.
    """
    config = config or EngineConfig()
    executor = ScriptExecutor(_prepare(script, config), config, builtins, registry, run_id)
    try:
        result = executor.execute(images=images, inputs=inputs, params=params)
    finally:
        if registry is None:
            executor.close()
    if not result.succeeded:
        logger.info("%d invalid expressions", len(result.invalid_expressions))
    return result


def evaluate_batch(
    script: str | ASTNode,
    items: Iterable[Images | None],
    params: Mapping[str, Any] | None = None,
    config: EngineConfig | None = None,
    registry: ContextRegistry | None = None,
    run_id: str | None = None,
    builtins: BuiltinRegistry | None = None,
) -> BatchResult:
    """Runs the standard sections once per item of `items`, then the batch sections."""
    config = config or EngineConfig()
    executor = ScriptExecutor(_prepare(script, config), config, builtins, registry, run_id)
    runner = BatchRunner(executor)
    try:
        for images in items:
            runner.run_item(images, params=params)
        return runner.finish(params)
    finally:
        if registry is None:
            executor.close()


def collect_shifts(
    script: str | ASTNode,
    inputs: Mapping[str, Any] | None = None,
    params: Mapping[str, Any] | None = None,
    config: EngineConfig | None = None,
) -> set[float]:
    config = config or EngineConfig()
    return _collect_shifts(_prepare(script, config), inputs, params, config)


__all__ = [
    "collect_shifts",
    "evaluate",
    "evaluate_batch",
    "extract_parameters",
    "parse",
    "parse_and_inline_includes",
    "parse_script",
]
