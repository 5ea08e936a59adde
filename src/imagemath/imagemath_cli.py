"""
ImageMath CLI Entrypoint.

This module provides the `imagemath` command for inspecting and running scripts.

Example usage:
    imagemath parse doppler.math --json
    imagemath params doppler.math --lang fr
    imagemath shifts doppler.math -D doppler_shift=5
    imagemath run doppler.math --image 0=center.npy --image=-3=blue.npy --image 3=red.npy --out out/

Subcommands:
    parse   Print the script back from its syntax tree (or as JSON) and list parse errors.
    params  Print the metadata and parameters declared by a script.
    shifts  Print the pixel shifts a script needs.
    run     Evaluate a script on `.npy` images and save or print its outputs.

Global flags:
    --config FILE       YAML engine configuration.
    --include-dir DIR   Directory of included scripts (default: the script's directory).
    --verbose           Debug logging. Setting IMAGEMATH_DEBUG has the same effect.

Exit status is 0 on success and 1 when the script has errors.
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import numpy as np

from imagemath.imagemath_ast import ASTNode
from imagemath.imagemath_config import EngineConfig, load_config
from imagemath.imagemath_engine import collect_shifts, evaluate, extract_parameters, parse_script
from imagemath.imagemath_errors import ImageMathError, ParseError
from imagemath.imagemath_includes import IncludeResolver, inline
from imagemath.imagemath_params import ChoiceParameter, NumberParameter
from imagemath.imagemath_printer import format_number, to_source
from imagemath.imagemath_values import Image, as_text

logger = logging.getLogger(__name__)

DEBUG_ENV = "IMAGEMATH_DEBUG"


def setup_logging(verbose: bool, level: str = "WARNING") -> None:
    """Sends `imagemath` log records to stderr as `[LEVEL] message`."""
    root = logging.getLogger("imagemath")
    root.setLevel(logging.DEBUG if verbose or os.environ.get(DEBUG_ENV) else level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
        root.addHandler(handler)


def parse_define(text: str) -> tuple[str, Any]:
    """Parses `name=value`; values that look like numbers become floats."""
    name, sep, value = text.partition("=")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"expected name=value, got {text!r}")
    try:
        return name.strip(), float(value)
    except ValueError:
        return name.strip(), value


def parse_image(text: str) -> tuple[float, str]:
    shift, sep, path = text.partition("=")
    try:
        if not sep or not path:
            raise ValueError(text)
        return float(shift), path
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected SHIFT=path.npy, got {text!r}") from None


def load_script(path: Path, config: EngineConfig) -> tuple[ASTNode, list[ParseError]]:
    text = path.read_text(encoding="utf-8")
    parsed = parse_script(text)
    for error in parsed.errors:
        print(f"{path.name}: {error}", file=sys.stderr)
    script = inline(IncludeResolver(config.include_dir or path.parent).resolve(parsed.script))
    return script, parsed.errors


def cmd_parse(args: argparse.Namespace, config: EngineConfig) -> int:
    script, errors = load_script(args.file, config)
    if args.json:
        print(json.dumps(script.to_dict(), indent=2))
    else:
        print(to_source(script))
    return 1 if errors else 0


def cmd_params(args: argparse.Namespace, config: EngineConfig) -> int:
    result = extract_parameters(args.file, config.include_dir or args.file.parent)
    lang = args.lang
    print(result.get_display_title(lang))
    description = result.get_display_description(lang)
    if description:
        print(description)
    if result.author:
        print(f"author: {result.author}")
    if result.required_version:
        supported = "" if result.is_version_supported() else " (not supported)"
        print(f"requires: {result.required_version}{supported}")
    for parameter in result.parameters:
        default = parameter.default_value
        shown = format_number(default) if isinstance(default, float) else json.dumps(default)
        line = f"  {parameter.name} ({parameter.type.value}) = {shown}  {parameter.get_display_name(lang)}"
        if isinstance(parameter, NumberParameter) and (parameter.min_value, parameter.max_value) != (None, None):
            low = "" if parameter.min_value is None else format_number(parameter.min_value)
            high = "" if parameter.max_value is None else format_number(parameter.max_value)
            line += f" [{low}..{high}]"
        elif isinstance(parameter, ChoiceParameter):
            line += f" {{{', '.join(parameter.choices)}}}"
        print(line)
    for name, output in result.outputs_metadata.items():
        print(f"  output {name}: {output.get_display_title(lang)}")
    return 0


def cmd_shifts(args: argparse.Namespace, config: EngineConfig) -> int:
    script, errors = load_script(args.file, config)
    for shift in sorted(collect_shifts(script, params=dict(args.define), config=config)):
        print(format_number(shift))
    return 1 if errors else 0


def cmd_run(args: argparse.Namespace, config: EngineConfig) -> int:
    script, _ = load_script(args.file, config)
    images = {shift: Image(np.load(path, allow_pickle=False), {"shift": shift}) for shift, path in args.image}
    result = evaluate(script, params=dict(args.define), images=images, config=config)

    for invalid in result.invalid_expressions:
        print(f"{args.file.name}: {invalid}", file=sys.stderr)
    if args.out is not None:
        args.out.mkdir(parents=True, exist_ok=True)
    for name, value in result.outputs.items():
        if isinstance(value, Image) and args.out is not None:
            target = args.out / f"{name}.npy"
            np.save(target, value.data)
            print(f"{name} -> {target}")
        else:
            print(f"{name} = {value!r}" if isinstance(value, Image) else f"{name} = {as_text(value)}")
    return 0 if result.succeeded else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="imagemath", description="ImageMath script tools")
    parser.add_argument("--config", type=Path, metavar="FILE", help="YAML engine configuration")
    parser.add_argument("--include-dir", type=Path, metavar="DIR", help="Directory of included scripts")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    p = commands.add_parser("parse", help="Print the parsed script")
    p.add_argument("file", type=Path)
    p.add_argument("--json", action="store_true", help="Dump the syntax tree as JSON")
    p.set_defaults(handler=cmd_parse)

    p = commands.add_parser("params", help="Print script metadata and parameters")
    p.add_argument("file", type=Path)
    p.add_argument("--lang", default="en", help="Display language (default: en)")
    p.set_defaults(handler=cmd_params)

    p = commands.add_parser("shifts", help="Print the pixel shifts a script needs")
    p.add_argument("file", type=Path)
    p.add_argument("-D", dest="define", action="append", type=parse_define, default=[], metavar="NAME=VALUE")
    p.set_defaults(handler=cmd_shifts)

    p = commands.add_parser("run", help="Evaluate a script on .npy images")
    p.add_argument("file", type=Path)
    p.add_argument("--image", action="append", type=parse_image, default=[], metavar="SHIFT=FILE")
    p.add_argument("-D", dest="define", action="append", type=parse_define, default=[], metavar="NAME=VALUE")
    p.add_argument("--out", type=Path, metavar="DIR", help="Directory for image outputs")
    p.set_defaults(handler=cmd_run)
    return parser


def main(argv: list[str] | None = None) -> int:
    """
    Entry point for the ImageMath CLI.

    Returns:
        int: Process exit status.
    """
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config).with_overrides(include_dir=args.include_dir)
        setup_logging(args.verbose, config.log_level)
        logger.debug("Running %s on %s", args.command, args.file)
        return int(args.handler(args, config))
    except (SyntaxError, ImageMathError, OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__" and not any("pytest" in arg for arg in sys.argv):
    sys.exit(main())
