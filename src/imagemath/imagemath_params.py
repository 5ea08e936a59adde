"""
Static extraction of script metadata and user-facing parameters.

The extractor reads `meta { ... }` blocks and parameter declarations from the
syntax tree without evaluating anything, so it terminates on any input and
never raises for malformed scripts: it returns an empty or partial result.

Example script:

    meta {
        title { en = "Doppler" fr = "Doppler" }
        requires = "5.0.0"
        params {
            shift { type = "number" default = 3 min = 0 max = 10 }
        }
        outputs {
            doppler { title = "Doppler Image" }
        }
    }

Classes:
    ParameterType: NUMBER, STRING or CHOICE.
    ScriptParameter: Base parameter (name, default, localized names and descriptions).
    NumberParameter / StringParameter / ChoiceParameter: Typed parameters.
    OutputMetadata: Localized title and description of a declared output.
    ParameterExtractionResult: Everything extracted from one script.
    ParameterExtractor: Builds a ParameterExtractionResult from text or a file.

Functions:
    localize(values, language, fallback): Applies the display-language fallback order.
    is_version_supported(required, current): Compares dotted version strings.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Any

from imagemath.imagemath_ast import ASTNode, meta_blocks, parameter_defs
from imagemath.imagemath_constants import ENGINE_VERSION
from imagemath.imagemath_includes import IncludeResolver, inline
from imagemath.imagemath_parser import parse_source
from imagemath.imagemath_printer import format_number

logger = logging.getLogger(__name__)


def localize(values: dict[str, str], language: str, fallback: str | None) -> str | None:
    """Picks `language`, then "default", then "en", then any entry, then `fallback`."""
    for key in (language, "default", "en"):
        if key in values:
            return values[key]
    if values:
        return next(iter(values.values()))
    return fallback


def _version_tuple(version: str) -> tuple[int, ...]:
    parts = []
    for part in version.strip().split("."):
        digits = "".join(ch for ch in part if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def is_version_supported(required: str | None, current: str = ENGINE_VERSION) -> bool:
    if not required or not required.strip():
        return True
    req = _version_tuple(required)
    cur = _version_tuple(current)
    width = max(len(req), len(cur))
    return cur + (0,) * (width - len(cur)) >= req + (0,) * (width - len(req))


class ParameterType(Enum):
    NUMBER = "number"
    STRING = "string"
    CHOICE = "choice"


class ScriptParameter:
    """A parameter a script exposes to its user.

    Attributes:
        name (str): Variable name the value is bound to during evaluation.
        type (ParameterType): Declared type.
        default_value (Any): Value used when the caller supplies none.
        display_names (dict[str, str]): Display names by language code.
        descriptions (dict[str, str]): Descriptions by language code.
    """

    type: ParameterType

    def __init__(
        self,
        name: str,
        default_value: Any,
        display_names: dict[str, str] | None = None,
        descriptions: dict[str, str] | None = None,
    ) -> None:
        self.name = name
        self.default_value = default_value
        self.display_names = display_names or {}
        self.descriptions = descriptions or {}

    def get_display_name(self, language: str = "en") -> str:
        return localize(self.display_names, language, self.name) or self.name

    def get_description(self, language: str = "en") -> str | None:
        return localize(self.descriptions, language, None)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, default={self.default_value!r})"


class NumberParameter(ScriptParameter):
    type = ParameterType.NUMBER

    def __init__(
        self,
        name: str,
        default_value: float,
        display_names: dict[str, str] | None = None,
        descriptions: dict[str, str] | None = None,
        min_value: float | None = None,
        max_value: float | None = None,
    ) -> None:
        super().__init__(name, float(default_value), display_names, descriptions)
        self.min_value = min_value
        self.max_value = max_value


class StringParameter(ScriptParameter):
    type = ParameterType.STRING


class ChoiceParameter(ScriptParameter):
    type = ParameterType.CHOICE

    def __init__(
        self,
        name: str,
        default_value: str,
        display_names: dict[str, str] | None = None,
        descriptions: dict[str, str] | None = None,
        choices: list[str] | None = None,
    ) -> None:
        super().__init__(name, default_value, display_names, descriptions)
        self.choices = choices or []


class OutputMetadata:
    def __init__(self, name: str, titles: dict[str, str], descriptions: dict[str, str]) -> None:
        self.name = name
        self.titles = titles
        self.descriptions = descriptions

    def get_display_title(self, language: str = "en") -> str:
        return localize(self.titles, language, self.name) or self.name

    def get_display_description(self, language: str = "en") -> str | None:
        return localize(self.descriptions, language, None)


class ParameterExtractionResult:
    """Read-only view of the metadata declared by one script."""

    def __init__(
        self,
        parameters: list[ScriptParameter] | None = None,
        has_parameters_section: bool = False,
        title: dict[str, str] | None = None,
        description: dict[str, str] | None = None,
        script_file_name: str = "unknown",
        required_version: str | None = None,
        author: str | None = None,
        version: str | None = None,
        outputs_metadata: dict[str, OutputMetadata] | None = None,
    ) -> None:
        self.parameters = tuple(parameters or ())
        self.has_parameters_section = has_parameters_section
        self.title = dict(title or {})
        self.description = dict(description or {})
        self.script_file_name = script_file_name
        self.required_version = required_version
        self.author = author
        self.version = version
        self.outputs_metadata = dict(outputs_metadata or {})

    def get_display_title(self, language: str = "en") -> str:
        return localize(self.title, language, None) or Path(self.script_file_name).stem

    def get_display_description(self, language: str = "en") -> str | None:
        return localize(self.description, language, None)

    def get_output_metadata(self, name: str) -> OutputMetadata | None:
        return self.outputs_metadata.get(name)

    def get_parameter(self, name: str) -> ScriptParameter | None:
        return next((p for p in self.parameters if p.name == name), None)

    def default_values(self) -> dict[str, Any]:
        return {p.name: p.default_value for p in self.parameters}

    def is_version_supported(self, current: str = ENGINE_VERSION) -> bool:
        return is_version_supported(self.required_version, current)


# Reading property values out of the tree


def _properties(obj: ASTNode | None) -> list[tuple[str, ASTNode]]:
    if obj is None:
        return []
    return [(p.value, p.children[0]) for p in obj.children if p.children]


def _text(value: ASTNode) -> str | None:
    if value.kind in ("string", "variable"):
        return str(value.value)
    return None


def _localized(value: ASTNode) -> dict[str, str]:
    """A plain string is stored under "default", an object maps language codes."""
    if value.kind in ("meta_object", "parameter_object"):
        result = {}
        for language, entry in _properties(value):
            text = _text(entry)
            if text is not None:
                result[language] = text
        return result
    text = _text(value)
    return {"default": text} if text is not None else {}


class ParameterExtractor:
    """Extracts a ParameterExtractionResult from script text or a script file.

    Args:
        include_dir: Directory used to resolve includes, so that parameters declared
            in included files are found. Includes are not followed when None.
    """

    def __init__(self, include_dir: str | Path | None = None) -> None:
        self.include_dir = include_dir

    def extract_from_file(self, path: str | Path) -> ParameterExtractionResult:
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("Cannot read %s: %s", path, e)
            return ParameterExtractionResult(script_file_name=path.name)
        return self.extract_parameters(text, path.name)

    def extract_parameters(self, text: str, file_name: str = "unknown") -> ParameterExtractionResult:
        try:
            script, errors = parse_source(text)
        except SyntaxError as e:
            logger.debug("Parameter extraction skipped, script cannot be lexed: %s", e)
            return ParameterExtractionResult(script_file_name=file_name)
        if errors:
            logger.debug("Extracting parameters from a script with %d parse errors", len(errors))
        if self.include_dir is not None:
            script = inline(IncludeResolver(self.include_dir).resolve(script))
        return self.extract_from_ast(script, file_name)

    def extract_from_ast(self, script: ASTNode, file_name: str = "unknown") -> ParameterExtractionResult:
        title: dict[str, str] = {}
        description: dict[str, str] = {}
        outputs: dict[str, OutputMetadata] = {}
        fields: dict[str, str | None] = {"requires": None, "author": None, "version": None}

        for block in meta_blocks(script):
            for key, value in _properties(block):
                if key in ("title", "name"):
                    title.update(_localized(value))
                elif key == "description":
                    description.update(_localized(value))
                elif key in fields:
                    text = _text(value)
                    if text is not None:
                        fields[key] = text
                elif key == "outputs" and value.kind == "meta_object":
                    for output_name, spec in _properties(value):
                        outputs[output_name] = self.extract_output(output_name, spec)

        defs = parameter_defs(script)
        parameters = []
        for definition in defs:
            parameter = self.extract_parameter(definition)
            if parameter is not None:
                parameters.append(parameter)

        return ParameterExtractionResult(
            parameters=parameters,
            has_parameters_section=bool(defs) or _declares_params(script),
            title=title,
            description=description,
            script_file_name=file_name,
            required_version=fields["requires"],
            author=fields["author"],
            version=fields["version"],
            outputs_metadata=outputs,
        )

    @staticmethod
    def extract_output(name: str, spec: ASTNode) -> OutputMetadata:
        titles: dict[str, str] = {}
        descriptions: dict[str, str] = {}
        if spec.kind == "meta_object":
            for key, value in _properties(spec):
                if key == "title":
                    titles.update(_localized(value))
                elif key == "description":
                    descriptions.update(_localized(value))
        else:
            titles.update(_localized(spec))
        return OutputMetadata(name, titles, descriptions)

    @staticmethod
    def extract_parameter(definition: ASTNode) -> ScriptParameter | None:
        name = definition.value
        obj = definition.children[0] if definition.children else None
        props = _properties(obj)

        type_name = next((_text(v) for k, v in props if k == "type"), None)
        try:
            param_type = ParameterType(type_name.lower()) if type_name else None
        except ValueError:
            param_type = None
        if param_type is None:
            logger.debug("Dropping parameter '%s' with invalid type %r", name, type_name)
            return None

        defaults = [v for k, v in props if k == "default"]
        number_default = next((float(v.value) for v in defaults if v.kind == "number"), None)
        text_default = next((t for t in map(_text, defaults) if t is not None), None)
        names: dict[str, str] = {}
        descriptions: dict[str, str] = {}
        numbers: dict[str, float] = {}
        choices = ""
        for key, value in props:
            if key == "name":
                names.update(_localized(value))
            elif key == "description":
                descriptions.update(_localized(value))
            elif key in ("min", "max") and value.kind == "number":
                numbers[key] = float(value.value)
            elif key == "choices":
                choices = _text(value) or ""

        if param_type is ParameterType.NUMBER:
            return NumberParameter(
                name,
                number_default if number_default is not None else 0.0,
                names,
                descriptions,
                numbers.get("min"),
                numbers.get("max"),
            )
        if param_type is ParameterType.STRING:
            if text_default is None and number_default is not None:
                text_default = format_number(number_default)
            return StringParameter(name, text_default or "", names, descriptions)

        choice_list = [c.strip() for c in choices.split(",") if c.strip()]
        default = text_default
        if default is None and number_default is not None:
            default = format_number(number_default)
        if default is None:
            default = choice_list[0] if choice_list else ""
        return ChoiceParameter(name, default, names, descriptions, choice_list)


def _declares_params(script: ASTNode) -> bool:
    return any(
        prop.value == "params"
        for block in meta_blocks(script)
        for prop in block.children_of_kind("meta_property")
    )


__all__ = [
    "ChoiceParameter",
    "NumberParameter",
    "OutputMetadata",
    "ParameterExtractionResult",
    "ParameterExtractor",
    "ParameterType",
    "ScriptParameter",
    "StringParameter",
    "is_version_supported",
    "localize",
]
