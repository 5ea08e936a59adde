"""
Defines the abstract syntax tree (AST) node structure for ImageMath scripts.

Every node is an `ASTNode` whose `kind` field is the variant tag. Consumers
dispatch on `kind` rather than on Python classes.

Kinds and their fields:
    script              children = preamble and sections, ending with an `eof` node
    section             value = `section_header` node or None, children = statements
    section_header      value = name or None, attrs["major"] = bool
    assignment          value = variable name or None (anonymous), children = [expression]
    binary              value = operator symbol, children = [left, right]
    unary               value = operator symbol, children = [operand]
    group               children = [expression]
    variable            value = name
    call                value = function name, children = arguments
    named_argument      value = argument name, children = [expression]
    string / number     value = str / float
    function_def        value = name, attrs["params"] = list[str], children = body
    include             value = path, attrs["status"], attrs["included"], attrs["reason"]
    meta_block          children = `meta_property` / `parameter_def` nodes
    meta_property       value = key, children = [literal or `meta_object`]
    meta_object         children = `meta_property` nodes
    parameter_def       value = parameter name, children = [`parameter_object`]
    parameter_object    children = `parameter_property` nodes
    parameter_property  value = key, children = [literal or `parameter_object`]
    error               value = message
    eof                 end-of-input marker

Classes:
    ASTNode: A node of the tree.
    ASTDict: TypedDict form of a node, produced by `ASTNode.to_dict()`.
    SectionKind: SINGLE (standard) or BATCH.
    SectionPartition: The standard and batch sections of a script.
"""

from enum import Enum
from typing import Any, NamedTuple, TypedDict

from imagemath.imagemath_constants import BATCH_SECTION

INCLUDE_PENDING = "pending"
INCLUDE_RESOLVED = "resolved"
INCLUDE_UNRESOLVED = "unresolved"

EXPRESSION_KINDS = frozenset(
    {"binary", "unary", "group", "variable", "call", "string", "number", "error"}
)


class ASTDict(TypedDict, total=False):
    """
    TypedDict representation of an ASTNode used for serialization.

    Fields:
        kind (str): The node variant.
        value (Any): Name, literal, operator or nested ASTDict.
        line (int): Line number where the node starts.
        col (int): Column number where the node starts.
        attrs (dict[str, Any]): Variant specific fields.
        children (list[ASTDict]): Ordered child nodes.
    """

    kind: str
    value: Any
    line: int
    col: int
    attrs: dict[str, Any]
    children: list["ASTDict"]


class SectionKind(Enum):
    SINGLE = "single"
    BATCH = "batch"


class SectionPartition(NamedTuple):
    standard: tuple["ASTNode", ...]
    batch: tuple["ASTNode", ...]


def _serialize(value: Any) -> Any:
    if isinstance(value, ASTNode):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    return value


class ASTNode:
    """
    A node of an ImageMath syntax tree.

    Args:
        kind (str): The variant tag (see module docstring).
        value (Any, optional): Name, literal, operator, or nested header node.
        children (list[ASTNode], optional): Ordered child nodes.
        line (int): Source line number (default is 0).
        col (int): Source column number (default is 0).
        attrs (dict, optional): Variant specific fields.

    Nodes are treated as immutable once the parser returns them. Transformations
    such as include resolution build new nodes with `replace()`.
    """

    def __init__(
        self,
        kind: str,
        value: Any = None,
        children: list["ASTNode"] | None = None,
        line: int = 0,
        col: int = 0,
        attrs: dict[str, Any] | None = None,
    ):
        self.kind = kind
        self.value = value
        self.children: list["ASTNode"] = children or []
        self.line = line
        self.col = col
        self.attrs: dict[str, Any] = attrs or {}
        self._partition: SectionPartition | None = None

    def replace(self, **changes: Any) -> "ASTNode":
        """Returns a copy of this node with the given fields replaced."""
        fields = {
            "kind": self.kind,
            "value": self.value,
            "children": list(self.children),
            "line": self.line,
            "col": self.col,
            "attrs": dict(self.attrs),
        }
        fields.update(changes)
        return ASTNode(**fields)

    def children_of_kind(self, *kinds: str) -> list["ASTNode"]:
        return [c for c in self.children if c.kind in kinds]

    def walk(self) -> Any:
        """Yields this node and every descendant, depth first, in source order."""
        yield self
        if isinstance(self.value, ASTNode):
            yield from self.value.walk()
        for child in self.children:
            yield from child.walk()
        for included in self.attrs.get("included", ()):
            yield from included.walk()

    def __repr__(self) -> str:
        parts = [f"{self.kind}"]
        if self.value is not None:
            parts.append(f"value={repr(self.value)}")
        if self.attrs:
            parts.append(f"attrs={self.attrs!r}")
        if self.children:
            preview = ", ".join(repr(c) for c in self.children[:3])
            if len(self.children) > 3:
                preview += ", ..."
            parts.append(f"children=[{preview}]")
        return f"ASTNode({', '.join(parts)})"

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, ASTNode):
            return False
        return (
            self.kind == other.kind
            and self.value == other.value
            and self.line == other.line
            and self.col == other.col
            and self.attrs == other.attrs
            and self.children == other.children
        )

    __hash__ = None  # type: ignore[assignment]

    def to_dict(self) -> ASTDict:
        return {
            "kind": self.kind,
            "value": _serialize(self.value),
            "line": self.line,
            "col": self.col,
            "attrs": _serialize(self.attrs),
            "children": [c.to_dict() for c in self.children],
        }


def section_name(section: ASTNode) -> str | None:
    header = section.value
    return header.value if isinstance(header, ASTNode) else None


def is_major(section: ASTNode) -> bool:
    header = section.value
    return isinstance(header, ASTNode) and bool(header.attrs.get("major"))


def classify_sections(script: ASTNode) -> SectionPartition:
    """
    Splits the sections of a script into standard and batch sections.

    The first section whose header is a major `batch` header, and every section
    after it, are batch sections. The partition is computed once per script node.
    """
    if script._partition is not None:
        return script._partition
    standard: list[ASTNode] = []
    batch: list[ASTNode] = []
    in_batch = False
    for section in script.children_of_kind("section"):
        if not in_batch and is_major(section) and section_name(section) == BATCH_SECTION:
            in_batch = True
        (batch if in_batch else standard).append(section)
    script._partition = SectionPartition(tuple(standard), tuple(batch))
    return script._partition


def find_sections(script: ASTNode, kind: SectionKind) -> tuple[ASTNode, ...]:
    partition = classify_sections(script)
    return partition.batch if kind is SectionKind.BATCH else partition.standard


def function_defs(script: ASTNode) -> list[ASTNode]:
    return script.children_of_kind("function_def")


def meta_blocks(script: ASTNode) -> list[ASTNode]:
    return script.children_of_kind("meta_block")


def parameter_defs(script: ASTNode) -> list[ASTNode]:
    """Returns parameter declarations, both from `meta { params { } }` and top level."""
    defs: list[ASTNode] = []
    for node in script.children:
        if node.kind == "parameter_def":
            defs.append(node)
        elif node.kind == "meta_block":
            for prop in node.children_of_kind("meta_property"):
                if prop.value == "params" and prop.children and prop.children[0].kind == "meta_object":
                    defs.extend(prop.children[0].children_of_kind("parameter_def"))
    return defs


def includes(script: ASTNode) -> list[ASTNode]:
    return script.children_of_kind("include")


__all__ = [
    "ASTDict",
    "ASTNode",
    "EXPRESSION_KINDS",
    "INCLUDE_PENDING",
    "INCLUDE_RESOLVED",
    "INCLUDE_UNRESOLVED",
    "SectionKind",
    "SectionPartition",
    "classify_sections",
    "find_sections",
    "function_defs",
    "includes",
    "is_major",
    "meta_blocks",
    "parameter_defs",
    "section_name",
]
