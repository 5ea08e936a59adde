"""
Include resolution for ImageMath scripts.

Resolution and inlining are two separate, pure transformations:

    resolved = IncludeResolver(include_dir).resolve(script)
    flat = inline(resolved)

`resolve()` returns a new script in which every `include` node carries either the
nodes of the included file (status "resolved") or a failure reason (status
"unresolved"). Included files are resolved recursively. A file that is already
being resolved higher up the include chain is not entered again, so include
cycles leave the offending node unresolved. Parsed files are cached by absolute
path for the lifetime of the resolver, unless their resolution cut a cycle.

`inline()` splices the included nodes in place of each resolved include node.
Unresolved include nodes are kept in the tree as they are.
"""

import logging
from pathlib import Path

from imagemath.imagemath_ast import (
    INCLUDE_PENDING,
    INCLUDE_RESOLVED,
    INCLUDE_UNRESOLVED,
    ASTNode,
)
from imagemath.imagemath_constants import INCLUDE_EXTENSION
from imagemath.imagemath_errors import IncludeResolutionFailure
from imagemath.imagemath_parser import parse_source

logger = logging.getLogger(__name__)

CYCLE_REASON = "include cycle detected"


class IncludeResolver:
    """Resolves `[include "..."]` nodes against an include directory.

    Attributes:
        include_dir (Path): Directory include paths are relative to.
        cache (dict[Path, list[ASTNode]]): Resolved node lists by absolute file path.
    """

    def __init__(self, include_dir: str | Path | None = None) -> None:
        self.include_dir = Path(include_dir) if include_dir is not None else Path.cwd()
        self.cache: dict[Path, list[ASTNode]] = {}

    def locate(self, name: str) -> Path:
        """Finds the file for an include path, retrying with the `.math` extension.

        Raises:
            IncludeResolutionFailure: If neither candidate is a file.
        """
        candidate = self.include_dir / name
        if candidate.is_file():
            return candidate.resolve()
        with_extension = self.include_dir / f"{name}{INCLUDE_EXTENSION}"
        if with_extension.is_file():
            return with_extension.resolve()
        raise IncludeResolutionFailure(name, f"no such file in {self.include_dir}")

    def resolve(self, script: ASTNode, _chain: tuple[Path, ...] = ()) -> ASTNode:
        """Returns a copy of `script` whose include nodes are resolved or marked unresolved."""
        children = [
            self.resolve_include(child, _chain) if child.kind == "include" else child
            for child in script.children
        ]
        return script.replace(children=children)

    def resolve_include(self, node: ASTNode, chain: tuple[Path, ...]) -> ASTNode:
        try:
            included = self.load(node.value, chain)
        except IncludeResolutionFailure as failure:
            logger.warning("%s", failure)
            return node.replace(
                attrs={"status": INCLUDE_UNRESOLVED, "included": [], "reason": failure.reason}
            )
        return node.replace(
            attrs={"status": INCLUDE_RESOLVED, "included": included, "reason": None}
        )

    def load(self, name: str, chain: tuple[Path, ...]) -> list[ASTNode]:
        path = self.locate(name)
        if path in chain:
            raise IncludeResolutionFailure(name, CYCLE_REASON)
        if path in self.cache:
            return self.cache[path]

        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise IncludeResolutionFailure(name, str(e)) from e
        try:
            parsed, errors = parse_source(text)
        except SyntaxError as e:
            raise IncludeResolutionFailure(name, str(e)) from e
        for error in errors:
            logger.warning("%s: %s", path.name, error)

        resolved = self.resolve(parsed, chain + (path,))
        nodes = [child for child in resolved.children if child.kind != "eof"]
        # a cut cycle depends on the chain it was resolved under
        if not _cuts_cycle(nodes):
            self.cache[path] = nodes
        logger.debug("Included %s (%d nodes)", path, len(nodes))
        return nodes


def _cuts_cycle(nodes: list[ASTNode]) -> bool:
    for node in nodes:
        if node.kind != "include":
            continue
        if node.attrs.get("reason") == CYCLE_REASON or _cuts_cycle(node.attrs.get("included") or []):
            return True
    return False


def inline(script: ASTNode) -> ASTNode:
    """
    Replaces every resolved include node by the nodes it refers to, recursively.

    Raises:
        ValueError: If the script still contains include nodes that were never resolved.
    """
    return script.replace(children=_inline_nodes(script.children))


def _inline_nodes(nodes: list[ASTNode]) -> list[ASTNode]:
    flat: list[ASTNode] = []
    for node in nodes:
        if node.kind != "include":
            flat.append(node)
            continue
        status = node.attrs.get("status", INCLUDE_PENDING)
        if status == INCLUDE_PENDING:
            raise ValueError(f"Include '{node.value}' must be resolved before inlining")
        if status == INCLUDE_RESOLVED:
            flat.extend(_inline_nodes(node.attrs["included"]))
        else:
            flat.append(node)
    return flat


__all__ = ["IncludeResolver", "inline"]
