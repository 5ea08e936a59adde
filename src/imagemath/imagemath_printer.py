"""
Turns ImageMath AST nodes back into script text.

The printer is the inverse of the parser for every node kind: printing a parsed
literal, variable, call or whole script and parsing the result again yields an
equivalent tree (same kinds, values and structure; positions may differ).

Classes:
    SourcePrinter: Walks a tree and accumulates source lines, dispatching each node
        to an `emit_<kind>` method (statements) or `expr_<kind>` method (expressions).

Functions:
    to_source(node): Convenience wrapper returning the text for any node.

Raises:
    NotImplementedError: If a node kind has no printer method.
"""

from decimal import Decimal

from imagemath.imagemath_ast import ASTNode

_PRECEDENCE = {"+": 1, "-": 1, "*": 2, "/": 2}


def format_number(value: float) -> str:
    text = repr(float(value))
    if "e" in text:
        # the lexer has no exponent notation
        text = format(Decimal(text), "f")
    return text[:-2] if text.endswith(".0") else text


def format_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class SourcePrinter:
    """Emits ImageMath source from AST nodes.

    Attributes:
        lines (list[str]): Accumulated lines of script text.
        indent (int): Current indentation level for nested blocks.
    """

    def __init__(self) -> None:
        self.lines: list[str] = []
        self.indent = 0

    def indent_str(self) -> str:
        return "    " * self.indent

    def get_output(self) -> str:
        return "\n".join(self.lines)

    def write(self, text: str) -> None:
        self.lines.append(self.indent_str() + text)

    def visit(self, node: ASTNode) -> None:
        method = getattr(self, f"emit_{node.kind}", None)
        if method is None:
            if node.kind.startswith("meta_") or node.kind.startswith("parameter_"):
                raise NotImplementedError(f"Cannot print '{node.kind}' outside a block")
            self.write(self.expr(node))
            return
        method(node)

    # Statements

    def emit_script(self, node: ASTNode) -> None:
        for child in node.children:
            self.visit(child)

    def emit_eof(self, node: ASTNode) -> None:
        pass

    def emit_section(self, node: ASTNode) -> None:
        if isinstance(node.value, ASTNode):
            self.visit(node.value)
        for child in node.children:
            self.visit(child)

    def emit_section_header(self, node: ASTNode) -> None:
        name = node.value or ""
        if node.attrs.get("major"):
            self.write(f"[[{name}]]")
        else:
            self.write(f"[{name}]")

    def emit_assignment(self, node: ASTNode) -> None:
        expr = self.expr(node.children[0])
        self.write(f"{node.value} = {expr}" if node.value else expr)

    def emit_function_def(self, node: ASTNode) -> None:
        params = "".join(f" {p}" for p in node.attrs.get("params", []))
        self.write(f"[fun:{node.value}{params}]")
        self.indent += 1
        for child in node.children:
            self.visit(child)
        self.indent -= 1

    def emit_include(self, node: ASTNode) -> None:
        self.write(f"[include {format_string(node.value)}]")

    def emit_error(self, node: ASTNode) -> None:
        self.write(f"// error: {node.value}")

    def emit_meta_block(self, node: ASTNode) -> None:
        self.write("meta {")
        self.emit_entries(node.children)
        self.write("}")

    def emit_parameter_def(self, node: ASTNode) -> None:
        self.write(f"{node.value} {{")
        for obj in node.children:
            self.emit_entries(obj.children)
        self.write("}")

    def emit_entries(self, entries: list[ASTNode]) -> None:
        self.indent += 1
        for entry in entries:
            if entry.kind == "parameter_def":
                self.emit_parameter_def(entry)
                continue
            value = entry.children[0]
            if value.kind in ("meta_object", "parameter_object"):
                self.write(f"{entry.value} {{")
                self.emit_entries(value.children)
                self.write("}")
            else:
                self.write(f"{entry.value} = {self.expr(value)}")
        self.indent -= 1

    # Expressions

    def expr(self, node: ASTNode) -> str:
        method = getattr(self, f"expr_{node.kind}", None)
        if method is None:
            raise NotImplementedError(f"No printer for expression kind '{node.kind}'")
        return str(method(node))

    def expr_number(self, node: ASTNode) -> str:
        return format_number(node.value)

    def expr_string(self, node: ASTNode) -> str:
        return format_string(node.value)

    def expr_variable(self, node: ASTNode) -> str:
        return str(node.value)

    def expr_group(self, node: ASTNode) -> str:
        return f"({self.expr(node.children[0])})"

    def expr_unary(self, node: ASTNode) -> str:
        operand = node.children[0]
        text = self.expr(operand)
        if operand.kind in ("binary", "unary"):
            text = f"({text})"
        return f"{node.value}{text}"

    def expr_binary(self, node: ASTNode) -> str:
        left, right = node.children
        prec = _PRECEDENCE[node.value]
        left_text = self.expr(left)
        right_text = self.expr(right)
        if left.kind == "binary" and _PRECEDENCE[left.value] < prec:
            left_text = f"({left_text})"
        if right.kind == "binary" and _PRECEDENCE[right.value] <= prec:
            right_text = f"({right_text})"
        return f"{left_text} {node.value} {right_text}"

    def expr_call(self, node: ASTNode) -> str:
        args = ", ".join(self.expr(arg) for arg in node.children)
        return f"{node.value}({args})"

    def expr_named_argument(self, node: ASTNode) -> str:
        return f"{node.value}: {self.expr(node.children[0])}"

    def expr_error(self, node: ASTNode) -> str:
        return "/* error */"


def to_source(node: ASTNode) -> str:
    """Returns the script text for `node` (a script, statement or expression)."""
    printer = SourcePrinter()
    printer.visit(node)
    return printer.get_output()


__all__ = ["SourcePrinter", "format_number", "format_string", "to_source"]
