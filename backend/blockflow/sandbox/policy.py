"""Static policy for automation scripts.

Scripts are a restricted Python subset. Before anything is compiled the
parsed tree is checked and rewritten:

- statements whose cleanup code cannot be bounded (``finally``, ``with``,
  generators, classes, scope manipulation) are rejected
- names and attributes starting with ``_`` and reflective builtins are rejected
- attribute reads, calls, item writes, binary operations, comprehensions and
  f-strings are routed through guard functions supplied at run time

Guard names all start with ``_`` so scripts can never rebind or call them
directly.
"""

import ast
import copy

from blockflow.errors import ScriptSyntaxError

SCRIPT_FILENAME = "<automation>"

GETATTR = "_getattr_"
CALL = "_call_"
SETITEM = "_setitem_"
SLICE = "_slice_"
BINOP = "_binop_"
INPLACE = "_inplace_"
CHECKED = "_checked_"
FORMAT = "_format_"

FORBIDDEN_NODES = {
    ast.Global: "global statements",
    ast.Nonlocal: "nonlocal statements",
    ast.ClassDef: "class definitions",
    ast.AsyncFunctionDef: "async functions",
    ast.Await: "await expressions",
    ast.AsyncFor: "async loops",
    ast.AsyncWith: "async with statements",
    ast.With: "with statements",
    ast.Yield: "generator functions",
    ast.YieldFrom: "generator functions",
    ast.Match: "match statements",
    ast.TryStar: "except* handlers",
}

FORBIDDEN_NAMES = frozenset(
    {
        "BaseException",
        "breakpoint",
        "classmethod",
        "compile",
        "copyright",
        "credits",
        "delattr",
        "dir",
        "eval",
        "exec",
        "exit",
        "getattr",
        "globals",
        "hasattr",
        "help",
        "input",
        "license",
        "locals",
        "memoryview",
        "object",
        "open",
        "property",
        "quit",
        "setattr",
        "staticmethod",
        "super",
        "type",
        "vars",
    }
)


def _guard(name: str, args: list[ast.expr]) -> ast.Call:
    return ast.Call(func=ast.Name(id=name, ctx=ast.Load()), args=args, keywords=[])


def _simple(node: ast.expr) -> bool:
    """True for expressions that can be evaluated twice without side effects."""
    return isinstance(node, (ast.Name, ast.Constant))


class AutomationPolicy(ast.NodeTransformer):
    """Checks and rewrites a parsed script.

    Violations are collected rather than raised so the first one (in source
    order) can be reported with its line number.
    """

    def __init__(self):
        self.errors: list[tuple[int | None, str]] = []

    def deny(self, node: ast.AST, message: str) -> None:
        self.errors.append((getattr(node, "lineno", None), message))

    def generic_visit(self, node: ast.AST) -> ast.AST:
        label = FORBIDDEN_NODES.get(type(node))
        if label is not None:
            self.deny(node, f"{label} are not allowed")
            return node
        return super().generic_visit(node)

    # ==================== Names ====================

    def check_name(self, node: ast.AST, name: str) -> None:
        if name.startswith("_"):
            self.deny(node, f"names starting with '_' are not allowed: {name}")
        elif name in FORBIDDEN_NAMES:
            self.deny(node, f"'{name}' is not available in automation scripts")

    def visit_Name(self, node: ast.Name) -> ast.AST:
        self.check_name(node, node.id)
        return node

    def visit_FunctionDef(self, node: ast.FunctionDef) -> ast.AST:
        self.check_name(node, node.name)
        return self.generic_visit(node)

    def visit_arg(self, node: ast.arg) -> ast.AST:
        self.check_name(node, node.arg)
        return self.generic_visit(node)

    def visit_Import(self, node: ast.Import) -> ast.AST:
        for alias in node.names:
            self.check_name(node, alias.name)
            if alias.asname:
                self.check_name(node, alias.asname)
        return node

    def visit_ImportFrom(self, node: ast.ImportFrom) -> ast.AST:
        if node.level:
            self.deny(node, "relative imports are not allowed")
        if node.module:
            self.check_name(node, node.module)
        for alias in node.names:
            if alias.name == "*":
                self.deny(node, "star imports are not allowed")
                continue
            self.check_name(node, alias.name)
            if alias.asname:
                self.check_name(node, alias.asname)
        return node

    # ==================== Exceptions ====================

    def visit_Try(self, node: ast.Try) -> ast.AST:
        if node.finalbody:
            self.deny(node, "finally blocks are not allowed")
        return self.generic_visit(node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> ast.AST:
        if node.type is None:
            self.deny(node, "bare except is not allowed; name the exception types")
        elif not (
            isinstance(node.type, ast.Name)
            or (
                isinstance(node.type, ast.Tuple)
                and all(isinstance(item, ast.Name) for item in node.type.elts)
            )
        ):
            self.deny(node, "exception types must be plain names")
        if node.name:
            self.check_name(node, node.name)
        return self.generic_visit(node)

    # ==================== Attributes and items ====================

    def visit_Attribute(self, node: ast.Attribute) -> ast.AST:
        self.generic_visit(node)
        if node.attr.startswith("_"):
            self.deny(node, f"access to '{node.attr}' is not allowed")
            return node
        if not isinstance(node.ctx, ast.Load):
            self.deny(node, "assigning or deleting attributes is not allowed")
            return node
        return ast.copy_location(_guard(GETATTR, [node.value, ast.Constant(node.attr)]), node)

    def visit_Subscript(self, node: ast.Subscript) -> ast.AST:
        if isinstance(node.ctx, ast.Store):
            self.deny(node, "item assignment must be a single 'x[key] = value' statement")
            return node
        return self.generic_visit(node)

    def visit_Assign(self, node: ast.Assign) -> ast.AST:
        target = node.targets[0]
        if len(node.targets) != 1 or not isinstance(target, ast.Subscript):
            return self.generic_visit(node)

        obj = self.visit(target.value)
        key = self._key(self.visit(target.slice))
        value = self.visit(node.value)
        return ast.copy_location(ast.Expr(value=_guard(SETITEM, [obj, key, value])), node)

    def visit_AugAssign(self, node: ast.AugAssign) -> ast.AST:
        op = ast.Constant(type(node.op).__name__)
        value = self.visit(node.value)
        target = node.target

        if isinstance(target, ast.Name):
            self.check_name(target, target.id)
            current = ast.Name(id=target.id, ctx=ast.Load())
            return ast.copy_location(
                ast.Assign(
                    targets=[ast.Name(id=target.id, ctx=ast.Store())],
                    value=_guard(INPLACE, [op, current, value]),
                ),
                node,
            )

        if isinstance(target, ast.Subscript) and _simple(target.value) and _simple(target.slice):
            obj = self.visit(target.value)
            key = self.visit(target.slice)
            current = ast.Subscript(
                value=copy.deepcopy(obj), slice=copy.deepcopy(key), ctx=ast.Load()
            )
            return ast.copy_location(
                ast.Expr(value=_guard(SETITEM, [obj, key, _guard(INPLACE, [op, current, value])])),
                node,
            )

        self.deny(node, "augmented assignment is only allowed on names and 'x[key]'")
        return node

    def _key(self, node: ast.expr) -> ast.expr:
        if not isinstance(node, ast.Slice):
            return node
        parts = [node.lower, node.upper, node.step]
        return _guard(SLICE, [part if part is not None else ast.Constant(None) for part in parts])

    # ==================== Operations ====================

    def visit_Call(self, node: ast.Call) -> ast.AST:
        self.generic_visit(node)
        return ast.copy_location(
            ast.Call(
                func=ast.Name(id=CALL, ctx=ast.Load()),
                args=[node.func, *node.args],
                keywords=node.keywords,
            ),
            node,
        )

    def visit_BinOp(self, node: ast.BinOp) -> ast.AST:
        self.generic_visit(node)
        op = ast.Constant(type(node.op).__name__)
        return ast.copy_location(_guard(BINOP, [op, node.left, node.right]), node)

    def _checked(self, node: ast.expr) -> ast.AST:
        self.generic_visit(node)
        return ast.copy_location(_guard(CHECKED, [node]), node)

    visit_ListComp = _checked
    visit_SetComp = _checked
    visit_DictComp = _checked
    visit_JoinedStr = _checked

    def _display(self, node: ast.expr) -> ast.AST:
        # Displays built by unpacking (*xs, **kw) are size-checked
        if not isinstance(getattr(node, "ctx", ast.Load()), ast.Load):
            return self.generic_visit(node)
        unpacks = any(isinstance(item, ast.Starred) for item in getattr(node, "elts", []))
        unpacks = unpacks or any(key is None for key in getattr(node, "keys", []))
        if unpacks:
            return self._checked(node)
        return self.generic_visit(node)

    visit_List = _display
    visit_Tuple = _display
    visit_Set = _display
    visit_Dict = _display

    def visit_FormattedValue(self, node: ast.FormattedValue) -> ast.AST:
        value = self.visit(node.value)
        spec = self.visit(node.format_spec) if node.format_spec is not None else ast.Constant(None)
        call = _guard(FORMAT, [value, ast.Constant(node.conversion), spec])
        return ast.copy_location(ast.FormattedValue(value=call, conversion=-1, format_spec=None), node)


def compile_restricted(source: str):
    """Parse, check and compile a script.

    Returns:
        A code object whose filename is ``SCRIPT_FILENAME``.

    Raises:
        ScriptSyntaxError: The text does not parse or breaks the policy.
    """
    try:
        tree = ast.parse(source, filename=SCRIPT_FILENAME, mode="exec")
    except SyntaxError as e:
        raise ScriptSyntaxError(f"{e.msg} (line {e.lineno})", lineno=e.lineno) from e
    except (ValueError, RecursionError, MemoryError) as e:
        raise ScriptSyntaxError(str(e) or type(e).__name__) from e

    policy = AutomationPolicy()
    tree = policy.visit(tree)
    if policy.errors:
        lineno, message = min(policy.errors, key=lambda error: error[0] or 0)
        raise ScriptSyntaxError(f"{message} (line {lineno})", lineno=lineno)

    ast.fix_missing_locations(tree)
    try:
        return compile(tree, SCRIPT_FILENAME, "exec")
    except SyntaxError as e:
        raise ScriptSyntaxError(f"{e.msg} (line {e.lineno})", lineno=e.lineno) from e
    except (ValueError, RecursionError) as e:
        raise ScriptSyntaxError(str(e) or type(e).__name__) from e
