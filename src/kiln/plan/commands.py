"""Static analysis of target commands: references, file markers, rewriting."""

from __future__ import annotations

import ast
import copy
import functools
import inspect
import json
import textwrap
from typing import Any

from kiln.core.errors import PlanError
from kiln.core.models import Command

FILE_MARKERS = ("file_in", "file_out")


def parse_expression(text: str, target: str = "?") -> ast.Expression:
    """Parse an expression command, raising PlanError on bad syntax."""
    try:
        return ast.parse(text.strip(), mode="eval")
    except SyntaxError as e:
        raise PlanError(f"Target '{target}' has an invalid command {text!r}: {e.msg}") from e


def _unwrap(command: Command) -> tuple[Any, dict[str, Any]]:
    """Peel functools.partial layers, returning (function, bound keywords)."""
    bound: dict[str, Any] = {}
    func = command
    while isinstance(func, functools.partial):
        bound = {**func.keywords, **bound}
        func = func.func
    return func, bound


def callable_source(command: Command) -> str:
    """Source text of a callable command.

    Falls back to the qualified name for builtins, C functions and objects
    whose source is unavailable.
    """
    func, _ = _unwrap(command)
    try:
        return textwrap.dedent(inspect.getsource(func))
    except (OSError, TypeError):
        return getattr(func, "__qualname__", None) or repr(func)


def command_text(command: Command, params: dict[str, Any] | None = None) -> str:
    """Canonical text of a command, used for fingerprinting.

    Expression commands are normalized through the AST so whitespace-only
    edits do not invalidate the cache. Bound parameters are appended in a
    stable order.
    """
    if isinstance(command, str):
        text = ast.unparse(parse_expression(command))
    else:
        _, bound = _unwrap(command)
        text = callable_source(command)
        if bound:
            text += "\n#bound " + json.dumps(bound, sort_keys=True, default=repr)
    if params:
        text += "\n#params " + json.dumps(params, sort_keys=True, default=repr)
    return text


def _scan_tree(tree: ast.AST) -> tuple[set[str], list[str], list[str]]:
    names: set[str] = set()
    # comprehension and lambda variables
    local: set[str] = set()
    files_in: list[str] = []
    files_out: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Name):
            (names if isinstance(node.ctx, ast.Load) else local).add(node.id)
        elif isinstance(node, ast.arg):
            local.add(node.arg)
        elif (
            isinstance(node, ast.Call)
            and isinstance(node.func, (ast.Name, ast.Attribute))
        ):
            marker = node.func.id if isinstance(node.func, ast.Name) else node.func.attr
            if marker not in FILE_MARKERS:
                continue
            paths = [
                arg.value for arg in node.args
                if isinstance(arg, ast.Constant) and isinstance(arg.value, str)
            ]
            (files_in if marker == "file_in" else files_out).extend(paths)
    names.difference_update(FILE_MARKERS)
    names.difference_update(local)
    return names, files_in, files_out


def scan_expression(text: str, target: str = "?") -> tuple[set[str], list[str], list[str]]:
    """Return (referenced names, file_in paths, file_out paths) of an expression."""
    return _scan_tree(parse_expression(text, target))


def scan_callable_files(command: Command) -> tuple[list[str], list[str]]:
    """Find file_in()/file_out() markers with literal paths in a callable's source."""
    source = callable_source(command)
    try:
        tree = ast.parse(source)
    except SyntaxError:
        # lambdas embedded in a larger statement: nothing reliable to scan
        return [], []
    _, files_in, files_out = _scan_tree(tree)
    return files_in, files_out


def callable_parameters(command: Command) -> tuple[list[str], bool]:
    """Return (required parameter names, accepts_var_keywords) of a callable."""
    try:
        signature = inspect.signature(command)
    except (TypeError, ValueError):
        return [], False
    required = []
    var_keywords = False
    for param in signature.parameters.values():
        if param.kind == inspect.Parameter.VAR_KEYWORD:
            var_keywords = True
        elif param.kind == inspect.Parameter.VAR_POSITIONAL:
            continue
        elif param.default is inspect.Parameter.empty:
            required.append(param.name)
    return required, var_keywords


def accepted_keywords(command: Command) -> set[str] | None:
    """Names the callable accepts as keywords; None means anything (**kwargs)."""
    try:
        signature = inspect.signature(command)
    except (TypeError, ValueError):
        return set()
    names = set()
    for param in signature.parameters.values():
        if param.kind == inspect.Parameter.VAR_KEYWORD:
            return None
        if param.kind in (inspect.Parameter.POSITIONAL_OR_KEYWORD, inspect.Parameter.KEYWORD_ONLY):
            names.add(param.name)
    return names


def literal_node(value: Any, target: str = "?") -> ast.expr:
    """AST node for a literal parameter value."""
    try:
        node = ast.parse(repr(value), mode="eval").body
        ast.literal_eval(node)
    except (SyntaxError, ValueError) as e:
        raise PlanError(
            f"Target '{target}': parameter value {value!r} is not a literal "
            "and cannot be substituted into an expression command"
        ) from e
    return node


class _Substitute(ast.NodeTransformer):
    def __init__(self, mapping: dict[str, ast.expr]):
        self.mapping = mapping

    def visit_Name(self, node: ast.Name) -> ast.AST:
        if isinstance(node.ctx, ast.Load) and node.id in self.mapping:
            return ast.copy_location(copy.deepcopy(self.mapping[node.id]), node)
        return node


def substitute(text: str, mapping: dict[str, ast.expr], target: str = "?") -> str:
    """Rewrite names in an expression command and return the new source."""
    tree = parse_expression(text, target)
    tree = ast.fix_missing_locations(_Substitute(mapping).visit(tree))
    return ast.unparse(tree)
