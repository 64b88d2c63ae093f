"""Expression and query-variable resolution against run state.

Expressions are Python expressions evaluated with the merged state as scope:
every top-level state key is a name, and ``state`` refers to the whole mapping.
Mappings allow attribute access (``B.result`` is ``B["result"]``) and a missing
key reads as ``None``.
"""

import ast
import json
import re
from typing import Any, Dict

from .exceptions import ExpressionError

_PLACEHOLDER = re.compile(r"\{\{(.+?)\}\}", re.DOTALL)
_FULL_PLACEHOLDER = re.compile(r"^\s*\{\{(.+?)\}\}\s*$", re.DOTALL)

_BLOCKED_CALLS = {
    "eval", "exec", "compile", "open", "__import__", "getattr", "setattr",
    "delattr", "globals", "locals", "vars", "input", "breakpoint",
}

SAFE_BUILTINS: Dict[str, Any] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "list": list,
    "dict": dict,
    "sum": sum,
    "min": min,
    "max": max,
    "abs": abs,
    "round": round,
    "any": any,
    "all": all,
    "sorted": sorted,
    "isinstance": isinstance,
    # JSON-style literals, so definitions can say `true`/`false`/`null`
    "true": True,
    "false": False,
    "null": None,
}


class ScopeDict(dict):
    """Dict that also exposes its keys as attributes; missing keys read as None."""

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return _wrap(self.get(name))

    def __getitem__(self, key: Any) -> Any:
        return _wrap(super().__getitem__(key))


def _wrap(value: Any) -> Any:
    if isinstance(value, dict) and not isinstance(value, ScopeDict):
        return ScopeDict(value)
    if isinstance(value, list):
        return [_wrap(item) for item in value]
    return value


def _plain(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in dict.items(value)}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def _validate(tree: ast.AST, code: str) -> None:
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionError(f"Access to '{node.attr}' is not allowed", expression=code)
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise ExpressionError(f"Name '{node.id}' is not allowed", expression=code)
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id in _BLOCKED_CALLS:
            raise ExpressionError(f"Function '{node.func.id}' is not allowed", expression=code)


def resolve_expression(code: str, state: Dict[str, Any]) -> Any:
    """
    Evaluate an expression with the given state as scope.

    Args:
        code: Python expression, e.g. ``B.result > 0``
        state: Merged state visible to the expression

    Returns:
        The expression's value, with mappings returned as plain dicts

    Raises:
        ExpressionError: If the expression is empty, malformed, uses a blocked
            construct, or fails while evaluating
    """
    if not isinstance(code, str) or not code.strip():
        raise ExpressionError("Expression cannot be empty", expression=code)

    try:
        tree = ast.parse(code.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e.msg}", expression=code)

    _validate(tree, code)

    scope = ScopeDict(state or {})
    namespace: Dict[str, Any] = {"__builtins__": {}}
    namespace.update(SAFE_BUILTINS)
    namespace.update({key: scope[key] for key in scope if isinstance(key, str) and key.isidentifier()})
    namespace["state"] = scope

    try:
        value = eval(compile(tree, "<expression>", "eval"), namespace)
    except ExpressionError:
        raise
    except Exception as e:
        raise ExpressionError(
            f"Failed to evaluate expression '{code}': {type(e).__name__}: {e}",
            expression=code
        )

    return _plain(value)


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def resolve_variables(options: Any, state: Dict[str, Any]) -> Any:
    """
    Resolve ``{{expr}}`` placeholders throughout an options template.

    A string that is exactly one placeholder resolves to the raw value; a
    placeholder embedded in a longer string is rendered as text. Dicts and
    lists are resolved recursively; other values are returned unchanged.

    Raises:
        ExpressionError: If any placeholder fails to resolve
    """
    if isinstance(options, dict):
        return {key: resolve_variables(value, state) for key, value in options.items()}
    if isinstance(options, list):
        return [resolve_variables(item, state) for item in options]
    if not isinstance(options, str):
        return options

    full = _FULL_PLACEHOLDER.match(options)
    if full and "{{" not in full.group(1):
        return resolve_expression(full.group(1), state)

    return _PLACEHOLDER.sub(lambda match: _render(resolve_expression(match.group(1), state)), options)
