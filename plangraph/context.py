"""
Path-addressed access to the shared execution context.

The context is a plain nested structure of dicts and lists. Paths use dot notation with optional
bracketed indices (``a.b[0].c``); ``a[0]`` is treated exactly like ``a.0``.
"""

import json
import logging
import re
from collections.abc import Mapping
from typing import Any, Optional

from jinja2.sandbox import SandboxedEnvironment

logger = logging.getLogger(__name__)

_INDEX_PATTERN = re.compile(r"\[(\d+)\]")
_EXACT_TEMPLATE_PATTERN = re.compile(r"^\{\{\s*(.+?)\s*\}\}$", re.DOTALL)
_INLINE_TEMPLATE_PATTERN = re.compile(r"\$\{([^}]+)\}")
_QUOTED_PATTERN = re.compile(r"(\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*')")

_JS_SYNTAX = [
    (re.compile(r"\.length\b"), "|length"),
    (re.compile(r"!=="), "!="),
    (re.compile(r"==="), "=="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\b(null|undefined)\b"), "none"),
]

_condition_environment = SandboxedEnvironment()


def _tokenize(path: str) -> list[str]:
    normalized = _INDEX_PATTERN.sub(r".\1", path)
    return [token for token in normalized.split(".") if token]


def _get_child(container: Any, token: str) -> Any:
    if isinstance(container, Mapping):
        if token in container:
            return container[token]
        if token.isdigit():
            return container.get(int(token))
        return None
    if isinstance(container, list):
        if token.isdigit() and int(token) < len(container):
            return container[int(token)]
        return None
    return None


def _set_child(container: Any, token: str, value: Any) -> None:
    if isinstance(container, list):
        if not token.isdigit():
            raise TypeError(f"Cannot set key '{token}' on a list")
        index = int(token)
        if index >= len(container):
            container.extend([None] * (index + 1 - len(container)))
        container[index] = value
    else:
        container[token] = value


def resolve_path(context: Any, path: Optional[str]) -> Any:
    """
    Reads the value found at ``path``.

    :param context: The structure to read from.
    :param path: A dotted path, e.g. ``user.addresses[0].city``.
    :return: The value, or None if any intermediate is missing or not a container.
    """
    if not path:
        return None

    current = context
    for token in _tokenize(path):
        if current is None:
            return None
        current = _get_child(current, token)

    return current


def set_path(context: dict, path: Optional[str], value: Any) -> dict:
    """
    Writes ``value`` at ``path``, creating intermediate dicts as needed.

    Intermediates that exist but are not containers are overwritten with a new dict. Numeric tokens
    address list positions when the current container is a list, padding it with None.

    :param context: The structure to write into; it is mutated in place.
    :param path: A dotted path, e.g. ``results.pages[2].title``.
    :param value: The value to store.
    :return: The same context, for chaining.
    """
    if not path:
        return context

    tokens = _tokenize(path)
    current = context

    for token in tokens[:-1]:
        child = _get_child(current, token)
        if not isinstance(child, (Mapping, list)):
            child = {}
            _set_child(current, token, child)
        current = child

    _set_child(current, tokens[-1], value)
    return context


def deep_clone(value: Any) -> Any:
    """
    Copies a JSON-compatible structure through a serialize/deserialize round-trip.

    Values that cannot be serialized (callables, cycles, arbitrary objects) are returned as-is,
    which means the caller gets the original reference back.
    """
    if value is None:
        return None

    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError) as e:
        logger.warning(f"Failed to deep clone value, returning the original reference: {e}")
        return value


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def substitute_vars(template: Any, context: Any) -> Any:
    """
    Substitutes context values into a template.

    Two syntaxes are supported:

    * ``"{{path}}"`` as the whole string returns the raw value at ``path``, keeping its type.
    * ``"${path}"`` anywhere inside a string is replaced by the value coerced to a string.

    Lists and dicts are walked recursively; dict keys are never substituted.

    :param template: A string, list, dict or any other value.
    :param context: The context to resolve paths against.
    :return: The substituted copy of the template.
    """
    if template is None:
        return None

    if isinstance(template, str):
        if exact_match := _EXACT_TEMPLATE_PATTERN.match(template):
            return resolve_path(context, exact_match.group(1))

        return _INLINE_TEMPLATE_PATTERN.sub(
            lambda match: _stringify(resolve_path(context, match.group(1).strip())), template
        )

    if isinstance(template, list):
        return [substitute_vars(item, context) for item in template]

    if isinstance(template, Mapping):
        return {key: substitute_vars(value, context) for key, value in template.items()}

    return template


def _to_jinja_expression(expression: str) -> str:
    parts = _QUOTED_PATTERN.split(expression)
    # odd indices hold quoted literals
    for idx in range(0, len(parts), 2):
        for pattern, replacement in _JS_SYNTAX:
            parts[idx] = pattern.sub(replacement, parts[idx])
    return "".join(parts)


def evaluate_condition(condition: str, context: Mapping) -> bool:
    """
    Evaluates a boolean condition against the context.

    ``${path}`` references are substituted first, the result is then evaluated as a sandboxed
    expression with the top-level context keys in scope. JavaScript-style operators
    (``&&``, ``||``, ``!``, ``===``) are accepted alongside ``and``, ``or``, ``not`` and ``==``, and
    ``.length`` reads as the ``length`` filter. Other JavaScript properties and methods are not translated.

    Examples::

        evaluate_condition("${count} > 10", {"count": 15})           # True
        evaluate_condition("status == 'active'", {"status": "active"})  # True

    :param condition: The condition expression.
    :param context: The current context.
    :return: The truthiness of the expression; False if it cannot be evaluated.
    """
    try:
        substituted = substitute_vars(condition, context)
        expression = _condition_environment.compile_expression(_to_jinja_expression(str(substituted)))
        variables = {key: value for key, value in context.items() if isinstance(key, str)}
        return bool(expression(**variables))
    except Exception as e:
        logger.warning(f"Failed to evaluate condition '{condition}': {e}")
        return False
