"""``${VAR}`` placeholder substitution for configuration values."""

from __future__ import annotations

import re
from collections import abc as cabc

_PLACEHOLDER = re.compile(r"\$\{\s*([^}]+?)\s*\}")


def resolve(template: object, variables: cabc.Mapping[str, str]) -> object:
    """Substitute ``${NAME}`` placeholders in *template*.

    Whitespace inside the braces is ignored. Placeholders naming a variable
    that is not present are left untouched. Non-string values are returned
    unchanged.

    Parameters
    ----------
    template
        Value to resolve; only ``str`` values are rewritten.
    variables
        Flat variable map used for substitution.

    Returns
    -------
    object
        The resolved string, or *template* itself when it is not a string.

    Examples
    --------
    >>> resolve("state/${ WORKSPACE }.tfstate", {"WORKSPACE": "prod"})
    'state/prod.tfstate'
    >>> resolve("${MISSING}", {})
    '${MISSING}'
    >>> resolve(42, {})
    42
    """
    if not isinstance(template, str):
        return template

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in variables:
            return variables[name]
        return match.group(0)

    return _PLACEHOLDER.sub(_substitute, template)


def resolve_object(value: object, variables: cabc.Mapping[str, str]) -> object:
    """Recursively resolve placeholders in mappings, lists and strings.

    Examples
    --------
    >>> resolve_object({"key": "${A}", "tags": ["${A}", 1]}, {"A": "x"})
    {'key': 'x', 'tags': ['x', 1]}
    """
    if isinstance(value, str):
        return resolve(value, variables)
    if isinstance(value, cabc.Mapping):
        return {key: resolve_object(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_object(item, variables) for item in value]
    return value
