"""
Utilities for `${name}` placeholders in block templates.

Templates are plain strings carrying zero or more `${name}` placeholders.
Substitution is a single left-to-right pass against a snapshot of variables:
the replacement text is never re-scanned, so a value that itself contains
`${...}` is inserted literally.

Example:
    ```python
    variables = {"a": "x", "b": "y"}
    substitute("${a}-${b}", variables)   # "x-y"
    find_placeholders("${a} ${b} ${a}")  # ["a", "b"]
    substitute("${missing}", variables)  # raises TemplateResolutionError
    ```

Dotted names (``${project.root}``) are looked up as a literal key first and
then walked through nested mappings or object attributes.
"""

import re
from collections.abc import Mapping
from typing import Any

from .exceptions import TemplateResolutionError

# Pattern to detect ${...} placeholders
PLACEHOLDER_PATTERN = re.compile(r"\$\{\s*([A-Za-z_][A-Za-z0-9_.\-]*)\s*\}")

_MISSING = object()


def has_interpolation(value: Any) -> bool:
    """
    Check if a value contains placeholder syntax.

    Args:
        value: Value to check

    Returns:
        True if value is a string containing a ``${`` marker

    Examples:
        >>> has_interpolation("${nodes}")
        True
        >>> has_interpolation("nodes")
        False
    """
    return isinstance(value, str) and "${" in value


def find_placeholders(template: str | None) -> list[str]:
    """Return placeholder names in order of first appearance, without duplicates."""
    if not template:
        return []
    seen: dict[str, None] = {}
    for match in PLACEHOLDER_PATTERN.finditer(template):
        seen.setdefault(match.group(1), None)
    return list(seen)


def lookup(name: str, variables: Mapping[str, Any]) -> Any:
    """
    Look up a placeholder name in a variable mapping.

    Returns the module-private sentinel when the name cannot be resolved, so a
    variable explicitly set to None is still distinguishable from a missing one.
    """
    if name in variables:
        return variables[name]
    if "." not in name:
        return _MISSING

    head, *path = name.split(".")
    if head not in variables:
        return _MISSING
    current = variables[head]
    for part in path:
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            return _MISSING
    return current


def is_resolvable(name: str, variables: Mapping[str, Any]) -> bool:
    """Check whether a placeholder name resolves against the variables."""
    return lookup(name, variables) is not _MISSING


def render_value(value: Any) -> str:
    """Render a variable value as template text."""
    if value is None:
        return ""
    return str(value)


def substitute(template: str, variables: Mapping[str, Any]) -> str:
    """
    Replace every placeholder in one pass.

    Args:
        template: Template text
        variables: Snapshot of variables to resolve against

    Returns:
        Template with every placeholder replaced by its rendered value

    Raises:
        TemplateResolutionError: If any referenced name is absent (all missing
            names are reported, not just the first)
    """
    if not template or "${" not in template:
        return template

    missing = [name for name in find_placeholders(template) if not is_resolvable(name, variables)]
    if missing:
        raise TemplateResolutionError(template, missing)

    return PLACEHOLDER_PATTERN.sub(
        lambda match: render_value(lookup(match.group(1), variables)), template
    )
