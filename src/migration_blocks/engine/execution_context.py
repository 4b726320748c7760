"""
Execution context shared by every block of a plan run.

The context is a mutable variable store plus the `${name}` template resolver.
It is created once per run, borrowed by one block at a time, and never reset
mid-run. Blocks read and write variables through it; the plan runner merges
each successful block's output variables back into it.

Built-in variables are seeded at construction:
- project_root / project_name (flat strings)
- project: {"root", "name"}
- current_date / current_datetime (ISO 8601, local time)
- user: {"home", "name"}
"""

import getpass
import logging
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from .exceptions import TemplateResolutionError
from .interpolation import find_placeholders, has_interpolation, substitute

logger = logging.getLogger(__name__)


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""


class ExecutionContext:
    """
    Variable store and template resolver for one plan run.

    Example:
        context = ExecutionContext(Path("/work/legacy-app"))
        context.set("module", "billing")
        context.substitute("cd ${project_root}/${module}")
        # "cd /work/legacy-app/billing"

        context.set("collection_var", "stateless_beans")
        context.resolve_name("${collection_var}")  # "stateless_beans"
    """

    def __init__(
        self,
        project_root: str | Path,
        variables: Mapping[str, Any] | None = None,
        dry_run: bool = False,
    ):
        self.project_root = Path(project_root).resolve()
        self.dry_run = dry_run
        self._variables: dict[str, Any] = {}
        self._seed_builtin_variables()
        if variables:
            self._variables.update(variables)

    def _seed_builtin_variables(self) -> None:
        root = str(self.project_root)
        name = self.project_root.name
        now = datetime.now()
        self._variables.update(
            {
                "project": {"root": root, "name": name},
                "project_root": root,
                "project_name": name,
                "current_date": now.date().isoformat(),
                "current_datetime": now.isoformat(timespec="seconds"),
                "user": {"home": str(Path.home()), "name": _current_user()},
            }
        )

    def get(self, name: str, default: Any = None) -> Any:
        """Get a variable value, or ``default`` if it is not set."""
        return self._variables.get(name, default)

    def has(self, name: str) -> bool:
        """Check if a variable is set (a value of None still counts as set)."""
        return name in self._variables

    def set(self, name: str, value: Any) -> None:
        """Set a variable, replacing any previous value."""
        self._variables[name] = value

    def set_many(self, values: Mapping[str, Any], resolve_templates: bool = False) -> None:
        """
        Set several variables in iteration order.

        Args:
            values: Variables to set
            resolve_templates: When True, string values containing placeholders
                are substituted against the variables set so far, so later
                entries may reference earlier ones. A value that fails to
                resolve is stored literally; such text is often not meant as a
                template at all (Maven ``${project.version}`` properties, for
                instance).
        """
        for name, value in values.items():
            if resolve_templates and has_interpolation(value):
                try:
                    value = self.substitute(value)
                except TemplateResolutionError as e:
                    logger.debug(f"Keeping literal value for '{name}': {e}")
            self._variables[name] = value

    def remove(self, name: str) -> None:
        """Remove a variable. Removing an unset name is a no-op."""
        self._variables.pop(name, None)

    def all_variables(self) -> dict[str, Any]:
        """Return a shallow copy of every variable, for diagnostics."""
        return dict(self._variables)

    def substitute(self, template: str) -> str:
        """
        Resolve every `${name}` in a template against the current variables.

        Raises:
            TemplateResolutionError: If the template references unset names
        """
        return substitute(template, self._variables)

    def resolve_name(self, reference: str) -> str:
        """
        Resolve a variable name that may itself be computed.

        ``"${collection_var}"`` resolves to the value of ``collection_var``; a
        reference without placeholders is already a name and is returned as is.
        """
        if reference is None or not reference.strip():
            return reference
        if has_interpolation(reference):
            return self.substitute(reference).strip()
        return reference.strip()

    @staticmethod
    def required_names(template: str | None) -> list[str]:
        """Names referenced by a template, in order of first appearance."""
        return find_placeholders(template)

    def __repr__(self) -> str:
        return (
            f"ExecutionContext(project_root={str(self.project_root)!r}, "
            f"variables={len(self._variables)})"
        )
