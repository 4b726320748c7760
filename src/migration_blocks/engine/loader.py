"""
YAML plan loader.

A plan is an ordered list of blocks plus initial variables:

```yaml
name: ejb-to-spring
description: Convert stateless beans
variables:
  output_dir: ${project_root}/migrated
blocks:
  - type: COMMAND
    name: compile
    command: mvn -q compile
  - type: AI_ASSISTED_BATCH
    name: convert-beans
    input-nodes: ${bean_list_var}
    prompt-template: Convert ${current_node_id} to a Spring service
    working-directory-template: ${project_root}
```

Block keys may use either ``snake_case`` or ``kebab-case``. Loading never
raises for bad input; problems come back as LoadResult failures.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .block import Block
from .exceptions import BlockValidationError
from .load_result import LoadResult
from .registry import BlockRegistry, create_default_registry

logger = logging.getLogger(__name__)

# Legacy plan keys that differ from config field names beyond kebab/snake case
_KEY_ALIASES = {
    "input_nodes": "input_nodes_variable",
    "input_nodes_variable_name": "input_nodes_variable",
    "items_variable_name": "items_variable",
}


@dataclass
class MigrationPlan:
    """An ordered list of blocks plus the variables seeded before the first runs."""

    name: str
    blocks: list[Block]
    description: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)


def _normalize_entry(entry: dict[str, Any]) -> dict[str, Any]:
    normalized = {}
    for key, value in entry.items():
        name = str(key).replace("-", "_")
        normalized[_KEY_ALIASES.get(name, name)] = value
    return normalized


def load_plan_from_file(
    file_path: str | Path,
    registry: BlockRegistry | None = None,
    defaults: Mapping[str, Any] | None = None,
) -> LoadResult[MigrationPlan]:
    """
    Load and validate a plan from a YAML file.

    Returns:
        LoadResult.success(MigrationPlan) if valid
        LoadResult.failure(*problems) otherwise
    """
    path = Path(file_path)
    source = str(file_path)
    if not path.exists():
        return LoadResult.failure("plan file not found", source=source)
    if not path.is_file():
        return LoadResult.failure("path is not a file", source=source)

    try:
        yaml_content = path.read_text(encoding="utf-8")
    except OSError as e:
        return LoadResult.failure(f"failed to read plan: {e}", source=source)

    return load_plan_from_yaml(yaml_content, registry, source=source, defaults=defaults)


def load_plan_from_yaml(
    yaml_content: str,
    registry: BlockRegistry | None = None,
    source: str = "<string>",
    defaults: Mapping[str, Any] | None = None,
) -> LoadResult[MigrationPlan]:
    """
    Load and validate a plan from a YAML string.

    Every invalid block is reported, not just the first one.

    Args:
        yaml_content: YAML text
        registry: Block types available to the plan (defaults to the built-ins)
        source: Source identifier for error messages
        defaults: Config values applied to blocks that accept them but leave
            them unset (for instance a default ``assistant`` preset)
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        return LoadResult.failure(f"invalid YAML syntax: {e}", source=source)

    if not isinstance(data, dict):
        return LoadResult.failure(
            f"plan must be a YAML dictionary, got {type(data).__name__}", source=source
        )

    entries = data.get("blocks")
    if not isinstance(entries, list) or not entries:
        return LoadResult.failure("plan must define a non-empty 'blocks' list", source=source)

    variables = data.get("variables") or {}
    if not isinstance(variables, dict):
        return LoadResult.failure("'variables' must be a dictionary", source=source)

    registry = registry or create_default_registry()
    blocks: list[Block] = []
    errors: list[str] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            errors.append(f"block #{index}: expected a mapping, got {type(entry).__name__}")
            continue
        try:
            blocks.append(registry.create(_normalize_entry(entry), defaults=defaults))
        except (BlockValidationError, ValueError) as e:
            errors.append(f"block #{index}: {e}")

    names = [block.name for block in blocks]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        errors.append(f"duplicate block names {duplicates}")

    if errors:
        for problem in errors:
            logger.error(f"Plan {source}: {problem}")
        return LoadResult.failure(*errors, source=source)

    plan = MigrationPlan(
        name=str(data.get("name") or Path(source).stem),
        description=data.get("description"),
        variables=variables,
        blocks=blocks,
    )
    logger.info(f"Loaded plan '{plan.name}' with {len(blocks)} blocks from {source}")
    return LoadResult.success(plan, source=source)
