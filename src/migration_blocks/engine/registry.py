"""
Registry of block types.

Maps plan-file type names (``COMMAND``, ``AI_ASSISTED``, ...) to Block classes
and builds block instances from raw plan entries.
"""

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, PrivateAttr

from .block import Block

logger = logging.getLogger(__name__)


class BlockRegistry(BaseModel):
    """
    Registry of block classes keyed by type name.

    Example:
        registry = create_default_registry()
        block = registry.create({"type": "COMMAND", "name": "build", "command": "make"})
    """

    model_config = {"arbitrary_types_allowed": True}

    _blocks: dict[str, type[Block]] = PrivateAttr(default_factory=dict)

    def register(self, block_class: type[Block]) -> None:
        """Register block class using block_class.type_name as key."""
        if block_class.type_name in self._blocks:
            raise ValueError(f"Block type already registered: {block_class.type_name}")
        self._blocks[block_class.type_name] = block_class

    def get(self, type_name: str) -> type[Block]:
        """Get block class by type name."""
        if type_name not in self._blocks:
            available = list(self._blocks.keys())
            raise ValueError(f"Unknown block type: {type_name}. Available: {available}")
        return self._blocks[type_name]

    def list_types(self) -> list[str]:
        """List registered block types."""
        return list(self._blocks.keys())

    def has(self, type_name: str) -> bool:
        """Check if block type is registered."""
        return type_name in self._blocks

    def create(
        self,
        entry: Mapping[str, Any],
        defaults: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> Block:
        """
        Build a block from a plan entry.

        Args:
            entry: Mapping with a ``type`` key plus the block's config fields
            defaults: Fallback config values, applied only to fields the block's
                config declares and the entry leaves unset
            **kwargs: Extra constructor arguments (logger, client, ...)

        Raises:
            ValueError: If the entry has no type or the type is unknown
            BlockValidationError: If the config is invalid
        """
        data = dict(entry)
        type_name = data.pop("type", None)
        if not type_name:
            raise ValueError("Block entry is missing 'type'")
        block_class = self.get(str(type_name).upper())
        if defaults:
            accepted = block_class.config_type.model_fields
            for key, value in defaults.items():
                if key in accepted:
                    data.setdefault(key, value)
        return block_class(data, **kwargs)


def create_default_registry() -> BlockRegistry:
    """Create BlockRegistry with all built-in block types registered.

    Returns:
        BlockRegistry with COMMAND, AI_ASSISTED, AI_ASSISTED_BATCH, AI_PROMPT
        and AI_PROMPT_BATCH
    """
    from .blocks_assisted import AssistedBatchBlock, AssistedBlock
    from .blocks_core import CommandBlock
    from .blocks_hosted import HostedPromptBatchBlock, HostedPromptBlock

    registry = BlockRegistry()
    registry.register(CommandBlock)
    registry.register(AssistedBlock)
    registry.register(AssistedBatchBlock)
    registry.register(HostedPromptBlock)
    registry.register(HostedPromptBatchBlock)
    logger.debug(f"Registered block types: {registry.list_types()}")
    return registry
