"""
Block contract: typed configs, outcomes, and the Block base class.

- BlockConfig: strict pydantic config (extra='forbid'); constructing a block
  from an incomplete config raises BlockValidationError immediately.
- BlockOutcome: immutable result of one execution. Output variables are merged
  into the context by the caller, never by the block itself.
- Block: async execute() that never raises for ordinary failures. Every
  Exception is converted into a failed outcome carrying a message and detail;
  asyncio.CancelledError (host shutdown) always propagates.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, ClassVar, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import BlockValidationError
from .execution_context import ExecutionContext
from .interpolation import find_placeholders

logger = logging.getLogger(__name__)


class BlockConfig(BaseModel):
    """Base class for block configuration validation using Pydantic v2."""

    model_config = ConfigDict(extra="forbid")  # reject unknown fields

    name: str = Field(min_length=1, description="Unique block name within a plan")


class BlockOutcome(BaseModel):
    """Immutable result of executing one block."""

    model_config = ConfigDict(frozen=True)

    success: bool = Field(description="Whether the block achieved its goal")
    message: str = Field(default="", description="Human-readable summary")
    output_variables: dict[str, Any] = Field(
        default_factory=dict,
        description="Variables the caller merges into the context on success",
    )
    warnings: list[str] = Field(default_factory=list)
    error_detail: str | None = Field(
        default=None,
        description="Diagnostic detail for failures (captured output, resolved command)",
    )
    elapsed_ms: int = Field(default=0, ge=0)

    @classmethod
    def ok(cls, message: str = "") -> "BlockOutcome":
        return cls(success=True, message=message)

    @classmethod
    def failure(cls, message: str, error_detail: str | None = None) -> "BlockOutcome":
        return cls(success=False, message=message, error_detail=error_detail)

    @classmethod
    def builder(cls) -> "BlockOutcomeBuilder":
        return BlockOutcomeBuilder()


class BlockOutcomeBuilder:
    """
    Accumulates outcome fields, then builds one frozen BlockOutcome.

    Defaults to success=True with an empty message.

    Example:
        outcome = (
            BlockOutcome.builder()
            .message("Command executed successfully")
            .output_variable("exit_code", 0)
            .build()
        )
    """

    def __init__(self) -> None:
        self._success = True
        self._message = ""
        self._outputs: dict[str, Any] = {}
        self._warnings: list[str] = []
        self._error_detail: str | None = None
        self._elapsed_ms = 0

    def success(self, success: bool) -> Self:
        self._success = success
        return self

    def message(self, message: str) -> Self:
        self._message = message
        return self

    def output_variable(self, name: str, value: Any) -> Self:
        self._outputs[name] = value
        return self

    def output_variables(self, values: Mapping[str, Any]) -> Self:
        self._outputs.update(values)
        return self

    def warning(self, warning: str) -> Self:
        self._warnings.append(warning)
        return self

    def error_detail(self, detail: str | None) -> Self:
        self._error_detail = detail
        return self

    def elapsed_ms(self, elapsed_ms: int) -> Self:
        self._elapsed_ms = elapsed_ms
        return self

    def build(self) -> BlockOutcome:
        return BlockOutcome(
            success=self._success,
            message=self._message,
            output_variables=dict(self._outputs),
            warnings=list(self._warnings),
            error_detail=self._error_detail,
            elapsed_ms=self._elapsed_ms,
        )


class Block(ABC):
    """Base class for plan blocks.

    Blocks wrap one unit of migration work (a shell command, an assistant
    invocation, a hosted model call). They are:
    - Configured: one validated pydantic config per instance
    - Total: execute() converts every failure into a failed BlockOutcome
    - Introspectable: required_variables() and to_markdown() work without a context

    Subclasses must:
    1. Set class attributes (type_name, config_type)
    2. Implement run() and to_markdown()
    3. Optionally override validation_errors() and template_fields

    Example:
        class EchoBlock(Block):
            type_name = "ECHO"
            config_type = EchoConfig
            template_fields = ("text",)

            async def run(self, context: ExecutionContext) -> BlockOutcome:
                text = context.substitute(self.config.text)
                return BlockOutcome.builder().output_variable("text", text).build()
    """

    type_name: ClassVar[str]  # Block type identifier used in plan files (e.g., "COMMAND")
    config_type: ClassVar[type[BlockConfig]]
    # Config attributes holding templates, scanned by required_variables()
    template_fields: ClassVar[tuple[str, ...]] = ()
    # Outcome message used when run() raises
    failure_message: ClassVar[str] = "Block execution failed"

    def __init__(
        self,
        config: BlockConfig | Mapping[str, Any],
        logger: logging.Logger | None = None,
    ):
        """
        Args:
            config: Validated config instance, or raw mapping to validate
            logger: Logger for progress and streamed process output (defaults
                to the module logger of the concrete block)

        Raises:
            BlockValidationError: If the config is missing required fields or
                carries unknown ones
        """
        if isinstance(config, self.config_type):
            self.config = config
        elif isinstance(config, BlockConfig):
            raise BlockValidationError(
                self.type_name,
                f"expected {self.config_type.__name__}, got {type(config).__name__}",
                config.name,
            )
        else:
            self.config = self._validate_config(config)
        self.logger = logger or logging.getLogger(type(self).__module__)

    @classmethod
    def _validate_config(cls, data: Mapping[str, Any]) -> Any:
        try:
            return cls.config_type.model_validate(dict(data))
        except ValidationError as e:
            name = data.get("name") if isinstance(data.get("name"), str) else None
            problems = "; ".join(
                f"{'.'.join(str(loc) for loc in err['loc']) or 'config'}: {err['msg']}"
                for err in e.errors()
            )
            raise BlockValidationError(cls.type_name, problems, name) from e

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], logger: logging.Logger | None = None) -> Self:
        """Build a block from a raw mapping (as loaded from a plan file)."""
        return cls(data, logger=logger)

    @property
    def name(self) -> str:
        return self.config.name

    def validation_errors(self) -> list[str]:
        """Problems that make the block unrunnable. Empty when the block is valid."""
        return []

    def validate(self) -> bool:
        """Check the block is runnable, logging each problem found."""
        errors = self.validation_errors()
        for error in errors:
            self.logger.error(f"{self.type_name} block '{self.name}': {error}")
        return not errors

    def required_variables(self) -> list[str]:
        """Variables this block's templates reference, in order of first appearance."""
        seen: dict[str, None] = {}
        for field_name in self.template_fields:
            value = getattr(self.config, field_name, None)
            if isinstance(value, str):
                for name in find_placeholders(value):
                    seen.setdefault(name, None)
        return list(seen)

    async def execute(self, context: ExecutionContext) -> BlockOutcome:
        """
        Run the block against a context.

        Returns:
            BlockOutcome with elapsed time filled in. Never raises for an
            Exception: failures become success=False outcomes.

        Raises:
            asyncio.CancelledError: Host shutdown, after child processes are killed
        """
        start = time.monotonic()
        try:
            outcome = await self.run(context)
        except Exception as e:
            self.logger.error(f"{self.type_name} block '{self.name}' failed: {e}")
            outcome = BlockOutcome.failure(self.failure_message, str(e))
        elapsed_ms = int((time.monotonic() - start) * 1000)
        return outcome.model_copy(update={"elapsed_ms": elapsed_ms})

    @abstractmethod
    async def run(self, context: ExecutionContext) -> BlockOutcome:
        """Block logic. May raise; execute() converts exceptions into failed outcomes."""

    @abstractmethod
    def to_markdown(self) -> str:
        """Human-readable description of the block for plan documentation."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
