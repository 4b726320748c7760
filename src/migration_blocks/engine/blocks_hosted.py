"""
Blocks that call a hosted model (Bedrock).

- HostedPromptBlock (AI_PROMPT): one templated prompt, one model reply
- HostedPromptBatchBlock (AI_PROMPT_BATCH): replays the prompt over every item
  of a list held in the context, through a single shared client

Replies can be post-processed with a ResponseFormat; the formatted reply is
published as ``<output_variable>_parsed`` next to the plain text.
"""

import json
import logging
import re
from enum import Enum
from typing import Any, ClassVar

from pydantic import Field, field_validator

from .block import Block, BlockConfig, BlockOutcome
from .blocks_assisted import to_node_list
from .execution_context import ExecutionContext
from .hosted_client import HostedModelClient, HostedModelResponse
from .hosted_config import HostedConfigLoader, HostedModelConfig

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_VARIABLE = "ai_response"

PROMPT_LOG_LIMIT = 500

# Scratch variables visible to templates while a batch item is processed
BATCH_SCRATCH_VARIABLES = ("current_item", "item", "current_index", "total_items")

_BLANK_LINE_RUNS = re.compile(r"\n\s*\n")


class ResponseFormat(str, Enum):
    """Post-processing applied to a model reply."""

    TEXT = "text"
    JSON = "json"
    STRUCTURED = "structured"

    @classmethod
    def _missing_(cls, value: object) -> "ResponseFormat | None":
        if isinstance(value, str):
            for member in cls:
                if member.value == value.lower():
                    return member
        return None


def format_reply(
    text: str, response_format: ResponseFormat, block_name: str = "AI_PROMPT"
) -> str | None:
    """
    Format a reply for ``<output_variable>_parsed``.

    - TEXT: trimmed text
    - JSON: pretty-printed JSON, or the text unchanged (with a warning) when
      it does not parse
    - STRUCTURED: pretty-printed JSON when it parses, otherwise trimmed text
      with runs of blank lines collapsed to one

    Returns:
        None for an empty reply
    """
    if not text or not text.strip():
        return None

    if response_format is ResponseFormat.TEXT:
        return text.strip()

    try:
        return json.dumps(json.loads(text), indent=2)
    except json.JSONDecodeError as e:
        if response_format is ResponseFormat.JSON:
            logger.warning(
                f"Failed to parse response as JSON for '{block_name}': {e}. "
                "Returning raw response."
            )
            return text
        return _BLANK_LINE_RUNS.sub("\n\n", text.strip())


def _response_format_from_name(cls: type[Any], value: Any) -> Any:
    if isinstance(value, str):
        return ResponseFormat(value)
    return value


class HostedPromptConfig(BlockConfig):
    """Configuration for an AI_PROMPT block."""

    prompt_template: str = Field(min_length=1)
    output_variable: str | None = Field(
        default=None,
        description=f"Variable receiving the reply text (default: {DEFAULT_OUTPUT_VARIABLE})",
    )
    description: str | None = Field(default=None)
    response_format: ResponseFormat = Field(
        default=ResponseFormat.TEXT,
        description="Formatting for <output_variable>_parsed: text, json or structured",
    )
    max_tokens: int | None = Field(default=None, ge=1, description="Override client max_tokens")
    temperature: float | None = Field(
        default=None, ge=0.0, le=1.0, description="Override client temperature"
    )
    config_path: str | None = Field(
        default=None,
        description="Bedrock config file (used only when no client is injected)",
    )

    _parse_format = field_validator("response_format", mode="before")(_response_format_from_name)


class HostedPromptBatchConfig(BlockConfig):
    """Configuration for an AI_PROMPT_BATCH block."""

    items_variable: str = Field(
        min_length=1,
        description="Context variable holding the item list (may be a ${...} reference)",
    )
    prompt_template: str = Field(min_length=1)
    description: str | None = Field(default=None)
    max_prompts: int = Field(default=-1, description="Send at most this many prompts (<= 0: all)")
    response_format: ResponseFormat = Field(default=ResponseFormat.TEXT)
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0.0, le=1.0)
    config_path: str | None = Field(
        default=None,
        description="Bedrock config file (used only when no client is injected)",
    )

    _parse_format = field_validator("response_format", mode="before")(_response_format_from_name)


def _load_enabled_config(config_path: str | None) -> tuple[HostedModelConfig, BlockOutcome | None]:
    config = HostedConfigLoader(config_path).load_config()
    if not config.enabled:
        return config, BlockOutcome.failure("Hosted model is disabled", f"Model: {config.model_id}")
    return config, None


class HostedPromptBlock(Block):
    """
    Sends a resolved prompt to a hosted model.

    Outputs:
        prompt: The resolved prompt
        <output_variable>: Reply text
        <output_variable>_parsed: Reply formatted per response_format (omitted
            when the reply is empty)
        raw_response: Response body as received
        stop_reason: Model stop reason, when reported
        cached: Whether the reply came from the client's result cache

    A shared HostedModelClient may be injected so several blocks use one rate
    limiter. Without one, the block loads the Bedrock config and opens a
    client for the duration of each execution.
    """

    type_name: ClassVar[str] = "AI_PROMPT"
    config_type: ClassVar[type[BlockConfig]] = HostedPromptConfig
    template_fields: ClassVar[tuple[str, ...]] = ("prompt_template",)
    failure_message: ClassVar[str] = "Failed to invoke hosted model"

    config: HostedPromptConfig

    def __init__(
        self,
        config: BlockConfig | dict[str, Any],
        logger: logging.Logger | None = None,
        client: HostedModelClient | None = None,
    ):
        super().__init__(config, logger=logger)
        self.client = client

    def validation_errors(self) -> list[str]:
        if not self.config.prompt_template.strip():
            return ["Prompt template is required"]
        return []

    async def run(self, context: ExecutionContext) -> BlockOutcome:
        prompt = context.substitute(self.config.prompt_template)
        if len(prompt) <= PROMPT_LOG_LIMIT:
            self.logger.info(f"Resolved AI prompt for '{self.name}': {prompt}")
        else:
            self.logger.info(
                f"Resolved AI prompt for '{self.name}': {len(prompt)} characters, "
                f"starts with: {prompt[:PROMPT_LOG_LIMIT]}..."
            )

        if self.client is not None:
            response = await self._invoke(self.client, prompt)
        else:
            config, disabled = _load_enabled_config(self.config.config_path)
            if disabled is not None:
                return disabled
            async with HostedModelClient(config) as client:
                response = await self._invoke(client, prompt)

        self.logger.info(
            f"Bedrock API response received for '{self.name}': {len(response.text)} characters "
            f"(attempts: {response.attempts}, cached: {response.cached})"
        )
        output_variable = self.config.output_variable or DEFAULT_OUTPUT_VARIABLE
        builder = (
            BlockOutcome.builder()
            .message("AI prompt completed successfully")
            .output_variable("prompt", prompt)
            .output_variable(output_variable, response.text)
            .output_variable("raw_response", response.raw_response)
            .output_variable("stop_reason", response.stop_reason)
            .output_variable("cached", response.cached)
        )
        parsed = format_reply(response.text, self.config.response_format, self.name)
        if parsed is not None:
            builder.output_variable(f"{output_variable}_parsed", parsed)
        return builder.build()

    async def _invoke(self, client: HostedModelClient, prompt: str) -> HostedModelResponse:
        return await client.invoke(
            prompt,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )

    def to_markdown(self) -> str:
        lines = [f"**{self.name}** (AI Prompt)"]
        if self.config.description:
            lines.append(f"- Description: {self.config.description}")
        if self.config.response_format is not ResponseFormat.TEXT:
            lines.append(f"- Response Format: {self.config.response_format.value}")
        lines.append(_describe_prompt(self.config.prompt_template))
        return "\n".join(lines) + "\n"


class HostedPromptBatchBlock(Block):
    """
    Sends one prompt per item of a list held in the context.

    Each item gets a fresh HostedPromptBlock named ``<name>_item_<i>``, all
    sharing one client and therefore one rate limiter and result cache. While
    an item is processed the context carries current_item (also as item),
    current_index and total_items; they are removed afterwards even when the
    batch is interrupted.

    Outputs:
        prompts: Resolved prompt per item, None where the item failed
        ai_responses: Reply texts of the successful items
        ai_responses_parsed: Formatted replies, when any were produced
        prompt_count, success_count, failure_count: Counters

    The batch succeeds when at least one item succeeded.
    """

    type_name: ClassVar[str] = "AI_PROMPT_BATCH"
    config_type: ClassVar[type[BlockConfig]] = HostedPromptBatchConfig
    template_fields: ClassVar[tuple[str, ...]] = ("prompt_template",)
    failure_message: ClassVar[str] = "Failed to generate AI prompt batch"

    config: HostedPromptBatchConfig

    def __init__(
        self,
        config: BlockConfig | dict[str, Any],
        logger: logging.Logger | None = None,
        client: HostedModelClient | None = None,
    ):
        super().__init__(config, logger=logger)
        self.client = client

    def validation_errors(self) -> list[str]:
        errors = []
        if not self.config.prompt_template.strip():
            errors.append("Prompt template is required")
        if not self.config.items_variable.strip():
            errors.append("Items variable name is required")
        return errors

    def required_variables(self) -> list[str]:
        names = [
            n
            for n in super().required_variables()
            if n.split(".", 1)[0] not in BATCH_SCRATCH_VARIABLES
        ]
        reference = self.config.items_variable
        if "${" in reference:
            names.extend(n for n in ExecutionContext.required_names(reference) if n not in names)
        elif reference.strip() not in names:
            names.append(reference.strip())
        return names

    async def run(self, context: ExecutionContext) -> BlockOutcome:
        config = self.config
        variable_name = context.resolve_name(config.items_variable)
        value = context.get(variable_name)
        if value is None:
            return BlockOutcome.failure(
                "Items variable not found in context",
                f"Variable: {variable_name} (from: {config.items_variable})",
            )

        items = to_node_list(value)
        if not items:
            return (
                BlockOutcome.builder()
                .message("No items to process")
                .warning("Items list was empty")
                .build()
            )

        if self.client is not None:
            return await self._process_items(context, items, self.client)

        model_config, disabled = _load_enabled_config(config.config_path)
        if disabled is not None:
            return disabled
        async with HostedModelClient(model_config) as client:
            return await self._process_items(context, items, client)

    async def _process_items(
        self, context: ExecutionContext, items: list[Any], client: HostedModelClient
    ) -> BlockOutcome:
        config = self.config
        item_count = min(len(items), config.max_prompts) if config.max_prompts > 0 else len(items)
        prompts: list[str | None] = []
        responses: list[str] = []
        parsed_responses: list[str] = []
        success_count = 0
        failure_count = 0

        self.logger.info(f"AI_PROMPT_BATCH: {self.name}")
        self.logger.info(f"Processing {item_count} items with AI prompts")

        try:
            for index, item in enumerate(items[:item_count]):
                context.set("current_item", item)
                context.set("item", item)
                context.set("current_index", index)
                context.set("total_items", len(items))

                outcome = await self._item_block(index, item_count, client).execute(context)
                if not outcome.success:
                    failure_count += 1
                    prompts.append(None)
                    self.logger.warning(f"Failed to process item {index}: {outcome.error_detail}")
                    continue

                success_count += 1
                variables = outcome.output_variables
                prompts.append(variables["prompt"])
                responses.append(variables[DEFAULT_OUTPUT_VARIABLE])
                if f"{DEFAULT_OUTPUT_VARIABLE}_parsed" in variables:
                    parsed_responses.append(variables[f"{DEFAULT_OUTPUT_VARIABLE}_parsed"])
        finally:
            for name in BATCH_SCRATCH_VARIABLES:
                context.remove(name)

        builder = (
            BlockOutcome.builder()
            .success(success_count > 0)
            .message(
                f"Processed {item_count} AI prompts "
                f"({success_count} successful, {failure_count} failed)"
            )
            .output_variables(
                {
                    "prompts": prompts,
                    "prompt_count": item_count,
                    "success_count": success_count,
                    "failure_count": failure_count,
                }
            )
        )
        if responses:
            builder.output_variable("ai_responses", responses)
        if parsed_responses:
            builder.output_variable("ai_responses_parsed", parsed_responses)
        if len(items) > item_count:
            builder.warning(f"Limited to {item_count} prompts out of {len(items)} items")
        if failure_count:
            builder.warning(f"{failure_count} out of {item_count} items failed processing")
        if failure_count == item_count:
            builder.message("All items failed processing")
        return builder.build()

    def _item_block(
        self, index: int, item_count: int, client: HostedModelClient
    ) -> HostedPromptBlock:
        description = self.config.description or self.name
        return HostedPromptBlock(
            HostedPromptConfig(
                name=f"{self.name}_item_{index}",
                prompt_template=self.config.prompt_template,
                description=f"{description} (item {index + 1}/{item_count})",
                response_format=self.config.response_format,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            ),
            logger=self.logger,
            client=client,
        )

    def to_markdown(self) -> str:
        lines = [f"**{self.name}** (AI Prompt Batch)"]
        if self.config.description:
            lines.append(f"- Description: {self.config.description}")
        lines.append(f"- Items Variable: `{self.config.items_variable}`")
        if self.config.max_prompts > 0:
            lines.append(f"- Max Prompts: {self.config.max_prompts}")
        lines.append(_describe_prompt(self.config.prompt_template))
        return "\n".join(lines) + "\n"


def _describe_prompt(template: str) -> str:
    if len(template) <= 200:
        return f"- Prompt: `{template}`"
    return f"- Prompt: {len(template)} characters"
