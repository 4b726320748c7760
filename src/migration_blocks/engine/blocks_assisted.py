"""
Blocks that drive a local AI assistant CLI.

- AssistedBlock: one prompt, one assistant run, one transcript file
- AssistedBatchBlock: replays AssistedBlock over every node of a list held in
  the context, isolating per-node failures so partial success is reportable

A zero exit with no stdout is a failure, never an empty answer: a CLI that
silently produces nothing cannot be told apart from a broken invocation.
"""

import logging
from collections.abc import Mapping, Set
from pathlib import Path
from typing import Any, ClassVar

from pydantic import Field, field_validator

from .assistant import AssistantCli, assistant_from_preset, write_transcript
from .block import Block, BlockConfig, BlockOutcome
from .exceptions import EmptyOutputError, EmptyOutputWithStderrError, ProcessExitError
from .execution_context import ExecutionContext
from .process_io import build_env, run_with_stdin

DEFAULT_OUTPUT_VARIABLE = "ai_response"

# Resolved prompts longer than this are logged truncated
PROMPT_LOG_LIMIT = 2048

# Scratch variables visible to templates while a batch item is processed
BATCH_SCRATCH_VARIABLES = ("current_node", "current_node_id", "current_index", "total_nodes")


class AssistedConfig(BlockConfig):
    """Configuration for an AI_ASSISTED block."""

    prompt_template: str = Field(min_length=1, description="Prompt template sent on stdin")
    working_directory_template: str = Field(
        min_length=1,
        description="Directory the assistant works in, resolved per invocation",
    )
    timeout_seconds: int = Field(default=300, description="Bound on the assistant run")
    output_variable: str | None = Field(
        default=None,
        description=f"Variable receiving the reply (default: {DEFAULT_OUTPUT_VARIABLE})",
    )
    description: str | None = Field(default=None)
    assistant: AssistantCli = Field(
        default_factory=AssistantCli,
        description="Assistant command line, or a preset name (amazon-q, gemini)",
    )

    _resolve_preset = field_validator("assistant", mode="before")(assistant_from_preset)


class AssistedBatchConfig(BlockConfig):
    """Configuration for an AI_ASSISTED_BATCH block."""

    input_nodes_variable: str = Field(
        min_length=1,
        description="Context variable holding the node list (may be a ${...} reference)",
    )
    prompt_template: str = Field(min_length=1)
    working_directory_template: str = Field(min_length=1)
    timeout_seconds: int = Field(default=600, description="Per-node assistant timeout")
    max_nodes: int = Field(default=-1, description="Process at most this many nodes (<= 0: all)")
    description: str | None = Field(default=None)
    progress_message: str = Field(default="Processing node")
    assistant: AssistantCli = Field(
        default_factory=AssistantCli,
        description="Assistant command line, or a preset name (amazon-q, gemini)",
    )

    _resolve_preset = field_validator("assistant", mode="before")(assistant_from_preset)


def _resolve_directory(context: ExecutionContext, template: str) -> Path:
    path = Path(context.substitute(template)).expanduser()
    if not path.is_absolute():
        path = context.project_root / path
    return path


class AssistedBlock(Block):
    """
    Runs a local assistant CLI with a templated prompt.

    Outputs:
        prompt: The resolved prompt
        conversation_file: Path of the written transcript
        <output_variable>: The assistant's reply (stdout, trimmed)
    """

    type_name: ClassVar[str] = "AI_ASSISTED"
    config_type: ClassVar[type[BlockConfig]] = AssistedConfig
    template_fields: ClassVar[tuple[str, ...]] = ("prompt_template", "working_directory_template")
    failure_message: ClassVar[str] = "Failed to execute AI assistant"

    config: AssistedConfig

    def __init__(
        self,
        config: BlockConfig | Mapping[str, Any],
        logger: logging.Logger | None = None,
        working_dir: Path | None = None,
    ):
        """
        Args:
            config: Block configuration
            logger: Logger for progress and streamed assistant output
            working_dir: Already-resolved working directory; when given, the
                working directory template is not substituted again
        """
        super().__init__(config, logger=logger)
        self.working_dir = working_dir

    def validation_errors(self) -> list[str]:
        errors = []
        if not self.config.prompt_template.strip():
            errors.append("Prompt template is required")
        if not self.config.working_directory_template.strip():
            errors.append("Working directory template is required")
        if self.config.timeout_seconds <= 0:
            errors.append("Timeout must be positive")
        return errors

    async def run(self, context: ExecutionContext) -> BlockOutcome:
        config = self.config
        self.logger.debug(
            f"Processing AI assisted prompt '{self.name}' with "
            f"{len(context.all_variables())} available variables"
        )
        prompt = context.substitute(config.prompt_template)
        if len(prompt) <= PROMPT_LOG_LIMIT:
            self.logger.info(f"Resolved AI assisted prompt for '{self.name}': {prompt}")
        else:
            self.logger.info(
                f"Resolved AI assisted prompt for '{self.name}': {len(prompt)} characters, "
                f"starts with: {prompt[:PROMPT_LOG_LIMIT]}..."
            )

        working_dir = self.working_dir or _resolve_directory(
            context, config.working_directory_template
        )
        response = await self._invoke_assistant(prompt, working_dir)
        transcript = write_transcript(
            context.project_root, self.name, prompt, response, config.description
        )
        self.logger.info(
            f"{config.assistant.label} response received for '{self.name}': "
            f"{len(response)} characters, saved to: {transcript}"
        )

        return (
            BlockOutcome.builder()
            .message(f"{config.assistant.label} response generated successfully")
            .output_variable("prompt", prompt)
            .output_variable("conversation_file", str(transcript))
            .output_variable(config.output_variable or DEFAULT_OUTPUT_VARIABLE, response)
            .build()
        )

    async def _invoke_assistant(self, prompt: str, working_dir: Path) -> str:
        """
        Run the assistant and return its trimmed stdout.

        Raises:
            FileNotFoundError: If the working directory does not exist
            ProcessTimeoutError: If the assistant exceeded the timeout
            ProcessExitError: On non-zero exit
            EmptyOutputError: On zero exit with empty stdout (the
                EmptyOutputWithStderrError variant when stderr has content)
        """
        assistant = self.config.assistant
        if not working_dir.is_dir():
            raise FileNotFoundError(f"Working directory does not exist: {working_dir}")

        self.logger.debug(
            f"Executing {assistant.label} for prompt: {len(prompt)} characters, "
            f"working directory: {working_dir}"
        )
        result = await run_with_stdin(
            assistant.argv(),
            prompt + "\n",
            timeout=self.config.timeout_seconds,
            cwd=working_dir,
            env=build_env(assistant.environment()),
            on_stdout=lambda line: self.logger.info(f"{assistant.label} stdout: {line}"),
            on_stderr=lambda line: self.logger.warning(f"{assistant.label} stderr: {line}"),
            label=assistant.label,
        )

        stdout = result.stdout.strip()
        stderr = result.stderr.strip()
        if result.exit_code != 0:
            if stderr:
                self.logger.error(f"{assistant.label} stderr output: {stderr}")
            raise ProcessExitError(result.exit_code, stdout, stderr, label=assistant.label)
        if not stdout:
            if stderr:
                raise EmptyOutputWithStderrError(stderr, label=assistant.label)
            raise EmptyOutputError(label=assistant.label)
        if stderr:
            self.logger.warning(f"{assistant.label} completed with stderr output: {stderr}")
        return stdout

    def to_markdown(self) -> str:
        lines = [f"**{self.name}** (AI Assisted)"]
        if self.config.description:
            lines.append(f"- Description: {self.config.description}")
        lines.append(f"- Assistant: {self.config.assistant.label}")
        lines.append(f"- Working Directory: `{self.config.working_directory_template}`")
        lines.append(f"- Timeout: {self.config.timeout_seconds} seconds")
        lines.append(_describe_template(self.config.prompt_template))
        return "\n".join(lines) + "\n"


class AssistedBatchBlock(Block):
    """
    Runs the assistant once per node of a list held in the context.

    Each node gets a fresh AssistedBlock named ``<name>_node_<i>``. While a node
    is processed the context carries current_node, current_node_id,
    current_index and total_nodes; they are removed afterwards even when the
    batch is interrupted.

    Outputs:
        processed_node_ids, failed_node_ids: Node ids by result
        node_count, success_count, failure_count: Counters
        error_messages: {node_id: error detail}, only when a node failed

    The batch succeeds when at least one node succeeded.
    """

    type_name: ClassVar[str] = "AI_ASSISTED_BATCH"
    config_type: ClassVar[type[BlockConfig]] = AssistedBatchConfig
    template_fields: ClassVar[tuple[str, ...]] = ("prompt_template", "working_directory_template")
    failure_message: ClassVar[str] = "Failed to execute AI_ASSISTED_BATCH"

    config: AssistedBatchConfig

    def validation_errors(self) -> list[str]:
        errors = []
        if not self.config.prompt_template.strip():
            errors.append("Prompt template is required")
        if not self.config.input_nodes_variable.strip():
            errors.append("Input nodes variable is required")
        if not self.config.working_directory_template.strip():
            errors.append("Working directory template is required")
        if self.config.timeout_seconds <= 0:
            errors.append("Timeout must be positive")
        return errors

    def required_variables(self) -> list[str]:
        # Scratch variables are provided by the batch itself
        names = [
            n
            for n in super().required_variables()
            if n.split(".", 1)[0] not in BATCH_SCRATCH_VARIABLES
        ]
        reference = self.config.input_nodes_variable
        if "${" in reference:
            names.extend(n for n in ExecutionContext.required_names(reference) if n not in names)
        elif reference.strip() not in names:
            names.append(reference.strip())
        return names

    async def run(self, context: ExecutionContext) -> BlockOutcome:
        config = self.config
        variable_name = context.resolve_name(config.input_nodes_variable)
        value = context.get(variable_name)
        if value is None:
            return BlockOutcome.failure(
                "Input nodes variable not found in context",
                f"Variable: {variable_name} (from: {config.input_nodes_variable})",
            )

        nodes = to_node_list(value)
        if not nodes:
            return (
                BlockOutcome.builder()
                .message("No nodes to process")
                .warning("Nodes list was empty")
                .build()
            )

        node_count = min(len(nodes), config.max_nodes) if config.max_nodes > 0 else len(nodes)
        processed: list[str] = []
        failed: list[str] = []
        errors: dict[str, str | None] = {}

        self.logger.info(f"AI_ASSISTED_BATCH: {self.name}")
        if config.description:
            self.logger.info(f"Description: {config.description}")
        self.logger.info(f"Processing {node_count} nodes with {config.assistant.label}")

        try:
            for index, node in enumerate(nodes[:node_count]):
                node_id = extract_node_id(node)
                self.logger.info(
                    f"[{index + 1}/{node_count}] {config.progress_message}: {node_id}"
                )
                try:
                    outcome = await self._process_node(context, node, node_id, index, node_count)
                except Exception as e:
                    failed.append(node_id)
                    errors[node_id] = str(e)
                    self.logger.error(f"Error processing node {node_id}: {e}")
                    continue

                if outcome.success:
                    processed.append(node_id)
                    self.logger.info(f"  Success: {node_id}")
                else:
                    failed.append(node_id)
                    errors[node_id] = outcome.error_detail
                    self.logger.warning(f"Failed to process node {node_id}: {outcome.error_detail}")
        finally:
            for name in BATCH_SCRATCH_VARIABLES:
                context.remove(name)

        success_count = len(processed)
        failure_count = len(failed)
        self.logger.info(
            f"BATCH COMPLETE: {success_count} successful, {failure_count} failed "
            f"out of {node_count} nodes"
        )

        builder = (
            BlockOutcome.builder()
            .success(success_count > 0)
            .message(
                f"Processed {node_count} nodes with AI backend "
                f"({success_count} successful, {failure_count} failed)"
            )
            .output_variables(
                {
                    "processed_node_ids": processed,
                    "failed_node_ids": failed,
                    "node_count": node_count,
                    "success_count": success_count,
                    "failure_count": failure_count,
                }
            )
        )
        if errors:
            builder.output_variable("error_messages", errors)
        if len(nodes) > node_count:
            builder.warning(f"Limited to {node_count} nodes out of {len(nodes)} total")
        if failure_count:
            builder.warning(f"{failure_count} out of {node_count} nodes failed processing")
        if failure_count == node_count:
            builder.success(False).message("All nodes failed processing")
        return builder.build()

    async def _process_node(
        self,
        context: ExecutionContext,
        node: Any,
        node_id: str,
        index: int,
        node_count: int,
    ) -> BlockOutcome:
        context.set("current_node", node)
        context.set("current_node_id", node_id)
        context.set("current_index", index)
        context.set("total_nodes", node_count)

        working_dir = _resolve_directory(context, self.config.working_directory_template)
        description = self.config.description or self.name
        node_block = AssistedBlock(
            AssistedConfig(
                name=f"{self.name}_node_{index}",
                prompt_template=self.config.prompt_template,
                working_directory_template=self.config.working_directory_template,
                timeout_seconds=self.config.timeout_seconds,
                description=f"{description} (node {index + 1}/{node_count})",
                assistant=self.config.assistant,
            ),
            logger=self.logger,
            working_dir=working_dir,
        )
        return await node_block.execute(context)

    def to_markdown(self) -> str:
        lines = [f"**{self.name}** (AI Assisted Batch)"]
        if self.config.description:
            lines.append(f"- Description: {self.config.description}")
        lines.append(f"- Input Nodes: `{self.config.input_nodes_variable}`")
        lines.append(f"- Working Directory: `{self.config.working_directory_template}`")
        lines.append(f"- Timeout: {self.config.timeout_seconds} seconds")
        if self.config.max_nodes > 0:
            lines.append(f"- Max Nodes: {self.config.max_nodes}")
        lines.append(_describe_template(self.config.prompt_template))
        return "\n".join(lines) + "\n"


def _describe_template(template: str) -> str:
    if len(template) <= 200:
        return f"- Template: `{template}`"
    return f"- Template: {len(template)} characters"


def to_node_list(value: Any) -> list[Any]:
    """Normalize a sequence, set or bare value into a list of nodes."""
    if isinstance(value, list):
        return value
    if isinstance(value, tuple | Set):
        return list(value)
    if isinstance(value, str | bytes | Mapping):
        return [value]
    if hasattr(value, "__iter__"):
        return list(value)
    return [value]


def extract_node_id(node: Any) -> str:
    """
    Derive a stable identifier for a node. Never raises.

    Lookup order: mapping keys ``id``, ``nodeId``, ``node_id``; attributes
    ``id``, ``node_id``, ``nodeId``; zero-argument ``get_id()`` or
    ``get_node_id()``; finally ``str(node)``.
    """
    if node is None:
        return "null"
    try:
        if isinstance(node, Mapping):
            for key in ("id", "nodeId", "node_id"):
                if node.get(key) is not None:
                    return str(node[key])
            return str(node)

        for attr in ("id", "node_id", "nodeId"):
            value = getattr(node, attr, None)
            if value is not None and not callable(value):
                return str(value)
        for method in ("get_id", "get_node_id"):
            getter = getattr(node, method, None)
            if callable(getter):
                value = getter()
                if value is not None:
                    return str(value)
        return str(node)
    except Exception:
        return f"<{type(node).__name__}>"
