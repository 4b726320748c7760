"""
Core blocks that run shell commands.

CommandBlock runs one templated command line through the platform shell so
pipes and redirects work. Output (stderr merged into stdout) is streamed to the
log line by line while the command runs, so long builds are visibly alive.
"""

from pathlib import Path
from typing import Any, ClassVar

from pydantic import Field

from .block import Block, BlockConfig, BlockOutcome
from .exceptions import ProcessTimeoutError
from .execution_context import ExecutionContext
from .process_io import build_env, run_merged, shell_argv

DEFAULT_OUTPUT_VARIABLE = "output"


class CommandConfig(BlockConfig):
    """Configuration for a COMMAND block."""

    command: str = Field(
        min_length=1,
        description="Shell command line (supports ${var} templates, pipes, redirects)",
    )
    working_directory: str | None = Field(
        default=None,
        description="Working directory template (defaults to the project root)",
    )
    timeout_seconds: int = Field(default=300, description="Bound on the whole command run")
    capture_output: bool = Field(
        default=True,
        description="Capture and log output lines (otherwise inherit the parent's streams)",
    )
    output_variable: str | None = Field(
        default=None,
        description=f"Variable receiving the captured output (default: {DEFAULT_OUTPUT_VARIABLE})",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for the command",
    )


class CommandBlock(Block):
    """
    Shell command block.

    Outputs:
        exit_code: Process exit status
        command: The resolved command line
        <output_variable>: Captured output joined with newlines (when non-empty)
        output_lines: Captured output as a list of lines (when non-empty)

    The block succeeds iff the exit code is 0. A timeout kills the process and
    fails the block without waiting further.
    """

    type_name: ClassVar[str] = "COMMAND"
    config_type: ClassVar[type[BlockConfig]] = CommandConfig
    template_fields: ClassVar[tuple[str, ...]] = ("command", "working_directory")
    failure_message: ClassVar[str] = "Command execution failed"

    config: CommandConfig

    def validation_errors(self) -> list[str]:
        errors = []
        if not self.config.command.strip():
            errors.append("Command cannot be empty")
        if self.config.timeout_seconds <= 0:
            errors.append("Timeout must be positive")
        return errors

    def _resolve_working_directory(self, context: ExecutionContext) -> Path:
        if not self.config.working_directory:
            return context.project_root
        path = Path(context.substitute(self.config.working_directory)).expanduser()
        if not path.is_absolute():
            path = context.project_root / path
        return path

    async def run(self, context: ExecutionContext) -> BlockOutcome:
        config = self.config
        command = context.substitute(config.command)
        cwd = self._resolve_working_directory(context)
        if not cwd.is_dir():
            return BlockOutcome.failure(
                f"Working directory does not exist: {cwd}", f"Command: {command}"
            )

        self.logger.info(f"Executing command: {command}")
        self.logger.info(f"Working directory: {cwd}")

        try:
            result = await run_merged(
                shell_argv(command),
                timeout=config.timeout_seconds,
                cwd=cwd,
                env=build_env(config.env),
                capture_output=config.capture_output,
                on_line=lambda line: self.logger.info(f"  | {line}"),
            )
        except ProcessTimeoutError:
            self.logger.error(f"Command timed out after {config.timeout_seconds} seconds")
            return BlockOutcome.failure(
                f"Command timeout after {config.timeout_seconds} seconds",
                f"Command: {command}",
            )

        outputs: dict[str, Any] = {"exit_code": result.exit_code, "command": command}
        if config.capture_output and result.stdout_lines:
            outputs[config.output_variable or DEFAULT_OUTPUT_VARIABLE] = result.stdout
            outputs["output_lines"] = list(result.stdout_lines)

        builder = BlockOutcome.builder().output_variables(outputs)
        if result.exit_code == 0:
            self.logger.info("Command completed successfully")
            return builder.message("Command executed successfully").build()

        self.logger.error(f"Command failed with exit code {result.exit_code}")
        detail = result.stdout if config.capture_output else "Output not captured"
        return (
            builder.success(False)
            .message(f"Command failed with exit code {result.exit_code}")
            .error_detail(detail)
            .build()
        )

    def to_markdown(self) -> str:
        lines = [
            f"**{self.name}** (Command)",
            f"- Command: `{self.config.command}`",
        ]
        if self.config.working_directory:
            lines.append(f"- Working Directory: `{self.config.working_directory}`")
        lines.append(f"- Timeout: {self.config.timeout_seconds} seconds")
        return "\n".join(lines) + "\n"
