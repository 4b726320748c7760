"""Exception taxonomy for the migration block engine.

Blocks never let these escape ``execute()``: each block converts them into a
failed BlockOutcome with message and detail. They exist so the layers below a
block (template resolution, subprocess management, the hosted model client)
can report failures precisely and so callers can tell the cases apart.

Host interruption is not modelled here. It arrives as ``asyncio.CancelledError``
and is always re-raised after child processes have been killed.
"""

from __future__ import annotations


class MigrationBlockError(Exception):
    """Base class for all engine errors."""


class BlockValidationError(MigrationBlockError):
    """
    Block configuration rejected at construction time.

    Raised when a block is built from a config that lacks a required field
    (name, command, prompt template, ...) or carries an unknown or malformed one.

    Attributes:
        block_type: Type name of the block being constructed
        block_name: Name from the config, if one was supplied
    """

    def __init__(self, block_type: str, message: str, block_name: str | None = None):
        self.block_type = block_type
        self.block_name = block_name
        label = f"{block_type} block '{block_name}'" if block_name else f"{block_type} block"
        super().__init__(f"Invalid {label}: {message}")

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"BlockValidationError(type={self.block_type!r}, name={self.block_name!r})"


class TemplateResolutionError(MigrationBlockError):
    """
    A template referenced variables that are absent from the context.

    Attributes:
        template: The template text that failed to resolve
        missing: Missing variable names, in order of first appearance
    """

    def __init__(self, template: str, missing: list[str]):
        self.template = template
        self.missing = missing
        super().__init__(
            f"Unresolved template variables: {', '.join(missing)} (template: {template!r})"
        )

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"TemplateResolutionError(missing={self.missing!r})"


class ProcessTimeoutError(MigrationBlockError):
    """
    A child process exceeded its time budget and was killed.

    Attributes:
        timeout_seconds: Budget that was exceeded
        command: Command line of the killed process
    """

    def __init__(self, timeout_seconds: float, command: str, label: str = "CLI"):
        self.timeout_seconds = timeout_seconds
        self.command = command
        super().__init__(f"{label} timed out after {timeout_seconds} seconds")


class ProcessExitError(MigrationBlockError):
    """
    A child process exited with a non-zero status.

    The message embeds both captured streams so the failure is diagnosable from
    the block outcome alone.

    Attributes:
        exit_code: Process exit status
        stdout: Captured standard output
        stderr: Captured standard error
    """

    def __init__(self, exit_code: int, stdout: str, stderr: str, label: str = "CLI"):
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"{label} failed with exit code {exit_code}. Stdout: {stdout}, Stderr: {stderr}"
        )

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"ProcessExitError(exit_code={self.exit_code})"


class EmptyOutputError(MigrationBlockError):
    """A child process succeeded but produced no standard output at all."""

    def __init__(self, label: str = "CLI", message: str | None = None):
        super().__init__(message or f"{label} completed but returned no output")


class EmptyOutputWithStderrError(EmptyOutputError):
    """
    A child process succeeded with empty stdout but wrote to stderr.

    Kept distinct from EmptyOutputError because stderr content usually explains
    why the reply is missing (authentication prompts, quota notices).

    Attributes:
        stderr: Captured standard error
    """

    def __init__(self, stderr: str, label: str = "CLI"):
        self.stderr = stderr
        super().__init__(
            label, f"{label} completed but returned no stdout output. Stderr: {stderr}"
        )


class RateLimitExceededError(MigrationBlockError):
    """
    No rate-limit permit became available within the client timeout.

    Never retried: retrying would only queue behind the same saturated limiter.
    """

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Rate limit exceeded - timeout waiting for permit ({timeout_seconds}s)")


# Lowercase substrings that mark an upstream failure as transient.
RETRYABLE_KEYWORDS: tuple[str, ...] = (
    "timeout",
    "connection",
    "503",
    "502",
    "rate limit",
    "throttle",
)


class UpstreamError(MigrationBlockError):
    """
    Failure reported by, or while reaching, the hosted model API.

    Attributes:
        status_code: HTTP status when the API answered, otherwise None
    """

    retryable: bool = False

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"{type(self).__name__}({str(self)!r}, status_code={self.status_code})"


class RetryableUpstreamError(UpstreamError):
    """Transient upstream failure: timeouts, dropped connections, 502/503, throttling."""

    retryable = True


class FatalUpstreamError(UpstreamError):
    """Upstream failure that will not improve on retry (bad request, auth, parse errors)."""


def is_retryable_message(message: str) -> bool:
    """Return True if an error message names a transient condition."""
    lowered = message.lower()
    return any(keyword in lowered for keyword in RETRYABLE_KEYWORDS)


def classify_upstream_error(message: str, status_code: int | None = None) -> UpstreamError:
    """Build the UpstreamError subclass matching the message text."""
    if is_retryable_message(message):
        return RetryableUpstreamError(message, status_code)
    return FatalUpstreamError(message, status_code)
