"""
Local AI assistant CLIs and conversation transcripts.

An assistant is any command-line tool that reads a prompt on stdin, works
non-interactively inside a working directory, and prints its reply on stdout.
Two presets ship with the engine:

- amazon-q: ``q chat --no-interactive --trust-all-tools``
- gemini:   ``gemini --yolo``

Every invocation runs with ``CI=true`` so assistants skip interactive prompts.
Plan files may name a preset (``assistant: gemini``) instead of spelling out
the command line.
"""

import logging
import re
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

TRANSCRIPT_DIR = Path(".analysis") / "q" / "conversations"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class AssistantKind(str, Enum):
    """Supported assistant CLI presets."""

    AMAZON_Q = "amazon-q"
    GEMINI = "gemini"

    @classmethod
    def _missing_(cls, value: object) -> "AssistantKind | None":
        # Accept spellings like "amazonq" or "Amazon_Q"
        if isinstance(value, str):
            wanted = value.lower().replace("_", "").replace("-", "")
            for member in cls:
                if member.value.replace("-", "") == wanted:
                    return member
        return None


class AssistantCli(BaseModel):
    """Command line used to invoke a local assistant."""

    model_config = {"extra": "forbid"}

    label: str = Field(default="Amazon Q CLI", description="Name used in logs and errors")
    executable: str = Field(default="q", min_length=1)
    args: list[str] = Field(
        default_factory=lambda: ["chat", "--no-interactive", "--trust-all-tools"]
    )
    env: dict[str, str] = Field(
        default_factory=lambda: {"CI": "true"},
        description="Environment overlay (CI=true marks non-interactive execution)",
    )

    @classmethod
    def preset(cls, kind: AssistantKind | str) -> "AssistantCli":
        """Build the command line for a known assistant."""
        kind = AssistantKind(kind)
        if kind is AssistantKind.GEMINI:
            return cls(label="Gemini CLI", executable="gemini", args=["--yolo"])
        return cls()

    def argv(self) -> list[str]:
        return [self.executable, *self.args]

    def environment(self) -> dict[str, str]:
        return {**self.env, "CI": "true"}


def assistant_from_preset(cls: type[Any], value: Any) -> Any:
    """
    Before-validator turning a preset name into its AssistantCli.

    Usage:
        _resolve_preset = field_validator("assistant", mode="before")(assistant_from_preset)
    """
    if not isinstance(value, str):
        return value
    try:
        return AssistantCli.preset(value)
    except ValueError:
        valid_values = ", ".join(repr(kind.value) for kind in AssistantKind)
        raise ValueError(
            f"must be one of [{valid_values}] or an assistant command line. Got: {value!r}"
        )


def sanitize_filename(name: str) -> str:
    """Replace every character outside [A-Za-z0-9_-] with an underscore."""
    return _UNSAFE_FILENAME_CHARS.sub("_", name)


def write_transcript(
    project_root: Path,
    block_name: str,
    prompt: str,
    response: str,
    description: str | None = None,
    timestamp: datetime | None = None,
) -> Path:
    """
    Persist one assistant conversation as a Markdown file.

    Files land in ``<project_root>/.analysis/q/conversations/`` and are named
    ``<yyyyMMdd_HHmmss>_<sanitized block name>.md``. A new file is written per
    invocation; existing transcripts are never modified.

    Returns:
        Path of the written transcript
    """
    timestamp = timestamp or datetime.now()
    directory = project_root / TRANSCRIPT_DIR
    directory.mkdir(parents=True, exist_ok=True)

    stem = f"{timestamp:%Y%m%d_%H%M%S}_{sanitize_filename(block_name)}"
    path = directory / f"{stem}.md"
    counter = 1
    while path.exists():
        path = directory / f"{stem}_{counter}.md"
        counter += 1

    sections = [
        f"# AI Assistant Conversation: {block_name}\n",
        f"**Timestamp:** {timestamp:%Y-%m-%d %H:%M:%S}\n",
        f"**Block:** {block_name}\n",
    ]
    if description:
        sections.append(f"**Description:** {description}\n")
    sections.extend(
        [
            "## Prompt\n",
            f"```\n{prompt}\n```\n",
            "## Response\n",
            f"{response}\n",
        ]
    )

    path.write_text("\n".join(sections), encoding="utf-8")
    logger.info(f"Saved conversation to: {path}")
    return path
