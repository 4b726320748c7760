"""Shared test configuration for migration-blocks tests.

Provides:
- A project root and execution context rooted in tmp_path
- Fake assistant CLIs: small shell scripts that read the prompt from stdin
- A local Bedrock-compatible HTTP endpoint (pytest-httpserver)
- AWS credential isolation so signing tests never see real keys
"""

import stat
from collections.abc import Callable
from pathlib import Path

import pytest
from pytest_httpserver import HTTPServer
from test_utils import CLAUDE_MODEL

from migration_blocks.engine.assistant import AssistantCli
from migration_blocks.engine.execution_context import ExecutionContext
from migration_blocks.engine.hosted_config import HostedModelConfig


AWS_CREDENTIAL_ENV_VARS = (
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "AWS_PROFILE",
    "AWS_CONTAINER_CREDENTIALS_RELATIVE_URI",
    "AWS_CONTAINER_CREDENTIALS_FULL_URI",
    "AWS_WEB_IDENTITY_TOKEN_FILE",
    "AWS_BEARER_TOKEN_BEDROCK",
)


@pytest.fixture(autouse=True)
def isolated_aws_credentials(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's AWS credentials and instance metadata out of every test."""
    for name in AWS_CREDENTIAL_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AWS_SHARED_CREDENTIALS_FILE", str(tmp_path / "no-aws-credentials"))
    monkeypatch.setenv("AWS_CONFIG_FILE", str(tmp_path / "no-aws-config"))
    monkeypatch.setenv("AWS_EC2_METADATA_DISABLED", "true")


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "legacy-app"
    root.mkdir()
    return root


@pytest.fixture
def context(project_root: Path) -> ExecutionContext:
    return ExecutionContext(project_root)


@pytest.fixture
def fake_assistant(tmp_path: Path) -> Callable[..., AssistantCli]:
    """
    Factory writing an executable shell script that stands in for an assistant CLI.

    Usage:
        cli = fake_assistant('input=$(cat); echo "reply: $input"')
        block = AssistedBlock({..., "assistant": cli})
    """
    counter = 0

    def factory(body: str, label: str = "Fake CLI") -> AssistantCli:
        nonlocal counter
        counter += 1
        script = tmp_path / f"fake-assistant-{counter}.sh"
        script.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return AssistantCli(label=label, executable=str(script), args=[])

    return factory


@pytest.fixture
def bedrock_url(httpserver: HTTPServer) -> str:
    """Base URL of the local Bedrock-compatible endpoint."""
    return httpserver.url_for("/").rstrip("/")


@pytest.fixture
def hosted_config(bedrock_url: str) -> HostedModelConfig:
    return HostedModelConfig(
        model_id=CLAUDE_MODEL,
        endpoint_url=bedrock_url,
        api_key="test-bedrock-key",
        rate_limit_rpm=6000,
        timeout_seconds=5,
        retry_attempts=3,
        retry_delay=0.0,
    )
