"""Hosted model (Amazon Bedrock) configuration loading.

Configuration file location priority:
1. Explicit path passed to HostedConfigLoader
2. MIGRATION_BEDROCK_CONFIG environment variable
3. Standard location: ~/.migration/bedrock.yml
4. Built-in defaults (if no config file found)

Environment overrides are applied on top of whichever source was used. Each
setting maps to ``BEDROCK_<FIELD>`` (``BEDROCK_MODEL_ID``, ``BEDROCK_REGION``,
``BEDROCK_RATE_LIMIT_RPM``, ...). The API key may also come from
``AWS_BEARER_TOKEN_BEDROCK``, the variable AWS tooling uses for Bedrock API keys.

Authentication, first match wins:
1. ``api_key``: Bedrock API key sent as a bearer token
2. ``aws_access_key_id`` + ``aws_secret_access_key`` (optional
   ``aws_session_token``): requests signed with SigV4
3. The default AWS credential chain (environment, shared credentials file,
   instance role), also SigV4

Example config file:
```yaml
model_id: anthropic.claude-3-sonnet-20240229-v1:0
region: us-east-1
rate_limit_rpm: 30
timeout_seconds: 60
retry_attempts: 3
max_tokens: 2000
temperature: 0.1
log_requests: false
log_responses: false
```
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "MIGRATION_BEDROCK_CONFIG"
ENV_PREFIX = "BEDROCK_"
API_KEY_ENV_VAR = "AWS_BEARER_TOKEN_BEDROCK"


class HostedModelConfig(BaseModel):
    """Settings for HostedModelClient."""

    model_config = {"extra": "forbid"}

    model_id: str = Field(
        default="anthropic.claude-3-sonnet-20240229-v1:0",
        min_length=1,
        description="Bedrock model identifier (selects the wire format)",
    )
    region: str = Field(default="us-east-1", description="AWS region of the runtime endpoint")
    api_key: str | None = Field(
        default=None,
        description="Bedrock API key sent as a bearer token",
        repr=False,
    )
    aws_access_key_id: str | None = Field(
        default=None,
        description="AWS access key for SigV4 signing (default credential chain if unset)",
    )
    aws_secret_access_key: str | None = Field(default=None, repr=False)
    aws_session_token: str | None = Field(
        default=None,
        description="Session token for temporary credentials",
        repr=False,
    )
    endpoint_url: str | None = Field(
        default=None,
        description="Runtime endpoint override (defaults to the regional Bedrock endpoint)",
    )
    rate_limit_rpm: int = Field(default=60, ge=1, le=10000, description="Requests per minute")
    timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=1800,
        description="HTTP timeout, also the bound on waiting for a rate-limit permit",
    )
    retry_attempts: int = Field(default=3, ge=1, le=10, description="Total attempts per call")
    retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Flat delay between retries in seconds",
    )
    max_tokens: int = Field(default=1000, ge=1, le=200000)
    temperature: float = Field(default=0.1, ge=0.0, le=1.0)
    top_p: float = Field(default=0.9, ge=0.0, le=1.0)
    system_prompt: str | None = Field(
        default=None,
        description="System prompt (messages-API models only)",
    )
    log_requests: bool = Field(default=False, description="Log request bodies at DEBUG")
    log_responses: bool = Field(default=False, description="Log response bodies at DEBUG")
    cache_results: bool = Field(
        default=False,
        description="Reuse replies for identical requests within one client",
    )
    enabled: bool = Field(default=True)

    @property
    def base_url(self) -> str:
        if self.endpoint_url:
            return self.endpoint_url.rstrip("/")
        return f"https://bedrock-runtime.{self.region}.amazonaws.com"

    @property
    def auth_mode(self) -> str:
        """How requests are authenticated: api-key, access-key or default-chain."""
        if self.api_key:
            return "api-key"
        if self.aws_access_key_id and self.aws_secret_access_key:
            return "access-key"
        return "default-chain"

    def summary(self) -> str:
        """One-line description safe to log (never includes secrets)."""
        return (
            f"model={self.model_id}, region={self.region}, rpm={self.rate_limit_rpm}, "
            f"timeout={self.timeout_seconds}s, retries={self.retry_attempts}, "
            f"auth={self.auth_mode}, cache={self.cache_results}"
        )


def env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Collect BEDROCK_* overrides for every config field present in the environment."""
    environ = dict(os.environ) if environ is None else environ
    overrides: dict[str, Any] = {}
    for field_name in HostedModelConfig.model_fields:
        value = environ.get(f"{ENV_PREFIX}{field_name.upper()}")
        if value is not None and value != "":
            overrides[field_name] = value
    if "api_key" not in overrides and environ.get(API_KEY_ENV_VAR):
        overrides["api_key"] = environ[API_KEY_ENV_VAR]
    return overrides


class HostedConfigLoader:
    """Loader for hosted model configuration from YAML plus environment.

    Usage:
        ```python
        loader = HostedConfigLoader()
        config = loader.load_config()
        client = HostedModelClient(config)
        ```

    The loaded config is cached; call load_config() once at startup.
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        environ: dict[str, str] | None = None,
    ):
        """
        Args:
            config_path: Explicit path to config file (optional)
            environ: Environment to read overrides from (defaults to os.environ)
        """
        self._config: HostedModelConfig | None = None
        self._explicit_path = Path(config_path) if config_path else None
        self._environ = environ

    def get_config_path(self) -> Path | None:
        """Determine config file path using priority order.

        Returns:
            Path to config file, or None if no file exists
        """
        if self._explicit_path:
            if self._explicit_path.exists():
                return self._explicit_path
            logger.warning(f"Explicit Bedrock config path does not exist: {self._explicit_path}")
            return None

        environ = os.environ if self._environ is None else self._environ
        env_path_str = environ.get(CONFIG_ENV_VAR)
        if env_path_str:
            env_path = Path(env_path_str).expanduser()
            if env_path.exists():
                return env_path
            logger.warning(f"{CONFIG_ENV_VAR} path does not exist: {env_path}")
            return None

        standard_path = Path.home() / ".migration" / "bedrock.yml"
        if standard_path.exists():
            return standard_path

        return None

    def load_config(self) -> HostedModelConfig:
        """Load, merge with environment overrides, and validate.

        Raises:
            ValueError: If the config file is invalid or fails validation
        """
        if self._config is not None:
            return self._config

        raw: dict[str, Any] = {}
        config_path = self.get_config_path()
        if config_path is None:
            logger.info("No Bedrock config file found, using defaults and environment")
        else:
            logger.info(f"Loading Bedrock config from: {config_path}")
            try:
                with open(config_path, encoding="utf-8") as f:
                    loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Failed to load Bedrock config from {config_path}: {e}")
            if loaded is not None and not isinstance(loaded, dict):
                raise ValueError(f"Bedrock config {config_path} must contain a YAML dictionary")
            raw.update(loaded or {})

        raw.update(env_overrides(self._environ))

        try:
            config = HostedModelConfig(**raw)
        except ValidationError as e:
            source = config_path or "environment"
            raise ValueError(f"Invalid Bedrock config ({source}): {e}")

        logger.info(f"Bedrock config: {config.summary()}")
        self._config = config
        return config
