"""Hosted model client for Amazon Bedrock's InvokeModel API.

Every call runs RateLimit -> Serialize -> Invoke -> Deserialize inside a
bounded retry loop:

- RateLimit: calls start at least 60/rpm seconds apart, and at most rpm calls
  hold a permit at once. Waiting longer than timeout_seconds for a permit
  raises RateLimitExceededError, which is never retried.
- Serialize/Deserialize: the request and response shapes depend on the model
  family (ModelFamily), chosen from the model id.
- Invoke: JSON POST to ``{endpoint}/model/{model_id}/invoke`` over httpx.
  Requests carry a Bedrock API key as bearer token, or are signed with AWS
  SigV4 (botocore) from explicit keys or the default credential chain.
- Retry: only failures whose message names a transient condition (see
  exceptions.RETRYABLE_KEYWORDS) are retried, after a flat delay.

With ``cache_results`` enabled, successful replies are kept per client and
identical requests are answered without another call.
"""

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import AsyncIterator, Generator
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any
from urllib.parse import quote

import botocore.session
import httpx
from botocore.auth import SigV4Auth as BotocoreSigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials
from pydantic import BaseModel, Field

from .exceptions import (
    FatalUpstreamError,
    RateLimitExceededError,
    UpstreamError,
    classify_upstream_error,
)
from .hosted_config import HostedModelConfig

logger = logging.getLogger(__name__)

ANTHROPIC_BEDROCK_VERSION = "bedrock-2023-05-31"

# Claude model ids served through the messages API
MESSAGES_API_MARKERS = ("claude-3", "claude-sonnet-4", "claude-opus-4", "claude-haiku-4")

BEDROCK_SERVICE = "bedrock"
SIGNED_HEADERS = ("Authorization", "X-Amz-Date", "X-Amz-Security-Token")


class ModelFamily(str, Enum):
    """Wire format families for Bedrock models."""

    CLAUDE_MESSAGES = "claude-messages"
    CLAUDE_LEGACY = "claude-legacy"
    TITAN = "titan"
    GENERIC = "generic"

    @classmethod
    def from_model_id(cls, model_id: str) -> "ModelFamily":
        lowered = model_id.lower()
        # Cross-region inference ids ("us.anthropic.claude-...") match as well
        if "anthropic.claude" in lowered:
            if any(marker in lowered for marker in MESSAGES_API_MARKERS):
                return cls.CLAUDE_MESSAGES
            return cls.CLAUDE_LEGACY
        if "amazon.titan" in lowered:
            return cls.TITAN
        return cls.GENERIC


class HostedModelResponse(BaseModel):
    """Parsed model reply. The raw body is always kept."""

    text: str = Field(default="", description="Extracted reply text, stripped")
    raw_response: str = Field(description="Response body exactly as received")
    stop_reason: str | None = Field(default=None)
    model_id: str
    attempts: int = Field(default=1, description="Attempts used, including the successful one")
    cached: bool = Field(default=False, description="Served from the client's result cache")


class SigV4Auth(httpx.Auth):
    """
    httpx auth that signs each request with AWS Signature Version 4.

    Signing is delegated to botocore. Refreshable credentials (assumed roles,
    instance profiles) are frozen per request so every signature uses a
    current key set.
    """

    requires_request_body = True

    def __init__(self, credentials: Credentials, region: str, service: str = BEDROCK_SERVICE):
        self.credentials = credentials
        self.region = region
        self.service = service

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        aws_request = AWSRequest(
            method=request.method,
            url=str(request.url),
            data=request.content,
            headers={"Content-Type": request.headers.get("Content-Type", "application/json")},
        )
        signer = BotocoreSigV4Auth(
            self.credentials.get_frozen_credentials(), self.service, self.region
        )
        signer.add_auth(aws_request)
        for name in SIGNED_HEADERS:
            if name in aws_request.headers:
                request.headers[name] = aws_request.headers[name]
        yield request


def build_auth(config: HostedModelConfig) -> httpx.Auth | None:
    """
    Pick request authentication for a config.

    Order: API key (bearer), explicit access keys (SigV4), default AWS
    credential chain (SigV4). Returns None when nothing is available, in
    which case requests go out unsigned.
    """
    if config.api_key:
        return None
    if config.aws_access_key_id and config.aws_secret_access_key:
        credentials = Credentials(
            config.aws_access_key_id,
            config.aws_secret_access_key,
            config.aws_session_token,
        )
        return SigV4Auth(credentials, config.region)

    resolved = botocore.session.get_session().get_credentials()
    if resolved is None:
        logger.warning("No AWS credentials found, Bedrock requests will be unsigned")
        return None
    logger.info(f"Using AWS default credential chain ({resolved.method})")
    return SigV4Auth(resolved, config.region)


def cache_key(model_id: str, body: dict[str, Any]) -> str:
    """Key for a request: model plus the full serialized body."""
    digest = hashlib.sha256(
        f"{model_id}|{json.dumps(body, sort_keys=True)}".encode()
    ).hexdigest()
    return f"bedrock_{digest[:16]}"


def build_request_body(
    family: ModelFamily,
    prompt: str,
    *,
    max_tokens: int,
    temperature: float,
    top_p: float,
    system_prompt: str | None = None,
) -> dict[str, Any]:
    """Serialize a prompt into the request body for a model family."""
    if family is ModelFamily.CLAUDE_MESSAGES:
        body: dict[str, Any] = {
            "anthropic_version": ANTHROPIC_BEDROCK_VERSION,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "top_p": top_p,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            body["system"] = system_prompt
        return body

    if family is ModelFamily.CLAUDE_LEGACY:
        return {
            "prompt": f"\n\nHuman: {prompt}\n\nAssistant:",
            "max_tokens_to_sample": max_tokens,
            "temperature": temperature,
            "top_p": top_p,
            "stop_sequences": ["\n\nHuman:"],
        }

    if family is ModelFamily.TITAN:
        return {
            "inputText": prompt,
            "textGenerationConfig": {
                "maxTokenCount": max_tokens,
                "temperature": temperature,
                "topP": top_p,
            },
        }

    return {
        "prompt": prompt,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "top_p": top_p,
    }


def parse_response_body(family: ModelFamily, data: Any) -> tuple[str, str | None]:
    """
    Extract (text, stop_reason) from a decoded response body.

    Claude bodies are read in either shape (``content[0].text`` or
    ``completion``) since the same model line has served both.
    """
    if not isinstance(data, dict):
        return json.dumps(data), None

    if family in (ModelFamily.CLAUDE_MESSAGES, ModelFamily.CLAUDE_LEGACY):
        text = ""
        content = data.get("content")
        if isinstance(content, list) and content:
            first = content[0]
            if isinstance(first, dict) and first.get("text") is not None:
                text = str(first["text"])
        elif data.get("completion") is not None:
            text = str(data["completion"])
        stop_reason = data.get("stop_reason")
        return text.strip(), str(stop_reason) if stop_reason is not None else None

    if family is ModelFamily.TITAN:
        results = data.get("results")
        if isinstance(results, list) and results and isinstance(results[0], dict):
            output = results[0].get("outputText")
            if output is not None:
                return str(output).strip(), results[0].get("completionReason")
        return "", None

    for key in ("text", "completion", "response"):
        if key in data and data[key] is not None:
            return str(data[key]).strip(), None
    return json.dumps(data), None


class RateLimiter:
    """
    Request spacing plus a bound on concurrent calls.

    acquire() waits until min_interval has passed since the previous request
    started, then takes one of ``requests_per_minute`` permits. The spacing
    computation is serialized by a lock so concurrent callers queue up.
    """

    def __init__(self, requests_per_minute: int, acquire_timeout: float):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute
        self.acquire_timeout = acquire_timeout
        self.last_request_start: float | None = None
        self._semaphore = asyncio.Semaphore(requests_per_minute)
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """
        Raises:
            RateLimitExceededError: If no permit frees up within acquire_timeout
        """
        async with self._lock:
            if self.last_request_start is not None:
                wait = self.min_interval - (time.monotonic() - self.last_request_start)
                if wait > 0:
                    logger.debug(f"Rate limiting: sleeping for {wait * 1000:.0f} ms")
                    await asyncio.sleep(wait)
            try:
                await asyncio.wait_for(self._semaphore.acquire(), timeout=self.acquire_timeout)
            except TimeoutError:
                raise RateLimitExceededError(self.acquire_timeout)
            self.last_request_start = time.monotonic()

    def release(self) -> None:
        self._semaphore.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        """Hold one permit for the duration of the block; always released."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()


class HostedModelClient:
    """Async client for one Bedrock model.

    Usage:
        ```python
        async with HostedModelClient(HostedConfigLoader().load_config()) as client:
            response = await client.invoke("Summarize this class: ...")
            print(response.text)
        ```

    A single client (and its rate limiter and result cache) may be shared by
    concurrent callers.
    """

    def __init__(
        self,
        config: HostedModelConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Args:
            config: Client settings (defaults to HostedModelConfig())
            http_client: Preconfigured httpx client (owned by the caller)
        """
        self.config = config or HostedModelConfig()
        self.family = ModelFamily.from_model_id(self.config.model_id)
        self.rate_limiter = RateLimiter(self.config.rate_limit_rpm, self.config.timeout_seconds)
        self._auth = build_auth(self.config)
        self._cache: dict[str, HostedModelResponse] = {}
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self.config.timeout_seconds)
        logger.info(
            f"Initialized Bedrock client for model: {self.config.model_id} "
            f"(auth={self.config.auth_mode})"
        )

    @property
    def invoke_url(self) -> str:
        # Model ids contain ":" which must reach the signer percent-encoded
        model_id = quote(self.config.model_id, safe="")
        return f"{self.config.base_url}/model/{model_id}/invoke"

    def build_request(
        self,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        """Request body for this client's model family, with optional overrides."""
        return build_request_body(
            self.family,
            prompt,
            max_tokens=max_tokens if max_tokens is not None else self.config.max_tokens,
            temperature=temperature if temperature is not None else self.config.temperature,
            top_p=self.config.top_p,
            system_prompt=self.config.system_prompt,
        )

    async def invoke(
        self,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> HostedModelResponse:
        """Send a prompt to the model, retrying transient failures.

        Cached replies (cache_results) are returned without taking a
        rate-limit permit.

        Raises:
            RateLimitExceededError: No rate-limit permit within timeout_seconds
            UpstreamError: Non-retryable failure, or retryable failure on the
                last attempt
        """
        body = self.build_request(prompt, max_tokens=max_tokens, temperature=temperature)
        if not self.config.cache_results:
            return await self._invoke_with_retry(body)

        key = cache_key(self.config.model_id, body)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug(f"Using cached Bedrock result: {key}")
            return cached.model_copy(update={"cached": True})

        response = await self._invoke_with_retry(body)
        self._cache[key] = response
        return response

    def clear_cache(self) -> None:
        self._cache.clear()

    async def _invoke_with_retry(self, body: dict[str, Any]) -> HostedModelResponse:
        max_attempts = self.config.retry_attempts
        last_error: UpstreamError | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                response = await self._invoke_once(body)
                return response.model_copy(update={"attempts": attempt})
            except UpstreamError as e:
                last_error = e
                if not e.retryable or attempt == max_attempts:
                    raise
                logger.warning(
                    f"Bedrock API call failed, retrying. Attempts remaining: "
                    f"{max_attempts - attempt}. Error: {e}"
                )
                await asyncio.sleep(self.config.retry_delay)

        # Should never reach here
        if last_error:
            raise last_error
        raise RuntimeError("Bedrock call failed after all retry attempts")

    async def _invoke_once(self, body: dict[str, Any]) -> HostedModelResponse:
        request_json = json.dumps(body)
        if self.config.log_requests:
            logger.debug(f"Bedrock request: {request_json}")

        async with self.rate_limiter.permit():
            raw = await self._post(request_json)

        if self.config.log_responses:
            logger.debug(f"Bedrock response: {raw}")
        return self._parse(raw)

    async def _post(self, request_json: str) -> str:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        try:
            response = await self._client.post(
                self.invoke_url,
                content=request_json,
                headers=headers,
                auth=self._auth or httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as e:
            raise classify_upstream_error(f"HTTP request timeout: {e}")
        except httpx.NetworkError as e:
            raise classify_upstream_error(f"HTTP connection error: {e}")
        except httpx.HTTPError as e:
            raise classify_upstream_error(f"HTTP request failed: {e}")

        if response.is_error:
            raise classify_upstream_error(
                f"Bedrock API call failed with status {response.status_code}: {response.text}",
                response.status_code,
            )
        return response.text

    def _parse(self, raw: str) -> HostedModelResponse:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise FatalUpstreamError(f"Failed to parse Bedrock response: {e}")
        text, stop_reason = parse_response_body(self.family, data)
        return HostedModelResponse(
            text=text,
            raw_response=raw,
            stop_reason=stop_reason,
            model_id=self.config.model_id,
        )

    def config_summary(self) -> str:
        return (
            f"HostedModelClient{{model={self.config.model_id}, baseUrl={self.config.base_url}, "
            f"rateLimitRpm={self.config.rate_limit_rpm}, "
            f"timeoutSeconds={self.config.timeout_seconds}}}"
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HostedModelClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
