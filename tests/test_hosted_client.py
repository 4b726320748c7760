"""Tests for the hosted model client against a local Bedrock-compatible endpoint.

Tests cover:
- Request serialization and response parsing per model family
- Retry classification (transient vs fatal failures)
- Rate limiting: request spacing and permit exhaustion
- Authentication: bearer API key and SigV4 signing
- Result caching
"""

import asyncio

import httpx
import pytest
from test_utils import CLAUDE_MODEL, RecordingHandler, claude_body, claude_reply, invoke_path

from migration_blocks.engine.exceptions import (
    FatalUpstreamError,
    RateLimitExceededError,
    RetryableUpstreamError,
)
from migration_blocks.engine.hosted_client import (
    HostedModelClient,
    ModelFamily,
    RateLimiter,
    build_request_body,
    parse_response_body,
)


class TestModelFamily:
    """Test suite for model family detection and wire formats."""

    @pytest.mark.parametrize(
        "model_id, family",
        [
            (CLAUDE_MODEL, ModelFamily.CLAUDE_MESSAGES),
            ("us.anthropic.claude-sonnet-4-20250514-v1:0", ModelFamily.CLAUDE_MESSAGES),
            ("anthropic.claude-v2:1", ModelFamily.CLAUDE_LEGACY),
            ("amazon.titan-text-express-v1", ModelFamily.TITAN),
            ("meta.llama3-70b-instruct-v1:0", ModelFamily.GENERIC),
        ],
    )
    def test_from_model_id(self, model_id, family):
        assert ModelFamily.from_model_id(model_id) is family

    def test_messages_body(self):
        body = build_request_body(
            ModelFamily.CLAUDE_MESSAGES,
            "hi",
            max_tokens=100,
            temperature=0.2,
            top_p=0.9,
            system_prompt="be brief",
        )
        assert body["anthropic_version"] == "bedrock-2023-05-31"
        assert body["messages"] == [{"role": "user", "content": "hi"}]
        assert body["system"] == "be brief"
        assert body["max_tokens"] == 100

    def test_legacy_and_titan_bodies(self):
        legacy = build_request_body(
            ModelFamily.CLAUDE_LEGACY, "hi", max_tokens=10, temperature=0.1, top_p=0.9
        )
        assert legacy["prompt"] == "\n\nHuman: hi\n\nAssistant:"
        assert legacy["max_tokens_to_sample"] == 10

        titan = build_request_body(
            ModelFamily.TITAN, "hi", max_tokens=10, temperature=0.1, top_p=0.9
        )
        assert titan["inputText"] == "hi"
        assert titan["textGenerationConfig"]["maxTokenCount"] == 10

    def test_parse_claude_shapes(self):
        assert parse_response_body(ModelFamily.CLAUDE_MESSAGES, claude_body("  ok  ")) == (
            "ok",
            "end_turn",
        )
        legacy = {"completion": " done", "stop_reason": "stop_sequence"}
        assert parse_response_body(ModelFamily.CLAUDE_LEGACY, legacy) == ("done", "stop_sequence")
        assert parse_response_body(ModelFamily.CLAUDE_MESSAGES, {"content": []}) == ("", None)

    def test_parse_titan_and_generic(self):
        titan = {"results": [{"outputText": "text\n", "completionReason": "FINISH"}]}
        assert parse_response_body(ModelFamily.TITAN, titan) == ("text", "FINISH")
        assert parse_response_body(ModelFamily.GENERIC, {"response": "r"}) == ("r", None)
        assert parse_response_body(ModelFamily.GENERIC, {"other": 1}) == ('{"other": 1}', None)


class TestHostedModelClient:
    """Test suite for HostedModelClient.invoke()."""

    @pytest.mark.asyncio
    async def test_successful_invoke(self, httpserver, hosted_config):
        handler = claude_reply("EJB is a server-side component model.")
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)

        async with HostedModelClient(hosted_config) as client:
            response = await client.invoke("What is EJB?")

        assert response.text == "EJB is a server-side component model."
        assert response.stop_reason == "end_turn"
        assert response.attempts == 1
        assert response.model_id == CLAUDE_MODEL
        assert handler.bodies[0]["messages"][0]["content"] == "What is EJB?"

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self, httpserver, hosted_config):
        handler = claude_reply("ok")
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)

        async with HostedModelClient(hosted_config) as client:
            await client.invoke("x")

        headers = handler.headers[0]
        assert headers["Authorization"] == "Bearer test-bedrock-key"
        assert headers["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_access_keys_sign_with_sigv4(self, httpserver, hosted_config):
        handler = claude_reply("ok")
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)
        config = hosted_config.model_copy(
            update={
                "api_key": None,
                "aws_access_key_id": "AKIDEXAMPLE",
                "aws_secret_access_key": "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY",
                "aws_session_token": "session-token",
            }
        )

        async with HostedModelClient(config) as client:
            await client.invoke("x")

        headers = handler.headers[0]
        authorization = headers["Authorization"]
        assert authorization.startswith("AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/")
        assert "/us-east-1/bedrock/aws4_request" in authorization
        assert "SignedHeaders=" in authorization and "Signature=" in authorization
        assert headers["X-Amz-Date"]
        assert headers["X-Amz-Security-Token"] == "session-token"

    @pytest.mark.asyncio
    async def test_default_credential_chain_signs(self, httpserver, hosted_config, monkeypatch):
        monkeypatch.setenv("AWS_ACCESS_KEY_ID", "AKIDFROMENV")
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "secret-from-env")
        handler = claude_reply("ok")
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)
        config = hosted_config.model_copy(update={"api_key": None, "region": "eu-west-1"})

        async with HostedModelClient(config) as client:
            await client.invoke("x")

        authorization = handler.headers[0]["Authorization"]
        assert authorization.startswith("AWS4-HMAC-SHA256 Credential=AKIDFROMENV/")
        assert "/eu-west-1/bedrock/aws4_request" in authorization
        assert "X-Amz-Security-Token" not in handler.headers[0]

    @pytest.mark.asyncio
    async def test_no_credentials_sends_unsigned(self, httpserver, hosted_config, caplog):
        handler = claude_reply("ok")
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)
        config = hosted_config.model_copy(update={"api_key": None})

        async with HostedModelClient(config) as client:
            response = await client.invoke("x")

        assert response.text == "ok"
        assert "Authorization" not in handler.headers[0]
        assert "No AWS credentials found" in caplog.text

    @pytest.mark.asyncio
    async def test_cached_results_skip_the_call(self, httpserver, hosted_config):
        handler = claude_reply("cached answer")
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)
        config = hosted_config.model_copy(update={"cache_results": True})

        async with HostedModelClient(config) as client:
            first = await client.invoke("same prompt")
            second = await client.invoke("same prompt")
            other = await client.invoke("same prompt", temperature=0.5)

        assert handler.calls == 2
        assert first.cached is False
        assert second.cached is True
        assert second.text == "cached answer"
        assert other.cached is False

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, httpserver, hosted_config):
        handler = RecordingHandler(
            [(400, {"message": "Malformed input request"}), (200, claude_body("second try"))]
        )
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)
        config = hosted_config.model_copy(update={"cache_results": True})

        async with HostedModelClient(config) as client:
            with pytest.raises(FatalUpstreamError):
                await client.invoke("x")
            response = await client.invoke("x")

        assert response.text == "second try"
        assert response.cached is False
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_cache_disabled_by_default(self, httpserver, hosted_config):
        handler = claude_reply("ok")
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)

        async with HostedModelClient(hosted_config) as client:
            await client.invoke("x")
            await client.invoke("x")

        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_invoke_overrides(self, httpserver, hosted_config):
        handler = claude_reply("ok")
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)

        async with HostedModelClient(hosted_config) as client:
            await client.invoke("x", max_tokens=42, temperature=0.7)

        assert handler.bodies[0]["max_tokens"] == 42
        assert handler.bodies[0]["temperature"] == 0.7

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, httpserver, hosted_config):
        handler = RecordingHandler([(503, "Service Unavailable"), (200, claude_body("recovered"))])
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)

        async with HostedModelClient(hosted_config) as client:
            response = await client.invoke("x")

        assert response.text == "recovered"
        assert response.attempts == 2
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_throttling_exhausts_attempts(self, httpserver, hosted_config):
        handler = RecordingHandler([(400, {"message": "Request throttled, slow down"})])
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)

        async with HostedModelClient(hosted_config) as client:
            with pytest.raises(RetryableUpstreamError) as exc_info:
                await client.invoke("x")

        assert handler.calls == 3
        assert exc_info.value.status_code == 400
        assert "throttled" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_fatal_failure_not_retried(self, httpserver, hosted_config):
        handler = RecordingHandler([(400, {"message": "Malformed input request"})])
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)

        async with HostedModelClient(hosted_config) as client:
            with pytest.raises(FatalUpstreamError) as exc_info:
                await client.invoke("x")

        assert handler.calls == 1
        assert str(exc_info.value).startswith("Bedrock API call failed with status 400")

    @pytest.mark.asyncio
    async def test_unparseable_body_is_fatal(self, httpserver, hosted_config):
        handler = RecordingHandler([(200, "<html>gateway</html>")])
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)

        async with HostedModelClient(hosted_config) as client:
            with pytest.raises(FatalUpstreamError, match="Failed to parse Bedrock response"):
                await client.invoke("x")
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_connection_errors_retried(self, hosted_config):
        config = hosted_config.model_copy(update={"endpoint_url": "http://127.0.0.1:9"})
        async with HostedModelClient(config) as client:
            with pytest.raises(RetryableUpstreamError, match="HTTP connection error"):
                await client.invoke("x")

    @pytest.mark.asyncio
    async def test_requests_are_spaced(self, httpserver, hosted_config):
        handler = claude_reply("ok")
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)
        config = hosted_config.model_copy(update={"rate_limit_rpm": 600})

        async with HostedModelClient(config) as client:
            await asyncio.gather(client.invoke("a"), client.invoke("b"), client.invoke("c"))

        gaps = [b - a for a, b in zip(handler.timestamps, handler.timestamps[1:])]
        assert len(gaps) == 2
        assert all(gap >= 0.08 for gap in gaps)

    @pytest.mark.asyncio
    async def test_exhausted_permits_raise_without_request(self, httpserver, hosted_config):
        handler = claude_reply("never sent")
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(handler)

        async with HostedModelClient(hosted_config) as client:
            limiter = RateLimiter(2, acquire_timeout=0.05)
            limiter.min_interval = 0.0
            client.rate_limiter = limiter
            await limiter.acquire()
            await limiter.acquire()

            with pytest.raises(RateLimitExceededError):
                await client.invoke("x")

        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_injected_http_client_left_open(self, httpserver, hosted_config):
        httpserver.expect_request(invoke_path(), method="POST").respond_with_handler(
            claude_reply("ok")
        )
        async with httpx.AsyncClient() as http_client:
            async with HostedModelClient(hosted_config, http_client=http_client) as client:
                await client.invoke("x")
            assert not http_client.is_closed

    def test_invoke_url_and_summary(self, hosted_config, bedrock_url):
        client = HostedModelClient(hosted_config)
        model_path = CLAUDE_MODEL.replace(":", "%3A")
        assert client.invoke_url == f"{bedrock_url}/model/{model_path}/invoke"
        assert "rateLimitRpm=6000" in client.config_summary()
        assert "test-bedrock-key" not in client.config_summary()


class TestRateLimiter:
    """Test suite for RateLimiter."""

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            RateLimiter(0, acquire_timeout=1)

    @pytest.mark.asyncio
    async def test_permit_released_on_error(self):
        limiter = RateLimiter(1, acquire_timeout=0.5)
        limiter.min_interval = 0.0
        with pytest.raises(RuntimeError):
            async with limiter.permit():
                raise RuntimeError("call failed")
        async with limiter.permit():
            pass
