"""Rule generation service unit tests with provider test doubles."""

import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from app.core.exceptions import (
    GenerationFailure,
    GenerationRateLimitError,
    GenerationTimeoutError,
    MalformedGenerationError,
)
from app.services.llm import LLMConfig, LLMResponse, RuleGenerationService
from app.services.llm.prompts import (
    REQUIRED_KEYS,
    TOOL_NAME,
    build_system_prompt,
    openai_tool,
    rule_parameters_schema,
)

from conftest import HIGH_AMOUNT_MOBILE_RULE, make_openai_client, openai_tool_response


def _llm_calls(service):
    return service.db.execute("SELECT * FROM llm_calls ORDER BY id")


# --------------------------------------------------
# Models
# --------------------------------------------------


class TestLLMConfig:
    """Test LLMConfig dataclass."""

    def test_default_values(self):
        config = LLMConfig(provider="openai", model="gpt-4o-mini")
        assert config.temperature == 0.1
        assert config.max_tokens == 2048
        assert config.timeout == 30.0
        assert config.options == {}


class TestLLMResponse:
    """Test LLMResponse dataclass."""

    def test_token_properties(self):
        response = LLMResponse(
            arguments={},
            model="gpt-4o-mini",
            provider="openai",
            usage={"input_tokens": 100, "output_tokens": 50},
        )
        assert response.input_tokens == 100
        assert response.output_tokens == 50
        assert response.total_tokens == 150

    def test_missing_usage(self):
        response = LLMResponse(arguments={}, model="m", provider="openai")
        assert response.total_tokens == 0


# --------------------------------------------------
# Prompt and tool schema
# --------------------------------------------------


class TestPrompts:
    """Test prompt rendering from the catalog."""

    def test_system_prompt_lists_catalog(self):
        prompt = build_system_prompt()
        assert "- amount: number (0-1000000)" in prompt
        assert "web, mobile, tablet" in prompt
        assert "country_of_origin" in prompt
        assert "At most 10 conditions" in prompt

    def test_schema_limits(self):
        schema = rule_parameters_schema()
        conditions = schema["properties"]["conditions"]
        assert conditions["minItems"] == 1
        assert conditions["maxItems"] == 10
        for key in REQUIRED_KEYS:
            assert key in schema["required"]

    def test_openai_tool(self):
        tool = openai_tool()
        assert tool["type"] == "function"
        assert tool["function"]["name"] == TOOL_NAME


# --------------------------------------------------
# Generation
# --------------------------------------------------


class TestGenerate:
    """Test RuleGenerationService.generate."""

    def test_success(self, make_generator, fake_client):
        service = make_generator(fake_client)
        result = service.generate("Review large mobile purchases", actor="alice")

        assert result.rule == HIGH_AMOUNT_MOBILE_RULE
        assert result.cached is False
        assert result.tokens == 200
        assert result.provider == "openai"

        calls = _llm_calls(service)
        assert len(calls) == 1
        assert calls[0]["success"] == 1
        assert calls[0]["actor"] == "alice"

    def test_forces_tool_call(self, make_generator, fake_client):
        make_generator(fake_client).generate("Review large mobile purchases")
        kwargs = fake_client.chat.completions.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "function", "function": {"name": TOOL_NAME}}
        assert kwargs["tools"][0]["function"]["name"] == TOOL_NAME
        assert kwargs["messages"][0]["role"] == "system"

    def test_cache_hit_skips_provider(self, make_generator, fake_client):
        service = make_generator(fake_client)
        first = service.generate("Review large mobile purchases")
        second = service.generate("  Review large mobile purchases  ")

        assert fake_client.chat.completions.create.call_count == 1
        assert second.cached is True
        assert second.rule == first.rule
        assert second.content_hash == first.content_hash
        assert [c["cached"] for c in _llm_calls(service)] == [0, 1]

    def test_cached_rule_is_a_copy(self, make_generator, fake_client):
        service = make_generator(fake_client)
        first = service.generate("Review large mobile purchases")
        first.rule["ruleset_name"] = "mutated"
        assert service.generate("Review large mobile purchases").rule["ruleset_name"] != "mutated"

    def test_content_hash_depends_on_model(self, make_generator, fake_client):
        service = make_generator(fake_client)
        other = RuleGenerationService(
            config=LLMConfig(provider="openai", model="gpt-4o"),
            client=fake_client,
            db=service.db,
        )
        assert service.content_hash("x") != other.content_hash("x")

    def test_rate_limited(self, make_generator, fake_client):
        service = make_generator(fake_client, max_requests=1)
        service.generate("Review large mobile purchases", actor="alice")

        with pytest.raises(GenerationRateLimitError) as exc_info:
            service.generate("Review large mobile purchases", actor="alice")

        error = exc_info.value
        assert error.http_status_code == 429
        assert error.detail["retry_after_seconds"] > 0
        assert error.detail["error_type"] == "rate_limit"
        assert fake_client.chat.completions.create.call_count == 1

    def test_rate_limit_is_per_actor(self, make_generator, fake_client):
        service = make_generator(fake_client, max_requests=1)
        service.generate("Review large mobile purchases", actor="alice")
        service.generate("Review large mobile purchases", actor="bob")

    def test_timeout(self, make_generator):
        release = threading.Event()
        client = MagicMock()

        def _hang(**kwargs):
            release.wait(5)
            return openai_tool_response(HIGH_AMOUNT_MOBILE_RULE)

        client.chat.completions.create.side_effect = _hang
        service = make_generator(client, timeout=0.05)
        try:
            with pytest.raises(GenerationTimeoutError) as exc_info:
                service.generate("Review large mobile purchases")
        finally:
            release.set()

        assert exc_info.value.detail["error_type"] == "timeout"
        assert exc_info.value.detail["content_hash"] == service.content_hash(
            "Review large mobile purchases"
        )
        assert _llm_calls(service)[0]["success"] == 0

    def test_free_text_is_malformed(self, make_generator):
        """ツール呼び出しのない応答は部分的に解釈しない"""
        service = make_generator(make_openai_client())
        service._client.chat.completions.create.return_value = openai_tool_response(None)
        with pytest.raises(MalformedGenerationError):
            service.generate("Review large mobile purchases")

    def test_invalid_json_arguments(self, make_generator):
        service = make_generator(make_openai_client("{not json"))
        with pytest.raises(MalformedGenerationError) as exc_info:
            service.generate("Review large mobile purchases")
        assert "not valid JSON" in exc_info.value.message

    def test_non_object_arguments(self, make_generator):
        service = make_generator(make_openai_client("[1, 2, 3]"))
        with pytest.raises(MalformedGenerationError):
            service.generate("Review large mobile purchases")

    def test_missing_required_keys(self, make_generator):
        rule = {k: v for k, v in HIGH_AMOUNT_MOBILE_RULE.items() if k != "conditions"}
        service = make_generator(make_openai_client(rule))
        with pytest.raises(MalformedGenerationError) as exc_info:
            service.generate("Review large mobile purchases")
        assert exc_info.value.detail["missing_keys"] == ["conditions"]

    def test_failures_are_not_cached(self, make_generator):
        client = make_openai_client("{not json")
        service = make_generator(client)
        for _ in range(2):
            with pytest.raises(MalformedGenerationError):
                service.generate("Review large mobile purchases")
        assert client.chat.completions.create.call_count == 2

    def test_provider_error_wrapped(self, make_generator):
        client = MagicMock()
        client.chat.completions.create.side_effect = RuntimeError("connection reset")
        service = make_generator(client)

        with pytest.raises(GenerationFailure) as exc_info:
            service.generate("Review large mobile purchases")

        assert type(exc_info.value) is GenerationFailure
        assert exc_info.value.detail["error_type"] == "provider"
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_sdk_timeout_maps_to_timeout_error(self, make_generator):
        """SDKのタイムアウトは504の生成タイムアウトとして扱う"""
        import httpx
        from openai import APITimeoutError

        client = MagicMock()
        client.chat.completions.create.side_effect = APITimeoutError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        )
        service = make_generator(client)

        with pytest.raises(GenerationTimeoutError) as exc_info:
            service.generate("Review large mobile purchases")

        assert exc_info.value.http_status_code == 504
        assert exc_info.value.detail["error_type"] == "timeout"
        assert _llm_calls(service)[0]["error_message"].startswith("Provider timed out")


class TestAnthropicProvider:
    """Test the Anthropic forced tool path."""

    def test_tool_use_block(self, sqlite_db):
        from app.core.cache import TTLCache

        client = MagicMock()
        client.messages.create.return_value = SimpleNamespace(
            model="claude-sonnet-4-5",
            content=[
                SimpleNamespace(type="text", text="Sure"),
                SimpleNamespace(type="tool_use", name=TOOL_NAME, input=HIGH_AMOUNT_MOBILE_RULE),
            ],
            usage=SimpleNamespace(input_tokens=300, output_tokens=90),
        )
        service = RuleGenerationService(
            config=LLMConfig(provider="anthropic", model="claude-sonnet-4-5"),
            client=client,
            db=sqlite_db,
            cache=TTLCache(),
        )

        result = service.generate("Review large mobile purchases")

        assert result.rule == HIGH_AMOUNT_MOBILE_RULE
        assert result.tokens == 390
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": TOOL_NAME}

    def test_no_tool_use_block(self, sqlite_db):
        from app.core.cache import TTLCache

        client = MagicMock()
        client.messages.create.return_value = SimpleNamespace(
            model="claude-sonnet-4-5",
            content=[SimpleNamespace(type="text", text="I cannot do that")],
            usage=SimpleNamespace(input_tokens=10, output_tokens=5),
        )
        service = RuleGenerationService(
            config=LLMConfig(provider="anthropic", model="claude-sonnet-4-5"),
            client=client,
            db=sqlite_db,
            cache=TTLCache(),
        )
        with pytest.raises(MalformedGenerationError):
            service.generate("Review large mobile purchases")


class TestAvailableModels:
    def test_grouped_by_provider(self):
        models = RuleGenerationService.get_available_models()
        assert set(models) == {"anthropic", "openai"}
        assert all(m.supports_tools for m in models["openai"])
