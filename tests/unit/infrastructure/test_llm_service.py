"""
Unit tests for LLMService.

Tests cover:
- Configuration loading and validation
- Model alias resolution and parameter selection
- Completion, retries and error handling
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from merchant_copilot.core.domain.errors import ConfigurationError, LLMServiceError
from merchant_copilot.infrastructure.llm.llm_service import LLMService


@pytest.fixture
def mock_config(tmp_path):
    """Create temporary config file."""
    config_content = """
default_model: "main"
models:
  main: "gpt-3.5-turbo"
  powerful: "gpt-4o"
model_params:
  gpt-4o:
    temperature: 0.2
    max_tokens: 1500
    unsupported: "dropped"
default_params:
  temperature: 0.3
  max_tokens: 1000
retry_policy:
  max_attempts: 3
  backoff_multiplier: 2
  timeout: 30
  retry_on_errors:
    - "RateLimitError"
logging:
  log_token_usage: true
api_key_env: "COPILOT_TEST_KEY"
"""
    config_file = tmp_path / "llm_config.yaml"
    config_file.write_text(config_content, encoding="utf-8")
    return str(config_file)


def make_response(content="回答"):
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    response.usage = {"total_tokens": 42, "prompt_tokens": 30, "completion_tokens": 12}
    return response


class RateLimitError(Exception):
    pass


class TestInitialization:
    def test_loads_config(self, mock_config):
        service = LLMService(config_path=mock_config)

        assert service.default_model == "main"
        assert service.retry_policy.max_attempts == 3
        assert service.api_key_env == "COPILOT_TEST_KEY"

    def test_missing_config(self):
        with pytest.raises(ConfigurationError, match="not found"):
            LLMService(config_path="nonexistent.yaml")

    def test_empty_config(self, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="empty or invalid"):
            LLMService(config_path=str(config_file))

    def test_missing_models(self, tmp_path):
        config_file = tmp_path / "no_models.yaml"
        config_file.write_text("default_model: main\n", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="at least one model"):
            LLMService(config_path=str(config_file))


class TestModelResolution:
    def test_alias(self, mock_config):
        assert LLMService(config_path=mock_config).resolve_model("powerful") == "gpt-4o"

    def test_default(self, mock_config):
        assert LLMService(config_path=mock_config).resolve_model() == "gpt-3.5-turbo"

    def test_unknown_alias_passes_through(self, mock_config):
        assert LLMService(config_path=mock_config).resolve_model("claude-x") == "claude-x"

    def test_params_filtered(self, mock_config):
        params = LLMService(config_path=mock_config).model_parameters("gpt-4o")

        assert params == {"temperature": 0.2, "max_tokens": 1500}

    def test_params_prefix_match(self, mock_config):
        params = LLMService(config_path=mock_config).model_parameters("gpt-4o-2024-08-06")

        assert params["temperature"] == 0.2

    def test_params_default(self, tmp_path):
        config_file = tmp_path / "c.yaml"
        config_file.write_text(
            "models: {main: m}\ndefault_params: {temperature: 0.5}\n", encoding="utf-8"
        )

        assert LLMService(config_path=str(config_file)).model_parameters("m") == {"temperature": 0.5}


class TestCompletion:
    @pytest.mark.asyncio
    async def test_complete(self, mock_config):
        service = LLMService(config_path=mock_config)

        with patch("litellm.acompletion", new_callable=AsyncMock, return_value=make_response()) as mock:
            result = await service.complete([{"role": "user", "content": "hi"}])

        assert result["content"] == "回答"
        assert result["usage"]["total_tokens"] == 42
        assert result["model"] == "gpt-3.5-turbo"
        kwargs = mock.call_args.kwargs
        assert kwargs["model"] == "gpt-3.5-turbo"
        assert kwargs["timeout"] == 30
        assert kwargs["temperature"] == 0.3

    @pytest.mark.asyncio
    async def test_generate_text_sends_system_prompt(self, mock_config):
        service = LLMService(config_path=mock_config, system_prompt="只根据上下文回答")

        with patch("litellm.acompletion", new_callable=AsyncMock, return_value=make_response("好")) as mock:
            text = await service.generate_text("问题")

        assert text == "好"
        messages = mock.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "只根据上下文回答"}
        assert messages[1] == {"role": "user", "content": "问题"}

    @pytest.mark.asyncio
    async def test_retries_retryable_errors(self, mock_config):
        service = LLMService(config_path=mock_config)
        calls = {"n": 0}

        async def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] < 3:
                raise RateLimitError("slow down")
            return make_response()

        with patch("litellm.acompletion", side_effect=flaky), patch(
            "merchant_copilot.infrastructure.llm.llm_service.asyncio.sleep", new_callable=AsyncMock
        ) as sleep:
            result = await service.complete([{"role": "user", "content": "hi"}])

        assert result["content"] == "回答"
        assert calls["n"] == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_non_retryable_error_raises_immediately(self, mock_config):
        service = LLMService(config_path=mock_config)

        with patch("litellm.acompletion", new_callable=AsyncMock, side_effect=ValueError("bad request")) as mock:
            with pytest.raises(LLMServiceError, match="ValueError: bad request"):
                await service.complete([{"role": "user", "content": "hi"}])

        assert mock.call_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, mock_config):
        service = LLMService(config_path=mock_config)

        with patch(
            "litellm.acompletion", new_callable=AsyncMock, side_effect=RateLimitError("slow down")
        ) as mock, patch(
            "merchant_copilot.infrastructure.llm.llm_service.asyncio.sleep", new_callable=AsyncMock
        ):
            with pytest.raises(LLMServiceError, match="RateLimitError"):
                await service.complete([{"role": "user", "content": "hi"}])

        assert mock.call_count == 3
