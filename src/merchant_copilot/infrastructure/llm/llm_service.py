"""
LLM Service

LiteLLM-backed text generator used to phrase the final answer of a turn.
Model aliases, default parameters and the retry policy come from a YAML
config file (configs/llm_config.yaml).
"""

import asyncio
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import litellm
import structlog
import yaml

from merchant_copilot.core.domain.errors import ConfigurationError, LLMServiceError

ALLOWED_PARAMS = ("temperature", "top_p", "max_tokens", "frequency_penalty", "presence_penalty")


@dataclass
class RetryPolicy:
    """Retry policy configuration."""

    max_attempts: int = 3
    backoff_multiplier: float = 2.0
    timeout: int = 30
    retry_on_errors: List[str] = field(default_factory=list)


class LLMService:
    """
    Text generation over LiteLLM with alias resolution and retries.

    Args:
        config_path: Path to YAML configuration file
        system_prompt: Optional system message sent with every prompt

    Raises:
        ConfigurationError: If the config file is missing or invalid
    """

    def __init__(
        self,
        config_path: str = "configs/llm_config.yaml",
        system_prompt: Optional[str] = None,
    ):
        self.logger = structlog.get_logger().bind(component="llm_service")
        self.system_prompt = system_prompt
        self._load_config(config_path)
        self._check_api_key()

        self.logger.info(
            "llm.service.initialized",
            default_model=self.default_model,
            model_aliases=list(self.models.keys()),
        )

    def _load_config(self, config_path: str) -> None:
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"LLM config not found: {config_path}")

        with open(config_file, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)

        if not isinstance(config, dict):
            raise ConfigurationError(f"Config file is empty or invalid: {config_path}")

        self.default_model = config.get("default_model", "main")
        self.models: Dict[str, str] = config.get("models", {})
        self.model_params: Dict[str, Dict[str, Any]] = config.get("model_params", {})
        self.default_params: Dict[str, Any] = config.get("default_params", {})

        if not self.models:
            raise ConfigurationError("Config must define at least one model in 'models' section")

        retry_config = config.get("retry_policy", {})
        self.retry_policy = RetryPolicy(
            max_attempts=retry_config.get("max_attempts", 3),
            backoff_multiplier=retry_config.get("backoff_multiplier", 2.0),
            timeout=retry_config.get("timeout", 30),
            retry_on_errors=retry_config.get("retry_on_errors", []),
        )

        self.logging_config = config.get("logging", {})
        self.api_key_env = config.get("api_key_env", "OPENAI_API_KEY")

    def _check_api_key(self) -> None:
        if not os.getenv(self.api_key_env):
            self.logger.warning(
                "llm.api_key.missing",
                env_var=self.api_key_env,
                hint="Set environment variable for API access",
            )

    def resolve_model(self, model_alias: Optional[str] = None) -> str:
        alias = model_alias or self.default_model
        return self.models.get(alias, alias)

    def model_parameters(self, model: str) -> Dict[str, Any]:
        """Exact model match, then model-family prefix match, then defaults."""
        if model in self.model_params:
            params = self.model_params[model]
        else:
            params = next(
                (p for key, p in self.model_params.items() if model.startswith(key)),
                self.default_params,
            )
        return {k: v for k, v in params.items() if k in ALLOWED_PARAMS}

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        **kwargs,
    ) -> Dict[str, Any]:
        """
        Perform LLM completion with retry logic.

        Returns:
            Dict with content, usage, model and latency_ms

        Raises:
            LLMServiceError: When the last attempt fails or the error is not retryable
        """
        actual_model = self.resolve_model(model)
        params = {**self.model_parameters(actual_model), **kwargs}

        for attempt in range(self.retry_policy.max_attempts):
            try:
                start_time = time.time()
                self.logger.debug(
                    "llm.completion.started",
                    model=actual_model,
                    attempt=attempt + 1,
                    message_count=len(messages),
                )

                response = await litellm.acompletion(
                    model=actual_model,
                    messages=messages,
                    timeout=self.retry_policy.timeout,
                    **params,
                )

                content = response.choices[0].message.content or ""
                usage = getattr(response, "usage", {})
                if isinstance(usage, dict):
                    token_stats = usage
                else:
                    token_stats = {
                        "total_tokens": getattr(usage, "total_tokens", 0),
                        "prompt_tokens": getattr(usage, "prompt_tokens", 0),
                        "completion_tokens": getattr(usage, "completion_tokens", 0),
                    }

                latency_ms = int((time.time() - start_time) * 1000)
                if self.logging_config.get("log_token_usage", True):
                    self.logger.info(
                        "llm.completion.succeeded",
                        model=actual_model,
                        tokens=token_stats.get("total_tokens", 0),
                        latency_ms=latency_ms,
                    )

                return {
                    "content": content,
                    "usage": token_stats,
                    "model": actual_model,
                    "latency_ms": latency_ms,
                }

            except Exception as e:
                error_type = type(e).__name__
                error_msg = str(e)

                should_retry = attempt < self.retry_policy.max_attempts - 1 and any(
                    err_type in error_type or err_type in error_msg
                    for err_type in self.retry_policy.retry_on_errors
                )

                if not should_retry:
                    self.logger.error(
                        "llm.completion.failed",
                        model=actual_model,
                        error_type=error_type,
                        error=error_msg[:200],
                        attempts=attempt + 1,
                    )
                    raise LLMServiceError(f"{error_type}: {error_msg}") from e

                backoff_time = self.retry_policy.backoff_multiplier**attempt
                self.logger.warning(
                    "llm.completion.retry",
                    model=actual_model,
                    error_type=error_type,
                    attempt=attempt + 1,
                    backoff_seconds=backoff_time,
                )
                await asyncio.sleep(backoff_time)

        raise LLMServiceError("Max retries exceeded")

    async def generate_text(self, prompt: str) -> str:
        messages: List[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})

        result = await self.complete(messages)
        return result["content"]
