"""LLM client for cloud grading providers.

Provides a unified interface for LLM interactions through the OpenAI SDK,
which also speaks to OpenAI-compatible local servers.

Supported providers:
- openai: OpenAI API (default for cloud grading)
- lmstudio: Local LM Studio server (OpenAI-compatible API)
- anthropic: Anthropic API (via OpenAI-compatible endpoint)

Every call goes through a per-provider circuit breaker, and transient
connection failures are retried with exponential backoff.
"""

from __future__ import annotations

import json
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog
from openai import OpenAI

from grading.config.app_config import load_app_config
from grading.core.resilience import CircuitBreaker, CircuitOpenError, retrying

logger = structlog.get_logger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================

Provider = Literal["lmstudio", "openai", "anthropic"]

PROVIDER_DEFAULTS: dict[str, dict[str, Any]] = {
    "lmstudio": {
        "base_url": "http://localhost:1234/v1",
        "api_key": "lm-studio",  # LM Studio doesn't need a real key
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "api_key_env": "OPENAI_API_KEY",
    },
    "anthropic": {
        "base_url": "https://api.anthropic.com/v1",
        "api_key_env": "ANTHROPIC_API_KEY",
    },
}

PROVIDER_CAPABILITIES_DEFAULTS: dict[str, dict[str, bool]] = {
    "lmstudio": {"supports_json_object": False},
    "openai": {"supports_json_object": True},
    "anthropic": {"supports_json_object": False},
}

JSON_REPAIR_PROMPT = """Fix the following text and return ONLY valid JSON:
<<<
{invalid_output}
>>>

Reply with the corrected JSON only, no explanations and no markdown."""

# Some models emit <think>...</think> blocks that break JSON extraction
SANITIZE_PATTERNS = [
    re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE),
    re.compile(r"<analysis>.*?</analysis>", re.DOTALL | re.IGNORECASE),
    re.compile(r"<reasoning>.*?</reasoning>", re.DOTALL | re.IGNORECASE),
]

# One breaker per provider, shared by every client instance
_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(provider: str) -> CircuitBreaker:
    """Return the shared circuit breaker for a provider."""
    if provider not in _breakers:
        _breakers[provider] = CircuitBreaker(name=provider)
    return _breakers[provider]


def reset_circuit_breakers() -> None:
    """Forget all breaker state (tests, manual recovery)."""
    _breakers.clear()


def _sanitize_for_json(text: str) -> str:
    """Remove thinking/reasoning tags before JSON parsing."""
    result = text
    for pattern in SANITIZE_PATTERNS:
        result = pattern.sub("", result)
    return result.strip()


def extract_json(content: str) -> Any | None:
    """Try to parse JSON from model output, with multiple extraction strategies.

    Tries:
    1. Direct parse
    2. Extract from ```json ... ``` blocks
    3. Extract first {...} object

    Thinking tags (<think>, etc.) are stripped first.

    Returns parsed value or None if all strategies fail.
    """
    content = _sanitize_for_json(content)

    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass

    json_match = re.search(r"```(?:json)?\s*([\s\S]*?)```", content)
    if json_match:
        try:
            return json.loads(json_match.group(1).strip())
        except json.JSONDecodeError:
            pass

    start = content.find("{")
    end = content.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            return json.loads(content[start:end])
        except json.JSONDecodeError:
            pass

    return None


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class LLMConfig:
    """Configuration for LLM client."""

    provider: Provider = "openai"
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    temperature: float = 0.3
    max_tokens: int = 1000
    timeout: int = 60
    api_key: str | None = None
    max_retries: int = 3
    # Capability override (from config)
    supports_json_object: bool | None = None

    @classmethod
    def for_provider(cls, provider: str | None = None, model: str | None = None) -> LLMConfig:
        """Build a config from the application settings for one provider."""
        app_config = load_app_config()
        provider = provider or app_config.grading.cloud_provider
        pconfig = app_config.providers.get(provider)
        defaults = PROVIDER_DEFAULTS.get(provider, {})

        if pconfig is None:
            logger.warning("provider_not_configured", provider=provider)
            base_url = defaults.get("base_url", "")
            default_model = "default"
            api_key_env = defaults.get("api_key_env")
        else:
            base_url = pconfig.base_url or defaults.get("base_url", "")
            default_model = pconfig.default_model
            api_key_env = pconfig.api_key_env or defaults.get("api_key_env")

        api_key = os.environ.get(api_key_env) if api_key_env else defaults.get("api_key")

        return cls(
            provider=provider,  # type: ignore[arg-type]
            base_url=base_url,
            model=model or default_model,
            api_key=api_key,
        )


@dataclass
class Message:
    """A chat message."""

    role: Literal["system", "user", "assistant"]
    content: str

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary for API call."""
        return {"role": self.role, "content": self.content}


@dataclass
class LLMResponse:
    """Response from LLM."""

    content: str
    model: str
    provider: str
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: int = 0

    @property
    def prompt_tokens(self) -> int:
        return self.usage.get("prompt_tokens", 0)

    @property
    def completion_tokens(self) -> int:
        return self.usage.get("completion_tokens", 0)

    @property
    def total_tokens(self) -> int:
        return self.usage.get("total_tokens", 0)


class LLMError(Exception):
    """Error during LLM interaction."""

    pass


class LLMConnectionError(LLMError):
    """Error connecting to LLM server."""

    pass


class LLMResponseError(LLMError):
    """Error in LLM response."""

    pass


class LLMUnavailableError(LLMError):
    """Provider circuit is open; calls are being rejected."""

    pass


# =============================================================================
# LLM CLIENT
# =============================================================================


class LLMClient:
    """Unified client for LLM interactions.

    Supports OpenAI, LM Studio, and Anthropic via OpenAI-compatible API.
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        provider: str | None = None,
        model: str | None = None,
    ):
        """Initialize LLM client.

        Args:
            config: LLM configuration (built from app config if not provided)
            provider: Override provider from config
            model: Override model from config
        """
        if config is None:
            config = LLMConfig.for_provider(provider, model)

        self.config = config

        if provider is not None and provider != self.config.provider:
            self.config.provider = provider  # type: ignore[assignment]
            defaults = PROVIDER_DEFAULTS.get(provider, {})
            if "base_url" in defaults:
                self.config.base_url = defaults["base_url"]
            if "api_key_env" in defaults:
                self.config.api_key = os.environ.get(defaults["api_key_env"])
            elif "api_key" in defaults:
                self.config.api_key = defaults["api_key"]

        if model is not None:
            self.config.model = model

        self._client = OpenAI(
            base_url=self.config.base_url,
            api_key=self.config.api_key or "not-needed",
            timeout=self.config.timeout,
        )
        self._breaker = get_circuit_breaker(self.config.provider)
        self._create_with_retry = retrying(
            max_attempts=max(1, self.config.max_retries),
            retry_on=(LLMConnectionError,),
        )(self._create)

        self.last_response: LLMResponse | None = None

        logger.info(
            "llm_client_initialized",
            provider=self.config.provider,
            model=self.config.model,
            base_url=self.config.base_url,
        )

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    def _supports_json_object(self) -> bool:
        """Check if current provider supports response_format json_object."""
        if self.config.supports_json_object is not None:
            return self.config.supports_json_object

        caps = PROVIDER_CAPABILITIES_DEFAULTS.get(self.config.provider, {})
        return caps.get("supports_json_object", False)

    def _create(self, request_kwargs: dict[str, Any]) -> Any:
        """Single SDK call, with transport errors mapped to our hierarchy."""
        try:
            return self._client.chat.completions.create(**request_kwargs)
        except Exception as e:
            error_msg = str(e)
            if (
                "connection" in error_msg.lower()
                or "connect" in error_msg.lower()
                or "timed out" in error_msg.lower()
            ):
                raise LLMConnectionError(
                    f"Could not connect to {self.config.provider} at {self.config.base_url}: {e}"
                ) from e
            raise LLMError(f"LLM call failed: {e}") from e

    def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
        model: str | None = None,
    ) -> LLMResponse:
        """Send chat completion request.

        Args:
            messages: List of messages in conversation
            temperature: Override default temperature
            max_tokens: Override default max tokens
            json_mode: Request JSON response format (only if provider supports it)
            model: Override the configured model for this call only

        Returns:
            LLMResponse with content and metadata

        Raises:
            LLMUnavailableError: If the provider circuit is open
            LLMConnectionError: If cannot connect to server after retries
            LLMResponseError: If response is invalid
        """
        if temperature is None:
            temperature = self.config.temperature
        if max_tokens is None:
            max_tokens = self.config.max_tokens

        request_kwargs: dict[str, Any] = {
            "model": model or self.config.model,
            "messages": [m.to_dict() for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        if json_mode and self._supports_json_object():
            request_kwargs["response_format"] = {"type": "json_object"}

        start_time = time.time()

        try:
            response = self._breaker.call(self._create_with_retry, request_kwargs)
        except CircuitOpenError as e:
            raise LLMUnavailableError(str(e)) from e

        latency_ms = int((time.time() - start_time) * 1000)

        if not response.choices:
            raise LLMResponseError("Empty response from LLM")

        content = response.choices[0].message.content or ""

        usage = {}
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        logger.debug(
            "llm_response",
            provider=self.config.provider,
            model=response.model,
            tokens=usage.get("total_tokens", 0),
            latency_ms=latency_ms,
        )

        self.last_response = LLMResponse(
            content=content,
            model=response.model,
            provider=self.config.provider,
            usage=usage,
            latency_ms=latency_ms,
        )
        return self.last_response

    def _try_parse_json(self, content: str) -> Any | None:
        return extract_json(content)

    def chat_json(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
        max_retries: int = 1,
        model: str | None = None,
    ) -> Any:
        """Send chat request expecting JSON response.

        Uses robust parsing with one repair round-trip on failure.

        Raises:
            LLMResponseError: If response is not valid JSON after retries
        """
        response = self.chat(
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=True,
            model=model,
        )

        parsed = self._try_parse_json(response.content)
        if parsed is not None:
            return parsed

        if max_retries > 0:
            logger.warning(
                "json_parse_failed_retrying",
                content=response.content[:100],
                provider=self.config.provider,
            )

            repair_prompt = JSON_REPAIR_PROMPT.format(
                invalid_output=response.content[:1000]
            )
            retry_messages = messages + [
                Message(role="user", content=repair_prompt),
            ]

            retry_response = self.chat(
                retry_messages,
                temperature=temperature,
                max_tokens=max_tokens,
                json_mode=True,
                model=model,
            )

            parsed = self._try_parse_json(retry_response.content)
            if parsed is not None:
                logger.info("json_parse_recovered_after_retry")
                return parsed

        raise LLMResponseError(
            f"Could not obtain valid JSON: {response.content[:200]}..."
        )

    def simple_chat(
        self,
        system_prompt: str,
        user_message: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        model: str | None = None,
    ) -> str:
        """Single-turn chat returning the raw text."""
        messages = [
            Message(role="system", content=system_prompt),
            Message(role="user", content=user_message),
        ]
        response = self.chat(
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            model=model,
        )
        return response.content

    def simple_json(
        self,
        system_prompt: str,
        user_message: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        model: str | None = None,
    ) -> Any:
        """Single-turn chat expecting a JSON reply."""
        messages = [
            Message(role="system", content=system_prompt),
            Message(role="user", content=user_message),
        ]
        return self.chat_json(
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            model=model,
        )

    def is_available(self) -> bool:
        """Check if LLM server is available.

        Returns:
            True if server responds and the circuit is not open
        """
        if not self._breaker.allow_request():
            return False
        try:
            self._client.models.list()
            return True
        except Exception:
            return False
