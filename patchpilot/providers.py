"""
PATCHPILOT Providers — Completion Backends

Every backend speaks the same normalised shape:

  CompletionRequest  {model, system_prompt, messages[], max_tokens, temperature}
  ProviderResponse   {text, prompt_tokens, completion_tokens, stop_reason, model}

Dispatch goes through LiteLLM so the gateway never touches vendor SDKs.
Pricing is a static per-model table owned by each provider.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Any, Iterator

import litellm
import requests
from loguru import logger
from pydantic import BaseModel, Field

from patchpilot.config_loader import PatchPilotConfig


class ProviderError(Exception):
    """Network, auth or rate-limit failure talking to a completion backend."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider} API error: {message}")


# ---------------------------------------------------------------------------
# Wire shapes
# ---------------------------------------------------------------------------

class CompletionRequest(BaseModel):
    model: str | None = None
    system_prompt: str = "You are an expert software engineer."
    messages: list[dict[str, str]] = Field(default_factory=list)
    max_tokens: int = 4096
    temperature: float = 0.7
    timeout: float | None = None


class ProviderResponse(BaseModel):
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    stop_reason: str | None = None
    model: str


# ---------------------------------------------------------------------------
# Base provider
# ---------------------------------------------------------------------------

class CompletionProvider(ABC):
    """
    Base class for completion backends.

    Subclasses define:
      - name: str — the key callers select the provider by
      - pricing: USD per 1M tokens, {model: (prompt_rate, completion_rate)}
      - complete() / stream() — the actual dispatch
    """

    name: str = "base"
    pricing: dict[str, tuple[float, float]] = {}

    def __init__(self, model: str):
        self.default_model = model

    @abstractmethod
    def complete(self, request: CompletionRequest) -> ProviderResponse:
        ...

    @abstractmethod
    def stream(self, request: CompletionRequest) -> Iterator[str]:
        """Yield text chunks; the generator's return value is the final ProviderResponse."""
        ...

    def is_available(self) -> bool:
        return True

    def calculate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> tuple[float, bool]:
        """Return (cost_usd, priced). Unknown models cost nothing and are flagged unpriced."""
        rates = self.pricing.get(model)
        if rates is None:
            logger.warning(f"[{self.name.upper()}] Unknown model pricing: {model} — recording as unpriced")
            return 0.0, False

        prompt_rate, completion_rate = rates
        cost = (prompt_tokens / 1_000_000) * prompt_rate + (completion_tokens / 1_000_000) * completion_rate
        return cost, True

    @staticmethod
    def count_tokens(text: str) -> int:
        """Rough estimate: ~4 characters per token."""
        return math.ceil(len(text) / 4)


# ---------------------------------------------------------------------------
# LiteLLM-backed providers
# ---------------------------------------------------------------------------

class LiteLLMProvider(CompletionProvider):
    model_prefix: str = ""
    stream_usage: bool = True

    def __init__(self, model: str, api_key: str | None = None, base_url: str | None = None):
        super().__init__(model)
        self.api_key = api_key
        self.base_url = base_url
        litellm.suppress_debug_info = True

    def _route(self, model: str) -> str:
        if "/" in model or not self.model_prefix:
            return model
        return f"{self.model_prefix}/{model}"

    def _build_kwargs(self, request: CompletionRequest, model: str, stream: bool = False) -> dict[str, Any]:
        messages = [{"role": "system", "content": request.system_prompt}, *request.messages]
        kwargs: dict[str, Any] = {
            "model": self._route(model),
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.base_url:
            kwargs["api_base"] = self.base_url
        if request.timeout:
            kwargs["timeout"] = request.timeout
        if stream:
            kwargs["stream"] = True
            if self.stream_usage:
                kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    def complete(self, request: CompletionRequest) -> ProviderResponse:
        model = request.model or self.default_model
        kwargs = self._build_kwargs(request, model)

        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            logger.error(f"[{self.name.upper()}] completion failed: {e}")
            raise ProviderError(self.name, str(e)) from e

        choice = response.choices[0]
        text = choice.message.content or ""
        usage = getattr(response, "usage", None)

        return self._normalise(
            model=model,
            text=text,
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            stop_reason=getattr(choice, "finish_reason", None),
            messages=kwargs["messages"],
        )

    def stream(self, request: CompletionRequest) -> Iterator[str]:
        model = request.model or self.default_model
        kwargs = self._build_kwargs(request, model, stream=True)

        parts: list[str] = []
        prompt_tokens = completion_tokens = 0
        stop_reason = None

        try:
            for chunk in litellm.completion(**kwargs):
                usage = getattr(chunk, "usage", None)
                if usage:
                    prompt_tokens = getattr(usage, "prompt_tokens", 0) or prompt_tokens
                    completion_tokens = getattr(usage, "completion_tokens", 0) or completion_tokens
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                stop_reason = getattr(choice, "finish_reason", None) or stop_reason
                delta = getattr(choice.delta, "content", None)
                if delta:
                    parts.append(delta)
                    yield delta
        except Exception as e:
            logger.error(f"[{self.name.upper()}] streaming failed: {e}")
            raise ProviderError(self.name, str(e)) from e

        return self._normalise(
            model=model,
            text="".join(parts),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            stop_reason=stop_reason,
            messages=kwargs["messages"],
        )

    def _normalise(
        self,
        model: str,
        text: str,
        prompt_tokens: int,
        completion_tokens: int,
        stop_reason: str | None,
        messages: list[dict[str, str]],
    ) -> ProviderResponse:
        return ProviderResponse(
            text=text,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            stop_reason=stop_reason,
            model=model,
        )


class AnthropicProvider(LiteLLMProvider):
    """Hosted Claude models."""

    name = "anthropic"
    model_prefix = "anthropic"

    # USD per 1M tokens
    pricing = {
        "claude-3-5-sonnet-20241022": (3.00, 15.00),
        "claude-3-5-haiku-20241022": (0.80, 4.00),
        "claude-3-7-sonnet-20250219": (3.00, 15.00),
        "claude-sonnet-4-20250514": (3.00, 15.00),
        "claude-3-opus-20240229": (15.00, 75.00),
        "claude-3-sonnet-20240229": (3.00, 15.00),
        "claude-3-haiku-20240307": (0.25, 1.25),
    }


class OpenAIProvider(LiteLLMProvider):
    """Hosted OpenAI chat-completion models."""

    name = "openai"
    model_prefix = "openai"

    # USD per 1M tokens
    pricing = {
        "gpt-4o": (2.50, 10.00),
        "gpt-4o-mini": (0.15, 0.60),
        "gpt-4-turbo-preview": (10.00, 30.00),
        "gpt-4": (30.00, 60.00),
        "gpt-3.5-turbo": (0.50, 1.50),
        "gpt-3.5-turbo-16k": (3.00, 4.00),
    }


class OllamaProvider(LiteLLMProvider):
    """Locally hosted models. No API cost; token counts are estimated when the server omits them."""

    name = "ollama"
    model_prefix = "ollama"
    stream_usage = False

    def __init__(self, model: str = "codellama", base_url: str = "http://localhost:11434"):
        super().__init__(model, api_key=None, base_url=base_url.rstrip("/"))

    def calculate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> tuple[float, bool]:
        return 0.0, True

    def is_available(self) -> bool:
        """Health probe against the model server."""
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=2)
            return response.status_code == 200
        except requests.RequestException:
            return False

    def list_models(self) -> list[dict[str, Any]]:
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=5)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"[OLLAMA] Error listing models: {e}")
            return []
        return response.json().get("models", [])

    def _normalise(
        self,
        model: str,
        text: str,
        prompt_tokens: int,
        completion_tokens: int,
        stop_reason: str | None,
        messages: list[dict[str, str]],
    ) -> ProviderResponse:
        if not prompt_tokens:
            prompt_tokens = self.count_tokens("\n\n".join(m.get("content", "") for m in messages))
        if not completion_tokens:
            completion_tokens = self.count_tokens(text)
        return super()._normalise(model, text, prompt_tokens, completion_tokens, stop_reason, messages)


# ---------------------------------------------------------------------------
# Construction from config
# ---------------------------------------------------------------------------

def build_providers(config: PatchPilotConfig) -> dict[str, CompletionProvider]:
    """Instantiate every provider that is enabled and has its credentials."""
    providers: dict[str, CompletionProvider] = {}
    cfg = config.providers

    if cfg.anthropic.enabled and cfg.anthropic.api_key():
        providers["anthropic"] = AnthropicProvider(cfg.anthropic.model, api_key=cfg.anthropic.api_key())

    if cfg.openai.enabled and cfg.openai.api_key():
        providers["openai"] = OpenAIProvider(cfg.openai.model, api_key=cfg.openai.api_key())

    if cfg.ollama.enabled:
        providers["ollama"] = OllamaProvider(cfg.ollama.model, base_url=cfg.ollama.base_url or "http://localhost:11434")

    logger.debug(f"[PROVIDERS] Configured: {sorted(providers)}")
    return providers
