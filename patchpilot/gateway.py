"""
PATCHPILOT Gateway — Provider-Agnostic Completion Access

Every model call in the system goes through here. The gateway picks the
provider, waits for rate-limit admission, enforces a caller-side timeout,
prices the response and keeps running usage totals.

Task helpers (generate / review / refactor / tests / fix) wrap `complete`
with a prompt template and structured parsing.
"""

from __future__ import annotations

import queue
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Generator, Generic, Iterator, TypeVar

from loguru import logger
from pydantic import BaseModel, Field

from patchpilot import prompts
from patchpilot.config_loader import PatchPilotConfig
from patchpilot.providers import (
    CompletionProvider,
    CompletionRequest,
    ProviderResponse,
    build_providers,
)
from patchpilot.ratelimit import SlidingWindowLimiter
from patchpilot.structured import Outcome, parse_structured, strip_fences

T = TypeVar("T", bound=BaseModel)


class ProviderNotConfiguredError(Exception):
    """The requested provider has no backend registered."""

    def __init__(self, provider: str, configured: list[str]):
        self.provider = provider
        super().__init__(f"Provider {provider} not configured. Configured: {configured or 'none'}")


class ProviderTimeoutError(Exception):
    """The caller stopped waiting for a completion. The backend call may still finish."""

    def __init__(self, provider: str, timeout: float):
        self.provider = provider
        self.timeout = timeout
        super().__init__(f"{provider} did not respond within {timeout:.1f}s")


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageStats:
    request_count: int = 0
    total_cost: float = 0.0
    cost_by_provider: dict[str, float] = field(default_factory=dict)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    unpriced_calls: int = 0
    unpriced_tokens: int = 0

    def record(self, provider: str, prompt_tokens: int, completion_tokens: int, cost: float, priced: bool) -> None:
        self.request_count += 1
        self.total_cost += cost
        self.cost_by_provider[provider] = self.cost_by_provider.get(provider, 0.0) + cost
        self.prompt_tokens += prompt_tokens
        self.completion_tokens += completion_tokens
        if not priced:
            self.unpriced_calls += 1
            self.unpriced_tokens += prompt_tokens + completion_tokens

    def summary(self) -> dict:
        return {
            "request_count": self.request_count,
            "total_cost": round(self.total_cost, 6),
            "cost_by_provider": {k: round(v, 6) for k, v in self.cost_by_provider.items()},
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "unpriced_calls": self.unpriced_calls,
            "unpriced_tokens": self.unpriced_tokens,
        }


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class Completion(BaseModel):
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    provider: str
    model: str
    priced: bool = True
    stop_reason: str | None = None
    kind: str = "completion"
    latency_ms: int = 0

    @property
    def tokens_used(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class CompletionStream:
    """Iterate for text chunks. `.completion` is filled in once the stream is exhausted."""

    def __init__(self, source: Generator[str, None, Completion]):
        self._source = source
        self.completion: Completion | None = None

    def __iter__(self) -> Iterator[str]:
        if self.completion is not None:
            return
        self.completion = yield from self._source

    def read(self) -> Completion:
        """Drain the stream and return the final accounting record."""
        for _ in self:
            pass
        return self.completion


# Helper output schemas

class CodeDraft(BaseModel):
    code: str
    explanation: str = ""


class Review(BaseModel):
    summary: str
    issues: list[Any] = Field(default_factory=list)
    suggestions: list[Any] = Field(default_factory=list)
    security_concerns: list[Any] = Field(default_factory=list)
    rating: int = Field(default=0, ge=0, le=10)


class Refactoring(BaseModel):
    refactored_code: str
    changes: list[str] = Field(default_factory=list)


class TestSuite(BaseModel):
    __test__ = False  # keep pytest from collecting this model

    test_code: str
    cases: list[str] = Field(default_factory=list)


class FixResult(BaseModel):
    fixed_code: str
    explanation: str = ""


@dataclass(frozen=True)
class HelperResult(Generic[T]):
    completion: Completion
    outcome: Outcome[T]

    @property
    def value(self) -> T:
        return self.outcome.value

    @property
    def degraded(self) -> bool:
        return self.outcome.degraded


def default_test_framework(language: str) -> str:
    return "pytest" if language.lower() == "python" else "jest"


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class CompletionGateway:
    """
    Single entry point for model calls.

    Callers ask for `gateway.complete(kind, prompt, ...)`. The gateway
    resolves the provider, waits for admission, dispatches on a worker
    thread and records usage.
    """

    default_system_prompt = "You are an expert software engineer."

    def __init__(
        self,
        config: PatchPilotConfig,
        providers: dict[str, CompletionProvider] | None = None,
        limiter: SlidingWindowLimiter | None = None,
    ):
        self.config = config
        self.providers = providers if providers is not None else build_providers(config)
        self.limiter = limiter or SlidingWindowLimiter(
            max_requests=config.gateway.max_requests,
            window_seconds=config.gateway.window_seconds,
        )
        self.default_provider = config.gateway.default_provider
        self.timeout = config.gateway.request_timeout_seconds
        self.usage = UsageStats()
        self._usage_lock = threading.Lock()

    # -- Provider registry --------------------------------------------------

    def available_providers(self) -> list[str]:
        return sorted(self.providers)

    def has_provider(self, name: str) -> bool:
        return name in self.providers

    def provider_health(self) -> dict[str, bool]:
        return {name: backend.is_available() for name, backend in sorted(self.providers.items())}

    def _resolve(self, provider: str | None) -> tuple[str, CompletionProvider]:
        name = provider or self.default_provider
        backend = self.providers.get(name)
        if backend is None:
            raise ProviderNotConfiguredError(name, self.available_providers())
        return name, backend

    def _build_request(
        self,
        prompt: str,
        system_prompt: str | None,
        temperature: float,
        max_tokens: int,
        model: str | None,
        timeout: float | None,
    ) -> CompletionRequest:
        return CompletionRequest(
            model=model,
            system_prompt=system_prompt or self.default_system_prompt,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=timeout or self.timeout,
        )

    # -- Dispatch -----------------------------------------------------------

    def _call_with_timeout(self, fn: Callable[[], ProviderResponse], provider: str, timeout: float) -> ProviderResponse:
        future: Future = Future()

        def worker() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn())
            except Exception as e:
                future.set_exception(e)

        threading.Thread(target=worker, name=f"gateway-{provider}", daemon=True).start()
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            logger.warning(f"[GATEWAY] {provider} timed out after {timeout:.1f}s")
            raise ProviderTimeoutError(provider, timeout) from None

    def _stream_with_timeout(
        self,
        source: Generator[str, None, ProviderResponse],
        provider: str,
        timeout: float,
    ) -> Generator[str, None, ProviderResponse]:
        """Pump `source` on a worker thread; wait at most `timeout` for each chunk."""
        chunks: queue.Queue = queue.Queue()

        def worker() -> None:
            try:
                while True:
                    chunks.put(("chunk", next(source)))
            except StopIteration as stop:
                chunks.put(("done", stop.value))
            except Exception as e:
                chunks.put(("error", e))

        threading.Thread(target=worker, name=f"gateway-{provider}-stream", daemon=True).start()
        while True:
            try:
                kind, value = chunks.get(timeout=timeout)
            except queue.Empty:
                logger.warning(f"[GATEWAY] {provider} stream stalled for {timeout:.1f}s")
                raise ProviderTimeoutError(provider, timeout) from None
            if kind == "chunk":
                yield value
            elif kind == "done":
                return value
            else:
                raise value

    def _account(
        self,
        kind: str,
        provider: str,
        backend: CompletionProvider,
        response: ProviderResponse,
        elapsed_ms: int,
    ) -> Completion:
        cost, priced = backend.calculate_cost(response.model, response.prompt_tokens, response.completion_tokens)

        with self._usage_lock:
            self.usage.record(provider, response.prompt_tokens, response.completion_tokens, cost, priced)
            total = self.usage.total_cost

        logger.debug(
            f"[GATEWAY] {kind} complete — "
            f"{provider}/{response.model}, "
            f"{response.prompt_tokens + response.completion_tokens} tokens, "
            f"${cost:.4f} (session ${total:.4f}), "
            f"{elapsed_ms}ms"
        )

        return Completion(
            text=response.text,
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
            cost=cost,
            provider=provider,
            model=response.model,
            priced=priced,
            stop_reason=response.stop_reason,
            kind=kind,
            latency_ms=elapsed_ms,
        )

    def complete(
        self,
        kind: str,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        provider: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ) -> Completion:
        """Send one completion request and return the priced result.

        Raises:
            ProviderNotConfiguredError: no backend registered under `provider`.
            ProviderTimeoutError: no reply within `timeout` seconds.
            ProviderError: the backend itself failed.
        """
        name, backend = self._resolve(provider)
        request = self._build_request(prompt, system_prompt, temperature, max_tokens, model, timeout)

        self.limiter.acquire(f"llm:{name}")
        logger.debug(f"[GATEWAY] {kind} → {name} ({len(prompt)} chars)")

        start = time.monotonic()
        response = self._call_with_timeout(lambda: backend.complete(request), name, request.timeout)
        elapsed_ms = int((time.monotonic() - start) * 1000)

        return self._account(kind, name, backend, response, elapsed_ms)

    def stream(
        self,
        kind: str,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        provider: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ) -> CompletionStream:
        """Like `complete`, but yields text chunks as they arrive.

        `timeout` bounds the wait for each chunk, the first included.
        """
        name, backend = self._resolve(provider)
        request = self._build_request(prompt, system_prompt, temperature, max_tokens, model, timeout)

        def run() -> Generator[str, None, Completion]:
            self.limiter.acquire(f"llm:{name}")
            logger.debug(f"[GATEWAY] {kind} → {name} (streaming)")
            start = time.monotonic()
            response = yield from self._stream_with_timeout(backend.stream(request), name, request.timeout)
            elapsed_ms = int((time.monotonic() - start) * 1000)
            return self._account(kind, name, backend, response, elapsed_ms)

        return CompletionStream(run())

    # -- Usage --------------------------------------------------------------

    def usage_summary(self) -> dict:
        with self._usage_lock:
            return self.usage.summary()

    def reset_usage(self) -> None:
        with self._usage_lock:
            self.usage = UsageStats()

    # -- Task helpers -------------------------------------------------------

    def generate_code(
        self,
        description: str,
        language: str = "python",
        context: str = "",
        style: str = "clean",
        provider: str | None = None,
    ) -> HelperResult[CodeDraft]:
        system, prompt = prompts.generate_code(description, language, context, style)
        completion = self.complete(
            "generate_code", prompt, system_prompt=system, temperature=0.3, max_tokens=4096, provider=provider,
        )
        outcome = parse_structured(
            completion.text, CodeDraft, lambda raw: CodeDraft(code=strip_fences(raw)), label="generate_code",
        )
        return HelperResult(completion, outcome)

    def review_code(
        self,
        code: str,
        language: str = "python",
        context: str = "",
        check_for: list[str] | None = None,
        provider: str | None = None,
    ) -> HelperResult[Review]:
        system, prompt = prompts.review_code(code, language, context, check_for)
        completion = self.complete(
            "review_code", prompt, system_prompt=system, temperature=0.4, max_tokens=2048, provider=provider,
        )
        outcome = parse_structured(
            completion.text, Review, lambda raw: Review(summary=raw, rating=0), label="review_code",
        )
        return HelperResult(completion, outcome)

    def refactor_code(
        self,
        code: str,
        language: str = "python",
        goal: str | None = None,
        provider: str | None = None,
    ) -> HelperResult[Refactoring]:
        system, prompt = prompts.refactor_code(code, language, goal)
        completion = self.complete(
            "refactor_code", prompt, system_prompt=system, temperature=0.3, max_tokens=4096, provider=provider,
        )
        outcome = parse_structured(
            completion.text,
            Refactoring,
            lambda raw: Refactoring(refactored_code=strip_fences(raw)),
            label="refactor_code",
        )
        return HelperResult(completion, outcome)

    def generate_tests(
        self,
        code: str,
        language: str = "python",
        framework: str | None = None,
        coverage: str = "comprehensive",
        provider: str | None = None,
    ) -> HelperResult[TestSuite]:
        framework = framework or default_test_framework(language)
        system, prompt = prompts.generate_tests(code, language, framework, coverage)
        completion = self.complete(
            "generate_tests", prompt, system_prompt=system, temperature=0.3, max_tokens=4096, provider=provider,
        )
        outcome = parse_structured(
            completion.text, TestSuite, lambda raw: TestSuite(test_code=strip_fences(raw)), label="generate_tests",
        )
        return HelperResult(completion, outcome)

    def fix_code(
        self,
        code: str,
        issue: str,
        language: str = "python",
        provider: str | None = None,
    ) -> HelperResult[FixResult]:
        system, prompt = prompts.fix_code(code, language, issue)
        completion = self.complete(
            "fix_code", prompt, system_prompt=system, temperature=0.3, max_tokens=4096, provider=provider,
        )
        outcome = parse_structured(
            completion.text, FixResult, lambda raw: FixResult(fixed_code=strip_fences(raw)), label="fix_code",
        )
        return HelperResult(completion, outcome)
