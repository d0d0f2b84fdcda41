"""
Ranked text providers with per-attempt timeouts and automatic fallback.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Mapping, Protocol, Sequence

from taleforge.common import (
    ChatResult,
    CompletionCallable,
    GenerationConfig,
    ProviderAttempt,
    ProviderConfig,
    ProviderUnavailable,
    call_chat_completion,
    default_provider_configs,
)

from .prompting import PromptSet

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_RESET_TIMEOUT = 60.0


class TextProvider(Protocol):
    """
    Strategy object for one ranked language-model backend.
    """

    name: str

    def call(
        self,
        prompt_set: PromptSet,
        timeout: float,
        *,
        temperature: float | None = None,
    ) -> ChatResult:
        ...


class LiteLLMProvider:
    """
    Text provider backed by LiteLLM's ``completion`` API.
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        completion_fn: CompletionCallable | None = None,
    ) -> None:
        self._config = config
        self._completion_fn: CompletionCallable = completion_fn or call_chat_completion

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def model(self) -> str:
        """Return the model identifier in use."""
        return self._config.model

    def call(
        self,
        prompt_set: PromptSet,
        timeout: float,
        *,
        temperature: float | None = None,
    ) -> ChatResult:
        return self._completion_fn(
            model=self._config.model,
            messages=prompt_set.messages(),
            temperature=temperature if temperature is not None else self._config.temperature,
            max_tokens=self._config.max_tokens or prompt_set.max_tokens,
            api_key=self._config.api_key,
            api_base=self._config.api_base,
            timeout=timeout,
        )


@dataclass(frozen=True)
class GenerationResult:
    text: str
    provider_used: str
    attempts: tuple[ProviderAttempt, ...] = ()
    usage: Mapping[str, int] = field(default_factory=dict)


class CircuitBreaker:
    """
    Consecutive-failure breaker guarding a single provider.

    After ``failure_threshold`` failures in a row the breaker opens and the
    provider is skipped until ``reset_timeout`` seconds have passed. The next
    call is then let through; success closes the breaker, failure re-opens it.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout: float = DEFAULT_RESET_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1.")
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            if self._opened_at is None:
                return "closed"
            if self._clock() - self._opened_at >= self._reset_timeout:
                return "half_open"
            return "open"

    def allow(self) -> bool:
        return self.state != "open"

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._failures >= self._failure_threshold:
                self._opened_at = self._clock()


class ProviderOrchestrator:
    """
    Try ranked providers in order until one returns usable text.

    Each attempt runs on a worker thread and is abandoned once the configured
    per-attempt timeout passes, so a provider ignoring its own timeout cannot
    stall the request. There is no backoff and no retry against the same
    provider within a request.
    """

    def __init__(
        self,
        providers: Sequence[TextProvider],
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout: float = DEFAULT_RESET_TIMEOUT,
        max_workers: int = 8,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not providers:
            raise ValueError("At least one text provider is required.")

        names = [provider.name for provider in providers]
        if len(set(names)) != len(names):
            raise ValueError(f"Provider names must be unique, got {names}.")

        self._providers = tuple(providers)
        self._breakers = {
            provider.name: CircuitBreaker(
                failure_threshold=failure_threshold,
                reset_timeout=reset_timeout,
                clock=clock,
            )
            for provider in providers
        }
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="taleforge-provider",
        )

    @property
    def provider_names(self) -> tuple[str, ...]:
        return tuple(provider.name for provider in self._providers)

    def breaker(self, name: str) -> CircuitBreaker:
        return self._breakers[name]

    def generate(
        self,
        prompt_set: PromptSet,
        config: GenerationConfig | None = None,
    ) -> GenerationResult:
        """
        Return text from the first provider that succeeds.

        Raises
        ------
        ProviderUnavailable
            When every provider failed, timed out, or was skipped by its breaker.
        """
        config = config or GenerationConfig()
        attempts: list[ProviderAttempt] = []

        for provider in self._providers:
            breaker = self._breakers[provider.name]
            if not breaker.allow():
                logger.warning("Skipping provider %s: circuit open.", provider.name)
                attempts.append(
                    ProviderAttempt(
                        provider=provider.name,
                        succeeded=False,
                        elapsed=0.0,
                        error="circuit open",
                        skipped=True,
                    )
                )
                continue

            started = time.perf_counter()
            future = self._executor.submit(
                provider.call,
                prompt_set,
                config.provider_timeout,
                temperature=config.temperature_override,
            )
            try:
                result = future.result(timeout=config.provider_timeout)
                text = (result.text or "").strip() if result is not None else ""
                if not text:
                    raise ValueError("Provider returned an empty response.")
            except FuturesTimeoutError:
                future.cancel()
                error = f"timed out after {config.provider_timeout:g}s"
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
            else:
                elapsed = time.perf_counter() - started
                breaker.record_success()
                attempts.append(
                    ProviderAttempt(provider=provider.name, succeeded=True, elapsed=elapsed)
                )
                logger.info(
                    "Provider %s produced %d characters in %.2fs.",
                    provider.name,
                    len(text),
                    elapsed,
                )
                return GenerationResult(
                    text=text,
                    provider_used=provider.name,
                    attempts=tuple(attempts),
                    usage=dict(result.usage or {}),
                )

            elapsed = time.perf_counter() - started
            breaker.record_failure()
            attempts.append(
                ProviderAttempt(
                    provider=provider.name,
                    succeeded=False,
                    elapsed=elapsed,
                    error=error,
                )
            )
            logger.warning("Provider %s failed (%s); trying next provider.", provider.name, error)

        logger.error("All %d story providers failed.", len(self._providers))
        raise ProviderUnavailable(attempts)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "ProviderOrchestrator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def build_default_orchestrator(
    configs: Sequence[ProviderConfig] | None = None,
    *,
    completion_fn: CompletionCallable | None = None,
    **orchestrator_kwargs: object,
) -> ProviderOrchestrator:
    """
    Build an orchestrator over LiteLLM providers, ranked as given.

    Uses :func:`default_provider_configs` (primary, then secondary) when no
    configuration is supplied.
    """
    provider_configs = list(configs) if configs else default_provider_configs()
    providers = [
        LiteLLMProvider(provider_config, completion_fn=completion_fn)
        for provider_config in provider_configs
    ]
    return ProviderOrchestrator(providers, **orchestrator_kwargs)  # type: ignore[arg-type]
