"""Tests for ranked provider fallback, timeouts, and circuit breaking."""

import pytest

from taleforge.common import ChatResult, GenerationConfig, ProviderConfig, ProviderUnavailable
from taleforge.story_generation import LiteLLMProvider, PromptSet, build_default_orchestrator

from fakes import HangingProvider, ScriptedProvider


@pytest.fixture
def prompt_set():
    return PromptSet(
        system="system text",
        user="user text",
        image="image text",
        variant="opening",
        target_words=60,
        max_tokens=500,
    )


def test_primary_provider_serves_when_healthy(make_orchestrator, prompt_set, fast_config):
    primary = ScriptedProvider("primary", default="Once upon a time.")
    secondary = ScriptedProvider("secondary", default="Unused.")

    result = make_orchestrator(primary, secondary).generate(prompt_set, fast_config)

    assert result.text == "Once upon a time."
    assert result.provider_used == "primary"
    assert result.usage == {"total_tokens": 42}
    assert [attempt.provider for attempt in result.attempts] == ["primary"]
    assert secondary.calls == []
    assert primary.calls[0]["timeout"] == fast_config.provider_timeout


def test_falls_back_to_secondary_when_primary_errors(make_orchestrator, prompt_set, fast_config):
    primary = ScriptedProvider("primary", default=RuntimeError("HTTP 503"))
    secondary = ScriptedProvider("secondary", default="A backup story.")

    result = make_orchestrator(primary, secondary).generate(prompt_set, fast_config)

    assert result.provider_used == "secondary"
    assert len(primary.calls) == 1
    first, second = result.attempts
    assert not first.succeeded and "HTTP 503" in first.error
    assert second.succeeded


def test_falls_back_to_secondary_when_primary_times_out(make_orchestrator, prompt_set):
    primary = HangingProvider("primary")
    secondary = ScriptedProvider("secondary", default="Right on time.")
    config = GenerationConfig(provider_timeout=0.05)

    try:
        result = make_orchestrator(primary, secondary).generate(prompt_set, config)
    finally:
        primary.release.set()

    assert result.provider_used == "secondary"
    assert result.text == "Right on time."
    assert "timed out" in result.attempts[0].error


def test_empty_response_counts_as_failure(make_orchestrator, prompt_set, fast_config):
    primary = ScriptedProvider("primary", default="   ")
    secondary = ScriptedProvider("secondary", default="Real text.")

    result = make_orchestrator(primary, secondary).generate(prompt_set, fast_config)

    assert result.provider_used == "secondary"


def test_all_providers_failing_raises_with_every_attempt(make_orchestrator, prompt_set, fast_config):
    primary = ScriptedProvider("primary", default=RuntimeError("primary down"))
    secondary = ScriptedProvider("secondary", default=ValueError("bad body"))

    with pytest.raises(ProviderUnavailable) as excinfo:
        make_orchestrator(primary, secondary).generate(prompt_set, fast_config)

    attempts = excinfo.value.attempts
    assert [attempt.provider for attempt in attempts] == ["primary", "secondary"]
    assert not any(attempt.succeeded for attempt in attempts)
    assert excinfo.value.story_id is None


def test_no_retry_against_the_same_provider(make_orchestrator, prompt_set, fast_config):
    primary = ScriptedProvider("primary", default=RuntimeError("down"))
    secondary = ScriptedProvider("secondary", default=RuntimeError("down"))

    with pytest.raises(ProviderUnavailable):
        make_orchestrator(primary, secondary).generate(prompt_set, fast_config)

    assert len(primary.calls) == 1
    assert len(secondary.calls) == 1


def test_circuit_breaker_skips_failing_provider_until_reset(make_orchestrator, prompt_set, fast_config):
    now = [0.0]
    primary = ScriptedProvider("primary", default=RuntimeError("down"))
    secondary = ScriptedProvider("secondary", default="Backup.")
    orchestrator = make_orchestrator(
        primary,
        secondary,
        failure_threshold=2,
        reset_timeout=30.0,
        clock=lambda: now[0],
    )

    orchestrator.generate(prompt_set, fast_config)
    orchestrator.generate(prompt_set, fast_config)
    assert orchestrator.breaker("primary").state == "open"

    skipped = orchestrator.generate(prompt_set, fast_config)
    assert len(primary.calls) == 2
    assert skipped.attempts[0].skipped
    assert skipped.provider_used == "secondary"

    now[0] = 31.0
    assert orchestrator.breaker("primary").state == "half_open"
    orchestrator.generate(prompt_set, fast_config)
    assert len(primary.calls) == 3


def test_successful_call_closes_the_breaker(make_orchestrator, prompt_set, fast_config):
    primary = ScriptedProvider(
        "primary",
        [RuntimeError("blip"), "Recovered."],
    )
    secondary = ScriptedProvider("secondary", default="Backup.")
    orchestrator = make_orchestrator(primary, secondary, failure_threshold=2)

    orchestrator.generate(prompt_set, fast_config)
    result = orchestrator.generate(prompt_set, fast_config)

    assert result.provider_used == "primary"
    assert orchestrator.breaker("primary").state == "closed"


def test_temperature_override_is_forwarded(make_orchestrator, prompt_set):
    primary = ScriptedProvider("primary", default="Text.")
    config = GenerationConfig(temperature_override=0.2)

    make_orchestrator(primary).generate(prompt_set, config)

    assert primary.calls[0]["temperature"] == 0.2


def test_orchestrator_requires_unique_providers(make_orchestrator):
    with pytest.raises(ValueError):
        make_orchestrator()
    with pytest.raises(ValueError):
        make_orchestrator(ScriptedProvider("same"), ScriptedProvider("same"))


def test_litellm_provider_passes_its_own_settings(prompt_set):
    captured = {}

    def fake_completion(**kwargs):
        captured.update(kwargs)
        return ChatResult(text="Hello", raw=None)

    provider = LiteLLMProvider(
        ProviderConfig(
            name="secondary",
            model="openai/Meta-Llama-3_3-70B-Instruct",
            api_key="token",
            api_base="https://llm.example/v1",
            temperature=0.5,
        ),
        completion_fn=fake_completion,
    )

    result = provider.call(prompt_set, 4.0)

    assert result.text == "Hello"
    assert captured["model"] == "openai/Meta-Llama-3_3-70B-Instruct"
    assert captured["api_base"] == "https://llm.example/v1"
    assert captured["api_key"] == "token"
    assert captured["temperature"] == 0.5
    assert captured["max_tokens"] == prompt_set.max_tokens
    assert captured["timeout"] == 4.0
    assert captured["messages"][0] == {"role": "system", "content": "system text"}

    provider.call(prompt_set, 4.0, temperature=0.9)
    assert captured["temperature"] == 0.9


def test_build_default_orchestrator_ranks_primary_then_secondary(monkeypatch):
    monkeypatch.setenv("TALEFORGE_PRIMARY_MODEL", "gpt-4o-mini")
    monkeypatch.setenv("OVH_AI_ENDPOINTS_ACCESS_TOKEN", "ovh-token")

    orchestrator = build_default_orchestrator(completion_fn=lambda **_: ChatResult(text="x", raw=None))
    try:
        assert orchestrator.provider_names == ("primary", "secondary")
    finally:
        orchestrator.close()
