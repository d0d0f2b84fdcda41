"""Shared fixtures for the Taleforge test-suite."""

from __future__ import annotations

from typing import Any

import pytest

from taleforge.common import GenerationConfig
from taleforge.story_generation import ProviderOrchestrator

from fakes import SyncExecutor


@pytest.fixture
def story_request() -> dict[str, Any]:
    return {
        "title": "Mira's Forest Friend",
        "genre": "fantasy",
        "age_bracket": "4-6",
        "theme": "friendship",
        "setting": "the Whispering Woods",
        "characters": [
            {"name": "Mira", "role": "a curious little fox", "traits": ["kind", "brave"]},
        ],
    }


@pytest.fixture
def sync_executor() -> SyncExecutor:
    return SyncExecutor()


@pytest.fixture
def fast_config() -> GenerationConfig:
    return GenerationConfig(provider_timeout=2.0)


@pytest.fixture
def make_orchestrator():
    created: list[ProviderOrchestrator] = []

    def factory(*providers, **kwargs) -> ProviderOrchestrator:
        orchestrator = ProviderOrchestrator(list(providers), **kwargs)
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        orchestrator.close()
