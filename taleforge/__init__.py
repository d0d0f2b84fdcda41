"""
Taleforge package exposing interactive story generation, illustration, and pipeline tooling.
"""

from .common import GenerationConfig, ProviderConfig
from .pipeline import (
    InMemoryCreditLedger,
    InMemoryStoryRepository,
    StoryContinuationController,
    StoryCreation,
    StoryPackage,
)
from .story_generation import StoryRequest, build_default_orchestrator

__all__ = [
    "GenerationConfig",
    "ProviderConfig",
    "InMemoryCreditLedger",
    "InMemoryStoryRepository",
    "StoryContinuationController",
    "StoryCreation",
    "StoryPackage",
    "StoryRequest",
    "build_default_orchestrator",
]
