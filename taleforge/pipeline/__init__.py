"""
Story lifecycle orchestration: controller, persistence, credits, and export.
"""

from .billing import CreditLedger, InMemoryCreditLedger, UnlimitedCredits
from .controller import ProgressCallback, StoryContinuationController, StoryCreation
from .export import StoryPackage
from .locks import StoryLockRegistry
from .repository import InMemoryStoryRepository, StoryRepository

__all__ = [
    "CreditLedger",
    "InMemoryCreditLedger",
    "UnlimitedCredits",
    "ProgressCallback",
    "StoryContinuationController",
    "StoryCreation",
    "StoryPackage",
    "StoryLockRegistry",
    "InMemoryStoryRepository",
    "StoryRepository",
]
