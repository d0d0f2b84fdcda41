"""
Common utilities shared across Taleforge modules.
"""

from .config import (
    GenerationConfig,
    ProviderConfig,
    default_provider_configs,
    load_generation_config,
    load_mapping_file,
    load_provider_configs,
)
from .errors import (
    ConcurrencyConflict,
    ImageJobFailure,
    InsufficientCredits,
    ParseFailure,
    ProviderAttempt,
    ProviderUnavailable,
    StoryNotFound,
    TaleforgeError,
    ValidationError,
)
from .llm import ChatResult, CompletionCallable, MalformedResponseError, call_chat_completion

__all__ = [
    "ChatResult",
    "CompletionCallable",
    "MalformedResponseError",
    "call_chat_completion",
    "GenerationConfig",
    "ProviderConfig",
    "default_provider_configs",
    "load_generation_config",
    "load_mapping_file",
    "load_provider_configs",
    "TaleforgeError",
    "ValidationError",
    "StoryNotFound",
    "InsufficientCredits",
    "ProviderAttempt",
    "ProviderUnavailable",
    "ParseFailure",
    "ConcurrencyConflict",
    "ImageJobFailure",
]
