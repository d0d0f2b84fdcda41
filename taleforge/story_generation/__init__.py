"""
Story generation utilities: data model, prompts, providers, and output parsing.
"""

from .choice_parser import BOILERPLATE_CHOICES, ChoiceParser, ParseContext, ParsedSegment
from .prompting import PromptSet, build_prompt
from .providers import (
    CircuitBreaker,
    GenerationResult,
    LiteLLMProvider,
    ProviderOrchestrator,
    TextProvider,
    build_default_orchestrator,
)
from .story import (
    AgeBracket,
    Character,
    Choice,
    Segment,
    Story,
    StoryRequest,
    StoryStatus,
)

__all__ = [
    "AgeBracket",
    "Character",
    "Choice",
    "Segment",
    "Story",
    "StoryRequest",
    "StoryStatus",
    "PromptSet",
    "build_prompt",
    "TextProvider",
    "LiteLLMProvider",
    "CircuitBreaker",
    "GenerationResult",
    "ProviderOrchestrator",
    "build_default_orchestrator",
    "ChoiceParser",
    "ParseContext",
    "ParsedSegment",
    "BOILERPLATE_CHOICES",
]
