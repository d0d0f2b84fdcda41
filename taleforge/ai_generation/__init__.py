"""
Illustration generation for story segments.
"""

from .coordinator import (
    ImageGenerationCoordinator,
    ImageGenerator,
    ImageJob,
    ImageJobStatus,
    ImageJobStore,
)
from .prompting import IllustrationPrompt, build_illustration_prompt, derive_story_seed
from .replicate_service import ReplicateImageGenerator, normalize_image_outputs
from .storage import ImageStore, LocalImageStore

__all__ = [
    "IllustrationPrompt",
    "build_illustration_prompt",
    "derive_story_seed",
    "ReplicateImageGenerator",
    "normalize_image_outputs",
    "ImageStore",
    "LocalImageStore",
    "ImageGenerator",
    "ImageGenerationCoordinator",
    "ImageJob",
    "ImageJobStatus",
    "ImageJobStore",
]
