"""
Error taxonomy shared by the story engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


class TaleforgeError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(TaleforgeError):
    """
    A request is missing fields or refers to something that cannot be used.

    Raised before any provider call is made.
    """

    def __init__(self, message: str, *, errors: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.errors: tuple[str, ...] = tuple(errors) or (message,)


class StoryNotFound(ValidationError):
    def __init__(self, story_id: str) -> None:
        super().__init__(f"Story '{story_id}' does not exist.")
        self.story_id = story_id


class InsufficientCredits(TaleforgeError):
    def __init__(self, user_id: str, story_id: str, estimated_cost: int) -> None:
        super().__init__(
            f"User '{user_id}' is not authorized to spend {estimated_cost} credit(s) "
            f"on story '{story_id}'."
        )
        self.user_id = user_id
        self.story_id = story_id
        self.estimated_cost = estimated_cost


@dataclass(frozen=True)
class ProviderAttempt:
    """Outcome of calling a single text provider."""

    provider: str
    succeeded: bool
    elapsed: float
    error: str | None = None
    skipped: bool = False


class ProviderUnavailable(TaleforgeError):
    """
    Every ranked text provider failed; no state was mutated.
    """

    def __init__(
        self,
        attempts: Sequence[ProviderAttempt],
        *,
        story_id: str | None = None,
    ) -> None:
        summary = "; ".join(
            f"{attempt.provider}: {attempt.error or 'failed'}" for attempt in attempts
        )
        super().__init__(
            "All story providers failed" + (f" ({summary})." if summary else ".")
        )
        self.attempts: tuple[ProviderAttempt, ...] = tuple(attempts)
        self.story_id = story_id


class ParseFailure(TaleforgeError):
    """
    The model output contained no usable narrative text; no state was mutated.

    For a creation, ``story_id`` names the draft story left for a retry.
    """

    def __init__(
        self,
        message: str,
        *,
        raw_text: str = "",
        story_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.raw_text = raw_text
        self.story_id = story_id


class ConcurrencyConflict(TaleforgeError):
    """Another generation for the same story is in flight or already won."""

    def __init__(self, story_id: str, message: str | None = None) -> None:
        super().__init__(
            message
            or f"Another generation is already in progress for story '{story_id}'. Retry shortly."
        )
        self.story_id = story_id


class ImageJobFailure(TaleforgeError):
    """
    Illustration problems. Recorded on the image job and surfaced only through
    status polling or explicit image operations, never from story generation.
    """

    def __init__(self, segment_id: str, message: str) -> None:
        super().__init__(message)
        self.segment_id = segment_id
