"""
Create, continue, and end interactive stories one segment at a time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from taleforge.ai_generation import (
    ImageGenerationCoordinator,
    ImageJob,
    ImageJobStatus,
    build_illustration_prompt,
    derive_story_seed,
)
from taleforge.common import (
    ConcurrencyConflict,
    GenerationConfig,
    ImageJobFailure,
    InsufficientCredits,
    ParseFailure,
    ProviderUnavailable,
    ValidationError,
)
from taleforge.story_generation import (
    ChoiceParser,
    ParseContext,
    ParsedSegment,
    PromptSet,
    ProviderOrchestrator,
    Segment,
    Story,
    StoryRequest,
    StoryStatus,
    build_prompt,
)
from taleforge.story_generation.providers import GenerationResult
from taleforge.story_generation.story import Choice, new_id

from .billing import CreditLedger, UnlimitedCredits
from .export import StoryPackage
from .locks import StoryLockRegistry
from .repository import InMemoryStoryRepository, StoryRepository

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, dict[str, Any]], None]


@dataclass(frozen=True)
class StoryCreation:
    story: Story
    segment: Segment


class StoryContinuationController:
    """
    Entry point for every caller-facing story operation.

    Each generation authorizes credits, builds a prompt, asks the ranked
    providers for text, parses it, and stores the new segment in one atomic
    write. Nothing is written before a parsed segment exists, so a failed
    generation leaves the story exactly as it was and can simply be retried.
    The illustration is queued afterwards and never affects the segment.
    """

    def __init__(
        self,
        *,
        orchestrator: ProviderOrchestrator,
        repository: StoryRepository | None = None,
        credits: CreditLedger | None = None,
        image_coordinator: ImageGenerationCoordinator | None = None,
        parser: ChoiceParser | None = None,
        config: GenerationConfig | None = None,
        locks: StoryLockRegistry | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._repository: StoryRepository = repository or InMemoryStoryRepository()
        self._credits: CreditLedger = credits or UnlimitedCredits()
        self._images = image_coordinator
        self._parser = parser or ChoiceParser()
        self._config = config or GenerationConfig()
        self._locks = locks or StoryLockRegistry()

    @property
    def repository(self) -> StoryRepository:
        return self._repository

    def create_story(
        self,
        request: StoryRequest | Mapping[str, Any],
        *,
        user_id: str,
        config: GenerationConfig | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> StoryCreation:
        """
        Validate ``request``, store a draft story, and generate its first segment.

        Raises
        ------
        ValidationError
            When the request or user id is unusable. Nothing is stored.
        InsufficientCredits
            When the credit ledger refuses the segment. Nothing is stored.
        ProviderUnavailable, ParseFailure
            When every provider failed or the output held no story. The draft
            story remains and its id is carried on the error so
            :meth:`start_story` can retry it.
        """
        if not isinstance(request, StoryRequest):
            request = StoryRequest.from_mapping(request)
        if not user_id or not str(user_id).strip():
            raise ValidationError("A user id is required to create a story.")

        config = config or self._config
        story = Story.create(request, user_id=str(user_id).strip())
        self._authorize(story, config)

        self._repository.save_story(story)
        logger.info("Created draft story %s (%s) for user %s.", story.id, story.title, story.user_id)
        self._notify(progress_callback, "story:created", story_id=story.id, title=story.title)

        with self._locks.hold(story.id):
            segment = self._generate_opening(story, config, progress_callback)
        return StoryCreation(story=self._repository.get_story(story.id), segment=segment)

    def start_story(
        self,
        story_id: str,
        *,
        config: GenerationConfig | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> StoryCreation:
        """
        Generate the first segment of a draft story, e.g. after a failed creation.
        """
        config = config or self._config
        with self._locks.hold(story_id):
            story = self._repository.get_story(story_id)
            if story.status is not StoryStatus.DRAFT:
                raise ValidationError(
                    f"Story '{story_id}' has already started ({story.status.value})."
                )
            self._authorize(story, config)
            segment = self._generate_opening(story, config, progress_callback)
        return StoryCreation(story=self._repository.get_story(story_id), segment=segment)

    def continue_story(
        self,
        story_id: str,
        choice_id: str,
        *,
        config: GenerationConfig | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> Segment:
        """
        Generate the segment that follows ``choice_id`` on the story's open segment.

        Raises
        ------
        ValidationError
            When the story is not in progress or the choice does not belong to
            the story.
        ConcurrencyConflict
            When another generation for the story is in flight, or the segment
            holding the choice has already been continued.
        """
        config = config or self._config
        with self._locks.hold(story_id):
            story, segments = self._load_in_progress(story_id)
            open_segment = segments[-1]
            owner = next((segment for segment in segments if segment.choice(choice_id)), None)
            if owner is None:
                raise ValidationError(
                    f"Choice '{choice_id}' does not belong to story '{story_id}'."
                )
            if owner.id != open_segment.id or owner.has_successor:
                raise ConcurrencyConflict(
                    story_id,
                    f"Segment {owner.id} has already been continued; reload the story.",
                )
            choice = open_segment.choice(choice_id)

            self._authorize(story, config)
            position = open_segment.position + 1
            context = ParseContext.for_story(story, position=position, config=config)

            prompt = build_prompt(
                story,
                open_segment,
                choice.text,
                history=segments[:-1],
                ending=context.reached_max_segments,
                choice_count=config.choice_count,
                context_word_limit=config.context_word_limit,
                summary_segments=config.summary_segments,
            )
            return self._generate_segment(
                story,
                prompt,
                position=position,
                config=config,
                parent=open_segment,
                choice=choice,
                progress_callback=progress_callback,
            )

    def end_story(
        self,
        story_id: str,
        *,
        config: GenerationConfig | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> Segment:
        """
        Generate a concluding segment and mark the story completed.
        """
        config = config or self._config
        with self._locks.hold(story_id):
            story, segments = self._load_in_progress(story_id)
            last_segment = segments[-1]
            self._authorize(story, config)

            prompt = build_prompt(
                story,
                last_segment,
                history=segments[:-1],
                ending=True,
                choice_count=config.choice_count,
                context_word_limit=config.context_word_limit,
                summary_segments=config.summary_segments,
            )
            return self._generate_segment(
                story,
                prompt,
                position=last_segment.position + 1,
                config=config,
                force_ending=True,
                progress_callback=progress_callback,
            )

    def get_story(self, story_id: str) -> Story:
        return self._repository.get_story(story_id)

    def list_segments(self, story_id: str) -> list[Segment]:
        return self._repository.list_segments(story_id)

    def get_image_status(self, segment_id: str) -> ImageJob:
        self._require_segment(segment_id)
        if self._images is None:
            return ImageJob.none(segment_id)
        return self._images.get_status(segment_id)

    def retry_image(self, segment_id: str) -> ImageJob:
        self._require_segment(segment_id)
        if self._images is None:
            raise ImageJobFailure(segment_id, "Illustrations are not configured.")
        return self._images.retry(segment_id)

    def export_story(self, story_id: str) -> StoryPackage:
        story = self._repository.get_story(story_id)
        segments = self._repository.list_segments(story_id)
        jobs: list[ImageJob] = []
        if self._images is not None:
            for segment in segments:
                job = self._images.get_status(segment.id)
                if job.status is not ImageJobStatus.NONE:
                    jobs.append(job)
        return StoryPackage(story=story, segments=segments, image_jobs=jobs)

    def _generate_opening(
        self,
        story: Story,
        config: GenerationConfig,
        progress_callback: ProgressCallback | None,
    ) -> Segment:
        context = ParseContext.for_story(story, position=1, config=config)
        prompt = build_prompt(
            story,
            ending=context.reached_max_segments,
            choice_count=config.choice_count,
            context_word_limit=config.context_word_limit,
            summary_segments=config.summary_segments,
        )
        if prompt.degraded:
            logger.warning(
                "Story %s is missing %s; using placeholders.",
                story.id,
                ", ".join(prompt.missing_fields),
            )

        try:
            return self._generate_segment(
                story,
                prompt,
                position=1,
                config=config,
                progress_callback=progress_callback,
            )
        except ProviderUnavailable as exc:
            raise ProviderUnavailable(exc.attempts, story_id=story.id) from exc
        except ParseFailure as exc:
            raise ParseFailure(str(exc), raw_text=exc.raw_text, story_id=story.id) from exc

    def _generate_segment(
        self,
        story: Story,
        prompt: PromptSet,
        *,
        position: int,
        config: GenerationConfig,
        parent: Segment | None = None,
        choice: Choice | None = None,
        force_ending: bool = False,
        progress_callback: ProgressCallback | None = None,
    ) -> Segment:
        self._notify(
            progress_callback,
            "segment:generating",
            story_id=story.id,
            position=position,
            variant=prompt.variant,
        )
        result: GenerationResult = self._orchestrator.generate(prompt, config)
        self._notify(
            progress_callback,
            "segment:generated",
            story_id=story.id,
            position=position,
            provider_used=result.provider_used,
        )

        context = ParseContext.for_story(
            story,
            position=position,
            config=config,
            force_ending=force_ending,
            fallback_image_prompt=prompt.image,
        )
        parsed = self._parser.parse(result.text, context)

        segment = self._build_segment(story, position, parsed, result, config)
        updated_story = story.with_status(
            StoryStatus.COMPLETED if segment.is_ending else StoryStatus.IN_PROGRESS
        )
        updated_parent = (
            parent.with_successor(choice.id, segment.id)
            if parent is not None and choice is not None
            else None
        )
        self._repository.append_segment(segment, parent=updated_parent, story=updated_story)
        logger.info(
            "Stored segment %d of story %s (%d words, %d choices, ending=%s, provider=%s).",
            position,
            story.id,
            segment.word_count,
            len(segment.choices),
            segment.is_ending,
            result.provider_used,
        )
        self._notify(
            progress_callback,
            "segment:stored",
            story_id=story.id,
            segment_id=segment.id,
            position=position,
            is_ending=segment.is_ending,
            synthesized_choices=parsed.synthesized,
        )

        self._charge(story, config)
        self._queue_illustration(story, segment, progress_callback)
        return segment

    def _build_segment(
        self,
        story: Story,
        position: int,
        parsed: ParsedSegment,
        result: GenerationResult,
        config: GenerationConfig,
    ) -> Segment:
        choices = tuple(
            Choice(id=new_id(), text=text) for text in parsed.choices
        )
        wants_image = self._images is not None and config.images_enabled and bool(parsed.image_prompt)
        return Segment(
            id=new_id(),
            story_id=story.id,
            position=position,
            text=parsed.narrative,
            choices=choices,
            is_ending=parsed.is_ending,
            image_prompt=parsed.image_prompt,
            image_job_id=new_id() if wants_image else None,
            provider_used=result.provider_used,
        )

    def _queue_illustration(
        self,
        story: Story,
        segment: Segment,
        progress_callback: ProgressCallback | None,
    ) -> None:
        if self._images is None or segment.image_job_id is None:
            return

        try:
            prompt = build_illustration_prompt(
                segment.image_prompt,
                genre=story.genre,
                age_bracket=story.age_bracket,
                characters=story.characters,
            )
            self._images.enqueue(
                segment.id,
                prompt,
                job_id=segment.image_job_id,
                seed=derive_story_seed(story, segment.position),
            )
        except Exception:
            logger.exception("Could not queue the illustration for segment %s.", segment.id)
            return
        self._notify(progress_callback, "image:queued", segment_id=segment.id)

    def _load_in_progress(self, story_id: str) -> tuple[Story, list[Segment]]:
        story = self._repository.get_story(story_id)
        if story.status is StoryStatus.DRAFT:
            raise ValidationError(f"Story '{story_id}' has not started yet.")
        if story.status is StoryStatus.COMPLETED:
            raise ValidationError(f"Story '{story_id}' is already completed.")

        segments = self._repository.list_segments(story_id)
        if not segments:
            raise ValidationError(f"Story '{story_id}' has no segments to continue.")
        if segments[-1].is_ending:
            raise ValidationError(f"Story '{story_id}' already ended.")
        return story, segments

    def _require_segment(self, segment_id: str) -> Segment:
        segment = self._repository.get_segment(segment_id)
        if segment is None:
            raise ValidationError(f"Segment '{segment_id}' does not exist.")
        return segment

    def _authorize(self, story: Story, config: GenerationConfig) -> None:
        if not self._credits.authorize(story.user_id, story.id, config.segment_cost):
            raise InsufficientCredits(story.user_id, story.id, config.segment_cost)

    def _charge(self, story: Story, config: GenerationConfig) -> None:
        try:
            self._credits.charge(story.user_id, story.id, config.segment_cost)
        except Exception:
            logger.exception(
                "Charging %d credit(s) to user %s for story %s failed.",
                config.segment_cost,
                story.user_id,
                story.id,
            )

    @staticmethod
    def _notify(
        callback: ProgressCallback | None,
        stage: str,
        **payload: Any,
    ) -> None:
        if callback is not None:
            callback(stage, payload)
