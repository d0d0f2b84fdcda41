"""
Persistence seam for stories, segments, and illustration jobs.
"""

from __future__ import annotations

import threading
from typing import Protocol

from taleforge.ai_generation.coordinator import ImageJob
from taleforge.common import ConcurrencyConflict, StoryNotFound
from taleforge.story_generation.story import Segment, Story


class StoryRepository(Protocol):
    """
    Storage used by the controller.

    ``append_segment`` is the only multi-record write and must be atomic: the
    new segment, the updated parent (successor link), and the updated story are
    stored together or not at all.
    """

    def save_story(self, story: Story) -> None:
        ...

    def get_story(self, story_id: str) -> Story:
        ...

    def list_segments(self, story_id: str) -> list[Segment]:
        ...

    def get_segment(self, segment_id: str) -> Segment | None:
        ...

    def append_segment(
        self,
        segment: Segment,
        *,
        parent: Segment | None = None,
        story: Story | None = None,
    ) -> None:
        ...

    def save_image_job(self, job: ImageJob) -> None:
        ...

    def get_image_job(self, segment_id: str) -> ImageJob | None:
        ...


class InMemoryStoryRepository:
    """
    Thread-safe, read-after-write consistent repository kept in process memory.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._stories: dict[str, Story] = {}
        self._segments: dict[str, Segment] = {}
        self._story_segments: dict[str, list[str]] = {}
        self._image_jobs: dict[str, ImageJob] = {}

    def save_story(self, story: Story) -> None:
        with self._lock:
            self._stories[story.id] = story
            self._story_segments.setdefault(story.id, [])

    def get_story(self, story_id: str) -> Story:
        with self._lock:
            story = self._stories.get(story_id)
        if story is None:
            raise StoryNotFound(story_id)
        return story

    def list_segments(self, story_id: str) -> list[Segment]:
        with self._lock:
            if story_id not in self._stories:
                raise StoryNotFound(story_id)
            segments = [self._segments[segment_id] for segment_id in self._story_segments[story_id]]
        return sorted(segments, key=lambda segment: segment.position)

    def get_segment(self, segment_id: str) -> Segment | None:
        with self._lock:
            return self._segments.get(segment_id)

    def append_segment(
        self,
        segment: Segment,
        *,
        parent: Segment | None = None,
        story: Story | None = None,
    ) -> None:
        """
        Store ``segment`` together with its updated parent and story.

        Raises
        ------
        ConcurrencyConflict
            When the story already has a segment at this position, or the
            parent already links to a successor.
        """
        with self._lock:
            if segment.story_id not in self._stories:
                raise StoryNotFound(segment.story_id)

            siblings = self._story_segments[segment.story_id]
            if any(self._segments[other].position == segment.position for other in siblings):
                raise ConcurrencyConflict(
                    segment.story_id,
                    f"Story '{segment.story_id}' already has a segment at position {segment.position}.",
                )

            if parent is not None:
                stored_parent = self._segments.get(parent.id)
                if stored_parent is None:
                    raise ValueError(f"Parent segment {parent.id} does not exist.")
                if stored_parent.has_successor:
                    raise ConcurrencyConflict(
                        segment.story_id,
                        f"Segment {parent.id} already continues to another segment.",
                    )
                self._segments[parent.id] = parent

            self._segments[segment.id] = segment
            siblings.append(segment.id)
            if story is not None:
                self._stories[story.id] = story

    def save_image_job(self, job: ImageJob) -> None:
        with self._lock:
            self._image_jobs[job.segment_id] = job

    def get_image_job(self, segment_id: str) -> ImageJob | None:
        with self._lock:
            return self._image_jobs.get(segment_id)

    def list_image_jobs(self, story_id: str) -> list[ImageJob]:
        with self._lock:
            return [
                self._image_jobs[segment_id]
                for segment_id in self._story_segments.get(story_id, [])
                if segment_id in self._image_jobs
            ]
