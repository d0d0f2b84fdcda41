"""
Serializable snapshot of a story, its segments, and their illustrations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from taleforge.ai_generation.coordinator import ImageJob
from taleforge.story_generation.story import Segment, Story


@dataclass
class StoryPackage:
    """Aggregated output of an interactive story session."""

    story: Story
    segments: list[Segment]
    image_jobs: list[ImageJob] = field(default_factory=list)

    def image_for(self, segment_id: str) -> ImageJob | None:
        for job in self.image_jobs:
            if job.segment_id == segment_id:
                return job
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "story": self.story.as_dict(),
            "segments": [segment.as_dict() for segment in self.segments],
            "image_jobs": [job.as_dict() for job in self.image_jobs],
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, allow_unicode=True)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StoryPackage":
        if "story" not in payload:
            raise ValueError("Story package payload must include 'story'.")
        if "segments" not in payload:
            raise ValueError("Story package payload must include 'segments'.")

        story = Story.from_dict(payload["story"])
        segments = sorted(
            (Segment.from_dict(entry) for entry in payload.get("segments") or []),
            key=lambda segment: segment.position,
        )
        for expected, segment in enumerate(segments, start=1):
            if segment.position != expected:
                raise ValueError("Segment positions must be contiguous starting from 1.")

        image_jobs = [ImageJob.from_dict(entry) for entry in payload.get("image_jobs") or []]
        return cls(story=story, segments=segments, image_jobs=image_jobs)

    @classmethod
    def from_yaml(cls, source: str | Path) -> "StoryPackage":
        path = Path(source)
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        if not isinstance(data, Mapping):
            raise ValueError("Story package YAML must deserialize to a mapping.")
        return cls.from_dict(data)
