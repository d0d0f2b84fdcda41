"""
CLI example to play an interactive story end-to-end.

Usage:
    python scripts/run_interactive_story.py \
        --request story_request.yaml \
        --segments 4 \
        --output story_package.yaml
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict

from tqdm.auto import tqdm

# Ensure project root is on the Python path when running as a script.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from taleforge import StoryContinuationController, StoryRequest, build_default_orchestrator
from taleforge.ai_generation import (
    ImageGenerationCoordinator,
    LocalImageStore,
    ReplicateImageGenerator,
)
from taleforge.common import (
    GenerationConfig,
    TaleforgeError,
    load_generation_config,
    load_mapping_file,
    load_provider_configs,
)
from taleforge.pipeline import InMemoryStoryRepository
from taleforge.story_generation import Segment


class ProgressTracker:
    """
    Provides user-friendly command-line progress updates while segments are generated.
    """

    def __init__(self, total_segments: int) -> None:
        self._bar: tqdm | None = tqdm(total=total_segments, desc="Story segments", unit="segment")

    def __call__(self, stage: str, payload: Dict[str, Any]) -> None:
        match stage:
            case "story:created":
                self._write(f"Created draft story '{payload.get('title')}'.")
            case "segment:generating":
                if self._bar is not None:
                    variant = payload.get("variant", "segment")
                    self._bar.set_description(f"Segment {payload.get('position')} ({variant})")
            case "segment:generated":
                self._write(f"  text served by {payload.get('provider_used')}")
            case "segment:stored":
                if payload.get("synthesized_choices"):
                    self._write("  (some choices were synthesized from the story context)")
                if self._bar is not None:
                    self._bar.update(1)
            case "image:queued":
                self._write("  illustration queued")

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    @staticmethod
    def _write(message: str) -> None:
        tqdm.write(message)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Play an interactive children's story.")
    parser.add_argument(
        "--request",
        required=True,
        help="Path to the story request YAML/JSON file.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Optional YAML/JSON file with 'generation' settings and a 'providers' list.",
    )
    parser.add_argument(
        "--user-id",
        default="demo-user",
        help="User id the story is created for.",
    )
    parser.add_argument(
        "--segments",
        type=int,
        default=4,
        help="Number of segments to generate before asking for an ending.",
    )
    parser.add_argument(
        "--interactive",
        action="store_true",
        help="Prompt for each choice instead of always taking the first one.",
    )
    parser.add_argument(
        "--image-dir",
        default="story_images",
        help="Directory where illustrations are stored when Replicate is configured.",
    )
    parser.add_argument(
        "--no-images",
        action="store_true",
        help="Skip illustrations even when REPLICATE_API_TOKEN is set.",
    )
    parser.add_argument(
        "--output",
        default="story_package.yaml",
        help="Output YAML file to store the story, segments, and image jobs.",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    return parser.parse_args()


def build_image_coordinator(
    args: argparse.Namespace,
    repository: InMemoryStoryRepository,
) -> ImageGenerationCoordinator | None:
    if args.no_images or not os.getenv("REPLICATE_API_TOKEN"):
        return None
    return ImageGenerationCoordinator(
        ReplicateImageGenerator(),
        LocalImageStore(args.image_dir),
        repository,
    )


def pick_choice(segment: Segment, interactive: bool) -> str:
    if not interactive:
        return segment.choices[0].id

    for index, choice in enumerate(segment.choices, start=1):
        tqdm.write(f"  {index}. {choice.text}")
    while True:
        answer = input("Your choice: ").strip()
        if answer.isdigit() and 1 <= int(answer) <= len(segment.choices):
            return segment.choices[int(answer) - 1].id
        tqdm.write(f"Please enter a number between 1 and {len(segment.choices)}.")


def show_segment(segment: Segment) -> None:
    tqdm.write(f"\n--- Segment {segment.position} ---\n{segment.text}\n")
    if segment.is_ending:
        tqdm.write("THE END")


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    request = StoryRequest.from_mapping(load_mapping_file(Path(args.request)))
    config = GenerationConfig()
    provider_configs = None
    if args.config:
        config = load_generation_config(args.config)
        provider_configs = load_provider_configs(args.config)

    repository = InMemoryStoryRepository()
    images = build_image_coordinator(args, repository)
    orchestrator = build_default_orchestrator(provider_configs)
    controller = StoryContinuationController(
        orchestrator=orchestrator,
        repository=repository,
        image_coordinator=images,
        config=config,
    )
    tracker = ProgressTracker(total_segments=max(args.segments, 1) + 1)

    try:
        creation = controller.create_story(
            request,
            user_id=args.user_id,
            progress_callback=tracker,
        )
        segment = creation.segment
        show_segment(segment)

        while not segment.is_ending and segment.position < args.segments:
            choice_id = pick_choice(segment, args.interactive)
            segment = controller.continue_story(
                creation.story.id,
                choice_id,
                progress_callback=tracker,
            )
            show_segment(segment)

        if not segment.is_ending:
            segment = controller.end_story(creation.story.id, progress_callback=tracker)
            show_segment(segment)

        if images is not None:
            tqdm.write("Waiting for illustrations...")
            images.drain(timeout=300)
    except TaleforgeError as exc:
        tqdm.write(f"Story generation failed: {exc}")
        return 1
    finally:
        tracker.close()
        orchestrator.close()
        if images is not None:
            images.close()

    package = controller.export_story(creation.story.id)
    output_path = Path(args.output)
    output_path.write_text(package.to_yaml(), encoding="utf-8")
    print(f"Saved story package to {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
