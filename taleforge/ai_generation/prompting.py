"""
Prompt construction utilities for segment illustrations.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Mapping, Sequence

from taleforge.story_generation.story import AgeBracket, Character, Story

NEGATIVE_PROMPT = (
    "scary, violent, inappropriate, adult content, ugly, blurry, low quality, distorted, nsfw, "
    "watermark, text, logo"
)

DEFAULT_ART_STYLE = "Warm, colorful children's picture-book illustration with soft lighting"

_GENRE_ART_STYLES: dict[str, str] = {
    "fantasy": "Whimsical watercolor fantasy illustration with a soft magical glow",
    "adventure": "Bright, energetic storybook illustration with a sense of wide open discovery",
    "bedtime": "Gentle pastel illustration with cozy moonlit tones and a calm mood",
    "mystery": "Friendly storybook illustration with intriguing but cheerful shadows",
    "humorous": "Playful cartoon illustration with expressive faces and bold colors",
    "educational": "Clear, inviting picture-book illustration with easy-to-read details",
    "sci-fi": "Colorful futuristic storybook illustration with sleek rounded shapes",
}

_SEED_MOD = 2**31 - 1


@dataclass(frozen=True)
class IllustrationPrompt:
    """Container for the positive and negative prompts passed to the image model."""

    positive: str
    negative: str = NEGATIVE_PROMPT


def build_illustration_prompt(
    scene: str,
    *,
    genre: str | None = None,
    age_bracket: AgeBracket | None = None,
    characters: Sequence[Character] = (),
    style_override: str | None = None,
) -> IllustrationPrompt:
    """
    Build the prompt used to illustrate one story segment.

    Parameters
    ----------
    scene:
        Short visual description of the segment, free of dialogue.
    genre:
        Story genre; selects the art direction when no override is given.
    age_bracket:
        Reader ages, used to keep the picture simple for the youngest readers.
    characters:
        Recurring characters restated for visual continuity across segments.
    style_override:
        Replaces the genre-derived art direction.
    """
    if not scene or not scene.strip():
        raise ValueError("scene must be a non-empty string.")

    style = style_override.strip() if style_override else _GENRE_ART_STYLES.get(
        (genre or "").strip().lower(), DEFAULT_ART_STYLE
    )

    sections = [
        f"{style}.",
        _format_bullet_section("SCENE", [scene.strip()]),
    ]

    cast_lines = _normalize_note_input([character.describe() for character in characters])
    if cast_lines:
        sections.append(_format_bullet_section("CHARACTERS (keep consistent)", cast_lines))

    composition = ["Child-friendly, safe, and wholesome", "No words or letters in the image"]
    if age_bracket is not None and age_bracket.category == "young":
        composition.insert(0, "Simple composition with large, clear shapes")
    sections.append(_format_bullet_section("COMPOSITION", composition))

    return IllustrationPrompt(positive="\n\n".join(sections))


def derive_story_seed(story: Story, position: int = 1) -> int:
    """
    Derive a deterministic per-segment seed so illustrations of a story stay
    visually consistent.
    """
    hasher = hashlib.blake2b(digest_size=8)
    hasher.update(story.id.encode("utf-8"))
    for value in (story.genre, story.setting, *story.character_names):
        if value:
            hasher.update(str(value).strip().lower().encode("utf-8"))

    base = int.from_bytes(hasher.digest(), "big") % _SEED_MOD
    seed = (base + max(position - 1, 0)) % _SEED_MOD
    return seed or 1


def _normalize_note_input(value: str | Sequence[str] | Mapping[str, str] | None) -> list[str]:
    if value is None:
        return []

    if isinstance(value, Mapping):
        items = [f"{key}: {details}" for key, details in value.items()]
    elif isinstance(value, str):
        items = [value]
    else:
        items = [str(item) for item in value]

    lines: list[str] = []
    for item in items:
        for raw in item.replace("\r", "\n").split("\n"):
            cleaned = raw.strip(" \t-•")
            if cleaned:
                lines.append(cleaned)
    return lines


def _format_bullet_section(title: str, lines: Sequence[str]) -> str:
    bullet_block = "\n".join(f"- {line}" for line in lines if line.strip())
    return f"{title}\n{bullet_block}"
