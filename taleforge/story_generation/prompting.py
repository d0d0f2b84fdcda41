"""
Prompt construction utilities for interactive story segments.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Sequence

from .story import Character, Segment, Story

PromptVariant = Literal["opening", "continuation", "ending"]

PLACEHOLDER_THEME = "an adventure"
PLACEHOLDER_SETTING = "a magical place"
PLACEHOLDER_GENRE = "fantasy"
PLACEHOLDER_CHARACTERS = "a brave main character"

ENDING_EXTRA_WORDS = 30
ENDING_WORD_CAP = 200

_SENTENCE_PATTERN = re.compile(r"[^.!?]+[.!?]+[\"'”’]?|[^.!?]+$")
_DIALOGUE_PATTERN = re.compile(r"[\"“][^\"”]*[\"”]")

_GENRE_GUIDANCE: dict[str, tuple[str, str]] = {
    "adventure": (
        "Focus on safe, exciting discoveries and simple problem-solving. Include themes of courage and friendship.",
        "Include exciting challenges, exploration, and character growth. Balance action with learning moments.",
    ),
    "fantasy": (
        "Include gentle magic, friendly magical creatures, and wonder. Keep magic safe and positive.",
        "Incorporate magical elements, mythical creatures, and enchanting places. Balance fantasy with relatable emotions.",
    ),
    "educational": (
        "Weave in simple learning concepts naturally, such as colors, numbers, or letters.",
        "Incorporate age-appropriate science, history, or problem-solving in an engaging way.",
    ),
    "bedtime": (
        "Create a calm, peaceful atmosphere with gentle language and soothing imagery. End with comfort and security.",
        "Create a calm, peaceful atmosphere with gentle language and soothing imagery. End with comfort and security.",
    ),
    "humorous": (
        "Include gentle humor, silly situations, and playful characters.",
        "Use age-appropriate humor, funny situations, and amusing character interactions. Wordplay is welcome.",
    ),
    "mystery": (
        "Create a simple, non-scary mystery. Focus on curiosity and gentle problem-solving.",
        "Include clues and logical problem-solving. Keep suspense engaging but never frightening.",
    ),
    "sci-fi": (
        "Introduce simple technology and space ideas in an accessible way.",
        "Incorporate science fiction elements, technology, and futuristic ideas with educational value.",
    ),
}

_DEFAULT_GENRE_GUIDANCE = (
    "Keep the story simple, positive, and engaging with a clear, kind lesson.",
    "Include character development, positive values, and age-appropriate challenges.",
)

_AGE_SYSTEM_GUIDANCE = {
    "young": "Keep language very simple and focus on friendship, kindness, and everyday wonder.",
    "middle": "Use moderately rich vocabulary, include gentle learning moments, and let characters solve problems.",
    "older": "Use age-appropriate complex vocabulary, explore responsibility and empathy, and build real character arcs.",
}


@dataclass(frozen=True)
class PromptSet:
    """
    Prompts for a single segment request, plus metadata the caller relies on.

    Attributes
    ----------
    system / user:
        Chat messages for the language model.
    image:
        Short scene prompt for an image model, without dialogue or choice text.
    variant:
        ``opening``, ``continuation``, or ``ending``.
    target_words:
        Requested narrative length.
    max_tokens:
        Completion budget for the provider call.
    degraded:
        True when story fields were missing and placeholders were used.
    missing_fields:
        Names of the story fields that were replaced by placeholders.
    """

    system: str
    user: str
    image: str
    variant: PromptVariant
    target_words: int
    max_tokens: int
    choice_count: int = 3
    degraded: bool = False
    missing_fields: tuple[str, ...] = ()

    def messages(self) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.system},
            {"role": "user", "content": self.user},
        ]


def build_prompt(
    story: Story,
    prior_segment: Segment | None = None,
    selected_choice_text: str | None = None,
    characters: Sequence[Character] | None = None,
    *,
    history: Sequence[Segment] = (),
    ending: bool = False,
    choice_count: int = 3,
    context_word_limit: int = 220,
    summary_segments: int = 3,
) -> PromptSet:
    """
    Build the prompt set used to request the next segment of ``story``.

    Never raises for incomplete stories: missing fields are replaced with
    generic placeholders and the result is flagged ``degraded``.
    """
    cast = tuple(characters) if characters is not None else story.characters
    missing: list[str] = []

    genre = story.genre or _missing("genre", PLACEHOLDER_GENRE, missing)
    theme = story.theme or _missing("theme", PLACEHOLDER_THEME, missing)
    setting = story.setting or _missing("setting", PLACEHOLDER_SETTING, missing)
    if cast:
        cast_text = "; ".join(character.describe() for character in cast)
    else:
        cast_text = _missing("characters", PLACEHOLDER_CHARACTERS, missing)

    variant: PromptVariant
    if ending:
        variant = "ending"
    elif prior_segment is not None:
        variant = "continuation"
    else:
        variant = "opening"

    target_words = story.words_per_segment or story.age_bracket.target_words
    if variant == "ending":
        target_words = min(target_words + ENDING_EXTRA_WORDS, ENDING_WORD_CAP)

    age_category = story.age_bracket.category
    young_guidance, older_guidance = _GENRE_GUIDANCE.get(genre.lower(), _DEFAULT_GENRE_GUIDANCE)
    genre_guidance = young_guidance if age_category == "young" else older_guidance

    system_prompt = f"""You are an expert children's story writer who creates engaging, age-appropriate interactive stories with positive messages.
{_AGE_SYSTEM_GUIDANCE[age_category]}

Writing directives:
- Write for readers aged {story.age_bracket.value}. {story.age_bracket.vocabulary}
- Keep every scene safe, kind, and free of frightening peril or mature themes.
- Keep named characters, places, and earlier events consistent.
- Never include author notes, explanations, or meta commentary, and never mention you are an AI.
- Always answer using the exact section layout requested."""

    sections: list[str] = [
        f"Story details:\n" + "\n".join(f"- {line}" for line in story.context_bullets()),
    ]
    if missing:
        sections.append(
            f"Use these where details are missing: theme {theme}, setting {setting}, characters {cast_text}."
        )

    writing_requirements = [
        f"Write about {target_words} words (count carefully).",
        f"The story is {genre}-themed and focuses on {theme} in {setting}.",
        f"Include the main characters: {cast_text}.",
        genre_guidance,
    ]

    if variant == "opening":
        task = "Write the opening segment of this interactive story. Introduce the characters and the setting, then build to a moment where the reader must decide what happens next."
    elif variant == "continuation":
        task = "Write the next segment of this interactive story. Continue directly from the reader's choice, keep continuity with what already happened, and build to a new decision point."
    else:
        task = "Write the FINAL CONCLUSION of this interactive story. Resolve the main problem, give every character a satisfying moment, and make the lesson about the theme clear. This is a definitive ending: offer no further choices."

    if variant != "opening" and prior_segment is not None:
        summary = _summarize_history(history, limit=summary_segments)
        if summary:
            sections.append("Earlier in the story:\n" + "\n".join(f"- {line}" for line in summary))
        sections.append(
            "Most recent segment:\n\"\"\"\n"
            + _tail_words(prior_segment.text, context_word_limit)
            + "\n\"\"\""
        )
    if selected_choice_text:
        sections.append(f"The reader chose: \"{selected_choice_text.strip()}\"")

    requirements_block = "\n".join(f"- {line}" for line in writing_requirements)
    user_prompt = (
        f"{task}\n\n"
        + "\n\n".join(sections)
        + f"\n\nWriting requirements:\n{requirements_block}\n\n"
        + _layout_instructions(variant, target_words, choice_count)
    )

    image_prompt = _build_image_prompt(
        cast=cast,
        setting=setting,
        genre=genre,
        theme=theme,
        prior_segment=prior_segment if variant != "opening" else None,
        ending=variant == "ending",
    )

    return PromptSet(
        system=system_prompt,
        user=user_prompt,
        image=image_prompt,
        variant=variant,
        target_words=target_words,
        max_tokens=story.age_bracket.max_tokens,
        choice_count=choice_count,
        degraded=bool(missing),
        missing_fields=tuple(missing),
    )


def _missing(field_name: str, placeholder: str, missing: list[str]) -> str:
    missing.append(field_name)
    return placeholder


def _layout_instructions(variant: PromptVariant, target_words: int, choice_count: int) -> str:
    if variant == "ending":
        return f"""Respond using exactly this layout:
STORY:
<the concluding segment, about {target_words} words>
THE END
IMAGE:
<one sentence describing the final scene for an illustrator, with no dialogue>"""

    numbered = "\n".join(f"{index}. <choice>" for index in range(1, choice_count + 1))
    return f"""Respond using exactly this layout:
STORY:
<the story segment, about {target_words} words>
CHOICES:
{numbered}
IMAGE:
<one sentence describing the scene for an illustrator, with no dialogue>

Choice rules:
- Offer exactly {choice_count} choices, each 4-8 words, easy for a child to understand.
- Every choice leads the story in a clearly different direction.
- Each choice refers to a character, place, or object from the segment."""


def split_sentences(text: str) -> list[str]:
    return [match.group(0).strip() for match in _SENTENCE_PATTERN.finditer(text or "") if match.group(0).strip()]


def strip_dialogue(text: str) -> str:
    """
    Remove quoted speech and collapse whitespace.
    """
    without_quotes = _DIALOGUE_PATTERN.sub(" ", text or "")
    cleaned = re.sub(r"\s+", " ", without_quotes).strip()
    return re.sub(r"\s+([,.!?])", r"\1", cleaned)


def _tail_words(text: str, limit: int) -> str:
    words = text.split()
    if len(words) <= limit:
        return text.strip()
    return "… " + " ".join(words[-limit:])


def _summarize_history(history: Sequence[Segment], *, limit: int) -> list[str]:
    if limit <= 0:
        return []
    lines: list[str] = []
    for segment in list(history)[-limit:]:
        sentences = split_sentences(segment.text)
        if sentences:
            lines.append(f"Part {segment.position}: {sentences[0]}")
    return lines


def _build_image_prompt(
    *,
    cast: Sequence[Character],
    setting: str,
    genre: str,
    theme: str,
    prior_segment: Segment | None,
    ending: bool,
) -> str:
    names = [character.name for character in cast[:3]]
    if names:
        subject = names[0] if len(names) == 1 else ", ".join(names[:-1]) + f" and {names[-1]}"
    else:
        subject = "a young hero"

    parts = [f"{subject} in {setting}"]
    if prior_segment is not None:
        sentences = split_sentences(strip_dialogue(prior_segment.text))
        if sentences:
            parts.append(sentences[-1].rstrip(".!?"))
    mood = "a joyful, peaceful finale" if ending else f"a {genre} scene about {theme}"
    parts.append(mood)
    return ", ".join(part for part in parts if part)
