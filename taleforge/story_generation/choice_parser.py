"""
Turn raw model output into narrative text, reader choices, and an image prompt.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from taleforge.common import GenerationConfig, ParseFailure

from .prompting import split_sentences, strip_dialogue
from .story import Story

logger = logging.getLogger(__name__)

BOILERPLATE_CHOICES = frozenset(
    {
        "continue the adventure",
        "look around carefully",
        "make a thoughtful choice",
        "continue the story",
        "continue exploring",
        "what happens next",
        "keep going",
        "go on",
    }
)

MIN_CHOICE_CHARS = 6
MAX_CHOICE_CHARS = 120
IMAGE_PROMPT_WORD_LIMIT = 40

_MARKER_PATTERN = re.compile(
    r"^[ \t]*[*_#]*[ \t]*(STORY|NARRATIVE|CHOICES|OPTIONS|IMAGE(?:[ _]PROMPT)?)[ \t]*[*_]*[ \t]*:[ \t]*[*_]*",
    re.IGNORECASE | re.MULTILINE,
)
_END_LINE_PATTERN = re.compile(r"^[ \t]*[*_#]*[ \t]*the end[ \t]*[.!]*[ \t]*[*_]*[ \t]*$", re.IGNORECASE | re.MULTILINE)
_END_TAG_PATTERN = re.compile(r"\[\s*end\s*\]", re.IGNORECASE)
_LIST_ITEM_PATTERN = re.compile(r"^\s*(?:\d+\s*[.):]|[A-Da-d]\s*[.):]|[-*•+])\s+(.+?)\s*$")
_LIST_HEADER_PATTERN = re.compile(r"^\s*[*_]*\s*(?:choices|options|what will you do\??)\s*[*_]*\s*:?\s*$", re.IGNORECASE)
_NUMBERING_PATTERN = re.compile(r"^\s*(?:\d+\s*[.):]|[A-Da-d]\s*[.):]\s|[-*•+.])\s*")
_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_SECTION_KEYS = {
    "story": "story",
    "narrative": "story",
    "choices": "choices",
    "options": "choices",
}

_SCENE_KEYWORD_CHOICES: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (("door", "entrance", "gate"), ("Open the door and peek inside", "Look for another way in", "Knock and wait to listen")),
    (("magic", "spell", "wand"), ("Try the magic very gently", "Ask how the magic works", "Save the magic for later")),
    (("forest", "woods", "trees"), ("Follow the winding forest path", "Look for hidden trails nearby", "Climb a tree to look around")),
    (("castle", "tower"), ("Explore the castle halls", "Find a secret castle entrance", "Climb up to the tall tower")),
    (("dragon", "creature", "monster"), ("Say hello to the creature", "Offer the creature a snack", "Watch the creature from afar")),
    (("treasure", "chest"), ("Open the treasure chest", "Check the chest for clues", "Share the treasure with friends")),
    (("friend", "friendship"), ("Help a friend right away", "Invite everyone to work together", "Ask a friend for an idea")),
    (("scared", "afraid", "nervous"), ("Take a deep brave breath", "Hold a friend's hand tightly", "Sing a song to feel brave")),
    (("lost", "confused"), ("Look for clues along the way", "Ask someone kind for directions", "Retrace the steps back home")),
    (("journey", "adventure", "quest"), ("Pack a bag for the journey", "Draw a map of the path", "Choose the road less traveled")),
)

_GENERIC_CHOICES = (
    "Try a brand new idea",
    "Ask someone nearby for help",
    "Stop and think of a plan",
)

_SETTING_TEMPLATES = (
    "Explore deeper into {anchor}",
    "Search {anchor} for a hidden path",
    "Find a cozy spot in {anchor}",
)
_CHARACTER_TEMPLATES = (
    "Ask {anchor} for help",
    "Follow {anchor} to see what happens",
    "Share a secret plan with {anchor}",
)
_CHARACTER_SETTING_TEMPLATES = (
    "Ask {anchor} to lead the way through {setting}",
    "Follow {anchor} across {setting}",
    "Look for {anchor} somewhere in {setting}",
)
_THEME_TEMPLATES = (
    "Show {anchor} to someone new",
    "Use {anchor} to solve the problem",
    "Talk together about {anchor}",
)
_THEME_SETTING_TEMPLATES = (
    "Look for {anchor} in {setting}",
    "Bring {anchor} to everyone in {setting}",
    "Use {anchor} to fix a problem in {setting}",
)


@dataclass(frozen=True)
class ParseContext:
    """
    What the parser knows about the story while reading one model response.

    Attributes
    ----------
    setting / character_names / theme:
        Anchors used to synthesize choices that refer to this story.
    position:
        Position of the segment being parsed.
    max_segments:
        Position at which the segment must be an ending.
    allow_model_ending:
        Whether an ending signalled by the model is honoured.
    force_ending:
        Set when the caller explicitly asked for an ending.
    fallback_image_prompt:
        Used when neither the model nor the narrative yields an image prompt.
    """

    setting: str | None = None
    character_names: tuple[str, ...] = ()
    theme: str | None = None
    choice_count: int = 3
    min_choices: int = 2
    max_choices: int = 4
    position: int = 1
    max_segments: int | None = None
    allow_model_ending: bool = True
    force_ending: bool = False
    fallback_image_prompt: str = ""

    @classmethod
    def for_story(
        cls,
        story: Story,
        *,
        position: int,
        config: GenerationConfig,
        force_ending: bool = False,
        fallback_image_prompt: str = "",
    ) -> "ParseContext":
        max_segments = config.max_segments
        if story.max_segments:
            max_segments = min(max_segments, story.max_segments)
        return cls(
            setting=story.setting,
            character_names=story.character_names,
            theme=story.theme,
            choice_count=config.choice_count,
            min_choices=config.min_choices,
            max_choices=config.max_choices,
            position=position,
            max_segments=max_segments,
            allow_model_ending=position >= config.min_segments_before_model_ending,
            force_ending=force_ending,
            fallback_image_prompt=fallback_image_prompt,
        )

    @property
    def reached_max_segments(self) -> bool:
        return self.max_segments is not None and self.position >= self.max_segments


@dataclass(frozen=True)
class ParsedSegment:
    narrative: str
    choices: tuple[str, ...]
    image_prompt: str
    is_ending: bool
    synthesized: bool = False
    model_signalled_ending: bool = False


@dataclass
class _RawSections:
    narrative: str
    choice_lines: list[str]
    image_prompt: str = ""
    ending_signal: bool = False
    source: str = "plain"


class ChoiceParser:
    """
    Parse model output into a :class:`ParsedSegment`.

    Structure is located in order: a JSON object, ``STORY:``/``CHOICES:``/``IMAGE:``
    markers, then a trailing enumerated or bulleted list. When fewer than the
    minimum usable choices remain, choices are synthesized from the story's
    setting, characters, and theme.
    """

    def parse(self, raw_text: str, context: ParseContext | None = None) -> ParsedSegment:
        context = context or ParseContext()
        text = (raw_text or "").strip()
        if not text:
            raise ParseFailure("Model response was empty.", raw_text=raw_text or "")

        sections = self._locate_structure(text)
        narrative = _clean_narrative(sections.narrative)
        if not narrative:
            raise ParseFailure("Model response contained no narrative text.", raw_text=raw_text)

        model_end = sections.ending_signal
        is_ending = context.force_ending or context.reached_max_segments
        if model_end and not is_ending:
            if context.allow_model_ending:
                is_ending = True
            else:
                logger.info(
                    "Ignoring model ending signal at position %d; too early in the story.",
                    context.position,
                )

        image_prompt = _clean_image_prompt(sections.image_prompt) or _image_prompt_from_narrative(
            narrative
        ) or context.fallback_image_prompt

        if is_ending:
            return ParsedSegment(
                narrative=narrative,
                choices=(),
                image_prompt=image_prompt,
                is_ending=True,
                model_signalled_ending=model_end,
            )

        candidates = [_clean_choice(line) for line in sections.choice_lines]
        candidates = [candidate for candidate in candidates if candidate]
        choices = _distinct_choices(candidates)[: context.max_choices]

        if len(choices) >= context.min_choices:
            target = min(max(len(choices), len(candidates)), context.max_choices)
        else:
            target = context.choice_count

        synthesized = False
        if len(choices) < target:
            logger.info(
                "Model offered %d usable choice(s) (%s); synthesizing %d more.",
                len(choices),
                sections.source,
                target - len(choices),
            )
            choices = self.synthesize_choices(narrative, context, existing=choices, count=target)
            synthesized = True

        return ParsedSegment(
            narrative=narrative,
            choices=tuple(choices),
            image_prompt=image_prompt,
            is_ending=False,
            synthesized=synthesized,
            model_signalled_ending=model_end,
        )

    def synthesize_choices(
        self,
        narrative: str,
        context: ParseContext,
        *,
        existing: Sequence[str] = (),
        count: int | None = None,
    ) -> list[str]:
        """
        Fill ``existing`` up to ``count`` with choices tied to the story.

        Anchors are visited round-robin: setting, characters named in the
        narrative first, then theme. Scene keywords found in the narrative are
        used when the story has no anchors, and a small generic list is the
        last resort. Boilerplate strings are never produced.
        """
        count = count or context.choice_count
        choices = list(existing)
        seen = {_choice_key(choice) for choice in choices}

        def offer(candidate: str) -> None:
            key = _choice_key(candidate)
            if len(choices) < count and key not in seen and key not in BOILERPLATE_CHOICES:
                choices.append(candidate)
                seen.add(key)

        anchored = _anchored_candidates(narrative, context)
        for candidate in anchored:
            offer(candidate)

        if len(choices) < count:
            for candidate in _keyword_candidates(narrative):
                offer(candidate)

        for candidate in _GENERIC_CHOICES:
            offer(candidate)

        return choices

    def _locate_structure(self, text: str) -> _RawSections:
        for locate in (_from_json, _from_markers, _from_trailing_list):
            sections = locate(text)
            if sections is not None:
                return sections
        return _RawSections(narrative=text, choice_lines=[], ending_signal=_has_end_signal(text))


def _from_json(text: str) -> _RawSections | None:
    payload = _load_json_object(text)
    if payload is None:
        return None

    narrative = ""
    for key in ("text", "segment_text", "story", "narrative", "content"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            narrative = value
            break

    choice_lines: list[str] = []
    raw_choices = payload.get("choices") or payload.get("options") or []
    if isinstance(raw_choices, list):
        for item in raw_choices:
            if isinstance(item, Mapping):
                item = item.get("text") or item.get("choice") or ""
            if isinstance(item, str):
                choice_lines.append(item)

    image_prompt = payload.get("image_prompt") or payload.get("imagePrompt") or ""
    ending = any(
        _is_true(payload.get(key)) for key in ("is_end", "is_ending", "isEnd")
    )
    return _RawSections(
        narrative=narrative,
        choice_lines=choice_lines,
        image_prompt=str(image_prompt),
        ending_signal=ending or _has_end_signal(narrative),
        source="json",
    )


def _load_json_object(text: str) -> Mapping[str, Any] | None:
    fenced = _FENCE_PATTERN.search(text)
    candidate = fenced.group(1) if fenced else text
    if not candidate.lstrip().startswith("{"):
        return None
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, Mapping) else None


def _from_markers(text: str) -> _RawSections | None:
    matches = list(_MARKER_PATTERN.finditer(text))
    if not matches:
        return None

    sections: dict[str, str] = {"story": text[: matches[0].start()].strip()}
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(text)
        key = _SECTION_KEYS.get(match.group(1).lower(), "image")
        body = text[match.end() : end].strip()
        sections[key] = f"{sections[key]}\n{body}".strip() if sections.get(key) else body

    story_text = sections.get("story", "")
    choices_text = sections.get("choices", "")
    image_text = sections.get("image", "")
    ending = _has_end_signal(text)

    # A trailing "THE END" after the image section belongs to no prompt field.
    image_text = _strip_end_signals(image_text)

    choice_lines = [line for line in choices_text.splitlines() if line.strip()]
    if len(choice_lines) == 1:
        choice_lines = split_sentences(choice_lines[0]) or choice_lines

    return _RawSections(
        narrative=story_text,
        choice_lines=choice_lines,
        image_prompt=image_text,
        ending_signal=ending,
        source="markers",
    )


def _from_trailing_list(text: str) -> _RawSections | None:
    lines = text.splitlines()
    while lines and not lines[-1].strip():
        lines.pop()

    items: list[str] = []
    cursor = len(lines)
    while cursor > 0:
        line = lines[cursor - 1]
        if not line.strip() and items:
            cursor -= 1
            continue
        match = _LIST_ITEM_PATTERN.match(line)
        if not match:
            break
        items.insert(0, match.group(1))
        cursor -= 1

    if not items:
        return None

    narrative_lines = lines[:cursor]
    if narrative_lines and _LIST_HEADER_PATTERN.match(narrative_lines[-1]):
        narrative_lines = narrative_lines[:-1]

    narrative = "\n".join(narrative_lines)
    return _RawSections(
        narrative=narrative,
        choice_lines=items,
        ending_signal=_has_end_signal(narrative),
        source="list",
    )


def _is_true(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes"}
    return False


def _has_end_signal(text: str) -> bool:
    return bool(_END_LINE_PATTERN.search(text) or _END_TAG_PATTERN.search(text))


def _strip_end_signals(text: str) -> str:
    text = _END_TAG_PATTERN.sub("", text)
    return _END_LINE_PATTERN.sub("", text).strip()


def _clean_narrative(text: str) -> str:
    text = _strip_end_signals(text or "")
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip().strip("*_").strip()


def _clean_choice(line: str) -> str:
    text = _NUMBERING_PATTERN.sub("", line or "", count=1)
    text = text.strip().strip("*_").strip()
    if len(text) >= 2 and text[0] in "\"'“‘`" and text[-1] in "\"'”’`":
        text = text[1:-1].strip()
    text = re.sub(r"\s+", " ", text)
    if not MIN_CHOICE_CHARS <= len(text) <= MAX_CHOICE_CHARS:
        return ""
    if re.fullmatch(r"[\d\W]+", text):
        return ""
    return text


def _choice_key(text: str) -> str:
    return re.sub(r"[^\w\s]", "", text).strip().casefold()


def _distinct_choices(candidates: Sequence[str]) -> list[str]:
    choices: list[str] = []
    seen: set[str] = set()
    for candidate in candidates:
        key = _choice_key(candidate)
        if not key or key in seen or key in BOILERPLATE_CHOICES:
            continue
        seen.add(key)
        choices.append(candidate)
    return choices


def _setting_anchor(setting: str | None) -> str | None:
    if not setting:
        return None
    phrase = setting.split(",")[0].strip().rstrip(".")
    words = phrase.split()
    if not words:
        return None
    if words[0].lower() in {"a", "an"}:
        words[0] = "the"
    elif words[0].lower() != "the" and len(words) > 1:
        words.insert(0, "the")
    return " ".join(words[:7])


def _anchored_candidates(narrative: str, context: ParseContext) -> list[str]:
    lowered = narrative.casefold()
    names = sorted(
        context.character_names,
        key=lambda name: 0 if name.casefold() in lowered else 1,
    )

    pools: list[list[str]] = []
    setting = _setting_anchor(context.setting)
    if setting:
        pools.append([template.format(anchor=setting) for template in _SETTING_TEMPLATES])

    character_templates = _CHARACTER_SETTING_TEMPLATES if setting else _CHARACTER_TEMPLATES
    for index, name in enumerate(names):
        offset = index % len(character_templates)
        rotated = character_templates[offset:] + character_templates[:offset]
        pools.append([template.format(anchor=name, setting=setting) for template in rotated])

    if context.theme:
        theme = context.theme.strip().rstrip(".").lower()
        theme_templates = _THEME_SETTING_TEMPLATES if setting else _THEME_TEMPLATES
        pools.append(
            [template.format(anchor=theme, setting=setting) for template in theme_templates]
        )

    candidates: list[str] = []
    depth = max((len(pool) for pool in pools), default=0)
    for round_index in range(depth):
        for pool in pools:
            if round_index < len(pool):
                candidates.append(pool[round_index])
    return candidates


def _keyword_candidates(narrative: str) -> list[str]:
    lowered = narrative.casefold()
    candidates: list[str] = []
    for keywords, choices in _SCENE_KEYWORD_CHOICES:
        if any(keyword in lowered for keyword in keywords):
            candidates.extend(choices)
    return candidates


def _clean_image_prompt(text: str) -> str:
    text = strip_dialogue(text or "").strip().strip("*_").strip()
    return _limit_words(text, IMAGE_PROMPT_WORD_LIMIT)


def _image_prompt_from_narrative(narrative: str) -> str:
    sentences = split_sentences(strip_dialogue(narrative))
    if not sentences:
        return ""
    return _limit_words(" ".join(sentences[:2]), IMAGE_PROMPT_WORD_LIMIT)


def _limit_words(text: str, limit: int) -> str:
    words = text.split()
    if len(words) <= limit:
        return text
    return " ".join(words[:limit]).rstrip(",;:")
