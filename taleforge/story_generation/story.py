"""
Structured representations of stories, segments, and the requests that create them.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from taleforge.common.errors import ValidationError

_WORD_PATTERN = re.compile(r"[\w'’-]+")
_AGE_RANGE_PATTERN = re.compile(r"^\s*(\d{1,2})\s*(?:-|–|to)\s*(\d{1,2})\s*$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def count_words(text: str) -> int:
    return len(_WORD_PATTERN.findall(text or ""))


class AgeBracket(str, Enum):
    """
    Reader age brackets. Each bracket fixes the segment length and vocabulary.
    """

    AGES_3_4 = "3-4"
    AGES_4_6 = "4-6"
    AGES_7_9 = "7-9"
    AGES_10_12 = "10-12"

    @property
    def target_words(self) -> int:
        return _AGE_PROFILES[self][0]

    @property
    def vocabulary(self) -> str:
        return _AGE_PROFILES[self][1]

    @property
    def max_tokens(self) -> int:
        # Narrative budget plus room for the choices and image sections.
        return _AGE_PROFILES[self][2] + 200

    @property
    def category(self) -> str:
        if self in (AgeBracket.AGES_3_4, AgeBracket.AGES_4_6):
            return "young"
        if self is AgeBracket.AGES_7_9:
            return "middle"
        return "older"

    @classmethod
    def parse(cls, value: Any) -> "AgeBracket":
        """
        Accept ``"4-6"``, ``"4 to 6"``, a single age such as ``5``, or an enum member.
        """
        if isinstance(value, AgeBracket):
            return value
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError("Age bracket is required.")

        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return cls._for_age(int(value))

        text = str(value).strip()
        for member in cls:
            if member.value == text:
                return member

        match = _AGE_RANGE_PATTERN.match(text)
        if match:
            normalized = f"{int(match.group(1))}-{int(match.group(2))}"
            for member in cls:
                if member.value == normalized:
                    return member
            midpoint = (int(match.group(1)) + int(match.group(2))) // 2
            return cls._for_age(midpoint)

        if text.isdigit():
            return cls._for_age(int(text))

        raise ValueError(f"Unrecognized age bracket {value!r}.")

    @classmethod
    def _for_age(cls, age: int) -> "AgeBracket":
        if age < 1 or age > 14:
            raise ValueError(f"Age {age} is outside the supported 3-12 range.")
        if age <= 3:
            return cls.AGES_3_4
        if age <= 6:
            return cls.AGES_4_6
        if age <= 9:
            return cls.AGES_7_9
        return cls.AGES_10_12


_AGE_PROFILES: dict[AgeBracket, tuple[int, str, int]] = {
    AgeBracket.AGES_3_4: (
        30,
        "Use very simple words (1-2 syllables), short sentences (5-8 words), and familiar "
        "things like colors, animals, and toys.",
        300,
    ),
    AgeBracket.AGES_4_6: (
        60,
        "Use simple vocabulary (2-3 syllables), short sentences (6-10 words), and clear "
        "cause-and-effect.",
        300,
    ),
    AgeBracket.AGES_7_9: (
        120,
        "Use age-appropriate vocabulary with a few challenging words, sentences of 8-12 "
        "words, and simple problem-solving.",
        400,
    ),
    AgeBracket.AGES_10_12: (
        180,
        "Use richer vocabulary, varied and complex sentences, and literary devices such as "
        "metaphor where they help the story.",
        500,
    ),
}


class StoryStatus(str, Enum):
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None

    text = str(value).strip()
    return text or None


def _normalize_traits(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()

    if isinstance(value, str):
        parts = [item.strip() for item in value.split(",")]
    elif isinstance(value, Sequence):
        parts = [str(item).strip() for item in value]
    else:
        raise TypeError("traits must be a string or sequence of strings.")

    return tuple(filter(None, parts))


@dataclass(frozen=True)
class Character:
    """
    A named character taking part in the story.
    """

    name: str
    role: str | None = None
    traits: tuple[str, ...] = ()

    @classmethod
    def from_value(cls, value: Any) -> "Character":
        """
        Build a character from a mapping, a ``"Name: role"`` string, or a bare name.
        """
        if isinstance(value, Character):
            return value

        if isinstance(value, Mapping):
            name = _coerce_optional_str(value.get("name"))
            if not name:
                raise ValueError("Character entries must include a non-empty 'name'.")
            return cls(
                name=name,
                role=_coerce_optional_str(value.get("role") or value.get("description")),
                traits=_normalize_traits(value.get("traits") or value.get("personality")),
            )

        if isinstance(value, str):
            if ":" in value:
                name, role = value.split(":", 1)
                name_text = name.strip()
                if name_text:
                    return cls(name=name_text, role=_coerce_optional_str(role))
            elif value.strip():
                return cls(name=value.strip())

        raise ValueError(f"Invalid character entry: {value!r}")

    def describe(self) -> str:
        text = self.name
        if self.role:
            text += f" ({self.role})"
        if self.traits:
            text += f", who is {', '.join(self.traits)}"
        return text

    def as_dict(self) -> dict[str, Any]:
        return {"name": self.name, "role": self.role, "traits": list(self.traits)}


def _normalize_characters(value: Any) -> tuple[Character, ...]:
    if value is None:
        return ()

    if isinstance(value, (str, Mapping)):
        items: Iterable[Any] = [value]
    elif isinstance(value, Sequence):
        items = value
    else:
        raise TypeError("characters must be a sequence of mappings or strings.")

    characters: list[Character] = []
    seen: set[str] = set()
    for item in items:
        character = Character.from_value(item)
        key = character.name.lower()
        if key not in seen:
            characters.append(character)
            seen.add(key)
    return tuple(characters)


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


@dataclass(frozen=True)
class StoryRequest:
    """
    Validated input collected by the story creation wizard.
    """

    age_bracket: AgeBracket
    title: str | None = None
    genre: str | None = None
    theme: str | None = None
    setting: str | None = None
    characters: tuple[Character, ...] = ()
    words_per_segment: int | None = None
    max_segments: int | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StoryRequest":
        """
        Build a request from a dict-like object (e.g., parsed JSON/YAML).

        Raises
        ------
        ValidationError
            With every problem found, when the request cannot be used.
        """
        if not isinstance(data, Mapping):
            raise ValidationError("Story request must be a mapping.")

        errors: list[str] = []

        age_bracket: AgeBracket | None = None
        try:
            age_bracket = AgeBracket.parse(
                _first(data, "age_bracket", "ageBracket", "target_age", "targetAge", "age")
            )
        except ValueError as exc:
            errors.append(str(exc))

        characters: tuple[Character, ...] = ()
        try:
            characters = _normalize_characters(
                _first(data, "characters", "main_characters", "cast")
            )
        except (TypeError, ValueError) as exc:
            errors.append(str(exc))

        words_per_segment = _optional_positive_int(
            _first(data, "words_per_segment", "wordsPerSegment", "words_per_chapter"),
            "words_per_segment",
            errors,
            upper=400,
        )
        max_segments = _optional_positive_int(
            _first(data, "max_segments", "maxSegments", "chapters"),
            "max_segments",
            errors,
            upper=50,
        )

        if errors or age_bracket is None:
            raise ValidationError("Invalid story request: " + "; ".join(errors), errors=errors)

        return cls(
            age_bracket=age_bracket,
            title=_coerce_optional_str(data.get("title")),
            genre=_coerce_optional_str(_first(data, "genre", "story_mode")),
            theme=_coerce_optional_str(_first(data, "theme", "description")),
            setting=_coerce_optional_str(
                _first(data, "setting", "setting_description", "settingDescription")
            ),
            characters=characters,
            words_per_segment=words_per_segment,
            max_segments=max_segments,
        )


def _optional_positive_int(
    value: Any,
    name: str,
    errors: list[str],
    *,
    upper: int,
) -> int | None:
    if value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        errors.append(f"{name} must be an integer, got {value!r}.")
        return None
    if not 1 <= number <= upper:
        errors.append(f"{name} must fall between 1 and {upper}, got {number}.")
        return None
    return number


@dataclass(frozen=True)
class Story:
    """
    A story owned by one user. Only the controller changes its status.
    """

    id: str
    user_id: str
    title: str
    age_bracket: AgeBracket
    genre: str | None = None
    theme: str | None = None
    setting: str | None = None
    characters: tuple[Character, ...] = ()
    words_per_segment: int = 60
    status: StoryStatus = StoryStatus.DRAFT
    max_segments: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(cls, request: StoryRequest, *, user_id: str) -> "Story":
        return cls(
            id=new_id(),
            user_id=user_id,
            title=request.title or _default_title(request),
            age_bracket=request.age_bracket,
            genre=request.genre,
            theme=request.theme,
            setting=request.setting,
            characters=request.characters,
            words_per_segment=request.words_per_segment or request.age_bracket.target_words,
            max_segments=request.max_segments,
        )

    def with_status(self, status: StoryStatus) -> "Story":
        return replace(self, status=status, updated_at=utcnow())

    @property
    def character_names(self) -> tuple[str, ...]:
        return tuple(character.name for character in self.characters)

    def context_bullets(self) -> list[str]:
        """
        Produce bullet-friendly lines describing the story, for prompt conditioning.
        """
        bullets: list[str] = [f"Title: {self.title}", f"Reader ages: {self.age_bracket.value}"]

        if self.genre:
            bullets.append(f"Genre: {self.genre}")

        if self.theme:
            bullets.append(f"Theme: {self.theme}")

        if self.setting:
            bullets.append(f"Setting: {self.setting}")

        for character in self.characters:
            bullets.append(f"Character: {character.describe()}")

        return bullets

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "age_bracket": self.age_bracket.value,
            "genre": self.genre,
            "theme": self.theme,
            "setting": self.setting,
            "characters": [character.as_dict() for character in self.characters],
            "words_per_segment": self.words_per_segment,
            "status": self.status.value,
            "max_segments": self.max_segments,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Story":
        try:
            return cls(
                id=str(payload["id"]),
                user_id=str(payload["user_id"]),
                title=str(payload["title"]),
                age_bracket=AgeBracket.parse(payload["age_bracket"]),
                genre=_coerce_optional_str(payload.get("genre")),
                theme=_coerce_optional_str(payload.get("theme")),
                setting=_coerce_optional_str(payload.get("setting")),
                characters=_normalize_characters(payload.get("characters")),
                words_per_segment=int(payload.get("words_per_segment") or 60),
                status=StoryStatus(payload.get("status", StoryStatus.DRAFT.value)),
                max_segments=payload.get("max_segments"),
                created_at=_parse_timestamp(payload.get("created_at")),
                updated_at=_parse_timestamp(payload.get("updated_at")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid story payload: {payload}") from exc


def _default_title(request: StoryRequest) -> str:
    if request.theme and request.characters:
        return f"{request.characters[0].name} and the {request.theme.title()} Adventure"
    if request.theme:
        return f"A Tale of {request.theme.title()}"
    if request.characters:
        return f"The Adventures of {request.characters[0].name}"
    if request.genre:
        return f"A {request.genre.title()} Story"
    return "Untitled Story"


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(str(value))
    return utcnow()


@dataclass(frozen=True)
class Choice:
    """
    A branch offered at the end of a segment.
    """

    id: str
    text: str
    next_segment_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.id, "text": self.text, "next_segment_id": self.next_segment_id}


@dataclass(frozen=True)
class Segment:
    """
    One increment of story text plus its choices.

    Narrative content never changes after creation; only a choice's successor
    link is filled in once the next segment exists.
    """

    id: str
    story_id: str
    position: int
    text: str
    choices: tuple[Choice, ...] = ()
    is_ending: bool = False
    image_prompt: str = ""
    image_job_id: str | None = None
    provider_used: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def word_count(self) -> int:
        return count_words(self.text)

    @property
    def has_successor(self) -> bool:
        return any(choice.next_segment_id for choice in self.choices)

    @property
    def is_open(self) -> bool:
        return not self.is_ending and not self.has_successor

    def choice(self, choice_id: str) -> Choice | None:
        for candidate in self.choices:
            if candidate.id == choice_id:
                return candidate
        return None

    def with_successor(self, choice_id: str, segment_id: str) -> "Segment":
        if self.choice(choice_id) is None:
            raise ValueError(f"Segment {self.id} has no choice '{choice_id}'.")
        choices = tuple(
            replace(choice, next_segment_id=segment_id) if choice.id == choice_id else choice
            for choice in self.choices
        )
        return replace(self, choices=choices)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "story_id": self.story_id,
            "position": self.position,
            "text": self.text,
            "word_count": self.word_count,
            "choices": [choice.as_dict() for choice in self.choices],
            "is_ending": self.is_ending,
            "image_prompt": self.image_prompt,
            "image_job_id": self.image_job_id,
            "provider_used": self.provider_used,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Segment":
        try:
            choices = tuple(
                Choice(
                    id=str(entry["id"]),
                    text=str(entry["text"]).strip(),
                    next_segment_id=entry.get("next_segment_id"),
                )
                for entry in payload.get("choices", [])
            )
            return cls(
                id=str(payload["id"]),
                story_id=str(payload["story_id"]),
                position=int(payload["position"]),
                text=str(payload["text"]).strip(),
                choices=choices,
                is_ending=bool(payload.get("is_ending", False)),
                image_prompt=str(payload.get("image_prompt") or ""),
                image_job_id=payload.get("image_job_id"),
                provider_used=payload.get("provider_used"),
                created_at=_parse_timestamp(payload.get("created_at")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid segment payload: {payload}") from exc
