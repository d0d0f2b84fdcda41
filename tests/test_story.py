"""Tests for the story data model and request validation."""

import pytest

from taleforge.common import ValidationError
from taleforge.story_generation import AgeBracket, Character, Choice, Segment, Story, StoryRequest, StoryStatus


@pytest.mark.parametrize(
    "value, expected",
    [
        ("4-6", AgeBracket.AGES_4_6),
        ("10 to 12", AgeBracket.AGES_10_12),
        (3, AgeBracket.AGES_3_4),
        ("8", AgeBracket.AGES_7_9),
        (AgeBracket.AGES_7_9, AgeBracket.AGES_7_9),
    ],
)
def test_age_bracket_parse_accepts_common_forms(value, expected):
    assert AgeBracket.parse(value) is expected


def test_age_bracket_rejects_unusable_values():
    with pytest.raises(ValueError):
        AgeBracket.parse("teenagers")
    with pytest.raises(ValueError):
        AgeBracket.parse(30)


def test_age_bracket_profiles_scale_with_age():
    assert AgeBracket.AGES_3_4.target_words == 30
    assert AgeBracket.AGES_10_12.target_words == 180
    assert AgeBracket.AGES_3_4.max_tokens == 500
    assert AgeBracket.AGES_10_12.max_tokens == 700
    assert AgeBracket.AGES_4_6.category == "young"
    assert AgeBracket.AGES_7_9.category == "middle"
    assert AgeBracket.AGES_10_12.category == "older"


def test_character_from_value_variants():
    assert Character.from_value("Mira: a curious fox") == Character(name="Mira", role="a curious fox")
    assert Character.from_value("Pip").name == "Pip"
    mapped = Character.from_value({"name": "Leo", "traits": "brave, funny"})
    assert mapped.traits == ("brave", "funny")
    assert "brave" in mapped.describe()

    with pytest.raises(ValueError):
        Character.from_value({"role": "nameless"})


def test_story_request_accepts_camel_case_aliases():
    request = StoryRequest.from_mapping(
        {
            "ageBracket": "7-9",
            "settingDescription": "a floating island",
            "characters": ["Mira", "mira", "Pip: a robot"],
            "wordsPerSegment": "150",
        }
    )

    assert request.age_bracket is AgeBracket.AGES_7_9
    assert request.setting == "a floating island"
    assert [character.name for character in request.characters] == ["Mira", "Pip"]
    assert request.words_per_segment == 150


def test_story_request_collects_every_problem():
    with pytest.raises(ValidationError) as excinfo:
        StoryRequest.from_mapping({"words_per_segment": 0, "max_segments": "many"})

    errors = excinfo.value.errors
    assert len(errors) == 3
    assert any("Age bracket is required" in error for error in errors)


def test_story_create_fills_defaults(story_request):
    request = StoryRequest.from_mapping({**story_request, "title": None})
    story = Story.create(request, user_id="user-1")

    assert story.status is StoryStatus.DRAFT
    assert story.title == "Mira and the Friendship Adventure"
    assert story.words_per_segment == 60
    assert story.character_names == ("Mira",)
    assert "Setting: the Whispering Woods" in story.context_bullets()


def test_story_round_trips_through_dict(story_request):
    story = Story.create(StoryRequest.from_mapping(story_request), user_id="user-1")
    restored = Story.from_dict(story.as_dict())

    assert restored == story


def test_segment_with_successor_links_only_the_chosen_choice():
    segment = Segment(
        id="s1",
        story_id="story",
        position=1,
        text="Mira found a door.",
        choices=(Choice(id="c1", text="Open the door"), Choice(id="c2", text="Walk away")),
    )
    assert segment.is_open

    linked = segment.with_successor("c2", "s2")

    assert linked.choice("c2").next_segment_id == "s2"
    assert linked.choice("c1").next_segment_id is None
    assert linked.has_successor and not linked.is_open
    assert segment.choice("c2").next_segment_id is None
    with pytest.raises(ValueError):
        segment.with_successor("c9", "s2")


def test_segment_word_count_ignores_punctuation():
    segment = Segment(id="s", story_id="t", position=1, text='"Hello!" said Mira, twice.')
    assert segment.word_count == 4
