"""Tests for parsing model output into narrative, choices, and image prompts."""

import json

import pytest

from taleforge.common import GenerationConfig, ParseFailure
from taleforge.story_generation import (
    BOILERPLATE_CHOICES,
    ChoiceParser,
    ParseContext,
    Story,
    StoryRequest,
)

from samples import MIRA_ENDING, MIRA_OPENING, NO_CHOICES_RESPONSE


@pytest.fixture
def parser():
    return ChoiceParser()


@pytest.fixture
def context():
    return ParseContext(
        setting="the Whispering Woods",
        character_names=("Mira",),
        theme="friendship",
        position=1,
        max_segments=10,
        allow_model_ending=False,
    )


def _keys(choices):
    return [choice.casefold().rstrip("!.?") for choice in choices]


def test_parses_marker_layout(parser, context):
    parsed = parser.parse(MIRA_OPENING, context)

    assert parsed.narrative.startswith("Mira the little fox woke up early")
    assert "CHOICES" not in parsed.narrative
    assert parsed.choices == (
        "Mira asks the rabbit to be her friend",
        "Mira and the rabbit peek behind the oak tree",
        "Mira shares her sweet berries with the rabbit",
    )
    assert parsed.image_prompt.startswith("A little fox named Mira")
    assert not parsed.is_ending
    assert not parsed.synthesized


def test_parses_json_output(parser, context):
    raw = json.dumps(
        {
            "text": "Mira found an old map under a leaf.",
            "choices": [{"text": "Follow the map to the river"}, "Fold the map and keep it safe"],
            "image_prompt": "A fox studying a paper map",
            "is_end": False,
        }
    )

    parsed = parser.parse(raw, context)

    assert parsed.narrative == "Mira found an old map under a leaf."
    assert parsed.choices == ("Follow the map to the river", "Fold the map and keep it safe")
    assert parsed.image_prompt == "A fox studying a paper map"
    assert not parsed.synthesized


def test_parses_trailing_enumerated_list(parser, context):
    raw = (
        "Mira reached the top of the hill and saw three paths.\n\n"
        "What will you do?\n"
        "A) Take the sunny path\n"
        "B) Take the shady path\n"
        "C) Take the path by the stream\n"
    )

    parsed = parser.parse(raw, context)

    assert parsed.narrative == "Mira reached the top of the hill and saw three paths."
    assert parsed.choices == (
        "Take the sunny path",
        "Take the shady path",
        "Take the path by the stream",
    )


def test_cleans_numbering_bullets_and_quotes(parser, context):
    raw = 'STORY:\nMira paused.\nCHOICES:\n- "Hop over the puddle"\n* **Splash in the puddle**\n'

    parsed = parser.parse(raw, context)

    assert parsed.choices == ("Hop over the puddle", "Splash in the puddle")


def test_duplicate_choices_are_replaced_with_synthesized_ones(parser, context):
    raw = "STORY:\nMira saw a door.\nCHOICES:\n1. Open the door\n2. open the door!\n3. Climb the tower\n"

    parsed = parser.parse(raw, context)

    assert len(parsed.choices) == 3
    assert len(set(_keys(parsed.choices))) == 3
    assert parsed.choices[:2] == ("Open the door", "Climb the tower")
    assert parsed.synthesized


def test_missing_choice_block_synthesizes_setting_aware_choices(parser, context):
    parsed = parser.parse(NO_CHOICES_RESPONSE, context)

    assert len(parsed.choices) == 3
    assert parsed.synthesized
    for choice in parsed.choices:
        assert "whispering woods" in choice.casefold()
        assert choice.casefold() not in BOILERPLATE_CHOICES
    assert any("Mira" in choice for choice in parsed.choices)
    assert any("friendship" in choice for choice in parsed.choices)


def test_boilerplate_model_choices_are_discarded(parser, context):
    raw = (
        "STORY:\nMira listened to the wind.\nCHOICES:\n"
        "1. Continue the adventure\n2. Look around carefully\n3. Make a thoughtful choice\n"
    )

    parsed = parser.parse(raw, context)

    assert len(parsed.choices) == 3
    assert not set(_keys(parsed.choices)) & BOILERPLATE_CHOICES


def test_scene_keywords_are_used_when_story_has_no_anchors(parser):
    parsed = parser.parse("They reached a tall castle with a huge wooden door.", ParseContext())

    assert len(parsed.choices) == 3
    assert parsed.choices[0] == "Open the door and peek inside"
    assert not set(_keys(parsed.choices)) & BOILERPLATE_CHOICES


def test_choice_count_is_bounded(parser, context):
    listed = "\n".join(f"{index}. Choice number {index} here" for index in range(1, 7))
    parsed = parser.parse(f"STORY:\nMira counted.\nCHOICES:\n{listed}", context)

    assert len(parsed.choices) == 4


def test_model_ending_is_ignored_too_early(parser, context):
    parsed = parser.parse(MIRA_ENDING, context)

    assert not parsed.is_ending
    assert parsed.model_signalled_ending
    assert "THE END" not in parsed.narrative
    assert len(parsed.choices) == 3


def test_model_ending_is_honoured_when_allowed(parser, context):
    late = ParseContext(setting=context.setting, position=4, allow_model_ending=True)

    parsed = parser.parse(MIRA_ENDING, late)

    assert parsed.is_ending
    assert parsed.choices == ()
    assert parsed.narrative.endswith("Friends made every day brighter.")
    assert parsed.image_prompt.startswith("Three animal friends")


def test_end_tag_and_max_segments_and_forced_endings(parser, context):
    tagged = ParseContext(position=5, allow_model_ending=True)
    assert parser.parse("Everyone went home. [END]", tagged).is_ending

    at_limit = ParseContext(position=3, max_segments=3, allow_model_ending=False)
    parsed = parser.parse(MIRA_OPENING, at_limit)
    assert parsed.is_ending and parsed.choices == ()

    forced = ParseContext(position=2, force_ending=True, allow_model_ending=False)
    assert parser.parse(MIRA_OPENING, forced).is_ending


@pytest.mark.parametrize("raw", ["", "   \n  ", "STORY:\n\nCHOICES:\n1. Go left now\n2. Go right now"])
def test_empty_narrative_raises_parse_failure(parser, context, raw):
    with pytest.raises(ParseFailure):
        parser.parse(raw, context)


def test_image_prompt_falls_back_to_narrative_without_dialogue(parser, context):
    raw = 'Mira hopped onto a rock. "Look!" she shouted. The river sparkled below.\n1. Jump in the river\n2. Walk along the bank'

    parsed = parser.parse(raw, context)

    assert "Look" not in parsed.image_prompt
    assert parsed.image_prompt.startswith("Mira hopped onto a rock.")


def test_context_for_story_applies_config_limits(story_request):
    story = Story.create(
        StoryRequest.from_mapping({**story_request, "max_segments": 4}), user_id="u"
    )
    config = GenerationConfig(max_segments=10, min_segments_before_model_ending=3)

    early = ParseContext.for_story(story, position=2, config=config)
    last = ParseContext.for_story(story, position=4, config=config)

    assert early.max_segments == 4
    assert not early.allow_model_ending
    assert last.allow_model_ending and last.reached_max_segments
    assert early.character_names == ("Mira",)


@pytest.mark.parametrize("flag, expected", [("false", False), ("no", False), (0, False), ("true", True), (True, True)])
def test_json_ending_flag_must_really_be_true(parser, flag, expected):
    raw = json.dumps({"text": "Mira hugged her new friend goodbye.", "choices": [], "is_end": flag})
    late = ParseContext(setting="the Whispering Woods", position=4, allow_model_ending=True)

    parsed = parser.parse(raw, late)

    assert parsed.is_ending is expected
    assert parsed.model_signalled_ending is expected
