from __future__ import annotations

import pytest

from narrative_helpers import build_template, prose
from novel_engine.core.prompts import (
    PriorChoiceContext,
    ScenePromptInput,
    build_prompt_pair,
    build_scene_prompt,
    build_system_prompt,
    story_phase,
)
from novel_engine.core.scene_quality import SceneQualityPolicy, count_words
from novel_engine.domain.models import StoryPreferences


@pytest.mark.parametrize(
    ("scene_number", "expected"),
    [
        (1, "opening"),
        (3, "early"),
        (4, "rising"),
        (7, "rising"),
        (9, "pre-climax"),
        (10, "resolution"),
    ],
)
def test_story_phase_tracks_position_in_arc(scene_number: int, expected: str) -> None:
    assert story_phase(scene_number, 10) == expected


def test_system_prompt_reflects_preferences() -> None:
    prompt = build_system_prompt(
        StoryPreferences(
            genres=("gothic", "mystery"),
            tropes=("found family",),
            pacing="fast-paced",
            scene_length="short",
        )
    )
    assert "interactive gothic, mystery fiction" in prompt
    assert "found family" in prompt
    assert "momentum high" in prompt
    assert "Write 500-800 words per scene." in prompt


def test_scene_prompt_includes_context_choice_and_upcoming_decision() -> None:
    template = build_template()
    prompt = build_scene_prompt(
        ScenePromptInput(
            template_title=template.title,
            scene_number=3,
            total_scenes=template.total_scenes,
            previous_scenes=((1, "A" * 400), (2, "Second scene text")),
            last_choice=PriorChoiceContext(text="Stay", tone="steadfast"),
            choice_point=template.choice_point_for_scene(3),
        )
    )
    assert 'Story: "Midnight Harbor"' in prompt
    assert "Current scene: 3 of 10" in prompt
    assert "Scene 1 opening:\n" + "A" * 300 + "..." in prompt
    assert "Scene 2 opening:\nSecond scene text..." in prompt
    assert 'The protagonist chose to: "Stay" (steadfast tone).' in prompt
    assert "Stay in town or leave on the last ferry?" in prompt
    assert prompt.endswith("Write scene 3 now (800-1200 words):")


def test_first_scene_prompt_has_no_context_sections() -> None:
    pair = build_prompt_pair(
        StoryPreferences(),
        ScenePromptInput(template_title="Midnight Harbor", scene_number=1, total_scenes=10),
    )
    assert "RECENT CONTEXT" not in pair.user_prompt
    assert "PREVIOUS CHOICE" not in pair.user_prompt
    assert "Opening scene." in pair.user_prompt
    assert "contemporary" in pair.system_prompt


def test_quality_policy_accepts_prose_with_length_warning() -> None:
    result = SceneQualityPolicy().evaluate(prose("ok"), scene_length="medium")
    assert result.passed
    assert result.errors == []
    assert len(result.warnings) == 1
    assert result.word_count == count_words(prose("ok"))


@pytest.mark.parametrize(
    ("content", "code"),
    [
        ("   ", "empty"),
        ("Too short to count.", "too_short"),
        (prose("x") + " [Character Name] waits.", "placeholder"),
        (prose("x") + " {{name}}", "placeholder"),
        (prose("x", words=2100), "too_long"),
    ],
)
def test_quality_policy_rejects_bad_scenes(content: str, code: str) -> None:
    result = SceneQualityPolicy().evaluate(content)
    assert not result.passed
    assert code in {check.code for check in result.checks if check.severity == "error"}


def test_quality_policy_validates_bounds() -> None:
    with pytest.raises(ValueError, match="min_words"):
        SceneQualityPolicy(min_words=0)
    with pytest.raises(ValueError, match="max_words"):
        SceneQualityPolicy(min_words=500, max_words=100)
