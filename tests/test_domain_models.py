from __future__ import annotations

import pytest

from narrative_helpers import STORM_POINT, build_template
from novel_engine.domain.errors import InvalidOptionError, TemplateValidationError
from novel_engine.domain.models import (
    ChoiceOption,
    ChoicePoint,
    StoryPreferences,
    Template,
)


def _options(count: int) -> tuple[ChoiceOption, ...]:
    return tuple(
        ChoiceOption(option_id=f"o{index}", text=f"Option {index}", tone="calm", impact="none")
        for index in range(count)
    )


def test_choice_point_requires_two_to_four_options() -> None:
    with pytest.raises(TemplateValidationError, match="2-4 options"):
        ChoicePoint(choice_point_id="cp", scene_number=1, prompt_text="?", options=_options(1))
    with pytest.raises(TemplateValidationError, match="2-4 options"):
        ChoicePoint(choice_point_id="cp", scene_number=1, prompt_text="?", options=_options(5))
    point = ChoicePoint(choice_point_id="cp", scene_number=1, prompt_text="?", options=_options(4))
    assert len(point.options) == 4


def test_choice_option_rejects_blank_fields_and_strips() -> None:
    with pytest.raises(TemplateValidationError, match="Option tone"):
        ChoiceOption(option_id="a", text="Go", tone="   ", impact="x")
    option = ChoiceOption(option_id=" a ", text="  Go  ", tone="bold", impact="x")
    assert option.text == "Go"
    assert option.option_id == "a"


def test_choice_point_rejects_duplicate_option_ids_and_bad_scene() -> None:
    duplicate = (
        ChoiceOption(option_id="a", text="One", tone="t", impact="i"),
        ChoiceOption(option_id="a", text="Two", tone="t", impact="i"),
    )
    with pytest.raises(TemplateValidationError, match="duplicate option ids"):
        ChoicePoint(choice_point_id="cp", scene_number=2, prompt_text="?", options=duplicate)
    with pytest.raises(TemplateValidationError, match="scene_number"):
        ChoicePoint(choice_point_id="cp", scene_number=0, prompt_text="?", options=_options(2))


def test_option_at_bounds() -> None:
    point = ChoicePoint(choice_point_id="cp", scene_number=1, prompt_text="?", options=_options(2))
    assert point.option_at(1).option_id == "o1"
    assert not point.has_option(2)
    with pytest.raises(InvalidOptionError):
        point.option_at(2)
    with pytest.raises(InvalidOptionError):
        point.option_at(-1)


def test_template_orders_choice_points_and_looks_them_up() -> None:
    template = build_template()
    assert [point.scene_number for point in template.choice_points] == [3, 6]
    point = template.choice_point_for_scene(3)
    assert point is not None
    assert point.choice_point_id == STORM_POINT
    assert template.choice_point_for_scene(4) is None
    assert template.choice_point_by_id("missing") is None


def test_template_rejects_choice_point_on_or_after_last_scene() -> None:
    late = ChoicePoint(choice_point_id="late", scene_number=5, prompt_text="?", options=_options(2))
    with pytest.raises(TemplateValidationError, match="before the final scene"):
        Template(template_id="t", title="T", total_scenes=5, choice_points=(late,))


def test_template_rejects_duplicate_scene_numbers_and_ids() -> None:
    first = ChoicePoint(choice_point_id="a", scene_number=2, prompt_text="?", options=_options(2))
    same_scene = ChoicePoint(
        choice_point_id="b", scene_number=2, prompt_text="?", options=_options(2)
    )
    same_id = ChoicePoint(choice_point_id="a", scene_number=3, prompt_text="?", options=_options(2))
    with pytest.raises(TemplateValidationError, match="scene numbers must be unique"):
        Template(template_id="t", title="T", total_scenes=5, choice_points=(first, same_scene))
    with pytest.raises(TemplateValidationError, match="ids must be unique"):
        Template(template_id="t", title="T", total_scenes=5, choice_points=(first, same_id))
    with pytest.raises(TemplateValidationError, match="total_scenes"):
        Template(template_id="t", title="T", total_scenes=0)


def test_story_preferences_from_dict_normalizes_unknown_values() -> None:
    preferences = StoryPreferences.from_dict(
        {"genres": ["gothic", " ", 3], "pacing": "warp", "scene_length": "epic"}
    )
    assert preferences.genres == ("gothic", "3")
    assert preferences.pacing == "slow-burn"
    assert preferences.scene_length == "medium"
    assert StoryPreferences.from_dict(None) == StoryPreferences()
    restored = StoryPreferences.from_dict(
        StoryPreferences(tropes=("second chance",), pacing="fast-paced").to_dict()
    )
    assert restored.tropes == ("second chance",)
    assert restored.pacing == "fast-paced"
