from __future__ import annotations

import threading
from pathlib import Path

import pytest

from narrative_helpers import LETTER_POINT, STORM_POINT, TEMPLATE_ID, build_harness
from novel_engine.core.story_library import next_story_title
from novel_engine.domain.errors import (
    ChoiceConflictError,
    NarrativeValidationError,
    SceneOutOfRangeError,
    StoryAccessError,
    StoryNotFoundError,
    TemplateNotFoundError,
)
from novel_engine.domain.models import StoryPreferences


def test_next_story_title_numbers_repeat_starts() -> None:
    assert next_story_title("Harbor", []) == "Harbor"
    assert next_story_title("Harbor", ["Harbor"]) == "Harbor #2"
    assert next_story_title("Harbor", ["Harbor", "Harbor #4", "Other #9"]) == "Harbor #5"


def test_start_story_defaults_and_titles(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    library = harness.service.library

    first = library.start_story(user_id=harness.user_id, template_id=TEMPLATE_ID)
    second = library.start_story(
        user_id=harness.user_id,
        template_id=TEMPLATE_ID,
        preferences=StoryPreferences(genres=("gothic",), scene_length="short"),
    )
    named = library.start_story(user_id=harness.user_id, template_id=TEMPLATE_ID, title="  Mine  ")

    assert (first.title, first.current_scene, first.status) == ("Midnight Harbor", 1, "in-progress")
    assert second.title == "Midnight Harbor #2"
    assert second.preferences.scene_length == "short"
    assert named.title == "Mine"
    with pytest.raises(TemplateNotFoundError):
        library.start_story(user_id=harness.user_id, template_id="missing")


def test_library_enforces_ownership(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    story_id = harness.start()
    intruder = harness.add_user("intruder@example.com")
    library = harness.service.library

    with pytest.raises(StoryAccessError):
        library.get_story(story_id=story_id, user_id=intruder)
    with pytest.raises(StoryAccessError):
        library.rename_story(story_id=story_id, user_id=intruder, title="Stolen")
    with pytest.raises(StoryAccessError):
        harness.service.get_scene(user_id=intruder, story_id=story_id)
    with pytest.raises(StoryNotFoundError):
        library.get_story(story_id="missing", user_id=harness.user_id)
    assert library.list_stories(user_id=intruder) == []


def test_rename_story_validates_title(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    story_id = harness.start()
    library = harness.service.library

    renamed = library.rename_story(story_id=story_id, user_id=harness.user_id, title="Night   Tide")
    assert renamed.title == "Night Tide"
    with pytest.raises(NarrativeValidationError):
        library.rename_story(story_id=story_id, user_id=harness.user_id, title="   ")
    with pytest.raises(NarrativeValidationError):
        library.rename_story(story_id=story_id, user_id=harness.user_id, title="x" * 201)


def test_get_scene_defaults_to_current_scene_and_reports_choice_point(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    story_id = harness.start()
    harness.read_through(story_id, 3)

    payload = harness.service.get_scene(user_id=harness.user_id, story_id=story_id)

    assert payload.scene_number == 3
    assert payload.was_cached is True
    assert payload.choice_point is not None
    assert payload.choice_point.choice_point_id == STORM_POINT
    assert payload.previous_choice is None
    assert payload.story.total_scenes == 10
    assert payload.story.template_title == "Midnight Harbor"


def test_make_choice_advances_past_choice_point(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    story_id = harness.start()
    harness.read_through(story_id, 3)

    outcome = harness.service.make_choice(
        user_id=harness.user_id, story_id=story_id, choice_point_id=STORM_POINT, selected_option=1
    )
    replay = harness.service.get_scene(user_id=harness.user_id, story_id=story_id, scene_number=3)

    assert outcome.next_scene == 4
    assert outcome.completed is False
    assert replay.previous_choice == 1
    with pytest.raises(ChoiceConflictError):
        harness.service.make_choice(
            user_id=harness.user_id,
            story_id=story_id,
            choice_point_id=STORM_POINT,
            selected_option=0,
        )


def test_make_choice_before_reaching_choice_point(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    story_id = harness.start()

    with pytest.raises(SceneOutOfRangeError):
        harness.service.make_choice(
            user_id=harness.user_id,
            story_id=story_id,
            choice_point_id=LETTER_POINT,
            selected_option=0,
        )
    assert harness.store.list_choices(story_id=story_id) == []


def test_make_choice_keeps_pointer_when_reader_is_ahead(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    story_id = harness.start()
    harness.read_through(story_id, 3)
    harness.service.advance_progress(user_id=harness.user_id, story_id=story_id, new_current_scene=6)

    outcome = harness.service.make_choice(
        user_id=harness.user_id, story_id=story_id, choice_point_id=STORM_POINT, selected_option=0
    )

    assert outcome.next_scene == 6


def test_reading_to_the_end_completes_story(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    story_id = harness.start()
    harness.read_through(story_id, 10)

    result = harness.service.advance_progress(
        user_id=harness.user_id, story_id=story_id, new_current_scene=11
    )
    payload = harness.service.get_scene(user_id=harness.user_id, story_id=story_id)

    assert result.completed is True
    assert payload.scene_number == 10
    assert payload.story.status == "completed"
    assert harness.provider.calls == 10


def test_stream_scene_reports_payload_in_done_update(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    story_id = harness.start()

    updates = list(
        harness.service.stream_scene(user_id=harness.user_id, story_id=story_id, scene_number=1)
    )

    assert updates[-1].kind == "done"
    payload = updates[-1].payload
    assert payload is not None
    assert payload.scene_number == 1
    assert payload.was_cached is False
    assert "".join(update.text for update in updates[:-1]).strip() == payload.content


def test_stream_scene_stops_when_cancelled(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    story_id = harness.start()
    cancel = threading.Event()
    cancel.set()

    updates = list(
        harness.service.stream_scene(
            user_id=harness.user_id, story_id=story_id, scene_number=1, cancel=cancel
        )
    )

    assert updates == []
    assert harness.store.get_scene(story_id=story_id, scene_number=1) is None


def test_delete_story_removes_scenes_and_choices(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    story_id = harness.start()
    harness.read_through(story_id, 3)
    harness.service.make_choice(
        user_id=harness.user_id, story_id=story_id, choice_point_id=STORM_POINT, selected_option=0
    )

    assert harness.service.delete_story(user_id=harness.user_id, story_id=story_id) is True

    assert harness.store.list_scenes(story_id=story_id) == []
    assert harness.store.list_choices(story_id=story_id) == []
    with pytest.raises(StoryNotFoundError):
        harness.service.story_summary(user_id=harness.user_id, story_id=story_id)


def test_favorites_are_owner_scoped_and_filterable(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    library = harness.service.library
    kept = harness.start("Kept")
    harness.start("Skipped")
    intruder = harness.add_user("intruder@example.com")

    marked = library.set_favorite(story_id=kept, user_id=harness.user_id, is_favorite=True)
    favorites = library.list_stories(user_id=harness.user_id, favorites_only=True)

    assert marked.is_favorite is True
    assert [story.title for story in favorites] == ["Kept"]
    with pytest.raises(StoryAccessError):
        library.set_favorite(story_id=kept, user_id=intruder, is_favorite=False)
    with pytest.raises(StoryNotFoundError):
        library.set_favorite(story_id="missing", user_id=harness.user_id, is_favorite=True)

    library.set_favorite(story_id=kept, user_id=harness.user_id, is_favorite=False)
    assert library.list_stories(user_id=harness.user_id, favorites_only=True) == []
