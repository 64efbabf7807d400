from __future__ import annotations

import threading
from pathlib import Path

import pytest

from narrative_helpers import LETTER_POINT, STORM_POINT, Harness, build_harness
from novel_engine.domain.errors import (
    ChoicePointMismatchError,
    InvalidOptionError,
    NarrativeValidationError,
    SameChoiceBranchError,
    StoryAccessError,
)


def _story_past_storm(harness: Harness) -> str:
    story_id = harness.start("Harbor")
    harness.read_through(story_id, 3)
    harness.service.make_choice(
        user_id=harness.user_id, story_id=story_id, choice_point_id=STORM_POINT, selected_option=0
    )
    return story_id


def _branch(harness: Harness, story_id: str, *, option: int = 1, user_id: str | None = None) -> str:
    return harness.service.create_branch(
        user_id=user_id or harness.user_id,
        story_id=story_id,
        scene_number=3,
        choice_point_id=STORM_POINT,
        new_option=option,
    )


def test_branch_copies_prefix_and_records_new_choice(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    parent_id = _story_past_storm(harness)

    branch_id = _branch(harness, parent_id)

    branch = harness.store.get_story(story_id=branch_id)
    assert branch is not None
    assert branch.title == "Harbor (Branch)"
    assert branch.current_scene == 4
    assert branch.status == "in-progress"
    assert branch.branched_from_story_id == parent_id
    assert branch.branched_at_scene == 3
    parent_scenes = harness.store.list_scenes(story_id=parent_id)
    branch_scenes = harness.store.list_scenes(story_id=branch_id)
    assert [scene.scene_number for scene in branch_scenes] == [1, 2, 3]
    assert [scene.content for scene in branch_scenes] == [scene.content for scene in parent_scenes]
    choice = harness.store.get_choice(story_id=branch_id, choice_point_id=STORM_POINT)
    assert choice is not None
    assert choice.selected_option == 1
    parent_choice = harness.store.get_choice(story_id=parent_id, choice_point_id=STORM_POINT)
    assert parent_choice is not None
    assert parent_choice.selected_option == 0


def test_branch_diverges_after_fork_point(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    parent_id = _story_past_storm(harness)
    branch_id = _branch(harness, parent_id)

    parent_next = harness.service.get_scene(
        user_id=harness.user_id, story_id=parent_id, scene_number=4
    )
    branch_next = harness.service.get_scene(
        user_id=harness.user_id, story_id=branch_id, scene_number=4
    )

    assert parent_next.content != branch_next.content
    assert '"Leave" (restless tone)' in harness.provider.requests[-1].user_prompt
    assert branch_next.story.branched_from_story_id == parent_id


def test_branch_copies_earlier_choices_only(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    parent_id = _story_past_storm(harness)
    harness.read_through(parent_id, 6)
    harness.service.make_choice(
        user_id=harness.user_id, story_id=parent_id, choice_point_id=LETTER_POINT, selected_option=0
    )

    branch_id = harness.service.create_branch(
        user_id=harness.user_id,
        story_id=parent_id,
        scene_number=6,
        choice_point_id=LETTER_POINT,
        new_option=2,
    )

    choices = {
        choice.choice_point_id: choice.selected_option
        for choice in harness.store.list_choices(story_id=branch_id)
    }
    assert choices == {STORM_POINT: 0, LETTER_POINT: 2}
    assert len(harness.store.list_scenes(story_id=branch_id)) == 6


def test_existing_branch_is_detected_and_reused(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    parent_id = _story_past_storm(harness)

    before = harness.service.check_existing_branch(
        user_id=harness.user_id,
        story_id=parent_id,
        scene_number=3,
        choice_point_id=STORM_POINT,
        option=1,
    )
    first = _branch(harness, parent_id)
    second = _branch(harness, parent_id)
    after = harness.service.check_existing_branch(
        user_id=harness.user_id,
        story_id=parent_id,
        scene_number=3,
        choice_point_id=STORM_POINT,
        option=1,
    )

    assert before is None
    assert first == second
    assert after is not None
    assert after.story_id == first
    assert after.title == "Harbor (Branch)"
    assert [item.code for item in harness.anomalies.list_recent()] == ["branch_race_collapsed"]


def test_branch_rejects_the_recorded_choice(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    parent_id = _story_past_storm(harness)

    with pytest.raises(SameChoiceBranchError):
        _branch(harness, parent_id, option=0)


def test_branch_validates_fork_point_and_option(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    parent_id = _story_past_storm(harness)

    with pytest.raises(ChoicePointMismatchError):
        harness.service.create_branch(
            user_id=harness.user_id,
            story_id=parent_id,
            scene_number=2,
            choice_point_id=STORM_POINT,
            new_option=1,
        )
    with pytest.raises(ChoicePointMismatchError):
        harness.service.create_branch(
            user_id=harness.user_id,
            story_id=parent_id,
            scene_number=3,
            choice_point_id=LETTER_POINT,
            new_option=1,
        )
    with pytest.raises(InvalidOptionError):
        _branch(harness, parent_id, option=5)


def test_branch_requires_generated_prefix(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    story_id = harness.start()
    harness.read_through(story_id, 2)

    with pytest.raises(NarrativeValidationError, match="scenes 1-3"):
        _branch(harness, story_id)


def test_branch_rejects_other_users(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    parent_id = _story_past_storm(harness)
    intruder = harness.add_user("intruder@example.com")

    with pytest.raises(StoryAccessError):
        _branch(harness, parent_id, user_id=intruder)
    with pytest.raises(StoryAccessError):
        harness.service.check_existing_branch(
            user_id=intruder,
            story_id=parent_id,
            scene_number=3,
            choice_point_id=STORM_POINT,
            option=1,
        )


def test_concurrent_branch_requests_collapse(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    parent_id = _story_past_storm(harness)
    barrier = threading.Barrier(2)
    branch_ids: list[str] = []

    def _request() -> None:
        barrier.wait(timeout=10)
        branch_ids.append(_branch(harness, parent_id))

    threads = [threading.Thread(target=_request) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(branch_ids) == 2
    assert branch_ids[0] == branch_ids[1]
    siblings = harness.store.list_branches(
        parent_story_id=parent_id, owner_id=harness.user_id, branched_at_scene=3
    )
    assert [sibling.story_id for sibling in siblings] == [branch_ids[0]]


def test_deleting_parent_keeps_branch(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    parent_id = _story_past_storm(harness)
    branch_id = _branch(harness, parent_id)

    assert harness.service.delete_story(user_id=harness.user_id, story_id=parent_id) is True

    summary = harness.service.story_summary(user_id=harness.user_id, story_id=branch_id)
    assert summary.branched_from_story_id is None
    assert summary.branched_at_scene == 3
    payload = harness.service.get_scene(user_id=harness.user_id, story_id=branch_id, scene_number=2)
    assert payload.was_cached is True


def test_branch_starts_unfavorited(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    parent_id = _story_past_storm(harness)
    harness.service.library.set_favorite(
        story_id=parent_id, user_id=harness.user_id, is_favorite=True
    )

    branch_id = _branch(harness, parent_id)

    branch = harness.store.get_story(story_id=branch_id)
    assert branch is not None
    assert branch.is_favorite is False
