"""Monotonic advancement of a story's scene pointer."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from novel_engine.domain.errors import (
    NarrativeValidationError,
    ProgressRegressionError,
    StoryNotFoundError,
    TemplateNotFoundError,
)
from novel_engine.domain.models import StoryStatus
from novel_engine.domain.ports import NarrativeStore, TemplateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressResult:
    current_scene: int
    completed: bool


class ProgressTracker:
    """Move ``current_scene`` forward and complete stories that run past the last scene."""

    def __init__(self, *, store: NarrativeStore, templates: TemplateStore) -> None:
        self._store = store
        self._templates = templates

    def advance(self, *, story_id: str, new_current_scene: int) -> ProgressResult:
        if new_current_scene < 1:
            raise NarrativeValidationError("new_current_scene must be >= 1.")
        story = self._store.get_story(story_id=story_id)
        if story is None:
            raise StoryNotFoundError(f"Story '{story_id}' was not found.")
        if new_current_scene < story.current_scene:
            raise ProgressRegressionError(
                f"Cannot move story '{story_id}' back from scene "
                f"{story.current_scene} to {new_current_scene}."
            )
        if new_current_scene == story.current_scene:
            return ProgressResult(current_scene=story.current_scene, completed=story.is_completed)

        template = self._templates.get_template(template_id=story.template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template '{story.template_id}' was not found.")
        status: StoryStatus = (
            "completed" if new_current_scene > template.total_scenes else "in-progress"
        )
        updated = self._store.advance_story(
            story_id=story_id,
            current_scene=new_current_scene,
            status=status,
        )
        if updated is None:
            # A concurrent writer moved further ahead or the story was deleted.
            latest = self._store.get_story(story_id=story_id)
            if latest is None:
                raise StoryNotFoundError(f"Story '{story_id}' was not found.")
            raise ProgressRegressionError(
                f"Story '{story_id}' is already at scene {latest.current_scene}."
            )
        if updated.is_completed and not story.is_completed:
            logger.info("story.completed story_id=%s", story_id)
        return ProgressResult(current_scene=updated.current_scene, completed=updated.is_completed)
