"""Write-once recording of reader selections at choice points."""

from __future__ import annotations

import logging

from novel_engine.domain.errors import (
    ChoiceConflictError,
    ChoicePointMismatchError,
    StoryNotFoundError,
    TemplateNotFoundError,
)
from novel_engine.domain.models import ChoicePoint, StoryInstance, Template
from novel_engine.domain.ports import NarrativeStore, TemplateStore

logger = logging.getLogger(__name__)


def resolve_choice_point(template: Template, choice_point_id: str) -> ChoicePoint:
    """Find a choice point on the template or raise ``ChoicePointMismatchError``."""
    point = template.choice_point_by_id(choice_point_id)
    if point is None:
        raise ChoicePointMismatchError(
            f"Choice point '{choice_point_id}' is not part of template '{template.template_id}'."
        )
    return point


class ChoiceRecorder:
    """Validate and persist one choice per (story, choice point)."""

    def __init__(self, *, store: NarrativeStore, templates: TemplateStore) -> None:
        self._store = store
        self._templates = templates

    def record_choice(
        self,
        *,
        story_id: str,
        choice_point_id: str,
        selected_option: int,
    ) -> str:
        """Record the selection and return the new choice id.

        A second selection for the same choice point raises
        ``ChoiceConflictError`` and leaves the first one untouched.
        """
        story = self._store.get_story(story_id=story_id)
        if story is None:
            raise StoryNotFoundError(f"Story '{story_id}' was not found.")
        point = self.choice_point_for(story, choice_point_id)
        point.option_at(selected_option)

        try:
            choice = self._store.insert_choice(
                story_id=story_id,
                choice_point_id=choice_point_id,
                selected_option=selected_option,
            )
        except ChoiceConflictError:
            logger.info(
                "choice.conflict story_id=%s choice_point_id=%s", story_id, choice_point_id
            )
            raise
        logger.info(
            "choice.recorded story_id=%s choice_point_id=%s option=%s",
            story_id,
            choice_point_id,
            selected_option,
        )
        return choice.choice_id

    def choice_point_for(self, story: StoryInstance, choice_point_id: str) -> ChoicePoint:
        template = self._templates.get_template(template_id=story.template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template '{story.template_id}' was not found.")
        return resolve_choice_point(template, choice_point_id)
