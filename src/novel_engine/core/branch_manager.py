"""Copy-on-fork branching with idempotent detection of existing branches."""

from __future__ import annotations

import logging

from novel_engine.domain.errors import (
    ChoicePointMismatchError,
    NarrativeValidationError,
    SameChoiceBranchError,
    StoryAccessError,
    StoryNotFoundError,
    TemplateNotFoundError,
)
from novel_engine.domain.models import BranchRef, ChoicePoint, StoryInstance, Template
from novel_engine.domain.ports import AnomalySink, NarrativeStore, TemplateStore

logger = logging.getLogger(__name__)

BRANCH_TITLE_SUFFIX = " (Branch)"


def branch_title(parent_title: str) -> str:
    return f"{parent_title}{BRANCH_TITLE_SUFFIX}"


class BranchManager:
    """Detect and create alternate timelines forked at a choice point.

    A fork is identified by (parent, branch scene, choice point, option).
    ``branch_story`` repeats the existence check inside its write
    transaction, so concurrent requests for the same fork resolve to a
    single branch id.
    """

    def __init__(
        self,
        *,
        store: NarrativeStore,
        templates: TemplateStore,
        anomalies: AnomalySink | None = None,
    ) -> None:
        self._store = store
        self._templates = templates
        self._anomalies = anomalies

    def find_existing_branch(
        self,
        *,
        parent_story_id: str,
        user_id: str,
        branch_at_scene: int,
        choice_point_id: str,
        option: int,
    ) -> BranchRef | None:
        self._owned_parent(parent_story_id, user_id)
        branches = self._store.list_branches(
            parent_story_id=parent_story_id,
            owner_id=user_id,
            branched_at_scene=branch_at_scene,
        )
        for branch in branches:
            choice = self._store.get_choice(
                story_id=branch.story_id, choice_point_id=choice_point_id
            )
            if choice is not None and choice.selected_option == option:
                return BranchRef(story_id=branch.story_id, title=branch.title)
        return None

    def branch_story(
        self,
        *,
        parent_story_id: str,
        user_id: str,
        branch_at_scene: int,
        choice_point_id: str,
        new_option: int,
    ) -> str:
        """Fork the parent at ``branch_at_scene`` with ``new_option`` and return the branch id."""
        parent = self._owned_parent(parent_story_id, user_id)
        template = self._template_for(parent)
        point = self._fork_point(template, branch_at_scene, choice_point_id)
        point.option_at(new_option)

        recorded = self._store.get_choice(
            story_id=parent.story_id, choice_point_id=choice_point_id
        )
        if recorded is not None and recorded.selected_option == new_option:
            raise SameChoiceBranchError(
                f"Option {new_option} is already the recorded choice at '{choice_point_id}'."
            )

        prefix = self._store.list_scenes_before(
            story_id=parent.story_id,
            scene_number=branch_at_scene + 1,
            limit=branch_at_scene,
        )
        if len(prefix) != branch_at_scene:
            raise NarrativeValidationError(
                f"Story '{parent.story_id}' has not generated scenes 1-{branch_at_scene} yet."
            )

        prior_choice_point_ids = [
            candidate.choice_point_id
            for candidate in template.choice_points
            if candidate.scene_number < branch_at_scene
        ]
        outcome = self._store.create_branch(
            parent=parent,
            title=branch_title(parent.title),
            branch_at_scene=branch_at_scene,
            prior_choice_point_ids=prior_choice_point_ids,
            choice_point_id=choice_point_id,
            selected_option=new_option,
        )
        if outcome.created:
            logger.info(
                "branch.created parent=%s branch=%s scene=%s option=%s",
                parent.story_id,
                outcome.story_id,
                branch_at_scene,
                new_option,
            )
        else:
            logger.info(
                "branch.deduplicated parent=%s branch=%s scene=%s option=%s",
                parent.story_id,
                outcome.story_id,
                branch_at_scene,
                new_option,
            )
            if self._anomalies is not None:
                self._anomalies.write_anomaly(
                    scope="branch_manager",
                    code="branch_race_collapsed",
                    severity="info",
                    message="Branch request matched an existing fork.",
                    metadata={
                        "parent_story_id": parent.story_id,
                        "branch_story_id": outcome.story_id,
                        "branch_at_scene": branch_at_scene,
                        "choice_point_id": choice_point_id,
                        "option": new_option,
                    },
                )
        return outcome.story_id

    def _owned_parent(self, story_id: str, user_id: str) -> StoryInstance:
        parent = self._store.get_story(story_id=story_id)
        if parent is None:
            raise StoryNotFoundError(f"Story '{story_id}' was not found.")
        if parent.owner_id != user_id:
            raise StoryAccessError(f"Story '{story_id}' belongs to another user.")
        return parent

    def _template_for(self, story: StoryInstance) -> Template:
        template = self._templates.get_template(template_id=story.template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template '{story.template_id}' was not found.")
        return template

    @staticmethod
    def _fork_point(template: Template, branch_at_scene: int, choice_point_id: str) -> ChoicePoint:
        point = template.choice_point_for_scene(branch_at_scene)
        if point is None:
            raise ChoicePointMismatchError(
                f"Template '{template.template_id}' has no choice point at scene {branch_at_scene}."
            )
        if point.choice_point_id != choice_point_id:
            raise ChoicePointMismatchError(
                f"Choice point '{choice_point_id}' is not the choice point at scene {branch_at_scene}."
            )
        return point
