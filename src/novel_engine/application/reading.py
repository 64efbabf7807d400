"""Reader-facing operations composed from the narrative engine components."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Literal

from novel_engine.core.branch_manager import BranchManager
from novel_engine.core.choice_recorder import ChoiceRecorder, resolve_choice_point
from novel_engine.core.progress_tracker import ProgressResult, ProgressTracker
from novel_engine.core.scene_quality import SceneQualityPolicy
from novel_engine.core.scene_resolver import ResolvedScene, SceneResolver, SceneStreamEvent
from novel_engine.core.story_library import StoryLibrary
from novel_engine.domain.errors import (
    ProgressRegressionError,
    SceneOutOfRangeError,
    StoryNotFoundError,
    TemplateNotFoundError,
)
from novel_engine.domain.models import (
    BranchRef,
    ChoicePoint,
    StoryInstance,
    StoryPreferences,
    StoryStatus,
    Template,
)
from novel_engine.domain.ports import (
    AnomalySink,
    CompletionProvider,
    CompletionProviderSource,
    NarrativeStore,
    ProviderSettingsSource,
    TemplateStore,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorySummary:
    """Story fields a reader needs next to scene content."""

    story_id: str
    title: str
    template_id: str
    template_title: str
    current_scene: int
    total_scenes: int
    status: StoryStatus
    branched_from_story_id: str | None
    branched_at_scene: int | None


@dataclass(frozen=True)
class ScenePayload:
    scene_number: int
    content: str
    word_count: int
    was_cached: bool
    story: StorySummary
    choice_point: ChoicePoint | None
    previous_choice: int | None


@dataclass(frozen=True)
class SceneStreamUpdate:
    kind: Literal["content", "done"]
    text: str = ""
    payload: ScenePayload | None = None


@dataclass(frozen=True)
class ChoiceOutcome:
    choice_id: str
    completed: bool
    next_scene: int


def summarize_story(story: StoryInstance, template: Template) -> StorySummary:
    return StorySummary(
        story_id=story.story_id,
        title=story.title,
        template_id=template.template_id,
        template_title=template.title,
        current_scene=story.current_scene,
        total_scenes=template.total_scenes,
        status=story.status,
        branched_from_story_id=story.branched_from_story_id,
        branched_at_scene=story.branched_at_scene,
    )


class ReadingService:
    """Serve scene reads, choices, progress, and branching for one caller at a time.

    Every operation checks story ownership before touching scenes or choices.
    """

    def __init__(
        self,
        *,
        store: NarrativeStore,
        templates: TemplateStore,
        settings: ProviderSettingsSource,
        provider: CompletionProvider | None = None,
        providers: CompletionProviderSource | None = None,
        quality: SceneQualityPolicy | None = None,
        anomalies: AnomalySink | None = None,
    ) -> None:
        self._store = store
        self._templates = templates
        self.library = StoryLibrary(store=store, templates=templates)
        self.resolver = SceneResolver(
            store=store,
            templates=templates,
            settings=settings,
            provider=provider,
            providers=providers,
            quality=quality,
            anomalies=anomalies,
        )
        self.recorder = ChoiceRecorder(store=store, templates=templates)
        self.branches = BranchManager(store=store, templates=templates, anomalies=anomalies)
        self.progress = ProgressTracker(store=store, templates=templates)

    def start_story(
        self,
        *,
        user_id: str,
        template_id: str,
        preferences: StoryPreferences | None = None,
        title: str | None = None,
    ) -> StoryInstance:
        return self.library.start_story(
            user_id=user_id, template_id=template_id, preferences=preferences, title=title
        )

    def story_summary(self, *, user_id: str, story_id: str) -> StorySummary:
        story = self.library.get_story(story_id=story_id, user_id=user_id)
        return summarize_story(story, self._template(story))

    def get_scene(
        self, *, user_id: str, story_id: str, scene_number: int | None = None
    ) -> ScenePayload:
        """Resolve one scene; defaults to the story's current scene."""
        story = self.library.get_story(story_id=story_id, user_id=user_id)
        template = self._template(story)
        number = self._default_scene(story, template, scene_number)
        resolved = self.resolver.resolve_scene(story_id=story_id, scene_number=number)
        return self._payload(story_id, template, resolved)

    def stream_scene(
        self,
        *,
        user_id: str,
        story_id: str,
        scene_number: int | None = None,
        cancel: threading.Event | None = None,
    ) -> Iterator[SceneStreamUpdate]:
        """Validate and return fragment updates followed by a ``done`` update with the payload."""
        story = self.library.get_story(story_id=story_id, user_id=user_id)
        template = self._template(story)
        number = self._default_scene(story, template, scene_number)
        events = self.resolver.stream_scene(story_id=story_id, scene_number=number, cancel=cancel)
        return self._stream_updates(story_id, template, events)

    def _stream_updates(
        self, story_id: str, template: Template, events: Iterator[SceneStreamEvent]
    ) -> Iterator[SceneStreamUpdate]:
        for event in events:
            if event.kind == "content":
                yield SceneStreamUpdate(kind="content", text=event.text)
            elif event.resolved is not None:
                yield SceneStreamUpdate(
                    kind="done", payload=self._payload(story_id, template, event.resolved)
                )

    def make_choice(
        self,
        *,
        user_id: str,
        story_id: str,
        choice_point_id: str,
        selected_option: int,
    ) -> ChoiceOutcome:
        """Record a choice, then move the reader to the scene after the choice point."""
        story = self.library.get_story(story_id=story_id, user_id=user_id)
        template = self._template(story)
        point = resolve_choice_point(template, choice_point_id)
        if point.scene_number > story.current_scene:
            raise SceneOutOfRangeError(
                f"Choice point at scene {point.scene_number} has not been reached yet."
            )
        choice_id = self.recorder.record_choice(
            story_id=story_id,
            choice_point_id=choice_point_id,
            selected_option=selected_option,
        )
        target = point.scene_number + 1
        try:
            result = self.progress.advance(
                story_id=story_id, new_current_scene=max(target, story.current_scene)
            )
        except ProgressRegressionError:
            # Another request already moved the story further ahead.
            result = self._current_progress(story_id)
        return ChoiceOutcome(
            choice_id=choice_id, completed=result.completed, next_scene=result.current_scene
        )

    def advance_progress(
        self, *, user_id: str, story_id: str, new_current_scene: int
    ) -> ProgressResult:
        self.library.get_story(story_id=story_id, user_id=user_id)
        return self.progress.advance(story_id=story_id, new_current_scene=new_current_scene)

    def check_existing_branch(
        self,
        *,
        user_id: str,
        story_id: str,
        scene_number: int,
        choice_point_id: str,
        option: int,
    ) -> BranchRef | None:
        return self.branches.find_existing_branch(
            parent_story_id=story_id,
            user_id=user_id,
            branch_at_scene=scene_number,
            choice_point_id=choice_point_id,
            option=option,
        )

    def create_branch(
        self,
        *,
        user_id: str,
        story_id: str,
        scene_number: int,
        choice_point_id: str,
        new_option: int,
    ) -> str:
        return self.branches.branch_story(
            parent_story_id=story_id,
            user_id=user_id,
            branch_at_scene=scene_number,
            choice_point_id=choice_point_id,
            new_option=new_option,
        )

    def delete_story(self, *, user_id: str, story_id: str) -> bool:
        return self.library.delete_story(story_id=story_id, user_id=user_id)

    def _template(self, story: StoryInstance) -> Template:
        template = self._templates.get_template(template_id=story.template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template '{story.template_id}' was not found.")
        return template

    @staticmethod
    def _default_scene(story: StoryInstance, template: Template, scene_number: int | None) -> int:
        if scene_number is not None:
            return scene_number
        return min(story.current_scene, template.total_scenes)

    def _current_progress(self, story_id: str) -> ProgressResult:
        latest = self._store.get_story(story_id=story_id)
        if latest is None:
            raise StoryNotFoundError(f"Story '{story_id}' was not found.")
        return ProgressResult(current_scene=latest.current_scene, completed=latest.is_completed)

    def _payload(self, story_id: str, template: Template, resolved: ResolvedScene) -> ScenePayload:
        story = self._store.get_story(story_id=story_id)
        if story is None:
            raise StoryNotFoundError(f"Story '{story_id}' was not found.")
        scene = resolved.scene
        point = template.choice_point_for_scene(scene.scene_number)
        previous_choice: int | None = None
        if point is not None:
            recorded = self._store.get_choice(
                story_id=story_id, choice_point_id=point.choice_point_id
            )
            previous_choice = recorded.selected_option if recorded is not None else None
        return ScenePayload(
            scene_number=scene.scene_number,
            content=scene.content,
            word_count=scene.word_count,
            was_cached=resolved.was_cached,
            story=summarize_story(story, template),
            choice_point=point,
            previous_choice=previous_choice,
        )
