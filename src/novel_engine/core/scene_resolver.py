"""Cache-or-generate resolution of scene prose with at-most-once persistence."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Literal

from novel_engine.core.prompts import PriorChoiceContext, ScenePromptInput, build_prompt_pair
from novel_engine.core.scene_quality import SceneQualityPolicy
from novel_engine.domain.errors import (
    ProviderError,
    SceneOutOfRangeError,
    SceneQualityError,
    StoryCompletedError,
    StoryNotFoundError,
    TemplateNotFoundError,
)
from novel_engine.domain.models import PinnedAiSettings, Scene, StoryInstance, Template
from novel_engine.domain.ports import (
    AnomalySink,
    CompletionProvider,
    CompletionProviderSource,
    CompletionRequest,
    NarrativeStore,
    ProviderSettings,
    ProviderSettingsSource,
    TemplateStore,
)

logger = logging.getLogger(__name__)

CONTEXT_WINDOW_SCENES = 2


@dataclass(frozen=True)
class ResolvedScene:
    """Scene content plus whether it came from the store rather than a new generation."""

    scene: Scene
    was_cached: bool


@dataclass(frozen=True)
class SceneStreamEvent:
    """One event of a streamed resolution: a prose fragment or the final scene."""

    kind: Literal["content", "done"]
    text: str = ""
    resolved: ResolvedScene | None = None


class FixedProviderSource:
    """Serve every request from one injected client regardless of settings."""

    def __init__(self, provider: CompletionProvider) -> None:
        self._provider = provider

    def provider_for(self, settings: ProviderSettings) -> CompletionProvider:
        del settings
        return self._provider


def readable_scene_limit(story: StoryInstance, template: Template) -> int:
    """Highest scene number the reader has unlocked."""
    return min(story.current_scene + 1, template.total_scenes)


class SceneResolver:
    """Return cached scenes or generate, validate, and persist missing ones.

    Concurrent resolutions of the same missing scene may each call the
    provider; the store's uniqueness constraint keeps exactly one result and
    losers return the winner's row.
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
        context_window: int = CONTEXT_WINDOW_SCENES,
    ) -> None:
        if providers is None:
            if provider is None:
                raise ValueError("SceneResolver needs a provider or a provider source.")
            providers = FixedProviderSource(provider)
        self._store = store
        self._templates = templates
        self._providers = providers
        self._settings = settings
        self._quality = quality or SceneQualityPolicy()
        self._anomalies = anomalies
        self._context_window = context_window

    def resolve_scene(self, *, story_id: str, scene_number: int) -> ResolvedScene:
        story, template = self._load(story_id)
        self._check_range(story, template, scene_number)
        cached = self._store.get_scene(story_id=story_id, scene_number=scene_number)
        if cached is not None:
            return ResolvedScene(scene=cached, was_cached=True)
        if story.is_completed:
            raise StoryCompletedError(f"Story '{story_id}' is completed.")

        request, provider = self._build_request(story, template, scene_number)
        logger.info(
            "scene.generate story_id=%s scene=%s provider=%s model=%s",
            story_id,
            scene_number,
            provider.name,
            request.model,
        )
        try:
            content = provider.complete(request)
        except ProviderError as exc:
            self._record_failure(
                story, scene_number, provider, code="provider_error", message=str(exc)
            )
            raise
        return self._accept(story, scene_number, content, request, provider)

    def stream_scene(
        self,
        *,
        story_id: str,
        scene_number: int,
        cancel: threading.Event | None = None,
    ) -> Iterator[SceneStreamEvent]:
        """Validate eagerly, then return an iterator of fragment events and one ``done``.

        Content is persisted only after the full text has been assembled and
        accepted. Setting ``cancel`` or closing the iterator abandons the
        generation without writing anything.
        """
        story, template = self._load(story_id)
        self._check_range(story, template, scene_number)
        cached = self._store.get_scene(story_id=story_id, scene_number=scene_number)
        if cached is not None:
            return iter(
                [
                    SceneStreamEvent(kind="content", text=cached.content),
                    SceneStreamEvent(
                        kind="done", resolved=ResolvedScene(scene=cached, was_cached=True)
                    ),
                ]
            )
        if story.is_completed:
            raise StoryCompletedError(f"Story '{story_id}' is completed.")
        request, provider = self._build_request(story, template, scene_number)
        return self._stream_generation(story, scene_number, request, provider, cancel)

    def _stream_generation(
        self,
        story: StoryInstance,
        scene_number: int,
        request: CompletionRequest,
        provider: CompletionProvider,
        cancel: threading.Event | None,
    ) -> Iterator[SceneStreamEvent]:
        logger.info(
            "scene.stream story_id=%s scene=%s provider=%s",
            story.story_id,
            scene_number,
            provider.name,
        )
        fragments: list[str] = []
        try:
            for fragment in provider.stream(request, cancel=cancel):
                if cancel is not None and cancel.is_set():
                    break
                fragments.append(fragment)
                yield SceneStreamEvent(kind="content", text=fragment)
        except ProviderError as exc:
            self._record_failure(
                story, scene_number, provider, code="provider_error", message=str(exc)
            )
            raise
        if cancel is not None and cancel.is_set():
            logger.info("scene.stream_cancelled story_id=%s scene=%s", story.story_id, scene_number)
            return
        resolved = self._accept(story, scene_number, "".join(fragments), request, provider)
        yield SceneStreamEvent(kind="done", resolved=resolved)

    def _load(self, story_id: str) -> tuple[StoryInstance, Template]:
        story = self._store.get_story(story_id=story_id)
        if story is None:
            raise StoryNotFoundError(f"Story '{story_id}' was not found.")
        template = self._templates.get_template(template_id=story.template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template '{story.template_id}' was not found.")
        return story, template

    @staticmethod
    def _check_range(story: StoryInstance, template: Template, scene_number: int) -> None:
        limit = readable_scene_limit(story, template)
        if scene_number < 1 or scene_number > limit:
            raise SceneOutOfRangeError(
                f"Scene {scene_number} is outside the readable range 1-{limit}."
            )

    def _build_request(
        self, story: StoryInstance, template: Template, scene_number: int
    ) -> tuple[CompletionRequest, CompletionProvider]:
        previous = self._store.list_scenes_before(
            story_id=story.story_id,
            scene_number=scene_number,
            limit=self._context_window,
        )
        last_choice: PriorChoiceContext | None = None
        latest = self._store.latest_choice(story_id=story.story_id)
        if latest is not None:
            point = template.choice_point_by_id(latest.choice_point_id)
            if point is not None and point.has_option(latest.selected_option):
                option = point.option_at(latest.selected_option)
                last_choice = PriorChoiceContext(text=option.text, tone=option.tone)

        prompts = build_prompt_pair(
            story.preferences,
            ScenePromptInput(
                template_title=template.title,
                scene_number=scene_number,
                total_scenes=template.total_scenes,
                previous_scenes=tuple((scene.scene_number, scene.content) for scene in previous),
                last_choice=last_choice,
                choice_point=template.choice_point_for_scene(scene_number),
                scene_length=story.preferences.scene_length,
            ),
        )
        settings = self._settings.get()
        provider = self._providers.provider_for(settings)
        model = settings.model
        temperature = settings.temperature
        pinned = story.ai_settings
        if pinned is not None and pinned.provider == provider.name:
            model = pinned.model
            temperature = pinned.temperature
        request = CompletionRequest(
            system_prompt=prompts.system_prompt,
            user_prompt=prompts.user_prompt,
            model=model,
            temperature=temperature,
            max_tokens=settings.max_output_tokens,
            timeout_seconds=settings.timeout_seconds,
        )
        return request, provider

    def _accept(
        self,
        story: StoryInstance,
        scene_number: int,
        content: str,
        request: CompletionRequest,
        provider: CompletionProvider,
    ) -> ResolvedScene:
        result = self._quality.evaluate(content, scene_length=story.preferences.scene_length)
        for warning in result.warnings:
            logger.warning(
                "scene.quality_warning story_id=%s scene=%s detail=%s",
                story.story_id,
                scene_number,
                warning,
            )
        if not result.passed:
            self._record_failure(
                story,
                scene_number,
                provider,
                code="quality_rejected",
                message="; ".join(result.errors),
            )
            raise SceneQualityError(
                f"Generated scene {scene_number} failed quality checks.",
                reasons=result.errors,
            )

        inserted = self._store.insert_scene(
            story_id=story.story_id,
            scene_number=scene_number,
            content=content.strip(),
            word_count=result.word_count,
        )
        if inserted is None:
            winner = self._store.get_scene(story_id=story.story_id, scene_number=scene_number)
            if winner is None:
                raise StoryNotFoundError(f"Story '{story.story_id}' was not found.")
            self._record(
                story,
                scene_number,
                provider,
                code="scene_race_collapsed",
                severity="info",
                message="Concurrent generation lost the insert; returning stored scene.",
            )
            return ResolvedScene(scene=winner, was_cached=True)

        if story.ai_settings is None:
            # Pin the client and sampling values that produced the text.
            self._store.pin_ai_settings(
                story_id=story.story_id,
                settings=PinnedAiSettings(
                    provider=provider.name,
                    model=request.model,
                    temperature=request.temperature,
                ),
            )
        logger.info(
            "scene.persisted story_id=%s scene=%s words=%s",
            story.story_id,
            scene_number,
            inserted.word_count,
        )
        return ResolvedScene(scene=inserted, was_cached=False)

    def _record_failure(
        self,
        story: StoryInstance,
        scene_number: int,
        provider: CompletionProvider,
        *,
        code: str,
        message: str,
    ) -> None:
        logger.warning(
            "scene.generation_failed story_id=%s scene=%s code=%s message=%s",
            story.story_id,
            scene_number,
            code,
            message,
        )
        self._record(
            story, scene_number, provider, code=code, severity="warning", message=message
        )

    def _record(
        self,
        story: StoryInstance,
        scene_number: int,
        provider: CompletionProvider,
        *,
        code: str,
        severity: str,
        message: str,
    ) -> None:
        if self._anomalies is None:
            return
        self._anomalies.write_anomaly(
            scope="scene_resolver",
            code=code,
            severity=severity,
            message=message,
            metadata={
                "story_id": story.story_id,
                "scene_number": scene_number,
                "provider": provider.name,
            },
        )
