"""Ports for persistence, templates, and the completion provider."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Protocol

from novel_engine.domain.models import (
    Choice,
    PinnedAiSettings,
    Scene,
    StoryInstance,
    StoryPreferences,
    StoryStatus,
    Template,
)


@dataclass(frozen=True)
class ProviderSettings:
    """Effective provider/model configuration for one completion call."""

    provider: str
    model: str
    temperature: float = 0.7
    max_output_tokens: int = 2000
    timeout_seconds: float = 60.0
    base_url: str = ""


@dataclass(frozen=True)
class CompletionRequest:
    """Prompt pair plus sampling limits sent to a completion provider."""

    system_prompt: str
    user_prompt: str
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float


@dataclass(frozen=True)
class BranchCreation:
    """Outcome of an atomic branch write."""

    story_id: str
    created: bool


class CompletionProvider(Protocol):
    """Turns a prompt pair into prose, whole or as ordered fragments."""

    name: str

    def complete(self, request: CompletionRequest) -> str: ...

    def stream(
        self,
        request: CompletionRequest,
        *,
        cancel: threading.Event | None = None,
    ) -> Iterator[str]: ...


class CompletionProviderSource(Protocol):
    """Hands out the completion client that serves the given settings."""

    def provider_for(self, settings: ProviderSettings) -> CompletionProvider: ...


class ProviderSettingsSource(Protocol):
    """Supplies the current provider settings."""

    def get(self) -> ProviderSettings: ...


class TemplateStore(Protocol):
    """Read-only template lookups."""

    def get_template(self, *, template_id: str) -> Template | None: ...


class AnomalySink(Protocol):
    """Receives durable warning/error breadcrumbs."""

    def write_anomaly(
        self,
        *,
        scope: str,
        code: str,
        severity: str,
        message: str,
        metadata: dict[str, object] | None = None,
    ) -> object: ...


class NarrativeStore(Protocol):
    """Persistence operations for stories, scenes, and choices."""

    def create_story(
        self,
        *,
        owner_id: str,
        template_id: str,
        title: str,
        preferences: StoryPreferences,
    ) -> StoryInstance: ...

    def get_story(self, *, story_id: str) -> StoryInstance | None: ...

    def list_stories(
        self,
        *,
        owner_id: str,
        status: StoryStatus | None = None,
        template_id: str | None = None,
        favorites_only: bool = False,
        limit: int = 100,
    ) -> list[StoryInstance]: ...

    def update_story_title(self, *, story_id: str, title: str) -> StoryInstance | None: ...

    def set_favorite(
        self, *, story_id: str, owner_id: str, is_favorite: bool
    ) -> StoryInstance | None: ...

    def delete_story(self, *, story_id: str, owner_id: str) -> bool: ...

    def advance_story(
        self,
        *,
        story_id: str,
        current_scene: int,
        status: StoryStatus,
    ) -> StoryInstance | None: ...

    def pin_ai_settings(self, *, story_id: str, settings: PinnedAiSettings) -> None: ...

    def get_scene(self, *, story_id: str, scene_number: int) -> Scene | None: ...

    def list_scenes_before(
        self, *, story_id: str, scene_number: int, limit: int
    ) -> list[Scene]: ...

    def insert_scene(
        self,
        *,
        story_id: str,
        scene_number: int,
        content: str,
        word_count: int,
    ) -> Scene | None: ...

    def get_choice(self, *, story_id: str, choice_point_id: str) -> Choice | None: ...

    def latest_choice(self, *, story_id: str) -> Choice | None: ...

    def insert_choice(
        self,
        *,
        story_id: str,
        choice_point_id: str,
        selected_option: int,
    ) -> Choice: ...

    def list_branches(
        self,
        *,
        parent_story_id: str,
        owner_id: str,
        branched_at_scene: int,
    ) -> list[StoryInstance]: ...

    def create_branch(
        self,
        *,
        parent: StoryInstance,
        title: str,
        branch_at_scene: int,
        prior_choice_point_ids: list[str],
        choice_point_id: str,
        selected_option: int,
    ) -> BranchCreation: ...
