"""Typed contracts shared by API handlers, the CLI, and the Python client."""

from __future__ import annotations

import re
from collections.abc import Iterable
from pathlib import Path
from typing import Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

from novel_engine.domain.models import (
    MAX_OPTIONS,
    MIN_OPTIONS,
    ChoiceOption,
    ChoicePoint,
    StoryPreferences,
    Template,
)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ContractModel(BaseModel):
    """Base model config used by all API contracts."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


def _dedupe_ordered(values: Iterable[str]) -> list[str]:
    deduped: list[str] = []
    seen: set[str] = set()
    for value in values:
        normalized = value.strip().lower()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return deduped


class ChoiceOptionBlock(ContractModel):
    """One option a reader can pick at a choice point."""

    id: str = Field(min_length=1, max_length=120)
    text: str = Field(min_length=1, max_length=500)
    tone: str = Field(min_length=1, max_length=120)
    impact: str = Field(min_length=1, max_length=500)


class ChoicePointBlock(ContractModel):
    """A decision offered after one scene."""

    id: str = Field(min_length=1, max_length=120)
    scene_number: int = Field(ge=1)
    prompt_text: str = Field(min_length=1, max_length=1000)
    options: list[ChoiceOptionBlock] = Field(min_length=MIN_OPTIONS, max_length=MAX_OPTIONS)

    @model_validator(mode="after")
    def _validate_option_ids(self) -> ChoicePointBlock:
        option_ids = [option.id for option in self.options]
        if len(option_ids) != len(set(option_ids)):
            raise ValueError(f"Choice point '{self.id}' has duplicate option ids.")
        return self

    def to_domain(self) -> ChoicePoint:
        return ChoicePoint(
            choice_point_id=self.id,
            scene_number=self.scene_number,
            prompt_text=self.prompt_text,
            options=tuple(
                ChoiceOption(
                    option_id=option.id,
                    text=option.text,
                    tone=option.tone,
                    impact=option.impact,
                )
                for option in self.options
            ),
        )

    @classmethod
    def from_domain(cls, point: ChoicePoint) -> ChoicePointBlock:
        return cls(
            id=point.choice_point_id,
            scene_number=point.scene_number,
            prompt_text=point.prompt_text,
            options=[
                ChoiceOptionBlock(
                    id=option.option_id,
                    text=option.text,
                    tone=option.tone,
                    impact=option.impact,
                )
                for option in point.options
            ],
        )


class TemplateBlueprint(ContractModel):
    """Portable template definition imported from JSON files."""

    template_id: str = Field(min_length=1, max_length=120)
    title: str = Field(min_length=1, max_length=300)
    description: str = Field(default="", max_length=5000)
    total_scenes: int = Field(ge=1, le=500)
    choice_points: list[ChoicePointBlock] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_choice_points(self) -> TemplateBlueprint:
        scene_numbers = [point.scene_number for point in self.choice_points]
        if len(scene_numbers) != len(set(scene_numbers)):
            raise ValueError("Choice point scene numbers must be unique within a template.")
        late = sorted(number for number in scene_numbers if number >= self.total_scenes)
        if late:
            raise ValueError(
                f"Choice points must appear before scene {self.total_scenes}; got {late}."
            )
        point_ids = [point.id for point in self.choice_points]
        if len(point_ids) != len(set(point_ids)):
            raise ValueError("Choice point ids must be unique within a template.")
        return self

    def to_domain(self) -> Template:
        return Template(
            template_id=self.template_id,
            title=self.title,
            description=self.description,
            total_scenes=self.total_scenes,
            choice_points=tuple(point.to_domain() for point in self.choice_points),
        )

    @classmethod
    def from_domain(cls, template: Template) -> TemplateBlueprint:
        return cls(
            template_id=template.template_id,
            title=template.title,
            description=template.description,
            total_scenes=template.total_scenes,
            choice_points=[ChoicePointBlock.from_domain(point) for point in template.choice_points],
        )


class PreferencesBlock(ContractModel):
    """Reader preferences applied when generating scenes."""

    genres: list[str] = Field(default_factory=list, max_length=20)
    tropes: list[str] = Field(default_factory=list, max_length=20)
    pacing: Literal["slow-burn", "fast-paced"] = "slow-burn"
    scene_length: Literal["short", "medium", "long"] = "medium"

    @field_validator("genres", "tropes")
    @classmethod
    def _normalize_lists(cls, values: list[str]) -> list[str]:
        return _dedupe_ordered(values)

    def to_domain(self) -> StoryPreferences:
        return StoryPreferences(
            genres=tuple(self.genres),
            tropes=tuple(self.tropes),
            pacing=self.pacing,
            scene_length=self.scene_length,
        )

    @classmethod
    def from_domain(cls, preferences: StoryPreferences) -> PreferencesBlock:
        return cls(
            genres=list(preferences.genres),
            tropes=list(preferences.tropes),
            pacing=preferences.pacing,
            scene_length=preferences.scene_length,
        )


class TemplateSummaryResponse(ContractModel):
    template_id: str
    title: str
    description: str
    total_scenes: int
    choice_point_count: int


class StoryStartRequest(ContractModel):
    """Start a new root story from a template."""

    template_id: str = Field(min_length=1, max_length=120)
    title: str | None = Field(default=None, max_length=200)
    preferences: PreferencesBlock = Field(default_factory=PreferencesBlock)


class StoryRenameRequest(ContractModel):
    title: str = Field(min_length=1, max_length=200)


class StoryFavoriteRequest(ContractModel):
    is_favorite: bool


class StoryResponse(ContractModel):
    """Story instance returned by the API."""

    story_id: str
    owner_id: str
    template_id: str
    title: str
    current_scene: int
    status: Literal["in-progress", "completed"]
    preferences: PreferencesBlock
    branched_from_story_id: str | None
    branched_at_scene: int | None
    is_favorite: bool = False
    favorited_at_utc: str | None = None
    created_at_utc: str
    updated_at_utc: str


class StorySummaryResponse(ContractModel):
    """Enclosing story fields returned alongside scene content."""

    story_id: str
    title: str
    template_id: str
    template_title: str
    current_scene: int
    total_scenes: int
    status: Literal["in-progress", "completed"]
    branched_from_story_id: str | None
    branched_at_scene: int | None


class SceneResponse(ContractModel):
    """Scene content plus the context a reader needs to continue."""

    scene_number: int
    content: str
    word_count: int
    cached: bool
    story: StorySummaryResponse
    choice_point: ChoicePointBlock | None
    previous_choice: int | None


class ChoiceRequest(ContractModel):
    choice_point_id: str = Field(min_length=1, max_length=120)
    selected_option: int = Field(ge=0, le=MAX_OPTIONS - 1)


class ChoiceResponse(ContractModel):
    choice_id: str
    completed: bool
    next_scene: int


class ProgressRequest(ContractModel):
    current_scene: int = Field(ge=1)


class ProgressResponse(ContractModel):
    success: bool = True
    current_scene: int
    completed: bool


class BranchRefResponse(ContractModel):
    story_id: str
    title: str


class BranchCheckResponse(ContractModel):
    exists: bool
    branch: BranchRefResponse | None = None


class BranchCreateRequest(ContractModel):
    """Fork a story at a choice point with a different option."""

    scene_number: int = Field(ge=1)
    choice_point_id: str = Field(min_length=1, max_length=120)
    new_option: int = Field(ge=0, le=MAX_OPTIONS - 1)


class BranchCreateResponse(ContractModel):
    success: bool = True
    story_id: str


class DeleteResponse(ContractModel):
    success: bool


class ErrorResponse(ContractModel):
    """Typed error body returned for engine failures."""

    detail: str
    code: str
    retryable: bool = False
    reasons: list[str] = Field(default_factory=list)


class AuthRegisterRequest(ContractModel):
    """Register a reader account."""

    email: str = Field(min_length=5, max_length=320)
    password: SecretStr = Field(min_length=8, max_length=200)
    display_name: str = Field(min_length=1, max_length=120)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not EMAIL_PATTERN.match(normalized):
            raise ValueError("Email must be a valid address.")
        return normalized

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: SecretStr) -> SecretStr:
        raw = value.get_secret_value()
        if raw.strip() != raw:
            raise ValueError("Password must not start or end with whitespace.")
        if not any(char.isalpha() for char in raw) or not any(char.isdigit() for char in raw):
            raise ValueError("Password must include at least one letter and one number.")
        return value


class AuthLoginRequest(ContractModel):
    """Authenticate and request an access token."""

    email: str = Field(min_length=5, max_length=320)
    password: SecretStr = Field(min_length=8, max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return value.strip().lower()


class AuthTokenResponse(ContractModel):
    """Bearer token payload used by web and Python clients."""

    access_token: str
    token_type: str = Field(default="bearer", pattern=r"^bearer$")
    expires_at_utc: str


class UserResponse(ContractModel):
    """Public user profile returned from authenticated endpoints."""

    user_id: str
    email: str
    display_name: str
    created_at_utc: str


def load_template_json(path: Path) -> TemplateBlueprint:
    """Load and validate a template definition from disk."""
    return TemplateBlueprint.model_validate_json(path.read_text(encoding="utf-8"))


def save_template_json(path: Path, blueprint: TemplateBlueprint) -> None:
    """Write a template definition as readable JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(blueprint.model_dump_json(indent=2) + "\n", encoding="utf-8")
