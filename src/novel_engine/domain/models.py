"""Core narrative domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, cast

from novel_engine.domain.errors import InvalidOptionError, TemplateValidationError

StoryStatus = Literal["in-progress", "completed"]
Pacing = Literal["slow-burn", "fast-paced"]
SceneLength = Literal["short", "medium", "long"]

MIN_OPTIONS = 2
MAX_OPTIONS = 4


def _require_text(value: str, *, field_name: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise TemplateValidationError(f"{field_name} must not be empty.")
    return stripped


@dataclass(frozen=True)
class ChoiceOption:
    """One selectable option at a choice point."""

    option_id: str
    text: str
    tone: str
    impact: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "option_id", _require_text(self.option_id, field_name="Option id"))
        object.__setattr__(self, "text", _require_text(self.text, field_name="Option text"))
        object.__setattr__(self, "tone", _require_text(self.tone, field_name="Option tone"))
        object.__setattr__(self, "impact", _require_text(self.impact, field_name="Option impact"))


@dataclass(frozen=True)
class ChoicePoint:
    """A decision offered after one scene of a template."""

    choice_point_id: str
    scene_number: int
    prompt_text: str
    options: tuple[ChoiceOption, ...]

    def __post_init__(self) -> None:
        _require_text(self.choice_point_id, field_name="Choice point id")
        if self.scene_number < 1:
            raise TemplateValidationError("Choice point scene_number must be >= 1.")
        object.__setattr__(
            self, "prompt_text", _require_text(self.prompt_text, field_name="Choice prompt")
        )
        object.__setattr__(self, "options", tuple(self.options))
        if not MIN_OPTIONS <= len(self.options) <= MAX_OPTIONS:
            raise TemplateValidationError(
                f"Choice point at scene {self.scene_number} must have "
                f"{MIN_OPTIONS}-{MAX_OPTIONS} options, got {len(self.options)}."
            )
        option_ids = [option.option_id for option in self.options]
        if len(option_ids) != len(set(option_ids)):
            raise TemplateValidationError(
                f"Choice point at scene {self.scene_number} has duplicate option ids."
            )

    def has_option(self, index: int) -> bool:
        return 0 <= index < len(self.options)

    def option_at(self, index: int) -> ChoiceOption:
        if not self.has_option(index):
            raise InvalidOptionError(
                f"Option {index} is out of range for choice point "
                f"'{self.choice_point_id}' ({len(self.options)} options)."
            )
        return self.options[index]


@dataclass(frozen=True)
class Template:
    """Immutable novel blueprint: scene count and ordered choice points."""

    template_id: str
    title: str
    total_scenes: int
    choice_points: tuple[ChoicePoint, ...] = ()
    description: str = ""

    def __post_init__(self) -> None:
        _require_text(self.template_id, field_name="Template id")
        object.__setattr__(self, "title", _require_text(self.title, field_name="Template title"))
        if self.total_scenes < 1:
            raise TemplateValidationError("Template total_scenes must be >= 1.")
        ordered = tuple(sorted(self.choice_points, key=lambda point: point.scene_number))
        scene_numbers = [point.scene_number for point in ordered]
        if len(scene_numbers) != len(set(scene_numbers)):
            raise TemplateValidationError("Choice point scene numbers must be unique.")
        late = [number for number in scene_numbers if number >= self.total_scenes]
        if late:
            raise TemplateValidationError(
                f"Choice points must sit before the final scene ({self.total_scenes}); "
                f"got scenes {late}."
            )
        point_ids = [point.choice_point_id for point in ordered]
        if len(point_ids) != len(set(point_ids)):
            raise TemplateValidationError("Choice point ids must be unique.")
        object.__setattr__(self, "choice_points", ordered)

    def choice_point_for_scene(self, scene_number: int) -> ChoicePoint | None:
        for point in self.choice_points:
            if point.scene_number == scene_number:
                return point
        return None

    def choice_point_by_id(self, choice_point_id: str) -> ChoicePoint | None:
        for point in self.choice_points:
            if point.choice_point_id == choice_point_id:
                return point
        return None


@dataclass(frozen=True)
class StoryPreferences:
    """Reader preferences folded into the system prompt."""

    genres: tuple[str, ...] = ()
    tropes: tuple[str, ...] = ()
    pacing: Pacing = "slow-burn"
    scene_length: SceneLength = "medium"

    def to_dict(self) -> dict[str, object]:
        return {
            "genres": list(self.genres),
            "tropes": list(self.tropes),
            "pacing": self.pacing,
            "scene_length": self.scene_length,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object] | None) -> StoryPreferences:
        if not payload:
            return cls()
        pacing = str(payload.get("pacing") or "slow-burn")
        scene_length = str(payload.get("scene_length") or "medium")
        return cls(
            genres=_string_tuple(payload.get("genres")),
            tropes=_string_tuple(payload.get("tropes")),
            pacing="fast-paced" if pacing == "fast-paced" else "slow-burn",
            scene_length=cast(
                SceneLength, scene_length if scene_length in {"short", "long"} else "medium"
            ),
        )


def _string_tuple(raw: object) -> tuple[str, ...]:
    if not isinstance(raw, (list, tuple)):
        return ()
    return tuple(str(item).strip() for item in raw if str(item).strip())


@dataclass(frozen=True)
class PinnedAiSettings:
    """Provider settings captured when a story's first scene is generated."""

    provider: str
    model: str
    temperature: float


@dataclass(frozen=True)
class StoryInstance:
    """One reader's playthrough of a template; a root story or a branch."""

    story_id: str
    owner_id: str
    template_id: str
    title: str
    current_scene: int
    status: StoryStatus
    created_at_utc: str
    updated_at_utc: str
    preferences: StoryPreferences = field(default_factory=StoryPreferences)
    branched_from_story_id: str | None = None
    branched_at_scene: int | None = None
    ai_settings: PinnedAiSettings | None = None
    favorited_at_utc: str | None = None

    @property
    def is_favorite(self) -> bool:
        return self.favorited_at_utc is not None

    @property
    def is_branch(self) -> bool:
        return self.branched_at_scene is not None

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"


@dataclass(frozen=True)
class Scene:
    """Generated prose for one (story, scene number) pair."""

    story_id: str
    scene_number: int
    content: str
    word_count: int
    created_at_utc: str


@dataclass(frozen=True)
class Choice:
    """Option a reader selected at a choice point within one story."""

    choice_id: str
    story_id: str
    choice_point_id: str
    selected_option: int
    created_at_utc: str


@dataclass(frozen=True)
class BranchRef:
    """Lightweight pointer to an existing branch."""

    story_id: str
    title: str
