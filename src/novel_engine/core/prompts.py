"""Prompt assembly for scene generation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Literal

from novel_engine.domain.models import ChoicePoint, SceneLength, StoryPreferences

StoryPhase = Literal["opening", "early", "rising", "pre-climax", "resolution"]

CONTEXT_EXCERPT_CHARS: Final[int] = 300

_PACING_GUIDANCE: Final[dict[str, str]] = {
    "slow-burn": "Develop relationships gradually, letting tension and emotion build over time.",
    "fast-paced": "Keep momentum high and let chemistry and conflict move quickly.",
}

_PHASE_FOCUS: Final[dict[StoryPhase, str]] = {
    "opening": (
        "Opening scene. Introduce the protagonist and their world and establish "
        "the inciting incident."
    ),
    "early": "Early story. Develop the first encounter or conflict and establish obstacles.",
    "rising": "Rising tension. Deepen relationships, raise stakes, and develop subplots.",
    "pre-climax": (
        "Building to the climax. Heighten emotional stakes and bring conflicts to a head."
    ),
    "resolution": "Resolution. Deliver the emotional climax and a satisfying ending.",
}

SCENE_LENGTH_RANGES: Final[dict[SceneLength, tuple[int, int]]] = {
    "short": (500, 800),
    "medium": (800, 1200),
    "long": (1200, 1800),
}


@dataclass(frozen=True)
class PriorChoiceContext:
    """Option text and tone of the most recent recorded choice."""

    text: str
    tone: str


@dataclass(frozen=True)
class ScenePromptInput:
    """Everything needed to build the user prompt for one scene."""

    template_title: str
    scene_number: int
    total_scenes: int
    previous_scenes: tuple[tuple[int, str], ...] = ()
    last_choice: PriorChoiceContext | None = None
    choice_point: ChoicePoint | None = None
    scene_length: SceneLength = "medium"


@dataclass(frozen=True)
class PromptPair:
    system_prompt: str
    user_prompt: str


def story_phase(scene_number: int, total_scenes: int) -> StoryPhase:
    """Place a scene within the arc of the template."""
    if scene_number == 1:
        return "opening"
    if scene_number <= int(total_scenes * 0.3):
        return "early"
    if scene_number <= int(total_scenes * 0.7):
        return "rising"
    if scene_number < total_scenes:
        return "pre-climax"
    return "resolution"


def build_system_prompt(preferences: StoryPreferences) -> str:
    genres = ", ".join(preferences.genres) or "contemporary"
    tropes = ", ".join(preferences.tropes) or "none in particular"
    low, high = SCENE_LENGTH_RANGES[preferences.scene_length]
    return "\n".join(
        [
            f"You are an expert novelist writing interactive {genres} fiction.",
            "",
            "WRITING STYLE:",
            "- Third-person limited perspective.",
            "- Vivid sensory detail balanced across dialogue, action, and inner thought.",
            f"- {_PACING_GUIDANCE[preferences.pacing]}",
            "",
            "STORY ELEMENTS:",
            f"- Weave in these tropes naturally: {tropes}.",
            "",
            "FORMATTING:",
            f"- Write {low}-{high} words per scene.",
            "- Use clear paragraph breaks.",
            "- Never use square brackets, template markers, or placeholder names.",
            "- End on an emotional hook.",
        ]
    )


def build_scene_prompt(prompt_input: ScenePromptInput) -> str:
    """Build the per-scene user prompt from recent context and the last choice."""
    scene_number = prompt_input.scene_number
    lines = [
        f'Story: "{prompt_input.template_title}"',
        f"Current scene: {scene_number} of {prompt_input.total_scenes}",
        "",
    ]
    if prompt_input.previous_scenes:
        lines.append("RECENT CONTEXT:")
        for number, content in prompt_input.previous_scenes:
            excerpt = content[:CONTEXT_EXCERPT_CHARS].rstrip()
            lines.extend([f"Scene {number} opening:", f"{excerpt}...", ""])
    if prompt_input.last_choice is not None:
        lines.extend(
            [
                "PREVIOUS CHOICE:",
                (
                    f'The protagonist chose to: "{prompt_input.last_choice.text}" '
                    f"({prompt_input.last_choice.tone} tone)."
                ),
                "Reflect the impact of this choice in how the scene unfolds.",
                "",
            ]
        )
    phase = story_phase(scene_number, prompt_input.total_scenes)
    lines.extend([f"SCENE FOCUS: {_PHASE_FOCUS[phase]}", ""])
    choice_point = prompt_input.choice_point
    if choice_point is not None and choice_point.scene_number == scene_number:
        lines.extend(
            [
                f'IMPORTANT: End this scene with a natural pause before: "{choice_point.prompt_text}"',
                "Set up the decision without resolving it.",
                "",
            ]
        )
    low, high = SCENE_LENGTH_RANGES[prompt_input.scene_length]
    lines.append(f"Write scene {scene_number} now ({low}-{high} words):")
    return "\n".join(lines)


def build_prompt_pair(
    preferences: StoryPreferences, prompt_input: ScenePromptInput
) -> PromptPair:
    return PromptPair(
        system_prompt=build_system_prompt(preferences),
        user_prompt=build_scene_prompt(prompt_input),
    )
