"""Deterministic acceptance checks for generated scene prose."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

from novel_engine.core.prompts import SCENE_LENGTH_RANGES
from novel_engine.domain.models import SceneLength

WORD_PATTERN = re.compile(r"\S+")
PLACEHOLDER_PATTERN = re.compile(r"[\[\]]|\{\{|\}\}")

DEFAULT_MIN_WORDS = 400
DEFAULT_MAX_WORDS = 2000


@dataclass(frozen=True)
class SceneQualityCheck:
    """One finding from the scene checks."""

    code: str
    severity: Literal["error", "warning"]
    message: str


@dataclass(frozen=True)
class SceneQualityResult:
    """Aggregated verdict for one generated scene."""

    word_count: int
    passed: bool
    checks: tuple[SceneQualityCheck, ...] = field(default_factory=tuple)

    @property
    def errors(self) -> list[str]:
        return [check.message for check in self.checks if check.severity == "error"]

    @property
    def warnings(self) -> list[str]:
        return [check.message for check in self.checks if check.severity == "warning"]


def count_words(text: str) -> int:
    return len(WORD_PATTERN.findall(text))


@dataclass(frozen=True)
class SceneQualityPolicy:
    """Hard word bounds plus the reader's preferred length band."""

    min_words: int = DEFAULT_MIN_WORDS
    max_words: int = DEFAULT_MAX_WORDS

    def __post_init__(self) -> None:
        if self.min_words < 1:
            raise ValueError("min_words must be >= 1.")
        if self.max_words < self.min_words:
            raise ValueError("max_words must be >= min_words.")

    def evaluate(self, content: str, *, scene_length: SceneLength = "medium") -> SceneQualityResult:
        text = content.strip()
        word_count = count_words(text)
        checks: list[SceneQualityCheck] = []

        if not text:
            checks.append(
                SceneQualityCheck(code="empty", severity="error", message="Scene is empty.")
            )
        else:
            if word_count < self.min_words:
                checks.append(
                    SceneQualityCheck(
                        code="too_short",
                        severity="error",
                        message=f"Scene is too short ({word_count} words, minimum {self.min_words}).",
                    )
                )
            if word_count > self.max_words:
                checks.append(
                    SceneQualityCheck(
                        code="too_long",
                        severity="error",
                        message=f"Scene is too long ({word_count} words, maximum {self.max_words}).",
                    )
                )
            if PLACEHOLDER_PATTERN.search(text):
                checks.append(
                    SceneQualityCheck(
                        code="placeholder",
                        severity="error",
                        message="Scene contains unresolved placeholder markers.",
                    )
                )

        low, high = SCENE_LENGTH_RANGES[scene_length]
        if text and word_count < low:
            checks.append(
                SceneQualityCheck(
                    code="shorter_than_requested",
                    severity="warning",
                    message=f"Scene is shorter than requested ({word_count} words, expected {low}-{high}).",
                )
            )
        if word_count > high:
            checks.append(
                SceneQualityCheck(
                    code="longer_than_requested",
                    severity="warning",
                    message=f"Scene is longer than requested ({word_count} words, expected {low}-{high}).",
                )
            )

        return SceneQualityResult(
            word_count=word_count,
            passed=not any(check.severity == "error" for check in checks),
            checks=tuple(checks),
        )
