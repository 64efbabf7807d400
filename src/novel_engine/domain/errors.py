"""Typed outcomes raised by the narrative state engine."""

from __future__ import annotations


class NarrativeError(Exception):
    """Base class for every engine-level failure."""


class NarrativeValidationError(NarrativeError, ValueError):
    """Rejected input; nothing was applied."""


class TemplateValidationError(NarrativeValidationError):
    """Template or choice point definition violates its invariants."""


class SceneOutOfRangeError(NarrativeValidationError):
    """Requested scene number is below 1 or beyond what the reader unlocked."""


class InvalidOptionError(NarrativeValidationError):
    """Selected option index does not exist on the choice point."""


class ChoicePointMismatchError(NarrativeValidationError):
    """Choice point does not belong to the story's template or scene."""


class SameChoiceBranchError(NarrativeValidationError):
    """Branch option equals the choice the parent already recorded."""


class ProgressRegressionError(NarrativeValidationError):
    """Progress update would move the current scene backwards."""


class ChoiceConflictError(NarrativeError):
    """A choice is already recorded for this story and choice point."""


class StoryCompletedError(NarrativeError):
    """Story is completed and no further scenes may be generated."""


class StoryNotFoundError(NarrativeError, LookupError):
    """Story instance does not exist."""


class TemplateNotFoundError(NarrativeError, LookupError):
    """Template does not exist."""


class StoryAccessError(NarrativeError, PermissionError):
    """Caller does not own the story."""


class GenerationError(NarrativeError):
    """Scene generation failed; re-issuing the same request may succeed."""

    retryable = True


class ProviderError(GenerationError):
    """Completion provider timed out, refused, or returned an error."""


class SceneQualityError(GenerationError):
    """Generated prose failed the minimum quality bounds."""

    def __init__(self, message: str, *, reasons: list[str] | None = None) -> None:
        super().__init__(message)
        self.reasons = list(reasons or [])
