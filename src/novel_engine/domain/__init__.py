"""Domain models and ports for the narrative state engine."""

from novel_engine.domain.models import (
    BranchRef,
    Choice,
    ChoiceOption,
    ChoicePoint,
    Scene,
    StoryInstance,
    StoryPreferences,
    Template,
)
from novel_engine.domain.ports import (
    CompletionProvider,
    CompletionRequest,
    NarrativeStore,
    ProviderSettings,
    TemplateStore,
)

__all__ = [
    "BranchRef",
    "Choice",
    "ChoiceOption",
    "ChoicePoint",
    "CompletionProvider",
    "CompletionRequest",
    "NarrativeStore",
    "ProviderSettings",
    "Scene",
    "StoryInstance",
    "StoryPreferences",
    "Template",
    "TemplateStore",
]
