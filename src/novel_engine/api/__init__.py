"""Public API surface for HTTP serving and Python-first interfaces."""

from novel_engine.api.app import create_app
from novel_engine.api.contracts import (
    PreferencesBlock,
    TemplateBlueprint,
    load_template_json,
    save_template_json,
)
from novel_engine.api.python_interface import AuthSession, NovelApiClient

__all__ = [
    "AuthSession",
    "NovelApiClient",
    "PreferencesBlock",
    "TemplateBlueprint",
    "create_app",
    "load_template_json",
    "save_template_json",
]
