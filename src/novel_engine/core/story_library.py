"""Story instance lifecycle: start, look up, rename, favorite, and delete."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from novel_engine.domain.errors import (
    NarrativeValidationError,
    StoryAccessError,
    StoryNotFoundError,
    TemplateNotFoundError,
)
from novel_engine.domain.models import StoryInstance, StoryPreferences, StoryStatus
from novel_engine.domain.ports import NarrativeStore, TemplateStore

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200


def next_story_title(template_title: str, existing_titles: Iterable[str]) -> str:
    """Use the template title first, then ``"<title> #n"`` past the highest number taken."""
    numbered = re.compile(rf"^{re.escape(template_title)} #(\d+)$")
    highest = 0
    for title in existing_titles:
        if title == template_title:
            highest = max(highest, 1)
            continue
        match = numbered.match(title)
        if match:
            highest = max(highest, int(match.group(1)))
    if highest == 0:
        return template_title
    return f"{template_title} #{highest + 1}"


class StoryLibrary:
    """Per-user story collection."""

    def __init__(self, *, store: NarrativeStore, templates: TemplateStore) -> None:
        self._store = store
        self._templates = templates

    def start_story(
        self,
        *,
        user_id: str,
        template_id: str,
        preferences: StoryPreferences | None = None,
        title: str | None = None,
    ) -> StoryInstance:
        template = self._templates.get_template(template_id=template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template '{template_id}' was not found.")
        if title is not None and title.strip():
            resolved_title = _clean_title(title)
        else:
            existing = self._store.list_stories(
                owner_id=user_id, template_id=template_id, limit=10_000
            )
            resolved_title = next_story_title(
                template.title, (story.title for story in existing if not story.is_branch)
            )
        story = self._store.create_story(
            owner_id=user_id,
            template_id=template_id,
            title=resolved_title,
            preferences=preferences or StoryPreferences(),
        )
        logger.info(
            "story.started story_id=%s template_id=%s user_id=%s",
            story.story_id,
            template_id,
            user_id,
        )
        return story

    def get_story(self, *, story_id: str, user_id: str) -> StoryInstance:
        """Load a story the caller owns."""
        story = self._store.get_story(story_id=story_id)
        if story is None:
            raise StoryNotFoundError(f"Story '{story_id}' was not found.")
        if story.owner_id != user_id:
            raise StoryAccessError(f"Story '{story_id}' belongs to another user.")
        return story

    def list_stories(
        self,
        *,
        user_id: str,
        status: StoryStatus | None = None,
        favorites_only: bool = False,
        limit: int = 100,
    ) -> list[StoryInstance]:
        return self._store.list_stories(
            owner_id=user_id, status=status, favorites_only=favorites_only, limit=limit
        )

    def rename_story(self, *, story_id: str, user_id: str, title: str) -> StoryInstance:
        self.get_story(story_id=story_id, user_id=user_id)
        updated = self._store.update_story_title(story_id=story_id, title=_clean_title(title))
        if updated is None:
            raise StoryNotFoundError(f"Story '{story_id}' was not found.")
        return updated

    def set_favorite(self, *, story_id: str, user_id: str, is_favorite: bool) -> StoryInstance:
        """Mark or unmark a story the caller owns as a favorite."""
        self.get_story(story_id=story_id, user_id=user_id)
        updated = self._store.set_favorite(
            story_id=story_id, owner_id=user_id, is_favorite=is_favorite
        )
        if updated is None:
            raise StoryNotFoundError(f"Story '{story_id}' was not found.")
        logger.info(
            "story.favorite story_id=%s user_id=%s favorite=%s", story_id, user_id, is_favorite
        )
        return updated

    def delete_story(self, *, story_id: str, user_id: str) -> bool:
        """Delete an owned story along with its scenes and choices."""
        self.get_story(story_id=story_id, user_id=user_id)
        deleted = self._store.delete_story(story_id=story_id, owner_id=user_id)
        if deleted:
            logger.info("story.deleted story_id=%s user_id=%s", story_id, user_id)
        return deleted


def _clean_title(title: str) -> str:
    cleaned = " ".join(title.split())
    if not cleaned:
        raise NarrativeValidationError("Story title must not be empty.")
    if len(cleaned) > MAX_TITLE_LENGTH:
        raise NarrativeValidationError(f"Story title must be at most {MAX_TITLE_LENGTH} characters.")
    return cleaned
