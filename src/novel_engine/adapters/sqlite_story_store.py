"""SQLite-backed persistence for users, tokens, story instances, scenes, and choices."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from novel_engine.domain.errors import ChoiceConflictError
from novel_engine.domain.models import (
    Choice,
    PinnedAiSettings,
    Scene,
    StoryInstance,
    StoryPreferences,
    StoryStatus,
)
from novel_engine.domain.ports import BranchCreation

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 30.0

_STORY_COLUMNS = """
    story_id, owner_id, template_id, title, current_scene, status, preferences_json,
    branched_from_story_id, branched_at_scene, ai_provider, ai_model, ai_temperature,
    favorited_at_utc, created_at_utc, updated_at_utc
"""


@dataclass(frozen=True)
class StoredUser:
    """Stored user account data."""

    user_id: str
    email: str
    display_name: str
    password_hash: str
    created_at_utc: str


@dataclass(frozen=True)
class StoredToken:
    """Stored bearer-token session."""

    token_id: str
    user_id: str
    token_value: str
    expires_at_utc: str
    created_at_utc: str


class SQLiteStoryStore:
    """Persist and query narrative state from one SQLite database."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self._db_path), timeout=BUSY_TIMEOUT_SECONDS)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def _initialize_schema(self) -> None:
        with self._connect() as connection:
            connection.execute("PRAGMA journal_mode = WAL")
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    display_name TEXT NOT NULL,
                    password_hash TEXT NOT NULL,
                    created_at_utc TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS access_tokens (
                    token_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    token_value TEXT NOT NULL UNIQUE,
                    expires_at_utc TEXT NOT NULL,
                    created_at_utc TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS user_stories (
                    story_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    template_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    current_scene INTEGER NOT NULL DEFAULT 1 CHECK (current_scene >= 1),
                    status TEXT NOT NULL DEFAULT 'in-progress'
                        CHECK (status IN ('in-progress', 'completed')),
                    preferences_json TEXT NOT NULL,
                    branched_from_story_id TEXT,
                    branched_at_scene INTEGER,
                    ai_provider TEXT,
                    ai_model TEXT,
                    ai_temperature REAL,
                    favorited_at_utc TEXT,
                    created_at_utc TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL,
                    FOREIGN KEY (owner_id) REFERENCES users(user_id) ON DELETE CASCADE,
                    FOREIGN KEY (branched_from_story_id)
                        REFERENCES user_stories(story_id) ON DELETE SET NULL
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS scenes (
                    story_id TEXT NOT NULL,
                    scene_number INTEGER NOT NULL CHECK (scene_number >= 1),
                    content TEXT NOT NULL,
                    word_count INTEGER NOT NULL,
                    created_at_utc TEXT NOT NULL,
                    PRIMARY KEY (story_id, scene_number),
                    FOREIGN KEY (story_id) REFERENCES user_stories(story_id) ON DELETE CASCADE
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS choices (
                    choice_id TEXT PRIMARY KEY,
                    story_id TEXT NOT NULL,
                    choice_point_id TEXT NOT NULL,
                    selected_option INTEGER NOT NULL CHECK (selected_option >= 0),
                    created_at_utc TEXT NOT NULL,
                    UNIQUE (story_id, choice_point_id),
                    FOREIGN KEY (story_id) REFERENCES user_stories(story_id) ON DELETE CASCADE
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_user_stories_owner_updated
                ON user_stories(owner_id, updated_at_utc DESC)
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_user_stories_branch_lineage
                ON user_stories(branched_from_story_id, branched_at_scene)
                """
            )
            _ensure_column(connection, table="user_stories", column="favorited_at_utc", ddl="TEXT")
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_user_stories_favorites
                ON user_stories(owner_id, favorited_at_utc)
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_tokens_user
                ON access_tokens(user_id, expires_at_utc DESC)
                """
            )

    # Users and bearer tokens

    def create_user(
        self, *, email: str, display_name: str, password_hash: str
    ) -> StoredUser | None:
        """Create a user record; return None when email is already taken."""
        now = datetime.now(UTC).isoformat()
        user_id = uuid4().hex
        try:
            with self._connect() as connection:
                connection.execute(
                    """
                    INSERT INTO users (user_id, email, display_name, password_hash, created_at_utc)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (user_id, email.lower(), display_name, password_hash, now),
                )
        except sqlite3.IntegrityError:
            return None
        return self.get_user_by_id(user_id=user_id)

    def get_user_by_email(self, *, email: str) -> StoredUser | None:
        """Load one user by normalized email."""
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT user_id, email, display_name, password_hash, created_at_utc
                FROM users
                WHERE email = ?
                """,
                (email.lower(),),
            ).fetchone()
        if row is None:
            return None
        return self._user_from_row(row)

    def get_user_by_id(self, *, user_id: str) -> StoredUser | None:
        """Load one user by id."""
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT user_id, email, display_name, password_hash, created_at_utc
                FROM users
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._user_from_row(row)

    def create_token(self, *, user_id: str, token_value: str, expires_at_utc: str) -> StoredToken:
        """Create and store a bearer token."""
        token_id = uuid4().hex
        now = datetime.now(UTC).isoformat()
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO access_tokens (token_id, user_id, token_value, expires_at_utc, created_at_utc)
                VALUES (?, ?, ?, ?, ?)
                """,
                (token_id, user_id, token_value, expires_at_utc, now),
            )
        return StoredToken(
            token_id=token_id,
            user_id=user_id,
            token_value=token_value,
            expires_at_utc=expires_at_utc,
            created_at_utc=now,
        )

    def get_user_by_token(self, *, token_value: str, now_utc: str) -> StoredUser | None:
        """Resolve a bearer token into a user if it is still valid."""
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT u.user_id, u.email, u.display_name, u.password_hash, u.created_at_utc
                FROM access_tokens t
                JOIN users u ON u.user_id = t.user_id
                WHERE t.token_value = ? AND t.expires_at_utc > ?
                """,
                (token_value, now_utc),
            ).fetchone()
        if row is None:
            return None
        return self._user_from_row(row)

    # Story instances

    def create_story(
        self,
        *,
        owner_id: str,
        template_id: str,
        title: str,
        preferences: StoryPreferences,
    ) -> StoryInstance:
        """Create a root story positioned at scene 1."""
        now = datetime.now(UTC).isoformat()
        story_id = uuid4().hex
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO user_stories (
                    story_id, owner_id, template_id, title, current_scene, status,
                    preferences_json, created_at_utc, updated_at_utc
                )
                VALUES (?, ?, ?, ?, 1, 'in-progress', ?, ?, ?)
                """,
                (
                    story_id,
                    owner_id,
                    template_id,
                    title,
                    json.dumps(preferences.to_dict(), ensure_ascii=False, sort_keys=True),
                    now,
                    now,
                ),
            )
        story = self.get_story(story_id=story_id)
        if story is None:
            raise RuntimeError("Created story could not be loaded.")
        return story

    def get_story(self, *, story_id: str) -> StoryInstance | None:
        """Load one story by id."""
        with self._connect() as connection:
            row = connection.execute(
                f"SELECT {_STORY_COLUMNS} FROM user_stories WHERE story_id = ?",
                (story_id,),
            ).fetchone()
        if row is None:
            return None
        return self._story_from_row(row)

    def list_stories(
        self,
        *,
        owner_id: str,
        status: StoryStatus | None = None,
        template_id: str | None = None,
        favorites_only: bool = False,
        limit: int = 100,
    ) -> list[StoryInstance]:
        """Return recent stories for one owner, optionally filtered."""
        clauses = ["owner_id = ?"]
        params: list[object] = [owner_id]
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if template_id is not None:
            clauses.append("template_id = ?")
            params.append(template_id)
        if favorites_only:
            clauses.append("favorited_at_utc IS NOT NULL")
        params.append(limit)
        with self._connect() as connection:
            rows = connection.execute(
                f"""
                SELECT {_STORY_COLUMNS}
                FROM user_stories
                WHERE {" AND ".join(clauses)}
                ORDER BY updated_at_utc DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [self._story_from_row(row) for row in rows]

    def update_story_title(self, *, story_id: str, title: str) -> StoryInstance | None:
        """Rename a story and return the new stored value."""
        now = datetime.now(UTC).isoformat()
        with self._connect() as connection:
            cursor = connection.execute(
                """
                UPDATE user_stories
                SET title = ?, updated_at_utc = ?
                WHERE story_id = ?
                """,
                (title, now, story_id),
            )
            updated_rows = cursor.rowcount
        if updated_rows == 0:
            return None
        return self.get_story(story_id=story_id)

    def set_favorite(
        self, *, story_id: str, owner_id: str, is_favorite: bool
    ) -> StoryInstance | None:
        """Mark or unmark an owned story; a repeated mark keeps the first timestamp."""
        now = datetime.now(UTC).isoformat()
        with self._connect() as connection:
            cursor = connection.execute(
                """
                UPDATE user_stories
                SET favorited_at_utc = CASE
                    WHEN ? THEN COALESCE(favorited_at_utc, ?)
                    ELSE NULL
                END
                WHERE story_id = ? AND owner_id = ?
                """,
                (1 if is_favorite else 0, now, story_id, owner_id),
            )
            updated_rows = cursor.rowcount
        if updated_rows == 0:
            return None
        return self.get_story(story_id=story_id)

    def delete_story(self, *, story_id: str, owner_id: str) -> bool:
        """Delete an owned story; scenes and choices cascade."""
        with self._connect() as connection:
            cursor = connection.execute(
                "DELETE FROM user_stories WHERE story_id = ? AND owner_id = ?",
                (story_id, owner_id),
            )
            deleted = cursor.rowcount
        return deleted > 0

    def advance_story(
        self,
        *,
        story_id: str,
        current_scene: int,
        status: StoryStatus,
    ) -> StoryInstance | None:
        """Move the scene pointer forward; return None when the row did not qualify.

        The guard lives in the UPDATE itself so concurrent writers can never
        lower ``current_scene`` or reopen a completed story.
        """
        now = datetime.now(UTC).isoformat()
        with self._connect() as connection:
            cursor = connection.execute(
                """
                UPDATE user_stories
                SET current_scene = ?,
                    status = CASE WHEN status = 'completed' THEN 'completed' ELSE ? END,
                    updated_at_utc = ?
                WHERE story_id = ? AND current_scene <= ?
                """,
                (current_scene, status, now, story_id, current_scene),
            )
            updated_rows = cursor.rowcount
        if updated_rows == 0:
            return None
        return self.get_story(story_id=story_id)

    def pin_ai_settings(self, *, story_id: str, settings: PinnedAiSettings) -> None:
        """Record provider settings once; later calls leave the first value in place."""
        with self._connect() as connection:
            connection.execute(
                """
                UPDATE user_stories
                SET ai_provider = ?, ai_model = ?, ai_temperature = ?
                WHERE story_id = ? AND ai_provider IS NULL
                """,
                (settings.provider, settings.model, settings.temperature, story_id),
            )

    # Scenes

    def get_scene(self, *, story_id: str, scene_number: int) -> Scene | None:
        """Load the cached scene for one (story, scene number) pair."""
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT story_id, scene_number, content, word_count, created_at_utc
                FROM scenes
                WHERE story_id = ? AND scene_number = ?
                """,
                (story_id, scene_number),
            ).fetchone()
        if row is None:
            return None
        return self._scene_from_row(row)

    def list_scenes(self, *, story_id: str) -> list[Scene]:
        """Return every scene of a story in reading order."""
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT story_id, scene_number, content, word_count, created_at_utc
                FROM scenes
                WHERE story_id = ?
                ORDER BY scene_number ASC
                """,
                (story_id,),
            ).fetchall()
        return [self._scene_from_row(row) for row in rows]

    def list_scenes_before(self, *, story_id: str, scene_number: int, limit: int) -> list[Scene]:
        """Return up to ``limit`` scenes preceding ``scene_number``, oldest first."""
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT story_id, scene_number, content, word_count, created_at_utc
                FROM scenes
                WHERE story_id = ? AND scene_number < ?
                ORDER BY scene_number DESC
                LIMIT ?
                """,
                (story_id, scene_number, limit),
            ).fetchall()
        return [self._scene_from_row(row) for row in reversed(rows)]

    def insert_scene(
        self,
        *,
        story_id: str,
        scene_number: int,
        content: str,
        word_count: int,
    ) -> Scene | None:
        """Persist a generated scene; return None when another writer got there first."""
        now = datetime.now(UTC).isoformat()
        try:
            with self._connect() as connection:
                connection.execute(
                    """
                    INSERT INTO scenes (story_id, scene_number, content, word_count, created_at_utc)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (story_id, scene_number, content, word_count, now),
                )
        except sqlite3.IntegrityError:
            logger.info("scene.insert_lost story_id=%s scene=%s", story_id, scene_number)
            return None
        return Scene(
            story_id=story_id,
            scene_number=scene_number,
            content=content,
            word_count=word_count,
            created_at_utc=now,
        )

    # Choices

    def get_choice(self, *, story_id: str, choice_point_id: str) -> Choice | None:
        """Load the recorded choice at one choice point."""
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT choice_id, story_id, choice_point_id, selected_option, created_at_utc
                FROM choices
                WHERE story_id = ? AND choice_point_id = ?
                """,
                (story_id, choice_point_id),
            ).fetchone()
        if row is None:
            return None
        return self._choice_from_row(row)

    def latest_choice(self, *, story_id: str) -> Choice | None:
        """Load the most recently recorded choice for a story."""
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT choice_id, story_id, choice_point_id, selected_option, created_at_utc
                FROM choices
                WHERE story_id = ?
                ORDER BY created_at_utc DESC, rowid DESC
                LIMIT 1
                """,
                (story_id,),
            ).fetchone()
        if row is None:
            return None
        return self._choice_from_row(row)

    def list_choices(self, *, story_id: str) -> list[Choice]:
        """Return every recorded choice for a story in recording order."""
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT choice_id, story_id, choice_point_id, selected_option, created_at_utc
                FROM choices
                WHERE story_id = ?
                ORDER BY created_at_utc ASC, rowid ASC
                """,
                (story_id,),
            ).fetchall()
        return [self._choice_from_row(row) for row in rows]

    def insert_choice(
        self,
        *,
        story_id: str,
        choice_point_id: str,
        selected_option: int,
    ) -> Choice:
        """Record a choice; a second write for the same choice point is a conflict."""
        choice_id = uuid4().hex
        now = datetime.now(UTC).isoformat()
        try:
            with self._connect() as connection:
                connection.execute(
                    """
                    INSERT INTO choices (
                        choice_id, story_id, choice_point_id, selected_option, created_at_utc
                    )
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (choice_id, story_id, choice_point_id, selected_option, now),
                )
        except sqlite3.IntegrityError as exc:
            raise ChoiceConflictError(
                f"A choice is already recorded for choice point '{choice_point_id}'."
            ) from exc
        return Choice(
            choice_id=choice_id,
            story_id=story_id,
            choice_point_id=choice_point_id,
            selected_option=selected_option,
            created_at_utc=now,
        )

    # Branches

    def list_branches(
        self,
        *,
        parent_story_id: str,
        owner_id: str,
        branched_at_scene: int,
    ) -> list[StoryInstance]:
        """Return the owner's branches forked from one parent at one scene."""
        with self._connect() as connection:
            rows = connection.execute(
                f"""
                SELECT {_STORY_COLUMNS}
                FROM user_stories
                WHERE owner_id = ? AND branched_from_story_id = ? AND branched_at_scene = ?
                ORDER BY created_at_utc ASC
                """,
                (owner_id, parent_story_id, branched_at_scene),
            ).fetchall()
        return [self._story_from_row(row) for row in rows]

    def create_branch(
        self,
        *,
        parent: StoryInstance,
        title: str,
        branch_at_scene: int,
        prior_choice_point_ids: list[str],
        choice_point_id: str,
        selected_option: int,
    ) -> BranchCreation:
        """Clone the parent's prefix into a new story inside one write transaction.

        The dedupe lookup runs under the same write lock, so concurrent
        requests for the same fork collapse onto whichever branch committed
        first.
        """
        connection = self._connect()
        connection.isolation_level = None
        try:
            connection.execute("BEGIN IMMEDIATE")
            existing = connection.execute(
                """
                SELECT s.story_id
                FROM user_stories s
                JOIN choices c ON c.story_id = s.story_id
                WHERE s.owner_id = ?
                  AND s.branched_from_story_id = ?
                  AND s.branched_at_scene = ?
                  AND c.choice_point_id = ?
                  AND c.selected_option = ?
                ORDER BY s.created_at_utc ASC
                LIMIT 1
                """,
                (
                    parent.owner_id,
                    parent.story_id,
                    branch_at_scene,
                    choice_point_id,
                    selected_option,
                ),
            ).fetchone()
            if existing is not None:
                connection.execute("COMMIT")
                return BranchCreation(story_id=str(existing["story_id"]), created=False)

            story_id = uuid4().hex
            now = datetime.now(UTC).isoformat()
            connection.execute(
                """
                INSERT INTO user_stories (
                    story_id, owner_id, template_id, title, current_scene, status,
                    preferences_json, branched_from_story_id, branched_at_scene,
                    ai_provider, ai_model, ai_temperature, created_at_utc, updated_at_utc
                )
                VALUES (?, ?, ?, ?, ?, 'in-progress', ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    story_id,
                    parent.owner_id,
                    parent.template_id,
                    title,
                    branch_at_scene + 1,
                    json.dumps(parent.preferences.to_dict(), ensure_ascii=False, sort_keys=True),
                    parent.story_id,
                    branch_at_scene,
                    parent.ai_settings.provider if parent.ai_settings else None,
                    parent.ai_settings.model if parent.ai_settings else None,
                    parent.ai_settings.temperature if parent.ai_settings else None,
                    now,
                    now,
                ),
            )
            connection.execute(
                """
                INSERT INTO scenes (story_id, scene_number, content, word_count, created_at_utc)
                SELECT ?, scene_number, content, word_count, created_at_utc
                FROM scenes
                WHERE story_id = ? AND scene_number <= ?
                """,
                (story_id, parent.story_id, branch_at_scene),
            )
            if prior_choice_point_ids:
                placeholders = ", ".join("?" for _ in prior_choice_point_ids)
                connection.execute(
                    f"""
                    INSERT INTO choices (
                        choice_id, story_id, choice_point_id, selected_option, created_at_utc
                    )
                    SELECT lower(hex(randomblob(16))), ?, choice_point_id, selected_option,
                           created_at_utc
                    FROM choices
                    WHERE story_id = ? AND choice_point_id IN ({placeholders})
                    """,
                    (story_id, parent.story_id, *prior_choice_point_ids),
                )
            connection.execute(
                """
                INSERT INTO choices (
                    choice_id, story_id, choice_point_id, selected_option, created_at_utc
                )
                VALUES (?, ?, ?, ?, ?)
                """,
                (uuid4().hex, story_id, choice_point_id, selected_option, now),
            )
            connection.execute("COMMIT")
        except BaseException:
            if connection.in_transaction:
                connection.execute("ROLLBACK")
            raise
        finally:
            connection.close()
        return BranchCreation(story_id=story_id, created=True)

    @staticmethod
    def _user_from_row(row: sqlite3.Row) -> StoredUser:
        return StoredUser(
            user_id=str(row["user_id"]),
            email=str(row["email"]),
            display_name=str(row["display_name"]),
            password_hash=str(row["password_hash"]),
            created_at_utc=str(row["created_at_utc"]),
        )

    @staticmethod
    def _story_from_row(row: sqlite3.Row) -> StoryInstance:
        ai_settings = None
        if row["ai_provider"] is not None and row["ai_model"] is not None:
            ai_settings = PinnedAiSettings(
                provider=str(row["ai_provider"]),
                model=str(row["ai_model"]),
                temperature=float(row["ai_temperature"] or 0.0),
            )
        branched_at = row["branched_at_scene"]
        branched_from = row["branched_from_story_id"]
        return StoryInstance(
            story_id=str(row["story_id"]),
            owner_id=str(row["owner_id"]),
            template_id=str(row["template_id"]),
            title=str(row["title"]),
            current_scene=int(row["current_scene"]),
            status="completed" if row["status"] == "completed" else "in-progress",
            preferences=StoryPreferences.from_dict(json.loads(str(row["preferences_json"]))),
            branched_from_story_id=str(branched_from) if branched_from is not None else None,
            branched_at_scene=int(branched_at) if branched_at is not None else None,
            ai_settings=ai_settings,
            favorited_at_utc=(
                str(row["favorited_at_utc"]) if row["favorited_at_utc"] is not None else None
            ),
            created_at_utc=str(row["created_at_utc"]),
            updated_at_utc=str(row["updated_at_utc"]),
        )

    @staticmethod
    def _scene_from_row(row: sqlite3.Row) -> Scene:
        return Scene(
            story_id=str(row["story_id"]),
            scene_number=int(row["scene_number"]),
            content=str(row["content"]),
            word_count=int(row["word_count"]),
            created_at_utc=str(row["created_at_utc"]),
        )

    @staticmethod
    def _choice_from_row(row: sqlite3.Row) -> Choice:
        return Choice(
            choice_id=str(row["choice_id"]),
            story_id=str(row["story_id"]),
            choice_point_id=str(row["choice_point_id"]),
            selected_option=int(row["selected_option"]),
            created_at_utc=str(row["created_at_utc"]),
        )


def _ensure_column(connection: sqlite3.Connection, *, table: str, column: str, ddl: str) -> None:
    """Add a column to databases created before it existed."""
    existing = {str(row["name"]) for row in connection.execute(f"PRAGMA table_info({table})")}
    if column not in existing:
        connection.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
