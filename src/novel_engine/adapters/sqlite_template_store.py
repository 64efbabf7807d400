"""SQLite-backed template catalog; read-only to the engine, seeded by the CLI."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from novel_engine.domain.models import ChoiceOption, ChoicePoint, Template

logger = logging.getLogger(__name__)


class SQLiteTemplateStore:
    """Load templates and their choice points."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self._db_path), timeout=30.0)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def _initialize_schema(self) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS novel_templates (
                    template_id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    total_scenes INTEGER NOT NULL CHECK (total_scenes >= 1),
                    created_at_utc TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS choice_points (
                    choice_point_id TEXT PRIMARY KEY,
                    template_id TEXT NOT NULL,
                    scene_number INTEGER NOT NULL,
                    prompt_text TEXT NOT NULL,
                    options_json TEXT NOT NULL,
                    UNIQUE (template_id, scene_number),
                    FOREIGN KEY (template_id) REFERENCES novel_templates(template_id)
                        ON DELETE CASCADE
                )
                """
            )

    def save_template(self, template: Template) -> Template:
        """Insert or fully replace one template and its choice points."""
        now = datetime.now(UTC).isoformat()
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO novel_templates (
                    template_id, title, description, total_scenes, created_at_utc, updated_at_utc
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(template_id) DO UPDATE SET
                    title = excluded.title,
                    description = excluded.description,
                    total_scenes = excluded.total_scenes,
                    updated_at_utc = excluded.updated_at_utc
                """,
                (
                    template.template_id,
                    template.title,
                    template.description,
                    template.total_scenes,
                    now,
                    now,
                ),
            )
            connection.execute(
                "DELETE FROM choice_points WHERE template_id = ?",
                (template.template_id,),
            )
            connection.executemany(
                """
                INSERT INTO choice_points (
                    choice_point_id, template_id, scene_number, prompt_text, options_json
                )
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (
                        point.choice_point_id,
                        template.template_id,
                        point.scene_number,
                        point.prompt_text,
                        json.dumps(
                            [
                                {
                                    "id": option.option_id,
                                    "text": option.text,
                                    "tone": option.tone,
                                    "impact": option.impact,
                                }
                                for option in point.options
                            ],
                            ensure_ascii=False,
                        ),
                    )
                    for point in template.choice_points
                ],
            )
        logger.info(
            "template.saved template_id=%s choice_points=%s",
            template.template_id,
            len(template.choice_points),
        )
        return template

    def get_template(self, *, template_id: str) -> Template | None:
        """Load one template with its ordered choice points."""
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT template_id, title, description, total_scenes
                FROM novel_templates
                WHERE template_id = ?
                """,
                (template_id,),
            ).fetchone()
            if row is None:
                return None
            point_rows = connection.execute(
                """
                SELECT choice_point_id, scene_number, prompt_text, options_json
                FROM choice_points
                WHERE template_id = ?
                ORDER BY scene_number ASC
                """,
                (template_id,),
            ).fetchall()
        return self._template_from_rows(row, point_rows)

    def list_templates(self) -> list[Template]:
        """Return every template ordered by title."""
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT template_id FROM novel_templates ORDER BY title ASC, template_id ASC"
            ).fetchall()
        templates: list[Template] = []
        for row in rows:
            template = self.get_template(template_id=str(row["template_id"]))
            if template is not None:
                templates.append(template)
        return templates

    def get_choice_point(self, *, choice_point_id: str) -> tuple[str, ChoicePoint] | None:
        """Resolve a choice point id to its owning template id and definition."""
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT template_id, choice_point_id, scene_number, prompt_text, options_json
                FROM choice_points
                WHERE choice_point_id = ?
                """,
                (choice_point_id,),
            ).fetchone()
        if row is None:
            return None
        return str(row["template_id"]), self._choice_point_from_row(row)

    def _template_from_rows(
        self, row: sqlite3.Row, point_rows: list[sqlite3.Row]
    ) -> Template:
        return Template(
            template_id=str(row["template_id"]),
            title=str(row["title"]),
            description=str(row["description"]),
            total_scenes=int(row["total_scenes"]),
            choice_points=tuple(self._choice_point_from_row(point) for point in point_rows),
        )

    @staticmethod
    def _choice_point_from_row(row: sqlite3.Row) -> ChoicePoint:
        options = json.loads(str(row["options_json"]))
        return ChoicePoint(
            choice_point_id=str(row["choice_point_id"]),
            scene_number=int(row["scene_number"]),
            prompt_text=str(row["prompt_text"]),
            options=tuple(
                ChoiceOption(
                    option_id=str(option["id"]),
                    text=str(option["text"]),
                    tone=str(option["tone"]),
                    impact=str(option["impact"]),
                )
                for option in options
            ),
        )
