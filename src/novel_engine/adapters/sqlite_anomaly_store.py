"""Durable breadcrumbs for failed generations, rejected writes, and lost races."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

SEVERITIES = frozenset({"info", "warning", "error"})


@dataclass(frozen=True)
class AnomalyRecord:
    """One stored anomaly."""

    anomaly_id: str
    created_at_utc: str
    scope: str
    code: str
    severity: str
    message: str
    metadata: dict[str, object]


class SQLiteAnomalyStore:
    """Append-only anomaly log bounded by age and row count."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self._db_path), timeout=30.0)
        connection.row_factory = sqlite3.Row
        return connection

    def _initialize_schema(self) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS engine_anomalies (
                    anomaly_id TEXT PRIMARY KEY,
                    created_at_utc TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    code TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    message TEXT NOT NULL,
                    metadata_json TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_engine_anomalies_scope
                ON engine_anomalies(scope, created_at_utc DESC)
                """
            )

    def write_anomaly(
        self,
        *,
        scope: str,
        code: str,
        severity: str,
        message: str,
        metadata: dict[str, object] | None = None,
    ) -> AnomalyRecord:
        """Append one anomaly; unknown severities are stored as ``error``."""
        normalized_severity = severity if severity in SEVERITIES else "error"
        record = AnomalyRecord(
            anomaly_id=uuid4().hex,
            created_at_utc=datetime.now(UTC).isoformat(),
            scope=scope,
            code=code,
            severity=normalized_severity,
            message=message,
            metadata=dict(metadata or {}),
        )
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO engine_anomalies (
                    anomaly_id, created_at_utc, scope, code, severity, message, metadata_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.anomaly_id,
                    record.created_at_utc,
                    record.scope,
                    record.code,
                    record.severity,
                    record.message,
                    json.dumps(record.metadata, ensure_ascii=False, sort_keys=True, default=str),
                ),
            )
        return record

    def prune_anomalies(self, *, retention_days: int, max_rows: int) -> int:
        """Drop records older than the retention window, then the oldest overflow rows."""
        if retention_days <= 0:
            raise ValueError("retention_days must be positive.")
        if max_rows <= 0:
            raise ValueError("max_rows must be positive.")
        cutoff = (datetime.now(UTC) - timedelta(days=retention_days)).isoformat()
        with self._connect() as connection:
            expired = connection.execute(
                "DELETE FROM engine_anomalies WHERE created_at_utc < ?",
                (cutoff,),
            ).rowcount
            overflow = connection.execute(
                """
                DELETE FROM engine_anomalies
                WHERE anomaly_id NOT IN (
                    SELECT anomaly_id
                    FROM engine_anomalies
                    ORDER BY created_at_utc DESC
                    LIMIT ?
                )
                """,
                (max_rows,),
            ).rowcount
        return int(expired) + int(overflow)

    def list_recent(self, *, limit: int = 100, scope: str | None = None) -> list[AnomalyRecord]:
        """Newest anomalies first, optionally narrowed to one scope."""
        if limit <= 0:
            raise ValueError("limit must be positive.")
        query = """
            SELECT anomaly_id, created_at_utc, scope, code, severity, message, metadata_json
            FROM engine_anomalies
        """
        params: list[object] = []
        if scope is not None:
            query += " WHERE scope = ?"
            params.append(scope)
        query += " ORDER BY created_at_utc DESC LIMIT ?"
        params.append(limit)
        with self._connect() as connection:
            rows = connection.execute(query, params).fetchall()
        return [
            AnomalyRecord(
                anomaly_id=str(row["anomaly_id"]),
                created_at_utc=str(row["created_at_utc"]),
                scope=str(row["scope"]),
                code=str(row["code"]),
                severity=str(row["severity"]),
                message=str(row["message"]),
                metadata=json.loads(str(row["metadata_json"])),
            )
            for row in rows
        ]
