from __future__ import annotations

import json
from datetime import datetime
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tribeguard.logging import get_logger
from tribeguard.storage.errors import StoreUnavailable
from tribeguard.storage.models import AuditEvent


class PostgresAuditStore:
    """Append-only Postgres store for OAuth audit events."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 5) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``oauth_audit_log`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS oauth_audit_log (
                    id UUID PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    organization_id TEXT NOT NULL,
                    platform TEXT NOT NULL,
                    action TEXT NOT NULL,
                    success BOOLEAN NOT NULL,
                    ip TEXT NOT NULL,
                    user_agent TEXT NOT NULL,
                    error TEXT,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    environment TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS oauth_audit_log_created_at_idx "
                "ON oauth_audit_log (created_at)"
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def append(self, event: AuditEvent) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_audit_log (
                        id, user_id, organization_id, platform, action, success,
                        ip, user_agent, error, metadata, environment, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        event.id,
                        event.user_id,
                        event.organization_id,
                        event.platform,
                        event.action,
                        event.success,
                        event.ip,
                        event.user_agent,
                        event.error,
                        json.dumps(event.metadata, default=str),
                        event.environment or "unknown",
                        event.timestamp,
                    ),
                )
        except errors.OperationalError as exc:
            raise StoreUnavailable("audit store unavailable", {"error": str(exc)}) from exc

    def list_events(
        self, *, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        query = "SELECT * FROM oauth_audit_log"
        params: list = []
        if user_id is not None:
            query += " WHERE user_id = %s"
            params.append(user_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    def delete_older_than(self, cutoff: datetime, limit: int) -> int:
        """Delete at most ``limit`` records created before ``cutoff``, oldest first."""
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    DELETE FROM oauth_audit_log
                    WHERE id IN (
                        SELECT id FROM oauth_audit_log
                        WHERE created_at < %s
                        ORDER BY created_at
                        LIMIT %s
                    )
                    """,
                    (cutoff, limit),
                )
                return cur.rowcount or 0
        except errors.OperationalError as exc:
            raise StoreUnavailable("audit store unavailable", {"error": str(exc)}) from exc

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_event(row: dict) -> AuditEvent:
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return AuditEvent(
            id=str(row["id"]),
            user_id=row["user_id"],
            organization_id=row["organization_id"],
            platform=row["platform"],
            action=row["action"],
            success=row["success"],
            ip=row["ip"],
            user_agent=row["user_agent"],
            error=row.get("error"),
            metadata=metadata,
            timestamp=row["created_at"],
            environment=row.get("environment"),
        )
