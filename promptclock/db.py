"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from promptclock.models import Job, Tenant

SCHEMA_VERSION = 1


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS tenants (
                id TEXT PRIMARY KEY,
                system_instructions TEXT NOT NULL,
                timezone TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                hour INTEGER NOT NULL CHECK (hour BETWEEN 0 AND 23),
                minute INTEGER NOT NULL CHECK (minute BETWEEN 0 AND 59),
                prompt TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(tenant_id) REFERENCES tenants(id)
            );

            CREATE TABLE IF NOT EXISTS tool_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                input_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )

    def ensure_tenant(self, tenant_id: str, system_instructions: str, timezone_name: str) -> bool:
        """Insert the tenant unless it exists. Returns True when a row was created."""

        now = _utc_now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO tenants(id, system_instructions, timezone, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (tenant_id, system_instructions, timezone_name, now, now),
            )
            return cur.rowcount > 0

    def get_tenant(self, tenant_id: str) -> Tenant | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, system_instructions, timezone FROM tenants WHERE id = ?",
                (tenant_id,),
            ).fetchone()
        return _to_tenant(row) if row else None

    def update_tenant(
        self,
        tenant_id: str,
        system_instructions: str | None = None,
        timezone_name: str | None = None,
    ) -> Tenant | None:
        """Apply a partial update; returns the updated tenant or None if absent."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE tenants
                SET system_instructions = COALESCE(?, system_instructions),
                    timezone = COALESCE(?, timezone),
                    updated_at = ?
                WHERE id = ?
                """,
                (system_instructions, timezone_name, _utc_now_iso(), tenant_id),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT id, system_instructions, timezone FROM tenants WHERE id = ?",
                (tenant_id,),
            ).fetchone()
        return _to_tenant(row)

    def create_job(self, tenant_id: str, hour: int, minute: int, prompt: str) -> Job:
        now = _utc_now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO jobs(tenant_id, hour, minute, prompt, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (tenant_id, hour, minute, prompt, now, now),
            )
            job_id = int(cur.lastrowid)
        return Job(id=job_id, tenant_id=tenant_id, hour=hour, minute=minute, prompt=prompt)

    def get_job(self, job_id: int) -> Job | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, tenant_id, hour, minute, prompt FROM jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
        return _to_job(row) if row else None

    def list_jobs(self, tenant_id: str | None = None) -> list[Job]:
        with self._connect() as conn:
            if tenant_id is None:
                rows = conn.execute(
                    "SELECT id, tenant_id, hour, minute, prompt FROM jobs ORDER BY id ASC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT id, tenant_id, hour, minute, prompt FROM jobs WHERE tenant_id = ? ORDER BY id ASC",
                    (tenant_id,),
                ).fetchall()
        return [_to_job(row) for row in rows]

    def update_job(
        self,
        tenant_id: str,
        job_id: int,
        hour: int | None = None,
        minute: int | None = None,
        prompt: str | None = None,
    ) -> Job | None:
        """Apply a partial update to one of the tenant's jobs."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE jobs
                SET hour = COALESCE(?, hour),
                    minute = COALESCE(?, minute),
                    prompt = COALESCE(?, prompt),
                    updated_at = ?
                WHERE tenant_id = ? AND id = ?
                """,
                (hour, minute, prompt, _utc_now_iso(), tenant_id, job_id),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT id, tenant_id, hour, minute, prompt FROM jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
        return _to_job(row)

    def delete_job(self, tenant_id: str, job_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM jobs WHERE tenant_id = ? AND id = ?", (tenant_id, job_id))
            return cur.rowcount > 0

    def log_tool_execution(
        self,
        tenant_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: Any,
        succeeded: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_executions(tenant_id, tool_name, input_json, output_json, succeeded, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    tool_name,
                    json.dumps(tool_input, default=str),
                    json.dumps(tool_output, default=str),
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )

    def list_tool_executions(self, tenant_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT tool_name, input_json, output_json, succeeded
                FROM tool_executions
                WHERE tenant_id = ?
                ORDER BY id ASC
                """,
                (tenant_id,),
            ).fetchall()
        return [dict(row) for row in rows]


def _to_tenant(row: sqlite3.Row) -> Tenant:
    return Tenant(id=row["id"], system_instructions=row["system_instructions"], timezone=row["timezone"])


def _to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=int(row["id"]),
        tenant_id=row["tenant_id"],
        hour=int(row["hour"]),
        minute=int(row["minute"]),
        prompt=row["prompt"],
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
