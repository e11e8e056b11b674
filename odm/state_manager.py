"""SQLite persistence for download jobs."""

from __future__ import annotations

import os
import sqlite3
from types import TracebackType

import aiosqlite

from odm.models import DownloadJob


class StateError(Exception):
    """Raised when the job database cannot be read or written."""


class StateManager:
    """Stores download jobs as JSON rows in an SQLite database."""

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._conn = connection

    @classmethod
    async def open(cls, db_path: str | os.PathLike[str]) -> StateManager:
        """Connect to the database file, creating it and its table if needed."""
        try:
            conn = await aiosqlite.connect(os.fspath(db_path))
        except sqlite3.Error as exc:
            raise StateError(f"database error: {exc}") from exc
        manager = cls(conn)
        try:
            await manager._setup_database()
        except StateError:
            await conn.close()
            raise
        return manager

    async def __aenter__(self) -> StateManager:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        await self._conn.close()

    async def _execute(self, sql: str, params: tuple = ()) -> None:
        try:
            await self._conn.execute(sql, params)
            await self._conn.commit()
        except sqlite3.Error as exc:
            raise StateError(f"database query failed: {exc}") from exc

    async def _setup_database(self) -> None:
        await self._execute(
            "CREATE TABLE IF NOT EXISTS downloads ("
            " id INTEGER PRIMARY KEY,"
            " job_data TEXT NOT NULL"
            ")"
        )

    async def save_job(self, job: DownloadJob) -> None:
        """Insert or replace the stored state of a job."""
        await self._execute(
            "INSERT OR REPLACE INTO downloads (id, job_data) VALUES (?, ?)",
            (job.id, job.to_json()),
        )

    async def load_all_jobs(self) -> list[DownloadJob]:
        """Return every stored job, ordered by id."""
        try:
            async with self._conn.execute(
                "SELECT job_data FROM downloads ORDER BY id"
            ) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.Error as exc:
            raise StateError(f"database query failed: {exc}") from exc
        try:
            return [DownloadJob.from_json(row[0]) for row in rows]
        except ValueError as exc:
            raise StateError(f"serialization error: {exc}") from exc

    async def delete_job(self, job_id: int) -> None:
        """Remove a job's row; a missing id is not an error."""
        await self._execute("DELETE FROM downloads WHERE id = ?", (job_id,))