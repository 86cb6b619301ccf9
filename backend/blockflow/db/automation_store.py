"""AutomationStore - persistence for automation records and their scripts."""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

import aiosqlite

from blockflow.db.database import get_db
from blockflow.models import Automation

_SELECT = """
    SELECT a.id, a.name, a.description, a.enabled, a.version, a.graph_json,
           a.created_at, a.updated_at, s.script
    FROM automations a
    LEFT JOIN automation_scripts s ON s.automation_id = a.id
"""


def _timestamp(value: datetime) -> str:
    return value.isoformat()


def _row_to_automation(row: aiosqlite.Row) -> Automation:
    return Automation(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        enabled=bool(row["enabled"]),
        version=row["version"],
        graph=json.loads(row["graph_json"]),
        generated_script=row["script"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class AutomationStore:
    """Storage for automations.

    The record row and its script row are always written in one
    transaction: every write method commits before returning and rolls back
    if any statement fails.
    """

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        db = await get_db()
        try:
            yield db
            await db.commit()
        except BaseException:
            await db.rollback()
            raise

    # ==================== Reads ====================

    async def list_all(self) -> list[Automation]:
        """List all automations, most recently updated first."""
        db = await get_db()
        cursor = await db.execute(f"{_SELECT} ORDER BY a.updated_at DESC")
        rows = await cursor.fetchall()
        return [_row_to_automation(row) for row in rows]

    async def get(self, automation_id: str) -> Automation | None:
        """Get an automation by ID."""
        db = await get_db()
        cursor = await db.execute(f"{_SELECT} WHERE a.id = ?", (automation_id,))
        row = await cursor.fetchone()

        if row is None:
            return None

        return _row_to_automation(row)

    # ==================== Writes ====================

    async def insert(self, automation: Automation) -> None:
        """Insert a new automation together with its generated script."""
        async with self._transaction() as db:
            await db.execute(
                """
                INSERT INTO automations
                    (id, name, description, enabled, version, graph_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    automation.id,
                    automation.name,
                    automation.description,
                    int(automation.enabled),
                    automation.version,
                    json.dumps(automation.graph),
                    _timestamp(automation.created_at),
                    _timestamp(automation.updated_at),
                ),
            )
            await self._write_script(db, automation)

    async def replace(self, automation: Automation) -> None:
        """Overwrite an existing automation and its script."""
        async with self._transaction() as db:
            await db.execute(
                """
                UPDATE automations
                SET name = ?, description = ?, enabled = ?, version = ?,
                    graph_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    automation.name,
                    automation.description,
                    int(automation.enabled),
                    automation.version,
                    json.dumps(automation.graph),
                    _timestamp(automation.updated_at),
                    automation.id,
                ),
            )
            await self._write_script(db, automation)

    async def set_enabled(self, automation_id: str, enabled: bool, updated_at: datetime) -> bool:
        """Flip the enabled flag. Returns False if the automation does not exist."""
        async with self._transaction() as db:
            cursor = await db.execute(
                "UPDATE automations SET enabled = ?, updated_at = ? WHERE id = ?",
                (int(enabled), _timestamp(updated_at), automation_id),
            )
        return cursor.rowcount > 0

    async def delete(self, automation_id: str) -> bool:
        """Delete an automation; its script goes with it."""
        async with self._transaction() as db:
            cursor = await db.execute("DELETE FROM automations WHERE id = ?", (automation_id,))
        return cursor.rowcount > 0

    async def _write_script(self, db: aiosqlite.Connection, automation: Automation) -> None:
        if automation.generated_script is None:
            raise ValueError(f"Automation {automation.id} has no generated script to store")

        await db.execute(
            """
            INSERT INTO automation_scripts (automation_id, version, script, compiled_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(automation_id) DO UPDATE SET
                version = excluded.version,
                script = excluded.script,
                compiled_at = excluded.compiled_at
            """,
            (
                automation.id,
                automation.version,
                automation.generated_script,
                _timestamp(automation.updated_at),
            ),
        )
