"""SQLite implementation of the case repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence, TypeVar

from ..contracts import (
    OPEN_STATUSES,
    CaseNumberSettings,
    CaseRecord,
    StepFilter,
    StepInstance,
    StepTemplate,
    WorkflowType,
    new_id,
)
from ..errors import StepNotFoundError
from .repository import CaseRepository, StepChanges, check_step_fields

T = TypeVar("T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS step_templates (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        workflow_type TEXT NOT NULL,
        step_number INTEGER NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        default_days INTEGER,
        is_active INTEGER NOT NULL DEFAULT 1,
        UNIQUE (organization_id, workflow_type, step_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cases (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        workflow_type TEXT NOT NULL,
        case_number TEXT NOT NULL,
        filing_date TEXT NOT NULL,
        description TEXT,
        created_by_id TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (organization_id, workflow_type, case_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS case_steps (
        id TEXT PRIMARY KEY,
        case_id TEXT NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
        step_number INTEGER NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        default_days INTEGER,
        status TEXT NOT NULL,
        deadline TEXT,
        completed_at TEXT,
        completed_by_id TEXT,
        notes TEXT,
        UNIQUE (case_id, step_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS case_number_settings (
        organization_id TEXT NOT NULL,
        workflow_type TEXT NOT NULL,
        prefix TEXT NOT NULL,
        include_year INTEGER NOT NULL,
        separator TEXT NOT NULL,
        next_number INTEGER NOT NULL,
        padding INTEGER NOT NULL,
        PRIMARY KEY (organization_id, workflow_type)
    )
    """,
)

_CASE_COLUMNS = (
    "id, organization_id, workflow_type, case_number, filing_date, "
    "description, created_by_id, created_at"
)
_STEP_COLUMNS = (
    "id, case_id, step_number, name, description, default_days, status, "
    "deadline, completed_at, completed_by_id, notes"
)


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


class SQLiteCaseRepository(CaseRepository):
    """Persist cases using SQLite.

    All statements run on a worker thread through ``asyncio.to_thread`` and
    are serialized by a lock; multi-statement writes share one transaction.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(query, tuple(_to_db(p) for p in params))
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.execute(query, tuple(_to_db(p) for p in params))
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.execute(query, tuple(_to_db(p) for p in params))
            return cur.fetchall()

    def _transaction(self, work: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``work`` inside one transaction, rolling back if it raises."""
        with self._lock, self._conn:
            return work(self._conn)

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(func, *args)

    # ------------------------------------------------------------------
    # Templates
    async def list_templates(
        self,
        organization_id: str,
        workflow_type: WorkflowType,
        active_only: bool = True,
    ) -> list[StepTemplate]:
        query = (
            "SELECT * FROM step_templates WHERE organization_id = ? AND workflow_type = ?"
        )
        if active_only:
            query += " AND is_active = 1"
        rows = await self._run(
            self._fetchall, query + " ORDER BY step_number", organization_id, workflow_type
        )
        return [StepTemplate.model_validate(dict(r)) for r in rows]

    async def get_template(
        self, organization_id: str, template_id: str
    ) -> StepTemplate | None:
        row = await self._run(
            self._fetchone,
            "SELECT * FROM step_templates WHERE id = ? AND organization_id = ?",
            template_id,
            organization_id,
        )
        return StepTemplate.model_validate(dict(row)) if row else None

    async def create_template(self, template: StepTemplate) -> StepTemplate:
        await self._run(
            self._execute,
            """
            INSERT INTO step_templates
                (id, organization_id, workflow_type, step_number, name,
                 description, default_days, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            template.id,
            template.organization_id,
            template.workflow_type,
            template.step_number,
            template.name,
            template.description,
            template.default_days,
            template.is_active,
        )
        return template

    async def update_template(self, template: StepTemplate) -> StepTemplate:
        await self._run(
            self._execute,
            """
            UPDATE step_templates
            SET step_number = ?, name = ?, description = ?, default_days = ?, is_active = ?
            WHERE id = ? AND organization_id = ?
            """,
            template.step_number,
            template.name,
            template.description,
            template.default_days,
            template.is_active,
            template.id,
            template.organization_id,
        )
        return template

    async def delete_template(self, organization_id: str, template_id: str) -> bool:
        deleted = await self._run(
            self._execute,
            "DELETE FROM step_templates WHERE id = ? AND organization_id = ?",
            template_id,
            organization_id,
        )
        return deleted > 0

    # ------------------------------------------------------------------
    # Cases and steps
    async def create_case_with_steps(
        self, case: CaseRecord, steps: Sequence[StepInstance]
    ) -> CaseRecord:
        stored_steps = [
            s.model_copy(update={"id": s.id or new_id(), "case_id": case.id})
            for s in steps
        ]

        def work(conn: sqlite3.Connection) -> None:
            conn.execute(
                f"INSERT INTO cases ({_CASE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                tuple(
                    _to_db(v)
                    for v in (
                        case.id,
                        case.organization_id,
                        case.workflow_type,
                        case.case_number,
                        case.filing_date,
                        case.description,
                        case.created_by_id,
                        case.created_at,
                    )
                ),
            )
            conn.executemany(
                f"INSERT INTO case_steps ({_STEP_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    tuple(
                        _to_db(v)
                        for v in (
                            s.id,
                            s.case_id,
                            s.step_number,
                            s.name,
                            s.description,
                            s.default_days,
                            s.status,
                            s.deadline,
                            s.completed_at,
                            s.completed_by_id,
                            s.notes,
                        )
                    )
                    for s in stored_steps
                ],
            )

        await self._run(self._transaction, work)
        return case.model_copy(update={"steps": stored_steps})

    async def _steps_for(self, case_id: str) -> list[StepInstance]:
        rows = await self._run(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM case_steps WHERE case_id = ? ORDER BY step_number",
            case_id,
        )
        return [StepInstance.model_validate(dict(r)) for r in rows]

    async def get_case(self, case_id: str, organization_id: str) -> CaseRecord | None:
        row = await self._run(
            self._fetchone,
            f"SELECT {_CASE_COLUMNS} FROM cases WHERE id = ? AND organization_id = ?",
            case_id,
            organization_id,
        )
        if not row:
            return None
        return CaseRecord.model_validate(
            {**dict(row), "steps": await self._steps_for(case_id)}
        )

    async def list_cases(
        self, organization_id: str, workflow_type: WorkflowType | None = None
    ) -> list[CaseRecord]:
        query = f"SELECT {_CASE_COLUMNS} FROM cases WHERE organization_id = ?"
        params: list[Any] = [organization_id]
        if workflow_type is not None:
            query += " AND workflow_type = ?"
            params.append(workflow_type)
        rows = await self._run(
            self._fetchall, query + " ORDER BY created_at DESC", *params
        )
        return [CaseRecord.model_validate(dict(r)) for r in rows]

    async def find_case_by_number(
        self, organization_id: str, workflow_type: WorkflowType, case_number: str
    ) -> CaseRecord | None:
        row = await self._run(
            self._fetchone,
            f"SELECT {_CASE_COLUMNS} FROM cases "
            "WHERE organization_id = ? AND workflow_type = ? AND case_number = ?",
            organization_id,
            workflow_type,
            case_number,
        )
        return CaseRecord.model_validate(dict(row)) if row else None

    async def delete_case(self, case_id: str, organization_id: str) -> bool:
        def work(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                "DELETE FROM cases WHERE id = ? AND organization_id = ?",
                (case_id, organization_id),
            )
            if cur.rowcount == 0:
                return False
            conn.execute("DELETE FROM case_steps WHERE case_id = ?", (case_id,))
            return True

        return await self._run(self._transaction, work)

    async def find_step_instances(
        self, case_id: str, filters: StepFilter | None = None
    ) -> list[StepInstance]:
        filters = filters or StepFilter()
        query = f"SELECT {_STEP_COLUMNS} FROM case_steps WHERE case_id = ?"
        params: list[Any] = [case_id]
        if filters.after_step_number is not None:
            query += " AND step_number > ?"
            params.append(filters.after_step_number)
        if filters.before_step_number is not None:
            query += " AND step_number < ?"
            params.append(filters.before_step_number)
        if filters.statuses is not None:
            query += f" AND status IN ({', '.join('?' for _ in filters.statuses) or 'NULL'})"
            params.extend(filters.statuses)
        if filters.exclude_statuses:
            query += f" AND status NOT IN ({', '.join('?' for _ in filters.exclude_statuses)})"
            params.extend(filters.exclude_statuses)
        rows = await self._run(self._fetchall, query + " ORDER BY step_number", *params)
        return [StepInstance.model_validate(dict(r)) for r in rows]

    async def update_step_instance(
        self, step_id: str, fields: Mapping[str, Any]
    ) -> StepInstance:
        updated = await self.update_step_instances({step_id: fields})
        return updated[0]

    async def update_step_instances(self, changes: StepChanges) -> list[StepInstance]:
        for fields in changes.values():
            check_step_fields(fields)

        def work(conn: sqlite3.Connection) -> list[StepInstance]:
            updated = []
            for step_id, fields in changes.items():
                if fields:
                    assignments = ", ".join(f"{name} = ?" for name in fields)
                    conn.execute(
                        f"UPDATE case_steps SET {assignments} WHERE id = ?",
                        tuple(_to_db(v) for v in fields.values()) + (step_id,),
                    )
                rows = conn.execute(
                    f"SELECT {_STEP_COLUMNS} FROM case_steps WHERE id = ?", (step_id,)
                ).fetchall()
                if not rows:
                    raise StepNotFoundError(f"Step {step_id} not found")
                updated.append(StepInstance.model_validate(dict(rows[0])))
            return updated

        return await self._run(self._transaction, work)

    async def list_upcoming_deadlines(
        self,
        organization_id: str,
        workflow_type: WorkflowType | None = None,
        limit: int = 5,
    ) -> list[tuple[CaseRecord, StepInstance]]:
        case_columns = ", ".join(f"c.{c.strip()} AS c_{c.strip()}" for c in _CASE_COLUMNS.split(","))
        step_columns = ", ".join(f"s.{c.strip()}" for c in _STEP_COLUMNS.split(","))
        query = (
            f"SELECT {case_columns}, {step_columns} FROM case_steps s "
            "JOIN cases c ON c.id = s.case_id "
            "WHERE c.organization_id = ? AND s.deadline IS NOT NULL "
            f"AND s.status IN ({', '.join('?' for _ in OPEN_STATUSES)})"
        )
        params: list[Any] = [organization_id, *OPEN_STATUSES]
        if workflow_type is not None:
            query += " AND c.workflow_type = ?"
            params.append(workflow_type)
        query += " ORDER BY s.deadline, s.step_number LIMIT ?"
        params.append(limit)
        rows = await self._run(self._fetchall, query, *params)
        results = []
        for r in rows:
            data = dict(r)
            case = CaseRecord.model_validate(
                {k[2:]: v for k, v in data.items() if k.startswith("c_")}
            )
            step = StepInstance.model_validate(
                {k: v for k, v in data.items() if not k.startswith("c_")}
            )
            results.append((case, step))
        return results

    # ------------------------------------------------------------------
    # Case-number counter
    async def get_case_number_settings(
        self, organization_id: str, workflow_type: WorkflowType
    ) -> CaseNumberSettings:
        row = await self._run(
            self._fetchone,
            "SELECT prefix, include_year, separator, next_number, padding "
            "FROM case_number_settings WHERE organization_id = ? AND workflow_type = ?",
            organization_id,
            workflow_type,
        )
        if row is None:
            return CaseNumberSettings.defaults_for(workflow_type)
        return CaseNumberSettings.model_validate(dict(row))

    async def save_case_number_settings(
        self,
        organization_id: str,
        workflow_type: WorkflowType,
        settings: CaseNumberSettings,
    ) -> None:
        await self._run(
            self._execute,
            """
            INSERT INTO case_number_settings
                (organization_id, workflow_type, prefix, include_year, separator,
                 next_number, padding)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (organization_id, workflow_type) DO UPDATE SET
                prefix = excluded.prefix,
                include_year = excluded.include_year,
                separator = excluded.separator,
                next_number = excluded.next_number,
                padding = excluded.padding
            """,
            organization_id,
            workflow_type,
            settings.prefix,
            settings.include_year,
            settings.separator,
            settings.next_number,
            settings.padding,
        )

    async def increment_next_number(
        self, organization_id: str, workflow_type: WorkflowType
    ) -> int:
        defaults = CaseNumberSettings.defaults_for(workflow_type)
        params = tuple(_to_db(v) for v in (organization_id, workflow_type))

        def work(conn: sqlite3.Connection) -> int:
            conn.execute(
                """
                INSERT OR IGNORE INTO case_number_settings
                    (organization_id, workflow_type, prefix, include_year, separator,
                     next_number, padding)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                params
                + (
                    defaults.prefix,
                    int(defaults.include_year),
                    defaults.separator,
                    defaults.next_number,
                    defaults.padding,
                ),
            )
            rows = conn.execute(
                """
                UPDATE case_number_settings SET next_number = next_number + 1
                WHERE organization_id = ? AND workflow_type = ?
                RETURNING next_number - 1 AS allocated
                """,
                params,
            ).fetchall()
            return rows[0]["allocated"]

        return await self._run(self._transaction, work)
