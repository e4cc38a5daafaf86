"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Sequence

from ..contracts import (
    Role,
    RunNotFound,
    RunStatus,
    StepDefinition,
    StepStatus,
    Workflow,
    WorkflowRun,
    WorkflowStep,
    WorkflowStepResult,
    new_id,
    utcnow,
)
from .repository import WorkflowRepository, changed_fields

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS roles (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        system_prompt TEXT NOT NULL,
        model TEXT,
        color TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_steps (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
        step_order INTEGER NOT NULL,
        parallel_group INTEGER DEFAULT 0,
        role_id TEXT NOT NULL,
        prompt_template TEXT,
        condition_expression TEXT,
        next_step_index INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_runs (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        input_text TEXT,
        final_result TEXT,
        status TEXT DEFAULT 'running',
        started_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_step_results (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL REFERENCES workflow_runs(id) ON DELETE CASCADE,
        step_id TEXT NOT NULL,
        step_order INTEGER,
        role_name TEXT,
        input_text TEXT,
        output_text TEXT,
        status TEXT DEFAULT 'pending',
        error_message TEXT,
        started_at TEXT,
        completed_at TEXT
    )
    """,
)

_RUN_COLUMNS = (
    "wr.id, wr.workflow_id, wr.user_id, wr.input_text, wr.final_result, "
    "wr.status, wr.started_at, wr.completed_at, w.name AS workflow_name"
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _to_column(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (RunStatus, StepStatus)):
        return value.value
    return value


class SQLiteRepository(WorkflowRepository):
    """Persist workflows, roles and runs using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in SCHEMA:
            cur.execute(statement)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _replace_steps(self, workflow_id: str, rows: list[tuple]) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "DELETE FROM workflow_steps WHERE workflow_id = ?", (workflow_id,)
            )
            self._conn.executemany(
                """
                INSERT INTO workflow_steps (id, workflow_id, step_order, parallel_group,
                    role_id, prompt_template, condition_expression, next_step_index, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            self._conn.execute(
                "UPDATE workflows SET updated_at = ? WHERE id = ?",
                (utcnow().isoformat(), workflow_id),
            )

    async def _update(self, table: str, row_id: str, updates: dict) -> bool:
        if not updates:
            return False
        assignments = ", ".join(f"{column} = ?" for column in updates)
        changed = await asyncio.to_thread(
            self._execute,
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            *[_to_column(v) for v in updates.values()],
            row_id,
        )
        return changed > 0

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _workflow(row: sqlite3.Row) -> Workflow:
        return Workflow(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _role(row: sqlite3.Row) -> Role:
        return Role(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            system_prompt=row["system_prompt"],
            model=row["model"],
            color=row["color"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _run(row: sqlite3.Row) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            workflow_id=row["workflow_id"],
            user_id=row["user_id"],
            input_text=row["input_text"],
            final_result=row["final_result"],
            status=row["status"],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            workflow_name=row["workflow_name"],
        )

    @staticmethod
    def _result(row: sqlite3.Row) -> WorkflowStepResult:
        return WorkflowStepResult(
            id=row["id"],
            run_id=row["run_id"],
            step_id=row["step_id"],
            step_order=row["step_order"],
            role_name=row["role_name"],
            input_text=row["input_text"],
            output_text=row["output_text"],
            status=row["status"],
            error_message=row["error_message"],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(
        self, user_id: str, name: str, description: str | None = None
    ) -> Workflow:
        workflow = Workflow(user_id=user_id, name=name, description=description)
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflows (id, user_id, name, description, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            workflow.id,
            user_id,
            name,
            description,
            _ts(workflow.created_at),
            _ts(workflow.updated_at),
        )
        return workflow

    async def get_workflow(self, workflow_id: str, user_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM workflows WHERE id = ? AND user_id = ?",
            workflow_id,
            user_id,
        )
        return self._workflow(row) if row else None

    async def list_workflows(self, user_id: str) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflows WHERE user_id = ? ORDER BY updated_at DESC",
            user_id,
        )
        return [self._workflow(r) for r in rows]

    async def delete_workflow(self, workflow_id: str, user_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._execute,
            "DELETE FROM workflows WHERE id = ? AND user_id = ?",
            workflow_id,
            user_id,
        )
        return deleted > 0

    # ------------------------------------------------------------------
    # Steps
    async def get_steps(self, workflow_id: str) -> list[WorkflowStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT ws.*, r.name AS role_name
            FROM workflow_steps ws
            LEFT JOIN roles r ON ws.role_id = r.id
            WHERE ws.workflow_id = ?
            ORDER BY ws.step_order ASC
            """,
            workflow_id,
        )
        return [
            WorkflowStep(
                id=r["id"],
                workflow_id=r["workflow_id"],
                step_order=r["step_order"],
                parallel_group=r["parallel_group"] or 0,
                role_id=r["role_id"],
                role_name=r["role_name"],
                prompt_template=r["prompt_template"],
                condition_expression=r["condition_expression"],
                next_step_index=r["next_step_index"],
                created_at=_parse_ts(r["created_at"]),
            )
            for r in rows
        ]

    async def replace_steps(
        self, workflow_id: str, definitions: Sequence[StepDefinition]
    ) -> list[WorkflowStep]:
        now = utcnow().isoformat()
        rows = [
            (
                new_id(),
                workflow_id,
                position,
                d.parallel_group,
                d.role_id,
                d.prompt_template,
                d.condition_expression,
                d.next_step_index,
                now,
            )
            for position, d in enumerate(definitions, start=1)
        ]
        await asyncio.to_thread(self._replace_steps, workflow_id, rows)
        return await self.get_steps(workflow_id)

    # ------------------------------------------------------------------
    # Roles
    async def create_role(
        self,
        user_id: str,
        name: str,
        system_prompt: str,
        model: str | None = None,
        color: str | None = None,
    ) -> Role:
        role = Role(
            user_id=user_id,
            name=name,
            system_prompt=system_prompt,
            model=model,
            color=color,
        )
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO roles (id, user_id, name, system_prompt, model, color, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            role.id,
            user_id,
            name,
            system_prompt,
            model,
            color,
            _ts(role.created_at),
        )
        return role

    async def get_role(self, role_id: str, user_id: str | None = None) -> Role | None:
        if user_id is None:
            row = await asyncio.to_thread(
                self._fetchone, "SELECT * FROM roles WHERE id = ?", role_id
            )
        else:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT * FROM roles WHERE id = ? AND user_id = ?",
                role_id,
                user_id,
            )
        return self._role(row) if row else None

    async def list_roles(self, user_id: str) -> list[Role]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM roles WHERE user_id = ? ORDER BY created_at DESC",
            user_id,
        )
        return [self._role(r) for r in rows]

    # ------------------------------------------------------------------
    # Runs
    async def create_run(
        self, workflow_id: str, user_id: str, input_text: str
    ) -> WorkflowRun:
        run = WorkflowRun(workflow_id=workflow_id, user_id=user_id, input_text=input_text)
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflow_runs (id, workflow_id, user_id, input_text, status, started_at) VALUES (?, ?, ?, ?, ?, ?)",
            run.id,
            workflow_id,
            user_id,
            input_text,
            run.status.value,
            _ts(run.started_at),
        )
        return run

    async def update_run(
        self,
        run_id: str,
        *,
        status: RunStatus | None = None,
        final_result: str | None = None,
        completed_at: datetime | None = None,
    ) -> bool:
        return await self._update(
            "workflow_runs",
            run_id,
            changed_fields(
                status=status, final_result=final_result, completed_at=completed_at
            ),
        )

    async def create_step_result(
        self, run_id: str, step_id: str, step_order: int, role_name: str | None
    ) -> WorkflowStepResult:
        result = WorkflowStepResult(
            run_id=run_id, step_id=step_id, step_order=step_order, role_name=role_name
        )
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflow_step_results (id, run_id, step_id, step_order, role_name, status) VALUES (?, ?, ?, ?, ?, ?)",
            result.id,
            run_id,
            step_id,
            step_order,
            role_name,
            result.status.value,
        )
        return result

    async def update_step_result(
        self,
        result_id: str,
        *,
        status: StepStatus | None = None,
        input_text: str | None = None,
        output_text: str | None = None,
        error_message: str | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> bool:
        return await self._update(
            "workflow_step_results",
            result_id,
            changed_fields(
                status=status,
                input_text=input_text,
                output_text=output_text,
                error_message=error_message,
                started_at=started_at,
                completed_at=completed_at,
            ),
        )

    async def get_step_results(self, run_id: str) -> list[WorkflowStepResult]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_step_results WHERE run_id = ? ORDER BY step_order ASC",
            run_id,
        )
        return [self._result(r) for r in rows]

    async def get_run_history(
        self, user_id: str, limit: int = 20
    ) -> list[WorkflowRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_RUN_COLUMNS}
            FROM workflow_runs wr
            LEFT JOIN workflows w ON wr.workflow_id = w.id
            WHERE wr.user_id = ?
            ORDER BY wr.started_at DESC
            LIMIT ?
            """,
            user_id,
            limit,
        )
        return [self._run(r) for r in rows]

    async def get_run_by_id(self, run_id: str, user_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"""
            SELECT {_RUN_COLUMNS}
            FROM workflow_runs wr
            LEFT JOIN workflows w ON wr.workflow_id = w.id
            WHERE wr.id = ? AND wr.user_id = ?
            """,
            run_id,
            user_id,
        )
        return self._run(row) if row else None

    async def delete_run(self, run_id: str, user_id: str) -> None:
        if await self.get_run_by_id(run_id, user_id) is None:
            raise RunNotFound(f"Run {run_id} not found")
        await asyncio.to_thread(
            self._execute, "DELETE FROM workflow_step_results WHERE run_id = ?", run_id
        )
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM workflow_runs WHERE id = ? AND user_id = ?",
            run_id,
            user_id,
        )
