"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Sequence

import asyncpg

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
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
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
        created_at TIMESTAMPTZ NOT NULL
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
        started_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ
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
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ
    )
    """,
)

_RUN_SELECT = """
    SELECT wr.*, w.name AS workflow_name
    FROM workflow_runs wr
    LEFT JOIN workflows w ON wr.workflow_id = w.id
"""


def _to_column(value: Any) -> Any:
    if isinstance(value, (RunStatus, StepStatus)):
        return value.value
    return value


class PostgresRepository(WorkflowRepository):
    """Persist workflows, roles and runs using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False
        self._schema_lock = asyncio.Lock()

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            async with self._schema_lock:
                if not self._initialized:
                    await self._ensure_schema(conn)
                    self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in SCHEMA:
            await conn.execute(statement)

    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    async def _update(self, table: str, row_id: str, updates: dict) -> bool:
        if not updates:
            return False
        assignments = ", ".join(
            f"{column} = ${position}" for position, column in enumerate(updates, start=1)
        )
        status = await self._execute(
            f"UPDATE {table} SET {assignments} WHERE id = ${len(updates) + 1}",
            *[_to_column(v) for v in updates.values()],
            row_id,
        )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return not status.endswith(" 0")

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(
        self, user_id: str, name: str, description: str | None = None
    ) -> Workflow:
        workflow = Workflow(user_id=user_id, name=name, description=description)
        await self._execute(
            "INSERT INTO workflows (id, user_id, name, description, created_at, updated_at) VALUES ($1, $2, $3, $4, $5, $6)",
            workflow.id,
            user_id,
            name,
            description,
            workflow.created_at,
            workflow.updated_at,
        )
        return workflow

    async def get_workflow(self, workflow_id: str, user_id: str) -> Workflow | None:
        row = await self._fetchrow(
            "SELECT * FROM workflows WHERE id = $1 AND user_id = $2",
            workflow_id,
            user_id,
        )
        return Workflow(**dict(row)) if row else None

    async def list_workflows(self, user_id: str) -> list[Workflow]:
        rows = await self._fetch(
            "SELECT * FROM workflows WHERE user_id = $1 ORDER BY updated_at DESC",
            user_id,
        )
        return [Workflow(**dict(r)) for r in rows]

    async def delete_workflow(self, workflow_id: str, user_id: str) -> bool:
        status = await self._execute(
            "DELETE FROM workflows WHERE id = $1 AND user_id = $2",
            workflow_id,
            user_id,
        )
        return not status.endswith(" 0")

    # ------------------------------------------------------------------
    # Steps
    async def get_steps(self, workflow_id: str) -> list[WorkflowStep]:
        rows = await self._fetch(
            """
            SELECT ws.*, r.name AS role_name
            FROM workflow_steps ws
            LEFT JOIN roles r ON ws.role_id = r.id
            WHERE ws.workflow_id = $1
            ORDER BY ws.step_order ASC
            """,
            workflow_id,
        )
        return [WorkflowStep(**dict(r)) for r in rows]

    async def replace_steps(
        self, workflow_id: str, definitions: Sequence[StepDefinition]
    ) -> list[WorkflowStep]:
        now = utcnow()
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM workflow_steps WHERE workflow_id = $1", workflow_id
                )
                await conn.executemany(
                    """
                    INSERT INTO workflow_steps (id, workflow_id, step_order, parallel_group,
                        role_id, prompt_template, condition_expression, next_step_index, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    """,
                    [
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
                    ],
                )
                await conn.execute(
                    "UPDATE workflows SET updated_at = $1 WHERE id = $2", now, workflow_id
                )
        finally:
            await conn.close()
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
        await self._execute(
            "INSERT INTO roles (id, user_id, name, system_prompt, model, color, created_at) VALUES ($1, $2, $3, $4, $5, $6, $7)",
            role.id,
            user_id,
            name,
            system_prompt,
            model,
            color,
            role.created_at,
        )
        return role

    async def get_role(self, role_id: str, user_id: str | None = None) -> Role | None:
        if user_id is None:
            row = await self._fetchrow("SELECT * FROM roles WHERE id = $1", role_id)
        else:
            row = await self._fetchrow(
                "SELECT * FROM roles WHERE id = $1 AND user_id = $2", role_id, user_id
            )
        return Role(**dict(row)) if row else None

    async def list_roles(self, user_id: str) -> list[Role]:
        rows = await self._fetch(
            "SELECT * FROM roles WHERE user_id = $1 ORDER BY created_at DESC", user_id
        )
        return [Role(**dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Runs
    async def create_run(
        self, workflow_id: str, user_id: str, input_text: str
    ) -> WorkflowRun:
        run = WorkflowRun(workflow_id=workflow_id, user_id=user_id, input_text=input_text)
        await self._execute(
            "INSERT INTO workflow_runs (id, workflow_id, user_id, input_text, status, started_at) VALUES ($1, $2, $3, $4, $5, $6)",
            run.id,
            workflow_id,
            user_id,
            input_text,
            run.status.value,
            run.started_at,
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
        await self._execute(
            "INSERT INTO workflow_step_results (id, run_id, step_id, step_order, role_name, status) VALUES ($1, $2, $3, $4, $5, $6)",
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
        rows = await self._fetch(
            "SELECT * FROM workflow_step_results WHERE run_id = $1 ORDER BY step_order ASC",
            run_id,
        )
        return [WorkflowStepResult(**dict(r)) for r in rows]

    async def get_run_history(
        self, user_id: str, limit: int = 20
    ) -> list[WorkflowRun]:
        rows = await self._fetch(
            _RUN_SELECT + " WHERE wr.user_id = $1 ORDER BY wr.started_at DESC LIMIT $2",
            user_id,
            limit,
        )
        return [WorkflowRun(**dict(r)) for r in rows]

    async def get_run_by_id(self, run_id: str, user_id: str) -> WorkflowRun | None:
        row = await self._fetchrow(
            _RUN_SELECT + " WHERE wr.id = $1 AND wr.user_id = $2", run_id, user_id
        )
        return WorkflowRun(**dict(row)) if row else None

    async def delete_run(self, run_id: str, user_id: str) -> None:
        if await self.get_run_by_id(run_id, user_id) is None:
            raise RunNotFound(f"Run {run_id} not found")
        await self._execute(
            "DELETE FROM workflow_step_results WHERE run_id = $1", run_id
        )
        await self._execute(
            "DELETE FROM workflow_runs WHERE id = $1 AND user_id = $2", run_id, user_id
        )
