"""Repository abstractions for workflow definitions and run state."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Sequence

from ..contracts import (
    Role,
    RunStatus,
    StepDefinition,
    StepStatus,
    Workflow,
    WorkflowRun,
    WorkflowStep,
    WorkflowStepResult,
)


class WorkflowStore(Protocol):
    """Persistence of workflow headers."""

    async def create_workflow(
        self, user_id: str, name: str, description: str | None = None
    ) -> Workflow:
        """Persist a new, empty workflow."""

    async def get_workflow(self, workflow_id: str, user_id: str) -> Workflow | None:
        """Return the workflow if it exists and belongs to ``user_id``."""

    async def list_workflows(self, user_id: str) -> list[Workflow]:
        """Return the user's workflows, most recently updated first."""

    async def delete_workflow(self, workflow_id: str, user_id: str) -> bool:
        """Delete a workflow and its steps."""


class StepStore(Protocol):
    """Ordered step definitions per workflow."""

    async def get_steps(self, workflow_id: str) -> list[WorkflowStep]:
        """Return steps ordered by ``step_order`` with role names joined."""

    async def replace_steps(
        self, workflow_id: str, definitions: Sequence[StepDefinition]
    ) -> list[WorkflowStep]:
        """Delete all steps and reinsert them as ``step_order`` 1..N."""


class RoleStore(Protocol):
    """Role lookup."""

    async def create_role(
        self,
        user_id: str,
        name: str,
        system_prompt: str,
        model: str | None = None,
        color: str | None = None,
    ) -> Role:
        """Persist a new role."""

    async def get_role(self, role_id: str, user_id: str | None = None) -> Role | None:
        """Return a role, optionally scoped to its owner."""

    async def list_roles(self, user_id: str) -> list[Role]:
        """Return all roles of a user."""


class RunLedger(Protocol):
    """Runs and their per-step results."""

    async def create_run(
        self, workflow_id: str, user_id: str, input_text: str
    ) -> WorkflowRun:
        """Persist a run in ``running`` state."""

    async def update_run(
        self,
        run_id: str,
        *,
        status: RunStatus | None = None,
        final_result: str | None = None,
        completed_at: datetime | None = None,
    ) -> bool:
        """Update only the supplied fields of a run."""

    async def create_step_result(
        self, run_id: str, step_id: str, step_order: int, role_name: str | None
    ) -> WorkflowStepResult:
        """Persist a ``pending`` result row."""

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
        """Update only the supplied fields of a step result."""

    async def get_step_results(self, run_id: str) -> list[WorkflowStepResult]:
        """Return the run's results ordered by ``step_order``."""

    async def get_run_history(
        self, user_id: str, limit: int = 20
    ) -> list[WorkflowRun]:
        """Return the user's most recent runs."""

    async def get_run_by_id(self, run_id: str, user_id: str) -> WorkflowRun | None:
        """Return a run owned by ``user_id``."""

    async def delete_run(self, run_id: str, user_id: str) -> None:
        """Delete a run and its step results; raise ``RunNotFound`` otherwise."""


class WorkflowRepository(WorkflowStore, StepStore, RoleStore, RunLedger, Protocol):
    """Everything the engine and the CLI need from a storage backend."""


def changed_fields(**fields: Optional[object]) -> dict:
    """Drop ``None`` values so partial updates only touch supplied columns."""
    return {key: value for key, value in fields.items() if value is not None}
