"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Sequence

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
    utcnow,
)
from .repository import WorkflowRepository, changed_fields


class InMemoryRepository(WorkflowRepository):
    """Store workflows, roles and runs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._steps: Dict[str, list[WorkflowStep]] = {}
        self._roles: Dict[str, Role] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._results: Dict[str, WorkflowStepResult] = {}

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(
        self, user_id: str, name: str, description: str | None = None
    ) -> Workflow:
        workflow = Workflow(user_id=user_id, name=name, description=description)
        self._workflows[workflow.id] = workflow
        self._steps[workflow.id] = []
        return workflow.model_copy()

    async def get_workflow(self, workflow_id: str, user_id: str) -> Workflow | None:
        workflow = self._workflows.get(workflow_id)
        if workflow is None or workflow.user_id != user_id:
            return None
        return workflow.model_copy()

    async def list_workflows(self, user_id: str) -> list[Workflow]:
        owned = [w for w in self._workflows.values() if w.user_id == user_id]
        owned.sort(key=lambda w: w.updated_at, reverse=True)
        return [w.model_copy() for w in owned]

    async def delete_workflow(self, workflow_id: str, user_id: str) -> bool:
        workflow = self._workflows.get(workflow_id)
        if workflow is None or workflow.user_id != user_id:
            return False
        del self._workflows[workflow_id]
        self._steps.pop(workflow_id, None)
        return True

    # ------------------------------------------------------------------
    # Steps
    async def get_steps(self, workflow_id: str) -> list[WorkflowStep]:
        steps = sorted(self._steps.get(workflow_id, []), key=lambda s: s.step_order)
        return [
            step.model_copy(update={"role_name": self._role_name(step.role_id)})
            for step in steps
        ]

    async def replace_steps(
        self, workflow_id: str, definitions: Sequence[StepDefinition]
    ) -> list[WorkflowStep]:
        self._steps[workflow_id] = [
            WorkflowStep(
                workflow_id=workflow_id,
                step_order=position,
                **definition.model_dump(),
            )
            for position, definition in enumerate(definitions, start=1)
        ]
        workflow = self._workflows.get(workflow_id)
        if workflow is not None:
            workflow.updated_at = utcnow()
        return await self.get_steps(workflow_id)

    def _role_name(self, role_id: str) -> str | None:
        role = self._roles.get(role_id)
        return role.name if role else None

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
        self._roles[role.id] = role
        return role.model_copy()

    async def get_role(self, role_id: str, user_id: str | None = None) -> Role | None:
        role = self._roles.get(role_id)
        if role is None or (user_id is not None and role.user_id != user_id):
            return None
        return role.model_copy()

    async def list_roles(self, user_id: str) -> list[Role]:
        owned = [r for r in self._roles.values() if r.user_id == user_id]
        owned.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy() for r in owned]

    # ------------------------------------------------------------------
    # Runs
    async def create_run(
        self, workflow_id: str, user_id: str, input_text: str
    ) -> WorkflowRun:
        run = WorkflowRun(workflow_id=workflow_id, user_id=user_id, input_text=input_text)
        self._runs[run.id] = run
        return run.model_copy()

    async def update_run(
        self,
        run_id: str,
        *,
        status: RunStatus | None = None,
        final_result: str | None = None,
        completed_at: datetime | None = None,
    ) -> bool:
        run = self._runs.get(run_id)
        if run is None:
            return False
        updates = changed_fields(
            status=status, final_result=final_result, completed_at=completed_at
        )
        if not updates:
            return False
        self._runs[run_id] = run.model_copy(update=updates)
        return True

    async def create_step_result(
        self, run_id: str, step_id: str, step_order: int, role_name: str | None
    ) -> WorkflowStepResult:
        result = WorkflowStepResult(
            run_id=run_id, step_id=step_id, step_order=step_order, role_name=role_name
        )
        self._results[result.id] = result
        return result.model_copy()

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
        result = self._results.get(result_id)
        if result is None:
            return False
        updates = changed_fields(
            status=status,
            input_text=input_text,
            output_text=output_text,
            error_message=error_message,
            started_at=started_at,
            completed_at=completed_at,
        )
        if not updates:
            return False
        self._results[result_id] = result.model_copy(update=updates)
        return True

    async def get_step_results(self, run_id: str) -> list[WorkflowStepResult]:
        results = [r for r in self._results.values() if r.run_id == run_id]
        results.sort(key=lambda r: r.step_order)
        return [r.model_copy() for r in results]

    async def get_run_history(
        self, user_id: str, limit: int = 20
    ) -> list[WorkflowRun]:
        runs = [self._with_name(r) for r in self._runs.values() if r.user_id == user_id]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[:limit]

    async def get_run_by_id(self, run_id: str, user_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        if run is None or run.user_id != user_id:
            return None
        return self._with_name(run)

    async def delete_run(self, run_id: str, user_id: str) -> None:
        if await self.get_run_by_id(run_id, user_id) is None:
            raise RunNotFound(f"Run {run_id} not found")
        for result_id in [r.id for r in self._results.values() if r.run_id == run_id]:
            del self._results[result_id]
        del self._runs[run_id]

    def _with_name(self, run: WorkflowRun) -> WorkflowRun:
        workflow = self._workflows.get(run.workflow_id)
        return run.model_copy(
            update={"workflow_name": workflow.name if workflow else None}
        )
