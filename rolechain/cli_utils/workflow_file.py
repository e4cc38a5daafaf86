"""Loading workflow definitions from YAML files."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

from ..contracts import Role, StepDefinition, Workflow, WorkflowStep, WorkflowValidationError
from ..persistence.repository import WorkflowRepository


class RoleEntry(BaseModel):
    name: str
    system_prompt: str
    model: Optional[str] = None
    color: Optional[str] = None


class StepEntry(BaseModel):
    role: str
    prompt_template: Optional[str] = None
    parallel_group: int = Field(default=0, ge=0)
    condition: Optional[str] = None
    jump_to: Optional[int] = None


class WorkflowFile(BaseModel):
    """Shape of a workflow YAML file.

    Example::

        name: Review chain
        roles:
          - name: Writer
            system_prompt: You write short drafts.
        steps:
          - role: Writer
          - role: Critic
            condition: REVISE
            jump_to: 1
    """

    name: str
    description: Optional[str] = None
    roles: List[RoleEntry] = Field(default_factory=list)
    steps: List[StepEntry] = Field(default_factory=list)


def load_workflow_file(path: Path) -> WorkflowFile:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return WorkflowFile.model_validate(data)


def _resolve_role(reference: str, roles: List[Role]) -> Role:
    for role in roles:
        if role.id == reference:
            return role
    for role in roles:
        if role.name == reference:
            return role
    raise WorkflowValidationError(f"Unknown role: {reference}")


async def import_workflow(
    repository: WorkflowRepository, user_id: str, definition: WorkflowFile
) -> tuple[Workflow, list[WorkflowStep]]:
    """Create the workflow, any missing roles, and its steps.

    Roles declared under ``roles`` are only created when the user has no role
    with that name yet. Steps reference roles by id or by name.
    """
    roles = await repository.list_roles(user_id)
    known = {role.name for role in roles}
    for entry in definition.roles:
        if entry.name in known:
            continue
        roles.append(
            await repository.create_role(
                user_id,
                entry.name,
                entry.system_prompt,
                model=entry.model,
                color=entry.color,
            )
        )
        known.add(entry.name)

    step_definitions = [
        StepDefinition(
            role_id=_resolve_role(entry.role, roles).id,
            prompt_template=entry.prompt_template,
            parallel_group=entry.parallel_group,
            condition_expression=entry.condition,
            next_step_index=entry.jump_to,
        )
        for entry in definition.steps
    ]

    workflow = await repository.create_workflow(
        user_id, definition.name, definition.description
    )
    steps = await repository.replace_steps(workflow.id, step_definitions)
    return workflow, steps
