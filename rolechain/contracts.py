"""Core data contracts for rolechain workflows."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Role(BaseModel):
    """A named system prompt with an optional model override."""

    id: str = Field(default_factory=new_id)
    user_id: str
    name: str
    system_prompt: str
    model: Optional[str] = None
    color: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Workflow(BaseModel):
    """Named container for an ordered list of steps."""

    id: str = Field(default_factory=new_id)
    user_id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class StepDefinition(BaseModel):
    """Step as submitted by an editor; order comes from list position."""

    role_id: str
    prompt_template: Optional[str] = None
    parallel_group: int = Field(default=0, ge=0)
    condition_expression: Optional[str] = None
    next_step_index: Optional[int] = None


class WorkflowStep(BaseModel):
    """One stored stage of a workflow."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    workflow_id: str
    step_order: int
    parallel_group: int = 0
    role_id: str
    role_name: Optional[str] = None
    prompt_template: Optional[str] = None
    condition_expression: Optional[str] = None
    next_step_index: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def has_jump(self) -> bool:
        """``True`` when both a condition and a jump target are configured."""
        return bool(self.condition_expression) and self.next_step_index is not None

    @property
    def display_name(self) -> str:
        return self.role_name or f"Step {self.step_order}"


class WorkflowRun(BaseModel):
    """A single execution of a workflow."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    user_id: str
    input_text: Optional[str] = None
    final_result: Optional[str] = None
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    workflow_name: Optional[str] = None


class WorkflowStepResult(BaseModel):
    """Persisted outcome (or pending placeholder) of one step in one run."""

    id: str = Field(default_factory=new_id)
    run_id: str
    step_id: str
    step_order: int
    role_name: Optional[str] = None
    input_text: Optional[str] = None
    output_text: Optional[str] = None
    status: StepStatus = StepStatus.PENDING
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RunDetail(BaseModel):
    """Run together with its ordered step results."""

    run: WorkflowRun
    step_results: List[WorkflowStepResult] = Field(default_factory=list)


# ----------------------------------------------------------------------
# Message content


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    data: bytes
    media_type: str = "image/png"


class TextContent(BaseModel):
    """Plain text message content."""

    type: Literal["text"] = "text"
    text: str


class MultipartContent(BaseModel):
    """Text plus inline images."""

    type: Literal["multipart"] = "multipart"
    parts: List[Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]]

    @property
    def images(self) -> List[ImagePart]:
        return [p for p in self.parts if isinstance(p, ImagePart)]


MessageContent = Annotated[
    Union[TextContent, MultipartContent], Field(discriminator="type")
]


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"] = "user"
    content: MessageContent


# ----------------------------------------------------------------------
# Errors


class RolechainError(Exception):
    """Base class for rolechain errors."""


class WorkflowValidationError(RolechainError):
    """Raised before a run is created when the request cannot be executed."""


class WorkflowNotFound(WorkflowValidationError, LookupError):
    """Workflow does not exist or belongs to another user."""


class RunNotFound(RolechainError, LookupError):
    """Run does not exist or belongs to another user."""


class StepFailed(RolechainError):
    """A step failed; the run is aborted."""

    def __init__(self, step_id: str, message: str) -> None:
        super().__init__(message)
        self.step_id = step_id
        self.message = message
