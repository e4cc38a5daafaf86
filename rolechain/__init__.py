"""rolechain: multi-role AI workflows with parallel steps and conditional jumps."""

from .backends import CompletionBackend, CompletionError, get_backend
from .config import EngineConfig, RolechainConfig, load_config
from .contracts import (
    Role,
    RunStatus,
    StepDefinition,
    StepStatus,
    Workflow,
    WorkflowRun,
    WorkflowStep,
    WorkflowStepResult,
)
from .engine import RunHandle, WorkflowEngine
from .events import get_event_sink
from .persistence import get_repository
from .planner import plan_blocks

__version__ = "0.1.0"
__all__ = [
    "CompletionBackend",
    "CompletionError",
    "EngineConfig",
    "Role",
    "RolechainConfig",
    "RunHandle",
    "RunStatus",
    "StepDefinition",
    "StepStatus",
    "Workflow",
    "WorkflowEngine",
    "WorkflowRun",
    "WorkflowStep",
    "WorkflowStepResult",
    "get_backend",
    "get_event_sink",
    "get_repository",
    "load_config",
    "plan_blocks",
]
