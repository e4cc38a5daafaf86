"""Run events and the sink interface observers plug into."""

from __future__ import annotations

import abc
import json
from typing import Any, Dict, Iterable, Literal

from pydantic import BaseModel, Field

from ..contracts import WorkflowStepResult

EventName = Literal[
    "run_start",
    "step_start",
    "step_chunk",
    "step_complete",
    "step_error",
    "run_complete",
    "run_error",
]

TERMINAL_EVENTS = frozenset({"run_complete", "run_error"})


class RunEvent(BaseModel):
    """A typed lifecycle event with its JSON payload."""

    event: EventName
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS

    @classmethod
    def run_start(
        cls, run_id: str, steps: Iterable[WorkflowStepResult]
    ) -> "RunEvent":
        return cls(
            event="run_start",
            data={
                "runId": run_id,
                "steps": [s.model_dump(mode="json") for s in steps],
            },
        )

    @classmethod
    def step_start(cls, step_id: str, step_order: int) -> "RunEvent":
        return cls(event="step_start", data={"stepId": step_id, "stepOrder": step_order})

    @classmethod
    def step_chunk(cls, step_id: str, chunk: str) -> "RunEvent":
        return cls(event="step_chunk", data={"stepId": step_id, "chunk": chunk})

    @classmethod
    def step_complete(cls, step_id: str, output: str) -> "RunEvent":
        return cls(event="step_complete", data={"stepId": step_id, "output": output})

    @classmethod
    def step_error(cls, step_id: str, error: str) -> "RunEvent":
        return cls(event="step_error", data={"stepId": step_id, "error": error})

    @classmethod
    def run_complete(cls, run_id: str, final_result: str) -> "RunEvent":
        return cls(
            event="run_complete", data={"runId": run_id, "finalResult": final_result}
        )

    @classmethod
    def run_error(cls, run_id: str, error: str) -> "RunEvent":
        return cls(event="run_error", data={"runId": run_id, "error": error})


def format_sse(event: RunEvent) -> str:
    """Frame an event for a Server-Sent-Events stream."""
    return f"event: {event.event}\ndata: {json.dumps(event.data, ensure_ascii=False)}\n\n"


class EventSink(metaclass=abc.ABCMeta):
    """Abstract destination for run events."""

    @abc.abstractmethod
    async def emit(self, event: RunEvent) -> None:
        """Deliver one event."""
        raise NotImplementedError

    async def close(self) -> None:
        """Signal that no more events follow (no-op by default)."""
        pass
