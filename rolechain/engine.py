"""Workflow execution engine.

Drives one run of a stored workflow: plans blocks on the fly, executes single
steps and parallel groups, streams chunks to an :class:`EventSink`, follows
conditional jumps and records every transition in the run ledger.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .backends.base import CompletionBackend
from .config import EngineConfig
from .constants import PARALLEL_RESULT_HEADER
from .contracts import (
    ChatMessage,
    MultipartContent,
    RunStatus,
    StepFailed,
    StepStatus,
    WorkflowNotFound,
    WorkflowRun,
    WorkflowStep,
    WorkflowStepResult,
    WorkflowValidationError,
    utcnow,
)
from .events.base import EventSink, RunEvent
from .multimodal import build_message_content
from .persistence.repository import WorkflowRepository
from .planner import Block, SingleBlock, block_at, find_step_index

logger = logging.getLogger(__name__)

UNKNOWN_ROLE_NAME = "Unknown role"


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


@dataclass
class RunState:
    """Mutable bookkeeping for one run, owned by a single engine call."""

    run: WorkflowRun
    user_id: str
    sink: EventSink
    results: Dict[str, WorkflowStepResult] = field(default_factory=dict)
    cancelled: bool = False

    async def emit(self, event: RunEvent) -> None:
        if self.cancelled:
            return
        try:
            await self.sink.emit(event)
        except Exception as exc:
            # Persisted state stays the source of truth for lost observers.
            logger.warning(
                f"Dropping {event.event} for run {self.run.id}: sink failed with {exc!r}"
            )


class RunHandle:
    """Handle on a run scheduled with :meth:`WorkflowEngine.start`."""

    def __init__(self, repository: WorkflowRepository, user_id: str) -> None:
        self._repository = repository
        self._user_id = user_id
        self._task: Optional[asyncio.Task] = None
        self._created = asyncio.Event()
        self.run: Optional[WorkflowRun] = None

    def _set_run(self, run: WorkflowRun) -> None:
        self.run = run
        self._created.set()

    @property
    def run_id(self) -> Optional[str]:
        return self.run.id if self.run else None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def wait_started(self) -> Optional[str]:
        """Wait until the run row exists (or the task ended first)."""
        created = asyncio.ensure_future(self._created.wait())
        try:
            await asyncio.wait({created, self._task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            created.cancel()
        return self.run_id

    def cancel(self) -> bool:
        """Request cancellation; the run is recorded as ``cancelled``."""
        return self._task.cancel()

    async def wait(self) -> Optional[WorkflowRun]:
        """Wait for the run to settle and return its persisted state."""
        await asyncio.wait({self._task})
        if self.run is None:
            if not self._task.cancelled():
                self._task.result()
            return None
        return await self._repository.get_run_by_id(self.run.id, self._user_id)


class WorkflowEngine:
    """Execute stored workflows against a completion backend."""

    def __init__(
        self,
        repository: WorkflowRepository,
        backend: CompletionBackend,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.repository = repository
        self.backend = backend
        self.config = config or EngineConfig()

    # ------------------------------------------------------------------
    # Entry points
    async def validate(
        self, workflow_id: str, user_id: str, input_text: str
    ) -> List[WorkflowStep]:
        """Reject requests that cannot start; return the step snapshot."""
        if not input_text or not input_text.strip():
            raise WorkflowValidationError("Input must not be empty")

        workflow = await self.repository.get_workflow(workflow_id, user_id)
        if workflow is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")

        steps = await self.repository.get_steps(workflow_id)
        if not steps:
            raise WorkflowValidationError(f"Workflow {workflow.name!r} has no steps")
        return steps

    async def execute(
        self,
        workflow_id: str,
        user_id: str,
        input_text: str,
        emit: EventSink,
    ) -> WorkflowRun:
        """Validate and run a workflow to completion.

        Validation problems raise :class:`WorkflowValidationError` before any
        run exists. Everything after that is reported through ``run_error``
        and the ledger; the returned run carries the terminal status. The
        sink is not closed.
        """
        steps = await self.validate(workflow_id, user_id, input_text)
        return await self._run(workflow_id, user_id, input_text, steps, emit)

    async def start(
        self,
        workflow_id: str,
        user_id: str,
        input_text: str,
        emit: EventSink,
    ) -> RunHandle:
        """Validate synchronously, then run in a background task.

        The sink is closed once the task settles, including on cancellation.
        """
        steps = await self.validate(workflow_id, user_id, input_text)
        handle = RunHandle(self.repository, user_id)

        async def runner() -> WorkflowRun:
            try:
                return await self._run(
                    workflow_id, user_id, input_text, steps, emit, on_created=handle._set_run
                )
            finally:
                await emit.close()

        handle._task = asyncio.create_task(runner())
        return handle

    # ------------------------------------------------------------------
    # Run lifecycle
    async def _run(
        self,
        workflow_id: str,
        user_id: str,
        input_text: str,
        steps: List[WorkflowStep],
        emit: EventSink,
        on_created: Optional[Callable[[WorkflowRun], None]] = None,
    ) -> WorkflowRun:
        # Threaded backends finish the insert even if this task is cancelled.
        insert = asyncio.ensure_future(
            self.repository.create_run(workflow_id, user_id, input_text)
        )
        try:
            run = await asyncio.shield(insert)
        except asyncio.CancelledError:
            run = await insert
            if on_created is not None:
                on_created(run)
            logger.info(f"Run {run.id} cancelled before its first step")
            await self._finish(run, status=RunStatus.CANCELLED, completed_at=utcnow())
            raise

        state = RunState(run=run, user_id=user_id, sink=emit)
        if on_created is not None:
            on_created(run)
        logger.info(f"Run {run.id} started for workflow {workflow_id} ({len(steps)} steps)")

        try:
            for step in steps:
                state.results[step.id] = await self.repository.create_step_result(
                    run.id, step.id, step.step_order, step.role_name or UNKNOWN_ROLE_NAME
                )
            await state.emit(RunEvent.run_start(run.id, state.results.values()))
            final_result = await self._drive(state, steps, input_text)
        except asyncio.CancelledError:
            state.cancelled = True
            logger.info(f"Run {run.id} cancelled")
            await self._finish(run, status=RunStatus.CANCELLED, completed_at=utcnow())
            raise
        except Exception as exc:
            message = exc.message if isinstance(exc, StepFailed) else _error_message(exc)
            logger.error(f"Run {run.id} failed: {message}")
            await self._finish(run, status=RunStatus.FAILED, completed_at=utcnow())
            await state.emit(RunEvent.run_error(run.id, message))
            return await self._reload(run, status=RunStatus.FAILED)

        await self._finish(
            run,
            status=RunStatus.COMPLETED,
            final_result=final_result,
            completed_at=utcnow(),
        )
        logger.info(f"Run {run.id} completed")
        await state.emit(RunEvent.run_complete(run.id, final_result))
        return await self._reload(
            run, status=RunStatus.COMPLETED, final_result=final_result
        )

    async def _finish(self, run: WorkflowRun, **fields) -> None:
        try:
            await self.repository.update_run(run.id, **fields)
        except Exception as exc:
            logger.error(f"Failed to record terminal state of run {run.id}: {exc}")

    async def _reload(self, run: WorkflowRun, **fallback) -> WorkflowRun:
        try:
            stored = await self.repository.get_run_by_id(run.id, run.user_id)
        except Exception as exc:
            logger.error(f"Failed to reload run {run.id}: {exc}")
            stored = None
        return stored or run.model_copy(update=fallback)

    # ------------------------------------------------------------------
    # Control loop
    async def _drive(
        self, state: RunState, steps: List[WorkflowStep], input_text: str
    ) -> str:
        current_input = input_text
        final_result = ""
        index = 0
        executed = 0

        while index < len(steps):
            if executed >= self.config.max_block_executions:
                raise RuntimeError(
                    f"Run exceeded {self.config.max_block_executions} block executions; "
                    "check conditional jumps for a loop"
                )
            executed += 1

            block = block_at(steps, index)
            block_output = await self._execute_block(state, block, current_input)
            current_input = block_output
            final_result = block_output

            last = block.last_step
            if last.has_jump and last.condition_expression in block_output:
                target = find_step_index(steps, last.next_step_index)
                if target is not None:
                    logger.info(
                        f"Run {state.run.id}: condition {last.condition_expression!r} matched "
                        f"after step {last.step_order}, jumping to step {last.next_step_index}"
                    )
                    index = target
                    continue
                logger.warning(
                    f"Run {state.run.id}: jump target {last.next_step_index} does not exist, "
                    "continuing in order"
                )

            index = block.end

        return final_result

    async def _execute_block(
        self, state: RunState, block: Block, current_input: str
    ) -> str:
        if isinstance(block, SingleBlock):
            return await self.execute_step(state, block.step, current_input)

        logger.debug(
            f"Run {state.run.id}: running {len(block.steps)} steps of group {block.group} in parallel"
        )
        outcomes = await asyncio.gather(
            *(self.execute_step(state, step, current_input) for step in block.steps),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        return "\n\n".join(
            PARALLEL_RESULT_HEADER.format(role_name=step.display_name) + "\n" + output
            for step, output in zip(block.steps, outcomes)
        )

    # ------------------------------------------------------------------
    # Steps
    async def execute_step(
        self, state: RunState, step: WorkflowStep, step_input: str
    ) -> str:
        """Run one step, record it and return its output.

        Any failure marks the result row ``failed``, emits ``step_error`` and
        raises :class:`StepFailed`.
        """
        result = state.results[step.id]
        try:
            role = await self.repository.get_role(step.role_id, state.user_id)
            system_prompt = (
                role.system_prompt if role else None
            ) or self.config.default_system_prompt
            model = (role.model if role else None) or self.config.default_model

            prompt = (
                f"{step.prompt_template}\n\n{step_input}" if step.prompt_template else step_input
            )
            content = build_message_content(prompt, self.config.uploads_dir)
            if isinstance(content, MultipartContent):
                logger.info(
                    f"Step {step.step_order}: sending {len(content.images)} image(s) to model {model}"
                )

            await self.repository.update_step_result(
                result.id,
                status=StepStatus.RUNNING,
                input_text=step_input,
                started_at=utcnow(),
            )
            await state.emit(RunEvent.step_start(result.id, step.step_order))

            async def forward(chunk: str) -> None:
                await state.emit(RunEvent.step_chunk(result.id, chunk))

            output = await asyncio.wait_for(
                self.backend.stream_complete(
                    system_prompt, [ChatMessage(content=content)], model, forward
                ),
                timeout=self.config.step_timeout,
            )
        except asyncio.TimeoutError:
            message = f"Step timed out after {self.config.step_timeout:g} seconds"
            await self._fail_step(state, result, message)
            raise StepFailed(result.id, message) from None
        except Exception as exc:
            message = _error_message(exc)
            await self._fail_step(state, result, message)
            raise StepFailed(result.id, message) from exc

        await self.repository.update_step_result(
            result.id,
            status=StepStatus.COMPLETED,
            output_text=output,
            completed_at=utcnow(),
        )
        logger.info(f"Run {state.run.id}: step {step.step_order} completed")
        await state.emit(RunEvent.step_complete(result.id, output))
        return output

    async def _fail_step(
        self, state: RunState, result: WorkflowStepResult, message: str
    ) -> None:
        logger.error(f"Run {state.run.id}: step {result.step_order} failed: {message}")
        try:
            await self.repository.update_step_result(
                result.id,
                status=StepStatus.FAILED,
                error_message=message,
                completed_at=utcnow(),
            )
        except Exception as exc:
            logger.error(f"Failed to record failure of step result {result.id}: {exc}")
        await state.emit(RunEvent.step_error(result.id, message))
