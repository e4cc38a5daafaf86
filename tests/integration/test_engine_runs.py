import asyncio

import pytest

from rolechain.config import EngineConfig
from rolechain.constants import DEFAULT_MODEL, DEFAULT_SYSTEM_PROMPT
from rolechain.contracts import (
    MultipartContent,
    RunStatus,
    StepDefinition,
    StepStatus,
    WorkflowNotFound,
    WorkflowValidationError,
)
from rolechain.engine import WorkflowEngine
from rolechain.events import CollectingEventSink, QueueEventSink

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class SnapshotSink(CollectingEventSink):
    """Capture the ledger at the moment ``run_start`` is emitted."""

    def __init__(self, repo):
        super().__init__()
        self.repo = repo
        self.snapshot = None

    async def emit(self, event):
        if event.event == "run_start":
            self.snapshot = await self.repo.get_step_results(event.data["runId"])
        await super().emit(event)


class FlakySink(CollectingEventSink):
    async def emit(self, event):
        if event.event == "step_chunk":
            raise ConnectionResetError("client went away")
        await super().emit(event)


@pytest.mark.asyncio
async def test_echo_chain_threads_each_output_into_the_next_step(engine, build_workflow):
    wf = await build_workflow([{"role": "Echo", "template": "ECHO"}] * 3)
    sink = CollectingEventSink()

    run = await engine.execute(wf.id, "alice", "Start", sink)

    assert run.status == RunStatus.COMPLETED
    assert run.final_result == "ECHO\n\nECHO\n\nECHO\n\nStart"
    assert run.completed_at is not None
    assert sink.names() == (
        ["run_start"]
        + ["step_start", "step_chunk", "step_chunk", "step_complete"] * 3
        + ["run_complete"]
    )
    assert sink.of("run_complete")[0].data["finalResult"] == run.final_result
    assert not sink.closed


@pytest.mark.asyncio
async def test_step_rows_exist_and_are_pending_at_run_start(repo, engine, build_workflow):
    wf = await build_workflow([{"role": "A"}, {"role": "B"}, {"role": "C"}])
    sink = SnapshotSink(repo)

    await engine.execute(wf.id, "alice", "hello", sink)

    assert [r.step_order for r in sink.snapshot] == [1, 2, 3]
    assert all(r.status == StepStatus.PENDING for r in sink.snapshot)
    steps = sink.of("run_start")[0].data["steps"]
    assert [s["status"] for s in steps] == ["pending"] * 3
    assert [s["role_name"] for s in steps] == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_parallel_results_keep_block_order(engine, backend, build_workflow):
    backend.replies = {"A": "alpha", "B": "beta"}
    backend.delays = {"A": 0.05}
    wf = await build_workflow(
        [{"role": "Intro"}, {"role": "A", "group": 1}, {"role": "B", "group": 1}]
    )
    sink = CollectingEventSink()

    run = await engine.execute(wf.id, "alice", "go", sink)

    assert run.final_result == "### Result from A:\nalpha\n\n### Result from B:\nbeta"
    completed = [e.data["output"] for e in sink.of("step_complete")]
    assert completed == ["go", "beta", "alpha"]
    # both siblings see the same input
    assert [c["text"] for c in backend.calls[1:]] == ["go", "go"]


@pytest.mark.asyncio
async def test_parallel_block_output_feeds_the_next_step(engine, backend, build_workflow):
    backend.replies = {"A": "a", "B": "b", "Merge": lambda text: f"merged<{text}>"}
    wf = await build_workflow(
        [{"role": "A", "group": 3}, {"role": "B", "group": 3}, {"role": "Merge"}]
    )

    run = await engine.execute(wf.id, "alice", "go", CollectingEventSink())

    assert run.final_result == "merged<### Result from A:\na\n\n### Result from B:\nb>"


@pytest.mark.asyncio
async def test_matching_condition_skips_to_target(repo, engine, backend, build_workflow):
    backend.replies = {"Gate": "found X here", "Final": lambda text: f"final<{text}>"}
    wf = await build_workflow(
        [
            {"role": "Gate", "condition": "X", "jump": 3},
            {"role": "Middle"},
            {"role": "Final"},
        ]
    )

    run = await engine.execute(wf.id, "alice", "in", CollectingEventSink())

    assert run.final_result == "final<found X here>"
    assert [c["system_prompt"] for c in backend.calls] == ["Gate", "Final"]
    results = await repo.get_step_results(run.id)
    assert [r.status for r in results] == [
        StepStatus.COMPLETED,
        StepStatus.PENDING,
        StepStatus.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_unmatched_condition_falls_through(engine, backend, build_workflow):
    backend.replies = {
        "Gate": "nothing to see",
        "Middle": lambda text: f"mid<{text}>",
        "Final": lambda text: f"final<{text}>",
    }
    wf = await build_workflow(
        [
            {"role": "Gate", "condition": "X", "jump": 3},
            {"role": "Middle"},
            {"role": "Final"},
        ]
    )

    run = await engine.execute(wf.id, "alice", "in", CollectingEventSink())

    assert run.final_result == "final<mid<nothing to see>>"
    assert [c["system_prompt"] for c in backend.calls] == ["Gate", "Middle", "Final"]


@pytest.mark.asyncio
async def test_condition_match_is_case_sensitive(engine, backend, build_workflow):
    backend.replies = {"Gate": "lowercase x only"}
    wf = await build_workflow(
        [{"role": "Gate", "condition": "X", "jump": 3}, {"role": "Middle"}, {"role": "Final"}]
    )

    await engine.execute(wf.id, "alice", "in", CollectingEventSink())

    assert [c["system_prompt"] for c in backend.calls] == ["Gate", "Middle", "Final"]


@pytest.mark.asyncio
async def test_missing_jump_target_continues_in_order(engine, backend, build_workflow):
    backend.replies = {"Gate": "X"}
    wf = await build_workflow(
        [{"role": "Gate", "condition": "X", "jump": 9}, {"role": "Middle"}]
    )

    run = await engine.execute(wf.id, "alice", "in", CollectingEventSink())

    assert run.status == RunStatus.COMPLETED
    assert [c["system_prompt"] for c in backend.calls] == ["Gate", "Middle"]


@pytest.mark.asyncio
async def test_condition_on_last_parallel_step_tests_the_combined_output(
    repo, engine, backend, build_workflow
):
    backend.replies = {"A": "GO", "B": "b", "D": lambda text: f"d<{text}>"}
    wf = await build_workflow(
        [
            {"role": "A", "group": 1},
            {"role": "B", "group": 1, "condition": "GO", "jump": 4},
            {"role": "C"},
            {"role": "D"},
        ]
    )

    run = await engine.execute(wf.id, "alice", "in", CollectingEventSink())

    assert run.final_result == "d<### Result from A:\nGO\n\n### Result from B:\nb>"
    results = await repo.get_step_results(run.id)
    assert results[2].status == StepStatus.PENDING


@pytest.mark.asyncio
async def test_backward_jump_loop_is_bounded(repo, backend, build_workflow):
    backend.replies = {"Loop": "again"}
    wf = await build_workflow([{"role": "Loop", "condition": "again", "jump": 1}])
    engine = WorkflowEngine(repo, backend, EngineConfig(max_block_executions=5))
    sink = CollectingEventSink()

    run = await engine.execute(wf.id, "alice", "in", sink)

    assert run.status == RunStatus.FAILED
    assert len(backend.calls) == 5
    assert "block executions" in sink.of("run_error")[0].data["error"]


@pytest.mark.asyncio
async def test_sequential_failure_stops_the_run(repo, engine, backend, build_workflow):
    backend.failures = {"B": "Invalid API key, check your settings"}
    wf = await build_workflow([{"role": "A"}, {"role": "B"}, {"role": "C"}])
    sink = CollectingEventSink()

    run = await engine.execute(wf.id, "alice", "in", sink)

    assert run.status == RunStatus.FAILED
    assert run.final_result is None
    assert run.completed_at is not None
    results = await repo.get_step_results(run.id)
    assert [r.status for r in results] == [
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.PENDING,
    ]
    assert results[1].error_message == "Invalid API key, check your settings"
    assert sink.of("step_error")[0].data["stepId"] == results[1].id
    assert sink.of("run_error")[0].data["error"] == "Invalid API key, check your settings"
    assert "run_complete" not in sink.names()


@pytest.mark.asyncio
async def test_parallel_failure_fails_the_whole_block(repo, engine, backend, build_workflow):
    backend.failures = {"B": "boom"}
    wf = await build_workflow(
        [{"role": "A", "group": 2}, {"role": "B", "group": 2}, {"role": "C"}]
    )
    sink = CollectingEventSink()

    run = await engine.execute(wf.id, "alice", "in", sink)

    assert run.status == RunStatus.FAILED
    results = await repo.get_step_results(run.id)
    assert [r.status for r in results] == [
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.PENDING,
    ]
    assert sink.of("run_error")[0].data["error"] == "boom"
    assert [c["system_prompt"] for c in backend.calls] == ["A", "B"]


@pytest.mark.asyncio
async def test_parallel_failures_report_the_first_in_block_order(
    engine, backend, build_workflow
):
    backend.failures = {"A": "first", "B": "second"}
    backend.delays = {"A": 0.05}
    wf = await build_workflow([{"role": "A", "group": 1}, {"role": "B", "group": 1}])
    sink = CollectingEventSink()

    await engine.execute(wf.id, "alice", "in", sink)

    assert [e.data["error"] for e in sink.of("step_error")] == ["second", "first"]
    assert sink.of("run_error")[0].data["error"] == "first"


@pytest.mark.asyncio
async def test_ledger_matches_what_was_streamed(repo, engine, backend, build_workflow):
    backend.replies = {"A": "one", "B": "two"}
    wf = await build_workflow([{"role": "A"}, {"role": "B"}])
    sink = CollectingEventSink()

    run = await engine.execute(wf.id, "alice", "in", sink)

    stored = await repo.get_run_by_id(run.id, "alice")
    assert stored.final_result == sink.of("run_complete")[0].data["finalResult"]
    streamed = {e.data["stepId"]: e.data["output"] for e in sink.of("step_complete")}
    results = await repo.get_step_results(run.id)
    assert {r.id: r.output_text for r in results} == streamed
    assert [r.input_text for r in results] == ["in", "one"]


@pytest.mark.asyncio
async def test_chunks_concatenate_to_the_step_output(engine, backend, build_workflow):
    backend.replies = {"A": "streamed output"}
    wf = await build_workflow([{"role": "A"}])
    sink = CollectingEventSink()

    await engine.execute(wf.id, "alice", "in", sink)

    chunks = "".join(e.data["chunk"] for e in sink.of("step_chunk"))
    assert chunks == sink.of("step_complete")[0].data["output"] == "streamed output"


@pytest.mark.asyncio
async def test_role_model_and_fallbacks(repo, engine, backend, build_workflow):
    wf = await build_workflow([{"role": "Tuned", "model": "gpt-4o"}])
    await repo.replace_steps(
        wf.id,
        [
            StepDefinition(role_id=(await repo.list_roles("alice"))[0].id),
            StepDefinition(role_id="deleted-role", parallel_group=1),
            StepDefinition(role_id="deleted-role-too", parallel_group=1),
        ],
    )

    run = await engine.execute(wf.id, "alice", "in", CollectingEventSink())

    assert backend.calls[0]["model"] == "gpt-4o"
    assert backend.calls[1]["system_prompt"] == DEFAULT_SYSTEM_PROMPT
    assert backend.calls[1]["model"] == DEFAULT_MODEL
    assert run.final_result.startswith("### Result from Step 2:\nin")
    results = await repo.get_step_results(run.id)
    assert results[1].role_name == "Unknown role"


@pytest.mark.asyncio
async def test_prompt_images_are_sent_as_multipart(tmp_path, repo, backend, build_workflow):
    (tmp_path / "cat.png").write_bytes(PNG_BYTES)
    wf = await build_workflow([{"role": "Vision", "template": "Describe ![cat](/uploads/cat.png)"}])
    engine = WorkflowEngine(repo, backend, EngineConfig(uploads_dir=tmp_path))

    await engine.execute(wf.id, "alice", "please", CollectingEventSink())

    content = backend.calls[0]["content"]
    assert isinstance(content, MultipartContent)
    assert content.images[0].data == PNG_BYTES
    assert content.images[0].media_type == "image/png"
    assert content.parts[0].text == "Describe \n\nplease"


@pytest.mark.asyncio
async def test_step_timeout_fails_the_run(repo, backend, build_workflow):
    backend.delays = {"Slow": 1.0}
    wf = await build_workflow([{"role": "Slow"}])
    engine = WorkflowEngine(repo, backend, EngineConfig(step_timeout=0.05))
    sink = CollectingEventSink()

    run = await engine.execute(wf.id, "alice", "in", sink)

    assert run.status == RunStatus.FAILED
    assert sink.of("run_error")[0].data["error"] == "Step timed out after 0.05 seconds"


@pytest.mark.asyncio
async def test_sink_failures_do_not_abort_the_run(engine, build_workflow):
    wf = await build_workflow([{"role": "A"}])
    sink = FlakySink()

    run = await engine.execute(wf.id, "alice", "in", sink)

    assert run.status == RunStatus.COMPLETED
    assert "step_chunk" not in sink.names()
    assert sink.names()[-1] == "run_complete"


@pytest.mark.asyncio
async def test_start_streams_to_a_queue_and_closes_it(engine, build_workflow):
    wf = await build_workflow([{"role": "A"}, {"role": "B"}])
    sink = QueueEventSink()

    handle = await engine.start(wf.id, "alice", "in", sink)
    names = [event.event async for event in sink.events()]
    run = await handle.wait()

    assert names[0] == "run_start"
    assert names[-1] == "run_complete"
    assert handle.done
    assert run.id == handle.run_id
    assert run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancel_records_cancelled_and_stops_events(repo, engine, backend, build_workflow):
    backend.delays = {"Slow": 1.0}
    wf = await build_workflow([{"role": "Slow"}, {"role": "Never"}])
    sink = CollectingEventSink()

    handle = await engine.start(wf.id, "alice", "in", sink)
    await handle.wait_started()
    await asyncio.sleep(0.05)
    handle.cancel()
    run = await handle.wait()

    assert run.status == RunStatus.CANCELLED
    assert run.completed_at is not None
    assert sink.closed
    assert sink.names() == ["run_start", "step_start"]
    results = await repo.get_step_results(run.id)
    assert [r.status for r in results] == [StepStatus.RUNNING, StepStatus.PENDING]


@pytest.mark.asyncio
async def test_blank_role_prompt_falls_back_to_the_default(repo, engine, backend):
    role = await repo.create_role("alice", "Blank", "")
    wf = await repo.create_workflow("alice", "wf")
    await repo.replace_steps(wf.id, [StepDefinition(role_id=role.id)])

    run = await engine.execute(wf.id, "alice", "in", CollectingEventSink())

    assert run.status == RunStatus.COMPLETED
    assert backend.calls[0]["system_prompt"] == DEFAULT_SYSTEM_PROMPT


@pytest.mark.asyncio
async def test_cancel_during_a_parallel_block(repo, engine, backend, build_workflow):
    backend.delays = {"A": 1.0, "B": 1.0}
    wf = await build_workflow([{"role": "A", "group": 1}, {"role": "B", "group": 1}])
    sink = CollectingEventSink()

    handle = await engine.start(wf.id, "alice", "in", sink)
    await handle.wait_started()
    await asyncio.sleep(0.05)
    handle.cancel()
    run = await handle.wait()

    assert run.status == RunStatus.CANCELLED
    assert sink.closed
    assert sink.names() == ["run_start", "step_start", "step_start"]
    results = await repo.get_step_results(run.id)
    assert [r.status for r in results] == [StepStatus.RUNNING, StepStatus.RUNNING]


@pytest.mark.asyncio
async def test_validation_errors_are_raised_before_a_run_exists(repo, engine, build_workflow):
    wf = await build_workflow([{"role": "A"}])
    empty = await repo.create_workflow("alice", "empty")

    with pytest.raises(WorkflowValidationError):
        await engine.execute(wf.id, "alice", "   ", CollectingEventSink())
    with pytest.raises(WorkflowNotFound):
        await engine.execute("missing", "alice", "in", CollectingEventSink())
    with pytest.raises(WorkflowNotFound):
        await engine.execute(wf.id, "mallory", "in", CollectingEventSink())
    with pytest.raises(WorkflowValidationError):
        await engine.start(empty.id, "alice", "in", CollectingEventSink())

    assert await repo.get_run_history("alice") == []
