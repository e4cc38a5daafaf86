import json

import pytest

from rolechain.contracts import WorkflowStepResult
from rolechain.events import QueueEventSink, RunEvent, format_sse


def test_payload_keys():
    row = WorkflowStepResult(run_id="r1", step_id="s1", step_order=1, role_name="Writer")
    start = RunEvent.run_start("r1", [row])

    assert start.data["runId"] == "r1"
    assert start.data["steps"][0]["status"] == "pending"
    assert RunEvent.step_start("x", 2).data == {"stepId": "x", "stepOrder": 2}
    assert RunEvent.step_chunk("x", "hi").data == {"stepId": "x", "chunk": "hi"}
    assert RunEvent.run_complete("r1", "done").data == {"runId": "r1", "finalResult": "done"}
    assert RunEvent.run_error("r1", "bad").is_terminal
    assert not RunEvent.step_error("x", "bad").is_terminal


def test_format_sse():
    frame = format_sse(RunEvent.step_chunk("x", "héllo\nworld"))

    assert frame.startswith("event: step_chunk\ndata: ")
    assert frame.endswith("\n\n")
    body = frame[len("event: step_chunk\ndata: "):-2]
    assert "\n" not in body
    assert json.loads(body) == {"stepId": "x", "chunk": "héllo\nworld"}


@pytest.mark.asyncio
async def test_queue_sink_ends_iteration_on_close():
    sink = QueueEventSink()
    await sink.emit(RunEvent.step_chunk("x", "a"))
    await sink.emit(RunEvent.step_chunk("x", "b"))
    await sink.close()
    await sink.emit(RunEvent.step_chunk("x", "late"))

    frames = [frame async for frame in sink.sse()]
    assert len(frames) == 2
    assert '"chunk": "b"' in frames[1]
