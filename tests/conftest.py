"""Shared fixtures: an in-memory repository and a scripted completion backend."""

import asyncio
from typing import Callable, Dict, List, Optional, Union

import pytest

import rolechain.persistence as persistence
from rolechain.backends import CompletionError
from rolechain.config import EngineConfig
from rolechain.contracts import StepDefinition, TextContent
from rolechain.engine import WorkflowEngine
from rolechain.persistence import InMemoryRepository

Reply = Union[str, Callable[[str], str]]


class ScriptedBackend:
    """Deterministic backend keyed by system prompt.

    Roles created by ``build_workflow`` use their name as system prompt, so
    replies, delays and failures are configured per role name. Without a
    configured reply the prompt text is echoed back.
    """

    def __init__(
        self,
        replies: Optional[Dict[str, Reply]] = None,
        delays: Optional[Dict[str, float]] = None,
        failures: Optional[Dict[str, str]] = None,
    ) -> None:
        self.replies = replies or {}
        self.delays = delays or {}
        self.failures = failures or {}
        self.calls: List[dict] = []

    async def stream_complete(self, system_prompt, messages, model, on_chunk):
        content = messages[-1].content
        text = content.text if isinstance(content, TextContent) else ""
        self.calls.append(
            {"system_prompt": system_prompt, "text": text, "model": model, "content": content}
        )

        delay = self.delays.get(system_prompt)
        if delay:
            await asyncio.sleep(delay)
        if system_prompt in self.failures:
            raise CompletionError(self.failures[system_prompt])

        reply = self.replies.get(system_prompt, text)
        output = reply(text) if callable(reply) else reply
        half = len(output) // 2
        for chunk in (output[:half], output[half:]):
            if chunk:
                await on_chunk(chunk)
        return output


@pytest.fixture
def repo():
    repository = InMemoryRepository()
    persistence._repository_instance = repository
    yield repository
    persistence._repository_instance = None


@pytest.fixture
def build_workflow(repo):
    """Create a workflow from ``{"role", "template", "group", "condition", "jump"}`` dicts."""

    async def build(steps: List[dict], user_id: str = "alice", name: str = "wf"):
        workflow = await repo.create_workflow(user_id, name)
        roles = {r.name: r for r in await repo.list_roles(user_id)}
        definitions = []
        for entry in steps:
            role_name = entry["role"]
            if role_name not in roles:
                roles[role_name] = await repo.create_role(
                    user_id, role_name, role_name, model=entry.get("model")
                )
            definitions.append(
                StepDefinition(
                    role_id=roles[role_name].id,
                    prompt_template=entry.get("template"),
                    parallel_group=entry.get("group", 0),
                    condition_expression=entry.get("condition"),
                    next_step_index=entry.get("jump"),
                )
            )
        await repo.replace_steps(workflow.id, definitions)
        return workflow

    return build


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def engine(repo, backend):
    return WorkflowEngine(repo, backend, EngineConfig(step_timeout=5))
