"""Command line interface for managing and running rolechain workflows."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Dict, NoReturn, Optional

import typer
import yaml

from rolechain import WorkflowEngine, get_backend, get_repository, load_config
from rolechain.cli_utils.workflow_file import import_workflow, load_workflow_file
from rolechain.constants import DEFAULT_HISTORY_LIMIT
from rolechain.contracts import RunNotFound, WorkflowRun, WorkflowValidationError
from rolechain.events import QueueEventSink, RunEvent, format_sse
from rolechain.multimodal import parse_image_marker, split_reasoning

app = typer.Typer(help="CLI for rolechain workflows")

# Command groups
role_app = typer.Typer(help="Commands for managing roles")
workflow_app = typer.Typer(help="Commands for managing workflows")
history_app = typer.Typer(help="Commands for inspecting past runs")

app.add_typer(role_app, name="role")
app.add_typer(workflow_app, name="workflow")
app.add_typer(history_app, name="history")

UserOption = typer.Option("local", "--user", "-u", envvar="ROLECHAIN_USER", help="Owner of the data")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """rolechain CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


@role_app.command("create")
def role_create(
    name: str,
    prompt: str = typer.Option(..., "--prompt", "-p", help="System prompt of the role"),
    model: Optional[str] = typer.Option(None, help="Model override for this role"),
    color: Optional[str] = typer.Option(None, help="Display color"),
    user: str = UserOption,
) -> None:
    """Create a role from a name and a system prompt."""
    repo = get_repository()
    role = asyncio.run(repo.create_role(user, name, prompt, model=model, color=color))
    typer.echo(f"Created role {role.name}: {role.id}")


@role_app.command("list")
def role_list(user: str = UserOption) -> None:
    """List the user's roles."""
    repo = get_repository()
    roles = asyncio.run(repo.list_roles(user))
    if not roles:
        typer.echo("No roles found")
        return
    for role in roles:
        typer.echo(f"{role.id}\t{role.name}\t{role.model or '-'}")


@workflow_app.command("import")
def workflow_import(path: Path, user: str = UserOption) -> None:
    """
    Create a workflow from a YAML file.

    The file holds ``name``, an optional ``description``, optional ``roles``
    to create and a ``steps`` list. Each step names its ``role`` (by name or
    id) and may set ``prompt_template``, ``parallel_group``, ``condition`` and
    ``jump_to`` (a 1-based step number).

    Example:
        rolechain workflow import ./review.yaml --user alice
    """
    if not path.exists():
        _fail("Specified path does not exist")
    try:
        definition = load_workflow_file(path)
    except (ValueError, yaml.YAMLError) as exc:
        _fail(f"Invalid workflow file: {exc}")

    repo = get_repository()
    try:
        workflow, steps = asyncio.run(import_workflow(repo, user, definition))
    except WorkflowValidationError as exc:
        _fail(str(exc))
    typer.echo(f"Imported workflow {workflow.name}: {workflow.id} ({len(steps)} steps)")


@workflow_app.command("list")
def workflow_list(user: str = UserOption) -> None:
    """List the user's workflows, most recently updated first."""
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows(user))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str, user: str = UserOption) -> None:
    """Show a workflow and its ordered steps."""
    repo = get_repository()
    wf = asyncio.run(repo.get_workflow(workflow_id, user))
    if wf is None:
        _fail("Workflow not found")
    steps = asyncio.run(repo.get_steps(wf.id))
    typer.echo(f"Workflow {wf.name} ({wf.id})")
    if wf.description:
        typer.echo(wf.description)
    for step in steps:
        line = f"{step.step_order}. {step.display_name}"
        if step.parallel_group:
            line += f" [parallel {step.parallel_group}]"
        if step.has_jump:
            line += f" -> step {step.next_step_index} if {step.condition_expression!r}"
        typer.echo(line)


class _ConsoleRenderer:
    """Print run events as readable text."""

    def __init__(self) -> None:
        self.role_names: Dict[str, str] = {}

    def __call__(self, event: RunEvent) -> None:
        data = event.data
        if event.event == "run_start":
            self.role_names = {s["id"]: s.get("role_name") or "" for s in data["steps"]}
            typer.echo(f"Run {data['runId']} started")
        elif event.event == "step_start":
            name = self.role_names.get(data["stepId"]) or f"Step {data['stepOrder']}"
            typer.secho(f"\n== {data['stepOrder']}. {name} ==", bold=True)
        elif event.event == "step_chunk":
            reasoning, visible = split_reasoning(data["chunk"])
            if reasoning:
                typer.secho(reasoning, nl=False, dim=True)
            typer.echo(visible, nl=False)
        elif event.event == "step_complete":
            image = parse_image_marker(data["output"])
            if image is not None:
                typer.echo(f"[image saved to {image.path}]", nl=False)
            typer.echo("")
        elif event.event == "step_error":
            typer.secho(f"\nStep failed: {data['error']}", fg=typer.colors.RED)
        elif event.event == "run_complete":
            typer.secho(f"\nRun {data['runId']} completed", fg=typer.colors.GREEN)
        elif event.event == "run_error":
            typer.secho(f"\nRun {data['runId']} failed: {data['error']}", fg=typer.colors.RED)


async def _run_workflow(
    engine: WorkflowEngine, workflow_id: str, user: str, input_text: str, sse: bool
) -> Optional[WorkflowRun]:
    sink = QueueEventSink()
    handle = await engine.start(workflow_id, user, input_text, sink)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, handle.cancel)
    except (NotImplementedError, RuntimeError, ValueError):
        pass

    render = _ConsoleRenderer()
    try:
        async for event in sink.events():
            if sse:
                typer.echo(format_sse(event), nl=False)
            else:
                render(event)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError, ValueError):
            pass
    return await handle.wait()


@app.command("run")
def run(
    workflow_id: str,
    input_text: str = typer.Argument(..., metavar="INPUT"),
    user: str = UserOption,
    sse: bool = typer.Option(False, "--sse", help="Print raw Server-Sent-Events frames"),
) -> None:
    """
    Execute a workflow and stream its output.

    Press Ctrl-C to cancel; the run is then recorded as cancelled.

    Example:
        rolechain run 3f6c... "Write a haiku about rain" --user alice
    """
    config = load_config()
    if config.completion.provider == "openai" and not config.completion.api_key:
        _fail("Missing API key, set completion.api_key or ROLECHAIN_API_KEY")

    engine = WorkflowEngine(get_repository(), get_backend(config), config.engine_config())
    try:
        final = asyncio.run(_run_workflow(engine, workflow_id, user, input_text, sse))
    except WorkflowValidationError as exc:
        _fail(str(exc))

    if final is not None and final.status != "completed":
        raise typer.Exit(code=1)


@history_app.command("list")
def history_list(
    user: str = UserOption,
    limit: int = typer.Option(DEFAULT_HISTORY_LIMIT, help="Maximum number of runs"),
) -> None:
    """List the most recent runs."""
    repo = get_repository()
    runs = asyncio.run(repo.get_run_history(user, limit=limit))
    if not runs:
        typer.echo("No runs found")
        return
    for r in runs:
        typer.echo(f"{r.id}\t{r.status.value}\t{r.workflow_name or '-'}\t{r.started_at:%Y-%m-%d %H:%M}")


@history_app.command("show")
def history_show(run_id: str, user: str = UserOption) -> None:
    """Show a run with the input, output and status of every step."""
    repo = get_repository()
    r = asyncio.run(repo.get_run_by_id(run_id, user))
    if r is None:
        _fail("Run not found")
    results = asyncio.run(repo.get_step_results(r.id))

    typer.echo(f"Run {r.id}: {r.status.value}")
    typer.echo(f"Workflow: {r.workflow_name or r.workflow_id}")
    typer.echo(f"Input: {r.input_text}")
    for result in results:
        typer.echo(
            f"- {result.step_order}. {result.role_name or '-'}: {result.status.value}"
            + (
                f" ({result.started_at} -> {result.completed_at})"
                if result.started_at or result.completed_at
                else ""
            )
        )
        if result.error_message:
            typer.secho(f"    {result.error_message}", fg=typer.colors.RED)
    if r.final_result is not None:
        typer.echo(f"Result:\n{r.final_result}")


@history_app.command("delete")
def history_delete(run_id: str, user: str = UserOption) -> None:
    """Delete a run and its step results."""
    repo = get_repository()
    try:
        asyncio.run(repo.delete_run(run_id, user))
    except RunNotFound:
        _fail("Run not found")
    typer.echo(f"Deleted run {run_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
