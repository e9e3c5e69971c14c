"""Command line interface for taskweave."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from .config import TaskweaveConfig, load_config
from .contracts import ExecutionStatus, WorkflowInput
from .definitions import JsonDefinitionStore, get_definition_store
from .engine import WorkflowEngine
from .errors import TaskweaveError, WorkflowExecutionError
from .persistence import get_repository
from .queue import create_queue_manager

app = typer.Typer(help="CLI for taskweave workflows")

workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for inspecting executions")
queue_app = typer.Typer(help="Commands for inspecting job queues")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(queue_app, name="queue")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level (defaults to the configured one)"
    ),
) -> None:
    """taskweave CLI entry point."""
    level = (log_level or load_config().log_level).upper()
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


async def _create_engine(config: TaskweaveConfig, path: Optional[str]) -> WorkflowEngine:
    manager = await create_queue_manager(config)
    return WorkflowEngine(
        manager,
        definitions=get_definition_store(path, config),
        repository=get_repository(config=config),
        config=config.engine,
        watcher=config.watcher,
    )


def _parse_params(params: List[str]) -> dict:
    parsed = {}
    for item in params:
        key, sep, value = item.partition("=")
        if not sep:
            typer.secho(f"Invalid parameter '{item}', expected key=value", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        try:
            parsed[key] = json.loads(value)
        except json.JSONDecodeError:
            parsed[key] = value
    return parsed


@workflow_app.command("list")
def workflow_list(
    path: Optional[str] = typer.Option(None, "--path", help="Definitions file"),
) -> None:
    """List workflow definitions with their enabled flag and step count."""
    store = get_definition_store(path)
    try:
        workflows = asyncio.run(store.load())
    except TaskweaveError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "enabled" if wf.enabled else "disabled"
        typer.echo(f"{wf.id}\t{wf.name}\t{state}\t{len(wf.steps)} steps")


@workflow_app.command("show")
def workflow_show(
    workflow_id: str,
    path: Optional[str] = typer.Option(None, "--path", help="Definitions file"),
) -> None:
    """
    Show one workflow definition and its step graph.

    Example:
        taskweave workflow show document-review
        # Output: Workflow document-review: Document review (enabled)
        #         - analyze [document-analysis] on document-processing
        #         - estimate [estimation] on ai-analysis <- analyze
    """
    store = get_definition_store(path)
    wf = asyncio.run(store.load_one(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    state = "enabled" if wf.enabled else "disabled"
    typer.echo(f"Workflow {wf.id}: {wf.name} ({state})")
    if wf.description:
        typer.echo(wf.description)
    for step in wf.steps:
        line = f"- {step.id} [{step.type.value}] on {step.queue_name.value}"
        if step.dependencies:
            line += " <- " + ", ".join(step.dependencies)
        typer.echo(line)
    if wf.schedule is not None:
        typer.echo(f"Schedule: {wf.schedule.expression} ({wf.schedule.timezone})")


@workflow_app.command("validate")
def workflow_validate(
    path: Path = typer.Argument(..., help="Definitions file to check"),
) -> None:
    """Validate every workflow in a definitions file without loading it."""
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(document, dict):
        typer.secho("Definitions file must contain a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    result = JsonDefinitionStore(path).validate_document(document)
    for warning in result.warnings:
        typer.secho(f"warning: {warning}", fg=typer.colors.YELLOW)
    for error in result.errors:
        typer.secho(f"error: {error}", fg=typer.colors.RED)
    if not result.valid:
        raise typer.Exit(code=1)
    typer.echo("Definitions are valid")


@workflow_app.command("template")
def workflow_template() -> None:
    """Print an empty workflow definition to start from."""
    typer.echo(json.dumps(JsonDefinitionStore.create_workflow_template(), indent=2))


@workflow_app.command("run")
def workflow_run(
    workflow_id: str,
    param: List[str] = typer.Option([], "--param", "-p", help="Input parameter key=value"),
    file: List[str] = typer.Option([], "--file", "-f", help="Input file path"),
    priority: str = typer.Option("medium", help="high, medium or low"),
    wait_timeout: Optional[float] = typer.Option(None, help="Seconds to wait for completion"),
    path: Optional[str] = typer.Option(None, "--path", help="Definitions file"),
) -> None:
    """
    Run a workflow to completion and print its outputs.

    Example:
        taskweave workflow run document-review -f ./rfp.pdf -p client=acme
    """
    config = load_config()
    workflow_input = WorkflowInput(files=file, parameters=_parse_params(param))

    async def run():
        engine = await _create_engine(config, path)
        try:
            return await engine.execute_workflow(
                workflow_id,
                workflow_input,
                {"priority": priority, "wait_timeout": wait_timeout},
            )
        finally:
            await engine.shutdown()

    try:
        result = asyncio.run(run())
    except WorkflowExecutionError as exc:
        typer.secho(f"Execution {exc.execution_id} {exc.status}", fg=typer.colors.RED)
        for error in exc.errors:
            typer.echo(f"- {error}")
        raise typer.Exit(code=1)
    except TaskweaveError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except asyncio.TimeoutError:
        typer.secho("Timed out waiting for the execution", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Execution {result.execution_id}: {result.status.value} in {result.duration:.0f}ms")
    typer.echo(json.dumps(result.outputs, indent=2, default=str))


@app.command("serve")
def serve(
    lifespan: Optional[float] = typer.Option(
        None, help="Seconds to run before stopping (default: run until interrupted)"
    ),
    path: Optional[str] = typer.Option(None, "--path", help="Definitions file"),
) -> None:
    """Run the engine with its schedules and file watchers active."""
    config = load_config()

    async def run() -> None:
        engine = await _create_engine(config, path)
        await engine.start()
        typer.echo("taskweave engine running")
        try:
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
        finally:
            await engine.shutdown()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        typer.echo("Stopped")


@execution_app.command("list")
def execution_list(
    workflow_id: Optional[str] = typer.Option(None, "--workflow", help="Filter by workflow"),
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
    limit: int = typer.Option(50, help="Maximum number of executions"),
) -> None:
    """List stored executions, newest first."""
    repo = get_repository()
    executions = asyncio.run(
        repo.list_executions(workflow_id, [status] if status else None, limit)
    )
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.workflow_id}\t{execution.status.value}\t{execution.progress}%"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show an execution with its step states and log."""
    repo = get_repository()
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)

    typer.echo(f"Execution {execution.id}: {execution.status.value} ({execution.progress}%)")
    typer.echo(f"Workflow: {execution.workflow_id}")
    if execution.retry_of:
        typer.echo(f"Retry of: {execution.retry_of}")
    for state in execution.step_states.values():
        line = f"- {state.step_id}: {state.status.value}"
        if state.error:
            line += f" ({state.error})"
        typer.echo(line)
    for entry in execution.logs:
        typer.echo(f"  {entry.timestamp:%H:%M:%S} {entry.level.upper():5} {entry.message}")
    if execution.result and execution.result.errors:
        typer.echo("Errors:")
        for error in execution.result.errors:
            typer.echo(f"  {error}")


@queue_app.command("stats")
def queue_stats() -> None:
    """Print waiting, active, delayed and finished job counts per queue."""
    config = load_config()

    async def collect():
        manager = await create_queue_manager(config)
        try:
            return await manager.get_system_stats()
        finally:
            await manager.shutdown()

    stats = asyncio.run(collect())
    typer.echo("queue\twaiting\tactive\tdelayed\tcompleted\tfailed")
    for name, q in sorted(stats.queues.items()):
        flag = " (paused)" if q.paused else ""
        typer.echo(
            f"{name}{flag}\t{q.waiting}\t{q.active}\t{q.delayed}\t{q.completed}\t{q.failed}"
        )
    typer.echo(f"healthy: {stats.healthy}")
