"""CLI entrypoint for task-dispatch."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from task_dispatch import __version__
from task_dispatch.dispatch.controllers import (
    CompleteCommand,
    DispatchCliController,
    FailCommand,
    FireTriggerCommand,
    ListEventsCommand,
    ListTasksCommand,
    ProgressCommand,
    StatusCommand,
    SubmitTaskCommand,
    TaskIdCommand,
)
from task_dispatch.dispatch.errors import DispatchError
from task_dispatch.dispatch.models import TaskStatus, TaskType
from task_dispatch.dispatch.scoring import BASE_PRIORITY_SCORES

click.rich_click.USE_MARKDOWN = True
DISPATCH_CONTROLLER = DispatchCliController()
CommandT = TypeVar("CommandT")

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="task-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def task_dispatch(log_level: str) -> None:
    """Task dispatch and triggering CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@task_dispatch.command("submit")
@_DB_PATH_OPTION
@click.option(
    "--type",
    "task_type",
    type=click.Choice([task_type.value for task_type in TaskType]),
    required=True,
    help="Task type.",
)
@click.option("--description", required=True, help="What needs to be done.")
@click.option(
    "--requirement",
    "requirements",
    multiple=True,
    required=True,
    help="Requirement line. Can be repeated.",
)
@click.option(
    "--priority",
    "base_priority",
    type=click.Choice(list(BASE_PRIORITY_SCORES)),
    default="normal",
    show_default=True,
    help="Base priority class.",
)
@click.option("--urgency", type=click.Choice(["low", "medium", "high"]), default=None)
@click.option("--complexity", type=click.Choice(["low", "medium", "high"]), default=None)
@click.option("--estimated-duration", default=None, help="Free-text estimate, e.g. '2 hours'.")
@click.option("--tag", "tags", multiple=True, help="Task tag. Can be repeated.")
def submit(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    description: str,
    requirements: tuple[str, ...],
    base_priority: str,
    urgency: str | None,
    complexity: str | None,
    estimated_duration: str | None,
    tags: tuple[str, ...],
) -> None:
    """Validate, score and assign a task to the best worker."""

    _emit_lines(
        _run(
            DISPATCH_CONTROLLER.submit,
            SubmitTaskCommand(
                db_path=db_path,
                task_type=task_type,
                description=description,
                requirements=requirements,
                base_priority=base_priority,
                urgency=urgency,
                complexity=complexity,
                estimated_duration=estimated_duration,
                tags=tags,
            ),
        ),
    )


@task_dispatch.command("start")
@_DB_PATH_OPTION
@click.argument("task_id")
def start(db_path: Path | None, task_id: str) -> None:
    """Mark an assigned task as in progress."""

    _emit_lines(_run(DISPATCH_CONTROLLER.start, TaskIdCommand(db_path=db_path, task_id=task_id)))


@task_dispatch.command("progress")
@_DB_PATH_OPTION
@click.argument("task_id")
@click.argument("progress", type=click.IntRange(min=0, max=100))
@click.option("--checkpoint", default=None, help="Checkpoint description to record.")
def progress(db_path: Path | None, task_id: str, progress: int, checkpoint: str | None) -> None:
    """Record task progress (0-100)."""

    _emit_lines(
        _run(
            DISPATCH_CONTROLLER.progress,
            ProgressCommand(
                db_path=db_path,
                task_id=task_id,
                progress=progress,
                checkpoint=checkpoint,
            ),
        ),
    )


@task_dispatch.command("complete")
@_DB_PATH_OPTION
@click.argument("task_id")
@click.option("--result", "result_json", default=None, help="Result payload as a JSON object.")
def complete(db_path: Path | None, task_id: str, result_json: str | None) -> None:
    """Report successful task completion."""

    _emit_lines(
        _run(
            DISPATCH_CONTROLLER.complete,
            CompleteCommand(db_path=db_path, task_id=task_id, result_json=result_json),
        ),
    )


@task_dispatch.command("fail")
@_DB_PATH_OPTION
@click.argument("task_id")
@click.option("--reason", required=True, help="Failure reason.")
def fail(db_path: Path | None, task_id: str, reason: str) -> None:
    """Report task failure."""

    _emit_lines(
        _run(
            DISPATCH_CONTROLLER.fail,
            FailCommand(db_path=db_path, task_id=task_id, reason=reason),
        ),
    )


@task_dispatch.command("tasks")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def tasks(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit_lines(
        _run(
            DISPATCH_CONTROLLER.list_tasks,
            ListTasksCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@task_dispatch.command("show")
@_DB_PATH_OPTION
@click.argument("task_id")
def show(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with its checkpoints and events."""

    _emit_lines(
        _run(DISPATCH_CONTROLLER.show_task, TaskIdCommand(db_path=db_path, task_id=task_id)),
    )


@task_dispatch.command("workers")
@_DB_PATH_OPTION
def workers(db_path: Path | None) -> None:
    """Show worker load, capacity and performance."""

    _emit_lines(_run(DISPATCH_CONTROLLER.workers, StatusCommand(db_path=db_path)))


@task_dispatch.command("fire")
@_DB_PATH_OPTION
@click.argument("name")
@click.argument("event", required=False)
def fire(db_path: Path | None, name: str, event: str | None) -> None:
    """Fire a trigger rule with a JSON (or plain text) event."""

    _emit_lines(
        _run(
            DISPATCH_CONTROLLER.fire,
            FireTriggerCommand(db_path=db_path, name=name, event=event),
        ),
    )


@task_dispatch.command("events")
@_DB_PATH_OPTION
@click.option("--task-id", default=None, help="Only events of this task.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of events to print.",
)
def events(db_path: Path | None, task_id: str | None, limit: int) -> None:
    """Show the persisted event trail."""

    _emit_lines(
        _run(
            DISPATCH_CONTROLLER.events,
            ListEventsCommand(db_path=db_path, task_id=task_id, limit=limit),
        ),
    )


@task_dispatch.command("status")
@_DB_PATH_OPTION
def status(db_path: Path | None) -> None:
    """Show system status and health."""

    _emit_lines(_run(DISPATCH_CONTROLLER.status, StatusCommand(db_path=db_path)))


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (DispatchError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_dispatch()
