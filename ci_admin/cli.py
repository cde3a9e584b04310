"""
Admin CLI for operating a CI pipeline locally.

Provides commands to validate a descriptor, check and render events against
it, execute a run in the foreground, serve the webhook API, and inspect the
run history.
"""

import asyncio
import json
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path

import click

from ci_common.errors import DescriptorError, TemplateBindingError
from ci_common.models import Event, RunState
from ci_controller.runner import ExecutionRunner
from ci_persistence.sqlite_repository import SQLiteRunRepository
from ci_pipeline.descriptor import load_descriptor
from ci_pipeline.pipeline import Pipeline, PipelineConfig, build_pipeline
from ci_pipeline.settings import PipelineSettings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


def load_config(settings: PipelineSettings) -> PipelineConfig:
    """Load the descriptor or exit with an error message."""
    try:
        return load_descriptor(settings.descriptor_path)
    except DescriptorError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def read_event(
    event_file: str | None,
    kind: str | None,
    repo_url: str | None,
    head_sha: str | None,
    user_email: str | None,
    member: bool,
) -> Event:
    """Build an event from a JSON file or from individual options."""
    if event_file:
        try:
            data = json.loads(Path(event_file).read_text())
        except json.JSONDecodeError as e:
            click.echo(f"Error: {event_file} is not valid JSON: {e}", err=True)
            sys.exit(1)
        if not isinstance(data, dict):
            click.echo(f"Error: {event_file} must hold a JSON object", err=True)
            sys.exit(1)
    else:
        if not (kind and repo_url and head_sha):
            click.echo(
                "Error: Provide --event-file or all of --kind, --repo-url, --head-sha",
                err=True,
            )
            sys.exit(1)
        data = {
            "kind": kind,
            "repo_url": repo_url,
            "head_sha": head_sha,
            "user_email": user_email,
            "sender_is_member": member,
        }

    try:
        event = Event.from_dict(data)
    except KeyError as e:
        click.echo(f"Error: Event is missing field {e}", err=True)
        sys.exit(1)
    except TypeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if member and not event.sender_is_member:
        event = replace(event, sender_is_member=True)
    return event


def event_options(func):
    """Options shared by every command that takes an event."""
    for option in reversed(
        [
            click.option(
                "--event-file",
                type=click.Path(exists=True, dir_okay=False),
                help="JSON file with kind, repo_url, head_sha, user_email",
            ),
            click.option(
                "--kind", help="Event kind (opened, reopened, synchronized, pushed)"
            ),
            click.option("--repo-url", help="Repository clone URL"),
            click.option("--head-sha", help="Head commit SHA"),
            click.option("--user-email", help="Triggering user's email"),
            click.option(
                "--member/--non-member",
                default=False,
                help="Whether the sender is a repository member",
            ),
        ]
    ):
        func = option(func)
    return func


@click.group()
@click.option(
    "--descriptor",
    "descriptor_path",
    default=None,
    help="Task descriptor file (default: CI_DESCRIPTOR_PATH env or .taskcluster.yml)",
)
@click.option(
    "--db-path",
    default=None,
    help="Run history database (default: CI_DB_PATH env or ci_runs.db)",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    help="Logging level (default: INFO)",
)
@click.pass_context
def cli(ctx, descriptor_path: str | None, db_path: str | None, log_level: str):
    """CI Admin - Operate the event-triggered task pipeline."""
    logging.basicConfig(level=getattr(logging, log_level), format=LOG_FORMAT)
    ctx.obj = PipelineSettings.from_env().override(
        descriptor_path=descriptor_path, db_path=db_path
    )


@cli.command("validate")
@click.pass_obj
def validate(settings: PipelineSettings):
    """Check that the descriptor loads and show what it declares."""
    config = load_config(settings)
    template = config.template

    click.echo("✓ Descriptor is valid")
    click.echo(f"  Name:          {template.metadata.name}")
    click.echo(f"  Image:         {template.image}")
    click.echo(f"  Max run time:  {template.max_run_time}s")
    click.echo(f"  Steps:         {len(template.command)}")
    click.echo(f"  Shell:         {template.shell}")
    kinds = ", ".join(sorted(k.value for k in config.rules.event_kinds)) or "(none)"
    click.echo(f"  Events:        {kinds}")
    click.echo(f"  Pull requests: {config.rules.allow_pull_requests}")


@cli.command("match")
@event_options
@click.pass_obj
def match(settings: PipelineSettings, **event_opts):
    """Report whether an event would trigger a run (exit 1 if not)."""
    config = load_config(settings)
    event = read_event(**event_opts)

    pipe = Pipeline(config, ExecutionRunner(), context=settings.context)
    if pipe.matcher.matches(event):
        click.echo("match")
    else:
        click.echo("no match")
        sys.exit(1)


@cli.command("render")
@event_options
@click.pass_obj
def render(settings: PipelineSettings, **event_opts):
    """Print the task an event would run, as JSON."""
    config = load_config(settings)
    event = read_event(**event_opts)

    pipe = Pipeline(config, ExecutionRunner(), context=settings.context)
    try:
        task = pipe.prepare(event)
    except TemplateBindingError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if task is None:
        click.echo("Error: Event does not match the descriptor's triggers", err=True)
        sys.exit(1)

    click.echo(json.dumps(task.to_dict(), indent=2))


@cli.command("run")
@event_options
@click.option(
    "--json", "json_output", is_flag=True, help="Print the status report as JSON"
)
@click.pass_obj
def run(settings: PipelineSettings, json_output: bool, **event_opts):
    """Execute the task for an event in the foreground."""
    config = load_config(settings)
    event = read_event(**event_opts)

    async def execute():
        repo = SQLiteRunRepository(settings.db_path)
        await repo.initialize()

        pipe = build_pipeline(settings, repo, config=config)

        try:
            return await pipe.handle(event)
        finally:
            await repo.close()

    result = run_async(execute())

    if result is None:
        click.echo(
            "No run dispatched (event did not match or could not be bound)", err=True
        )
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(result.to_status_report(), indent=2))
    else:
        click.echo(result.output.decode("utf-8", errors="replace"), nl=False)
        click.echo(
            f"\nRun {result.run_id}: {result.status.value} "
            f"(exit code {result.exit_code}, {result.duration_ms}ms)"
        )
        if result.error:
            click.echo(f"  {result.error}")

    sys.exit(0 if result.state == RunState.SUCCEEDED else 1)


@cli.command("serve")
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
@click.pass_obj
def serve(settings: PipelineSettings, host: str, port: int):
    """Serve the webhook and run-status API."""
    import uvicorn

    # The app reads its settings from the environment at startup
    os.environ["CI_DESCRIPTOR_PATH"] = settings.descriptor_path
    os.environ["CI_DB_PATH"] = settings.db_path

    uvicorn.run("ci_server.app:app", host=host, port=port)


@cli.group()
def runs():
    """Inspect the run history."""
    pass


@runs.command("list")
@click.option("--limit", default=20, type=int, help="Number of runs to show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def runs_list(settings: PipelineSettings, limit: int, json_output: bool):
    """List recent runs."""

    async def list_runs():
        repo = SQLiteRunRepository(settings.db_path)
        await repo.initialize()
        try:
            return await repo.list_runs(limit=limit)
        finally:
            await repo.close()

    results = run_async(list_runs())

    if json_output:
        click.echo(json.dumps([r.to_summary_dict() for r in results], indent=2))
        return

    if not results:
        click.echo("No runs found.")
        return

    click.echo(
        f"\n{'Run ID':<38} {'State':<12} {'Exit':<6} {'Duration':<10} {'Started':<26}"
    )
    click.echo("-" * 96)
    for r in results:
        exit_code = "-" if r.exit_code is None else str(r.exit_code)
        started = r.started_at.isoformat() if r.started_at else "-"
        click.echo(
            f"{r.run_id:<38} {r.state.value:<12} {exit_code:<6} "
            f"{str(r.duration_ms) + 'ms':<10} {started:<26}"
        )
    click.echo()


@runs.command("show")
@click.argument("run_id")
@click.pass_obj
def runs_show(settings: PipelineSettings, run_id: str):
    """Show a run's details and captured output."""

    async def get_run():
        repo = SQLiteRunRepository(settings.db_path)
        await repo.initialize()
        try:
            return await repo.get_run(run_id)
        finally:
            await repo.close()

    result = run_async(get_run())

    if result is None:
        click.echo(f"Error: Run not found: {run_id}", err=True)
        sys.exit(1)

    click.echo("\nRun Details:")
    click.echo(f"  ID:        {result.run_id}")
    click.echo(f"  Task:      {result.task_id}")
    click.echo(f"  State:     {result.state.value}")
    click.echo(f"  Exit code: {result.exit_code}")
    click.echo(f"  Duration:  {result.duration_ms}ms")
    if result.error:
        click.echo(f"  Error:     {result.error}")
    click.echo()
    click.echo(result.output.decode("utf-8", errors="replace"), nl=False)


if __name__ == "__main__":
    cli()
