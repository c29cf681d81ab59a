from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from loopkeeper.agents import AgentRunError, AgentRunner, ClaudeCodeRunner
from loopkeeper.config import (
    ConfigError,
    LoopkeeperConfig,
    default_home,
    load_config,
    save_config,
)
from loopkeeper.controller import LoopResult
from loopkeeper.environments import ExecutionEnvironmentError
from loopkeeper.identity import detect_identity
from loopkeeper.lifecycle import SessionManager
from loopkeeper.models import InvalidDocumentError, PauseReason, SessionStatus
from loopkeeper.session import InvalidTransitionError, SessionStateError
from loopkeeper.state import StateError

OPERATION_ERRORS = (
    StateError,
    SessionStateError,
    InvalidTransitionError,
    InvalidDocumentError,
    ExecutionEnvironmentError,
    AgentRunError,
)


@dataclass(slots=True)
class Runtime:
    home: Path
    config_path: Path
    config: LoopkeeperConfig
    manager: SessionManager


def _build_runner(config: LoopkeeperConfig, verbose: bool) -> AgentRunner:
    return ClaudeCodeRunner(
        config.agent.binary,
        timeout_seconds=config.agent.timeout_seconds,
        output_hook=click.echo if verbose else None,
    )


def _print_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "iteration_started":
        click.echo(f"--- Iteration {event['iteration']} ---")
    elif name == "iteration_finished":
        click.echo(
            f"[{event['status']}] {event['summary']} "
            f"({event['tasks_completed']}/{event['tasks_total']} tasks)"
        )
    elif name == "iteration_aborted":
        click.echo(f"Iteration {event['iteration']} aborted: could not push state.", err=True)
    elif name == "sync_retry":
        click.echo(
            f"Retrying {event['direction']} of {event['document']} "
            f"in {event['delay_seconds']:g}s...",
            err=True,
        )
    elif name == "session_complete":
        click.echo("All tasks complete.")
    elif name == "environment_creating":
        click.echo(f"Creating environment {event['environment']}...")
    elif name == "environment_reused":
        click.echo(f"Reusing environment {event['environment']}")
    elif name == "environment_destroyed":
        click.echo(f"Destroyed environment {event['environment']}")
    elif name == "planning_started":
        click.echo("Planning tasks" + (" (refresh)" if event.get("refresh") else "") + "...")
    elif name == "branch_pushed":
        click.echo(f"Pushed branch {event['branch']}")


def _load_runtime(ctx: click.Context) -> Runtime:
    options = ctx.obj or {}
    home = default_home()
    config_value = options.get("config_value")
    config_path = Path(config_value).resolve() if config_value else home / "config.toml"
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    verbose = bool(options.get("verbose"))
    manager = SessionManager(
        config,
        home=home,
        identity=detect_identity(Path.cwd()),
        runner=_build_runner(config, verbose),
        event_hook=_print_event,
    )
    return Runtime(home=home, config_path=config_path, config=config, manager=manager)


def _report_result(result: LoopResult) -> None:
    if result.status is SessionStatus.COMPLETE:
        click.echo(f"Session complete after {result.iteration} iterations.")
        click.echo("Run `loopkeeper done` to push the branch and open a pull request.")
    elif result.status is SessionStatus.PAUSED and result.pause_reason is not None:
        click.echo(f"Session paused ({result.pause_reason.value}): {result.message}")
        if result.pause_reason is PauseReason.NEEDS_INPUT:
            click.echo('Answer with `loopkeeper respond "<message>"`, then `loopkeeper resume`.')
    else:
        click.echo(f"Session {result.status.value}.")
    if result.exit_code:
        click.get_current_context().exit(result.exit_code)


@click.group()
@click.option("--config", "config_value", default=None, help="Path to config.toml.")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_value: str | None, verbose: bool) -> None:
    """Loopkeeper CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config_value": config_value, "verbose": verbose}


@cli.command("init")
@click.argument("requirements", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--fresh", is_flag=True, default=False, help="Discard an existing session.")
@click.option("--update", is_flag=True, default=False, help="Only replace the requirements.")
@click.pass_context
def init_command(ctx: click.Context, requirements: Path, fresh: bool, update: bool) -> None:
    if fresh and update:
        raise click.UsageError("--fresh and --update are mutually exclusive.")
    runtime = _load_runtime(ctx)
    mode = "fresh" if fresh else "update" if update else "new"
    try:
        session = runtime.manager.init(requirements, mode=mode)
    except OPERATION_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if not runtime.config_path.exists():
        save_config(runtime.config_path, LoopkeeperConfig.default())
        click.echo(f"Wrote default config to {runtime.config_path}")
    click.echo(f"Session: {session.project_id}")
    click.echo(f"Branch: {session.branch}")
    if mode == "update":
        click.echo("Requirements updated. Run `loopkeeper plan --refresh` to revise tasks.")
    else:
        click.echo("Next: `loopkeeper plan` to generate tasks.")


@cli.command("plan")
@click.option("--refresh", is_flag=True, default=False, help="Keep passing tasks.")
@click.pass_context
def plan_command(ctx: click.Context, refresh: bool) -> None:
    runtime = _load_runtime(ctx)
    try:
        tasks = asyncio.run(runtime.manager.plan(refresh=refresh))
    except OPERATION_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if not tasks:
        click.echo("The task list is empty. Run `loopkeeper plan` again.")
        return
    click.echo(f"Planned {len(tasks)} tasks. Review them with `loopkeeper tasks`.")


@cli.command("tasks")
@click.option("--edit", is_flag=True, default=False, help="Open the task list in $EDITOR.")
@click.option("--session", "session_id", default=None)
@click.pass_context
def tasks_command(ctx: click.Context, edit: bool, session_id: str | None) -> None:
    runtime = _load_runtime(ctx)
    try:
        tasks = runtime.manager.tasks(session_id)
    except OPERATION_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc

    if edit:
        original = json.dumps([task.to_dict() for task in tasks], ensure_ascii=False, indent=2)
        edited = click.edit(original, extension=".json")
        if edited is None or edited.strip() == original.strip():
            click.echo("No changes.")
            return
        try:
            tasks = runtime.manager.save_tasks(json.loads(edited), session_id)
        except json.JSONDecodeError as exc:
            raise click.ClickException(f"Edited task list is not valid JSON: {exc}") from exc
        except OPERATION_ERRORS as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Saved {len(tasks)} tasks.")
        return

    if not tasks:
        click.echo("No tasks. Run `loopkeeper plan` first.")
        return
    for task in tasks:
        mark = "x" if task.passes else " "
        click.echo(f"[{mark}] {task.id}. {task.description}")


@cli.command("run")
@click.option("--branch", default=None, help="Branch to check out in the environment.")
@click.option("--refresh", is_flag=True, default=False, help="Recreate the environment.")
@click.option("--yes", is_flag=True, default=False, help="Reuse an existing environment.")
@click.pass_context
def run_command(ctx: click.Context, branch: str | None, refresh: bool, yes: bool) -> None:
    runtime = _load_runtime(ctx)

    def _confirm_reuse(identifier: str, loop_running: bool) -> bool:
        if yes:
            return True
        if loop_running:
            click.echo(f"Environment {identifier} appears to be running an agent already.")
        return click.confirm(f"Reuse existing environment {identifier}?", default=True)

    try:
        result = asyncio.run(
            runtime.manager.start(branch=branch, refresh=refresh, confirm_reuse=_confirm_reuse)
        )
    except OPERATION_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _report_result(result)


@cli.command("resume")
@click.pass_context
def resume_command(ctx: click.Context) -> None:
    runtime = _load_runtime(ctx)
    try:
        result = asyncio.run(runtime.manager.resume())
    except OPERATION_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _report_result(result)


@cli.command("respond")
@click.argument("message")
@click.pass_context
def respond_command(ctx: click.Context, message: str) -> None:
    runtime = _load_runtime(ctx)
    try:
        awaiting = asyncio.run(runtime.manager.respond(message))
    except OPERATION_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if not awaiting:
        click.echo("Warning: the session is not waiting for input.", err=True)
    click.echo("Response saved. Run `loopkeeper resume` to continue.")


@cli.command("status")
@click.option("--session", "session_id", default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def status_command(ctx: click.Context, session_id: str | None, as_json: bool) -> None:
    runtime = _load_runtime(ctx)
    try:
        payload = runtime.manager.status(session_id)
    except OPERATION_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if as_json:
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    session = payload["session"]
    tasks = payload["tasks"]
    click.echo(f"Session:   {session['project_id']}")
    click.echo(f"Repo:      {session['repo'] or '-'}")
    click.echo(f"Branch:    {session['branch']}")
    status = session["status"]
    if session.get("pause_reason"):
        status += f" ({session['pause_reason']})"
    click.echo(f"Status:    {status}")
    click.echo(f"Iteration: {session['iteration']}")
    click.echo(f"Tasks:     {tasks['completed']}/{tasks['total']}")
    if session.get("pause_detail"):
        click.echo(f"Detail:    {session['pause_detail']}")
    if payload.get("question"):
        click.echo(f"Question:  {payload['question']}")
    if payload["history"]:
        click.echo("Recent iterations:")
        for entry in payload["history"]:
            click.echo(
                f"  #{entry['iteration']} [{entry['status']}] {entry['summary']} "
                f"({entry['tasks_completed']} done)"
            )


@cli.command("done")
@click.option("--no-pr", is_flag=True, default=False, help="Skip opening a pull request.")
@click.pass_context
def done_command(ctx: click.Context, no_pr: bool) -> None:
    runtime = _load_runtime(ctx)
    try:
        report = asyncio.run(runtime.manager.finalize(create_pr=not no_pr))
    except OPERATION_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if report.pr_url:
        click.echo(f"Pull request: {report.pr_url}")
    elif report.pr_error:
        click.echo(f"Pull request creation failed: {report.pr_error}", err=True)
    click.echo("Session done.")


@cli.command("stop")
@click.option("--session", "session_id", default=None)
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.pass_context
def stop_command(ctx: click.Context, session_id: str | None, yes: bool) -> None:
    runtime = _load_runtime(ctx)
    if not yes:
        click.confirm(
            "This destroys the environment and cancels the session. Continue?",
            default=False,
            abort=True,
        )
    try:
        session = asyncio.run(runtime.manager.stop(session_id))
    except OPERATION_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Session {session.project_id} cancelled.")


@cli.command("sessions")
@click.pass_context
def sessions_command(ctx: click.Context) -> None:
    runtime = _load_runtime(ctx)
    rows = runtime.manager.sessions()
    if not rows:
        click.echo("No sessions found.")
        return
    click.echo(f"  {'PROJECT':<14}{'STATUS':<24}{'ITER':>5}  {'TASKS':<8}BRANCH")
    for row in rows:
        status = row["status"]
        if row["pause_reason"]:
            status += f" ({row['pause_reason']})"
        marker = "*" if row["current"] else " "
        tasks = f"{row['tasks_completed']}/{row['tasks_total']}"
        click.echo(
            f"{marker} {row['project_id']:<14}{status:<24}{row['iteration']:>5}  "
            f"{tasks:<8}{row['branch']}"
        )
