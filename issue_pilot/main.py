"""CLI entry point for operating the orchestration engine.

The CLI works directly on the durable store, so it can inspect and resolve
approvals while the engine runs in another process. A running supervisor
picks up decisions made here on its next sweep.
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any

import click
import structlog

from issue_pilot.config.settings import EngineSettings
from issue_pilot.engine.approvals import ApprovalCheckpointManager
from issue_pilot.engine.state_manager import ExecutionStore
from issue_pilot.enums import Decision, ResolveStatus
from issue_pilot.exceptions import ConfigurationError, IssuePilotError
from issue_pilot.factory import create_store
from issue_pilot.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

DEFAULT_CONFIG = "issue-pilot.yaml"


@click.group()
@click.option("--config", default=None, help=f"Path to configuration file (default: {DEFAULT_CONFIG} if present)")
@click.option("--state-dir", default=None, help="Override the state directory")
@click.option("--log-level", default="WARNING", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str | None, state_dir: str | None, log_level: str) -> None:
    """issue-pilot: workflow orchestration engine operator CLI."""
    configure_logging(log_level)

    config_path = Path(config or DEFAULT_CONFIG)
    try:
        if config_path.exists():
            settings = EngineSettings.from_yaml(config_path)
        elif config is not None:
            raise ConfigurationError(f"Configuration file not found: {config}")
        else:
            settings = EngineSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings, "state_dir": state_dir}


def _store(ctx: click.Context) -> ExecutionStore:
    return create_store(ctx.obj["settings"], ctx.obj["state_dir"])


def _run(ctx: click.Context, coro: Any) -> Any:
    """Run a command coroutine with the CLI's error conventions."""
    try:
        return asyncio.run(coro)
    except IssuePilotError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("command_error", command=ctx.command.name, exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


@cli.command("list-active")
@click.pass_context
def list_active(ctx: click.Context) -> None:
    """List executions that have not finished."""
    _run(ctx, _list_active(_store(ctx)))


@cli.command()
@click.argument("execution_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw execution record")
@click.pass_context
def status(ctx: click.Context, execution_id: str, as_json: bool) -> None:
    """Show the status of an execution."""
    _run(ctx, _show_status(_store(ctx), execution_id, as_json))


@cli.command()
@click.argument("execution_id")
@click.pass_context
def history(ctx: click.Context, execution_id: str) -> None:
    """Show the transition log of an execution."""
    _run(ctx, _show_history(_store(ctx), execution_id))


@cli.command()
@click.pass_context
def approvals(ctx: click.Context) -> None:
    """List pending approval requests."""
    _run(ctx, _list_approvals(_store(ctx)))


def _default_resolver() -> str:
    return os.environ.get("USER", "operator")


def _decision_command(name: str, decision: Decision, help_text: str) -> None:
    @cli.command(name, help=help_text)
    @click.argument("request_id")
    @click.option("--resolver", default=_default_resolver, help="Name recorded as the decision maker")
    @click.option("--comment", default=None, help="Comment or requested changes")
    @click.pass_context
    def command(ctx: click.Context, request_id: str, resolver: str, comment: str | None) -> None:
        _run(ctx, _resolve(_store(ctx), request_id, decision, resolver, comment))


_decision_command("approve", Decision.APPROVE, "Approve a pending request.")
_decision_command("reject", Decision.REJECT, "Reject a pending request.")
_decision_command("request-changes", Decision.REQUEST_CHANGES, "Send a plan back with requested changes.")


async def _list_active(store: ExecutionStore) -> None:
    executions = [e for e in await store.list_executions() if not e.is_terminal]
    if not executions:
        click.echo("No active executions")
        return

    click.echo(f"Active executions ({len(executions)}):")
    for execution in executions:
        click.echo(
            f"  {execution.id}  {execution.state.value:<18} {execution.current_phase.value:<18} "
            f"item={execution.item or '-'} resource={execution.resource}"
        )


async def _show_status(store: ExecutionStore, execution_id: str, as_json: bool) -> None:
    execution = await store.load_execution(execution_id)
    if execution is None:
        click.echo(f"Execution not found: {execution_id}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(execution.to_dict(), indent=2, default=str))
        return

    click.echo(f"Execution: {execution.id}")
    click.echo(f"State:     {execution.state.value}")
    click.echo(f"Phase:     {execution.current_phase.value}")
    click.echo(f"Item:      {execution.item or '-'}")
    click.echo(f"Resource:  {execution.resource}")
    click.echo(f"Iteration: {execution.iteration}")
    click.echo(f"Retries:   {execution.retry_count}")
    if execution.pending_approval_id:
        click.echo(f"Approval:  {execution.pending_approval_id}")
    if execution.pause_reason:
        click.echo(f"Paused:    {execution.pause_reason}")
    if execution.error:
        click.echo(f"Error:     [{execution.error.classification.value}] {execution.error.message}")


async def _show_history(store: ExecutionStore, execution_id: str) -> None:
    transitions = await store.load_transitions(execution_id)
    if not transitions:
        click.echo(f"No transitions recorded for {execution_id}")
        return

    for t in transitions:
        source = t.from_phase.value if t.from_phase else "-"
        line = f"{t.timestamp.isoformat()}  {t.outcome.value:<8} {source} -> {t.to_phase.value}"
        if t.worker_id:
            line += f"  by {t.worker_id}"
        if t.note:
            line += f"  ({t.note})"
        click.echo(line)


async def _list_approvals(store: ExecutionStore) -> None:
    pending = await store.list_approvals(pending_only=True)
    if not pending:
        click.echo("No pending approvals")
        return

    click.echo(f"Pending approvals ({len(pending)}):")
    for request in pending:
        expires = request.expires_at.isoformat() if request.expires_at else "never"
        click.echo(
            f"  {request.id}  {request.kind.value:<18} {request.phase.value:<18} "
            f"execution={request.execution_id} expires={expires}"
        )


async def _resolve(
    store: ExecutionStore,
    request_id: str,
    decision: Decision,
    resolver: str,
    comment: str | None,
) -> None:
    result = await ApprovalCheckpointManager(store).resolve(request_id, decision, resolver, comment)

    if result.status == ResolveStatus.NOT_FOUND:
        click.echo(f"Approval request not found: {request_id}", err=True)
        sys.exit(1)

    assert result.request is not None
    if result.status == ResolveStatus.ALREADY_RESOLVED:
        click.echo(
            f"Request {request_id} was already resolved: {result.request.resolution.value} "
            f"by {result.request.resolver or 'unknown'}"
        )
        return

    click.echo(f"Request {request_id} resolved: {result.request.resolution.value}")


if __name__ == "__main__":
    cli()
