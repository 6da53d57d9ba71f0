"""Tests for the operator CLI."""

import asyncio
import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from issue_pilot.engine.state_manager import FileExecutionStore
from issue_pilot.enums import ExecutionState, Phase, TransitionOutcome
from issue_pilot.main import cli
from issue_pilot.models.domain import ApprovalRequest, PhaseTransition, WorkflowExecution


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch, tmp_path: Path):
    """Keep logging configuration out of the runner's output and isolate the cwd."""
    monkeypatch.setattr("issue_pilot.main.configure_logging", lambda *args, **kwargs: None)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def seed(state_dir: Path, *executions: WorkflowExecution, approvals: tuple[ApprovalRequest, ...] = ()) -> None:
    async def _seed() -> None:
        store = FileExecutionStore(state_dir, retry_backoff=0)
        for execution in executions:
            await store.save_execution(execution)
            for transition in execution.phase_history:
                await store.append_transition(execution.id, transition)
        for request in approvals:
            await store.save_approval(request)

    asyncio.run(_seed())


def invoke(runner: CliRunner, state_dir: Path, *args: str):
    return runner.invoke(cli, ["--state-dir", str(state_dir), *args])


def test_list_active_empty(runner, state_dir):
    """Test an empty store reports no executions."""
    result = invoke(runner, state_dir, "list-active")

    assert result.exit_code == 0
    assert "No active executions" in result.output


def test_list_active_skips_terminal(runner, state_dir):
    """Test finished executions are not listed."""
    running = WorkflowExecution.new(item="42", resource="acme/widgets")
    done = WorkflowExecution.new(item="43", resource="acme/widgets")
    done.state = ExecutionState.COMPLETED
    seed(state_dir, running, done)

    result = invoke(runner, state_dir, "list-active")

    assert result.exit_code == 0
    assert "Active executions (1):" in result.output
    assert running.id in result.output
    assert done.id not in result.output


def test_status_unknown_execution(runner, state_dir):
    """Test an unknown id exits with an error."""
    result = invoke(runner, state_dir, "status", "missing")

    assert result.exit_code == 1
    assert "Execution not found: missing" in result.output


def test_status_shows_approval(runner, state_dir):
    """Test a blocked execution shows the request it waits on."""
    execution = WorkflowExecution.new(item="42", resource="acme/widgets")
    execution.current_phase = Phase.PLAN_APPROVAL
    execution.state = ExecutionState.AWAITING_APPROVAL
    execution.pending_approval_id = "req-1"
    seed(state_dir, execution)

    result = invoke(runner, state_dir, "status", execution.id)

    assert result.exit_code == 0
    assert "awaiting-approval" in result.output
    assert "plan-approval" in result.output
    assert "req-1" in result.output


def test_status_json(runner, state_dir):
    """Test --json prints the stored record."""
    execution = WorkflowExecution.new(item="42", resource="acme/widgets")
    seed(state_dir, execution)

    result = invoke(runner, state_dir, "status", execution.id, "--json")

    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["id"] == execution.id
    assert data["state"] == {"tag": "running"}


def test_history(runner, state_dir):
    """Test the transition log is printed in order."""
    execution = WorkflowExecution.new(item="42", resource="acme/widgets")
    execution.record(
        PhaseTransition(
            from_phase=Phase.ITEM_SELECTION,
            to_phase=Phase.CONTEXT_ANALYSIS,
            outcome=TransitionOutcome.SUCCESS,
            worker_id="worker-1",
        )
    )
    execution.record(
        PhaseTransition(
            from_phase=Phase.CONTEXT_ANALYSIS,
            to_phase=Phase.CONTEXT_ANALYSIS,
            outcome=TransitionOutcome.RETRY,
            note="timeout",
        )
    )
    seed(state_dir, execution)

    result = invoke(runner, state_dir, "history", execution.id)

    assert result.exit_code == 0
    lines = result.output.strip().splitlines()
    assert len(lines) == 2
    assert "item-selection -> context-analysis  by worker-1" in lines[0]
    assert "(timeout)" in lines[1]


def test_history_empty(runner, state_dir):
    """Test an execution without transitions says so."""
    result = invoke(runner, state_dir, "history", "exec-1")

    assert result.exit_code == 0
    assert "No transitions recorded for exec-1" in result.output


def test_approvals_list(runner, state_dir):
    """Test pending requests are listed."""
    request = ApprovalRequest(id="req-1", execution_id="exec-1", phase=Phase.PLAN_APPROVAL)
    seed(state_dir, approvals=(request,))

    result = invoke(runner, state_dir, "approvals")

    assert result.exit_code == 0
    assert "Pending approvals (1):" in result.output
    assert "req-1" in result.output
    assert "expires=never" in result.output


def test_approvals_list_empty(runner, state_dir):
    result = invoke(runner, state_dir, "approvals")

    assert "No pending approvals" in result.output


def test_approve_then_approve_again(runner, state_dir):
    """Test the first decision wins and later ones are reported."""
    request = ApprovalRequest(id="req-1", execution_id="exec-1", phase=Phase.PLAN_APPROVAL)
    seed(state_dir, approvals=(request,))

    first = invoke(runner, state_dir, "approve", "req-1", "--resolver", "alice")
    second = invoke(runner, state_dir, "reject", "req-1", "--resolver", "bob")

    assert first.exit_code == 0
    assert "Request req-1 resolved: approved" in first.output
    assert second.exit_code == 0
    assert "Request req-1 was already resolved: approved by alice" in second.output

    listing = invoke(runner, state_dir, "approvals")
    assert "No pending approvals" in listing.output


def test_request_changes_records_comment(runner, state_dir):
    """Test requested changes are stored with their comment."""
    request = ApprovalRequest(id="req-1", execution_id="exec-1", phase=Phase.PLAN_APPROVAL)
    seed(state_dir, approvals=(request,))

    result = invoke(
        runner, state_dir, "request-changes", "req-1", "--resolver", "alice", "--comment", "split the plan"
    )

    assert result.exit_code == 0
    assert "resolved: changes-requested" in result.output

    stored = asyncio.run(FileExecutionStore(state_dir, retry_backoff=0).load_approval("req-1"))
    assert stored is not None
    assert stored.comment == "split the plan"
    assert stored.resolver == "alice"


def test_reject_unknown_request(runner, state_dir):
    """Test resolving an unknown request exits with an error."""
    result = invoke(runner, state_dir, "reject", "req-404")

    assert result.exit_code == 1
    assert "Approval request not found: req-404" in result.output


def test_missing_explicit_config(runner, state_dir):
    """Test an explicit config path that does not exist is an error."""
    result = runner.invoke(cli, ["--config", "absent.yaml", "--state-dir", str(state_dir), "list-active"])

    assert result.exit_code == 1
    assert "Configuration file not found: absent.yaml" in result.output


def test_config_file_is_loaded(runner, tmp_path, state_dir):
    """Test a config file in the working directory is picked up."""
    (tmp_path / "issue-pilot.yaml").write_text(f"workflow:\n  state_directory: {state_dir}\n")
    execution = WorkflowExecution.new(item="42", resource="acme/widgets")
    seed(state_dir, execution)

    result = runner.invoke(cli, ["list-active"])

    assert result.exit_code == 0
    assert execution.id in result.output
