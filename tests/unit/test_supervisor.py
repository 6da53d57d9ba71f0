"""Tests for the workflow supervisor: concurrency, control, and recovery."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from issue_pilot.engine.approvals import ApprovalCheckpointManager
from issue_pilot.engine.notifications import NotificationChannel
from issue_pilot.engine.supervisor import KeyedSemaphore
from issue_pilot.enums import (
    ApprovalResolution,
    Decision,
    EventKind,
    ExecutionState,
    Phase,
    ResolveStatus,
    TransitionOutcome,
)
from issue_pilot.exceptions import ExecutionNotFoundError, InvalidStateError, StorageError, TransientPhaseError
from issue_pilot.factory import create_engine
from issue_pilot.models.domain import ApprovalRequest, PhaseTransition, WorkflowExecution, utcnow


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=NotificationChannel)


@pytest.fixture
def supervisor(settings, store, registry, mock_generator, mock_platform, notifier):
    """Supervisor wired to the mock collaborators."""
    return create_engine(settings, mock_generator, mock_platform, store=store, registry=registry, notifier=notifier)


async def wait_for(condition, timeout: float = 5.0) -> None:
    """Poll until ``condition()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_start_runs_until_plan_gate(supervisor):
    """Test a started execution runs in the background until it needs a human."""
    execution_id = await supervisor.start(resource="acme/widgets")
    await supervisor.wait_idle()

    execution = await supervisor.status(execution_id)
    assert execution.state == ExecutionState.AWAITING_APPROVAL
    assert execution.current_phase == Phase.PLAN_APPROVAL
    assert [e.id for e in supervisor.list_active()] == [execution_id]

    pending = supervisor.list_pending_approvals()
    assert len(pending) == 1
    assert pending[0].execution_id == execution_id


@pytest.mark.asyncio
async def test_start_uses_default_resource(supervisor, settings):
    """Test executions without a resource share the default key."""
    execution_id = await supervisor.start()
    await supervisor.wait_idle()

    execution = await supervisor.status(execution_id)
    assert execution.resource == settings.workflow.default_resource


@pytest.mark.asyncio
async def test_submit_approval_resumes_execution(supervisor):
    """Test a submitted decision wakes the blocked execution."""
    execution_id = await supervisor.start(resource="acme/widgets", max_iterations=1)
    await supervisor.wait_idle()
    request = supervisor.list_pending_approvals()[0]

    result = await supervisor.submit_approval(request.id, Decision.APPROVE, "alice")
    await supervisor.wait_idle()

    assert result.status == ResolveStatus.RESOLVED
    execution = await supervisor.status(execution_id)
    assert execution.state == ExecutionState.COMPLETED
    assert supervisor.list_active() == []


@pytest.mark.asyncio
async def test_submit_approval_twice_reports_first_decision(supervisor):
    """Test a second decision does not overwrite the first."""
    await supervisor.start(resource="acme/widgets")
    await supervisor.wait_idle()
    request = supervisor.list_pending_approvals()[0]

    await supervisor.submit_approval(request.id, Decision.REJECT, "alice")
    again = await supervisor.submit_approval(request.id, Decision.APPROVE, "bob")
    await supervisor.wait_idle()

    assert again.status == ResolveStatus.ALREADY_RESOLVED
    assert again.request.resolution == ApprovalResolution.REJECTED
    assert again.request.resolver == "alice"


@pytest.mark.asyncio
async def test_submit_unknown_approval(supervisor):
    """Test an unknown request id is reported, not raised."""
    result = await supervisor.submit_approval("missing", Decision.APPROVE, "alice")
    assert result.status == ResolveStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_pause_and_resume(supervisor, mock_platform):
    """Test pause stops at the phase boundary and resume continues."""
    execution_id = await supervisor.start(resource="acme/widgets")
    await supervisor.pause(execution_id, reason="maintenance")
    await supervisor.wait_idle()

    execution = await supervisor.status(execution_id)
    assert execution.state == ExecutionState.PAUSED
    assert execution.pause_reason == "maintenance"
    mock_platform.get_items.assert_not_awaited()

    await supervisor.resume(execution_id)
    await supervisor.wait_idle()

    assert execution.state == ExecutionState.AWAITING_APPROVAL
    assert execution.pause_reason is None


@pytest.mark.asyncio
async def test_pause_requires_running_execution(supervisor):
    """Test pausing an execution that waits on a human is rejected."""
    execution_id = await supervisor.start(resource="acme/widgets")
    await supervisor.wait_idle()

    with pytest.raises(InvalidStateError):
        await supervisor.pause(execution_id)


@pytest.mark.asyncio
async def test_resume_blocked_execution_rejected(supervisor):
    """Test resume cannot bypass a pending approval."""
    execution_id = await supervisor.start(resource="acme/widgets")
    await supervisor.wait_idle()

    with pytest.raises(InvalidStateError):
        await supervisor.resume(execution_id)


@pytest.mark.asyncio
async def test_cancel_before_first_phase(supervisor, mock_platform):
    """Test cancellation is honoured before any phase runs."""
    execution_id = await supervisor.start(resource="acme/widgets")
    await supervisor.cancel(execution_id)
    await supervisor.wait_idle()

    execution = await supervisor.status(execution_id)
    assert execution.state == ExecutionState.CANCELLED
    mock_platform.get_items.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_blocked_execution_withdraws_request(supervisor):
    """Test cancelling while awaiting approval withdraws the request."""
    execution_id = await supervisor.start(resource="acme/widgets")
    await supervisor.wait_idle()
    request = supervisor.list_pending_approvals()[0]

    await supervisor.cancel(execution_id)
    await supervisor.wait_idle()

    execution = await supervisor.status(execution_id)
    assert execution.state == ExecutionState.CANCELLED
    assert supervisor.list_pending_approvals() == []
    stored = await supervisor.approvals.get(request.id)
    assert stored.resolution == ApprovalResolution.REJECTED


@pytest.mark.asyncio
async def test_cancel_terminal_is_noop(supervisor):
    """Test cancelling a finished execution changes nothing."""
    execution_id = await supervisor.start(resource="acme/widgets")
    await supervisor.cancel(execution_id)
    await supervisor.wait_idle()

    await supervisor.cancel(execution_id)
    execution = await supervisor.status(execution_id)
    assert execution.state == ExecutionState.CANCELLED


@pytest.fixture
def slow_retry_supervisor(settings, store, registry, mock_generator, mock_platform):
    """Supervisor whose first phase fails transiently and backs off for an hour."""
    settings.retry.base_delay = 3600
    settings.retry.max_delay = 3600
    mock_platform.get_items.side_effect = TransientPhaseError("platform unavailable")
    return create_engine(settings, mock_generator, mock_platform, store=store, registry=registry)


@pytest.mark.asyncio
async def test_cancel_interrupts_retry_backoff(slow_retry_supervisor, mock_platform):
    """Test cancel takes effect without waiting out the backoff delay."""
    supervisor = slow_retry_supervisor
    execution_id = await supervisor.start(resource="acme/widgets")
    await wait_for(lambda: execution_id in supervisor._wakeups)

    await supervisor.cancel(execution_id)
    await asyncio.wait_for(supervisor.wait_idle(), timeout=2)

    execution = await supervisor.status(execution_id)
    assert execution.state == ExecutionState.CANCELLED
    assert mock_platform.get_items.await_count == 1
    assert supervisor._wakeups == {}


@pytest.mark.asyncio
async def test_pause_interrupts_retry_backoff(slow_retry_supervisor):
    """Test pause takes effect and frees the resource slot during a backoff."""
    supervisor = slow_retry_supervisor
    execution_id = await supervisor.start(resource="acme/widgets")
    await wait_for(lambda: execution_id in supervisor._wakeups)

    await supervisor.pause(execution_id, reason="maintenance")
    await asyncio.wait_for(supervisor.wait_idle(), timeout=2)

    execution = await supervisor.status(execution_id)
    assert execution.state == ExecutionState.PAUSED
    assert supervisor.active_on("acme/widgets") == 0


@pytest.mark.asyncio
async def test_status_unknown_execution(supervisor):
    """Test unknown executions raise ExecutionNotFoundError."""
    with pytest.raises(ExecutionNotFoundError):
        await supervisor.status("nope")


@pytest.mark.asyncio
async def test_resource_limit_serialises_executions(settings, store, registry, mock_generator, mock_platform):
    """Test executions on one resource respect the per-resource limit."""
    settings.concurrency.resource_limits["acme/widgets"] = 1
    gate = asyncio.Event()

    async def slow_generate(kind, context):
        await gate.wait()
        return f"{kind} output"

    mock_generator.generate.side_effect = slow_generate
    supervisor = create_engine(settings, mock_generator, mock_platform, store=store, registry=registry)

    first = await supervisor.start(resource="acme/widgets")
    second = await supervisor.start(resource="acme/widgets")
    await wait_for(lambda: mock_generator.generate.call_count == 1)
    await asyncio.sleep(0.05)

    assert mock_generator.generate.call_count == 1
    assert supervisor.active_on("acme/widgets") == 1

    gate.set()
    await supervisor.wait_idle()

    for execution_id in (first, second):
        execution = await supervisor.status(execution_id)
        assert execution.state == ExecutionState.AWAITING_APPROVAL
    assert supervisor.active_on("acme/widgets") == 0


@pytest.mark.asyncio
async def test_different_resources_run_concurrently(settings, store, registry, mock_generator, mock_platform):
    """Test a full resource does not hold back other resources."""
    settings.concurrency.per_resource_limit = 1
    gate = asyncio.Event()

    async def slow_generate(kind, context):
        await gate.wait()
        return f"{kind} output"

    mock_generator.generate.side_effect = slow_generate
    supervisor = create_engine(settings, mock_generator, mock_platform, store=store, registry=registry)

    await supervisor.start(resource="acme/widgets")
    await supervisor.start(resource="acme/gadgets")
    await wait_for(lambda: mock_generator.generate.call_count == 2)

    assert supervisor.active_on("acme/widgets") == 1
    assert supervisor.active_on("acme/gadgets") == 1

    gate.set()
    await supervisor.wait_idle()


@pytest.mark.asyncio
async def test_storage_error_pauses_execution(supervisor, store, notifier):
    """Test a store failure pauses the execution and alerts the operator."""
    store.append_transition = AsyncMock(side_effect=StorageError("disk full", operation="append_transition"))

    execution_id = await supervisor.start(resource="acme/widgets")
    await supervisor.wait_idle()

    execution = await supervisor.status(execution_id)
    assert execution.state == ExecutionState.PAUSED
    assert execution.pause_reason.startswith("storage error")
    notifier.alert.assert_awaited_once()
    assert notifier.alert.await_args.args[0] == execution_id


@pytest.mark.asyncio
async def test_storage_error_isolated_to_one_execution(supervisor, store):
    """Test other executions keep running when one hits a store failure."""
    original = store.append_transition
    failing: set[str] = set()

    async def append(execution_id, transition):
        if execution_id in failing:
            raise StorageError("disk full", operation="append_transition")
        await original(execution_id, transition)

    store.append_transition = append
    broken = await supervisor.start(resource="acme/widgets")
    failing.add(broken)
    healthy = await supervisor.start(resource="acme/gadgets")
    await supervisor.wait_idle()

    assert (await supervisor.status(broken)).state == ExecutionState.PAUSED
    assert (await supervisor.status(healthy)).state == ExecutionState.AWAITING_APPROVAL


@pytest.mark.asyncio
async def test_recover_all_replays_logged_success(settings, store, registry, mock_generator, mock_platform, sample_item):
    """Test recovery applies a logged success instead of re-running the phase."""
    execution = WorkflowExecution.new(item="42", resource="acme/widgets")
    execution.current_phase = Phase.CONTEXT_ANALYSIS
    execution.artifacts[Phase.ITEM_SELECTION.value] = {"ref": "42", "title": sample_item.title}
    await store.save_execution(execution)
    # Crash after the log append, before the snapshot was rewritten
    await store.append_transition(
        execution.id,
        PhaseTransition(
            from_phase=Phase.CONTEXT_ANALYSIS,
            to_phase=Phase.PLAN_GENERATION,
            outcome=TransitionOutcome.SUCCESS,
            worker_id="worker-1",
            data="analysis from before the crash",
        ),
    )

    supervisor = create_engine(settings, mock_generator, mock_platform, store=store, registry=registry)
    recovered = await supervisor.recover_all()
    await supervisor.wait_idle()

    assert recovered == [execution.id]
    restored = await supervisor.status(execution.id)
    assert restored.state == ExecutionState.AWAITING_APPROVAL
    assert restored.artifacts[Phase.CONTEXT_ANALYSIS.value] == "analysis from before the crash"
    kinds = [call.args[0] for call in mock_generator.generate.await_args_list]
    assert kinds == [Phase.PLAN_GENERATION.value]


@pytest.mark.asyncio
async def test_recover_all_restores_pending_approval(settings, store, registry, mock_generator, mock_platform):
    """Test a restarted engine keeps waiting on, then honours, an open request."""
    first = create_engine(settings, mock_generator, mock_platform, store=store, registry=registry)
    execution_id = await first.start(resource="acme/widgets", max_iterations=1)
    await first.wait_idle()
    await first.shutdown()

    second = create_engine(settings, mock_generator, mock_platform, store=store, registry=registry)
    assert await second.recover_all() == [execution_id]
    await second.wait_idle()

    pending = second.list_pending_approvals()
    assert [r.execution_id for r in pending] == [execution_id]

    await second.submit_approval(pending[0].id, Decision.APPROVE, "alice")
    await second.wait_idle()
    assert (await second.status(execution_id)).state == ExecutionState.COMPLETED


@pytest.mark.asyncio
async def test_recover_all_skips_terminal_and_paused(settings, store, registry, mock_generator, mock_platform):
    """Test finished executions stay finished and paused ones stay paused."""
    done = WorkflowExecution.new(item=None, resource="acme/widgets")
    done.state = ExecutionState.COMPLETED
    paused = WorkflowExecution.new(item=None, resource="acme/widgets")
    paused.state = ExecutionState.PAUSED
    paused.pause_reason = "maintenance"
    await store.save_execution(done)
    await store.save_execution(paused)

    supervisor = create_engine(settings, mock_generator, mock_platform, store=store, registry=registry)
    recovered = await supervisor.recover_all()
    await supervisor.wait_idle()

    assert recovered == [paused.id]
    assert (await supervisor.status(paused.id)).state == ExecutionState.PAUSED
    mock_platform.get_items.assert_not_awaited()


@pytest.mark.asyncio
async def test_recover_all_withdraws_orphaned_requests(settings, store, registry, mock_generator, mock_platform):
    """Test requests whose execution is not waiting on them are withdrawn."""
    orphan = ApprovalRequest(id="orphan-1", execution_id="gone", phase=Phase.PLAN_APPROVAL)
    await store.save_approval(orphan)

    supervisor = create_engine(settings, mock_generator, mock_platform, store=store, registry=registry)
    await supervisor.recover_all()

    stored = await store.load_approval("orphan-1")
    assert stored.resolution == ApprovalResolution.REJECTED
    assert supervisor.list_pending_approvals() == []


@pytest.mark.asyncio
async def test_sweep_picks_up_external_resolution(supervisor, store):
    """Test a decision recorded by another process is applied on sweep."""
    execution_id = await supervisor.start(resource="acme/widgets", max_iterations=1)
    await supervisor.wait_idle()
    request = supervisor.list_pending_approvals()[0]

    external = ApprovalCheckpointManager(store)
    await external.resolve(request.id, Decision.APPROVE, "carol")
    report = await supervisor.sweep()
    await supervisor.wait_idle()

    assert report["woken"] == 1
    assert (await supervisor.status(execution_id)).state == ExecutionState.COMPLETED


@pytest.mark.asyncio
async def test_sweep_times_out_overdue_requests(supervisor):
    """Test sweep expires an overdue plan gate, which cancels the workflow."""
    execution_id = await supervisor.start(resource="acme/widgets")
    await supervisor.wait_idle()
    request = supervisor.list_pending_approvals()[0]

    report = await supervisor.sweep(now=request.expires_at + timedelta(seconds=1))
    await supervisor.wait_idle()

    assert report["expired"] == [request.id]
    assert (await supervisor.status(execution_id)).state == ExecutionState.CANCELLED


@pytest.mark.asyncio
async def test_sweep_prunes_stale_workers(supervisor, registry):
    """Test sweep removes workers that stopped sending heartbeats."""
    report = await supervisor.sweep(now=utcnow() + timedelta(hours=1))

    assert report["pruned"] == ["worker-1"]
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_events_stream(supervisor):
    """Test subscribers see transitions and approval requests in order."""
    stream = supervisor.events()
    execution_id = await supervisor.start(resource="acme/widgets")
    await supervisor.wait_idle()
    await supervisor.shutdown()

    events = [event async for event in stream]

    assert {e.execution_id for e in events} == {execution_id}
    assert events[0].kind == EventKind.PHASE_TRANSITION
    assert events[0].phase == Phase.ITEM_SELECTION
    assert events[-1].kind == EventKind.APPROVAL_REQUESTED


@pytest.mark.asyncio
async def test_start_after_shutdown_rejected(supervisor):
    """Test a stopped supervisor refuses new work."""
    await supervisor.shutdown()

    with pytest.raises(InvalidStateError):
        await supervisor.start(resource="acme/widgets")


@pytest.mark.asyncio
async def test_keyed_semaphore_limits_per_key():
    """Test holders beyond the limit wait for a slot."""
    semaphore = KeyedSemaphore(lambda key: 1)
    entered: list[str] = []
    release = asyncio.Event()

    async def hold(name: str) -> None:
        async with semaphore.hold("repo"):
            entered.append(name)
            await release.wait()

    tasks = [asyncio.create_task(hold("a")), asyncio.create_task(hold("b"))]
    await asyncio.sleep(0.01)

    assert entered == ["a"]
    assert semaphore.active("repo") == 1

    release.set()
    await asyncio.gather(*tasks)
    assert entered == ["a", "b"]
    assert semaphore.active("repo") == 0
