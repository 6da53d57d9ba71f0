"""Pytest configuration and shared fixtures."""

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from issue_pilot.config.settings import EngineSettings
from issue_pilot.engine.approval_channels import ApprovalChannel, AsynchronousApprovalChannel
from issue_pilot.engine.approvals import ApprovalCheckpointManager
from issue_pilot.engine.capability_registry import CapabilityRegistry
from issue_pilot.engine.events import EventBus
from issue_pilot.engine.phase_executor import PhaseExecutor
from issue_pilot.engine.retry_policy import RetryPolicy
from issue_pilot.engine.role_router import RoleRouter
from issue_pilot.engine.state_machine import WorkflowStateMachine
from issue_pilot.engine.state_manager import FileExecutionStore
from issue_pilot.enums import ChangeStatus, StepStatus, WorkerRole
from issue_pilot.models.domain import ChangeRef, Item, PhaseResult, WorkflowExecution
from issue_pilot.providers.base import GenerationProvider, Platform


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def store(temp_state_dir: Path) -> FileExecutionStore:
    """File store with retries that never wait."""
    return FileExecutionStore(temp_state_dir, retry_attempts=3, retry_backoff=0)


@pytest.fixture
def settings(temp_state_dir: Path) -> EngineSettings:
    """Settings with every delay set to zero."""
    return EngineSettings(
        workflow={"state_directory": str(temp_state_dir), "status_poll_interval": 0},
        retry={"base_delay": 0, "max_delay": 0},
        routing={"retry_interval": 0},
    )


@pytest.fixture
def sample_item() -> Item:
    """Sample item for testing."""
    return Item(
        ref="42",
        title="Fix login redirect",
        body="Users land on a 404 after logging in.",
        labels=["python", "bug"],
        url="https://git.example.com/acme/widgets/issues/42",
    )


@pytest.fixture
def mock_generator() -> AsyncMock:
    """Generation backend that echoes the requested kind."""
    generator = AsyncMock(spec=GenerationProvider)
    generator.generate = AsyncMock(side_effect=lambda kind, context: f"{kind} output")
    return generator


@pytest.fixture
def mock_platform(sample_item: Item) -> AsyncMock:
    """Platform whose checks pass on the first status query."""
    platform = AsyncMock(spec=Platform)
    platform.get_items = AsyncMock(return_value=[sample_item])
    platform.create_branch = AsyncMock(return_value="issue-42")
    platform.commit = AsyncMock(return_value="abc123")
    platform.open_change = AsyncMock(
        return_value=ChangeRef(id="7", branch="issue-42", url="https://git.example.com/acme/widgets/pulls/7")
    )
    platform.get_status = AsyncMock(return_value=ChangeStatus.SUCCESS)
    platform.merge = AsyncMock(return_value=None)
    platform.close = AsyncMock(return_value=None)
    return platform


@pytest.fixture
def registry() -> CapabilityRegistry:
    """Registry with one worker able to take every phase."""
    registry = CapabilityRegistry()
    registry.register("worker-1", roles=[role.value for role in WorkerRole], max_concurrent=10)
    return registry


@pytest.fixture
def make_machine(
    settings: EngineSettings,
    store: FileExecutionStore,
    registry: CapabilityRegistry,
    mock_generator: AsyncMock,
    mock_platform: AsyncMock,
) -> Callable[..., WorkflowStateMachine]:
    """Factory for state machines wired to the mock collaborators."""

    def _make(
        channel: ApprovalChannel | None = None,
        retry_policy: RetryPolicy | None = None,
        **executor_options: Any,
    ) -> WorkflowStateMachine:
        events = EventBus()
        approvals = ApprovalCheckpointManager(store, events=events)
        router = RoleRouter(registry, settings.phase_role_table)
        executor = PhaseExecutor(mock_generator, mock_platform, **executor_options)
        return WorkflowStateMachine(
            settings,
            store,
            router,
            executor,
            approvals,
            channel or AsynchronousApprovalChannel(),
            events,
            retry_policy=retry_policy,
        )

    return _make


@pytest.fixture
def drive() -> Callable[..., Awaitable[PhaseResult]]:
    """Advance an execution until it blocks, pauses, or finishes."""

    async def _drive(machine: WorkflowStateMachine, execution: WorkflowExecution, max_steps: int = 100) -> PhaseResult:
        for _ in range(max_steps):
            result = await machine.advance(execution)
            if result.status == StepStatus.ADVANCED or result.status.needs_delay:
                continue
            return result
        raise AssertionError(f"Execution {execution.id} did not settle within {max_steps} steps")

    return _drive
