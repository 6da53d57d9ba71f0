"""Wire engine components together from settings."""

from pathlib import Path

import structlog

from issue_pilot.config.settings import EngineSettings
from issue_pilot.engine.approval_channels import (
    ApprovalChannel,
    ApprovalPrompt,
    AsynchronousApprovalChannel,
    SynchronousApprovalChannel,
)
from issue_pilot.engine.approvals import ApprovalCheckpointManager
from issue_pilot.engine.capability_registry import CapabilityRegistry
from issue_pilot.engine.events import EventBus
from issue_pilot.engine.notifications import (
    CompositeNotifier,
    LoggingNotifier,
    NotificationChannel,
    WebhookNotifier,
)
from issue_pilot.engine.phase_executor import PhaseExecutor
from issue_pilot.engine.role_router import RoleRouter
from issue_pilot.engine.state_machine import WorkflowStateMachine
from issue_pilot.engine.state_manager import ExecutionStore, FileExecutionStore
from issue_pilot.engine.supervisor import WorkflowSupervisor
from issue_pilot.enums import ApprovalMode
from issue_pilot.providers.base import GenerationProvider, Platform

log = structlog.get_logger(__name__)


def create_store(settings: EngineSettings, state_dir: str | Path | None = None) -> FileExecutionStore:
    return FileExecutionStore(
        state_dir or settings.state_dir,
        retry_attempts=settings.storage.retry_attempts,
        retry_backoff=settings.storage.retry_backoff,
    )


def create_notifier(settings: EngineSettings) -> NotificationChannel:
    """Build the notification channel(s) named in the settings."""
    channels: list[NotificationChannel] = []
    if settings.notifications.log_notifications:
        channels.append(LoggingNotifier())
    if settings.notifications.webhook_url is not None:
        channels.append(
            WebhookNotifier(str(settings.notifications.webhook_url), timeout=settings.notifications.webhook_timeout)
        )
    if len(channels) == 1:
        return channels[0]
    return CompositeNotifier(channels)


def create_channel(settings: EngineSettings, prompt: ApprovalPrompt | None = None) -> ApprovalChannel:
    if settings.approvals.mode == ApprovalMode.SYNC:
        return SynchronousApprovalChannel(poll_interval=settings.approvals.poll_interval, prompt=prompt)
    return AsynchronousApprovalChannel()


def create_engine(
    settings: EngineSettings,
    generator: GenerationProvider,
    platform: Platform,
    store: ExecutionStore | None = None,
    registry: CapabilityRegistry | None = None,
    notifier: NotificationChannel | None = None,
    channel: ApprovalChannel | None = None,
    prompt: ApprovalPrompt | None = None,
    item_filter: dict | None = None,
) -> WorkflowSupervisor:
    """Build a ready-to-use supervisor.

    Args:
        settings: Engine settings
        generator: AI generation backend
        platform: VCS / issue-tracking platform
        store: Durable store; a file store under ``workflow.state_directory``
            by default
        registry: Worker registry shared with whatever registers workers
        notifier: Operator notification channel; built from settings by
            default
        channel: Approval delivery channel; built from ``approvals.mode``
            by default
        prompt: Interactive prompt for the synchronous channel
        item_filter: Passed to ``Platform.get_items``

    Returns:
        WorkflowSupervisor (call ``recover_all()`` before starting work)
    """
    store = store or create_store(settings)
    registry = registry or CapabilityRegistry(
        heartbeat_interval=settings.routing.heartbeat_interval,
        max_missed_heartbeats=settings.routing.max_missed_heartbeats,
        default_max_concurrent=settings.routing.default_max_concurrent,
    )
    notifier = notifier or create_notifier(settings)
    events = EventBus()
    approvals = ApprovalCheckpointManager(store, notifier=notifier, events=events)
    router = RoleRouter(registry, settings.phase_role_table)
    executor = PhaseExecutor(
        generator,
        platform,
        phase_timeout=settings.workflow.phase_timeout,
        item_filter=item_filter,
        refactoring_requires_approval=settings.approvals.refactoring_requires_approval,
    )
    state_machine = WorkflowStateMachine(
        settings,
        store,
        router,
        executor,
        approvals,
        channel or create_channel(settings, prompt),
        events,
    )

    log.debug("engine_created", approval_mode=settings.approvals.mode.value, state_dir=str(settings.state_dir))
    return WorkflowSupervisor(
        state_machine,
        store,
        approvals,
        registry,
        events,
        notifier=notifier,
        concurrency=settings.concurrency,
        default_resource=settings.workflow.default_resource,
        default_max_iterations=settings.workflow.max_iterations,
    )
