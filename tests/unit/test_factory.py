"""Tests for engine wiring."""

from issue_pilot.config.settings import EngineSettings
from issue_pilot.engine.approval_channels import AsynchronousApprovalChannel, SynchronousApprovalChannel
from issue_pilot.engine.notifications import CompositeNotifier, LoggingNotifier
from issue_pilot.engine.state_manager import FileExecutionStore
from issue_pilot.engine.supervisor import WorkflowSupervisor
from issue_pilot.enums import ApprovalMode
from issue_pilot.factory import create_channel, create_engine, create_notifier, create_store


def test_create_notifier_logging_only():
    """Test only the log notifier is used without a webhook."""
    assert isinstance(create_notifier(EngineSettings()), LoggingNotifier)


def test_create_notifier_with_webhook():
    """Test a webhook is combined with the log notifier."""
    settings = EngineSettings(notifications={"webhook_url": "https://hooks.example.com/approvals"})

    notifier = create_notifier(settings)

    assert isinstance(notifier, CompositeNotifier)
    assert len(notifier.channels) == 2


def test_create_channel_follows_mode():
    """Test the approval mode picks the delivery channel."""
    assert isinstance(create_channel(EngineSettings()), AsynchronousApprovalChannel)

    settings = EngineSettings(approvals={"mode": ApprovalMode.SYNC, "poll_interval": 1.0})
    assert isinstance(create_channel(settings), SynchronousApprovalChannel)


def test_create_store_prefers_override(tmp_path):
    """Test an explicit state directory wins over settings."""
    store = create_store(EngineSettings(), tmp_path / "override")

    assert isinstance(store, FileExecutionStore)
    assert store.state_dir == tmp_path / "override"


def test_create_engine(settings, mock_generator, mock_platform, registry):
    """Test the supervisor is wired with the shared registry."""
    supervisor = create_engine(settings, mock_generator, mock_platform, registry=registry)

    assert isinstance(supervisor, WorkflowSupervisor)
    assert supervisor.registry is registry
