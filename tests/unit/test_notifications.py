"""Tests for operator notification channels."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from issue_pilot.engine.notifications import (
    CompositeNotifier,
    LoggingNotifier,
    NotificationChannel,
    WebhookNotifier,
)
from issue_pilot.enums import Phase
from issue_pilot.models.domain import ApprovalRequest


@pytest.fixture
def approval_request() -> ApprovalRequest:
    return ApprovalRequest(id="req-1", execution_id="exec-1", phase=Phase.PLAN_APPROVAL, payload={"plan": "p"})


def recording_client(captured: list[httpx.Request], status_code: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(status_code)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_webhook_posts_approval_request(approval_request):
    """Test the webhook receives the request as JSON."""
    captured: list[httpx.Request] = []
    notifier = WebhookNotifier("https://hooks.example.com/approvals", client=recording_client(captured))

    await notifier.notify(approval_request)

    assert len(captured) == 1
    assert captured[0].method == "POST"
    body = json.loads(captured[0].content)
    assert body["type"] == "approval-requested"
    assert body["request"]["id"] == "req-1"
    assert body["request"]["phase"] == "plan-approval"


@pytest.mark.asyncio
async def test_webhook_posts_alert():
    """Test operator alerts carry their context."""
    captured: list[httpx.Request] = []
    notifier = WebhookNotifier("https://hooks.example.com/approvals", client=recording_client(captured))

    await notifier.alert("exec-1", "Execution paused", operation="save_execution")

    body = json.loads(captured[0].content)
    assert body == {
        "type": "alert",
        "execution_id": "exec-1",
        "message": "Execution paused",
        "data": {"operation": "save_execution"},
    }


@pytest.mark.asyncio
async def test_webhook_error_status_raises(approval_request):
    """Test non-2xx responses surface as HTTP errors."""
    notifier = WebhookNotifier("https://hooks.example.com/approvals", client=recording_client([], status_code=500))

    with pytest.raises(httpx.HTTPStatusError):
        await notifier.notify(approval_request)


@pytest.mark.asyncio
async def test_webhook_leaves_injected_client_open():
    """Test close() only closes clients the notifier created."""
    client = recording_client([])
    notifier = WebhookNotifier("https://hooks.example.com/approvals", client=client)

    await notifier.close()

    assert not client.is_closed
    await client.aclose()


@pytest.mark.asyncio
async def test_logging_notifier(approval_request):
    """Test the logging notifier never raises."""
    notifier = LoggingNotifier()

    await notifier.notify(approval_request)
    await notifier.alert("exec-1", "Execution paused")
    await notifier.close()


@pytest.mark.asyncio
async def test_composite_isolates_failures(approval_request):
    """Test one failing channel does not block the others."""
    broken = AsyncMock(spec=NotificationChannel)
    broken.notify.side_effect = RuntimeError("smtp down")
    broken.alert.side_effect = RuntimeError("smtp down")
    healthy = AsyncMock(spec=NotificationChannel)
    composite = CompositeNotifier([broken, healthy])

    await composite.notify(approval_request)
    await composite.alert("exec-1", "Execution paused", operation="append_transition")
    await composite.close()

    healthy.notify.assert_awaited_once_with(approval_request)
    healthy.alert.assert_awaited_once_with("exec-1", "Execution paused", operation="append_transition")
    healthy.close.assert_awaited_once()
