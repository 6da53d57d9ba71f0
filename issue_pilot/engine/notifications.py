"""
Operator notification channels.

Notifications tell a human that an approval request is waiting, or that an
execution needs attention (for example, it was paused by a storage
failure). Delivery is best-effort: callers catch and log failures, a lost
notification never blocks or fails a workflow.

Channels:
    - LoggingNotifier: Writes a structured log line per notification
    - WebhookNotifier: POSTs JSON to a configured URL with httpx
    - CompositeNotifier: Sends to several channels, isolating failures
"""

from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from issue_pilot.models.domain import ApprovalRequest

log = structlog.get_logger(__name__)


class NotificationChannel(ABC):
    """Abstract base class for operator notification channels."""

    @abstractmethod
    async def notify(self, request: ApprovalRequest) -> None:
        """Announce a newly opened approval request."""
        pass

    async def alert(self, execution_id: str, message: str, **data: Any) -> None:
        """Announce that an execution needs operator attention."""
        log.warning("operator_alert", execution_id=execution_id, message=message, **data)

    async def close(self) -> None:
        """Release any resources held by the channel."""
        return None


class LoggingNotifier(NotificationChannel):
    """Notify by logging; always available."""

    async def notify(self, request: ApprovalRequest) -> None:
        log.info(
            "approval_requested",
            request_id=request.id,
            execution_id=request.execution_id,
            phase=request.phase.value,
            kind=request.kind.value,
            expires_at=request.expires_at.isoformat() if request.expires_at else None,
        )


class WebhookNotifier(NotificationChannel):
    """POST notifications as JSON to a webhook endpoint.

    Payload shape::

        {"type": "approval-requested", "request": {...ApprovalRecord...}}
        {"type": "alert", "execution_id": "...", "message": "...", "data": {...}}

    Raises ``httpx.HTTPError`` on transport failures or non-2xx responses;
    callers treat these as best-effort failures.
    """

    def __init__(self, url: str, timeout: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        """Initialize notifier.

        Args:
            url: Webhook endpoint
            timeout: Request timeout in seconds
            client: Pre-configured client (mainly for tests); created
                lazily otherwise
        """
        self.url = url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _post(self, payload: dict[str, Any]) -> None:
        response = await self._get_client().post(self.url, json=payload)
        response.raise_for_status()

    async def notify(self, request: ApprovalRequest) -> None:
        await self._post({"type": "approval-requested", "request": request.to_dict()})
        log.debug("webhook_notified", request_id=request.id, url=self.url)

    async def alert(self, execution_id: str, message: str, **data: Any) -> None:
        await self._post({"type": "alert", "execution_id": execution_id, "message": message, "data": data})

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class CompositeNotifier(NotificationChannel):
    """Fan a notification out to several channels.

    A failing channel is logged and does not prevent delivery to the rest.
    """

    def __init__(self, channels: list[NotificationChannel]) -> None:
        self.channels = channels

    async def notify(self, request: ApprovalRequest) -> None:
        for channel in self.channels:
            try:
                await channel.notify(request)
            except Exception as e:
                log.warning(
                    "notification_failed",
                    channel=type(channel).__name__,
                    request_id=request.id,
                    error=str(e),
                )

    async def alert(self, execution_id: str, message: str, **data: Any) -> None:
        for channel in self.channels:
            try:
                await channel.alert(execution_id, message, **data)
            except Exception as e:
                log.warning(
                    "alert_failed",
                    channel=type(channel).__name__,
                    execution_id=execution_id,
                    error=str(e),
                )

    async def close(self) -> None:
        for channel in self.channels:
            await channel.close()
