"""
Approval checkpoint manager.

Owns the lifecycle of human decisions that gate an execution: plan
approval, refactoring approval, and escalation resume. Requests are
persisted on creation and archived on resolution, so a decision made while
the engine is down (for example from the CLI in another process) is picked
up on the next poll.

Request Lifecycle::

    request() -> pending --resolve()--------> approved
                         |                  -> rejected
                         |                  -> changes-requested
                         +--expire_overdue()-> timed-out

Resolution is exactly-once: the first decision wins. Later ``resolve()``
calls report ``already-resolved`` together with the stored decision and
never overwrite it.

Notification of new requests is best-effort. A failing notification
channel is logged and never fails the request.

Example:
    >>> manager = ApprovalCheckpointManager(store, notifier=LoggingNotifier())
    >>> request = await manager.request(execution.id, Phase.PLAN_APPROVAL, payload=plan)
    >>> result = await manager.resolve(request.id, Decision.APPROVE, resolver="alice")
    >>> result.status
    <ResolveStatus.RESOLVED: 'resolved'>
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from issue_pilot.engine.events import EventBus
from issue_pilot.engine.notifications import NotificationChannel
from issue_pilot.engine.state_manager import ExecutionStore
from issue_pilot.enums import ApprovalKind, ApprovalResolution, Decision, EventKind, Phase, ResolveStatus
from issue_pilot.exceptions import ApprovalError, ApprovalNotFoundError, ApprovalRejected, ApprovalTimedOut
from issue_pilot.models.domain import ApprovalRequest, WorkflowEvent, new_id, utcnow

log = structlog.get_logger(__name__)

SYSTEM_RESOLVER = "system"


def require_approved(request: ApprovalRequest) -> None:
    """Raise unless a human approved the request.

    Raises:
        ApprovalTimedOut: Nobody decided before the request expired.
        ApprovalRejected: The request was rejected or sent back with changes.
        ApprovalError: The request is still pending.
    """
    if request.resolution == ApprovalResolution.APPROVED:
        return
    if request.resolution == ApprovalResolution.TIMED_OUT:
        raise ApprovalTimedOut(
            f"No decision on {request.kind.value} request before it expired", request_id=request.id
        )
    if request.resolution == ApprovalResolution.PENDING:
        raise ApprovalError(f"{request.kind.value} request is still pending", request_id=request.id)
    raise ApprovalRejected(
        f"{request.kind.value} request {request.resolution.value} by {request.resolver or 'unknown'}",
        request_id=request.id,
    )


@dataclass(frozen=True)
class ResolveResult:
    """Outcome of ``ApprovalCheckpointManager.resolve``.

    Attributes:
        status: resolved, already-resolved, or not-found.
        request: The stored request (None when not found). For
            already-resolved it carries the original decision.
    """

    status: ResolveStatus
    request: ApprovalRequest | None = None


class ApprovalCheckpointManager:
    """Create, resolve, poll, and expire approval requests."""

    def __init__(
        self,
        store: ExecutionStore,
        notifier: NotificationChannel | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.events = events
        self._requests: dict[str, ApprovalRequest] = {}
        self._signals: dict[str, asyncio.Event] = {}
        self._lock = asyncio.Lock()

    async def request(
        self,
        execution_id: str,
        phase: Phase,
        payload: Any = None,
        timeout: float | None = None,
        kind: ApprovalKind = ApprovalKind.PHASE_GATE,
    ) -> ApprovalRequest:
        """Open and persist a new approval request.

        Args:
            execution_id: Execution blocked on the decision
            phase: Phase the decision gates
            payload: What the human is asked to review
            timeout: Seconds until the request times out (None = never)
            kind: phase-gate, refactoring, or escalation-resume

        Returns:
            The pending request.
        """
        now = utcnow()
        request = ApprovalRequest(
            id=new_id(),
            execution_id=execution_id,
            phase=phase,
            kind=kind,
            payload=payload,
            created_at=now,
            expires_at=now + timedelta(seconds=timeout) if timeout else None,
        )
        await self.store.save_approval(request)
        self._requests[request.id] = request

        log.info(
            "approval_request_created",
            request_id=request.id,
            execution_id=execution_id,
            phase=phase.value,
            kind=kind.value,
        )
        await self._publish(EventKind.APPROVAL_REQUESTED, request, ApprovalResolution.PENDING.value)
        await self._notify(request)
        return request

    async def resolve(
        self,
        request_id: str,
        decision: Decision,
        resolver: str,
        comment: str | None = None,
    ) -> ResolveResult:
        """Record a human decision on a pending request.

        Returns:
            ResolveResult; never raises for unknown or already-resolved ids.
        """
        return await self._finalize(request_id, decision.to_resolution(), resolver, comment)

    async def withdraw(self, request_id: str, reason: str) -> ResolveResult:
        """Reject a pending request on behalf of the engine (e.g., on cancel)."""
        return await self._finalize(request_id, ApprovalResolution.REJECTED, SYSTEM_RESOLVER, reason)

    async def poll(self, request_id: str, now: datetime | None = None) -> ApprovalResolution:
        """Current resolution of a request, timing it out if overdue.

        Raises:
            ApprovalNotFoundError: If no such request exists.
        """
        request = await self.get(request_id)
        if request is None:
            raise ApprovalNotFoundError("Approval request not found", request_id=request_id)
        if request.is_expired(now):
            result = await self._finalize(request_id, ApprovalResolution.TIMED_OUT, SYSTEM_RESOLVER, None)
            if result.request is not None:
                return result.request.resolution
        return request.resolution

    async def get(self, request_id: str) -> ApprovalRequest | None:
        """Fetch a request, refreshing from the store.

        The store is consulted on every call so that decisions recorded by
        another process are visible.
        """
        stored = await self.store.load_approval(request_id)
        if stored is None:
            return self._requests.get(request_id)
        if stored.is_resolved:
            # Only pending requests are tracked in memory
            self._requests.pop(request_id, None)
            self._signal(request_id)
        else:
            self._requests[request_id] = stored
        return stored

    def list_pending(self, execution_id: str | None = None) -> list[ApprovalRequest]:
        pending = [
            r
            for r in self._requests.values()
            if not r.is_resolved and (execution_id is None or r.execution_id == execution_id)
        ]
        return sorted(pending, key=lambda r: r.created_at)

    async def expire_overdue(self, now: datetime | None = None) -> list[ApprovalRequest]:
        """Time out every pending request past its expiry.

        Returns:
            The requests that were timed out by this call.
        """
        now = now or utcnow()
        expired = []
        for request in self.list_pending():
            if not request.is_expired(now):
                continue
            result = await self._finalize(request.id, ApprovalResolution.TIMED_OUT, SYSTEM_RESOLVER, None)
            if result.status == ResolveStatus.RESOLVED and result.request is not None:
                expired.append(result.request)
        return expired

    async def wait(
        self,
        request_id: str,
        timeout: float | None = None,
        poll_interval: float = 5.0,
    ) -> ApprovalResolution:
        """Block until the request is resolved, times out, or ``timeout`` elapses.

        Wakes immediately on in-process resolutions and polls the store
        every ``poll_interval`` seconds for external ones.

        Returns:
            The resolution, or pending if ``timeout`` elapsed first.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        signal = self._signals.setdefault(request_id, asyncio.Event())

        try:
            while True:
                resolution = await self.poll(request_id)
                if resolution.is_resolved:
                    return resolution

                wait_for = poll_interval
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        return resolution
                    wait_for = min(wait_for, remaining)

                try:
                    await asyncio.wait_for(signal.wait(), timeout=wait_for)
                except TimeoutError:
                    continue
        finally:
            if self._signals.get(request_id) is signal:
                del self._signals[request_id]

    async def load_pending(self) -> list[ApprovalRequest]:
        """Restore pending requests from the store after a restart."""
        pending = await self.store.list_approvals(pending_only=True)
        for request in pending:
            self._requests[request.id] = request
        log.info("approval_requests_restored", count=len(pending))
        return pending

    async def _finalize(
        self,
        request_id: str,
        resolution: ApprovalResolution,
        resolver: str,
        comment: str | None,
    ) -> ResolveResult:
        async with self._lock:
            request = await self.get(request_id)
            if request is None:
                log.warning("approval_request_not_found", request_id=request_id)
                return ResolveResult(ResolveStatus.NOT_FOUND)
            if request.is_resolved:
                log.info(
                    "approval_already_resolved",
                    request_id=request_id,
                    resolution=request.resolution.value,
                    attempted=resolution.value,
                )
                return ResolveResult(ResolveStatus.ALREADY_RESOLVED, request)

            request.resolution = resolution
            request.resolver = resolver
            request.resolved_at = utcnow()
            request.comment = comment
            await self.store.archive_approval(request)
            self._requests.pop(request_id, None)

        self._signal(request_id)
        log.info(
            "approval_resolved",
            request_id=request_id,
            execution_id=request.execution_id,
            resolution=resolution.value,
            resolver=resolver,
        )
        await self._publish(EventKind.APPROVAL_RESOLVED, request, resolution.value)
        return ResolveResult(ResolveStatus.RESOLVED, request)

    def _signal(self, request_id: str) -> None:
        signal = self._signals.pop(request_id, None)
        if signal is not None:
            signal.set()

    async def _publish(self, kind: EventKind, request: ApprovalRequest, outcome: str) -> None:
        if self.events is None:
            return
        await self.events.publish(
            WorkflowEvent(
                kind=kind,
                execution_id=request.execution_id,
                phase=request.phase,
                outcome=outcome,
                data={"request_id": request.id, "kind": request.kind.value, "resolver": request.resolver},
            )
        )

    async def _notify(self, request: ApprovalRequest) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(request)
        except Exception as e:
            log.warning("approval_notification_failed", request_id=request.id, error=str(e))
