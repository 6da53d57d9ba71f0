"""
Delivery adapters for approval checkpoints.

Both adapters share one interface so the state machine does not care how a
human is reached:

- ``SynchronousApprovalChannel`` blocks the calling execution until the
  request is resolved or times out. It can drive an interactive prompt
  (see ``console_prompt``) for a local operator.
- ``AsynchronousApprovalChannel`` returns immediately. The execution moves
  to awaiting-approval and is resumed later, when a decision arrives
  through ``submit_approval`` or is found by the supervisor sweep.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Callable

import click
import structlog

from issue_pilot.engine.approvals import ApprovalCheckpointManager
from issue_pilot.enums import ApprovalResolution, Decision
from issue_pilot.models.domain import ApprovalRequest

log = structlog.get_logger(__name__)

ApprovalPrompt = Callable[[ApprovalRequest], "tuple[Decision, str | None] | None"]


class ApprovalChannel(ABC):
    """Deliver an approval request to a human."""

    @abstractmethod
    async def deliver(self, manager: ApprovalCheckpointManager, request: ApprovalRequest) -> ApprovalResolution:
        """Deliver the request.

        Returns:
            The resolution if it is already known, otherwise pending.
        """
        pass


class AsynchronousApprovalChannel(ApprovalChannel):
    """Hand the request off and return without waiting."""

    async def deliver(self, manager: ApprovalCheckpointManager, request: ApprovalRequest) -> ApprovalResolution:
        return await manager.poll(request.id)


class SynchronousApprovalChannel(ApprovalChannel):
    """Block until the request is resolved or expires.

    Attributes:
        poll_interval: Seconds between store checks while blocking.
        prompt: Optional blocking callable asked for the decision. It runs
            in a worker thread and returns ``(decision, comment)`` or None
            to keep waiting for an external decision.
        resolver: Name recorded as resolver for prompted decisions.
    """

    def __init__(
        self,
        poll_interval: float = 5.0,
        prompt: ApprovalPrompt | None = None,
        resolver: str = "operator",
    ) -> None:
        self.poll_interval = poll_interval
        self.prompt = prompt
        self.resolver = resolver

    async def deliver(self, manager: ApprovalCheckpointManager, request: ApprovalRequest) -> ApprovalResolution:
        if self.prompt is not None:
            answer = await asyncio.to_thread(self.prompt, request)
            if answer is not None:
                decision, comment = answer
                await manager.resolve(request.id, decision, resolver=self.resolver, comment=comment)

        resolution = await manager.wait(request.id, poll_interval=self.poll_interval)
        log.info("approval_delivered_sync", request_id=request.id, resolution=resolution.value)
        return resolution


def console_prompt(request: ApprovalRequest) -> tuple[Decision, str | None]:
    """Ask a local operator for a decision on the terminal."""
    click.echo(f"\nApproval required: {request.phase.value} ({request.kind.value})")
    click.echo(f"Execution: {request.execution_id}")
    if request.payload is not None:
        click.echo(json.dumps(request.payload, indent=2, default=str))

    choice = click.prompt(
        "Decision",
        type=click.Choice([d.value for d in Decision]),
        default=Decision.APPROVE.value,
    )
    comment = click.prompt("Comment", default="", show_default=False)
    return Decision(choice), comment or None
