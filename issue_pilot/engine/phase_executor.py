"""
Phase executor: maps each automated phase to its collaborator calls.

The executor knows which collaborator to call for a phase, what context to
hand it, and how to normalise the result into a ``PhaseOutput``. It does
not classify failures or decide retries; any exception it raises goes back
to the state machine.

Phase Mapping:
    item-selection      Platform.get_items, first unprocessed item
    context-analysis    GenerationProvider.generate
    plan-generation     GenerationProvider.generate
    branch-creation     Platform.create_branch
    test-generation     GenerationProvider.generate + Platform.commit
    code-generation     GenerationProvider.generate + Platform.commit
    refactoring         GenerationProvider.generate (+ commit unless gated)
    change-submission   Platform.open_change
    status-monitoring   Platform.get_status
    integration         Platform.merge + Platform.close
    next-item           bookkeeping only

Every call is bounded by ``phase_timeout``; exceeding it raises
``TransientPhaseError``.
"""

import asyncio
from typing import Any

import structlog

from issue_pilot.enums import ChangeStatus, Phase
from issue_pilot.exceptions import InvalidStateError, PermanentPhaseError, TransientPhaseError
from issue_pilot.models.domain import ChangeRef, Item, PhaseOutput, WorkerSelection, WorkflowExecution
from issue_pilot.providers.base import GenerationProvider, Platform

log = structlog.get_logger(__name__)

NOTE_SKIPPED = "skipped"


def item_to_dict(item: Item) -> dict[str, Any]:
    return {"ref": item.ref, "title": item.title, "body": item.body, "labels": list(item.labels), "url": item.url}


def item_from_dict(data: dict[str, Any]) -> Item:
    return Item(
        ref=str(data["ref"]),
        title=data.get("title", ""),
        body=data.get("body", ""),
        labels=list(data.get("labels", [])),
        url=data.get("url", ""),
    )


def build_context(execution: WorkflowExecution, worker: WorkerSelection | None = None) -> dict[str, Any]:
    """Context handed to collaborators for the execution's current phase."""
    context: dict[str, Any] = dict(execution.context)
    context.update(
        {
            "execution_id": execution.id,
            "phase": execution.current_phase.value,
            "iteration": execution.iteration,
            "item": execution.artifacts.get(Phase.ITEM_SELECTION.value),
            "artifacts": dict(execution.artifacts),
        }
    )
    if worker is not None:
        context["worker_id"] = worker.worker_id
        context["worker_role"] = worker.role
    return context


def routing_context(execution: WorkflowExecution) -> dict[str, Any]:
    """Tags used by the router to match worker specializations."""
    tags = list(execution.context.get("tags", []))
    item = execution.artifacts.get(Phase.ITEM_SELECTION.value)
    if isinstance(item, dict):
        tags.extend(item.get("labels", []))
    return {"tags": tags}


class PhaseExecutor:
    """Run one automated phase against the external collaborators."""

    def __init__(
        self,
        generator: GenerationProvider,
        platform: Platform,
        phase_timeout: float = 600.0,
        item_filter: dict[str, Any] | None = None,
        base_branch: str | None = None,
        refactoring_requires_approval: bool = False,
    ) -> None:
        """Initialize executor.

        Args:
            generator: AI generation backend
            platform: VCS / issue-tracking platform
            phase_timeout: Seconds a single phase may run
            item_filter: Passed to ``Platform.get_items``
            base_branch: Branch new working branches start from
            refactoring_requires_approval: Leave refactoring proposals
                uncommitted so a human can approve them first
        """
        self.generator = generator
        self.platform = platform
        self.phase_timeout = phase_timeout
        self.item_filter = item_filter
        self.base_branch = base_branch
        self.refactoring_requires_approval = refactoring_requires_approval

    async def execute(
        self,
        phase: Phase,
        execution: WorkflowExecution,
        worker: WorkerSelection | None = None,
    ) -> PhaseOutput:
        """Run the phase and normalise its result.

        Raises:
            TransientPhaseError: If the phase exceeds ``phase_timeout``.
            Exception: Whatever the collaborator raised, unchanged.
        """
        context = build_context(execution, worker)
        try:
            return await asyncio.wait_for(self._dispatch(phase, execution, context), timeout=self.phase_timeout)
        except TimeoutError as e:
            log.warning("phase_timed_out", execution_id=execution.id, phase=phase.value, timeout=self.phase_timeout)
            raise TransientPhaseError(f"Phase timed out after {self.phase_timeout}s", phase=phase.value) from e

    async def apply_refactoring(self, execution: WorkflowExecution, proposal: Any) -> PhaseOutput:
        """Commit an approved refactoring proposal."""
        commit = await asyncio.wait_for(
            self.platform.commit(self._branch(execution), proposal, self._message(execution, "Refactor")),
            timeout=self.phase_timeout,
        )
        return PhaseOutput(artifact={"changes": proposal, "commit": commit})

    async def _dispatch(self, phase: Phase, execution: WorkflowExecution, context: dict[str, Any]) -> PhaseOutput:
        if phase == Phase.ITEM_SELECTION:
            return await self._select_item(execution)

        if phase in (Phase.CONTEXT_ANALYSIS, Phase.PLAN_GENERATION):
            return PhaseOutput(artifact=await self.generator.generate(phase.value, context))

        if phase == Phase.BRANCH_CREATION:
            branch = await self.platform.create_branch(self._item(execution), self.base_branch)
            return PhaseOutput(artifact={"branch": branch})

        if phase in (Phase.TEST_GENERATION, Phase.CODE_GENERATION):
            changes = await self.generator.generate(phase.value, context)
            label = "Add tests" if phase == Phase.TEST_GENERATION else "Implement"
            commit = await self.platform.commit(self._branch(execution), changes, self._message(execution, label))
            return PhaseOutput(artifact={"changes": changes, "commit": commit})

        if phase == Phase.REFACTORING:
            proposal = await self.generator.generate(phase.value, context)
            if not proposal:
                return PhaseOutput(next_phase=Phase.CHANGE_SUBMISSION, note=NOTE_SKIPPED)
            if self.refactoring_requires_approval:
                return PhaseOutput(artifact=proposal)
            return await self.apply_refactoring(execution, proposal)

        if phase == Phase.CHANGE_SUBMISSION:
            item = self._item(execution)
            change = await self.platform.open_change(
                item,
                self._branch(execution),
                title=item.title or f"Resolve {item.ref}",
                body=self._change_body(execution),
            )
            return PhaseOutput(artifact=change.to_dict())

        if phase == Phase.STATUS_MONITORING:
            status = await self.platform.get_status(self._change(execution))
            if status == ChangeStatus.PENDING:
                return PhaseOutput(pending=True, note=ChangeStatus.PENDING.value)
            if status == ChangeStatus.FAILURE:
                raise PermanentPhaseError("Checks failed on submitted change", phase=phase.value)
            return PhaseOutput(artifact={"status": status.value})

        if phase == Phase.INTEGRATION:
            change = self._change(execution)
            recorded = execution.artifacts.get(Phase.INTEGRATION.value)
            if isinstance(recorded, dict) and recorded.get("merged") == change.id:
                log.info("merge_already_applied", execution_id=execution.id, change_id=change.id)
            else:
                await self.platform.merge(change)
                # Saved with the retry snapshot if closing the item fails
                execution.artifacts[Phase.INTEGRATION.value] = {"merged": change.id}
            await self.platform.close(self._item(execution), comment=f"Resolved by {change.url or change.id}")
            return PhaseOutput(artifact={"merged": change.id})

        if phase == Phase.NEXT_ITEM:
            return PhaseOutput(artifact={"completed_item": execution.item})

        raise InvalidStateError(f"Phase '{phase.value}' is not executed by a worker")

    async def _select_item(self, execution: WorkflowExecution) -> PhaseOutput:
        candidates = await self.platform.get_items(self.item_filter)

        if execution.item is not None:
            for item in candidates:
                if item.ref == execution.item:
                    return PhaseOutput(artifact=item_to_dict(item))
            raise PermanentPhaseError(f"Item {execution.item} not found", phase=Phase.ITEM_SELECTION.value)

        for item in candidates:
            if item.ref not in execution.processed_items:
                return PhaseOutput(artifact=item_to_dict(item))

        log.info("no_unprocessed_items", execution_id=execution.id, processed=len(execution.processed_items))
        return PhaseOutput(finished=True, note="no-items")

    def _item(self, execution: WorkflowExecution) -> Item:
        data = execution.artifacts.get(Phase.ITEM_SELECTION.value)
        if not isinstance(data, dict):
            raise PermanentPhaseError("No item selected", phase=execution.current_phase.value)
        return item_from_dict(data)

    def _branch(self, execution: WorkflowExecution) -> str:
        data = execution.artifacts.get(Phase.BRANCH_CREATION.value)
        if not isinstance(data, dict) or not data.get("branch"):
            raise PermanentPhaseError("No working branch recorded", phase=execution.current_phase.value)
        return str(data["branch"])

    def _change(self, execution: WorkflowExecution) -> ChangeRef:
        data = execution.artifacts.get(Phase.CHANGE_SUBMISSION.value)
        if not isinstance(data, dict):
            raise PermanentPhaseError("No submitted change recorded", phase=execution.current_phase.value)
        return ChangeRef.from_dict(data)

    def _message(self, execution: WorkflowExecution, label: str) -> str:
        item = self._item(execution)
        return f"{label} for {item.ref}: {item.title}".rstrip(": ")

    def _change_body(self, execution: WorkflowExecution) -> str:
        plan = execution.artifacts.get(Phase.PLAN_GENERATION.value)
        item = self._item(execution)
        body = f"Resolves {item.ref}"
        if plan:
            body += f"\n\n## Plan\n\n{plan}"
        return body
