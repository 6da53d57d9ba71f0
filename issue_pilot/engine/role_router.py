"""
Role-based routing of phases to capable workers.

Maps each phase to the workers allowed to perform it and picks the best one.

Selection Algorithm:
    1. Keep workers holding any role acceptable for the phase and still
       below their concurrent-task limit.
    2. Rank survivors by:
       a. historical success rate for the phase, descending
       b. current load, ascending
       c. specialization matches with the context tags, descending
       d. registration order, ascending (stable, deterministic)
    3. Reserve a load slot on the winner.

When nobody qualifies the router raises ``NoCapableWorker``. That is a
scheduling deferral: the caller waits and asks again, the phase does not
fail.
"""

from collections.abc import Mapping
from typing import Any

import structlog

from issue_pilot.engine.capability_registry import CapabilityRegistry
from issue_pilot.engine.phases import DEFAULT_PHASE_ROLES
from issue_pilot.enums import Phase
from issue_pilot.exceptions import NoCapableWorker
from issue_pilot.models.domain import WorkerRegistration, WorkerSelection

log = structlog.get_logger(__name__)


class RoleRouter:
    """Select the best available worker for a phase."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        phase_roles: Mapping[Phase, tuple[str, ...]] = DEFAULT_PHASE_ROLES,
    ) -> None:
        """Initialize router.

        Args:
            registry: Shared capability registry
            phase_roles: Immutable phase to ordered role mapping
        """
        self.registry = registry
        self.phase_roles = phase_roles

    def roles_for(self, phase: Phase) -> tuple[str, ...]:
        return self.phase_roles[phase]

    def rank(self, phase: Phase, context: Mapping[str, Any] | None = None) -> list[WorkerSelection]:
        """Rank the workers that could take the phase right now.

        Args:
            phase: Phase to route
            context: Routing context; its ``tags`` entry is matched against
                worker specializations

        Returns:
            Candidate selections, best first. Empty if nobody qualifies.
        """
        acceptable = self.roles_for(phase)
        tags = set((context or {}).get("tags", ()))

        ranked: list[tuple[tuple[float, int, int, int], WorkerSelection]] = []
        for worker in self.registry.list_workers():
            role = self._matching_role(worker, acceptable)
            if role is None or not worker.has_capacity:
                continue

            selection = WorkerSelection(
                worker_id=worker.id,
                role=role,
                phase=phase,
                success_rate=worker.metrics.success_rate(phase),
                load=worker.metrics.current_load,
                specialization_matches=len(worker.specializations & tags),
            )
            key = (-selection.success_rate, selection.load, -selection.specialization_matches, worker.sequence)
            ranked.append((key, selection))

        ranked.sort(key=lambda pair: pair[0])
        return [selection for _, selection in ranked]

    async def select_worker(self, phase: Phase, context: Mapping[str, Any] | None = None) -> WorkerSelection:
        """Pick and reserve a worker for the phase.

        The caller must call ``release()`` when the phase finishes,
        whatever the outcome.

        Raises:
            NoCapableWorker: If no registered worker can take the phase.
        """
        for selection in self.rank(phase, context):
            # A concurrent selection may have filled the slot since ranking
            if await self.registry.reserve(selection.worker_id):
                log.debug(
                    "worker_selected",
                    phase=phase.value,
                    worker_id=selection.worker_id,
                    role=selection.role,
                    load=selection.load,
                )
                return selection

        raise NoCapableWorker(phase.value, self.roles_for(phase))

    async def release(self, selection: WorkerSelection, success: bool, duration: float) -> None:
        """Record the phase result and free the worker's load slot."""
        try:
            await self.registry.record_completion(selection.worker_id, selection.phase, success, duration)
        finally:
            await self.registry.release(selection.worker_id)

    @staticmethod
    def _matching_role(worker: WorkerRegistration, acceptable: tuple[str, ...]) -> str | None:
        for role in acceptable:
            if role in worker.roles:
                return role
        return None
