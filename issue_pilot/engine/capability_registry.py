"""
Registry of connected workers, their capabilities, and live load.

The registry is shared by every running execution. It is read-mostly: the
router reads it on each selection, while registrations, heartbeats, load
reservations, and completion metrics are the only mutations. Load counters
are changed under an asyncio lock and never drop below zero.

Worker Lifecycle:
    1. ``register()`` when a worker connects (roles must be non-empty)
    2. ``heartbeat()`` periodically while connected
    3. ``reserve()`` / ``release()`` around each phase it performs
    4. ``record_completion()`` after each phase (success or failure)
    5. ``prune_stale()`` removes workers that missed N heartbeats

Example:
    >>> registry = CapabilityRegistry(heartbeat_interval=30, max_missed_heartbeats=3)
    >>> registry.register("w-1", roles={"developer"}, specializations={"python"})
    >>> await registry.reserve("w-1")
    True
    >>> await registry.release("w-1")
"""

import asyncio
import itertools
from collections.abc import Iterable
from datetime import datetime, timedelta

import structlog

from issue_pilot.enums import Phase
from issue_pilot.exceptions import WorkerRegistrationError
from issue_pilot.models.domain import WorkerRegistration, utcnow

log = structlog.get_logger(__name__)


class CapabilityRegistry:
    """Track workers, declared roles and specializations, and live metrics.

    Attributes:
        heartbeat_interval: Expected seconds between heartbeats.
        max_missed_heartbeats: Consecutive missed heartbeats before removal.
        default_max_concurrent: Concurrent-task limit for workers that do
            not declare one.
    """

    def __init__(
        self,
        heartbeat_interval: float = 30.0,
        max_missed_heartbeats: int = 3,
        default_max_concurrent: int = 1,
    ) -> None:
        self.heartbeat_interval = heartbeat_interval
        self.max_missed_heartbeats = max_missed_heartbeats
        self.default_max_concurrent = default_max_concurrent
        self._workers: dict[str, WorkerRegistration] = {}
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()

    def register(
        self,
        worker_id: str,
        roles: Iterable[str],
        specializations: Iterable[str] = (),
        max_concurrent: int | None = None,
    ) -> WorkerRegistration:
        """Register a newly connected worker.

        Raises:
            WorkerRegistrationError: If the id is empty or already
                registered, the role set is empty, or the limit is < 1.
        """
        if not worker_id or not worker_id.strip():
            raise WorkerRegistrationError("Worker id cannot be empty")
        if worker_id in self._workers:
            raise WorkerRegistrationError(f"Worker '{worker_id}' is already registered")

        role_set = frozenset(str(role) for role in roles if str(role).strip())
        if not role_set:
            raise WorkerRegistrationError(f"Worker '{worker_id}' must declare at least one role")

        limit = max_concurrent if max_concurrent is not None else self.default_max_concurrent
        if limit < 1:
            raise WorkerRegistrationError(f"Worker '{worker_id}' max_concurrent must be >= 1")

        registration = WorkerRegistration(
            id=worker_id,
            roles=role_set,
            specializations=frozenset(str(s) for s in specializations),
            max_concurrent=limit,
            sequence=next(self._sequence),
        )
        self._workers[worker_id] = registration
        log.info("worker_registered", worker_id=worker_id, roles=sorted(role_set), max_concurrent=limit)
        return registration

    def unregister(self, worker_id: str) -> None:
        if self._workers.pop(worker_id, None) is not None:
            log.info("worker_unregistered", worker_id=worker_id)

    def get(self, worker_id: str) -> WorkerRegistration | None:
        return self._workers.get(worker_id)

    def has_worker(self, worker_id: str) -> bool:
        return worker_id in self._workers

    def list_workers(self) -> list[WorkerRegistration]:
        """All workers in registration order."""
        return sorted(self._workers.values(), key=lambda w: w.sequence)

    def clear(self) -> None:
        self._workers.clear()

    def __len__(self) -> int:
        return len(self._workers)

    def heartbeat(self, worker_id: str, now: datetime | None = None) -> None:
        """Record a heartbeat from a connected worker.

        Raises:
            WorkerRegistrationError: If the worker is not registered
                (e.g., it was already pruned and must register again).
        """
        worker = self._workers.get(worker_id)
        if worker is None:
            raise WorkerRegistrationError(f"Unknown worker '{worker_id}'")
        worker.last_heartbeat = now or utcnow()

    def prune_stale(self, now: datetime | None = None) -> list[str]:
        """Remove workers that missed too many consecutive heartbeats.

        Returns:
            Ids of the removed workers.
        """
        now = now or utcnow()
        cutoff = timedelta(seconds=self.heartbeat_interval * self.max_missed_heartbeats)
        stale = [w.id for w in self._workers.values() if now - w.last_heartbeat >= cutoff]
        for worker_id in stale:
            del self._workers[worker_id]
            log.warning("worker_pruned", worker_id=worker_id, missed_heartbeats=self.max_missed_heartbeats)
        return stale

    async def reserve(self, worker_id: str) -> bool:
        """Atomically take one slot of the worker's concurrent-task limit.

        Returns:
            False if the worker is gone or already at its limit.
        """
        async with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None or not worker.has_capacity:
                return False
            worker.metrics.current_load += 1
            return True

    async def release(self, worker_id: str) -> None:
        """Give back a slot taken by ``reserve``."""
        async with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                return
            if worker.metrics.current_load <= 0:
                log.warning("worker_load_underflow", worker_id=worker_id)
                worker.metrics.current_load = 0
                return
            worker.metrics.current_load -= 1

    async def record_completion(self, worker_id: str, phase: Phase, success: bool, duration: float) -> None:
        """Fold a finished phase into the worker's historical metrics."""
        async with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                return
            metrics = worker.metrics
            bucket = metrics.phase_successes if success else metrics.phase_failures
            bucket[phase.value] = bucket.get(phase.value, 0) + 1
            metrics.completed += 1
            metrics.total_duration += duration
