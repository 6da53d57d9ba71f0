"""
Static phase table: execution order, acceptable roles, approval gates.

The table is an explicit immutable mapping loaded once at startup. Role
overrides from configuration are merged by ``build_phase_roles()``; after
that the mapping is read-only for the lifetime of the process.

Phase Sequence::

    item-selection -> context-analysis -> plan-generation -> plan-approval
    -> branch-creation -> test-generation -> code-generation -> refactoring
    -> change-submission -> status-monitoring -> integration -> next-item
    -> (item-selection | terminal)

Example:
    >>> DEFAULT_PHASE_ROLES[Phase.CODE_GENERATION]
    ('developer',)
    >>> next_phase(Phase.PLAN_GENERATION)
    <Phase.PLAN_APPROVAL: 'plan-approval'>
"""

from collections.abc import Mapping
from types import MappingProxyType

from issue_pilot.enums import Phase, WorkerRole
from issue_pilot.exceptions import ConfigurationError

PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)

# Ordered by preference; the router accepts any of them.
DEFAULT_PHASE_ROLES: Mapping[Phase, tuple[str, ...]] = MappingProxyType(
    {
        Phase.ITEM_SELECTION: (WorkerRole.COORDINATOR.value,),
        Phase.CONTEXT_ANALYSIS: (WorkerRole.ANALYST.value, WorkerRole.ARCHITECT.value),
        Phase.PLAN_GENERATION: (WorkerRole.ARCHITECT.value, WorkerRole.PLANNER.value),
        Phase.PLAN_APPROVAL: (WorkerRole.REVIEWER.value,),
        Phase.BRANCH_CREATION: (WorkerRole.INTEGRATOR.value, WorkerRole.DEVELOPER.value),
        Phase.TEST_GENERATION: (WorkerRole.TESTER.value, WorkerRole.DEVELOPER.value),
        Phase.CODE_GENERATION: (WorkerRole.DEVELOPER.value,),
        Phase.REFACTORING: (WorkerRole.DEVELOPER.value, WorkerRole.REVIEWER.value),
        Phase.CHANGE_SUBMISSION: (WorkerRole.INTEGRATOR.value, WorkerRole.DEVELOPER.value),
        Phase.STATUS_MONITORING: (WorkerRole.INTEGRATOR.value, WorkerRole.COORDINATOR.value),
        Phase.INTEGRATION: (WorkerRole.INTEGRATOR.value,),
        Phase.NEXT_ITEM: (WorkerRole.COORDINATOR.value,),
    }
)

# Performed by a human through the approval checkpoint, never routed.
APPROVAL_GATED_PHASES: frozenset[Phase] = frozenset({Phase.PLAN_APPROVAL})

# Phases that produce a new artifact through the generation backend.
GENERATION_PHASES: frozenset[Phase] = frozenset(
    {
        Phase.CONTEXT_ANALYSIS,
        Phase.PLAN_GENERATION,
        Phase.TEST_GENERATION,
        Phase.CODE_GENERATION,
        Phase.REFACTORING,
    }
)


def build_phase_roles(overrides: Mapping[str, list[str]] | None = None) -> Mapping[Phase, tuple[str, ...]]:
    """Merge configured role overrides into the default table.

    Args:
        overrides: Mapping of phase value to an ordered role list.

    Returns:
        Read-only mapping covering every phase.

    Raises:
        ConfigurationError: If an override names an unknown phase or
            declares no roles.
    """
    table = dict(DEFAULT_PHASE_ROLES)
    for phase_name, roles in (overrides or {}).items():
        try:
            phase = Phase(phase_name)
        except ValueError as e:
            raise ConfigurationError(f"Unknown phase in phase_roles: {phase_name}") from e

        cleaned = tuple(str(role).strip() for role in roles if str(role).strip())
        if not cleaned:
            raise ConfigurationError(f"Phase '{phase_name}' must declare at least one role")
        table[phase] = cleaned

    return MappingProxyType(table)


def next_phase(phase: Phase) -> Phase | None:
    """Default successor of a phase on success.

    Returns None for next-item; whether it loops back to item-selection is
    decided by the state machine.
    """
    index = PHASE_ORDER.index(phase)
    if index + 1 < len(PHASE_ORDER):
        return PHASE_ORDER[index + 1]
    return None


def is_approval_gated(phase: Phase) -> bool:
    return phase in APPROVAL_GATED_PHASES
