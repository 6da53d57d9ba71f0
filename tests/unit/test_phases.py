"""Tests for the static phase table."""

import pytest

from issue_pilot.engine.phases import (
    DEFAULT_PHASE_ROLES,
    PHASE_ORDER,
    build_phase_roles,
    is_approval_gated,
    next_phase,
)
from issue_pilot.enums import Phase
from issue_pilot.exceptions import ConfigurationError


def test_every_phase_has_roles():
    """Test the default table covers the whole sequence."""
    assert set(DEFAULT_PHASE_ROLES) == set(Phase)
    assert all(DEFAULT_PHASE_ROLES[phase] for phase in Phase)


def test_phase_order_and_successors():
    """Test each phase is followed by the next one in the sequence."""
    assert PHASE_ORDER[0] == Phase.ITEM_SELECTION
    assert next_phase(Phase.PLAN_GENERATION) == Phase.PLAN_APPROVAL
    assert next_phase(Phase.PLAN_APPROVAL) == Phase.BRANCH_CREATION
    assert next_phase(Phase.INTEGRATION) == Phase.NEXT_ITEM
    assert next_phase(Phase.NEXT_ITEM) is None


def test_only_plan_approval_is_gated():
    """Test plan approval is the only human-performed phase."""
    assert [phase for phase in Phase if is_approval_gated(phase)] == [Phase.PLAN_APPROVAL]


def test_default_table_is_read_only():
    """Test the loaded table cannot be mutated."""
    with pytest.raises(TypeError):
        DEFAULT_PHASE_ROLES[Phase.CODE_GENERATION] = ("anyone",)  # type: ignore[index]


def test_build_phase_roles_applies_overrides():
    """Test overrides replace only the phases they name."""
    table = build_phase_roles({"code-generation": ["senior-developer", " developer "]})

    assert table[Phase.CODE_GENERATION] == ("senior-developer", "developer")
    assert table[Phase.INTEGRATION] == DEFAULT_PHASE_ROLES[Phase.INTEGRATION]


def test_build_phase_roles_rejects_unknown_phase():
    """Test overrides must name a real phase."""
    with pytest.raises(ConfigurationError):
        build_phase_roles({"deployment": ["ops"]})


def test_build_phase_roles_rejects_empty_roles():
    """Test a phase cannot be left without roles."""
    with pytest.raises(ConfigurationError):
        build_phase_roles({"integration": []})
