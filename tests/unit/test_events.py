"""Tests for the engine event bus."""

import asyncio

import pytest

from issue_pilot.engine.events import EventBus
from issue_pilot.enums import EventKind, Phase
from issue_pilot.models.domain import WorkflowEvent


def make_event(execution_id: str = "exec-1", outcome: str = "success") -> WorkflowEvent:
    return WorkflowEvent(
        kind=EventKind.PHASE_TRANSITION,
        execution_id=execution_id,
        phase=Phase.CODE_GENERATION,
        outcome=outcome,
    )


@pytest.mark.asyncio
async def test_subscriber_receives_published_events():
    """Test events published after subscribing are delivered in order."""
    bus = EventBus()
    stream = bus.subscribe()

    await bus.publish(make_event(outcome="retry"))
    await bus.publish(make_event(outcome="success"))
    bus.close()

    assert [e.outcome async for e in stream] == ["retry", "success"]


@pytest.mark.asyncio
async def test_subscribe_after_close_ends_immediately():
    """Test a late subscriber gets an empty stream."""
    bus = EventBus()
    bus.close()

    assert [e async for e in bus.subscribe()] == []


@pytest.mark.asyncio
async def test_listeners_sync_and_async():
    """Test both plain and coroutine listeners are called."""
    bus = EventBus()
    seen: list[str] = []

    async def async_listener(event: WorkflowEvent) -> None:
        await asyncio.sleep(0)
        seen.append(f"async:{event.outcome}")

    bus.add_listener(lambda event: seen.append(f"sync:{event.outcome}"))
    bus.add_listener(async_listener)

    await bus.publish(make_event())

    assert seen == ["sync:success", "async:success"]


@pytest.mark.asyncio
async def test_failing_listener_is_isolated():
    """Test a broken listener does not stop delivery to the others."""
    bus = EventBus()
    seen: list[WorkflowEvent] = []

    def broken(event: WorkflowEvent) -> None:
        raise RuntimeError("listener bug")

    bus.add_listener(broken)
    bus.add_listener(seen.append)

    await bus.publish(make_event())

    assert len(seen) == 1


@pytest.mark.asyncio
async def test_remove_listener():
    """Test removed listeners stop receiving events."""
    bus = EventBus()
    seen: list[WorkflowEvent] = []
    bus.add_listener(seen.append)
    bus.remove_listener(seen.append)

    await bus.publish(make_event())

    assert seen == []


@pytest.mark.asyncio
async def test_recent_history_is_bounded():
    """Test the history keeps only the newest events and filters by execution."""
    bus = EventBus(history_size=2)

    await bus.publish(make_event("exec-1", "a"))
    await bus.publish(make_event("exec-2", "b"))
    await bus.publish(make_event("exec-1", "c"))

    assert [e.outcome for e in bus.recent()] == ["b", "c"]
    assert [e.outcome for e in bus.recent("exec-1")] == ["c"]


def test_event_to_dict():
    """Test the serialised event carries the minimum fields."""
    data = make_event().to_dict()

    assert data["kind"] == "phase-transition"
    assert data["phase"] == "code-generation"
    assert data["outcome"] == "success"
    assert "timestamp" in data
