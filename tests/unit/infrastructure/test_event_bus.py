"""
Unit tests for infrastructure/event_bus.py - EventBus
"""
import asyncio
import logging

import pytest

from infrastructure.event_bus import (
    MUTATION_EVENTS, EventBus, EventType, GraphEvent, get_event_bus, reset_event_bus,
)


def node_event(event_type=EventType.NODE_CREATED, categories=("brush",)):
    return GraphEvent(type=event_type, categories=list(categories), source="test")


def test_sync_handler_receives_event(event_bus):
    received = []
    event_bus.subscribe(EventType.NODE_CREATED, received.append)

    event_bus.publish(node_event())
    event_bus.publish(node_event(EventType.NODE_DELETED))

    assert [e.type for e in received] == [EventType.NODE_CREATED]
    assert event_bus.published_count == 2


def test_subscribe_mutations_skips_session_events(event_bus, recorded_events):
    event_bus.publish(node_event(EventType.CONNECTION_UPDATED))
    event_bus.publish(node_event(EventType.SESSION_STARTED, categories=()))

    assert [e.type for e in recorded_events] == [EventType.CONNECTION_UPDATED]
    assert recorded_events[0].is_mutation is True
    assert event_bus.subscriber_count() == len(MUTATION_EVENTS)


def test_duplicate_subscription_is_ignored(event_bus):
    received = []
    event_bus.subscribe(EventType.NODE_UPDATED, received.append)
    event_bus.subscribe(EventType.NODE_UPDATED, received.append)

    event_bus.publish(node_event(EventType.NODE_UPDATED))

    assert len(received) == 1


def test_failing_handler_does_not_block_others(event_bus):
    received = []

    def broken(event):
        raise RuntimeError("handler bug")

    event_bus.subscribe(EventType.NODE_CREATED, broken)
    event_bus.subscribe(EventType.NODE_CREATED, received.append)

    event_bus.publish(node_event())

    assert len(received) == 1


def test_unsubscribe_mutations(event_bus, recorded_events):
    event_bus.unsubscribe_mutations(recorded_events.append)

    event_bus.publish(node_event())

    assert recorded_events == []
    assert event_bus.subscriber_count() == 0


def test_async_handler_scheduled_on_running_loop(event_bus):
    received = []

    async def handler(event):
        received.append(event)

    async def run():
        event_bus.subscribe_async(EventType.CATEGORY_DELETED, handler)
        event_bus.publish(node_event(EventType.CATEGORY_DELETED))
        await asyncio.sleep(0)

    asyncio.run(run())

    assert len(received) == 1


def test_async_handler_failure_is_logged(event_bus, caplog):
    """
    Validate that a failing async handler is tracked and reported.

    Verifies:
    - The bus holds the task while it is pending
    - The failure is logged once the task finishes
    - The finished task is released
    """
    pending = []

    async def handler(event):
        raise RuntimeError("handler exploded")

    async def run():
        event_bus.subscribe_async(EventType.NODE_CREATED, handler)
        event_bus.publish(node_event())
        pending.append(event_bus.pending_tasks)
        await asyncio.sleep(0)
        await asyncio.sleep(0)

    with caplog.at_level(logging.ERROR, logger="troubleshoot.event_bus"):
        asyncio.run(run())

    assert pending == [1]
    assert event_bus.pending_tasks == 0
    assert "handler exploded" in caplog.text


def test_async_handler_without_loop_is_skipped(event_bus):
    async def handler(event):
        pytest.fail("should not run")

    event_bus.subscribe_async(EventType.NODE_CREATED, handler)

    event_bus.publish(node_event())


def test_clear_subscribers_by_type(event_bus, recorded_events):
    event_bus.clear_subscribers(EventType.NODE_CREATED)

    assert event_bus.subscriber_count(EventType.NODE_CREATED) == 0
    assert event_bus.subscriber_count(EventType.NODE_DELETED) == 1


def test_global_bus_is_singleton():
    bus = get_event_bus()

    assert get_event_bus() is bus
    reset_event_bus()
    assert get_event_bus() is not bus
    assert isinstance(bus, EventBus)
