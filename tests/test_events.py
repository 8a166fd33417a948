"""Tests for core.events payload contracts and the broadcaster."""

import asyncio

import pytest

from core.events import (
    PAYLOAD_FIELDS,
    EventBroadcaster,
    EventType,
    NullSink,
    validate_payload,
)


def test_every_event_type_has_a_contract():
    assert set(PAYLOAD_FIELDS) == set(EventType)


def test_validate_payload_rejects_missing_keys():
    with pytest.raises(ValueError, match="instance_id"):
        validate_payload(EventType.DEPLOYMENT_COMPLETED, {"message": "ok", "preview_url": None,
                                                          "tunnel_url": None})


def test_validate_payload_accepts_string_type():
    validate_payload("error", {"error": "boom"})


def test_null_sink_still_validates():
    with pytest.raises(ValueError):
        NullSink().emit(EventType.FILE_GENERATED, {})


def test_broadcaster_sequence_and_history():
    events = EventBroadcaster(history_size=2)
    events.emit(EventType.ERROR, {"error": "a"})
    events.emit(EventType.ERROR, {"error": "b"})
    last = events.emit(EventType.ERROR, {"error": "c"})

    assert last["seq"] == 3
    assert last["type"] == "error"
    assert [e["payload"]["error"] for e in events.events_since(0)] == ["b", "c"]
    assert [e["seq"] for e in events.events_since(2)] == [3]


@pytest.mark.asyncio
async def test_subscribers_receive_events():
    events = EventBroadcaster()
    queue = events.subscribe()
    events.emit(EventType.CONVERSATION_RESPONSE, {"message": "hi"})
    event = await asyncio.wait_for(queue.get(), timeout=1)
    assert event["payload"]["message"] == "hi"

    events.unsubscribe(queue)
    events.emit(EventType.CONVERSATION_RESPONSE, {"message": "again"})
    assert queue.empty()


@pytest.mark.asyncio
async def test_full_subscriber_queue_drops_event():
    events = EventBroadcaster()
    queue = events.subscribe(maxsize=1)
    events.emit(EventType.ERROR, {"error": "first"})
    events.emit(EventType.ERROR, {"error": "second"})
    assert queue.qsize() == 1
    assert len(events.events_since(0)) == 2
