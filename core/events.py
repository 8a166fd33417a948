"""Progress events and the sinks that carry them to observers."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from enum import Enum

from config.defaults import DEFAULTS

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    GENERATION_STARTED = "generation_started"
    GENERATION_COMPLETE = "generation_complete"
    PHASE_GENERATING = "phase_generating"
    PHASE_GENERATED = "phase_generated"
    PHASE_IMPLEMENTING = "phase_implementing"
    PHASE_VALIDATING = "phase_validating"
    PHASE_VALIDATED = "phase_validated"
    PHASE_IMPLEMENTED = "phase_implemented"
    FILE_GENERATING = "file_generating"
    FILE_CHUNK_GENERATED = "file_chunk_generated"
    FILE_GENERATED = "file_generated"
    FILE_REGENERATING = "file_regenerating"
    FILE_REGENERATED = "file_regenerated"
    DEPLOYMENT_STARTED = "deployment_started"
    DEPLOYMENT_COMPLETED = "deployment_completed"
    DEPLOYMENT_FAILED = "deployment_failed"
    CODE_REVIEWING = "code_reviewing"
    CODE_REVIEWED = "code_reviewed"
    COMMAND_EXECUTING = "command_executing"
    RUNTIME_ERROR_FOUND = "runtime_error_found"
    STATIC_ANALYSIS_RESULTS = "static_analysis_results"
    DETERMINISTIC_CODE_FIX_STARTED = "deterministic_code_fix_started"
    DETERMINISTIC_CODE_FIX_COMPLETED = "deterministic_code_fix_completed"
    CONVERSATION_RESPONSE = "conversation_response"
    ERROR = "error"


# Required payload keys per event type. Every EventType must be listed.
PAYLOAD_FIELDS = {
    EventType.GENERATION_STARTED: ("message", "total_files"),
    EventType.GENERATION_COMPLETE: ("message",),
    EventType.PHASE_GENERATING: ("message",),
    EventType.PHASE_GENERATED: ("message", "phase"),
    EventType.PHASE_IMPLEMENTING: ("message", "phase"),
    EventType.PHASE_VALIDATING: ("message", "phase"),
    EventType.PHASE_VALIDATED: ("message", "phase"),
    EventType.PHASE_IMPLEMENTED: ("message", "phase"),
    EventType.FILE_GENERATING: ("file_path",),
    EventType.FILE_CHUNK_GENERATED: ("file_path", "chunk", "format"),
    EventType.FILE_GENERATED: ("file",),
    EventType.FILE_REGENERATING: ("file_path", "issues"),
    EventType.FILE_REGENERATED: ("file",),
    EventType.DEPLOYMENT_STARTED: ("message", "files"),
    EventType.DEPLOYMENT_COMPLETED: ("message", "instance_id", "preview_url", "tunnel_url"),
    EventType.DEPLOYMENT_FAILED: ("message", "error"),
    EventType.CODE_REVIEWING: ("message",),
    EventType.CODE_REVIEWED: ("message", "review"),
    EventType.COMMAND_EXECUTING: ("message", "commands"),
    EventType.RUNTIME_ERROR_FOUND: ("errors", "count"),
    EventType.STATIC_ANALYSIS_RESULTS: ("static_analysis",),
    EventType.DETERMINISTIC_CODE_FIX_STARTED: ("message", "issues"),
    EventType.DETERMINISTIC_CODE_FIX_COMPLETED: ("message", "fixed_issues", "unfixable_issues"),
    EventType.CONVERSATION_RESPONSE: ("message",),
    EventType.ERROR: ("error",),
}

_missing = set(EventType) - set(PAYLOAD_FIELDS)
if _missing:
    raise RuntimeError(f"Event types without a payload contract: {sorted(m.value for m in _missing)}")


def validate_payload(event_type, payload):
    """Raise ValueError if ``payload`` lacks a key required for ``event_type``."""
    event_type = EventType(event_type)
    missing = [k for k in PAYLOAD_FIELDS[event_type] if k not in payload]
    if missing:
        raise ValueError(f"{event_type.value} payload missing {missing}")


class EventSink:
    """Interface for progress sinks."""

    def emit(self, event_type, payload):
        raise NotImplementedError


class NullSink(EventSink):
    def emit(self, event_type, payload):
        validate_payload(event_type, payload)


class EventBroadcaster(EventSink):
    """Keeps a bounded event history and fans events out to subscriber queues.

    Each event gets a sequence number so HTTP pollers can ask for everything
    after the last one they saw. Delivery to a subscriber is best effort: a
    full queue drops the event for that subscriber only.
    """

    def __init__(self, history_size=None):
        self._history = deque(maxlen=history_size or DEFAULTS["event_history"])
        self._subscribers = []
        self._seq = 0

    def emit(self, event_type, payload):
        validate_payload(event_type, payload)
        self._seq += 1
        event = {
            "seq": self._seq,
            "type": EventType(event_type).value,
            "timestamp": time.time(),
            "payload": payload,
        }
        self._history.append(event)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Subscriber queue full; dropping %s", event["type"])
        return event

    def subscribe(self, maxsize=0):
        queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def events_since(self, seq=0):
        return [e for e in self._history if e["seq"] > seq]
