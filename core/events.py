"""Streaming run events.

Events are a side channel for GUIs and log shippers. The structured result a
command returns is authoritative; nothing reads events back.
"""

import json
import logging
from datetime import datetime, timezone
from typing import IO, Any, Protocol

from .models import RunItem

logger = logging.getLogger(__name__)

EVENT_SCHEMA_VERSION = 1


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class EventSink(Protocol):
    def emit(self, event: str, run_id: str, payload: dict[str, Any]) -> None:
        ...


class JsonlEventSink:
    """Writes one JSON object per line to a text stream."""

    def __init__(self, stream: IO[str]):
        self.stream = stream

    def emit(self, event: str, run_id: str, payload: dict[str, Any]) -> None:
        record = {
            "version": EVENT_SCHEMA_VERSION,
            "runId": run_id,
            "timestampUtc": utc_now(),
            "event": event,
            **payload,
        }
        try:
            self.stream.write(json.dumps(record, separators=(",", ":")) + "\n")
            self.stream.flush()
        except (OSError, ValueError) as e:
            # a broken event stream must not fail the run
            logger.warning("Dropping %s event: %s", event, e)


class RecordingEventSink:
    """Keeps events in memory, for embedding callers and tests."""

    def __init__(self):
        self.events: list[dict[str, Any]] = []

    def emit(self, event: str, run_id: str, payload: dict[str, Any]) -> None:
        self.events.append({"event": event, "runId": run_id, **payload})


class EventEmitter:
    """Binds a sink to one run and shapes the payloads the engine emits."""

    def __init__(self, sink: EventSink | None, run_id: str):
        self.sink = sink
        self.run_id = run_id

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        if self.sink is not None:
            self.sink.emit(event, self.run_id, payload)

    def phase(self, phase: str, status: str, **extra: Any) -> None:
        self._emit("phase", {"phase": phase, "status": status, **extra})

    def item(self, phase: str, item: RunItem) -> None:
        self._emit("item", {"phase": phase, **item.to_dict()})

    def summary(self, phase: str, payload: dict[str, Any]) -> None:
        self._emit("summary", {"phase": phase, **payload})

    def error(self, phase: str, code: str, message: str) -> None:
        self._emit("error", {"phase": phase, "code": code, "message": message})
