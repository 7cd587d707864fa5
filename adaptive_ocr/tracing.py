"""
Structured trace-event stream.

Trace events are flat ``name + key/value`` records consumed by downstream
stages and operational tooling. They are only ever emitted by the
orchestrating process; worker processes return the data needed for an event
as part of their result instead.
"""

import json
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

logger = structlog.get_logger(__name__)

Scalar = Union[str, int, float, bool, None]
_SCALAR_TYPES = (str, int, float, bool, type(None))

# Event names
DECISION = "ocr.decision"
REDACTION_GATE = "redaction.gate"
PASS = "ocr.pass"
DOWNSCALE = "preprocess.downscale"
DOWNSCALE_ERROR = "preprocess.downscale_error"
IMAGE_COMPLETED = "image.completed"
BATCH_COMPLETED = "batch.completed"


@dataclass(frozen=True)
class TraceEvent:
    """A single flat trace record."""
    name: str
    payload: Dict[str, Scalar] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.name, "timestamp": self.timestamp, **self.payload}


def _validate_payload(name: str, payload: Dict[str, Any]) -> Dict[str, Scalar]:
    flat: Dict[str, Scalar] = {}
    for key, value in payload.items():
        if not isinstance(value, _SCALAR_TYPES):
            raise TypeError(
                f"Trace event '{name}' field '{key}' must be a scalar, "
                f"got {type(value).__name__}"
            )
        flat[key] = value
    return flat


class TraceSink:
    """
    Collects trace events for one run.

    Events are kept in memory, mirrored to the structured log and optionally
    appended to a JSON-lines file. Emitting from any process other than the
    one that created the sink is an error.
    """

    def __init__(self, trace_path: Optional[Path] = None, run_id: Optional[str] = None):
        self.trace_path = trace_path
        self.run_id = run_id
        self.owner_pid = os.getpid()
        self._events: List[TraceEvent] = []
        self._lock = threading.Lock()
        self._file = None
        self.logger = logger.bind(component="TraceSink")

        if trace_path is not None:
            trace_path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(trace_path, "a", encoding="utf-8")

    def emit(self, name: str, **payload: Any) -> TraceEvent:
        """Record one event. Payload values must be scalars."""
        if os.getpid() != self.owner_pid:
            raise RuntimeError(
                "Trace events must be emitted by the orchestrating process"
            )

        event = TraceEvent(name=name, payload=_validate_payload(name, payload))

        with self._lock:
            self._events.append(event)
            if self._file is not None:
                record = event.to_dict()
                if self.run_id:
                    record["run_id"] = self.run_id
                self._file.write(json.dumps(record, sort_keys=True) + "\n")
                self._file.flush()

        self.logger.info(name, event_type="trace", **event.payload)
        return event

    def events(self, name: Optional[str] = None) -> List[TraceEvent]:
        """Snapshot of recorded events, optionally filtered by name."""
        with self._lock:
            if name is None:
                return list(self._events)
            return [e for e in self._events if e.name == name]

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
