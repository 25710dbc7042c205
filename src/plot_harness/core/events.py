"""In-process lifecycle events.

The orchestrator and the pipeline announce what they are doing on an
`EventBus`; anything interested (progress displays, audit hooks, tests)
subscribes by event type. Event types are `<area>:<what>` strings, for
example `plot:generated` or `pipeline:complete`.
"""

from __future__ import annotations

import warnings
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from .utils import Logger, now_iso, null_logger


DATA_LOAD_START = "data_load:start"
DATA_LOAD_COMPLETE = "data_load:complete"
REPORT_START = "report:start"
REPORT_COMPLETE = "report:complete"
RELEASE_CREATED = "release:created"


def item_event(module_type: str, what: str) -> str:
    """`plot:generated`, `plot:failed`, ... for any module type."""

    return f"{module_type}:{what}"


class EventListenerWarning(UserWarning):
    pass


@dataclass(frozen=True)
class Event:
    id: int
    type: str
    source: str
    timestamp: str
    data: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "timestamp": self.timestamp,
            "data": dict(self.data),
        }


Listener = Callable[[Event], Any]


class EventBus:
    """Publish/subscribe with a full history of emitted events.

    Subscribers are keyed by name within an event type, so subscribing twice
    under one name replaces the earlier callback. A subscriber that raises is
    reported as an `EventListenerWarning`; the others still run.
    """

    def __init__(self, logger: Logger | None = None) -> None:
        self.logger = logger or null_logger
        self._subscribers: dict[str, dict[str, Listener]] = {}
        self._log: list[Event] = []
        self._next_listener = 1
        self._next_event = 1

    def subscribe(self, event_type: str, callback: Listener, name: str | None = None) -> str:
        if not callable(callback):
            raise TypeError("callback must be callable")
        if name is None:
            name = f"listener_{self._next_listener}"
            self._next_listener += 1
        self._subscribers.setdefault(event_type, {})[name] = callback
        return name

    def unsubscribe(self, event_type: str, name: str) -> bool:
        listeners = self._subscribers.get(event_type, {})
        if name not in listeners:
            return False
        del listeners[name]
        if not listeners:
            del self._subscribers[event_type]
        return True

    def subscribers(self) -> dict[str, list[str]]:
        return {event_type: list(names) for event_type, names in sorted(self._subscribers.items())}

    def emit(
        self, event_type: str, data: Mapping[str, Any] | None = None, source: str = "system"
    ) -> int:
        """Record the event, then call its subscribers; returns how many succeeded."""

        event = Event(
            id=self._next_event,
            type=event_type,
            source=source,
            timestamp=now_iso(),
            data=dict(data or {}),
        )
        self._next_event += 1
        self._log.append(event)
        notified = 0
        for name, callback in list(self._subscribers.get(event_type, {}).items()):
            try:
                callback(event)
            except Exception as exc:
                message = f"Event listener '{name}' failed on {event_type}: {type(exc).__name__}: {exc}"
                self.logger(f"[WARN] {message}")
                warnings.warn(message, EventListenerWarning, stacklevel=2)
                continue
            notified += 1
        return notified

    def pipeline_event(self, phase: str, status: str, /, **data: Any) -> int:
        """Emit `pipeline:<status>` for a pipeline phase."""

        return self.emit(f"pipeline:{status}", {"phase": phase, **data}, source="pipeline")

    def events(
        self,
        event_type: str | None = None,
        source: str | None = None,
        since: str | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """Logged events, oldest first; `limit` keeps the most recent ones."""

        selected = [
            event
            for event in self._log
            if (event_type is None or event.type == event_type)
            and (source is None or event.source == source)
            and (since is None or event.timestamp >= since)
        ]
        if limit is not None:
            selected = selected[-limit:] if limit > 0 else []
        return selected

    def clear(self) -> int:
        count = len(self._log)
        self._log.clear()
        return count

    def statistics(self) -> dict[str, Any]:
        if not self._log:
            return {"total_events": 0, "events_by_type": {}, "events_by_source": {}}
        return {
            "total_events": len(self._log),
            "events_by_type": dict(sorted(Counter(e.type for e in self._log).items())),
            "events_by_source": dict(sorted(Counter(e.source for e in self._log).items())),
            "first_event": self._log[0].timestamp,
            "last_event": self._log[-1].timestamp,
        }
