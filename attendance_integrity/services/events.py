"""
In-process fault event stream.

Background tasks publish faults (deferred polls, consistency failures,
unhealable gaps); notification delivery subscribes from outside the engine.
"""
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class FaultEvent:
    kind: str  # poll_deferred|consistency_failure|data_integrity_fault|gap_remnant|source_error
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
            "occurred_at": self.occurred_at.isoformat(),
        }


class FaultBus:
    def __init__(self, history_size: int = 200):
        self._subscribers: List[Callable[[FaultEvent], None]] = []
        self._history = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, handler: Callable[[FaultEvent], None]) -> Callable[[], None]:
        """Register a handler; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(handler)

        def _unsubscribe():
            with self._lock:
                if handler in self._subscribers:
                    self._subscribers.remove(handler)

        return _unsubscribe

    def publish(self, kind: str, message: str, **details) -> FaultEvent:
        event = FaultEvent(kind=kind, message=message, details=details)
        with self._lock:
            self._history.append(event)
            handlers = list(self._subscribers)
        logger.warning("Fault event", kind=kind, message=message, **details)
        for handler in handlers:
            # A broken subscriber must not stop the publishing task
            try:
                handler(event)
            except Exception as e:
                logger.error("Fault subscriber failed", kind=kind, error=str(e))
        return event

    def recent(self, limit: int = 50) -> List[FaultEvent]:
        with self._lock:
            items = list(self._history)
        return items[-limit:]
