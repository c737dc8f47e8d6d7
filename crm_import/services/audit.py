"""Audit sinks for session transitions and operator decisions."""

import logging
import threading
from abc import ABC, abstractmethod
from typing import List

from ..models.session import AuditEvent

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("crm_import.audit")


class AuditSink(ABC):
    """
    Receives audit events. Fire-and-forget: ``emit`` never raises into the
    pipeline; failures are logged.
    """

    def emit(self, event: AuditEvent) -> None:
        try:
            self.record(event)
        except Exception as e:
            logger.error(f"Audit sink {type(self).__name__} failed for {event.event_type}: {e}")

    @abstractmethod
    def record(self, event: AuditEvent) -> None:
        """Persist or forward one event."""
        pass


class LoggingAuditSink(AuditSink):
    """Writes audit events to the ``crm_import.audit`` logger."""

    def record(self, event: AuditEvent) -> None:
        audit_logger.info(f"[{event.session_id}] {event.event_type}: {event.details}")


class InMemoryAuditSink(AuditSink):
    """Keeps events in memory."""

    def __init__(self):
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)
