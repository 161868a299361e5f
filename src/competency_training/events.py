"""
events.py — Best-effort training event fan-out
===============================================
The orchestrator publishes a ``TrainingEvent`` on every transition:

  session_started      a session was created
  test_generated       a test was generated for the current level
  test_completed       an attempt was graded
  competency_achieved  a level was passed (advance or final)
  session_completed    the session reached a terminal state

Observers are plain objects with a ``handle(event)`` method.  Delivery is
synchronous and best-effort: a failing observer is logged and skipped, it
never aborts the operation that triggered the event.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Protocol

from .knowledge import KnowledgeStore
from .models import EventType, TrainingEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def handle(self, event: TrainingEvent) -> None: ...


class EventBus:
    def __init__(self, sinks: Optional[list[EventSink]] = None) -> None:
        self._sinks: list[EventSink] = list(sinks or [])
        self._lock = threading.Lock()

    def subscribe(self, sink: EventSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def emit(
        self,
        event_type: EventType,
        session_id: str,
        agent_id: str,
        data: Optional[dict[str, Any]] = None,
    ) -> TrainingEvent:
        event = TrainingEvent(type=event_type, session_id=session_id, agent_id=agent_id, data=data or {})
        self.publish(event)
        return event

    def publish(self, event: TrainingEvent) -> None:
        with self._lock:
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                sink.handle(event)
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Event observer %s failed on %s for session %s",
                    type(sink).__name__, event.type.value, event.session_id,
                    exc_info=True,
                )


class LoggingEventSink:
    """Progress notifications through the standard logger."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def handle(self, event: TrainingEvent) -> None:
        logger.log(
            self.level,
            "Training event [%s] agent=%s session=%s data=%s",
            event.type.value, event.agent_id, event.session_id, event.data,
        )


class KnowledgeTrackingSink:
    """Records every achieved competency level as a knowledge entry."""

    def __init__(self, knowledge: KnowledgeStore) -> None:
        self.knowledge = knowledge

    def handle(self, event: TrainingEvent) -> None:
        if event.type != EventType.COMPETENCY_ACHIEVED:
            return
        level = str(event.data["level"])
        score = int(event.data["score"])
        self.knowledge.store_knowledge(
            agent_id=event.agent_id,
            content=f"Achieved {level} competency with score {score}%",
            source="achievement",
            confidence=score,
            tags=["competency", "achievement", level.lower()],
            specialty_id=event.data.get("specialty_id"),
        )
