from __future__ import annotations
from datetime import datetime
from typing import Callable, List, Optional, Union
from pydantic import BaseModel, Field
from .logging_setup import get_logger
from .models import RunState, StepStatus, utcnow

log = get_logger("provision.events")


class StepEvent(BaseModel):
    kind: str = "step"
    step_id: str
    old_status: StepStatus
    new_status: StepStatus
    attempts: int = 0
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class RunEvent(BaseModel):
    kind: str = "run"
    old_state: Optional[RunState] = None
    new_state: RunState
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


Event = Union[StepEvent, RunEvent]
EventSink = Callable[[Event], None]


def log_event(event: Event) -> None:
    """Default sink: one log line per event, payload attached for the JSON formatter."""
    payload = event.model_dump(mode="json")
    if isinstance(event, StepEvent):
        msg = f"{event.step_id}: {event.old_status.value} -> {event.new_status.value} (attempt {event.attempts})"
        if event.error:
            msg += f": {event.error}"
            log.warning(msg, extra={"event": payload})
            return
    else:
        old = event.old_state.value if event.old_state else "-"
        msg = f"run: {old} -> {event.new_state.value}"
        if event.detail:
            msg += f" ({event.detail})"
    log.info(msg, extra={"event": payload})


class EventCollector:
    """Keeps every event in memory; used by the API and by tests."""

    def __init__(self):
        self.events: List[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def step_events(self, step_id: Optional[str] = None) -> List[StepEvent]:
        return [e for e in self.events
                if isinstance(e, StepEvent) and (step_id is None or e.step_id == step_id)]
