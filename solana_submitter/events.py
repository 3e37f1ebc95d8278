"""Structured progress events emitted by the submission engine."""

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    ATTEMPT_STARTED = "attempt_started"
    SENT = "sent"
    OUTCOME = "outcome"
    ATTEMPT_FAILED = "attempt_failed"
    RETRY_SCHEDULED = "retry_scheduled"
    RECONCILED = "reconciled"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class SubmissionEvent:
    kind: EventKind
    attempt: int
    priority_fee: Optional[int] = None
    signature: Optional[str] = None
    outcome: Optional[str] = None
    error: Optional[str] = None
    delay: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return {k: v for k, v in data.items() if v is not None}


EventSink = Callable[[SubmissionEvent], None]

_LEVELS = {
    EventKind.ATTEMPT_FAILED: logging.WARNING,
    EventKind.RETRY_SCHEDULED: logging.WARNING,
    EventKind.EXHAUSTED: logging.ERROR,
    EventKind.SUCCEEDED: logging.INFO,
    EventKind.RECONCILED: logging.INFO,
}


def log_event(event: SubmissionEvent) -> None:
    """Default sink: one log line per event on the ``events`` logger."""
    level = _LEVELS.get(event.kind, logging.DEBUG)
    fields = " ".join(f"{k}={v}" for k, v in event.to_dict().items() if k != "kind")
    logger.log(level, f"{event.kind.value} {fields}")


__all__ = [
    "EventKind",
    "SubmissionEvent",
    "EventSink",
    "log_event",
]
