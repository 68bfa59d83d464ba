"""Domain Events related to upstream calls and job lifecycle.

Examples include events for when calls are deferred by the dispatch queue,
retried, fail or succeed, and for each status poll.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class DomainEvent:
    """Base class for domain events."""
    pass


EventSink = Callable[[DomainEvent], None]


def log_event(event: DomainEvent) -> None:
    """Default sink: events are only logged."""
    logger.debug(f"EVENT: {event}")


# --- Upstream call events ---

@dataclass
class ApiCallInitiated(DomainEvent):
    """Event triggered when an upstream call is about to be made."""
    endpoint: str
    attempt_number: int
    request_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class ApiCallSucceeded(DomainEvent):
    """Event triggered when an upstream call returned an accepted status."""
    endpoint: str
    status: int
    latency_ms: float
    request_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class ApiCallFailed(DomainEvent):
    """Event triggered when an upstream call fails definitively (after retries)."""
    endpoint: str
    error_type: str
    error_message: str
    request_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class ApiCallDeferred(DomainEvent):
    """Event triggered when the dispatch queue holds a call back to keep the send interval."""
    label: str
    wait_time_seconds: float
    timestamp: float = field(default_factory=time.time)


@dataclass
class RetryScheduled(DomainEvent):
    """Event triggered when a retry is scheduled for a failed upstream call."""
    endpoint: str
    attempt_number: int
    delay_seconds: float
    http_status: Optional[int] = None
    error_class: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


# --- Job lifecycle events ---

@dataclass
class JobAccepted(DomainEvent):
    """Upstream answered 202 and handed out a job id."""
    kind: str
    request_id: str
    deadline_seconds: float
    timestamp: float = field(default_factory=time.time)


@dataclass
class PollTick(DomainEvent):
    """One status query completed while the job was still pending."""
    request_id: str
    poll_number: int
    http_status: int
    stage: Optional[str] = None
    progress: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class JobTerminal(DomainEvent):
    """The job handle reached a terminal state."""
    request_id: str
    state: str
    polls: int
    detail: Optional[Any] = None
    timestamp: float = field(default_factory=time.time)
