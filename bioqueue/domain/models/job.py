"""Domain models describing a job's lifecycle.

A JobRequest is created per facade call. A JobHandle exists only after the
upstream service answered 202 and is owned by the StatusPoller until it
reaches a terminal state. A JobResult is produced once and never mutated.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .common import JsonValue, RequestId, ScoreMap


class JobKind(str, Enum):
    """Category of upstream computation."""
    STRUCTURE_PREDICTION = "structure_prediction"
    MULTIMER_PREDICTION = "multimer_prediction"
    MOLECULE_GENERATION = "molecule_generation"

    @classmethod
    def parse(cls, value: Union[str, "JobKind"]) -> "JobKind":
        """Accepts enum values, names and dashed spellings ('multimer-prediction')."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        for kind in cls:
            if normalized in (kind.value, kind.name.lower()):
                return kind
        # Short aliases used on the command line
        aliases = {"structure": cls.STRUCTURE_PREDICTION, "fold": cls.STRUCTURE_PREDICTION,
                   "multimer": cls.MULTIMER_PREDICTION, "generate": cls.MOLECULE_GENERATION,
                   "molecules": cls.MOLECULE_GENERATION}
        if normalized in aliases:
            return aliases[normalized]
        raise ValueError(f"Unknown job kind: {value!r}")


class PollState(str, Enum):
    """States of the status poller. Everything except PENDING is terminal."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not PollState.PENDING


class JobStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class JobRequest:
    """Immutable description of one job submission."""
    kind: JobKind
    payload: Mapping[str, Any]
    model: Optional[str] = None  # None selects the kind's default model
    submitted_at: float = field(default_factory=time.time)

    def __post_init__(self):
        # Freeze a private copy so later caller mutations cannot leak in
        object.__setattr__(self, "kind", JobKind.parse(self.kind))
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload or {})))


@dataclass
class JobHandle:
    """Live reference to an accepted upstream job.

    ``created_at`` and ``deadline_s`` are measured on the poller's monotonic
    clock, so ``expires_at`` is only meaningful against that clock.
    """
    request_id: RequestId
    kind: JobKind
    created_at: float
    deadline_s: float
    model: Optional[str] = None
    state: PollState = PollState.PENDING
    stage: Optional[str] = None
    progress: Optional[float] = None

    @property
    def expires_at(self) -> float:
        return self.created_at + self.deadline_s

    def transition(self, new_state: PollState) -> None:
        """Moves the handle to ``new_state``; terminal states never change again."""
        if self.state.is_terminal:
            raise RuntimeError(f"Job {self.request_id} is already {self.state.value}")
        self.state = new_state


@dataclass
class AttemptRecord:
    """One attempt inside a retry loop. Never persisted."""
    attempt_number: int
    started_at: float
    http_status: Optional[int] = None
    error_class: Optional[str] = None


@dataclass(frozen=True)
class RawResponse:
    """An upstream HTTP response, body already read."""
    status: int
    headers: Mapping[str, str]
    text: str
    attempts: Tuple[AttemptRecord, ...] = ()

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


@dataclass(frozen=True)
class JobResultDraft:
    """A successful payload that has not yet been through extraction.

    ``payload`` is the parsed JSON value, or the raw body text when the
    response was a bare document.
    """
    kind: JobKind
    payload: JsonValue
    request_id: Optional[RequestId] = None


@dataclass(frozen=True)
class PollOutcome:
    """Terminal result of a polling loop."""
    state: PollState
    polls: int
    draft: Optional[JobResultDraft] = None
    diagnostic: Optional[Any] = None


@dataclass(frozen=True)
class GeneratedItem:
    """One generated molecule."""
    representation: str
    score: Optional[float] = None


Artifact = Union[str, List[GeneratedItem]]


@dataclass(frozen=True)
class JobResult:
    """Final outcome of a facade call."""
    status: JobStatus
    kind: JobKind
    artifact: Optional[Artifact]
    scores: ScoreMap = field(default_factory=dict)
    raw_diagnostic: Optional[Any] = None
    request_id: Optional[RequestId] = None
    warnings: Tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        artifact: Any = self.artifact
        if isinstance(artifact, list):
            artifact = [{"representation": item.representation, "score": item.score} for item in artifact]
        return {
            "status": self.status.value,
            "kind": self.kind.value,
            "artifact": artifact,
            "scores": dict(self.scores),
            "request_id": self.request_id,
            "warnings": list(self.warnings),
        }
