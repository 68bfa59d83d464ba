"""Typed error hierarchy surfaced by the job pipeline.

Every error carries a machine-readable ``kind`` and a human-readable
``message``. Raw upstream detail goes into ``diagnostic`` and is never used
in place of the message. Retryable failures suggest a ``retry_after``.
"""

from typing import Any, Iterable, Optional, Tuple


class BioQueueError(Exception):
    """Base class for all bioqueue errors."""

    kind = "bioqueue_error"

    def __init__(self, message: str, *, diagnostic: Optional[Any] = None, retry_after: Optional[float] = None):
        self.message = message
        self.diagnostic = diagnostic
        self.retry_after = retry_after
        super().__init__(message)

    def to_dict(self) -> dict:
        data = {"kind": self.kind, "message": self.message}
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        if self.diagnostic is not None:
            data["diagnostic"] = self.diagnostic
        return data


class ValidationError(BioQueueError):
    """Bad caller input. Raised before anything reaches the network; never retried."""
    kind = "validation_error"


class ConfigurationError(BioQueueError):
    """Missing or unusable configuration, such as an absent API key."""
    kind = "configuration_error"


class UpstreamError(BioQueueError):
    """The upstream service answered with a non-retryable error status."""
    kind = "upstream_error"

    def __init__(self, message: str, *, status: Optional[int] = None, body: Optional[str] = None, **kwargs: Any):
        self.status = status
        self.body = body
        kwargs.setdefault("diagnostic", body)
        super().__init__(message, **kwargs)


class RetryExhaustedError(UpstreamError):
    """A retryable condition persisted past the retry ceiling."""
    kind = "retry_exhausted"

    def __init__(self, message: str, *, last_cause: Optional[BaseException] = None, attempts: int = 0, **kwargs: Any):
        self.last_cause = last_cause
        self.attempts = attempts
        super().__init__(message, **kwargs)


class NetworkError(BioQueueError):
    """Transport-level failure (connection refused, reset, DNS...). Retryable."""
    kind = "network_error"


class ProtocolError(BioQueueError):
    """The response envelope violated the upstream contract."""
    kind = "protocol_error"


class ExtractionError(BioQueueError):
    """No result artifact could be located in a successful payload."""
    kind = "extraction_error"

    def __init__(self, reason: str, *, keys_observed: Iterable[str] = (), **kwargs: Any):
        self.reason = reason
        self.keys_observed: Tuple[str, ...] = tuple(keys_observed)
        message = reason
        if self.keys_observed:
            message = f"{reason} (keys observed: {', '.join(self.keys_observed)})"
        super().__init__(message, **kwargs)


class QueueFullError(BioQueueError):
    """The dispatch queue reached its configured maximum depth."""
    kind = "queue_full"


class OperationTimeoutError(BioQueueError, TimeoutError):
    """Base for the two timeout scopes."""
    kind = "timeout"


class AttemptTimeoutError(OperationTimeoutError):
    """A single network call exceeded the per-attempt timeout."""
    kind = "attempt_timeout"


class DeadlineExceededError(OperationTimeoutError):
    """The job did not reach a terminal state before its deadline."""
    kind = "deadline_exceeded"

    def __init__(self, message: str, *, request_id: Optional[str] = None, polls: int = 0, **kwargs: Any):
        self.request_id = request_id
        self.polls = polls
        super().__init__(message, **kwargs)
