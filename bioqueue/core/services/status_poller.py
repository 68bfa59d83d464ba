"""Status Poller: drives an accepted job to a terminal state.

State machine::

    PENDING --202/pending--> PENDING
    PENDING --200 + payload--> COMPLETED
    PENDING --200 + error--> FAILED
    PENDING --deadline passed--> TIMED_OUT   (no further network call)
    PENDING --deadline hit while retrying--> TIMED_OUT
    PENDING --caller cancelled--> CANCELLED

Status queries go through the same ApiRetryService (and so the same
dispatch queue) as submissions. Each query carries the handle's deadline so
retries inside one poll never run past it.
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Tuple

from bioqueue.core.job_kinds import POLL_HINT_HEADER, JobKindRegistry
from bioqueue.core.services.resolver import parse_body
from bioqueue.domain.errors import DeadlineExceededError
from bioqueue.domain.events.api_events import EventSink, JobTerminal, PollTick, log_event
from bioqueue.domain.models.common import ApiKey
from bioqueue.domain.models.job import JobHandle, JobResultDraft, PollOutcome, PollState, RawResponse
from bioqueue.infrastructure.resilience.api_retry import ApiRetryService

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 5.0
FAILED_STATUS_VALUES = frozenset({"failed", "failure", "error", "errored", "cancelled", "canceled", "rejected"})
PENDING_STATUS_VALUES = frozenset({"pending", "running", "queued", "in_progress", "processing", "accepted"})


def _progress_of(body: Any) -> Tuple[Optional[str], Optional[float]]:
    """Reads stage/progress annotations from a pending status body."""
    if not isinstance(body, dict):
        return None, None
    sources = [body]
    if isinstance(body.get("details"), dict):
        sources.append(body["details"])
    stage: Optional[str] = None
    progress: Optional[float] = None
    for source in sources:
        if stage is None and isinstance(source.get("stage"), str):
            stage = source["stage"]
        value = source.get("progress")
        if progress is None and isinstance(value, (int, float)) and not isinstance(value, bool):
            progress = float(value)
    return stage, progress


def failure_of(body: Any) -> Optional[Any]:
    """Returns the upstream failure description if ``body`` is an explicit failure object."""
    if not isinstance(body, dict):
        return None
    error = body.get("error") or body.get("errors")
    if error:
        return error
    status = body.get("status")
    if isinstance(status, str) and status.strip().lower() in FAILED_STATUS_VALUES:
        return body.get("message") or body.get("detail") or status
    return None


def _is_pending_body(body: Any) -> bool:
    if not isinstance(body, dict):
        return False
    status = body.get("status")
    return isinstance(status, str) and status.strip().lower() in PENDING_STATUS_VALUES


class StatusPoller:
    """Polls the status endpoint until the job is terminal or out of time."""

    def __init__(
        self,
        sender: ApiRetryService,
        registry: JobKindRegistry,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_event: EventSink = log_event,
    ):
        """Initializes the poller.

        Args:
            sender: Retrying HTTP sender shared with the submitter.
            registry: Job kind descriptors (status URL, poll hint).
            poll_interval_s: Seconds between two status queries.
            clock: Monotonic clock; must match the one that created the handles and the sender's.
            sleep: Awaitable sleep, injectable for tests.
            on_event: Sink for PollTick and JobTerminal events.
        """
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        self.sender = sender
        self.registry = registry
        self.poll_interval_s = poll_interval_s
        self._clock = clock
        self._sleep = sleep
        self._on_event = on_event

    async def poll(self, handle: JobHandle, api_key: ApiKey) -> PollOutcome:
        """Polls until ``handle`` is terminal.

        Returns:
            A PollOutcome in COMPLETED, FAILED or TIMED_OUT state.

        Raises:
            asyncio.CancelledError: After moving the handle to CANCELLED.
            UpstreamError / RetryExhaustedError / ProtocolError: From a status query;
                the handle is moved to FAILED first.
        """
        descriptor = self.registry.get(handle.kind, handle.model)
        url = descriptor.status_endpoint(handle.request_id)
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
            POLL_HINT_HEADER: str(descriptor.poll_hint_s),
        }
        polls = 0
        try:
            while True:
                if self._clock() >= handle.expires_at:
                    logger.warning(
                        f"Job {handle.request_id} still pending after {handle.deadline_s:.0f}s; giving up."
                    )
                    return self._finish(handle, PollState.TIMED_OUT, polls)

                polls += 1
                try:
                    raw = await self.sender.send(
                        "GET", url, headers=headers,
                        endpoint_name=f"status:{handle.kind.value}", request_id=handle.request_id,
                        deadline=handle.expires_at,
                    )
                except DeadlineExceededError:
                    # Retries inside this poll ran into the job deadline
                    logger.warning(f"Job {handle.request_id} hit its {handle.deadline_s:.0f}s deadline while retrying.")
                    return self._finish(handle, PollState.TIMED_OUT, polls)
                outcome = self._interpret(handle, raw, polls)
                if outcome is not None:
                    return outcome

                remaining = handle.expires_at - self._clock()
                await self._sleep(max(0.0, min(self.poll_interval_s, remaining)))
        except asyncio.CancelledError:
            if not handle.state.is_terminal:
                handle.transition(PollState.CANCELLED)
                logger.info(f"Polling of job {handle.request_id} cancelled after {polls} poll(s).")
                self._on_event(JobTerminal(request_id=handle.request_id, state=handle.state.value, polls=polls))
            raise
        except Exception as e:
            if not handle.state.is_terminal:
                handle.transition(PollState.FAILED)
                self._on_event(JobTerminal(
                    request_id=handle.request_id, state=handle.state.value, polls=polls, detail=str(e),
                ))
            raise

    def _interpret(self, handle: JobHandle, raw: RawResponse, polls: int) -> Optional[PollOutcome]:
        """Returns a terminal outcome, or None while the job is still pending."""
        descriptor = self.registry.get(handle.kind, handle.model)
        if raw.status == 202:
            try:
                body = json.loads(raw.text) if raw.text.strip() else None
            except ValueError:
                body = None
            self._record_progress(handle, body, raw.status, polls)
            return None

        body = parse_body(raw, descriptor)
        failure = failure_of(body)
        if failure is not None:
            logger.error(f"Job {handle.request_id} failed upstream: {failure}")
            return self._finish(handle, PollState.FAILED, polls, diagnostic=body)
        if _is_pending_body(body):
            self._record_progress(handle, body, raw.status, polls)
            return None
        draft = JobResultDraft(kind=handle.kind, payload=body, request_id=handle.request_id)
        return self._finish(handle, PollState.COMPLETED, polls, draft=draft)

    def _record_progress(self, handle: JobHandle, body: Any, status: int, polls: int) -> None:
        stage, progress = _progress_of(body)
        if stage is not None:
            handle.stage = stage
        if progress is not None:
            handle.progress = progress
        logger.debug(f"Job {handle.request_id} pending (poll {polls}, stage={handle.stage}, progress={handle.progress})")
        self._on_event(PollTick(
            request_id=handle.request_id, poll_number=polls, http_status=status,
            stage=handle.stage, progress=handle.progress,
        ))

    def _finish(
        self,
        handle: JobHandle,
        state: PollState,
        polls: int,
        draft: Optional[JobResultDraft] = None,
        diagnostic: Any = None,
    ) -> PollOutcome:
        handle.transition(state)
        self._on_event(JobTerminal(request_id=handle.request_id, state=state.value, polls=polls, detail=diagnostic))
        return PollOutcome(state=state, polls=polls, draft=draft, diagnostic=diagnostic)
