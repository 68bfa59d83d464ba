"""
Job Facade: the single entry point for running an upstream job.

``run`` composes validation, submission, completion resolution, polling and
extraction into one awaitable call. Cancelling the awaiting task is the only
cancellation mechanism: the in-flight HTTP call is aborted, queued work for
the call is dropped and a live JobHandle ends in CANCELLED.
"""

import logging
import time
from typing import Callable, Optional, Union

# Domain Layer Imports
from bioqueue.domain.errors import DeadlineExceededError, ProtocolError
from bioqueue.domain.events.api_events import EventSink, JobAccepted, log_event
from bioqueue.domain.interfaces.credentials import CredentialProvider
from bioqueue.domain.models.job import (
    JobHandle,
    JobKind,
    JobRequest,
    JobResult,
    JobResultDraft,
    JobStatus,
    PollOutcome,
    PollState,
)

# Core services
from bioqueue.core.job_kinds import JobKindRegistry
from bioqueue.core.services.resolver import CompletionResolver, handle_for
from bioqueue.core.services.result_extractor import ResultExtractor
from bioqueue.core.services.status_poller import StatusPoller
from bioqueue.core.services.submitter import JobSubmitter

logger = logging.getLogger(__name__)


class JobFacade:
    """Orchestrates one job from request to result."""

    def __init__(
        self,
        submitter: JobSubmitter,
        resolver: CompletionResolver,
        poller: StatusPoller,
        extractor: ResultExtractor,
        credentials: CredentialProvider,
        registry: JobKindRegistry,
        on_event: EventSink = log_event,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initializes the JobFacade with its collaborators.

        ``clock`` must be the same monotonic clock the resolver and poller use,
        since handle deadlines are measured against it.
        """
        self.submitter = submitter
        self.resolver = resolver
        self.poller = poller
        self.extractor = extractor
        self.credentials = credentials
        self.registry = registry
        self._on_event = on_event
        self._clock = clock

    async def run(self, request: JobRequest) -> JobResult:
        """Runs ``request`` to completion.

        Returns:
            A COMPLETED JobResult, or a FAILED one when upstream reported an
            explicit job failure (``raw_diagnostic`` holds its detail).

        Raises:
            ValidationError: Before any network call, on bad input.
            ConfigurationError: If no credential is configured for the kind.
            UpstreamError, RetryExhaustedError, ProtocolError, ExtractionError:
                As raised by the pipeline stages.
            DeadlineExceededError: If polling ran out of time.
            asyncio.CancelledError: If the caller cancelled.
        """
        descriptor = self.registry.get(request.kind, request.model)
        # Reject bad input before credentials or the network are touched
        descriptor.validate(request.payload)
        api_key = self.credentials.get_api_key(request.kind, descriptor.credential_keys)

        raw = await self.submitter.submit(request, api_key)
        resolved = self.resolver.resolve(raw, descriptor)
        if isinstance(resolved, JobResultDraft):
            logger.info(f"{request.kind.value} job completed synchronously.")
            return self.extractor.extract(resolved, descriptor)

        self._on_event(JobAccepted(
            kind=request.kind.value, request_id=resolved.request_id, deadline_seconds=resolved.deadline_s,
        ))
        return await self._poll_and_extract(resolved, api_key)

    async def resume(
        self,
        request_id: str,
        kind: Union[JobKind, str],
        deadline_s: Optional[float] = None,
        model: Optional[str] = None,
    ) -> JobResult:
        """Polls a job accepted earlier (for example in another process) and extracts its result.

        The deadline starts now; it defaults to the model's configured deadline.
        """
        job_kind = JobKind.parse(kind)
        descriptor = self.registry.get(job_kind, model)
        handle = handle_for(
            request_id, job_kind,
            deadline_s if deadline_s is not None else descriptor.deadline_s,
            clock=self._clock,
            model=descriptor.model,
        )
        api_key = self.credentials.get_api_key(job_kind, descriptor.credential_keys)
        logger.info(f"Resuming {job_kind.value} job {handle.request_id}")
        return await self._poll_and_extract(handle, api_key)

    async def _poll_and_extract(self, handle: JobHandle, api_key: str) -> JobResult:
        outcome = await self.poller.poll(handle, api_key)
        return self._conclude(handle, outcome)

    def _conclude(self, handle: JobHandle, outcome: PollOutcome) -> JobResult:
        descriptor = self.registry.get(handle.kind, handle.model)
        if outcome.state is PollState.COMPLETED:
            if outcome.draft is None:
                raise ProtocolError(f"Job {handle.request_id} completed without a payload")
            result = self.extractor.extract(outcome.draft, descriptor)
            logger.info(f"Job {handle.request_id} completed after {outcome.polls} poll(s).")
            return result

        if outcome.state is PollState.FAILED:
            logger.error(f"Job {handle.request_id} failed after {outcome.polls} poll(s).")
            return JobResult(
                status=JobStatus.FAILED,
                kind=handle.kind,
                artifact=None,
                raw_diagnostic=outcome.diagnostic,
                request_id=handle.request_id,
            )

        if outcome.state is PollState.TIMED_OUT:
            raise DeadlineExceededError(
                f"Job {handle.request_id} did not finish within {handle.deadline_s:.0f}s",
                request_id=handle.request_id,
                polls=outcome.polls,
            )

        raise ProtocolError(f"Poller returned non-terminal state {outcome.state.value} for {handle.request_id}")
