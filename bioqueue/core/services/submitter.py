"""Job Submitter: validates a JobRequest and sends the initial POST.

Validation runs before anything is queued; an invalid payload raises
ValidationError without touching the network. Retries, backoff and the
dispatch queue are handled by the ApiRetryService.
"""

import logging
from typing import Dict

from bioqueue.core.job_kinds import POLL_HINT_HEADER, JobKindRegistry
from bioqueue.domain.models.common import ApiKey
from bioqueue.domain.models.job import JobRequest, RawResponse
from bioqueue.infrastructure.resilience.api_retry import ApiRetryService

logger = logging.getLogger(__name__)


def build_headers(api_key: ApiKey, poll_hint_s: int) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Accept": "application/json",
        "Content-Type": "application/json",
        POLL_HINT_HEADER: str(poll_hint_s),
    }


class JobSubmitter:
    """Sends job submissions upstream."""

    def __init__(self, sender: ApiRetryService, registry: JobKindRegistry):
        self.sender = sender
        self.registry = registry

    async def submit(self, request: JobRequest, api_key: ApiKey) -> RawResponse:
        """Validates and submits ``request``.

        Returns:
            The unmodified 200 or 202 response.

        Raises:
            ValidationError: If the payload fails the kind's rules.
            UpstreamError: On a non-retryable upstream status.
            RetryExhaustedError: If transient failures outlast the retry ceiling.
        """
        descriptor = self.registry.get(request.kind, request.model)
        body = descriptor.prepare(request.payload)
        logger.info(f"Submitting {request.kind.value} job ({descriptor.model}) to {descriptor.submit_url}")
        raw = await self.sender.send(
            "POST",
            descriptor.submit_url,
            headers=build_headers(api_key, descriptor.poll_hint_s),
            json_body=body,
            endpoint_name=f"submit:{request.kind.value}",
        )
        logger.debug(f"Submission of {request.kind.value} answered {raw.status} after {len(raw.attempts)} attempt(s)")
        return raw
