"""Completion Resolver: interprets the first response to a submission.

A 202 means the job was accepted and must be polled; its id comes from the
``nvcf-reqid`` header. A 200 carries the result directly, either as JSON or
as a bare document.
"""

import json
import logging
import time
from typing import Callable, Optional, Union

from bioqueue.core.job_kinds import REQUEST_ID_FALLBACK_HEADERS, REQUEST_ID_HEADER, JobKindDescriptor
from bioqueue.domain.errors import ProtocolError
from bioqueue.domain.models.common import JsonValue, RequestId
from bioqueue.domain.models.job import JobHandle, JobKind, JobResultDraft, RawResponse

logger = logging.getLogger(__name__)

MAX_DIAGNOSTIC_CHARS = 500


def validate_request_id(request_id: str) -> RequestId:
    """Rejects ids that would escape the status URL path."""
    request_id = (request_id or "").strip()
    if not request_id or "/" in request_id or "\\" in request_id:
        raise ProtocolError("Invalid upstream request id", diagnostic=request_id)
    return RequestId(request_id)


def parse_body(raw: RawResponse, descriptor: JobKindDescriptor) -> JsonValue:
    """JSON body, or the raw text when it is a bare document.

    Raises:
        ProtocolError: If the body is neither JSON nor a recognizable document.
    """
    try:
        return json.loads(raw.text)
    except ValueError:
        text = raw.text.strip()
        if text and descriptor.markers and any(text.startswith(marker) for marker in descriptor.markers):
            logger.debug("Response body is a bare document; using it as the artifact.")
            return raw.text
        raise ProtocolError(
            f"Upstream returned a {raw.status} body that is neither JSON nor a structure document",
            diagnostic=raw.text[:MAX_DIAGNOSTIC_CHARS],
        )


class CompletionResolver:
    """Turns a submission response into a JobHandle or a JobResultDraft."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock

    def resolve(self, raw: RawResponse, descriptor: JobKindDescriptor) -> Union[JobHandle, JobResultDraft]:
        if raw.status == 202:
            header = raw.header(REQUEST_ID_HEADER)
            for name in REQUEST_ID_FALLBACK_HEADERS:
                header = header or raw.header(name)
            if not header:
                raise ProtocolError(
                    f"Upstream accepted the job (202) but sent no {REQUEST_ID_HEADER} header",
                    diagnostic=raw.text[:MAX_DIAGNOSTIC_CHARS] or None,
                )
            handle = JobHandle(
                request_id=validate_request_id(header),
                kind=descriptor.kind,
                created_at=self._clock(),
                deadline_s=descriptor.deadline_s,
                model=descriptor.model,
            )
            logger.info(f"{descriptor.kind.value} job accepted as {handle.request_id}; polling for completion.")
            return handle

        if raw.status == 200:
            return JobResultDraft(kind=descriptor.kind, payload=parse_body(raw, descriptor))

        raise ProtocolError(f"Unexpected submission status {raw.status}", diagnostic=raw.text[:MAX_DIAGNOSTIC_CHARS])


def handle_for(
    request_id: str,
    kind: JobKind,
    deadline_s: float,
    clock: Callable[[], float] = time.monotonic,
    model: Optional[str] = None,
) -> JobHandle:
    """Builds a handle for a job accepted in an earlier session."""
    return JobHandle(
        request_id=validate_request_id(request_id), kind=kind, created_at=clock(), deadline_s=deadline_s, model=model,
    )
