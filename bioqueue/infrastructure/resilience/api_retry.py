"""Service for executing upstream HTTP calls with automatic retries.

Every attempt goes through the DispatchQueue. Transient failures (429, 5xx,
transient error classes, network errors and per-attempt timeouts) are retried
with exponential backoff; a ``Retry-After`` header overrides the computed
delay. Anything else surfaces immediately as a typed error.
"""

import asyncio
import json
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from bioqueue.domain.errors import (
    AttemptTimeoutError,
    BioQueueError,
    DeadlineExceededError,
    NetworkError,
    ProtocolError,
    RetryExhaustedError,
    UpstreamError,
)
from bioqueue.domain.events.api_events import (
    ApiCallFailed,
    ApiCallInitiated,
    ApiCallSucceeded,
    EventSink,
    RetryScheduled,
    log_event,
)
from bioqueue.domain.models.job import AttemptRecord, RawResponse
from bioqueue.infrastructure.resilience.backoff import BackoffPolicy, is_retryable, parse_retry_after
from bioqueue.infrastructure.resilience.dispatch_queue import DispatchQueue

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPT_TIMEOUT_S = 60.0
ACCEPTED_STATUSES = (200, 202)
MAX_ERROR_BODY_CHARS = 1000


def _error_class_from_body(text: str) -> Optional[str]:
    """Reads the upstream ``type`` field from a JSON error body, if any."""
    try:
        body = json.loads(text)
    except (ValueError, TypeError):
        return None
    if isinstance(body, dict):
        error_type = body.get("type") or body.get("error_type")
        if isinstance(error_type, str):
            return error_type
    return None


def _error_message_from_body(text: str) -> Optional[str]:
    try:
        body = json.loads(text)
    except (ValueError, TypeError):
        return None
    if isinstance(body, dict):
        for key in ("message", "error", "detail", "title"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def _describe_status(status: int) -> str:
    if status == 401:
        return "Invalid or expired API key"
    if status == 403:
        return "Access to the upstream endpoint was denied"
    if status == 404:
        return "Upstream resource not found"
    if status == 422:
        return "Upstream rejected the request payload"
    if status == 429:
        return "Upstream rate limit exceeded"
    if status >= 500:
        return "Upstream service unavailable"
    return f"Upstream request failed with status {status}"


class ApiRetryService:
    """Sends HTTP requests through the dispatch queue with retries and backoff."""

    def __init__(
        self,
        dispatch_queue: DispatchQueue,
        client: httpx.AsyncClient,
        policy: BackoffPolicy = BackoffPolicy(),
        attempt_timeout_s: float = DEFAULT_ATTEMPT_TIMEOUT_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter_source: Callable[[], float] = random.random,
        on_event: EventSink = log_event,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initializes the ApiRetryService.

        Args:
            dispatch_queue: Queue every attempt is routed through.
            client: Shared async HTTP client.
            policy: Retry ceiling and backoff parameters.
            attempt_timeout_s: Upper bound for one network call.
            sleep: Awaitable sleep, injectable for tests.
            jitter_source: Random source for backoff jitter.
            on_event: Sink for domain events.
            clock: Monotonic clock that ``deadline`` arguments are measured on.
        """
        self.dispatch_queue = dispatch_queue
        self.client = client
        self.policy = policy
        self.attempt_timeout_s = attempt_timeout_s
        self._sleep = sleep
        self._jitter_source = jitter_source
        self._on_event = on_event
        self._clock = clock
        logger.info(
            f"ApiRetryService initialized: max_retries={policy.max_retries}, "
            f"base_delay={policy.base_delay_s}s, max_delay={policy.max_delay_s}s, "
            f"attempt_timeout={attempt_timeout_s}s"
        )

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        json_body: Optional[Dict[str, Any]] = None,
        endpoint_name: Optional[str] = None,
        request_id: Optional[str] = None,
        accepted_statuses: Tuple[int, ...] = ACCEPTED_STATUSES,
        deadline: Optional[float] = None,
    ) -> RawResponse:
        """Sends one logical request, retrying transient failures.

        With ``deadline`` (a point on this service's clock) no attempt starts
        and no retry sleep runs past it, and each attempt's timeout is cut to
        the time left.

        Returns:
            The first response whose status is in ``accepted_statuses``.

        Raises:
            UpstreamError: On a non-retryable status.
            RetryExhaustedError: When retries ran out on a transient failure.
            DeadlineExceededError: When ``deadline`` was reached first.
            ProtocolError: On a client-side request failure such as a redirect loop.
        """
        endpoint = endpoint_name or url
        attempts: List[AttemptRecord] = []
        last_exception: Optional[BioQueueError] = None

        for attempt in range(self.policy.max_retries + 1):
            remaining = self._remaining(deadline)
            if remaining is not None and remaining <= 0:
                raise self._deadline_reached(endpoint, request_id, attempts, last_exception)
            timeout_s = self.attempt_timeout_s if remaining is None else min(self.attempt_timeout_s, remaining)

            record = AttemptRecord(attempt_number=attempt, started_at=self._clock())
            attempts.append(record)
            self._on_event(ApiCallInitiated(endpoint=endpoint, attempt_number=attempt + 1, request_id=request_id))

            retry_after: Optional[float] = None
            try:
                response = await self.dispatch_queue.enqueue(
                    lambda: self._attempt(method, url, headers, json_body, timeout_s),
                    label=f"{method} {endpoint}",
                )
            except (AttemptTimeoutError, NetworkError) as e:
                record.error_class = "TimeoutError" if isinstance(e, AttemptTimeoutError) else "NetworkError"
                last_exception = e
                logger.warning(
                    f"{type(e).__name__} calling {endpoint} on attempt {attempt + 1}/{self.policy.max_retries + 1}: {e}"
                )
            else:
                record.http_status = response.status_code
                text = response.text
                if response.status_code in accepted_statuses:
                    latency_ms = (self._clock() - record.started_at) * 1000
                    self._on_event(ApiCallSucceeded(
                        endpoint=endpoint, status=response.status_code, latency_ms=latency_ms, request_id=request_id,
                    ))
                    return RawResponse(
                        status=response.status_code,
                        headers=dict(response.headers),
                        text=text,
                        attempts=tuple(attempts),
                    )

                record.error_class = _error_class_from_body(text)
                retry_after = parse_retry_after(response.headers.get("retry-after"))
                upstream_message = _error_message_from_body(text)
                message = _describe_status(response.status_code)
                if upstream_message:
                    message = f"{message}: {upstream_message}"
                last_exception = UpstreamError(
                    message,
                    status=response.status_code,
                    body=text[:MAX_ERROR_BODY_CHARS],
                    retry_after=retry_after,
                )
                if not is_retryable(response.status_code, record.error_class):
                    logger.error(f"Non-retryable status {response.status_code} from {endpoint}: {message}")
                    self._on_event(ApiCallFailed(
                        endpoint=endpoint, error_type=type(last_exception).__name__,
                        error_message=message, request_id=request_id,
                    ))
                    raise last_exception
                logger.warning(
                    f"Retryable status {response.status_code} from {endpoint} "
                    f"on attempt {attempt + 1}/{self.policy.max_retries + 1}"
                )

            if attempt >= self.policy.max_retries:
                break

            delay = retry_after if retry_after is not None else self.policy.delay_for(attempt, self._jitter_source)
            remaining = self._remaining(deadline)
            if remaining is not None and delay >= remaining:
                logger.warning(
                    f"Retry of {endpoint} in {delay:.2f}s would end past the deadline; waiting out {remaining:.2f}s."
                )
                await self._sleep(max(0.0, remaining))
                raise self._deadline_reached(endpoint, request_id, attempts, last_exception)

            self._on_event(RetryScheduled(
                endpoint=endpoint, attempt_number=attempt + 1, delay_seconds=delay,
                http_status=record.http_status, error_class=record.error_class,
            ))
            logger.info(f"Retrying {endpoint} in {delay:.2f}s (attempt {attempt + 2}/{self.policy.max_retries + 1})")
            await self._sleep(delay)

        logger.error(f"Max retries ({self.policy.max_retries}) reached for {endpoint}. Last error: {last_exception}")
        self._on_event(ApiCallFailed(
            endpoint=endpoint, error_type=type(last_exception).__name__,
            error_message=str(last_exception), request_id=request_id,
        ))
        suggested = getattr(last_exception, "retry_after", None) or self.policy.base_delay_s
        raise RetryExhaustedError(
            f"{endpoint} still failing after {len(attempts)} attempts: {last_exception.message}",
            last_cause=last_exception,
            attempts=len(attempts),
            status=getattr(last_exception, "status", None),
            body=getattr(last_exception, "body", None),
            retry_after=suggested,
        ) from last_exception

    def _remaining(self, deadline: Optional[float]) -> Optional[float]:
        return None if deadline is None else deadline - self._clock()

    def _deadline_reached(
        self,
        endpoint: str,
        request_id: Optional[str],
        attempts: List[AttemptRecord],
        last_exception: Optional[BioQueueError],
    ) -> DeadlineExceededError:
        logger.warning(f"Deadline reached for {endpoint} after {len(attempts)} attempt(s).")
        self._on_event(ApiCallFailed(
            endpoint=endpoint, error_type=DeadlineExceededError.__name__,
            error_message=str(last_exception) if last_exception else "deadline reached", request_id=request_id,
        ))
        return DeadlineExceededError(
            f"{endpoint} gave up at the deadline after {len(attempts)} attempt(s)",
            request_id=request_id,
            diagnostic=last_exception.message if last_exception else None,
        )

    async def _attempt(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        json_body: Optional[Dict[str, Any]],
        timeout_s: float,
    ) -> httpx.Response:
        """One network call, bounded by ``timeout_s``."""
        try:
            return await asyncio.wait_for(
                self.client.request(method, url, headers=dict(headers), json=json_body, timeout=timeout_s),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise AttemptTimeoutError(
                f"{method} {url} exceeded the {timeout_s:.0f}s attempt timeout",
                diagnostic=repr(e),
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {url} failed: {type(e).__name__}", diagnostic=str(e)) from e
        except httpx.RequestError as e:
            # Client-side failures (redirect loops, undecodable bodies) are not transient
            raise ProtocolError(f"{method} {url} failed: {type(e).__name__}", diagnostic=str(e)) from e
