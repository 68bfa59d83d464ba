"""Rate-limited dispatch queue for outbound upstream calls.

Serializes every network call in the process: calls run one at a time in
FIFO order, and the next call is not started until ``min_interval`` has
elapsed since the previous one was sent. Callers await their own result
independently; a failing call only fails its own caller.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Optional, TypeVar

from bioqueue.domain.errors import QueueFullError
from bioqueue.domain.events.api_events import ApiCallDeferred, EventSink, log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MIN_INTERVAL_S = 1.0 / 3  # three requests per second


@dataclass
class _QueuedCall:
    factory: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    label: str
    enqueued_at: float
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class DispatchQueue:
    """FIFO queue that executes one call at a time with a minimum send interval."""

    def __init__(
        self,
        min_interval: float = DEFAULT_MIN_INTERVAL_S,
        max_depth: Optional[int] = None,
        on_event: EventSink = log_event,
    ):
        """Initializes the dispatch queue.

        Args:
            min_interval: Minimum seconds between two consecutive sends.
            max_depth: Maximum number of waiting calls; None means unbounded.
            on_event: Sink for ApiCallDeferred events.
        """
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        if max_depth is not None and max_depth < 1:
            raise ValueError("max_depth must be >= 1")
        self.min_interval = min_interval
        self.max_depth = max_depth
        self._on_event = on_event
        self._pending: Deque[_QueuedCall] = deque()
        self._wakeup: Optional[asyncio.Event] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        # Only the worker writes this, so no lock is needed
        self._last_send: Optional[float] = None
        logger.info(
            f"DispatchQueue initialized: min_interval={min_interval:.3f}s, "
            f"max_depth={max_depth if max_depth is not None else 'unbounded'}"
        )

    @property
    def depth(self) -> int:
        """Number of calls waiting to be sent."""
        return len(self._pending)

    @property
    def last_send(self) -> Optional[float]:
        """Monotonic timestamp of the most recent send."""
        return self._last_send

    async def enqueue(self, factory: Callable[[], Awaitable[T]], label: str = "call") -> T:
        """Schedules ``factory()`` and waits for its result.

        The factory is only invoked when the call reaches the head of the
        queue. Cancelling the awaiting task drops the call if it has not been
        sent yet, or cancels it while in flight.

        Raises:
            QueueFullError: If ``max_depth`` calls are already waiting.
            Exception: Whatever the call itself raised.
        """
        self._ensure_worker()
        if self.max_depth is not None and len(self._pending) >= self.max_depth:
            logger.warning(f"Dispatch queue full ({self.max_depth} waiting); rejecting '{label}'.")
            raise QueueFullError(
                f"Dispatch queue is full ({self.max_depth} calls waiting)",
                retry_after=self.min_interval * len(self._pending),
            )

        loop = asyncio.get_running_loop()
        item = _QueuedCall(factory=factory, future=loop.create_future(), label=label, enqueued_at=time.monotonic())
        item.future.add_done_callback(lambda _fut, queued=item: self._on_caller_done(queued))
        self._pending.append(item)
        self._wakeup.set()
        logger.debug(f"Enqueued '{label}' (depth={len(self._pending)}).")
        return await item.future

    async def aclose(self) -> None:
        """Stops the worker and cancels every call still waiting."""
        while self._pending:
            self._pending.popleft().future.cancel()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

    # --- internals ---

    def _ensure_worker(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            # Calls left behind on a previous event loop can never complete
            self._pending = deque()
            self._wakeup = asyncio.Event()
            self._worker = None
            self._loop = loop
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run())

    def _on_caller_done(self, item: _QueuedCall) -> None:
        if not item.future.cancelled():
            return
        if item.task is not None and not item.task.done():
            logger.debug(f"Caller cancelled in-flight call '{item.label}'.")
            item.task.cancel()
        else:
            try:
                self._pending.remove(item)
                logger.debug(f"Dropped queued call '{item.label}' after caller cancellation.")
            except ValueError:
                pass

    async def _run(self) -> None:
        while True:
            while not self._pending:
                self._wakeup.clear()
                await self._wakeup.wait()
            item = self._pending.popleft()
            if item.future.done():
                continue
            await self._wait_for_slot(item)
            if item.future.done():
                continue
            await self._execute(item)

    async def _wait_for_slot(self, item: _QueuedCall) -> None:
        if self._last_send is None:
            return
        wait_time = self.min_interval - (time.monotonic() - self._last_send)
        if wait_time > 0:
            self._on_event(ApiCallDeferred(label=item.label, wait_time_seconds=wait_time))
            logger.debug(f"Holding '{item.label}' for {wait_time:.3f}s to keep the send interval.")
            await asyncio.sleep(wait_time)

    async def _execute(self, item: _QueuedCall) -> None:
        self._last_send = time.monotonic()
        try:
            item.task = asyncio.ensure_future(item.factory())
        except Exception as e:
            item.future.set_exception(e)
            return
        try:
            await asyncio.wait([item.task])
        except asyncio.CancelledError:
            item.task.cancel()
            raise

        task = item.task
        if task.cancelled():
            item.future.cancel()
            return
        error = task.exception()
        if item.future.done():
            if error is not None:
                logger.debug(f"Result of '{item.label}' discarded, caller already gone: {error!r}")
            return
        if error is not None:
            logger.debug(f"Queued call '{item.label}' failed: {type(error).__name__}")
            item.future.set_exception(error)
        else:
            item.future.set_result(task.result())
