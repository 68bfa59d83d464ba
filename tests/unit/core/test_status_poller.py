import asyncio

import httpx
import pytest

from bioqueue.core.job_kinds import STATUS_URL
from bioqueue.core.services.resolver import handle_for
from bioqueue.core.services.status_poller import StatusPoller
from bioqueue.domain.errors import UpstreamError
from bioqueue.domain.events.api_events import JobTerminal, PollTick
from bioqueue.domain.models.job import JobKind, PollState

from conftest import pdb_document


@pytest.fixture
def make_poller(make_sender, registry, clock, sleep, events):
    def factory(script, poll_interval_s: float = 5.0):
        sender, upstream = make_sender(script)
        poller = StatusPoller(
            sender, registry, poll_interval_s=poll_interval_s, clock=clock, sleep=sleep, on_event=events.append,
        )
        return poller, upstream
    return factory


@pytest.mark.asyncio
async def test_polls_until_completed(make_poller, clock, sleep):
    document = pdb_document()
    poller, upstream = make_poller([
        httpx.Response(202),
        httpx.Response(200, json={"output": {"structure": document}}),
    ])
    handle = handle_for("abc123", JobKind.MULTIMER_PREDICTION, 1800.0, clock=clock)

    outcome = await poller.poll(handle, "key")

    assert outcome.state is PollState.COMPLETED
    assert outcome.polls == 2
    assert outcome.draft.payload == {"output": {"structure": document}}
    assert outcome.draft.request_id == "abc123"
    assert handle.state is PollState.COMPLETED
    assert sleep.calls == [5.0]
    assert str(upstream.requests[0].url) == f"{STATUS_URL}/abc123"
    assert upstream.requests[0].headers["authorization"] == "Bearer key"


@pytest.mark.asyncio
async def test_deadline_stops_polling(make_poller, clock, sleep, events):
    poller, upstream = make_poller([httpx.Response(202) for _ in range(3)])
    handle = handle_for("slow-job", JobKind.STRUCTURE_PREDICTION, 12.0, clock=clock)

    outcome = await poller.poll(handle, "key")

    assert outcome.state is PollState.TIMED_OUT
    assert handle.state is PollState.TIMED_OUT
    assert outcome.polls == 3
    assert len(upstream.requests) == 3
    # The last sleep is cut short to end exactly at the deadline
    assert sleep.calls == [5.0, 5.0, 2.0]
    assert clock() >= handle.expires_at
    assert isinstance(events[-1], JobTerminal)
    assert events[-1].state == "timed_out"


@pytest.mark.asyncio
async def test_expired_handle_is_not_polled(make_poller, clock):
    poller, upstream = make_poller([])
    handle = handle_for("old-job", JobKind.STRUCTURE_PREDICTION, 10.0, clock=clock)
    clock.advance(11.0)

    outcome = await poller.poll(handle, "key")

    assert outcome.state is PollState.TIMED_OUT
    assert outcome.polls == 0
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_explicit_error_body_is_a_failure(make_poller, clock):
    body = {"error": "MSA search failed", "status": "failed"}
    poller, _ = make_poller([httpx.Response(200, json=body)])
    handle = handle_for("bad-job", JobKind.MULTIMER_PREDICTION, 1800.0, clock=clock)

    outcome = await poller.poll(handle, "key")

    assert outcome.state is PollState.FAILED
    assert outcome.diagnostic == body
    assert outcome.draft is None


@pytest.mark.asyncio
async def test_pending_bodies_record_progress(make_poller, clock, events):
    poller, _ = make_poller([
        httpx.Response(202, json={"stage": "msa", "progress": 10}),
        httpx.Response(200, json={"status": "running", "details": {"stage": "folding", "progress": 60.5}}),
        httpx.Response(200, json={"pdb": pdb_document()}),
    ])
    handle = handle_for("job-1", JobKind.MULTIMER_PREDICTION, 1800.0, clock=clock)

    outcome = await poller.poll(handle, "key")

    assert outcome.state is PollState.COMPLETED
    assert outcome.polls == 3
    ticks = [e for e in events if isinstance(e, PollTick)]
    assert [(t.stage, t.progress) for t in ticks] == [("msa", 10.0), ("folding", 60.5)]
    assert handle.stage == "folding"


@pytest.mark.asyncio
async def test_non_retryable_status_fails_the_handle(make_poller, clock):
    poller, _ = make_poller([httpx.Response(404, json={"detail": "unknown request id"})])
    handle = handle_for("gone", JobKind.STRUCTURE_PREDICTION, 300.0, clock=clock)

    with pytest.raises(UpstreamError):
        await poller.poll(handle, "key")

    assert handle.state is PollState.FAILED


@pytest.mark.asyncio
async def test_cancellation_moves_handle_to_cancelled(make_poller, clock, events):
    started = asyncio.Event()

    async def hang(request):
        started.set()
        await asyncio.sleep(10)
        return httpx.Response(202)

    poller, upstream = make_poller([hang])
    handle = handle_for("cancel-me", JobKind.STRUCTURE_PREDICTION, 300.0, clock=clock)

    task = asyncio.ensure_future(poller.poll(handle, "key"))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert handle.state is PollState.CANCELLED
    assert len(upstream.requests) == 1
    assert any(isinstance(e, JobTerminal) and e.state == "cancelled" for e in events)


def test_poll_interval_must_be_positive(make_sender, registry):
    sender, _ = make_sender([])
    with pytest.raises(ValueError):
        StatusPoller(sender, registry, poll_interval_s=0)


@pytest.mark.asyncio
async def test_retries_inside_a_poll_stop_at_the_deadline(make_poller, clock, sleep):
    poller, upstream = make_poller([
        httpx.Response(503, headers={"Retry-After": "30"}),
        httpx.Response(503, headers={"Retry-After": "30"}),
        httpx.Response(202),
    ])
    handle = handle_for("throttled", JobKind.STRUCTURE_PREDICTION, 10.0, clock=clock)

    outcome = await poller.poll(handle, "key")

    assert outcome.state is PollState.TIMED_OUT
    assert handle.state is PollState.TIMED_OUT
    assert outcome.polls == 1
    # Only the first status query went out; the 30s retry was cut to the 10s left
    assert len(upstream.requests) == 1
    assert sleep.calls == [10.0]
    assert clock() == handle.expires_at
