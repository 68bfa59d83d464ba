import asyncio
import json
from dataclasses import replace

import httpx
import pytest

from bioqueue.core.services.job_facade import JobFacade
from bioqueue.core.services.resolver import CompletionResolver
from bioqueue.core.services.result_extractor import ResultExtractor
from bioqueue.core.services.status_poller import StatusPoller
from bioqueue.core.services.submitter import JobSubmitter
from bioqueue.domain.errors import ConfigurationError, DeadlineExceededError, ExtractionError, ValidationError
from bioqueue.domain.events.api_events import JobAccepted, JobTerminal
from bioqueue.domain.models.job import GeneratedItem, JobKind, JobRequest, JobStatus, PollState
from bioqueue.infrastructure.credentials.env_provider import ConfigCredentialProvider, StaticCredentialProvider

from conftest import pdb_document

SEQ_50 = "MKTAYIAKQRQISFVKSHFSRQLEERLGLIEVQAPILSRVGDGTQDNLSG"


@pytest.fixture
def make_facade(make_sender, registry, clock, sleep, events):
    def factory(script, credentials=None):
        sender, upstream = make_sender(script)
        facade = JobFacade(
            submitter=JobSubmitter(sender, registry),
            resolver=CompletionResolver(clock=clock),
            poller=StatusPoller(sender, registry, poll_interval_s=5.0, clock=clock, sleep=sleep,
                                on_event=events.append),
            extractor=ResultExtractor(),
            credentials=credentials or StaticCredentialProvider("nvapi-facade-key"),
            registry=registry,
            on_event=events.append,
            clock=clock,
        )
        return facade, sender, upstream
    return factory


@pytest.mark.asyncio
async def test_synchronous_structure_prediction(make_facade):
    document = pdb_document(12)
    facade, _, upstream = make_facade([httpx.Response(200, json={"pdb_file": document})])

    result = await facade.run(JobRequest(kind=JobKind.STRUCTURE_PREDICTION, payload={"sequence": SEQ_50}))

    assert result.status is JobStatus.COMPLETED
    assert "ATOM" in result.artifact
    assert result.warnings == ()
    request = upstream.requests[0]
    assert request.method == "POST"
    assert str(request.url).endswith("/biology/nvidia/esmfold")
    assert request.headers["authorization"] == "Bearer nvapi-facade-key"
    assert request.headers["nvcf-poll-seconds"] == "5"
    assert json.loads(request.content) == {"sequence": SEQ_50}


@pytest.mark.asyncio
async def test_accepted_multimer_job_is_polled_to_completion(make_facade, events):
    facade, _, upstream = make_facade([
        httpx.Response(202, headers={"reqid": "abc123"}),
        httpx.Response(202),
        httpx.Response(200, json={"output": {"structure": pdb_document()}}),
    ])

    result = await facade.run(JobRequest(kind=JobKind.MULTIMER_PREDICTION, payload={"sequences": [SEQ_50] * 3}))

    assert result.status is JobStatus.COMPLETED
    assert "ATOM" in result.artifact
    assert result.request_id == "abc123"
    status_requests = [r for r in upstream.requests if r.method == "GET"]
    assert len(status_requests) == 2
    assert all(str(r.url).endswith("/status/abc123") for r in status_requests)
    accepted = [e for e in events if isinstance(e, JobAccepted)]
    assert len(accepted) == 1 and accepted[0].request_id == "abc123"


@pytest.mark.asyncio
async def test_invalid_input_never_reaches_the_network(make_facade, mocker):
    facade, sender, upstream = make_facade([])
    enqueue = mocker.spy(sender.dispatch_queue, "enqueue")

    with pytest.raises(ValidationError):
        await facade.run(JobRequest(kind=JobKind.STRUCTURE_PREDICTION, payload={"sequence": "MKTAY"}))

    assert enqueue.call_count == 0
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_validation_runs_before_credential_lookup(make_facade, monkeypatch):
    monkeypatch.delenv("NVCF_RUN_KEY")
    monkeypatch.delenv("NVIDIA_API_KEY")
    facade, _, _ = make_facade([], credentials=ConfigCredentialProvider())

    with pytest.raises(ValidationError):
        await facade.run(JobRequest(kind=JobKind.STRUCTURE_PREDICTION, payload={"sequence": "MKTAY"}))
    with pytest.raises(ConfigurationError):
        await facade.run(JobRequest(kind=JobKind.STRUCTURE_PREDICTION, payload={"sequence": SEQ_50}))


@pytest.mark.asyncio
async def test_rate_limited_submission_honours_retry_after(make_facade, sleep):
    facade, _, upstream = make_facade([
        httpx.Response(429, headers={"Retry-After": "2"}),
        httpx.Response(200, json={"pdb_file": pdb_document()}),
    ])

    result = await facade.run(JobRequest(kind=JobKind.STRUCTURE_PREDICTION, payload={"sequence": SEQ_50}))

    assert result.status is JobStatus.COMPLETED
    assert len(upstream.requests) == 2
    assert sleep.calls == [2.0]


@pytest.mark.asyncio
async def test_job_that_never_finishes_hits_the_deadline(make_facade, registry, clock):
    registry.register(replace(registry[JobKind.STRUCTURE_PREDICTION], deadline_s=12.0))
    facade, _, upstream = make_facade(
        [httpx.Response(202, headers={"nvcf-reqid": "stuck"})] + [httpx.Response(202) for _ in range(3)]
    )

    with pytest.raises(DeadlineExceededError) as exc_info:
        await facade.run(JobRequest(kind=JobKind.STRUCTURE_PREDICTION, payload={"sequence": SEQ_50}))

    assert isinstance(exc_info.value, TimeoutError)
    assert exc_info.value.request_id == "stuck"
    assert exc_info.value.polls == 3
    # One submission plus three polls; nothing after the deadline
    assert len(upstream.requests) == 4


@pytest.mark.asyncio
async def test_upstream_failure_is_a_failed_result(make_facade):
    facade, _, _ = make_facade([
        httpx.Response(202, headers={"nvcf-reqid": "j1"}),
        httpx.Response(200, json={"error": "out of memory"}),
    ])

    result = await facade.run(JobRequest(kind=JobKind.MULTIMER_PREDICTION, payload={"sequences": [SEQ_50]}))

    assert result.status is JobStatus.FAILED
    assert result.artifact is None
    assert result.raw_diagnostic == {"error": "out of memory"}
    assert not result.succeeded


@pytest.mark.asyncio
async def test_completed_payload_without_artifact_raises(make_facade):
    facade, _, _ = make_facade([httpx.Response(200, json={"status": "done"})])

    with pytest.raises(ExtractionError):
        await facade.run(JobRequest(kind=JobKind.STRUCTURE_PREDICTION, payload={"sequence": SEQ_50}))


@pytest.mark.asyncio
async def test_molecule_generation(make_facade):
    facade, _, upstream = make_facade([
        httpx.Response(200, json={"molecules": json.dumps([{"sample": "CCO", "score": 0.6}, {"sample": "CCN"}])}),
    ])

    result = await facade.run(JobRequest(kind="generate", payload={"smiles": "CCO", "num_molecules": 2}))

    assert result.artifact == [GeneratedItem("CCO", 0.6), GeneratedItem("CCN", None)]
    assert json.loads(upstream.requests[0].content)["num_molecules"] == 2


@pytest.mark.asyncio
async def test_resume_polls_an_existing_job(make_facade):
    facade, _, upstream = make_facade([httpx.Response(200, json={"pdbs": [pdb_document()]})])

    result = await facade.resume("earlier-job", "fold")

    assert result.status is JobStatus.COMPLETED
    assert result.request_id == "earlier-job"
    assert upstream.requests[0].method == "GET"


@pytest.mark.asyncio
async def test_cancelling_a_running_job_stops_polling(make_facade, events, mocker):
    in_flight = asyncio.Event()

    async def hang(request):
        in_flight.set()
        await asyncio.sleep(10)
        return httpx.Response(202)

    facade, _, upstream = make_facade([httpx.Response(202, headers={"nvcf-reqid": "long-job"}), hang])
    resolve = mocker.spy(facade.resolver, "resolve")

    task = asyncio.ensure_future(
        facade.run(JobRequest(kind=JobKind.MULTIMER_PREDICTION, payload={"sequences": [SEQ_50]}))
    )
    await in_flight.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0)

    handle = resolve.spy_return
    assert handle.request_id == "long-job"
    assert handle.state is PollState.CANCELLED
    assert [r.method for r in upstream.requests] == ["POST", "GET"]
    assert any(isinstance(e, JobTerminal) and e.state == "cancelled" for e in events)


@pytest.mark.asyncio
async def test_openfold2_model_uses_its_own_endpoint_and_key(make_facade, monkeypatch):
    monkeypatch.setenv("NVCF_RUN_KEY", "run-key")
    monkeypatch.setenv("NVIDIA_API_KEY", "api-key")
    facade, _, upstream = make_facade(
        [httpx.Response(200, json={"output": {"structure": pdb_document()}})],
        credentials=ConfigCredentialProvider(),
    )

    result = await facade.run(JobRequest(kind="fold", payload={"sequence": SEQ_50}, model="openfold2"))

    assert result.status is JobStatus.COMPLETED
    request = upstream.requests[0]
    assert str(request.url).endswith("/openfold/openfold2/predict-structure-from-msa-and-template")
    assert request.headers["authorization"] == "Bearer api-key"
    assert request.headers["nvcf-poll-seconds"] == "300"
    assert json.loads(request.content) == {"sequence": SEQ_50}


@pytest.mark.asyncio
async def test_single_chain_alphafold_job_keeps_its_model_while_polling(make_facade):
    facade, _, upstream = make_facade([
        httpx.Response(202, headers={"nvcf-reqid": "af2-job"}),
        httpx.Response(200, json={"pdb": pdb_document()}),
    ])

    result = await facade.run(JobRequest(kind="fold", payload={"sequence": SEQ_50}, model="alphafold2"))

    assert result.status is JobStatus.COMPLETED
    submit, status = upstream.requests
    assert json.loads(submit.content)["sequences"] == [SEQ_50]
    assert str(submit.url).endswith("/deepmind/alphafold2-multimer")
    assert status.headers["nvcf-poll-seconds"] == "1"


@pytest.mark.asyncio
async def test_unknown_model_is_rejected_before_the_network(make_facade):
    facade, _, upstream = make_facade([])

    with pytest.raises(ValidationError) as exc_info:
        await facade.run(JobRequest(kind="fold", payload={"sequence": SEQ_50}, model="rosettafold"))

    assert "openfold2" in exc_info.value.message
    assert upstream.requests == []
