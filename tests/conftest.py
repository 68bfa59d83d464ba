import pytest
import httpx
from typer.testing import CliRunner

from bioqueue.core.job_kinds import JobKindRegistry
from bioqueue.infrastructure.cli.display import ConsoleDisplay
from bioqueue.infrastructure.config import settings
from bioqueue.infrastructure.resilience.api_retry import ApiRetryService
from bioqueue.infrastructure.resilience.backoff import BackoffPolicy
from bioqueue.infrastructure.resilience.dispatch_queue import DispatchQueue

TEST_API_KEY = "nvapi-test-key-0123456789"


def pdb_document(records: int = 12) -> str:
    """A small PDB text with ``records`` ATOM lines."""
    lines = ["HEADER    TEST STRUCTURE"]
    for index in range(1, records + 1):
        lines.append(
            f"ATOM  {index:5d}  CA  ALA A{index:4d}      11.104  13.207   2.100  1.00 90.00           C"
        )
    lines.append("END")
    return "\n".join(lines) + "\n"


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep that returns immediately, records the delay and advances the clock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


class ScriptedUpstream:
    """httpx.MockTransport handler that replays responses in order and records requests.

    A script entry may be an httpx.Response, an exception to raise, or a
    callable taking the request.
    """

    def __init__(self, script):
        self.script = list(script)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.script:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        entry = self.script.pop(0)
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            return entry(request)
        return entry


@pytest.fixture(scope="session")
def runner():
    """Provides a Typer CliRunner instance."""
    return CliRunner()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def events():
    """Collects emitted domain events."""
    return []


@pytest.fixture
def registry():
    return JobKindRegistry()


@pytest.fixture
def make_sender(clock, sleep, events):
    """Builds an ApiRetryService whose network is a ScriptedUpstream.

    Returns a factory ``(script, **policy) -> (sender, upstream)``.
    """
    def factory(script, max_retries: int = 3, attempt_timeout_s: float = 5.0):
        upstream = ScriptedUpstream(script)
        client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        sender = ApiRetryService(
            dispatch_queue=DispatchQueue(min_interval=0.0, on_event=events.append),
            client=client,
            policy=BackoffPolicy(max_retries=max_retries, base_delay_s=1.0, max_delay_s=10.0, max_jitter_s=1.0),
            attempt_timeout_s=attempt_timeout_s,
            sleep=sleep,
            jitter_source=lambda: 0.0,
            on_event=events.append,
            clock=clock,
        )
        return sender, upstream
    return factory


@pytest.fixture(autouse=True)
def isolated_configuration(monkeypatch):
    """Dummy API keys for every test and no configuration leaking between tests."""
    monkeypatch.setenv("NVCF_RUN_KEY", TEST_API_KEY)
    monkeypatch.setenv("NVIDIA_API_KEY", TEST_API_KEY)
    monkeypatch.delenv("NVIDIA_MULTIMER_API_KEY", raising=False)
    settings.reset_configuration()
    settings.clear_test_config()
    yield
    settings.reset_configuration()
    settings.clear_test_config()


@pytest.fixture
def mock_console_display(mocker):
    """Mocks the ConsoleDisplay used by the CLI to capture output easily."""
    mock = mocker.MagicMock(spec=ConsoleDisplay)
    mocker.patch("bioqueue.main._ui", None)
    mocker.patch("bioqueue.main.ConsoleDisplay", return_value=mock)
    return mock


@pytest.fixture
def cli_upstream(mocker):
    """Routes the CLI's HTTP client to a ScriptedUpstream and keeps config/logging local.

    Returns a function ``script -> ScriptedUpstream``.
    """
    mocker.patch("bioqueue.main.load_configuration")
    mocker.patch("bioqueue.main.setup_logging")
    settings.set_config_for_testing({"dispatch.min_interval_s": 0.0, "poll.interval_s": 0.01})

    def install(script):
        upstream = ScriptedUpstream(script)
        mocker.patch(
            "bioqueue.main.build_http_client",
            side_effect=lambda: httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
        )
        return upstream
    return install
