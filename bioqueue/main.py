"""Main entry point for the bioqueue application.

Sets up the Typer CLI application, performs dependency injection (Composition Root),
defines CLI commands, and delegates execution to the CommandHandler.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import typer
from typing_extensions import Annotated

# --- Core Layer ---
from bioqueue.core.command_handler import CommandHandler
from bioqueue.core.job_kinds import JobKindRegistry
from bioqueue.core.services.job_facade import JobFacade
from bioqueue.core.services.resolver import CompletionResolver
from bioqueue.core.services.result_extractor import ResultExtractor
from bioqueue.core.services.status_poller import DEFAULT_POLL_INTERVAL_S, StatusPoller
from bioqueue.core.services.submitter import JobSubmitter

# --- Domain Layer ---
from bioqueue.domain.interfaces.user_interface import UserInterface

# --- Infrastructure Layer ---
# Config
from bioqueue.infrastructure.config.settings import get_config, get_float, get_int, load_configuration
# UI
from bioqueue.infrastructure.cli.display import ConsoleDisplay
# Credentials
from bioqueue.infrastructure.credentials.env_provider import ConfigCredentialProvider
# Resilience
from bioqueue.infrastructure.resilience.api_retry import DEFAULT_ATTEMPT_TIMEOUT_S, ApiRetryService
from bioqueue.infrastructure.resilience.backoff import (
    DEFAULT_BASE_DELAY_S,
    DEFAULT_MAX_DELAY_S,
    DEFAULT_MAX_JITTER_S,
    DEFAULT_MAX_RETRIES,
    BackoffPolicy,
)
from bioqueue.infrastructure.resilience.dispatch_queue import DEFAULT_MIN_INTERVAL_S, DispatchQueue
# Monitoring
from bioqueue.infrastructure.monitoring.logger_setup import DEFAULT_LOG_FORMAT, setup_logging

logger = logging.getLogger(__name__)

_ui: Optional[UserInterface] = None


def get_ui() -> UserInterface:
    global _ui
    if _ui is None:
        _ui = ConsoleDisplay()
    return _ui


def configure() -> None:
    """Loads configuration and sets up logging from it."""
    load_configuration()
    log_level_name = str(get_config("logging.level", "WARNING")).upper()
    log_level = getattr(logging, log_level_name, logging.WARNING)
    setup_logging(
        log_level=log_level,
        log_format=get_config("logging.format", DEFAULT_LOG_FORMAT),
        log_file=get_config("logging.file"),
    )
    logger.debug("Configuration and logging initialized.")


def build_http_client() -> httpx.AsyncClient:
    """The shared HTTP client. Timeouts are enforced per attempt by ApiRetryService."""
    return httpx.AsyncClient(timeout=None, follow_redirects=True)


# --- Dependency Injection Container (Manual) ---

def create_dependencies(client: httpx.AsyncClient, ui: Optional[UserInterface] = None) -> Dict[str, Any]:
    """Creates and wires up all dependencies for the application.

    This acts as the Composition Root. Must be called inside the event loop
    that will run the command, since the dispatch queue binds to it.
    """
    logger.debug("Initializing application dependencies...")
    dependencies: Dict[str, Any] = {"ui": ui or get_ui()}

    # 1. Resilience: one dispatch queue for every call this process makes
    dependencies["dispatch_queue"] = DispatchQueue(
        min_interval=get_float("dispatch.min_interval_s", DEFAULT_MIN_INTERVAL_S),
        max_depth=get_int("dispatch.max_depth", None),
    )
    policy = BackoffPolicy(
        max_retries=get_int("retry.max_retries", DEFAULT_MAX_RETRIES),
        base_delay_s=get_float("retry.base_delay_s", DEFAULT_BASE_DELAY_S),
        max_delay_s=get_float("retry.max_delay_s", DEFAULT_MAX_DELAY_S),
        max_jitter_s=get_float("retry.max_jitter_s", DEFAULT_MAX_JITTER_S),
    )
    dependencies["api_retry_service"] = ApiRetryService(
        dispatch_queue=dependencies["dispatch_queue"],
        client=client,
        policy=policy,
        attempt_timeout_s=get_float("http.attempt_timeout_s", DEFAULT_ATTEMPT_TIMEOUT_S),
    )

    # 2. Job kinds and credentials
    dependencies["registry"] = JobKindRegistry.from_config()
    dependencies["credentials"] = ConfigCredentialProvider()

    # 3. Core services
    dependencies["job_facade"] = JobFacade(
        submitter=JobSubmitter(dependencies["api_retry_service"], dependencies["registry"]),
        resolver=CompletionResolver(),
        poller=StatusPoller(
            dependencies["api_retry_service"],
            dependencies["registry"],
            poll_interval_s=get_float("poll.interval_s", DEFAULT_POLL_INTERVAL_S),
        ),
        extractor=ResultExtractor(),
        credentials=dependencies["credentials"],
        registry=dependencies["registry"],
    )

    # 4. Command Handler
    dependencies["command_handler"] = CommandHandler(facade=dependencies["job_facade"], ui=dependencies["ui"])
    logger.debug("All dependencies initialized successfully.")
    return dependencies


# --- Typer App Definition ---
app = typer.Typer(
    name="bioqueue",
    help="bioqueue: submit protein folding and molecule generation jobs to hosted inference APIs.",
    add_completion=False,
)


# --- Helper for Running Async Commands ---

async def _execute(action: Callable[[CommandHandler], Awaitable[bool]]) -> bool:
    async with build_http_client() as client:
        dependencies = create_dependencies(client)
        try:
            return await action(dependencies["command_handler"])
        finally:
            await dependencies["dispatch_queue"].aclose()


def run_async(action: Callable[[CommandHandler], Awaitable[bool]]) -> None:
    """Runs a handler coroutine and turns its outcome into the process exit code."""
    configure()
    try:
        succeeded = asyncio.run(_execute(action))
    except KeyboardInterrupt:
        get_ui().display_warning("Cancelled.")
        raise typer.Exit(code=130)
    except Exception as e:
        logger.error(f"Error executing command: {e}", exc_info=True)
        get_ui().display_error(f"Command execution failed: {e}")
        raise typer.Exit(code=1)
    if not succeeded:
        raise typer.Exit(code=1)


# --- CLI Commands ---

# Shared output option
OutputOption = Annotated[
    Optional[Path],
    typer.Option("--output", "-o", dir_okay=False, help="Write the artifact (PDB text or one SMILES per line) here.")
]
ModelOption = Annotated[
    Optional[str],
    typer.Option("--model", "-m", help="Model serving the job (fold: esmfold, openfold2 or alphafold2).")
]


@app.command()
def fold(
    sequence: Annotated[str, typer.Argument(help="Protein sequence (one-letter amino-acid codes).")],
    model: ModelOption = None,
    output: OutputOption = None,
):
    """Predict the structure of a single protein chain."""
    run_async(lambda handler: handler.handle_fold(sequence, output, model))


@app.command()
def multimer(
    sequences: Annotated[List[str], typer.Argument(help="One sequence per chain (1 to 5).")],
    algorithm: Annotated[Optional[str], typer.Option(help="MSA algorithm ('jackhmmer' or 'mmseqs2').")] = None,
    e_value: Annotated[Optional[float], typer.Option("--e-value", help="MSA e-value cutoff.")] = None,
    iterations: Annotated[Optional[int], typer.Option(help="MSA iterations.")] = None,
    relax: Annotated[Optional[bool], typer.Option("--relax/--no-relax", help="Relax the predicted structure.")] = None,
    output: OutputOption = None,
):
    """Predict the structure of a protein complex."""
    options = {"algorithm": algorithm, "e_value": e_value, "iterations": iterations, "relax_prediction": relax}
    run_async(lambda handler: handler.handle_multimer(sequences, output, options))


@app.command()
def generate(
    smiles: Annotated[str, typer.Argument(help="Seed molecule as a SMILES string.")],
    num_molecules: Annotated[Optional[int], typer.Option("--num-molecules", "-n", help="Molecules to generate.")] = None,
    min_similarity: Annotated[Optional[float], typer.Option("--min-similarity", help="Similarity floor in [0, 1].")] = None,
    particles: Annotated[Optional[int], typer.Option(help="Optimizer particles.")] = None,
    iterations: Annotated[Optional[int], typer.Option(help="Optimizer iterations.")] = None,
    minimize: Annotated[Optional[bool], typer.Option("--minimize/--maximize", help="Minimize instead of maximize QED.")] = None,
    output: OutputOption = None,
):
    """Generate molecules similar to a seed molecule."""
    options = {
        "num_molecules": num_molecules,
        "min_similarity": min_similarity,
        "particles": particles,
        "iterations": iterations,
        "minimize": minimize,
    }
    run_async(lambda handler: handler.handle_generate(smiles, output, options))


@app.command()
def status(
    request_id: Annotated[str, typer.Argument(help="Request id returned when the job was accepted.")],
    kind: Annotated[str, typer.Option("--kind", "-k", help="Job kind ('fold', 'multimer' or 'generate').")] = "fold",
    model: ModelOption = None,
    output: OutputOption = None,
):
    """Resume polling a job accepted earlier and fetch its result."""
    run_async(lambda handler: handler.handle_status(request_id, kind, output, model))


# --- Main Execution Guard ---

def cli_entry_point():
    """Function to be called by the script entry point in pyproject.toml."""
    app()


if __name__ == "__main__":
    cli_entry_point()
