"""Command Handler: Orchestrates CLI command execution.

Receives commands from the main entry point (main.py), builds the JobRequest
for each one, hands it to the JobFacade and reports the outcome through the
UserInterface. Each handler returns True on success so the entry point can
choose the exit code.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

# Core Services Imports
from bioqueue.core.services.job_facade import JobFacade

# Domain Layer Imports
from bioqueue.domain.errors import (
    BioQueueError,
    ConfigurationError,
    DeadlineExceededError,
    RetryExhaustedError,
)
from bioqueue.domain.interfaces.user_interface import UserInterface
from bioqueue.domain.models.job import JobKind, JobRequest, JobResult

logger = logging.getLogger(__name__)


def render_artifact(result: JobResult) -> str:
    """Artifact as file content: the document itself, or one representation per line."""
    if isinstance(result.artifact, list):
        return "".join(f"{item.representation}\n" for item in result.artifact)
    return result.artifact or ""


def describe_error(error: BioQueueError) -> str:
    """One-line, user-facing description of ``error``."""
    message = error.message
    if isinstance(error, ConfigurationError) and error.diagnostic:
        message += f". {error.diagnostic}"
    if isinstance(error, RetryExhaustedError) and error.last_cause is not None:
        message += f" (last cause: {error.last_cause})"
    if isinstance(error, DeadlineExceededError) and error.request_id:
        message += f". Resume later with: bioqueue status {error.request_id}"
    if error.retry_after is not None:
        message += f". Try again in {error.retry_after:.0f}s."
    return message


class CommandHandler:
    """Handles incoming commands and delegates to the JobFacade."""

    def __init__(self, facade: JobFacade, ui: UserInterface):
        """Initializes the CommandHandler with the facade and the UI."""
        self.facade = facade
        self.ui = ui

    async def handle_fold(self, sequence: str, output: Optional[Path] = None, model: Optional[str] = None) -> bool:
        """Handles the 'fold' command (single-chain structure prediction).

        ``model`` picks esmfold (default), openfold2 or alphafold2.
        """
        logger.info(f"Handling 'fold' command for a sequence of {len(sequence)} characters (model={model or 'default'})")
        request = JobRequest(kind=JobKind.STRUCTURE_PREDICTION, payload={"sequence": sequence}, model=model)
        return await self._run(request, output)

    async def handle_multimer(self, sequences: Sequence[str], output: Optional[Path] = None,
                              options: Optional[Dict[str, Any]] = None) -> bool:
        """Handles the 'multimer' command."""
        logger.info(f"Handling 'multimer' command for {len(sequences)} sequence(s)")
        payload: Dict[str, Any] = {"sequences": list(sequences)}
        payload.update({key: value for key, value in (options or {}).items() if value is not None})
        request = JobRequest(kind=JobKind.MULTIMER_PREDICTION, payload=payload)
        return await self._run(request, output)

    async def handle_generate(self, smiles: str, output: Optional[Path] = None,
                              options: Optional[Dict[str, Any]] = None) -> bool:
        """Handles the 'generate' command (molecule generation from a seed)."""
        logger.info("Handling 'generate' command")
        payload: Dict[str, Any] = {"smiles": smiles}
        payload.update({key: value for key, value in (options or {}).items() if value is not None})
        request = JobRequest(kind=JobKind.MOLECULE_GENERATION, payload=payload)
        return await self._run(request, output)

    async def handle_status(self, request_id: str, kind: str, output: Optional[Path] = None,
                            model: Optional[str] = None) -> bool:
        """Handles the 'status' command: resumes polling a previously accepted job."""
        logger.info(f"Handling 'status' command for job {request_id} ({kind})")
        try:
            job_kind = JobKind.parse(kind)
        except ValueError as e:
            self.ui.display_error(str(e))
            return False
        try:
            result = await self.facade.resume(request_id, job_kind, model=model)
        except BioQueueError as e:
            return self._report_error(e)
        return self._report_result(result, output)

    # --- helpers ---

    async def _run(self, request: JobRequest, output: Optional[Path]) -> bool:
        try:
            result = await self.facade.run(request)
        except BioQueueError as e:
            return self._report_error(e)
        return self._report_result(result, output)

    def _report_error(self, error: BioQueueError) -> bool:
        logger.error(f"Job failed with {error.kind}: {error.message}")
        if error.diagnostic is not None:
            logger.debug(f"Diagnostic: {error.diagnostic}")
        self.ui.display_error(describe_error(error))
        return False

    def _report_result(self, result: JobResult, output: Optional[Path]) -> bool:
        if not result.succeeded:
            label = f"Job {result.request_id}" if result.request_id else "Job"
            detail = f": {result.raw_diagnostic}" if result.raw_diagnostic is not None else ""
            self.ui.display_error(f"{label} failed upstream{detail}")
            return False

        for warning in result.warnings:
            self.ui.display_warning(self._warning_text(warning))
        self.ui.display_result(result)

        if output is not None:
            try:
                output.parent.mkdir(parents=True, exist_ok=True)
                output.write_text(render_artifact(result), encoding="utf-8")
            except OSError as e:
                logger.error(f"Failed to write {output}: {e}", exc_info=True)
                self.ui.display_error(f"Could not write output file {output}: {e}")
                return False
            self.ui.display_info(f"Artifact written to {output}")
        return True

    @staticmethod
    def _warning_text(warning: str) -> str:
        messages: Dict[str, str] = {
            "sparse_structure": "The returned structure has very few atom records; it may be incomplete.",
        }
        return messages.get(warning, warning)
