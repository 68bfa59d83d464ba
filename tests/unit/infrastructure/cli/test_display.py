import io

import pytest
from rich.console import Console

from bioqueue.domain.models.job import GeneratedItem, JobKind, JobResult, JobStatus
from bioqueue.infrastructure.cli.display import ConsoleDisplay

from conftest import pdb_document


@pytest.fixture
def buffer():
    return io.StringIO()


@pytest.fixture
def console_display(buffer):
    """ConsoleDisplay writing plain text into a buffer."""
    return ConsoleDisplay(console=Console(file=buffer, width=120, color_system=None))


def test_display_structure_result(console_display, buffer):
    result = JobResult(
        status=JobStatus.COMPLETED,
        kind=JobKind.STRUCTURE_PREDICTION,
        artifact=pdb_document(12),
        scores={"plddt": 87.25},
        request_id="abc123",
    )

    console_display.display_result(result)

    output = buffer.getvalue()
    assert "Job completed" in output
    assert "abc123" in output
    assert "Atom records: 12" in output
    assert "plddt" in output and "87.250" in output


def test_display_generated_items(console_display, buffer):
    items = [GeneratedItem(f"C{'C' * i}O", 0.1 * i) for i in range(4)]
    result = JobResult(status=JobStatus.COMPLETED, kind=JobKind.MOLECULE_GENERATION, artifact=items)

    console_display.display_result(result, max_items=2)

    output = buffer.getvalue()
    assert "Generated items: 4" in output
    assert "CO" in output and "CCO" in output
    assert "CCCO" not in output
    assert "2 more not shown" in output


def test_display_error(console_display, buffer):
    console_display.display_error("Something went wrong")
    output = buffer.getvalue()
    assert "Error" in output
    assert "Something went wrong" in output


def test_display_warning(console_display, buffer):
    console_display.display_warning("Structure looks sparse")
    output = buffer.getvalue()
    assert "Warning" in output
    assert "Structure looks sparse" in output


def test_display_info(console_display, buffer):
    console_display.display_info("Artifact written to out.pdb")
    assert "Artifact written to out.pdb" in buffer.getvalue()
