import logging
from typing import Any, List, Optional

from rich.box import HEAVY, ROUNDED, SIMPLE
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from bioqueue.core.services.result_extractor import count_structure_records
from bioqueue.domain.interfaces.user_interface import UserInterface
from bioqueue.domain.models.job import GeneratedItem, JobResult

logger = logging.getLogger(__name__)

PREVIEW_LINES = 5
MAX_ITEMS_SHOWN = 25


class ConsoleDisplay(UserInterface):
    """Concrete implementation of UserInterface using the rich library for console output."""

    def __init__(self, console: Optional[Console] = None):
        """Initializes the rich Console."""
        self._console = console or Console()

    @property
    def console(self) -> Console:
        """Get the Rich console instance for direct operations."""
        return self._console

    def display_result(self, result: JobResult, **kwargs: Any) -> None:
        """Displays a finished job: a summary panel, then scores and generated items.

        Args:
            result: The job result to render.
            **kwargs: Additional arguments including:
                - max_items: How many generated items to list (default: 25)
                - preview_lines: How many document lines to preview (default: 5)
        """
        max_items = kwargs.get("max_items", MAX_ITEMS_SHOWN)
        preview_lines = kwargs.get("preview_lines", PREVIEW_LINES)
        logger.debug(f"display_result called: kind={result.kind.value}, status={result.status.value}")

        summary = Text()
        summary.append("Kind: ", style="bold")
        summary.append(f"{result.kind.value}\n")
        if result.request_id:
            summary.append("Request id: ", style="bold")
            summary.append(f"{result.request_id}\n")

        if isinstance(result.artifact, list):
            summary.append("Generated items: ", style="bold")
            summary.append(f"{len(result.artifact)}")
        elif result.artifact:
            lines = result.artifact.splitlines()
            summary.append("Atom records: ", style="bold")
            summary.append(f"{count_structure_records(result.artifact)} ({len(lines)} lines)\n")
            summary.append("\n".join(lines[:preview_lines]), style="dim")

        self.console.print(Panel(
            summary,
            title="[bold green]Job completed[/bold green]",
            title_align="left",
            border_style="green",
            box=ROUNDED,
            padding=(0, 1),
        ))

        if result.scores:
            self.console.print(self._scores_table(result))
        if isinstance(result.artifact, list):
            self.console.print(self._items_table(result.artifact, max_items))

    @staticmethod
    def _scores_table(result: JobResult) -> Table:
        table = Table(title="Scores", box=SIMPLE, show_header=True, header_style="bold cyan")
        table.add_column("Score")
        table.add_column("Value", justify="right")
        for name, value in sorted(result.scores.items()):
            table.add_row(name, f"{value:.3f}")
        return table

    @staticmethod
    def _items_table(items: List[GeneratedItem], max_items: int) -> Table:
        caption = f"{len(items) - max_items} more not shown" if len(items) > max_items else None
        table = Table(title="Generated molecules", caption=caption, box=SIMPLE, header_style="bold cyan")
        table.add_column("#", justify="right", style="dim")
        table.add_column("SMILES", overflow="fold")
        table.add_column("Score", justify="right")
        for index, item in enumerate(items[:max_items], start=1):
            table.add_row(str(index), item.representation, "-" if item.score is None else f"{item.score:.3f}")
        return table

    def display_error(self, error_message: str, **kwargs: Any) -> None:
        """Displays an error message in a distinct style.

        Args:
            error_message: The error message to display.
        """
        panel = Panel(
            Text(error_message, style="white"),
            title="[bold red]Error[/bold red]",
            border_style="red",
            box=HEAVY,
            padding=(0, 1)
        )
        self.console.print(panel)

    def display_info(self, info_message: str, **kwargs: Any) -> None:
        panel = Panel(
            Text(info_message, style="white"),
            title="[bold blue]Info[/bold blue]",
            border_style="blue",
            box=SIMPLE,
            padding=(0, 1)
        )
        self.console.print(panel)

    def display_warning(self, warning_message: str, **kwargs: Any) -> None:
        """Displays a warning message in yellow."""
        logger.warning(f"Display warning: {warning_message}")
        panel = Panel(
            Text(warning_message, style="white"),
            title="[bold yellow]Warning[/bold yellow]",
            border_style="yellow",
            box=HEAVY,
            padding=(0, 1)
        )
        self.console.print(panel)
