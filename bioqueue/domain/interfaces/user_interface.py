"""Interface for presenting job progress and results to the user.

Allows different UI implementations (console, silent, test doubles).
"""

import abc
from typing import Any

from bioqueue.domain.models.job import JobResult


class UserInterface(abc.ABC):
    """Abstract Base Class for user interaction."""

    @abc.abstractmethod
    def display_result(self, result: JobResult, **kwargs: Any) -> None:
        """Displays a finished job result (artifact summary, scores, warnings).

        Args:
            result: The job result to render.
            **kwargs: Additional arguments for formatting.
        """
        pass

    @abc.abstractmethod
    def display_error(self, error_message: str, **kwargs: Any) -> None:
        """Displays an error message to the user."""
        pass

    @abc.abstractmethod
    def display_warning(self, warning_message: str, **kwargs: Any) -> None:
        """Displays a warning message to the user."""
        pass

    @abc.abstractmethod
    def display_info(self, info_message: str, **kwargs: Any) -> None:
        """Displays an informational message to the user."""
        pass
