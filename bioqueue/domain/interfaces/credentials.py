"""Interface for supplying upstream credentials.

The core pipeline asks for a bearer token per job kind and never logs or
stores it.
"""

import abc
from typing import Sequence

from bioqueue.domain.models.common import ApiKey
from bioqueue.domain.models.job import JobKind


class CredentialProvider(abc.ABC):
    """Abstract Base Class for credential lookup."""

    @abc.abstractmethod
    def get_api_key(self, kind: JobKind, key_names: Sequence[str] = ()) -> ApiKey:
        """Returns the bearer token to use for jobs of ``kind``.

        Args:
            kind: The job kind being submitted or polled.
            key_names: Configuration keys that may hold the token, most
                preferred first (taken from the job's descriptor).

        Raises:
            ConfigurationError: If no credential is configured for the kind.
        """
        pass
