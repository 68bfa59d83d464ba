"""Credential provider backed by the configuration layer.

The job's descriptor lists the configuration keys that may hold its key, in
order of preference; the first non-empty one wins.
"""

import logging
from typing import Sequence

from bioqueue.domain.errors import ConfigurationError
from bioqueue.domain.interfaces.credentials import CredentialProvider
from bioqueue.domain.models.common import ApiKey
from bioqueue.domain.models.job import JobKind
from bioqueue.infrastructure.config.settings import get_first_config

logger = logging.getLogger(__name__)

# Used when the caller does not name any keys
FALLBACK_KEY_NAMES = ("NVCF_RUN_KEY", "NVIDIA_API_KEY")


class ConfigCredentialProvider(CredentialProvider):
    """Reads API keys from environment/.env/YAML via get_config."""

    def get_api_key(self, kind: JobKind, key_names: Sequence[str] = ()) -> ApiKey:
        names = tuple(key_names) or FALLBACK_KEY_NAMES
        key = get_first_config(names)
        if not key:
            logger.error(f"No API key configured for {kind.value} (looked for: {', '.join(names)}).")
            raise ConfigurationError(
                f"No API key configured for {kind.value}",
                diagnostic=f"Set one of: {', '.join(names)}",
            )
        return ApiKey(key)


class StaticCredentialProvider(CredentialProvider):
    """Uses a single key for every job kind."""

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("API key must not be empty")
        self._api_key = ApiKey(api_key)

    def get_api_key(self, kind: JobKind, key_names: Sequence[str] = ()) -> ApiKey:
        return self._api_key

    def __repr__(self) -> str:
        return "StaticCredentialProvider(api_key=***)"
