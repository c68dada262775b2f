"""
Fanbatch-specific exceptions.

Only validation errors escape the public entry points. Everything else is
recorded on the affected job and reported in-band.
"""

from __future__ import annotations


class FanbatchError(Exception):
    """Base class for all fanbatch errors."""


class BatchValidationError(FanbatchError, ValueError):
    """Raised synchronously, before any network call, when a request is malformed."""


class UnknownProviderError(BatchValidationError):
    """Raised when a provider id has no registered adapter."""

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Provider {provider_id} is not supported for batch jobs.")
        self.provider_id = provider_id


class UnsupportedSubmissionError(FanbatchError):
    """Raised when a provider cannot accept a batch through the requested method."""


class ProviderNotConfiguredError(FanbatchError):
    """Raised when provider credentials are missing."""


class ProviderResponseError(FanbatchError):
    """Raised when a provider answers successfully but without a field we depend on."""


class ResultsUnavailableError(FanbatchError):
    """Raised when results are requested for a batch that has none to offer yet."""
