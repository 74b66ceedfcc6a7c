# helpers/errors.py
from typing import Optional


class CommError(Exception):
    """Base class for communication pipeline errors."""


class ProviderError(CommError):
    def __init__(self, message: str, *, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


class ProviderRejected(ProviderError):
    """The provider refused the request. Terminal and shown to the user as-is."""


class ProviderTransientError(ProviderError):
    """Timeout, connection failure or provider-side 5xx. Retryable by the sweeper."""


class ProviderNotConfigured(ProviderError):
    pass


class StageError(CommError):
    """A transcription/analysis stage failed. Terminal for that stage only."""


class OracleOutputError(StageError):
    """The AI oracle answered with something that is not the requested JSON shape."""


class UnknownProviderIdError(CommError):
    def __init__(self, kind: str, provider_id: Optional[str]):
        super().__init__(f"unknown {kind} provider id {provider_id!r}")
        self.kind = kind
        self.provider_id = provider_id
