"""Exception hierarchy for dependents discovery.

Everything raised by the gateway and the discovery pipeline inherits from
DiscoveryError, so callers can catch the family or a single class.
"""

from datetime import datetime
from typing import Optional


class DiscoveryError(Exception):
    """Base exception for all discovery errors."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class NotFoundError(DiscoveryError):
    """Repository, directory or manifest does not exist on the provider."""


class RepositoryNotFoundError(NotFoundError):
    """The repository a discovery run was started for does not exist."""


class RateLimitError(DiscoveryError):
    """Provider quota is exhausted, either known up front or signalled by a 403/429."""

    def __init__(self, message: str = "", *, reset_at: Optional[datetime] = None) -> None:
        super().__init__(message, retryable=True)
        self.reset_at = reset_at


class ManifestParseError(DiscoveryError):
    """A manifest could not be decoded or parsed."""


class TransportError(DiscoveryError):
    """Network failure talking to the provider."""


class ProviderError(DiscoveryError):
    """Unexpected non-success response from the provider."""

    def __init__(self, message: str = "", *, status_code: int = 0) -> None:
        super().__init__(message, retryable=status_code >= 500)
        self.status_code = status_code
