"""
pos_rotation/providers/__init__.py - Abstract base class for POS providers.

Each provider knows how to:
  1. Renew an access token from the location's API credentials
  2. Validate a freshly issued token with a cheap authenticated call
"""
from abc import ABC, abstractmethod

from pos_rotation.classifier import classify_status
from pos_rotation.models import ProviderCredentials, TokenGrant


class ProviderCallError(Exception):
    """
    A renew or validate call did not produce a usable result.

    Carries the HTTP status (None for transport failures) and the error
    category used for circuit breaker accounting. Messages never include
    request bodies or token values.
    """

    def __init__(self, step: str, message: str, status: int | None = None, category: str | None = None) -> None:
        self.step = step
        self.status = status
        self.category = category or classify_status(status).category
        super().__init__(f"{step} failed: {message} ({self.category})")


class PosProvider(ABC):
    """Abstract interface for POS provider token management."""

    name: str = ""

    @abstractmethod
    def renew(self, credentials: ProviderCredentials) -> TokenGrant:
        """
        Exchange API credentials for a new access token.

        Raises:
            ProviderCallError: On timeout, transport failure, non-2xx status,
                or a response without an access token.
        """
        ...

    @abstractmethod
    def validate(self, access_token: str, env: str) -> None:
        """
        Prove the token works with an authenticated call. The payload is discarded.

        Raises:
            ProviderCallError: Same conditions as renew().
        """
        ...


def get_provider(provider_name: str, settings=None) -> PosProvider:
    if provider_name == "fudo":
        from pos_rotation.providers.fudo import FudoProvider
        if settings is None:
            return FudoProvider()
        return FudoProvider(
            base_url=settings.fudo_api_url,
            renew_timeout=settings.renew_timeout_seconds,
            validate_timeout=settings.validate_timeout_seconds,
        )
    raise ValueError(f"Unknown provider: {provider_name}. Use 'fudo'.")
