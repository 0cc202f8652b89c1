"""
pos_rotation/store/__init__.py - Abstract base class for the rotation data layer.

Every operation here must be atomic on its own at the database side. The job
process holds no locks: correctness across concurrent invocations depends only
on lease_candidates and the breaker writes being single conditional statements.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

from pos_rotation.models import (
    BreakerRow,
    BreakerScope,
    BreakerState,
    Candidate,
    CredentialStatusRow,
    FailingCredential,
    SwapResult,
)


class StoreError(Exception):
    """Raised when a data-layer operation fails."""

    def __init__(self, message: str, transient: bool = False) -> None:
        self.transient = transient
        super().__init__(message)


class CredentialNotFoundError(StoreError):
    """The (location, provider) credential row does not exist."""


class RotationStore(ABC):
    """Abstract interface for rotation state storage."""

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------

    @abstractmethod
    def check_breaker(self, scope: BreakerScope) -> BreakerState:
        """
        Read the breaker for a scope, moving it to half-open when its
        cooldown has elapsed. Unknown scopes are closed.
        """
        ...

    @abstractmethod
    def record_breaker_success(self, scope: BreakerScope) -> BreakerState:
        ...

    @abstractmethod
    def record_breaker_failure(self, scope: BreakerScope) -> BreakerState:
        """Count a failure; returns the state after the transition."""
        ...

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    @abstractmethod
    def lease_candidates(self, provider: str, limit: int, cooldown: timedelta) -> list[Candidate]:
        """
        Atomically claim up to `limit` credentials due for rotation.

        A claimed credential is not returned again until `cooldown` has
        passed, whatever the outcome of its attempt.
        """
        ...

    @abstractmethod
    def atomic_swap(
        self,
        location_id: str,
        provider: str,
        rotation_id: str,
        new_encrypted_secret: str,
        expires_at: datetime | None,
    ) -> SwapResult:
        """
        Store a renewed token, keyed by rotation id.

        Replaying a committed rotation id returns is_idempotent=True and
        writes nothing.

        Raises:
            CredentialNotFoundError: No credential row for (location, provider).
            StoreError: Any database failure; the transaction is rolled back.
        """
        ...

    @abstractmethod
    def record_attempt_failure(
        self,
        location_id: str,
        provider: str,
        rotation_id: str,
        error_category: str,
        backoff_base: timedelta,
        backoff_max: timedelta,
    ) -> int:
        """Bump consecutive failures and push next_attempt_at out; returns the new count."""
        ...

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @abstractmethod
    def record_metric(
        self,
        job_run_id: str,
        provider: str,
        metric_type: str,
        value: float | None = None,
        duration_ms: int | None = None,
        meta: dict[str, Any] | None = None,
        location_id: str | None = None,
    ) -> None:
        ...

    @abstractmethod
    def update_heartbeat(self, job_name: str, status: str, metadata: dict[str, Any]) -> None:
        ...

    # ------------------------------------------------------------------
    # Read models for the failure monitor and the dashboard
    # ------------------------------------------------------------------

    @abstractmethod
    def list_failing_credentials(self, threshold: int) -> list[FailingCredential]:
        ...

    @abstractmethod
    def list_credentials(self, provider: str | None = None) -> list[CredentialStatusRow]:
        ...

    @abstractmethod
    def list_breakers(self) -> list[BreakerRow]:
        ...


def get_store(database_url: str, **kwargs) -> RotationStore:
    from pos_rotation.store.sql_store import SqlRotationStore
    return SqlRotationStore.from_url(database_url, **kwargs)
