"""
pos_rotation/models.py - Typed records passed between the job and its collaborators.

One record per store operation and per provider call. None of them ever hold
raw token values: attempts carry a fingerprint instead.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class BreakerStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    IDEMPOTENT = "idempotent"


class AttemptStage(str, Enum):
    """Step of the per-candidate state machine an attempt last entered."""
    PENDING = "pending"
    RENEWING = "renewing"
    VALIDATING = "validating"
    SWAPPING = "swapping"
    DONE = "done"


class OperationResult(str, Enum):
    TOKEN_UPDATED = "token_updated"
    NO_CHANGE_NEEDED = "no_change_needed"


class CredentialStatus(str, Enum):
    CONNECTED = "connected"
    PENDING = "pending"
    INVALID = "invalid"


class HeartbeatStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    FAILED = "failed"


GLOBAL_SCOPE_KEY = "global"


@dataclass(frozen=True)
class BreakerScope:
    """Either the global scope or a (location, provider) pair."""
    location_id: str | None = None
    provider: str | None = None

    @classmethod
    def global_scope(cls) -> "BreakerScope":
        return cls()

    @classmethod
    def for_location(cls, location_id: str, provider: str) -> "BreakerScope":
        return cls(location_id=location_id, provider=provider)

    @property
    def is_global(self) -> bool:
        return self.location_id is None

    @property
    def key(self) -> str:
        if self.is_global:
            return GLOBAL_SCOPE_KEY
        return f"location:{self.location_id}:{self.provider}"


@dataclass(frozen=True)
class BreakerSnapshot:
    """Persisted breaker row, as read from or written to the store."""
    state: BreakerStatus = BreakerStatus.CLOSED
    failure_count: int = 0
    window_start: datetime | None = None
    resume_at: datetime | None = None
    version: int = 0


@dataclass(frozen=True)
class BreakerState:
    """Answer of a breaker check."""
    state: BreakerStatus
    allowed: bool
    test_mode: bool = False
    resume_at: datetime | None = None
    failure_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "allowed": self.allowed,
            "test_mode": self.test_mode,
            "resume_at": self.resume_at.isoformat() if self.resume_at else None,
            "failure_count": self.failure_count,
        }


@dataclass(frozen=True)
class Candidate:
    """A leased credential due for rotation."""
    location_id: str
    provider: str
    encrypted_secret_ref: str


@dataclass(frozen=True)
class ProviderCredentials:
    """Decrypted credential material. Lives in memory only."""
    api_key: str
    api_secret: str
    env: str = "staging"

    def __repr__(self) -> str:
        return f"ProviderCredentials(api_key=<redacted>, api_secret=<redacted>, env={self.env!r})"


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: int | None = None

    def __repr__(self) -> str:
        return f"TokenGrant(access_token=<redacted>, expires_in={self.expires_in!r})"


@dataclass(frozen=True)
class SwapResult:
    operation_result: OperationResult
    rows_affected: int
    token_id: str | None
    is_idempotent: bool


@dataclass
class RotationAttempt:
    location_id: str
    rotation_id: str
    provider: str
    started_at: int
    status: AttemptStatus = AttemptStatus.PENDING
    stage: AttemptStage = AttemptStage.PENDING
    completed_at: int | None = None
    error: str | None = None
    error_category: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> int | None:
        if self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "location_id": self.location_id,
            "rotation_id": self.rotation_id,
            "provider": self.provider,
            "status": self.status.value,
            "stage": self.stage.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "error_category": self.error_category,
            "metadata": dict(self.metadata),
        }


@dataclass
class RotationResult:
    total_candidates: int = 0
    processed: int = 0
    successes: int = 0
    failures: int = 0
    idempotent_hits: int = 0
    circuit_breaker_blocked: int = 0
    attempts: list[RotationAttempt] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = self.counters()
        data["attempts"] = [a.to_dict() for a in self.attempts]
        return data

    def counters(self) -> dict[str, int]:
        return {
            "total_candidates": self.total_candidates,
            "processed": self.processed,
            "successes": self.successes,
            "failures": self.failures,
            "idempotent_hits": self.idempotent_hits,
            "circuit_breaker_blocked": self.circuit_breaker_blocked,
        }


@dataclass(frozen=True)
class JobOutcome:
    """What the trigger returns to its caller: HTTP status plus JSON body."""
    status_code: int
    body: dict[str, Any]


@dataclass(frozen=True)
class FailingCredential:
    location_id: str
    provider: str
    consecutive_failures: int
    last_rotation_id: str | None
    last_error: str | None


@dataclass(frozen=True)
class CredentialStatusRow:
    location_id: str
    provider: str
    status: str
    expires_at: datetime | None
    last_rotated_at: datetime | None
    consecutive_failures: int
    next_attempt_at: datetime | None


@dataclass(frozen=True)
class BreakerRow:
    scope_key: str
    state: BreakerStatus
    failure_count: int
    resume_at: datetime | None
    updated_at: datetime | None
