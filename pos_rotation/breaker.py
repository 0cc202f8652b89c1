"""
pos_rotation/breaker.py - Circuit breaker transitions and the two-level gate.

State machine, evaluated independently per scope:

    closed    --threshold failures within window-->  open (resume_at = now + cooldown)
    open      --check at/after resume_at-->          half-open
    half-open --success-->                           closed (counters reset)
    half-open --failure-->                           open (resume_at = now + cooldown)

The transition functions are pure: they take the persisted snapshot and
return the next one. Persistence is the store's job, done as a single-row
compare-and-set on the snapshot version so that concurrent job invocations
never need an in-process lock.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from pos_rotation.models import (
    BreakerScope,
    BreakerSnapshot,
    BreakerState,
    BreakerStatus,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BreakerPolicy:
    threshold: int = 10
    window: timedelta = timedelta(minutes=15)
    cooldown: timedelta = timedelta(minutes=30)

    @classmethod
    def from_settings(cls, settings) -> "BreakerPolicy":
        return cls(
            threshold=settings.cb_threshold,
            window=timedelta(minutes=settings.cb_window_minutes),
            cooldown=timedelta(minutes=settings.cb_cooldown_minutes),
        )


def on_check(snapshot: BreakerSnapshot, now: datetime) -> BreakerSnapshot:
    """Open breakers whose cooldown has elapsed move to half-open."""
    if snapshot.state == BreakerStatus.OPEN and (
        snapshot.resume_at is None or now >= snapshot.resume_at
    ):
        return replace(snapshot, state=BreakerStatus.HALF_OPEN)
    return snapshot


def on_success(snapshot: BreakerSnapshot, now: datetime, policy: BreakerPolicy) -> BreakerSnapshot:
    if snapshot.state == BreakerStatus.HALF_OPEN:
        return replace(
            snapshot,
            state=BreakerStatus.CLOSED,
            failure_count=0,
            window_start=None,
            resume_at=None,
        )
    # A success while closed leaves the rolling window alone; a late success
    # while open does not shorten the cooldown.
    return snapshot


def on_failure(snapshot: BreakerSnapshot, now: datetime, policy: BreakerPolicy) -> BreakerSnapshot:
    if snapshot.state == BreakerStatus.HALF_OPEN:
        return replace(
            snapshot,
            state=BreakerStatus.OPEN,
            failure_count=snapshot.failure_count + 1,
            resume_at=now + policy.cooldown,
        )

    if snapshot.state == BreakerStatus.OPEN:
        return replace(snapshot, failure_count=snapshot.failure_count + 1)

    if snapshot.window_start is None or now - snapshot.window_start > policy.window:
        failure_count, window_start = 1, now
    else:
        failure_count, window_start = snapshot.failure_count + 1, snapshot.window_start

    if failure_count >= policy.threshold:
        return replace(
            snapshot,
            state=BreakerStatus.OPEN,
            failure_count=failure_count,
            window_start=window_start,
            resume_at=now + policy.cooldown,
        )
    return replace(snapshot, failure_count=failure_count, window_start=window_start)


def to_state(snapshot: BreakerSnapshot) -> BreakerState:
    """Translate a (post-check) snapshot into the gate's answer."""
    if snapshot.state == BreakerStatus.OPEN:
        return BreakerState(
            state=BreakerStatus.OPEN,
            allowed=False,
            resume_at=snapshot.resume_at,
            failure_count=snapshot.failure_count,
        )
    if snapshot.state == BreakerStatus.HALF_OPEN:
        return BreakerState(
            state=BreakerStatus.HALF_OPEN,
            allowed=True,
            test_mode=True,
            resume_at=snapshot.resume_at,
            failure_count=snapshot.failure_count,
        )
    return BreakerState(
        state=BreakerStatus.CLOSED,
        allowed=True,
        failure_count=snapshot.failure_count,
    )


class CircuitBreakerGate:
    """Global and per-location breaker checks backed by a RotationStore."""

    def __init__(self, store, provider: str) -> None:
        self._store = store
        self._provider = provider

    def check_global(self) -> BreakerState:
        return self._store.check_breaker(BreakerScope.global_scope())

    def check_location(self, location_id: str) -> BreakerState:
        return self._store.check_breaker(BreakerScope.for_location(location_id, self._provider))

    def record_success(self, location_id: str) -> None:
        """Close out a success at both scopes."""
        self._store.record_breaker_success(BreakerScope.global_scope())
        self._store.record_breaker_success(BreakerScope.for_location(location_id, self._provider))

    def record_failure(self, location_id: str) -> BreakerState:
        """Count a breaker-affecting failure at both scopes; returns the global state."""
        global_state = self._store.record_breaker_failure(BreakerScope.global_scope())
        location_state = self._store.record_breaker_failure(
            BreakerScope.for_location(location_id, self._provider)
        )
        if location_state.state == BreakerStatus.OPEN:
            log.warning(f"[CB LOCATION] Breaker opened for location {location_id} until {location_state.resume_at}")
        if global_state.state == BreakerStatus.OPEN:
            log.warning(f"[CB GLOBAL] Global breaker opened until {global_state.resume_at}")
        return global_state
