from datetime import timedelta
from unittest.mock import patch

import pytest
import sqlalchemy as sa

from pos_rotation.models import BreakerScope, BreakerStatus, OperationResult
from pos_rotation.store import CredentialNotFoundError, StoreError
from pos_rotation.store.schema import circuit_breakers, job_heartbeats, pos_credentials, rotation_ledger
from pos_rotation.store.sql_store import SqlRotationStore

COOLDOWN = timedelta(hours=4)
GLOBAL = BreakerScope.global_scope()


def credential_row(engine, location_id, provider="fudo"):
    with engine.connect() as conn:
        return conn.execute(
            sa.select(pos_credentials).where(
                pos_credentials.c.location_id == location_id,
                pos_credentials.c.provider == provider,
            )
        ).mappings().one()


# ============================================================================
# Leasing
# ============================================================================

def test_lease_claims_due_credentials_once_per_cooldown(store, provision, clock):
    provision("loc-1")
    provision("loc-2")

    first = store.lease_candidates("fudo", 50, COOLDOWN)
    assert sorted(c.location_id for c in first) == ["loc-1", "loc-2"]
    assert store.lease_candidates("fudo", 50, COOLDOWN) == []

    clock.advance(hours=4, minutes=1)
    assert len(store.lease_candidates("fudo", 50, COOLDOWN)) == 2


def test_lease_stamps_last_attempt(store, provision, engine, clock):
    provision("loc-1")
    store.lease_candidates("fudo", 50, COOLDOWN)
    stamped = credential_row(engine, "loc-1")["last_attempt_at"]
    assert stamped.replace(tzinfo=None) == clock.now.replace(tzinfo=None)


def test_lease_respects_limit(store, provision):
    for i in range(5):
        provision(f"loc-{i}")
    assert len(store.lease_candidates("fudo", 2, COOLDOWN)) == 2
    assert len(store.lease_candidates("fudo", 50, COOLDOWN)) == 3


def test_lease_skips_ineligible_credentials(store, provision, clock):
    provision("invalid", status="invalid")
    provision("other-provider", provider="maxirest")
    provision("fresh", expires_at=clock.now + timedelta(hours=48))
    provision("expiring", expires_at=clock.now + timedelta(hours=2))

    leased = store.lease_candidates("fudo", 50, COOLDOWN)
    assert [c.location_id for c in leased] == ["expiring"]
    assert leased[0].provider == "fudo"


def test_lease_waits_for_failure_backoff(store, provision, clock):
    provision("loc-1")
    store.record_attempt_failure(
        "loc-1", "fudo", "rot-1", "network", timedelta(hours=6), timedelta(hours=24)
    )
    clock.advance(hours=5)
    assert store.lease_candidates("fudo", 50, COOLDOWN) == []
    clock.advance(hours=1)
    assert len(store.lease_candidates("fudo", 50, COOLDOWN)) == 1


# ============================================================================
# Circuit breaker rows
# ============================================================================

def test_unknown_scope_reads_closed_without_creating_a_row(store):
    state = store.check_breaker(GLOBAL)
    assert state.state == BreakerStatus.CLOSED and state.allowed
    store.record_breaker_success(GLOBAL)
    assert store.list_breakers() == []


def test_breaker_lifecycle(store, clock, settings):
    for _ in range(settings.cb_threshold):
        state = store.record_breaker_failure(GLOBAL)
    assert state.state == BreakerStatus.OPEN
    assert state.resume_at == clock.now + timedelta(minutes=settings.cb_cooldown_minutes)

    assert not store.check_breaker(GLOBAL).allowed

    clock.advance(minutes=settings.cb_cooldown_minutes)
    half = store.check_breaker(GLOBAL)
    assert half.state == BreakerStatus.HALF_OPEN
    assert half.allowed and half.test_mode
    # The transition is persisted, not just reported.
    assert store.list_breakers()[0].state == BreakerStatus.HALF_OPEN

    closed = store.record_breaker_success(GLOBAL)
    assert closed.state == BreakerStatus.CLOSED
    assert store.list_breakers()[0].failure_count == 0


def test_breaker_state_column_values(store, engine, clock, settings):
    for _ in range(settings.cb_threshold):
        store.record_breaker_failure(GLOBAL)
    clock.advance(minutes=settings.cb_cooldown_minutes)
    store.check_breaker(GLOBAL)

    with engine.connect() as conn:
        state = conn.execute(sa.select(circuit_breakers.c.state)).scalar_one()
    assert state == "half-open"


def test_half_open_failure_reopens(store, clock, settings):
    for _ in range(settings.cb_threshold):
        store.record_breaker_failure(GLOBAL)
    clock.advance(minutes=45)
    store.check_breaker(GLOBAL)

    reopened = store.record_breaker_failure(GLOBAL)
    assert reopened.state == BreakerStatus.OPEN
    assert reopened.resume_at == clock.now + timedelta(minutes=settings.cb_cooldown_minutes)


def test_scopes_are_independent(store, settings):
    location = BreakerScope.for_location("loc-1", "fudo")
    for _ in range(settings.cb_threshold):
        store.record_breaker_failure(location)

    assert not store.check_breaker(location).allowed
    assert store.check_breaker(GLOBAL).allowed
    assert store.check_breaker(BreakerScope.for_location("loc-2", "fudo")).allowed
    assert [b.scope_key for b in store.list_breakers()] == ["location:loc-1:fudo"]


def test_breaker_write_gives_up_after_repeated_lost_races(store):
    store.record_breaker_failure(GLOBAL)
    with patch.object(SqlRotationStore, "_compare_and_set", return_value=False) as cas:
        with pytest.raises(StoreError) as exc:
            store.record_breaker_failure(GLOBAL)
    assert exc.value.transient
    assert cas.call_count == 5


# ============================================================================
# Atomic swap
# ============================================================================

def test_atomic_swap_updates_credential(store, provision, engine, clock):
    provision("loc-1")
    store.record_attempt_failure("loc-1", "fudo", "rot-0", "5xx", timedelta(minutes=15), timedelta(hours=24))
    expires_at = clock.now + timedelta(hours=1)

    result = store.atomic_swap("loc-1", "fudo", "rot-1", "ciphertext-1", expires_at)

    assert result.operation_result == OperationResult.TOKEN_UPDATED
    assert result.rows_affected == 1
    assert not result.is_idempotent
    row = credential_row(engine, "loc-1")
    assert row["encrypted_token"] == "ciphertext-1"
    assert row["token_id"] == result.token_id
    assert row["last_rotation_id"] == "rot-1"
    assert row["consecutive_failures"] == 0
    assert row["next_attempt_at"] is None
    assert row["last_error"] is None


def test_atomic_swap_replay_is_idempotent(store, provision, engine):
    provision("loc-1")
    first = store.atomic_swap("loc-1", "fudo", "rot-1", "ciphertext-1", None)
    replay = store.atomic_swap("loc-1", "fudo", "rot-1", "ciphertext-2", None)

    assert replay.is_idempotent
    assert replay.operation_result == OperationResult.NO_CHANGE_NEEDED
    assert replay.rows_affected == 0
    assert replay.token_id == first.token_id
    assert credential_row(engine, "loc-1")["encrypted_token"] == "ciphertext-1"


def test_atomic_swap_missing_credential_rolls_back(store, engine):
    with pytest.raises(CredentialNotFoundError):
        store.atomic_swap("ghost", "fudo", "rot-1", "ciphertext-1", None)
    with engine.connect() as conn:
        assert conn.execute(sa.select(sa.func.count()).select_from(rotation_ledger)).scalar() == 0


# ============================================================================
# Failure bookkeeping, heartbeats, read models
# ============================================================================

def test_record_attempt_failure_backs_off_exponentially(store, provision, engine, clock):
    provision("loc-1")
    base, cap = timedelta(minutes=15), timedelta(minutes=50)

    assert store.record_attempt_failure("loc-1", "fudo", "rot-1", "5xx", base, cap) == 1
    assert credential_row(engine, "loc-1")["next_attempt_at"].replace(tzinfo=None) == \
        (clock.now + timedelta(minutes=15)).replace(tzinfo=None)

    assert store.record_attempt_failure("loc-1", "fudo", "rot-2", "5xx", base, cap) == 2
    assert store.record_attempt_failure("loc-1", "fudo", "rot-3", "network", base, cap) == 3
    row = credential_row(engine, "loc-1")
    assert row["next_attempt_at"].replace(tzinfo=None) == (clock.now + cap).replace(tzinfo=None)
    assert row["last_error"] == "network"
    assert row["last_rotation_id"] == "rot-3"


def test_record_attempt_failure_unknown_credential(store):
    with pytest.raises(CredentialNotFoundError):
        store.record_attempt_failure("ghost", "fudo", "rot-1", "5xx", timedelta(minutes=1), timedelta(hours=1))


def test_update_heartbeat_upserts(store, engine):
    store.update_heartbeat("fudo_rotate_token", "healthy", {"processed": 1})
    store.update_heartbeat("fudo_rotate_token", "unhealthy", {"processed": 2})
    with engine.connect() as conn:
        rows = conn.execute(sa.select(job_heartbeats)).mappings().all()
    assert len(rows) == 1
    assert rows[0]["status"] == "unhealthy"
    assert rows[0]["metadata"] == {"processed": 2}


def test_list_failing_credentials(store, provision):
    provision("loc-1")
    provision("loc-2")
    provision("loc-3", status="invalid")
    for i in range(3):
        store.record_attempt_failure("loc-1", "fudo", f"rot-{i}", "5xx", timedelta(minutes=1), timedelta(hours=1))
        store.record_attempt_failure("loc-3", "fudo", f"rot-{i}", "5xx", timedelta(minutes=1), timedelta(hours=1))
    store.record_attempt_failure("loc-2", "fudo", "rot-x", "5xx", timedelta(minutes=1), timedelta(hours=1))

    failing = store.list_failing_credentials(3)
    assert [(f.location_id, f.consecutive_failures, f.last_rotation_id) for f in failing] == [
        ("loc-1", 3, "rot-2"),
    ]


def test_list_credentials_filters_by_provider(store, provision):
    provision("loc-1")
    provision("loc-2", provider="maxirest")
    assert [r.location_id for r in store.list_credentials()] == ["loc-1", "loc-2"]
    assert [r.location_id for r in store.list_credentials("fudo")] == ["loc-1"]


def test_from_url_reports_bad_urls_as_store_errors():
    with pytest.raises(StoreError, match="connect failed"):
        SqlRotationStore.from_url("not a database url")


def test_create_schema_failure_is_a_store_error(tmp_path):
    with pytest.raises(StoreError, match="create_schema failed"):
        SqlRotationStore.from_url(f"sqlite:///{tmp_path / 'missing' / 'rotation.db'}", create_schema=True)
