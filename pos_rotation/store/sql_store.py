"""
pos_rotation/store/sql_store.py - RotationStore on SQLAlchemy Core.

PostgreSQL in production, SQLite for local runs and tests.

Atomicity, per operation:
  - lease_candidates: one UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED) RETURNING
  - breaker writes:   read, compute the pure transition, then UPDATE ... WHERE version = :read_version
                      (retried on a lost race, never held across calls)
  - atomic_swap:      one transaction: ledger lookup, ledger insert, credential update
"""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from pos_rotation import breaker
from pos_rotation.breaker import BreakerPolicy
from pos_rotation.models import (
    BreakerRow,
    BreakerScope,
    BreakerSnapshot,
    BreakerState,
    BreakerStatus,
    Candidate,
    CredentialStatus,
    CredentialStatusRow,
    FailingCredential,
    OperationResult,
    SwapResult,
)
from pos_rotation.store import CredentialNotFoundError, RotationStore, StoreError
from pos_rotation.store.schema import (
    circuit_breakers,
    job_heartbeats,
    metadata,
    pos_credentials,
    rotation_ledger,
    rotation_metrics,
)

log = logging.getLogger(__name__)

DEFAULT_CAS_RETRIES = 5
MAX_BACKOFF_EXPONENT = 16


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every value we write is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@contextmanager
def _db_errors(operation: str) -> Iterator[None]:
    """Translate SQLAlchemy errors. Only the exception class is reported: DBAPI
    messages echo bound parameters, which include ciphertexts."""
    try:
        yield
    except OperationalError as e:
        raise StoreError(f"{operation} failed: {type(e).__name__}", transient=True) from e
    except SQLAlchemyError as e:
        raise StoreError(f"{operation} failed: {type(e).__name__}") from e


class SqlRotationStore(RotationStore):

    def __init__(
        self,
        engine: Engine,
        policy: BreakerPolicy | None = None,
        expiry_buffer: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
        cas_retries: int = DEFAULT_CAS_RETRIES,
    ) -> None:
        self._engine = engine
        self._policy = policy or BreakerPolicy()
        self._expiry_buffer = expiry_buffer
        self._clock = clock
        self._cas_retries = cas_retries

    @classmethod
    def from_url(cls, database_url: str, create_schema: bool = False, **kwargs) -> "SqlRotationStore":
        with _db_errors("connect"):
            engine = sa.create_engine(database_url, pool_pre_ping=True)
        store = cls(engine, **kwargs)
        if create_schema:
            store.create_schema()
        return store

    def create_schema(self) -> None:
        with _db_errors("create_schema"):
            metadata.create_all(self._engine)

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------

    def check_breaker(self, scope: BreakerScope) -> BreakerState:
        with _db_errors("check_breaker"):
            return self._transition(scope, lambda snap, now: breaker.on_check(snap, now), create=False)

    def record_breaker_success(self, scope: BreakerScope) -> BreakerState:
        with _db_errors("record_breaker_success"):
            return self._transition(
                scope, lambda snap, now: breaker.on_success(snap, now, self._policy), create=False
            )

    def record_breaker_failure(self, scope: BreakerScope) -> BreakerState:
        with _db_errors("record_breaker_failure"):
            return self._transition(
                scope, lambda snap, now: breaker.on_failure(snap, now, self._policy), create=True
            )

    def _transition(
        self,
        scope: BreakerScope,
        step: Callable[[BreakerSnapshot, datetime], BreakerSnapshot],
        create: bool,
    ) -> BreakerState:
        key = scope.key
        if create:
            self._ensure_breaker_row(key)

        for _ in range(self._cas_retries):
            now = self._now()
            with self._engine.begin() as conn:
                current = self._read_breaker(conn, key)
                if current is None:
                    return breaker.to_state(BreakerSnapshot())
                proposed = step(current, now)
                if proposed == current:
                    return breaker.to_state(current)
                if self._compare_and_set(conn, key, current, proposed, now):
                    if proposed.state != current.state:
                        log.info(f"[CB] {key}: {current.state.value} -> {proposed.state.value}")
                    return breaker.to_state(proposed)
            log.debug(f"[CB] Lost compare-and-set race on {key}, retrying")

        raise StoreError(f"Breaker row {key} kept changing under concurrent writers", transient=True)

    def _ensure_breaker_row(self, key: str) -> None:
        try:
            with self._engine.begin() as conn:
                exists = conn.execute(
                    sa.select(circuit_breakers.c.scope_key).where(circuit_breakers.c.scope_key == key)
                ).first()
                if exists is None:
                    conn.execute(sa.insert(circuit_breakers).values(
                        scope_key=key,
                        state=BreakerStatus.CLOSED.value,
                        failure_count=0,
                        version=0,
                        updated_at=self._now(),
                    ))
        except IntegrityError:
            # Created by a concurrent invocation.
            pass

    @staticmethod
    def _read_breaker(conn: Connection, key: str) -> BreakerSnapshot | None:
        row = conn.execute(
            sa.select(circuit_breakers).where(circuit_breakers.c.scope_key == key)
        ).mappings().first()
        if row is None:
            return None
        return BreakerSnapshot(
            state=BreakerStatus(row["state"]),
            failure_count=row["failure_count"],
            window_start=_utc(row["window_start"]),
            resume_at=_utc(row["resume_at"]),
            version=row["version"],
        )

    @staticmethod
    def _compare_and_set(
        conn: Connection,
        key: str,
        current: BreakerSnapshot,
        proposed: BreakerSnapshot,
        now: datetime,
    ) -> bool:
        result = conn.execute(
            sa.update(circuit_breakers)
            .where(
                circuit_breakers.c.scope_key == key,
                circuit_breakers.c.version == current.version,
            )
            .values(
                state=proposed.state.value,
                failure_count=proposed.failure_count,
                window_start=proposed.window_start,
                resume_at=proposed.resume_at,
                version=current.version + 1,
                updated_at=now,
            )
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def lease_candidates(self, provider: str, limit: int, cooldown: timedelta) -> list[Candidate]:
        now = self._now()
        creds = pos_credentials
        due = (
            sa.select(creds.c.id)
            .where(
                creds.c.provider == provider,
                creds.c.status != CredentialStatus.INVALID.value,
                sa.or_(creds.c.last_attempt_at.is_(None), creds.c.last_attempt_at <= now - cooldown),
                sa.or_(creds.c.next_attempt_at.is_(None), creds.c.next_attempt_at <= now),
                sa.or_(creds.c.expires_at.is_(None), creds.c.expires_at <= now + self._expiry_buffer),
            )
            .order_by(creds.c.expires_at.asc().nulls_first(), creds.c.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            sa.update(creds)
            .where(creds.c.id.in_(due))
            .values(last_attempt_at=now)
            .returning(creds.c.location_id, creds.c.provider, creds.c.encrypted_secret_ref)
        )
        with _db_errors("lease_candidates"), self._engine.begin() as conn:
            rows = conn.execute(stmt).all()

        return [
            Candidate(location_id=row.location_id, provider=row.provider, encrypted_secret_ref=row.encrypted_secret_ref)
            for row in rows
        ]

    def atomic_swap(
        self,
        location_id: str,
        provider: str,
        rotation_id: str,
        new_encrypted_secret: str,
        expires_at: datetime | None,
    ) -> SwapResult:
        now = self._now()
        token_id = str(uuid.uuid4())
        creds = pos_credentials

        try:
            with self._engine.begin() as conn:
                committed = self._read_ledger(conn, rotation_id)
                if committed is not None:
                    return self._idempotent(committed)

                conn.execute(sa.insert(rotation_ledger).values(
                    rotation_id=rotation_id,
                    location_id=location_id,
                    provider=provider,
                    token_id=token_id,
                    committed_at=now,
                ))
                result = conn.execute(
                    sa.update(creds)
                    .where(creds.c.location_id == location_id, creds.c.provider == provider)
                    .values(
                        encrypted_token=new_encrypted_secret,
                        token_id=token_id,
                        expires_at=expires_at,
                        last_rotated_at=now,
                        last_rotation_id=rotation_id,
                        status=CredentialStatus.CONNECTED.value,
                        consecutive_failures=0,
                        next_attempt_at=None,
                        last_error=None,
                    )
                )
                if result.rowcount == 0:
                    raise CredentialNotFoundError(f"No {provider} credential for location {location_id}")
                rows_affected = result.rowcount
        except IntegrityError as e:
            # Same rotation id committed by a concurrent replay between our lookup and insert.
            with _db_errors("atomic_swap"), self._engine.connect() as conn:
                committed = self._read_ledger(conn, rotation_id)
            if committed is not None:
                return self._idempotent(committed)
            raise StoreError(f"atomic_swap failed: {type(e).__name__}") from e
        except OperationalError as e:
            raise StoreError(f"atomic_swap failed: {type(e).__name__}", transient=True) from e
        except SQLAlchemyError as e:
            raise StoreError(f"atomic_swap failed: {type(e).__name__}") from e

        return SwapResult(
            operation_result=OperationResult.TOKEN_UPDATED,
            rows_affected=rows_affected,
            token_id=token_id,
            is_idempotent=False,
        )

    @staticmethod
    def _read_ledger(conn: Connection, rotation_id: str):
        return conn.execute(
            sa.select(rotation_ledger).where(rotation_ledger.c.rotation_id == rotation_id)
        ).first()

    @staticmethod
    def _idempotent(committed) -> SwapResult:
        return SwapResult(
            operation_result=OperationResult.NO_CHANGE_NEEDED,
            rows_affected=0,
            token_id=committed.token_id,
            is_idempotent=True,
        )

    def record_attempt_failure(
        self,
        location_id: str,
        provider: str,
        rotation_id: str,
        error_category: str,
        backoff_base: timedelta,
        backoff_max: timedelta,
    ) -> int:
        now = self._now()
        creds = pos_credentials
        where = (creds.c.location_id == location_id, creds.c.provider == provider)

        with _db_errors("record_attempt_failure"), self._engine.begin() as conn:
            previous = conn.execute(sa.select(creds.c.consecutive_failures).where(*where)).scalar()
            if previous is None:
                raise CredentialNotFoundError(f"No {provider} credential for location {location_id}")
            failures = previous + 1
            delay = min(backoff_base * (2 ** min(failures - 1, MAX_BACKOFF_EXPONENT)), backoff_max)
            conn.execute(
                sa.update(creds)
                .where(*where)
                .values(
                    consecutive_failures=creds.c.consecutive_failures + 1,
                    next_attempt_at=now + delay,
                    last_rotation_id=rotation_id,
                    last_error=error_category[:255],
                )
            )
        return failures

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

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
        with _db_errors("record_metric"), self._engine.begin() as conn:
            conn.execute(sa.insert(rotation_metrics).values(
                job_run_id=job_run_id,
                provider=provider,
                location_id=location_id,
                metric_type=metric_type,
                value=value,
                duration_ms=duration_ms,
                meta=meta or {},
                recorded_at=self._now(),
            ))

    def update_heartbeat(self, job_name: str, status: str, metadata: dict[str, Any]) -> None:
        values = {"status": status, "last_run_at": self._now(), "metadata": metadata}
        update = sa.update(job_heartbeats).where(job_heartbeats.c.job_name == job_name).values(**values)
        with _db_errors("update_heartbeat"):
            try:
                with self._engine.begin() as conn:
                    if conn.execute(update).rowcount == 0:
                        conn.execute(sa.insert(job_heartbeats).values(job_name=job_name, **values))
            except IntegrityError:
                with self._engine.begin() as conn:
                    conn.execute(update)

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def list_failing_credentials(self, threshold: int) -> list[FailingCredential]:
        creds = pos_credentials
        stmt = (
            sa.select(
                creds.c.location_id,
                creds.c.provider,
                creds.c.consecutive_failures,
                creds.c.last_rotation_id,
                creds.c.last_error,
            )
            .where(
                creds.c.consecutive_failures >= threshold,
                creds.c.status != CredentialStatus.INVALID.value,
            )
            .order_by(creds.c.consecutive_failures.desc(), creds.c.location_id)
        )
        with _db_errors("list_failing_credentials"), self._engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [
            FailingCredential(
                location_id=row.location_id,
                provider=row.provider,
                consecutive_failures=row.consecutive_failures,
                last_rotation_id=row.last_rotation_id,
                last_error=row.last_error,
            )
            for row in rows
        ]

    def list_credentials(self, provider: str | None = None) -> list[CredentialStatusRow]:
        creds = pos_credentials
        stmt = sa.select(
            creds.c.location_id,
            creds.c.provider,
            creds.c.status,
            creds.c.expires_at,
            creds.c.last_rotated_at,
            creds.c.consecutive_failures,
            creds.c.next_attempt_at,
        ).order_by(creds.c.provider, creds.c.location_id)
        if provider:
            stmt = stmt.where(creds.c.provider == provider)
        with _db_errors("list_credentials"), self._engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [
            CredentialStatusRow(
                location_id=row.location_id,
                provider=row.provider,
                status=row.status,
                expires_at=_utc(row.expires_at),
                last_rotated_at=_utc(row.last_rotated_at),
                consecutive_failures=row.consecutive_failures,
                next_attempt_at=_utc(row.next_attempt_at),
            )
            for row in rows
        ]

    def list_breakers(self) -> list[BreakerRow]:
        stmt = sa.select(circuit_breakers).order_by(circuit_breakers.c.scope_key)
        with _db_errors("list_breakers"), self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [
            BreakerRow(
                scope_key=row["scope_key"],
                state=BreakerStatus(row["state"]),
                failure_count=row["failure_count"],
                resume_at=_utc(row["resume_at"]),
                updated_at=_utc(row["updated_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Provisioning (used by the connect flow and by tests)
    # ------------------------------------------------------------------

    def upsert_credential(
        self,
        location_id: str,
        provider: str,
        encrypted_secret_ref: str,
        status: str = CredentialStatus.CONNECTED.value,
        expires_at: datetime | None = None,
    ) -> None:
        creds = pos_credentials
        with _db_errors("upsert_credential"), self._engine.begin() as conn:
            updated = conn.execute(
                sa.update(creds)
                .where(creds.c.location_id == location_id, creds.c.provider == provider)
                .values(encrypted_secret_ref=encrypted_secret_ref, status=status, expires_at=expires_at)
            )
            if updated.rowcount == 0:
                conn.execute(sa.insert(creds).values(
                    location_id=location_id,
                    provider=provider,
                    encrypted_secret_ref=encrypted_secret_ref,
                    status=status,
                    expires_at=expires_at,
                    consecutive_failures=0,
                ))
