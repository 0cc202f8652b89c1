#!/usr/bin/env python3
"""
pos_rotation/rotate.py - Job orchestrator for POS credential rotation.

Usage:
    python -m pos_rotation.rotate --provider fudo
    python -m pos_rotation.rotate --provider fudo --codec vault
    python -m pos_rotation.rotate --provider fudo --database-url sqlite:///local.db --create-schema

Environment variables:
    DATABASE_URL (default: sqlite:///pos_rotation.db)
    SECRET_CODEC, ENCRYPTION_KEY (fernet) / VAULT_* (vault) / KMS_KEY_ID, AWS_REGION (kms)
    FUDO_API_URL (optional override of the production/staging base URL)
    CB_THRESHOLD, CB_WINDOW_MINUTES, CB_COOLDOWN_MINUTES
    ROTATION_LEASE_LIMIT, ROTATION_COOLDOWN_HOURS, TOKEN_EXPIRY_BUFFER_HOURS

One invocation:
  1. Check the global circuit breaker (open -> 503, nothing leased)
  2. Lease due credentials (half-open -> only the first one is probed)
  3. Per candidate: location breaker -> decrypt -> renew -> validate -> encrypt -> atomic swap
  4. Record breaker outcome and per-credential backoff
  5. Record job summary metrics and the heartbeat
"""
import argparse
import json
import logging
import sys
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pos_rotation.breaker import BreakerPolicy, CircuitBreakerGate
from pos_rotation.classifier import STORAGE, counts_against_breaker
from pos_rotation.codecs import CodecError, SecretCodec, get_codec
from pos_rotation.config import RotationSettings
from pos_rotation.fingerprint import mask_ref, token_fingerprint
from pos_rotation.models import (
    AttemptStage,
    AttemptStatus,
    BreakerState,
    BreakerStatus,
    Candidate,
    HeartbeatStatus,
    JobOutcome,
    RotationAttempt,
    RotationResult,
    SwapResult,
)
from pos_rotation.providers import PosProvider, ProviderCallError, get_provider
from pos_rotation.store import CredentialNotFoundError, RotationStore, StoreError, get_store

log = logging.getLogger("pos_rotation")

JOB_SUMMARY_METRIC = "job_summary"
ROTATION_ATTEMPT_METRIC = "rotation_attempt"


class RotationError(Exception):
    """Raised when the job cannot run at all (breaker check or lease failed)."""


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    return int(time.time() * 1000)


def make_event(
    action: str,
    provider: str,
    result: str,
    metadata: dict | None = None,
    location_id: str | None = None,
) -> dict:
    resource = f"pos/{provider}/locations/{location_id}" if location_id else f"pos/{provider}"
    return {
        "timestamp": utcnow(),
        "action": action,
        "actor": "rotation-agent",
        "resource": resource,
        "result": result,
        "metadata": metadata or {},
    }


def audit(event: dict) -> None:
    log.info(json.dumps(event, default=str))


class RotationJob:
    """
    One rotation run for one provider.

    The job is stateless between invocations: everything that must survive
    (breaker rows, lease stamps, the rotation ledger) lives in the store.
    """

    def __init__(
        self,
        store: RotationStore,
        provider: PosProvider,
        codec: SecretCodec,
        settings: RotationSettings,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.provider = provider
        self.codec = codec
        self.settings = settings
        self.gate = CircuitBreakerGate(store, settings.provider)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    @property
    def provider_name(self) -> str:
        return self.settings.provider

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def run(self) -> JobOutcome:
        job_run_id = str(uuid.uuid4())
        started = now_ms()
        log.info(f"Starting {self.settings.job_name} run {job_run_id}")

        try:
            global_state = self.gate.check_global()
        except StoreError as e:
            raise RotationError(f"Global circuit breaker check failed: {e}") from e

        if not global_state.allowed:
            log.warning(f"[CB GLOBAL] Breaker is {global_state.state.value}, resume at {global_state.resume_at}")
            audit(make_event("rotation_job_blocked", self.provider_name, "blocked", global_state.to_dict()))
            return JobOutcome(503, {
                "success": False,
                "message": f"Global circuit breaker is {global_state.state.value}",
                "circuit_breaker": {
                    "state": global_state.state.value,
                    "resume_at": global_state.resume_at.isoformat() if global_state.resume_at else None,
                },
            })

        try:
            candidates = self.store.lease_candidates(
                self.provider_name,
                self.settings.lease_limit,
                timedelta(hours=self.settings.rotation_cooldown_hours),
            )
        except StoreError as e:
            raise RotationError(f"Leasing candidates failed: {e}") from e

        log.info(f"Leased {len(candidates)} {self.provider_name} credential(s) for rotation")

        result = RotationResult(total_candidates=len(candidates))
        if global_state.test_mode:
            log.info("[CB GLOBAL] Half-open: probing with a single candidate")
            candidates = candidates[:1]

        self._process(candidates, result)

        duration_ms = now_ms() - started
        self.record_job_metrics(job_run_id, result, duration_ms)
        self.record_heartbeat(job_run_id, result, duration_ms)

        if result.total_candidates == 0:
            message = "No credentials need rotation at this time"
        else:
            message = (
                f"Processed {result.processed} locations, {result.successes} successful rotations, "
                f"{result.idempotent_hits} idempotent hits"
            )
        log.info(f"Run {job_run_id} finished in {duration_ms}ms: {json.dumps(result.counters())}")

        return JobOutcome(200, {
            "success": result.failures == 0,
            "message": message,
            "result": result.to_dict(),
            "job_run_id": job_run_id,
            "duration_ms": duration_ms,
        })

    def _process(self, candidates: list[Candidate], result: RotationResult) -> None:
        for candidate in candidates:
            result.processed += 1

            if not self._location_allowed(candidate.location_id):
                result.circuit_breaker_blocked += 1
                continue

            attempt = self.rotate_candidate(candidate)
            result.attempts.append(attempt)

            if attempt.status == AttemptStatus.COMPLETED:
                result.successes += 1
                self._record_success(candidate.location_id)
            elif attempt.status == AttemptStatus.IDEMPOTENT:
                result.idempotent_hits += 1
            else:
                result.failures += 1
                self._record_credential_failure(attempt)
                if counts_against_breaker(attempt.error_category):
                    global_state = self._record_failure(candidate.location_id)
                    if global_state is not None and global_state.state == BreakerStatus.OPEN:
                        remaining = len(candidates) - result.processed
                        result.circuit_breaker_blocked += remaining
                        log.warning(f"[CB GLOBAL] Opened mid-run, {remaining} candidate(s) left unprocessed")
                        break

    def _location_allowed(self, location_id: str) -> bool:
        try:
            state = self.gate.check_location(location_id)
        except StoreError as e:
            log.error(f"[CB LOCATION] Could not read breaker for location {location_id}, skipping: {e}")
            return False
        if not state.allowed:
            log.info(f"[CB LOCATION] Location {location_id} blocked until {state.resume_at}")
            return False
        return True

    def _record_success(self, location_id: str) -> None:
        try:
            self.gate.record_success(location_id)
        except StoreError as e:
            log.error(f"Could not record breaker success for location {location_id}: {e}")

    def _record_failure(self, location_id: str) -> BreakerState | None:
        try:
            return self.gate.record_failure(location_id)
        except StoreError as e:
            log.error(f"Could not record breaker failure for location {location_id}: {e}")
            return None

    def _record_credential_failure(self, attempt: RotationAttempt) -> None:
        try:
            failures = self.store.record_attempt_failure(
                attempt.location_id,
                attempt.provider,
                attempt.rotation_id,
                attempt.error_category or STORAGE,
                backoff_base=timedelta(minutes=self.settings.failure_backoff_base_minutes),
                backoff_max=timedelta(minutes=self.settings.failure_backoff_max_minutes),
            )
        except CredentialNotFoundError:
            log.warning(f"Credential for location {attempt.location_id} disappeared, no backoff recorded")
            return
        except StoreError as e:
            log.error(f"Could not record failure bookkeeping for location {attempt.location_id}: {e}")
            return
        attempt.metadata["consecutive_failures"] = failures

    # ------------------------------------------------------------------
    # Per-candidate state machine
    # ------------------------------------------------------------------

    def rotate_candidate(self, candidate: Candidate) -> RotationAttempt:
        """
        Run one candidate through pending -> renewing -> validating -> swapping.

        Never raises for per-candidate problems: the returned attempt is
        completed, idempotent or failed, with the stage it reached.
        """
        attempt = RotationAttempt(
            location_id=candidate.location_id,
            rotation_id=str(uuid.uuid4()),
            provider=candidate.provider,
            started_at=now_ms(),
        )
        log.info(
            f"Rotating location {candidate.location_id} "
            f"(rotation {attempt.rotation_id}, secret {mask_ref(candidate.encrypted_secret_ref)})"
        )

        try:
            credentials = self.codec.decrypt_credentials(candidate.encrypted_secret_ref)

            attempt.stage = AttemptStage.RENEWING
            grant = self.provider.renew(credentials)

            attempt.stage = AttemptStage.VALIDATING
            self.provider.validate(grant.access_token, credentials.env)

            fingerprint = token_fingerprint(grant.access_token, self.settings.token_fingerprint_key)
            attempt.metadata["token_fingerprint"] = fingerprint

            attempt.stage = AttemptStage.SWAPPING
            new_encrypted_secret = self.codec.encrypt_token(grant.access_token)
            expires_at = None
            if grant.expires_in:
                expires_at = self._clock() + timedelta(seconds=grant.expires_in)
            swap = self._swap_with_retries(candidate, attempt.rotation_id, new_encrypted_secret, expires_at)
        except ProviderCallError as e:
            self._fail(attempt, str(e), e.category, http_status=e.status)
        except CodecError as e:
            self._fail(attempt, f"{e.operation} failed: {e}", STORAGE)
        except StoreError as e:
            self._fail(attempt, str(e), STORAGE)
        except Exception as e:
            # Only the type name: messages may echo secret material.
            log.error(f"Unexpected {type(e).__name__} rotating location {candidate.location_id}")
            self._fail(attempt, f"unexpected {type(e).__name__}", STORAGE)
        else:
            self._finish(attempt, swap, grant.expires_in)

        attempt.completed_at = now_ms()
        return attempt

    def _swap_with_retries(
        self,
        candidate: Candidate,
        rotation_id: str,
        new_encrypted_secret: str,
        expires_at: datetime | None,
    ) -> SwapResult:
        max_retries = self.settings.swap_max_retries
        for retry in range(max_retries + 1):
            try:
                return self.store.atomic_swap(
                    candidate.location_id,
                    candidate.provider,
                    rotation_id,
                    new_encrypted_secret,
                    expires_at,
                )
            except StoreError as e:
                if not e.transient or retry == max_retries:
                    raise
                delay = self.settings.swap_backoff_seconds * (2 ** retry)
                log.warning(
                    f"Transient swap failure for location {candidate.location_id} "
                    f"(rotation {rotation_id}), retry {retry + 1}/{max_retries} in {delay:.1f}s"
                )
                self._sleep(delay)
        raise StoreError("atomic_swap retries exhausted", transient=True)

    def _finish(self, attempt: RotationAttempt, swap: SwapResult, expires_in: int | None) -> None:
        attempt.stage = AttemptStage.DONE
        attempt.metadata.update({
            "operation_result": swap.operation_result.value,
            "rows_affected": swap.rows_affected,
            "token_id": swap.token_id,
            "expires_in": expires_in,
            "atomic": True,
        })
        if swap.is_idempotent:
            attempt.status = AttemptStatus.IDEMPOTENT
            attempt.metadata["idempotent_hit"] = True
            log.info(f"  [OK] Rotation {attempt.rotation_id} already committed, nothing changed")
        else:
            attempt.status = AttemptStatus.COMPLETED
            log.info(
                f"  [OK] Location {attempt.location_id} rotated "
                f"(token {attempt.metadata['token_fingerprint']})"
            )
        audit(make_event(
            "rotation_complete", attempt.provider, attempt.status.value,
            {"rotation_id": attempt.rotation_id, **attempt.metadata},
            location_id=attempt.location_id,
        ))

    def _fail(self, attempt: RotationAttempt, error: str, category: str, http_status: int | None = None) -> None:
        attempt.status = AttemptStatus.FAILED
        attempt.error = error
        attempt.error_category = category
        attempt.metadata["failed_at"] = attempt.stage.value
        if http_status is not None:
            attempt.metadata["http_status"] = http_status
        log.warning(f"  [FAIL] Location {attempt.location_id} at {attempt.stage.value}: {error}")
        audit(make_event(
            "rotation_failed", attempt.provider, "failure",
            {"rotation_id": attempt.rotation_id, "error_category": category, "stage": attempt.stage.value},
            location_id=attempt.location_id,
        ))

    # ------------------------------------------------------------------
    # Metrics & heartbeat
    # ------------------------------------------------------------------

    def record_job_metrics(self, job_run_id: str, result: RotationResult, duration_ms: int) -> None:
        """One job summary row plus one row per attempt that did real work. Best effort."""
        try:
            self.store.record_metric(
                job_run_id,
                self.provider_name,
                JOB_SUMMARY_METRIC,
                value=result.processed,
                duration_ms=duration_ms,
                meta=result.counters(),
            )
            for attempt in result.attempts:
                if attempt.status == AttemptStatus.IDEMPOTENT:
                    continue
                self.store.record_metric(
                    job_run_id,
                    self.provider_name,
                    ROTATION_ATTEMPT_METRIC,
                    value=1 if attempt.status == AttemptStatus.COMPLETED else 0,
                    duration_ms=attempt.duration_ms,
                    meta={
                        "rotation_id": attempt.rotation_id,
                        "status": attempt.status.value,
                        "error_category": attempt.error_category,
                    },
                    location_id=attempt.location_id,
                )
        except StoreError as e:
            log.error(f"Could not record metrics for run {job_run_id}: {e}")

    def record_heartbeat(self, job_run_id: str, result: RotationResult, duration_ms: int) -> None:
        attempts = len(result.attempts)
        all_failed = attempts > 0 and result.failures == attempts
        status = HeartbeatStatus.UNHEALTHY if all_failed else HeartbeatStatus.HEALTHY
        metadata: dict[str, Any] = {
            "job_run_id": job_run_id,
            "last_execution": utcnow(),
            "duration_ms": duration_ms,
            **result.counters(),
        }
        if all_failed:
            metadata["error_summary"] = sorted({a.error_category or STORAGE for a in result.attempts})
        try:
            self.store.update_heartbeat(self.settings.job_name, status.value, metadata)
        except StoreError as e:
            log.error(f"Could not update heartbeat {self.settings.job_name}: {e}")


def build_job(settings: RotationSettings, create_schema: bool = False) -> RotationJob:
    store = get_store(
        settings.database_url,
        create_schema=create_schema,
        policy=BreakerPolicy.from_settings(settings),
        expiry_buffer=timedelta(hours=settings.token_expiry_buffer_hours),
    )
    return RotationJob(
        store=store,
        provider=get_provider(settings.provider, settings),
        codec=get_codec(settings.secret_codec, settings),
        settings=settings,
    )


def run_rotation_job(job: RotationJob) -> JobOutcome:
    """Run one invocation, turning fatal errors into the 500 payload."""
    try:
        return job.run()
    except RotationError as e:
        log.error(f"Rotation job failed: {e}")
        return JobOutcome(500, {"success": False, "error": str(e), "timestamp": utcnow()})


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="POS credential rotation job",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m pos_rotation.rotate --provider fudo
  python -m pos_rotation.rotate --provider fudo --codec kms
  python -m pos_rotation.rotate --database-url sqlite:///local.db --create-schema
        """,
    )
    parser.add_argument(
        "--provider",
        choices=["fudo"],
        help="POS provider to rotate (default: POS_PROVIDER or fudo)",
    )
    parser.add_argument(
        "--codec",
        choices=["fernet", "vault", "kms"],
        help="Secret codec (default: SECRET_CODEC or fernet)",
    )
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    parser.add_argument("--limit", type=int, help="Maximum credentials to lease in this run")
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create the rotation tables if missing (local runs only)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    settings = RotationSettings.from_env()
    overrides = {
        "provider": args.provider,
        "secret_codec": args.codec,
        "database_url": args.database_url,
        "lease_limit": args.limit,
    }
    settings = replace(settings, **{k: v for k, v in overrides.items() if v is not None})

    try:
        job = build_job(settings, create_schema=args.create_schema)
    except (ValueError, CodecError, StoreError) as e:
        log.error(f"Could not start rotation job: {e}")
        sys.exit(1)

    outcome = run_rotation_job(job)
    print(json.dumps(outcome.body, indent=2, default=str))
    if outcome.status_code != 200 or not outcome.body.get("success"):
        sys.exit(1)


if __name__ == "__main__":
    main()
