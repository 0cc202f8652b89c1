"""
pos_rotation/config.py - Environment-driven settings for the rotation job.

Every knob has a safe default so the job runs with only DATABASE_URL and the
codec key set. Values are read once per invocation via RotationSettings.from_env().
"""
import os
from dataclasses import dataclass, field
from typing import Mapping


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _list(env: Mapping[str, str], name: str) -> tuple[str, ...]:
    raw = env.get(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class RotationSettings:
    database_url: str = "sqlite:///pos_rotation.db"
    provider: str = "fudo"

    # Leasing
    lease_limit: int = 50
    rotation_cooldown_hours: int = 4
    token_expiry_buffer_hours: int = 24

    # Circuit breaker (>= threshold failures within the window opens it)
    cb_threshold: int = 10
    cb_window_minutes: int = 15
    cb_cooldown_minutes: int = 30

    # Provider API
    fudo_api_url: str | None = None
    renew_timeout_seconds: float = 15.0
    validate_timeout_seconds: float = 10.0

    # Swap retries reuse the same rotation id
    swap_max_retries: int = 2
    swap_backoff_seconds: float = 0.5

    # Per-credential backoff after a failed attempt
    failure_backoff_base_minutes: int = 15
    failure_backoff_max_minutes: int = 24 * 60
    failure_alert_threshold: int = 3

    token_fingerprint_key: str = "pos-token-fingerprint-key"

    # Secret codec
    secret_codec: str = "fernet"
    encryption_key: str | None = field(default=None, repr=False)
    vault_addr: str = "http://localhost:8200"
    vault_role_id: str | None = field(default=None, repr=False)
    vault_secret_id: str | None = field(default=None, repr=False)
    vault_token: str | None = field(default=None, repr=False)
    vault_transit_key: str = "pos-credentials"
    aws_region: str = "us-east-1"
    kms_key_id: str | None = None

    # HTTP trigger
    job_token: str | None = field(default=None, repr=False)
    allowed_origins: tuple[str, ...] = ()

    slack_webhook_url: str = field(default="", repr=False)

    @property
    def job_name(self) -> str:
        return f"{self.provider}_rotate_token"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "RotationSettings":
        env = os.environ if env is None else env
        return cls(
            database_url=env.get("DATABASE_URL", cls.database_url),
            provider=env.get("POS_PROVIDER", cls.provider),
            lease_limit=_int(env, "ROTATION_LEASE_LIMIT", cls.lease_limit),
            rotation_cooldown_hours=_int(env, "ROTATION_COOLDOWN_HOURS", cls.rotation_cooldown_hours),
            token_expiry_buffer_hours=_int(env, "TOKEN_EXPIRY_BUFFER_HOURS", cls.token_expiry_buffer_hours),
            cb_threshold=_int(env, "CB_THRESHOLD", cls.cb_threshold),
            cb_window_minutes=_int(env, "CB_WINDOW_MINUTES", cls.cb_window_minutes),
            cb_cooldown_minutes=_int(env, "CB_COOLDOWN_MINUTES", cls.cb_cooldown_minutes),
            fudo_api_url=env.get("FUDO_API_URL") or None,
            renew_timeout_seconds=_float(env, "FUDO_RENEW_TIMEOUT_SECONDS", cls.renew_timeout_seconds),
            validate_timeout_seconds=_float(env, "FUDO_VALIDATE_TIMEOUT_SECONDS", cls.validate_timeout_seconds),
            swap_max_retries=_int(env, "SWAP_MAX_RETRIES", cls.swap_max_retries),
            swap_backoff_seconds=_float(env, "SWAP_BACKOFF_SECONDS", cls.swap_backoff_seconds),
            failure_backoff_base_minutes=_int(env, "FAILURE_BACKOFF_BASE_MINUTES", cls.failure_backoff_base_minutes),
            failure_backoff_max_minutes=_int(env, "FAILURE_BACKOFF_MAX_MINUTES", cls.failure_backoff_max_minutes),
            failure_alert_threshold=_int(env, "FAILURE_ALERT_THRESHOLD", cls.failure_alert_threshold),
            token_fingerprint_key=env.get("TOKEN_FINGERPRINT_KEY", cls.token_fingerprint_key),
            secret_codec=env.get("SECRET_CODEC", cls.secret_codec),
            encryption_key=env.get("ENCRYPTION_KEY") or None,
            vault_addr=env.get("VAULT_ADDR", cls.vault_addr),
            vault_role_id=env.get("VAULT_ROLE_ID_ROTATION_AGENT") or None,
            vault_secret_id=env.get("VAULT_SECRET_ID_ROTATION_AGENT") or None,
            vault_token=env.get("VAULT_TOKEN") or None,
            vault_transit_key=env.get("VAULT_TRANSIT_KEY", cls.vault_transit_key),
            aws_region=env.get("AWS_REGION", cls.aws_region),
            kms_key_id=env.get("KMS_KEY_ID") or None,
            job_token=env.get("ROTATION_JOB_TOKEN") or None,
            allowed_origins=_list(env, "ALLOWED_ORIGINS"),
            slack_webhook_url=env.get("SLACK_WEBHOOK_URL", ""),
        )
