"""
pos_rotation/store/schema.py - Tables owned by the rotation job.
"""
import sqlalchemy as sa

metadata = sa.MetaData()

pos_credentials = sa.Table(
    "pos_credentials",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("location_id", sa.String(64), nullable=False),
    sa.Column("provider", sa.String(32), nullable=False),
    sa.Column("status", sa.String(16), nullable=False, server_default="connected"),
    # Codec ciphertexts only. NEVER store or log plaintext here.
    sa.Column("encrypted_secret_ref", sa.Text, nullable=False),
    sa.Column("encrypted_token", sa.Text, nullable=True),
    sa.Column("token_id", sa.String(64), nullable=True),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_rotated_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_rotation_id", sa.String(64), nullable=True),
    sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("consecutive_failures", sa.Integer, nullable=False, server_default="0"),
    sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_error", sa.String(255), nullable=True),
    sa.UniqueConstraint("location_id", "provider", name="uq_pos_credentials_location_provider"),
)

circuit_breakers = sa.Table(
    "circuit_breakers",
    metadata,
    sa.Column("scope_key", sa.String(160), primary_key=True),
    sa.Column("state", sa.String(16), nullable=False, server_default="closed"),
    sa.Column("failure_count", sa.Integer, nullable=False, server_default="0"),
    sa.Column("window_start", sa.DateTime(timezone=True), nullable=True),
    sa.Column("resume_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("version", sa.Integer, nullable=False, server_default="0"),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
)

rotation_ledger = sa.Table(
    "rotation_ledger",
    metadata,
    sa.Column("rotation_id", sa.String(64), primary_key=True),
    sa.Column("location_id", sa.String(64), nullable=False),
    sa.Column("provider", sa.String(32), nullable=False),
    sa.Column("token_id", sa.String(64), nullable=False),
    sa.Column("committed_at", sa.DateTime(timezone=True), nullable=False),
)

rotation_metrics = sa.Table(
    "rotation_metrics",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("job_run_id", sa.String(64), nullable=False, index=True),
    sa.Column("provider", sa.String(32), nullable=False),
    sa.Column("location_id", sa.String(64), nullable=True),
    sa.Column("metric_type", sa.String(32), nullable=False),
    sa.Column("value", sa.Float, nullable=True),
    sa.Column("duration_ms", sa.Integer, nullable=True),
    sa.Column("meta", sa.JSON, nullable=True),
    sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
)

job_heartbeats = sa.Table(
    "job_heartbeats",
    metadata,
    sa.Column("job_name", sa.String(64), primary_key=True),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("metadata", sa.JSON, nullable=True),
)
