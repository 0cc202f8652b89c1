#!/usr/bin/env python3
"""
pos_rotation/failure_monitor.py - Alerts on credentials that keep failing to rotate.

Usage:
    python -m pos_rotation.failure_monitor                  # threshold from FAILURE_ALERT_THRESHOLD (3)
    python -m pos_rotation.failure_monitor --threshold 5

Detects:
  - Credentials with N or more consecutive failed rotation attempts
    (invalid credentials are excluded: they need a human, not a retry)

Each hit produces one Slack alert. The monitor records its own heartbeat
(rotation_failure_monitor) so a silent monitor is itself detectable.
"""
import argparse
import json
import logging
import sys
import time
from typing import Any, Callable

from pos_rotation.config import RotationSettings
from pos_rotation.models import FailingCredential, HeartbeatStatus
from pos_rotation.notify import send_slack_notification
from pos_rotation.rotate import utcnow
from pos_rotation.store import RotationStore, StoreError, get_store

log = logging.getLogger(__name__)

HEARTBEAT_JOB_NAME = "rotation_failure_monitor"


def format_alert(failure: FailingCredential) -> str:
    return (
        f":warning: Rotation failing for location {failure.location_id} ({failure.provider}): "
        f"{failure.consecutive_failures} consecutive failures, "
        f"last error `{failure.last_error or 'unknown'}`, "
        f"last rotation {failure.last_rotation_id or 'n/a'}"
    )


def run_failure_monitor(
    store: RotationStore,
    threshold: int,
    webhook_url: str = "",
    notifier: Callable[..., bool] = send_slack_notification,
) -> dict[str, Any]:
    """
    Check for repeatedly failing credentials and alert on each one.

    Returns the response payload; `success` is False only when the check
    itself could not run.
    """
    started = time.monotonic()
    log.info(f"Failure monitor start (threshold: {threshold})")

    try:
        failures = store.list_failing_credentials(threshold)
    except StoreError as e:
        log.error(f"Failure check failed: {e}")
        _heartbeat(store, HeartbeatStatus.FAILED, {"execution_time": utcnow(), "error": str(e)})
        return {"success": False, "error": str(e), "timestamp": utcnow()}

    alerts_sent = 0
    for failure in failures:
        if notifier(format_alert(failure), webhook_url=webhook_url):
            alerts_sent += 1
        log.info(
            f"  [ALERT] location {failure.location_id} ({failure.provider}): "
            f"{failure.consecutive_failures} consecutive failures"
        )

    duration_ms = int((time.monotonic() - started) * 1000)
    summary = {
        "locations_with_failures": len(failures),
        "alerts_sent": alerts_sent,
        "failures": [
            {
                "location_id": f.location_id,
                "provider": f.provider,
                "consecutive_failures": f.consecutive_failures,
            }
            for f in failures
        ],
    }
    _heartbeat(store, HeartbeatStatus.HEALTHY, {
        "execution_time": utcnow(),
        "locations_with_failures": len(failures),
        "alerts_sent": alerts_sent,
        "duration_ms": duration_ms,
    })
    log.info(f"Failure monitor complete: {len(failures)} failing, {alerts_sent} alert(s) sent")

    return {
        "success": True,
        "timestamp": utcnow(),
        "duration_ms": duration_ms,
        "summary": summary,
    }


def _heartbeat(store: RotationStore, status: HeartbeatStatus, metadata: dict[str, Any]) -> None:
    try:
        store.update_heartbeat(HEARTBEAT_JOB_NAME, status.value, metadata)
    except StoreError as e:
        log.error(f"Could not update heartbeat {HEARTBEAT_JOB_NAME}: {e}")


def main(argv: list[str] | None = None) -> None:
    settings = RotationSettings.from_env()
    parser = argparse.ArgumentParser(
        description="Alert on POS credentials with repeated rotation failures",
        epilog="Example: python -m pos_rotation.failure_monitor --threshold 5",
    )
    parser.add_argument(
        "--threshold",
        type=int,
        default=settings.failure_alert_threshold,
        help=f"Consecutive failures before alerting (default: {settings.failure_alert_threshold})",
    )
    parser.add_argument("--database-url", default=settings.database_url, help="Override DATABASE_URL")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(message)s")

    store = get_store(args.database_url)
    result = run_failure_monitor(store, args.threshold, webhook_url=settings.slack_webhook_url)
    print(json.dumps(result, indent=2))
    if not result["success"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
