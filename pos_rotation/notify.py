"""
pos_rotation/notify.py - Slack notifications for rotation events.

In production: set SLACK_WEBHOOK_URL.
Without it the payload is only logged, so local runs and tests never post.
"""
import json
import logging

import requests

log = logging.getLogger(__name__)


def send_slack_notification(message: str, webhook_url: str = "", timeout: float = 5) -> bool:
    """Post a message; returns True only when Slack accepted it. Never raises."""
    payload = {
        "text": f"*POS Rotation Agent*: {message}",
        "username": "pos-rotation",
        "icon_emoji": ":rotating_light:",
    }

    if not webhook_url:
        log.info(f"[SLACK MOCK] Would send: {json.dumps(payload)}")
        return False

    try:
        resp = requests.post(webhook_url, json=payload, timeout=timeout)
    except requests.RequestException as e:
        log.warning(f"Slack notification failed (non-fatal): {type(e).__name__}")
        return False
    if not resp.ok:
        log.warning(f"Slack notification returned {resp.status_code} (non-fatal)")
        return False
    return True
