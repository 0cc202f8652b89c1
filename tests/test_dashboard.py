from datetime import datetime, timedelta, timezone

from rich.console import Console

from pos_rotation.dashboard import build_dashboard, credential_status, format_when
from pos_rotation.models import BreakerScope, CredentialStatusRow

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def render(renderable) -> str:
    console = Console(record=True, width=200)
    console.print(renderable)
    return console.export_text()


def test_format_when():
    assert format_when(None, NOW) == "-"
    assert format_when(NOW + timedelta(hours=3, minutes=5), NOW) == "in 3h"
    assert format_when(NOW - timedelta(days=2), NOW) == "2d ago"
    assert format_when(NOW - timedelta(minutes=7), NOW) == "7m ago"


def test_credential_status():
    def row(**kwargs):
        base = dict(
            location_id="loc-1", provider="fudo", status="connected",
            expires_at=NOW + timedelta(days=5), last_rotated_at=None,
            consecutive_failures=0, next_attempt_at=None,
        )
        base.update(kwargs)
        return CredentialStatusRow(**base)

    assert credential_status(row(), NOW).plain == "OK"
    assert credential_status(row(expires_at=NOW + timedelta(hours=2)), NOW).plain == "DUE"
    assert credential_status(row(expires_at=NOW - timedelta(hours=1)), NOW).plain == "EXPIRED"
    assert credential_status(row(consecutive_failures=2), NOW).plain == "FAILING x2"
    assert credential_status(row(status="invalid"), NOW).plain == "INVALID"


def test_dashboard_renders_credentials_and_breakers(store, provision, settings):
    provision("loc-cafe-centro")
    for _ in range(settings.cb_threshold):
        store.record_breaker_failure(BreakerScope.global_scope())

    text = render(build_dashboard(store))

    assert "loc-cafe-centro" in text
    assert "global" in text
    assert "OPEN" in text
