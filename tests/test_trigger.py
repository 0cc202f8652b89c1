from dataclasses import replace

import pytest

from pos_rotation.codecs import CodecError
from pos_rotation.models import BreakerScope
from pos_rotation.trigger import create_app


@pytest.fixture
def client(settings, job):
    app = create_app(settings, job_factory=lambda: job)
    app.config["TESTING"] = True
    return app.test_client()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ok"


def test_preflight(client):
    resp = client.options("/")
    assert resp.status_code == 204
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert resp.headers["Access-Control-Allow-Methods"] == "POST, OPTIONS"
    assert "X-Job-Token" in resp.headers["Access-Control-Allow-Headers"]


@pytest.mark.parametrize("path", ["/", "/rotate"])
def test_post_runs_the_job(client, provision, path):
    provision("loc-1")
    resp = client.post(path, json={})
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["success"] is True
    assert body["result"]["successes"] == 1
    assert body["job_run_id"]


def test_post_without_body_is_accepted(client):
    assert client.post("/").status_code == 200


@pytest.mark.parametrize("method", ["get", "put", "delete", "patch"])
def test_other_methods_are_rejected(client, method):
    resp = getattr(client, method)("/")
    assert resp.status_code == 405
    assert resp.get_json()["success"] is False
    assert "POST" in resp.headers["Allow"]


def test_non_json_content_type_is_rejected(client):
    resp = client.post("/", data="run=1", content_type="application/x-www-form-urlencoded")
    assert resp.status_code == 400


def test_open_global_breaker_is_503(client, store, settings):
    for _ in range(settings.cb_threshold):
        store.record_breaker_failure(BreakerScope.global_scope())
    resp = client.post("/", json={})
    assert resp.status_code == 503
    assert resp.get_json()["circuit_breaker"]["state"] == "open"


def test_job_token_required_when_configured(settings, job):
    app = create_app(replace(settings, job_token="job-s3cret"), job_factory=lambda: job)
    client = app.test_client()

    assert client.post("/", json={}).status_code == 401
    assert client.post("/", json={}, headers={"X-Job-Token": "wrong"}).status_code == 401
    assert client.post("/", json={}, headers={"X-Job-Token": "job-s3cret"}).status_code == 200


def test_job_build_failure_is_500(settings):
    def broken_factory():
        raise CodecError("Encryption key not configured. Set ENCRYPTION_KEY environment variable.")

    client = create_app(settings, job_factory=broken_factory).test_client()
    resp = client.post("/", json={})
    assert resp.status_code == 500
    assert resp.get_json()["success"] is False
    assert resp.get_json()["timestamp"]


def test_allowed_origins(settings, job):
    app = create_app(
        replace(settings, allowed_origins=("https://admin.example", "https://ops.example")),
        job_factory=lambda: job,
    )
    client = app.test_client()

    resp = client.options("/", headers={"Origin": "https://ops.example"})
    assert resp.headers["Access-Control-Allow-Origin"] == "https://ops.example"
    resp = client.options("/", headers={"Origin": "https://evil.example"})
    assert resp.headers["Access-Control-Allow-Origin"] == "https://admin.example"


def test_bad_database_url_is_json_500(settings):
    client = create_app(replace(settings, database_url="not a database url")).test_client()
    resp = client.post("/", json={})
    assert resp.status_code == 500
    assert resp.get_json()["error"].startswith("connect failed")
