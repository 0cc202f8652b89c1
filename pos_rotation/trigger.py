"""
pos_rotation/trigger.py - HTTP trigger for the rotation job (Flask).

Endpoints:
  OPTIONS /  (and /rotate)  CORS preflight
  POST    /  (and /rotate)  run one rotation invocation
  GET     /health           liveness

Only POST and OPTIONS reach the job; every other verb gets a JSON 405.
A scheduler calls POST on a fixed cadence; overlapping calls are safe
because leasing and breaker writes are atomic in the database.
"""
import hmac
import logging
import os
from typing import Callable

from flask import Flask, jsonify, request
from werkzeug.exceptions import MethodNotAllowed

from pos_rotation.codecs import CodecError
from pos_rotation.config import RotationSettings
from pos_rotation.rotate import RotationJob, build_job, run_rotation_job, utcnow
from pos_rotation.store import StoreError

log = logging.getLogger(__name__)

ALLOWED_METHODS = "POST, OPTIONS"
ALLOWED_HEADERS = "Content-Type, X-Job-Token"


def create_app(
    settings: RotationSettings | None = None,
    job_factory: Callable[[], RotationJob] | None = None,
) -> Flask:
    settings = settings or RotationSettings.from_env()
    factory = job_factory or (lambda: build_job(settings))
    app = Flask(__name__)
    jobs: dict[str, RotationJob] = {}

    def get_job() -> RotationJob:
        # Built on first use so a bad key or URL surfaces as a 500, not a crash at import.
        if "job" not in jobs:
            jobs["job"] = factory()
        return jobs["job"]

    def allowed_origin() -> str:
        if not settings.allowed_origins:
            return "*"
        origin = request.headers.get("Origin", "")
        if origin in settings.allowed_origins:
            return origin
        return settings.allowed_origins[0]

    @app.after_request
    def add_cors_headers(response):
        response.headers["Access-Control-Allow-Origin"] = allowed_origin()
        if settings.allowed_origins:
            response.headers["Vary"] = "Origin"
        return response

    @app.errorhandler(MethodNotAllowed)
    def method_not_allowed(e):
        resp = jsonify({"success": False, "error": f"Method {request.method} not allowed"})
        resp.status_code = 405
        resp.headers["Allow"] = ", ".join(sorted(e.valid_methods or []))
        return resp

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok", "service": "pos-rotation"}), 200

    @app.route("/", methods=["POST", "OPTIONS"])
    @app.route("/rotate", methods=["POST", "OPTIONS"])
    def rotate():
        if request.method == "OPTIONS":
            resp = app.make_response(("", 204))
            resp.headers["Access-Control-Allow-Methods"] = ALLOWED_METHODS
            resp.headers["Access-Control-Allow-Headers"] = ALLOWED_HEADERS
            resp.headers["Access-Control-Max-Age"] = "3600"
            return resp

        if settings.job_token:
            provided = request.headers.get("X-Job-Token", "")
            if not hmac.compare_digest(provided.encode(), settings.job_token.encode()):
                log.warning("Rejected rotation trigger with a missing or wrong job token")
                return jsonify({"success": False, "error": "Unauthorized"}), 401

        if request.mimetype and not request.is_json:
            return jsonify({"success": False, "error": "Content-Type must be application/json"}), 400

        try:
            job = get_job()
        except (ValueError, CodecError, StoreError) as e:
            log.error(f"Could not build rotation job: {e}")
            return jsonify({"success": False, "error": str(e), "timestamp": utcnow()}), 500

        outcome = run_rotation_job(job)
        return jsonify(outcome.body), outcome.status_code

    return app


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    port = int(os.environ.get("PORT", "8080"))
    create_app().run(host="0.0.0.0", port=port, debug=False)


if __name__ == "__main__":
    main()
