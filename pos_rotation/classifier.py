"""
pos_rotation/classifier.py - Maps a provider call outcome to a failure category.

network, 5xx and rate limiting mean the provider side is unstable and count
against the circuit breaker. Auth and other client errors mean the credential
or the request is bad; they never trip the breaker, so one broken location
cannot block healthy ones.
"""
from dataclasses import dataclass

NETWORK = "network"
SERVER_ERROR = "5xx"
RATE_LIMITED = "rate_limited"
INVALID_CREDENTIALS = "invalid_credentials"
CLIENT_ERROR = "client_error"
INVALID_RESPONSE = "invalid_response"
STORAGE = "storage"
OK = "ok"

BREAKER_CATEGORIES = frozenset({NETWORK, SERVER_ERROR, RATE_LIMITED})


@dataclass(frozen=True)
class ErrorClassification:
    category: str
    should_increment_breaker: bool


def classify_status(status: int | None) -> ErrorClassification:
    """Classify an HTTP status. None means the request never got a response."""
    if status is None:
        return ErrorClassification(NETWORK, True)
    if status == 429:
        return ErrorClassification(RATE_LIMITED, True)
    if 500 <= status <= 599:
        return ErrorClassification(SERVER_ERROR, True)
    if status in (401, 403):
        return ErrorClassification(INVALID_CREDENTIALS, False)
    if 400 <= status <= 499:
        return ErrorClassification(CLIENT_ERROR, False)
    return ErrorClassification(OK, False)


def counts_against_breaker(category: str | None) -> bool:
    return category in BREAKER_CATEGORIES
