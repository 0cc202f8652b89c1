import pytest

from pos_rotation.classifier import (
    CLIENT_ERROR,
    INVALID_CREDENTIALS,
    INVALID_RESPONSE,
    NETWORK,
    OK,
    RATE_LIMITED,
    SERVER_ERROR,
    STORAGE,
    classify_status,
    counts_against_breaker,
)


@pytest.mark.parametrize("status,category,breaker", [
    (None, NETWORK, True),
    (500, SERVER_ERROR, True),
    (502, SERVER_ERROR, True),
    (599, SERVER_ERROR, True),
    (429, RATE_LIMITED, True),
    (401, INVALID_CREDENTIALS, False),
    (403, INVALID_CREDENTIALS, False),
    (400, CLIENT_ERROR, False),
    (404, CLIENT_ERROR, False),
    (422, CLIENT_ERROR, False),
    (200, OK, False),
    (204, OK, False),
])
def test_classify_status(status, category, breaker):
    result = classify_status(status)
    assert result.category == category
    assert result.should_increment_breaker is breaker


def test_only_provider_instability_counts_against_breaker():
    assert counts_against_breaker(NETWORK)
    assert counts_against_breaker(SERVER_ERROR)
    assert counts_against_breaker(RATE_LIMITED)
    for category in (INVALID_CREDENTIALS, CLIENT_ERROR, INVALID_RESPONSE, STORAGE, OK, None):
        assert not counts_against_breaker(category)
