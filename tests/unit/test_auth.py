from __future__ import annotations

import pytest
from conftest import TEST_ADMIN_PASSWORD

from app.core.auth import extract_api_key, verify_admin_secret
from app.modules.dashboard_auth.service import (
    AdminAuthService,
    AdminSessionStore,
    InvalidPasswordError,
    LoginRateLimitedError,
    LoginRateLimiter,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("Bearer abc", "abc"),
        ("bearer  abc ", "abc"),
        ("abc", "abc"),
        ("", None),
        (None, None),
        ("Bearer ", "Bearer"),
    ],
)
def test_extract_api_key(header, expected):
    assert extract_api_key(header) == expected


def test_verify_admin_secret():
    assert verify_admin_secret(TEST_ADMIN_PASSWORD) is True
    assert verify_admin_secret("wrong") is False
    assert verify_admin_secret(None) is False


def test_session_store_round_trip_and_expiry():
    store = AdminSessionStore(ttl_seconds=60)
    session_id = store.create()

    state = store.get(session_id)
    assert state is not None
    assert store.is_valid(session_id) is True
    assert store.is_valid("garbage") is False
    assert store.is_valid(None) is False

    expired = AdminSessionStore(ttl_seconds=-1)
    assert expired.is_valid(expired.create()) is False


def test_login_issues_session_and_rate_limits_failures():
    store = AdminSessionStore(ttl_seconds=60)
    service = AdminAuthService(store, LoginRateLimiter(max_failures=2, window_seconds=60))

    assert store.is_valid(service.login(TEST_ADMIN_PASSWORD, client_key="1.2.3.4"))

    for _ in range(2):
        with pytest.raises(InvalidPasswordError):
            service.login("wrong", client_key="1.2.3.4")
    with pytest.raises(LoginRateLimitedError) as exc_info:
        service.login(TEST_ADMIN_PASSWORD, client_key="1.2.3.4")
    assert exc_info.value.retry_after > 0

    assert service.login(TEST_ADMIN_PASSWORD, client_key="5.6.7.8")
