"""
Tests for rate limiting functionality
"""
import base64
from datetime import timedelta

import pytest

from backend.app.models import ApiRateLimit, LoginAttempt
from backend.app.rate_limit import ApiRateLimiter, LoginLimiter, compute_lock_seconds, utcnow
from backend.tests.utils import login, seed_user


def test_login_rate_limit_blocks_after_repeated_failures(client, db_session):
    """Three failures lock the address/email pair, even for the right password"""
    seed_user(db_session, "test.user@x.org")

    for _ in range(3):
        res = client.post("/api/auth/login", json={"email": "test.user@x.org", "password": "WrongPassword"})
        assert res.status_code == 401

    res = client.post("/api/auth/login", json={"email": "test.user@x.org", "password": "Secret123!"})
    assert res.status_code == 429
    assert "too many" in res.json()["detail"].lower()


def test_successful_login_resets_counter(client, db_session):
    seed_user(db_session, "test.user@x.org")

    for _ in range(2):
        client.post("/api/auth/login", json={"email": "test.user@x.org", "password": "WrongPassword"})

    login(client, "test.user@x.org")
    assert db_session.query(LoginAttempt).count() == 0


def test_lock_is_per_email(client, db_session):
    seed_user(db_session, "locked@x.org")
    seed_user(db_session, "fine@x.org")
    for _ in range(3):
        client.post("/api/auth/login", json={"email": "locked@x.org", "password": "WrongPassword"})

    login(client, "fine@x.org")


@pytest.mark.parametrize(
    "failures, expected",
    [(0, 0), (2, 0), (3, 30), (4, 30), (5, 120), (7, 300), (9, 600), (25, 600)],
)
def test_compute_lock_seconds(failures, expected):
    assert compute_lock_seconds(failures) == expected


def test_login_limiter_lock_expires(db_session):
    limiter = LoginLimiter()
    for _ in range(3):
        limiter.record_failure(db_session, "1.2.3.4:a@x.org")
    assert 0 < limiter.check(db_session, "1.2.3.4:a@x.org") <= 30

    attempt = db_session.query(LoginAttempt).one()
    attempt.locked_until = utcnow() - timedelta(seconds=1)
    db_session.commit()
    assert limiter.check(db_session, "1.2.3.4:a@x.org") == 0


def test_api_rate_limiter_counts_per_endpoint(db_session):
    limiter = ApiRateLimiter()
    for expected in range(1, 4):
        allowed, count, limit = limiter.check_and_increment(db_session, "user-1", "pdf_store", limit=3)
        assert allowed is True
        assert count == expected
        assert limit == 3

    allowed, count, _ = limiter.check_and_increment(db_session, "user-1", "pdf_store", limit=3)
    assert allowed is False
    assert count == 4

    allowed, count, _ = limiter.check_and_increment(db_session, "user-2", "pdf_store", limit=3)
    assert allowed is True
    assert count == 1


def test_api_rate_limiter_window_resets(db_session):
    limiter = ApiRateLimiter(window_minutes=1)
    limiter.check_and_increment(db_session, "user-1", "pdf_store", limit=1)
    record = db_session.query(ApiRateLimit).one()
    record.window_start = utcnow() - timedelta(minutes=2)
    db_session.commit()

    allowed, count, _ = limiter.check_and_increment(db_session, "user-1", "pdf_store", limit=1)
    assert allowed is True
    assert count == 1


def test_api_rate_limiter_default_limits(db_session):
    limiter = ApiRateLimiter()
    assert limiter.check_and_increment(db_session, "u", "pdf_store")[2] == 30
    assert limiter.check_and_increment(db_session, "u", "something_else")[2] == 120


def test_pdf_upload_is_rate_limited(client, db_session, monkeypatch):
    from backend.app import rate_limit

    monkeypatch.setitem(rate_limit.API_RATE_LIMITS, "pdf_store", 2)
    seed_user(db_session, "member.one@x.org")
    csrf = login(client, "member.one@x.org")
    body = {"data": base64.b64encode(b"%PDF-1.7").decode(), "file_name": "report.pdf"}

    for _ in range(2):
        assert client.post("/api/pdf", json=body, headers={"X-CSRF-Token": csrf}).status_code == 200
    res = client.post("/api/pdf", json=body, headers={"X-CSRF-Token": csrf})
    assert res.status_code == 429
