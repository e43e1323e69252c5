from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from deskbook.config import settings
from deskbook.security import AuthStore


@pytest.fixture()
def now():
    return [datetime(2026, 10, 19, 7, 0)]


@pytest.fixture()
def auth(now):
    return AuthStore(allowed_domain="@Example.com", clock=lambda: now[0])


def test_login_code_is_single_use(auth):
    code = auth.issue_otp("alice@example.com")
    assert auth.verify_otp("ALICE@example.com", code)
    assert not auth.verify_otp("alice@example.com", code)


def test_login_code_runs_out_of_attempts(auth):
    code = auth.issue_otp("alice@example.com")
    wrong = "x" * len(code)
    for _ in range(settings.otp_max_attempts):
        assert not auth.verify_otp("alice@example.com", wrong)
    assert not auth.verify_otp("alice@example.com", code)


def test_login_code_expires(auth, now):
    code = auth.issue_otp("alice@example.com")
    now[0] += timedelta(minutes=settings.otp_ttl_minutes, seconds=1)
    assert not auth.verify_otp("alice@example.com", code)


def test_foreign_domain_rejected(auth):
    with pytest.raises(ValueError):
        auth.issue_otp("mallory@example.org")


def test_purge_reports_only_expired_sessions(auth, now):
    ended = []
    auth.on_session_end = ended.append
    old = auth.create_session("u1")
    now[0] += timedelta(hours=settings.session_ttl_hours - 1)
    recent = auth.create_session("u2")
    now[0] += timedelta(hours=1, minutes=1)

    assert auth.purge_expired() == [old]
    assert ended == [old]
    assert auth.get_session_user(recent) == "u2"
