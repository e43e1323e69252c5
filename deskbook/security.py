from __future__ import annotations

import logging
import secrets
import smtplib
import ssl
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Callable

from deskbook.config import settings

logger = logging.getLogger(__name__)

SessionEnded = Callable[[str], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class LoginChallenge:
    code: str
    expires_at: datetime
    attempts_left: int

    def usable(self, now: datetime) -> bool:
        return now <= self.expires_at and self.attempts_left > 0


@dataclass
class SessionGrant:
    user_id: str
    expires_at: datetime


class AuthStore:
    """One-time login codes and bearer sessions, held in process memory.

    A session is the lifetime of a user's booking wizard: whenever a session
    ends, by logout or by expiring, ``on_session_end`` is told its token so
    per-session state can be dropped with it.
    """

    def __init__(
        self,
        allowed_domain: str | None = None,
        on_session_end: SessionEnded | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        domain = allowed_domain if allowed_domain is not None else settings.allowed_email_domain
        self.allowed_domain = domain.lstrip("@").lower() if domain else None
        self.on_session_end = on_session_end
        self.clock = clock
        self._challenges: dict[str, LoginChallenge] = {}
        self._sessions: dict[str, SessionGrant] = {}
        self._lock = threading.Lock()

    def validate_email_domain(self, email: str) -> None:
        if self.allowed_domain and not email.lower().endswith(f"@{self.allowed_domain}"):
            raise ValueError(f"Only @{self.allowed_domain} addresses can book desks")

    # login codes

    def issue_otp(self, email: str) -> str:
        self.validate_email_domain(email)
        code = "".join(secrets.choice("0123456789") for _ in range(settings.otp_length))
        challenge = LoginChallenge(
            code=code,
            expires_at=self.clock() + timedelta(minutes=settings.otp_ttl_minutes),
            attempts_left=settings.otp_max_attempts,
        )
        with self._lock:
            self._challenges[email.lower()] = challenge
        return code

    def verify_otp(self, email: str, code: str) -> bool:
        self.validate_email_domain(email)
        key = email.lower()
        with self._lock:
            challenge = self._challenges.get(key)
            if challenge is None:
                return False
            if not challenge.usable(self.clock()):
                del self._challenges[key]
                return False
            if not secrets.compare_digest(challenge.code, code):
                challenge.attempts_left -= 1
                return False
            del self._challenges[key]
        return True

    # sessions

    def create_session(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        grant = SessionGrant(user_id=user_id, expires_at=self.clock() + timedelta(hours=settings.session_ttl_hours))
        with self._lock:
            self._sessions[token] = grant
        return token

    def is_active(self, token: str) -> bool:
        with self._lock:
            grant = self._sessions.get(token)
            return grant is not None and self.clock() <= grant.expires_at

    def get_session_user(self, token: str) -> str | None:
        if not self.is_active(token):
            self._end([token])
            return None
        with self._lock:
            grant = self._sessions.get(token)
        return grant.user_id if grant else None

    def logout(self, token: str) -> None:
        self._end([token])

    def purge_expired(self) -> list[str]:
        now = self.clock()
        with self._lock:
            stale = [token for token, grant in self._sessions.items() if now > grant.expires_at]
        if stale:
            logger.info("Ending %d expired session(s)", len(stale))
        self._end(stale)
        return stale

    def _end(self, tokens: list[str]) -> None:
        with self._lock:
            ended = [token for token in tokens if self._sessions.pop(token, None) is not None]
        # Callbacks run outside the lock; they may call back into this store.
        if self.on_session_end is not None:
            for token in ended:
                self.on_session_end(token)


def send_otp_email(recipient: str, code: str) -> None:
    if not settings.smtp_host:
        logger.warning("SMTP not configured; desk booking code for %s: %s", recipient, code)
        return

    msg = EmailMessage()
    msg["Subject"] = "Your desk booking sign-in code"
    msg["From"] = settings.smtp_from
    msg["To"] = recipient
    msg.set_content(
        f"Use {code} to sign in and book a desk.\n"
        f"The code is valid for {settings.otp_ttl_minutes} minutes and can be tried "
        f"{settings.otp_max_attempts} times."
    )

    with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as smtp:
        smtp.starttls(context=ssl.create_default_context())
        if settings.smtp_username and settings.smtp_password:
            smtp.login(settings.smtp_username, settings.smtp_password)
        smtp.send_message(msg)
