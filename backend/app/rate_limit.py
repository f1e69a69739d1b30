from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from .models import ApiRateLimit, LoginAttempt

# Requests per user per window.
API_RATE_LIMITS = {
    "pdf_store": 30,
    "default": 120,
}


def utcnow():
    return datetime.now(timezone.utc)


def as_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def compute_lock_seconds(failed_count: int) -> int:
    if failed_count < 3:
        return 0
    if failed_count < 5:
        return 30
    if failed_count < 7:
        return 120
    if failed_count < 9:
        return 300
    return 600


class LoginLimiter:
    """
    Throttles failed logins per identifier (client address + email).
    Lockouts grow with the number of consecutive failures.
    """

    def _attempt(self, db: Session, key: str) -> Optional[LoginAttempt]:
        return db.query(LoginAttempt).filter(LoginAttempt.identifier == key).first()

    def check(self, db: Session, key: str) -> int:
        """Seconds left on the lock for ``key``, 0 when unlocked."""
        attempt = self._attempt(db, key)
        if not attempt:
            return 0
        locked_until = as_aware(attempt.locked_until)
        now = utcnow()
        if locked_until and locked_until > now:
            return int((locked_until - now).total_seconds()) or 1
        return 0

    def record_failure(self, db: Session, key: str) -> int:
        attempt = self._attempt(db, key)
        if attempt:
            attempt.failed_count += 1
        else:
            attempt = LoginAttempt(identifier=key, failed_count=1)
            db.add(attempt)

        lock_seconds = compute_lock_seconds(attempt.failed_count)
        attempt.locked_until = utcnow() + timedelta(seconds=lock_seconds) if lock_seconds else None
        db.commit()
        return lock_seconds

    def reset(self, db: Session, key: str) -> None:
        attempt = self._attempt(db, key)
        if attempt:
            db.delete(attempt)
            db.commit()


class ApiRateLimiter:
    """Fixed-window request counter per user and endpoint."""

    def __init__(self, window_minutes: int = 1):
        self.window_minutes = window_minutes

    def check_and_increment(
        self,
        db: Session,
        identifier: str,
        endpoint: str,
        limit: Optional[int] = None,
    ) -> tuple[bool, int, int]:
        """Count one request; returns (allowed, count_in_window, limit)."""
        if limit is None:
            limit = API_RATE_LIMITS.get(endpoint, API_RATE_LIMITS["default"])

        now = utcnow()
        window_floor = now - timedelta(minutes=self.window_minutes)
        record = (
            db.query(ApiRateLimit)
            .filter(ApiRateLimit.identifier == identifier, ApiRateLimit.endpoint == endpoint)
            .first()
        )
        if not record:
            record = ApiRateLimit(identifier=identifier, endpoint=endpoint, request_count=1, window_start=now)
            db.add(record)
        elif as_aware(record.window_start) < window_floor:
            record.window_start = now
            record.request_count = 1
        else:
            record.request_count += 1
        db.commit()
        return record.request_count <= limit, record.request_count, limit
