"""
Who a request acts as.

The session authenticator (the HTTP middleware in ``main``) yields a
:class:`Principal`. :func:`resolve` combines it with the caller's
impersonation record, if any, into the :class:`EffectiveIdentity` that
handlers pass down explicitly. ``authorization_role`` always belongs to the
logged-in principal and gates actions; ``user_id`` scopes data.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from .config import IMPERSONATION_TTL_MINUTES
from .errors import Forbidden, Unauthenticated, UnknownUser
from .models import Impersonation, User, UserRole

logger = logging.getLogger(__name__)

IMPERSONATOR_ROLES = frozenset({UserRole.admin.value})


def utcnow():
    return datetime.now(timezone.utc)


def ensure_utc(value):
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def as_user_id(value) -> Optional[uuid.UUID]:
    """Coerce a user id from a path, query or JSON value; None if malformed."""
    if isinstance(value, uuid.UUID):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return uuid.UUID(value.strip())
    except ValueError:
        return None


@dataclass(frozen=True)
class Principal:
    id: uuid.UUID
    role: str
    session_id: str

    @property
    def can_impersonate(self) -> bool:
        return self.role in IMPERSONATOR_ROLES


@dataclass(frozen=True)
class ImpersonationRecord:
    admin_id: uuid.UUID
    target_user_id: uuid.UUID
    target_display_name: str
    target_role: str
    started_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class EffectiveIdentity:
    user_id: uuid.UUID
    is_impersonating: bool
    authorization_role: str
    data_scope_role: str
    principal_id: uuid.UUID
    impersonation: Optional[ImpersonationRecord] = None

    @property
    def data_scope_user_id(self) -> uuid.UUID:
        return self.user_id

    @property
    def is_admin(self) -> bool:
        return self.authorization_role == UserRole.admin.value


def _record_from_row(row: Impersonation) -> ImpersonationRecord:
    target = row.target
    return ImpersonationRecord(
        admin_id=row.admin_id,
        target_user_id=row.target_user_id,
        target_display_name=row.target_display_name,
        target_role=target.role if target else UserRole.member.value,
        started_at=ensure_utc(row.started_at),
        expires_at=ensure_utc(row.expires_at),
    )


class ImpersonationStore:
    """
    Impersonation records keyed by login session id.

    Rows live server-side, so a client cannot forge one, and two admins in
    different sessions never see each other's record. Only ``start`` and
    ``stop`` write.
    """

    def __init__(self, db: Session, ttl_minutes: int = IMPERSONATION_TTL_MINUTES, clock=utcnow):
        self.db = db
        self.ttl = timedelta(minutes=ttl_minutes)
        self.clock = clock

    def start(self, principal: Principal, target_user_id, target_display_name: str | None = None) -> ImpersonationRecord:
        # Role is checked before the target is looked at so a refusal says nothing about it.
        if not principal.can_impersonate:
            logger.warning("user %s (role %s) tried to start impersonation", principal.id, principal.role)
            raise Forbidden("Admin required.")

        target_id = as_user_id(target_user_id)
        target = self.db.get(User, target_id) if target_id else None
        if target is None:
            raise UnknownUser("User not found.")

        now = self.clock()
        row = self.db.get(Impersonation, principal.session_id)
        if row is None:
            row = Impersonation(session_id=principal.session_id)
            self.db.add(row)
        row.admin_id = principal.id
        row.target_user_id = target.id
        row.target_display_name = (target_display_name or target.name or target.email)[:120]
        row.started_at = now
        row.expires_at = now + self.ttl
        row.target = target
        self.db.commit()

        logger.info("admin %s now viewing as user %s", principal.id, target.id)
        return _record_from_row(row)

    def stop(self, principal: Principal) -> Optional[ImpersonationRecord]:
        """Drop the session's record; returns what was removed, if anything."""
        row = self.db.get(Impersonation, principal.session_id)
        if row is None:
            return None
        record = _record_from_row(row)
        self.db.delete(row)
        self.db.commit()
        logger.info("admin %s stopped viewing as user %s", principal.id, record.target_user_id)
        return record

    def current(self, principal: Optional[Principal]) -> Optional[ImpersonationRecord]:
        if principal is None or not principal.can_impersonate:
            return None
        row = self.db.get(Impersonation, principal.session_id)
        if row is None or row.admin_id != principal.id:
            return None
        if ensure_utc(row.expires_at) <= self.clock():
            return None
        return _record_from_row(row)


def resolve(principal: Optional[Principal], store: ImpersonationStore) -> EffectiveIdentity:
    """The acting identity for one request. Pure read; safe to call repeatedly."""
    if principal is None:
        raise Unauthenticated("Not authenticated.")

    record = store.current(principal)
    if record is not None:
        return EffectiveIdentity(
            user_id=record.target_user_id,
            is_impersonating=True,
            authorization_role=principal.role,
            data_scope_role=record.target_role,
            principal_id=principal.id,
            impersonation=record,
        )
    return EffectiveIdentity(
        user_id=principal.id,
        is_impersonating=False,
        authorization_role=principal.role,
        data_scope_role=principal.role,
        principal_id=principal.id,
    )
