import asyncio
import base64
import binascii
import logging
import re
import secrets
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import func, text
from sqlalchemy.orm import Session

from .blob_store import BlobStore
from .config import (
    CSRF_HEADER_NAME,
    LOG_LEVEL,
    PDF_MAX_BYTES,
    PDF_TTL_SECONDS,
    SESSION_COOKIE_NAME,
    SESSION_COOKIE_SECURE,
    SESSION_TTL_MINUTES,
)
from .db import engine, get_db, session_scope
from .errors import AccessError
from .identity import (
    EffectiveIdentity,
    ImpersonationRecord,
    ImpersonationStore,
    Principal,
    as_user_id,
    ensure_utc,
    resolve,
)
from .metrics import (
    PrometheusMiddleware,
    metrics_response,
    record_audit_entry,
    record_impersonation,
    record_login_attempt,
    record_pdf_operation,
    record_visibility_denial,
)
from .models import (
    AuditLog,
    Base,
    Evaluation,
    Group,
    GroupMember,
    GroupRole,
    Impersonation,
    Program,
    ProgressEntry,
    Session as AuthSession,
    User,
    UserRole,
    WeeklyAttendance,
)
from .rate_limit import ApiRateLimiter, LoginLimiter
from .security import hash_password, password_needs_rehash, password_problem, verify_password
from .visibility import DataCategory, can_view, parse_category, visible_user_ids
from .weeks import DAY_NAMES, month_bounds, sunday_of_week, week_dates, week_number, week_start

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    last_err = None
    for _ in range(10):
        try:
            Base.metadata.create_all(bind=engine)
            last_err = None
            break
        except Exception as exc:  # pragma: no cover - database may still be starting
            last_err = exc
            logger.warning("database not ready: %s", exc)
            await asyncio.sleep(1)
    if last_err:
        raise last_err
    yield


app = FastAPI(
    title="Amilou API",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(PrometheusMiddleware)

login_limiter = LoginLimiter()
api_limiter = ApiRateLimiter()
pdf_store = BlobStore(ttl_seconds=PDF_TTL_SECONDS)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
SURAH_COUNT = 114
# Keeps week arithmetic clear of date.min and date.max.
MIN_YEAR = 1900
MAX_YEAR = 9998


def utcnow():
    return datetime.now(timezone.utc)


def text_value(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_email(email) -> str:
    return (email or "").strip().lower() if isinstance(email, str) else ""


def iso(value):
    return value.isoformat() if value else None


def parse_day(value):
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        day = date.fromisoformat(value[:10])
    except ValueError:
        return None
    return day if MIN_YEAR <= day.year <= MAX_YEAR else None


def parse_int(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def user_public(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "name": user.name,
        "role": user.role,
    }


def user_admin_view(user: User) -> dict:
    return {
        **user_public(user),
        "active": user.active,
        "created_at": iso(user.created_at),
        "last_login_at": iso(user.last_login_at),
    }


def identity_public(identity: EffectiveIdentity) -> dict:
    return {
        "user_id": str(identity.user_id),
        "is_impersonating": identity.is_impersonating,
        "authorization_role": identity.authorization_role,
        "data_scope_role": identity.data_scope_role,
    }


def impersonation_public(record: ImpersonationRecord | None) -> dict | None:
    if record is None:
        return None
    return {
        "admin_id": str(record.admin_id),
        "target_id": str(record.target_user_id),
        "target_name": record.target_display_name,
        "target_role": record.target_role,
        "started_at": iso(record.started_at),
        "expires_at": iso(record.expires_at),
    }


def group_public(group: Group) -> dict:
    return {
        "id": str(group.id),
        "name": group.name,
        "description": group.description or "",
        "members": sorted(
            (
                {
                    "user_id": str(member.user_id),
                    "name": member.user.name if member.user else None,
                    "role": member.role,
                }
                for member in group.members
            ),
            key=lambda item: (item["role"] != GroupRole.leader.value, (item["name"] or "").lower()),
        ),
    }


def attendance_public(row: WeeklyAttendance) -> dict:
    days = row.days or {}
    return {
        "id": str(row.id),
        "user_id": str(row.user_id),
        "week_start": row.week_start.isoformat(),
        "week_number": week_number(row.week_start),
        "days": {name: bool(days.get(name)) for name in DAY_NAMES},
        "comment": row.comment,
        "updated_at": iso(row.updated_at),
    }


def progress_public(entry: ProgressEntry) -> dict:
    return {
        "id": str(entry.id),
        "user_id": str(entry.user_id),
        "program": entry.program,
        "date": entry.date.isoformat(),
        "surah_number": entry.surah_number,
        "verse_start": entry.verse_start,
        "verse_end": entry.verse_end,
        "comment": entry.comment,
        "created_at": iso(entry.created_at),
    }


def evaluation_public(evaluation: Evaluation) -> dict:
    return {
        "id": str(evaluation.id),
        "evaluated": user_public(evaluation.evaluated) if evaluation.evaluated else None,
        "evaluator": user_public(evaluation.evaluator) if evaluation.evaluator else None,
        "surah_number": evaluation.surah_number,
        "verse_number": evaluation.verse_number,
        "rating": evaluation.rating,
        "comment": evaluation.comment,
        "created_at": iso(evaluation.created_at),
    }


def log_audit(
    db: Session,
    action: str,
    actor_id=None,
    target_user_id=None,
    metadata: dict | None = None,
    request: Request | None = None,
):
    db.add(
        AuditLog(
            actor_user_id=actor_id,
            target_user_id=target_user_id,
            action=action,
            metadata_json=metadata or {},
            ip_address=request.client.host if request and request.client else None,
            user_agent=request.headers.get("user-agent") if request else None,
        )
    )
    record_audit_entry(action)


def create_session(db: Session, user: User, request: Request) -> AuthSession:
    now = utcnow()
    session = AuthSession(
        id=secrets.token_urlsafe(32),
        user_id=user.id,
        csrf_token=secrets.token_urlsafe(24),
        created_at=now,
        expires_at=now + timedelta(minutes=SESSION_TTL_MINUTES),
        ip_address=request.client.host if request.client else None,
        user_agent=(request.headers.get("user-agent") or "")[:255] or None,
    )
    db.add(session)
    db.commit()
    return session


def set_session_cookie(response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        httponly=True,
        secure=SESSION_COOKIE_SECURE,
        samesite="lax",
        max_age=SESSION_TTL_MINUTES * 60,
        path="/",
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(
        SESSION_COOKIE_NAME,
        httponly=True,
        secure=SESSION_COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


def current_principal(request: Request) -> Principal | None:
    return getattr(request.state, "principal", None)


def csrf_guard(request: Request) -> None:
    if current_principal(request) is None:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    token = request.headers.get(CSRF_HEADER_NAME)
    if not token or not secrets.compare_digest(token, request.state.csrf_token or ""):
        raise HTTPException(status_code=403, detail="Invalid CSRF token.")


def access_error(exc: AccessError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


def require_identity(request: Request, db: Session) -> EffectiveIdentity:
    try:
        return resolve(current_principal(request), ImpersonationStore(db))
    except AccessError as exc:
        raise access_error(exc) from exc


def require_admin(identity: EffectiveIdentity) -> None:
    # Always the logged-in user's own role, even while viewing as someone else.
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Admin required.")


def visible_ids(db: Session, identity: EffectiveIdentity, category) -> set:
    try:
        return visible_user_ids(db, identity.user_id, category)
    except AccessError as exc:
        raise access_error(exc) from exc


def target_user_id(db: Session, identity: EffectiveIdentity, requested, category: DataCategory):
    """The user a read or write is about: the acting user unless another visible one is named."""
    if requested in (None, ""):
        return identity.user_id
    user_id = as_user_id(requested)
    if user_id is None:
        raise HTTPException(status_code=400, detail="Invalid user id.")
    if user_id == identity.user_id:
        return user_id
    try:
        allowed = can_view(db, identity.user_id, user_id, category)
    except AccessError as exc:
        raise access_error(exc) from exc
    if not allowed:
        record_visibility_denial(category.value)
        raise HTTPException(status_code=403, detail="Not allowed to access this user's data.")
    return user_id


def rate_limited(db: Session, identity: EffectiveIdentity, endpoint: str) -> None:
    allowed, _, _ = api_limiter.check_and_increment(db, str(identity.principal_id), endpoint)
    if not allowed:
        raise HTTPException(status_code=429, detail="Too many requests. Try again shortly.")


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    request.state.principal = None
    request.state.csrf_token = None
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        with session_scope() as db:
            session = db.get(AuthSession, token)
            if session and ensure_utc(session.expires_at) <= utcnow():
                db.delete(session)
                db.commit()
                session = None
            if session:
                user = db.get(User, session.user_id)
                if user and user.active:
                    request.state.principal = Principal(id=user.id, role=user.role, session_id=session.id)
                    request.state.csrf_token = session.csrf_token
    return await call_next(request)


@app.get("/api/health")
def health(db: Session = Depends(get_db)):
    db_ok = True
    try:
        db.execute(text("select 1"))
    except Exception:
        logger.exception("health check query failed")
        db_ok = False
    return {
        "status": "ok" if db_ok else "degraded",
        "db_ok": db_ok,
        "time": utcnow().isoformat(),
    }


@app.get("/metrics")
def prometheus_metrics():
    return metrics_response()


@app.get("/api/metrics")
def metrics(request: Request, db: Session = Depends(get_db)):
    identity = require_identity(request, db)
    require_admin(identity)
    return {
        "users_active": {
            role.value: db.query(User).filter(User.role == role.value, User.active.is_(True)).count()
            for role in UserRole
        },
        "sessions": db.query(AuthSession).count(),
        "impersonations": db.query(Impersonation).count(),
        "groups": db.query(Group).count(),
        "attendance_weeks": db.query(WeeklyAttendance).count(),
        "progress_entries": db.query(ProgressEntry).count(),
        "evaluations": db.query(Evaluation).count(),
        "pdf_store_entries": len(pdf_store),
        "time": utcnow().isoformat(),
    }


@app.get("/api/programs")
def list_programs():
    return {"items": [program.value for program in Program]}


@app.get("/api/auth/me")
def auth_me(request: Request, db: Session = Depends(get_db)):
    identity = require_identity(request, db)
    user = db.get(User, identity.principal_id)
    return {
        "user": user_public(user),
        "csrf_token": request.state.csrf_token,
        "identity": identity_public(identity),
        "impersonating": impersonation_public(identity.impersonation),
    }


@app.post("/api/auth/login")
def login(request: Request, payload: dict, db: Session = Depends(get_db)):
    email = normalize_email(payload.get("email"))
    password = payload.get("password") or ""
    limiter_key = f"{request.client.host if request.client else 'unknown'}:{email}"

    if login_limiter.check(db, limiter_key) > 0:
        record_login_attempt(False, rate_limited=True)
        raise HTTPException(status_code=429, detail="Too many attempts. Try again shortly.")

    user = db.query(User).filter(User.email == email).first() if email else None
    if not user or not isinstance(password, str) or not verify_password(user.password_hash, password):
        login_limiter.record_failure(db, limiter_key)
        record_login_attempt(False)
        raise HTTPException(status_code=401, detail="Invalid email or password.")
    if not user.active:
        raise HTTPException(status_code=403, detail="Account disabled.")

    if password_needs_rehash(user.password_hash):
        user.password_hash = hash_password(password)
    user.last_login_at = utcnow()
    login_limiter.reset(db, limiter_key)
    log_audit(db, "login", user.id, user.id, request=request)
    session = create_session(db, user, request)
    record_login_attempt(True)

    response = JSONResponse({"ok": True, "user": user_public(user)})
    set_session_cookie(response, session.id)
    return response


@app.post("/api/auth/logout")
def logout(request: Request, db: Session = Depends(get_db)):
    csrf_guard(request)
    session = db.get(AuthSession, current_principal(request).session_id)
    if session:
        # Cascades to the session's impersonation record.
        db.delete(session)
        db.commit()
    response = JSONResponse({"ok": True})
    clear_session_cookie(response)
    return response


@app.post("/api/admin/bootstrap")
def bootstrap_admin(request: Request, payload: dict, db: Session = Depends(get_db)):
    if db.query(User).filter(User.role == UserRole.admin.value).first():
        raise HTTPException(status_code=403, detail="Admin already exists.")
    email = normalize_email(payload.get("email"))
    name = text_value(payload.get("name"))
    password = payload.get("password")
    if not EMAIL_RE.match(email) or not name:
        raise HTTPException(status_code=400, detail="Valid email and name are required.")
    problem = password_problem(password)
    if problem:
        raise HTTPException(status_code=400, detail=problem)

    user = User(email=email, name=name, role=UserRole.admin.value, password_hash=hash_password(password))
    db.add(user)
    db.flush()
    log_audit(db, "bootstrap_admin", target_user_id=user.id, request=request)
    db.commit()
    logger.info("bootstrap admin %s created", user.id)
    return {"ok": True, "user": user_public(user)}


@app.post("/api/admin/users")
def create_user(request: Request, payload: dict, db: Session = Depends(get_db)):
    csrf_guard(request)
    identity = require_identity(request, db)
    require_admin(identity)

    email = normalize_email(payload.get("email"))
    name = text_value(payload.get("name"))
    role = (text_value(payload.get("role")) or UserRole.member.value).lower()
    password = payload.get("password")

    if role not in {r.value for r in UserRole}:
        raise HTTPException(status_code=400, detail="Invalid role.")
    if not EMAIL_RE.match(email) or not name:
        raise HTTPException(status_code=400, detail="Valid email and name are required.")
    problem = password_problem(password)
    if problem:
        raise HTTPException(status_code=400, detail=problem)
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=409, detail="Email already in use.")

    user = User(email=email, name=name, role=role, password_hash=hash_password(password))
    db.add(user)
    db.flush()
    log_audit(db, "create_user", identity.principal_id, user.id, {"role": role}, request)
    db.commit()
    return {"ok": True, "user": user_public(user)}


@app.get("/api/admin/users")
def list_users(
    request: Request,
    role: str = "",
    search: str = "",
    active: str = "",
    db: Session = Depends(get_db),
):
    identity = require_identity(request, db)
    require_admin(identity)
    query = db.query(User)
    if role:
        query = query.filter(User.role == role.lower())
    if active:
        query = query.filter(User.active.is_(active.lower() in {"1", "true", "yes"}))
    if search:
        term = f"%{search.lower()}%"
        query = query.filter(User.email.ilike(term) | User.name.ilike(term))
    users = query.order_by(User.name.asc()).all()
    return {"items": [user_admin_view(user) for user in users]}


@app.patch("/api/admin/users/{user_id}")
def update_user(request: Request, user_id: str, payload: dict, db: Session = Depends(get_db)):
    csrf_guard(request)
    identity = require_identity(request, db)
    require_admin(identity)

    uid = as_user_id(user_id)
    user = db.get(User, uid) if uid else None
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")

    changes = {}
    if "name" in payload:
        name = text_value(payload.get("name"))
        if not name:
            raise HTTPException(status_code=400, detail="Name is required.")
        if name != user.name:
            changes["name"] = name
    if payload.get("email"):
        email = normalize_email(payload["email"])
        if not EMAIL_RE.match(email):
            raise HTTPException(status_code=400, detail="Invalid email.")
        if email != user.email:
            if db.query(User).filter(User.email == email, User.id != user.id).first():
                raise HTTPException(status_code=409, detail="Email already in use.")
            changes["email"] = email
    if payload.get("role"):
        role = str(payload["role"]).strip().lower()
        if role not in {r.value for r in UserRole}:
            raise HTTPException(status_code=400, detail="Invalid role.")
        if role != user.role:
            changes["role"] = role
    if "active" in payload:
        if not isinstance(payload["active"], bool):
            raise HTTPException(status_code=400, detail="Active must be true or false.")
        if payload["active"] != user.active:
            changes["active"] = payload["active"]
    if payload.get("password"):
        problem = password_problem(payload["password"])
        if problem:
            raise HTTPException(status_code=400, detail=problem)
        changes["password_hash"] = hash_password(payload["password"])

    if user.id == identity.principal_id and changes.get("active") is False:
        raise HTTPException(status_code=400, detail="Cannot deactivate your own account.")
    losing_admin = user.role == UserRole.admin.value and (
        changes.get("role", UserRole.admin.value) != UserRole.admin.value or changes.get("active") is False
    )
    if losing_admin:
        admins = db.query(User).filter(User.role == UserRole.admin.value, User.active.is_(True)).count()
        if admins <= 1:
            raise HTTPException(status_code=400, detail="Cannot remove the last admin.")

    for field, value in changes.items():
        setattr(user, field, value)
    if changes:
        audited = sorted("password" if key == "password_hash" else key for key in changes)
        log_audit(db, "update_user", identity.principal_id, user.id, {"changes": audited}, request)
        db.commit()
    return {"ok": True, "user": user_admin_view(user)}


@app.post("/api/admin/impersonate")
def start_impersonation(request: Request, payload: dict, db: Session = Depends(get_db)):
    csrf_guard(request)
    identity = require_identity(request, db)
    principal = current_principal(request)
    store = ImpersonationStore(db)
    try:
        record = store.start(principal, payload.get("user_id"))
    except AccessError as exc:
        if exc.status_code == 403:
            record_impersonation("denied")
        raise access_error(exc) from exc

    log_audit(
        db,
        "impersonation_start",
        identity.principal_id,
        record.target_user_id,
        {"replaced": str(identity.user_id) if identity.is_impersonating else None},
        request,
    )
    db.commit()
    record_impersonation("start")
    return {"ok": True, "impersonating": impersonation_public(record)}


@app.delete("/api/admin/impersonate")
def stop_impersonation(request: Request, db: Session = Depends(get_db)):
    csrf_guard(request)
    identity = require_identity(request, db)
    removed = ImpersonationStore(db).stop(current_principal(request))
    if removed is not None:
        log_audit(db, "impersonation_stop", identity.principal_id, removed.target_user_id, request=request)
        db.commit()
        record_impersonation("stop")
    return {"ok": True}


@app.get("/api/admin/impersonate")
def impersonation_status(request: Request, db: Session = Depends(get_db)):
    identity = require_identity(request, db)
    return {"impersonating": impersonation_public(identity.impersonation)}


@app.get("/api/users/visible")
def users_visible(request: Request, category: str = "", db: Session = Depends(get_db)):
    identity = require_identity(request, db)
    ids = visible_ids(db, identity, category)
    users = db.query(User).filter(User.id.in_(ids)).all() if ids else []
    users.sort(key=lambda u: (u.id != identity.user_id, (u.name or u.email).lower()))
    return {
        "category": parse_category(category).value,
        "items": [{**user_public(user), "is_self": user.id == identity.user_id} for user in users],
    }


@app.get("/api/user/profile")
def get_profile(request: Request, db: Session = Depends(get_db)):
    identity = require_identity(request, db)
    user = db.get(User, identity.user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    return {**user_admin_view(user), "is_impersonating": identity.is_impersonating}


@app.put("/api/user/profile")
def update_profile(request: Request, payload: dict, db: Session = Depends(get_db)):
    csrf_guard(request)
    identity = require_identity(request, db)
    user = db.get(User, identity.user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    if "name" in payload:
        name = text_value(payload.get("name"))
        if not name:
            raise HTTPException(status_code=400, detail="Name is required.")
        user.name = name
    db.commit()
    return user_public(user)


@app.get("/api/groups")
def list_groups(request: Request, db: Session = Depends(get_db)):
    identity = require_identity(request, db)
    acting = db.get(User, identity.user_id)
    query = db.query(Group)
    if not acting or acting.role != UserRole.admin.value:
        member_of = db.query(GroupMember.group_id).filter(GroupMember.user_id == identity.user_id)
        query = query.filter(Group.id.in_(member_of))
    groups = query.order_by(Group.name.asc()).all()
    return {"items": [group_public(group) for group in groups]}


@app.post("/api/admin/groups")
def create_group(request: Request, payload: dict, db: Session = Depends(get_db)):
    csrf_guard(request)
    identity = require_identity(request, db)
    require_admin(identity)
    name = text_value(payload.get("name"))
    if not name:
        raise HTTPException(status_code=400, detail="Group name is required.")
    if db.query(Group).filter(Group.name == name).first():
        raise HTTPException(status_code=409, detail="Group already exists.")
    group = Group(name=name, description=text_value(payload.get("description")) or None)
    db.add(group)
    db.flush()
    log_audit(db, "create_group", identity.principal_id, metadata={"group_id": str(group.id)}, request=request)
    db.commit()
    return {"ok": True, "group": group_public(group)}


def load_group(db: Session, group_id: str) -> Group:
    gid = as_user_id(group_id)
    group = db.get(Group, gid) if gid else None
    if not group:
        raise HTTPException(status_code=404, detail="Group not found.")
    return group


@app.post("/api/admin/groups/{group_id}/members")
def upsert_group_member(request: Request, group_id: str, payload: dict, db: Session = Depends(get_db)):
    csrf_guard(request)
    identity = require_identity(request, db)
    require_admin(identity)
    group = load_group(db, group_id)

    uid = as_user_id(payload.get("user_id"))
    user = db.get(User, uid) if uid else None
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    role = (text_value(payload.get("role")) or GroupRole.member.value).lower()
    if role not in {r.value for r in GroupRole}:
        raise HTTPException(status_code=400, detail="Invalid group role.")
    if role == GroupRole.leader.value and user.role not in {UserRole.leader.value, UserRole.admin.value}:
        raise HTTPException(status_code=400, detail="Only leaders or admins can lead a group.")

    member = (
        db.query(GroupMember)
        .filter(GroupMember.group_id == group.id, GroupMember.user_id == user.id)
        .first()
    )
    if member:
        member.role = role
    else:
        db.add(GroupMember(group_id=group.id, user_id=user.id, role=role))
    log_audit(
        db,
        "set_group_member",
        identity.principal_id,
        user.id,
        {"group_id": str(group.id), "role": role},
        request,
    )
    db.commit()
    db.refresh(group)
    return {"ok": True, "group": group_public(group)}


@app.delete("/api/admin/groups/{group_id}/members/{user_id}")
def remove_group_member(request: Request, group_id: str, user_id: str, db: Session = Depends(get_db)):
    csrf_guard(request)
    identity = require_identity(request, db)
    require_admin(identity)
    group = load_group(db, group_id)
    uid = as_user_id(user_id)
    member = (
        db.query(GroupMember)
        .filter(GroupMember.group_id == group.id, GroupMember.user_id == uid)
        .first()
        if uid
        else None
    )
    if not member:
        raise HTTPException(status_code=404, detail="Membership not found.")
    db.delete(member)
    log_audit(db, "remove_group_member", identity.principal_id, uid, {"group_id": str(group.id)}, request)
    db.commit()
    return {"ok": True}


@app.get("/api/attendance")
def list_attendance(
    request: Request,
    month: str = "",
    user_id: str = "",
    db: Session = Depends(get_db),
):
    identity = require_identity(request, db)
    target = target_user_id(db, identity, user_id, DataCategory.attendance)
    if month:
        match = re.match(r"^(\d{4})-(\d{2})$", month)
        if not match or not 1 <= int(match.group(2)) <= 12 or not MIN_YEAR <= int(match.group(1)) <= MAX_YEAR:
            raise HTTPException(status_code=400, detail="Month must be YYYY-MM.")
        first, next_first = month_bounds(int(match.group(1)), int(match.group(2)))
    else:
        today = date.today()
        first, next_first = month_bounds(today.year, today.month)

    rows = (
        db.query(WeeklyAttendance)
        .filter(
            WeeklyAttendance.user_id == target,
            WeeklyAttendance.week_start >= week_start(first),
            WeeklyAttendance.week_start < next_first,
        )
        .order_by(WeeklyAttendance.week_start.asc())
        .all()
    )
    return {"user_id": str(target), "items": [attendance_public(row) for row in rows]}


@app.post("/api/attendance")
def save_attendance(request: Request, payload: dict, db: Session = Depends(get_db)):
    csrf_guard(request)
    identity = require_identity(request, db)
    target = target_user_id(db, identity, payload.get("user_id"), DataCategory.attendance)
    day = parse_day(payload.get("date"))
    if day is None:
        raise HTTPException(status_code=400, detail="Date is required (YYYY-MM-DD).")
    raw_days = payload.get("days") or {}
    if not isinstance(raw_days, dict):
        raise HTTPException(status_code=400, detail="Days must be an object.")
    days = {name: bool(raw_days.get(name, False)) for name in DAY_NAMES}
    comment = text_value(payload.get("comment")) or None
    start = week_start(day)

    row = (
        db.query(WeeklyAttendance)
        .filter(WeeklyAttendance.user_id == target, WeeklyAttendance.week_start == start)
        .first()
    )
    if row:
        row.days = days
        row.comment = comment
        row.updated_at = utcnow()
    else:
        row = WeeklyAttendance(
            user_id=target,
            week_start=start,
            days=days,
            comment=comment,
            created_by=identity.principal_id,
        )
        db.add(row)
    db.commit()
    return attendance_public(row)


def stats_window(period: str, year: int, month: int | None, week: int | None) -> tuple[date, date]:
    today = date.today()
    if period == "week":
        start = sunday_of_week(year, week) if week else week_start(today)
        return start, start + timedelta(days=7)
    if period == "month":
        return month_bounds(year, month or today.month)
    return date(year, 1, 1), date(year + 1, 1, 1)


@app.get("/api/attendance/stats")
def attendance_stats(
    request: Request,
    period: str = "week",
    user_id: str = "",
    year: int | None = None,
    month: int | None = None,
    week: int | None = None,
    db: Session = Depends(get_db),
):
    identity = require_identity(request, db)
    target = target_user_id(db, identity, user_id, DataCategory.stats)
    if period not in {"week", "month", "year"}:
        raise HTTPException(status_code=400, detail="Period must be week, month or year.")
    if month is not None and not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Invalid month.")
    if week is not None and not 1 <= week <= 53:
        raise HTTPException(status_code=400, detail="Invalid week.")
    if year is not None and not MIN_YEAR <= year <= MAX_YEAR:
        raise HTTPException(status_code=400, detail="Invalid year.")
    start, end = stats_window(period, year or date.today().year, month, week)

    rows = (
        db.query(WeeklyAttendance)
        .filter(
            WeeklyAttendance.user_id == target,
            WeeklyAttendance.week_start >= week_start(start),
            WeeklyAttendance.week_start < end,
        )
        .all()
    )
    attended = 0
    for row in rows:
        days = row.days or {}
        for name, day in zip(DAY_NAMES, week_dates(row.week_start)):
            if start <= day < end and days.get(name):
                attended += 1
    total_days = (end - start).days
    return {
        "user_id": str(target),
        "period": period,
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "total_days": total_days,
        "attended_days": attended,
        "percentage": round(attended * 100 / total_days) if total_days else 0,
    }


@app.get("/api/progress")
def list_progress(
    request: Request,
    user_id: str = "",
    program: str = "",
    limit: int = 100,
    db: Session = Depends(get_db),
):
    identity = require_identity(request, db)
    target = target_user_id(db, identity, user_id, DataCategory.progress)
    query = db.query(ProgressEntry).filter(ProgressEntry.user_id == target)
    if program:
        query = query.filter(ProgressEntry.program == program.upper())
    limit = max(1, min(int(limit or 100), 500))
    entries = query.order_by(ProgressEntry.date.desc(), ProgressEntry.created_at.desc()).limit(limit).all()
    return {"user_id": str(target), "items": [progress_public(entry) for entry in entries]}


@app.post("/api/progress")
def add_progress(request: Request, payload: dict, db: Session = Depends(get_db)):
    csrf_guard(request)
    identity = require_identity(request, db)
    target = target_user_id(db, identity, payload.get("user_id"), DataCategory.progress)

    program = str(payload.get("program") or "").upper()
    if program not in {p.value for p in Program}:
        raise HTTPException(status_code=400, detail="Invalid program.")
    surah = parse_int(payload.get("surah_number"))
    verse_start = parse_int(payload.get("verse_start"))
    verse_end = parse_int(payload.get("verse_end"))
    if surah is None or not 1 <= surah <= SURAH_COUNT:
        raise HTTPException(status_code=400, detail="Invalid surah number.")
    if verse_start is None or verse_end is None or verse_start < 1 or verse_end < verse_start:
        raise HTTPException(status_code=400, detail="Invalid verse range.")
    day = parse_day(payload.get("date")) if payload.get("date") else date.today()
    if day is None:
        raise HTTPException(status_code=400, detail="Invalid date (YYYY-MM-DD).")

    entry = ProgressEntry(
        user_id=target,
        program=program,
        date=day,
        surah_number=surah,
        verse_start=verse_start,
        verse_end=verse_end,
        comment=text_value(payload.get("comment")) or None,
        created_by=identity.principal_id,
    )
    db.add(entry)
    db.commit()
    return progress_public(entry)


@app.get("/api/evaluations")
def list_evaluations(request: Request, user_id: str = "", db: Session = Depends(get_db)):
    identity = require_identity(request, db)
    target = target_user_id(db, identity, user_id, DataCategory.evaluations)
    received = (
        db.query(Evaluation)
        .filter(Evaluation.evaluated_id == target)
        .order_by(Evaluation.created_at.desc())
        .all()
    )
    given = (
        db.query(Evaluation)
        .filter(Evaluation.evaluator_id == target)
        .order_by(Evaluation.created_at.desc())
        .all()
    )
    return {
        "user_id": str(target),
        "received": [evaluation_public(e) for e in received],
        "given": [evaluation_public(e) for e in given],
    }


@app.post("/api/evaluations")
def add_evaluation(request: Request, payload: dict, db: Session = Depends(get_db)):
    csrf_guard(request)
    identity = require_identity(request, db)
    evaluated = target_user_id(db, identity, payload.get("evaluated_id"), DataCategory.evaluations)

    surah = parse_int(payload.get("surah_number"))
    verse = parse_int(payload.get("verse_number"))
    if surah is None or not 1 <= surah <= SURAH_COUNT:
        raise HTTPException(status_code=400, detail="Invalid surah number.")
    if verse is None or verse < 1:
        raise HTTPException(status_code=400, detail="Invalid verse number.")
    rating = payload.get("rating")
    if rating is not None:
        rating = parse_int(rating)
        if rating is None or not 1 <= rating <= 5:
            raise HTTPException(status_code=400, detail="Rating must be between 1 and 5.")
    comment = text_value(payload.get("comment"))
    if not comment:
        raise HTTPException(status_code=400, detail="Comment is required.")

    evaluation = Evaluation(
        evaluated_id=evaluated,
        evaluator_id=identity.user_id,
        surah_number=surah,
        verse_number=verse,
        rating=rating,
        comment=comment,
    )
    db.add(evaluation)
    db.commit()
    return evaluation_public(evaluation)


@app.get("/api/admin/stats")
def admin_stats(request: Request, group_id: str = "", db: Session = Depends(get_db)):
    identity = require_identity(request, db)
    require_admin(identity)

    if group_id:
        group = load_group(db, group_id)
        user_ids = [member.user_id for member in group.members]
    else:
        user_ids = [uid for (uid,) in db.query(User.id).filter(User.role != UserRole.admin.value).all()]
    if not user_ids:
        return {"items": []}

    year_start = date(date.today().year, 1, 1)
    verses = dict(
        db.query(
            ProgressEntry.user_id,
            func.sum(ProgressEntry.verse_end - ProgressEntry.verse_start + 1),
        )
        .filter(ProgressEntry.user_id.in_(user_ids), ProgressEntry.program == Program.memorization.value)
        .group_by(ProgressEntry.user_id)
        .all()
    )
    ratings = {
        uid: (count, avg)
        for uid, count, avg in db.query(
            Evaluation.evaluated_id, func.count(Evaluation.id), func.avg(Evaluation.rating)
        )
        .filter(Evaluation.evaluated_id.in_(user_ids))
        .group_by(Evaluation.evaluated_id)
        .all()
    }
    attended = {}
    for row in (
        db.query(WeeklyAttendance)
        .filter(WeeklyAttendance.user_id.in_(user_ids), WeeklyAttendance.week_start >= week_start(year_start))
        .all()
    ):
        days = row.days or {}
        count = sum(
            1 for name, day in zip(DAY_NAMES, week_dates(row.week_start)) if day >= year_start and days.get(name)
        )
        attended[row.user_id] = attended.get(row.user_id, 0) + count

    users = db.query(User).filter(User.id.in_(user_ids)).order_by(User.name.asc()).all()
    items = []
    for user in users:
        evaluation_count, avg_rating = ratings.get(user.id, (0, None))
        items.append(
            {
                **user_public(user),
                "memorized_verses": int(verses.get(user.id) or 0),
                "attended_days_this_year": attended.get(user.id, 0),
                "evaluations_received": evaluation_count,
                "average_rating": round(float(avg_rating), 2) if avg_rating is not None else None,
            }
        )
    return {"items": items}


@app.post("/api/pdf")
def store_pdf(request: Request, payload: dict, db: Session = Depends(get_db)):
    csrf_guard(request)
    identity = require_identity(request, db)
    rate_limited(db, identity, "pdf_store")

    data = payload.get("data")
    file_name = text_value(payload.get("file_name")).replace("/", "_").replace("\\", "_")
    if not isinstance(data, str) or not data or not file_name:
        raise HTTPException(status_code=400, detail="Missing data or file name.")
    try:
        buffer = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Data must be base64.") from exc
    if len(buffer) > PDF_MAX_BYTES:
        raise HTTPException(status_code=413, detail="PDF too large.")
    if not file_name.lower().endswith(".pdf"):
        file_name = f"{file_name}.pdf"

    pdf_id = pdf_store.store(buffer, file_name[:200])
    record_pdf_operation("store", len(pdf_store))
    return {"id": pdf_id, "url": f"/api/pdf/{pdf_id}", "expires_in": PDF_TTL_SECONDS}


@app.get("/api/pdf/{pdf_id}")
def fetch_pdf(request: Request, pdf_id: str, inline: bool = False):
    if current_principal(request) is None:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    entry = pdf_store.get(pdf_id)
    if entry is None:
        record_pdf_operation("miss", len(pdf_store))
        logger.info("pdf %s expired or unknown", pdf_id[:8])
        raise HTTPException(status_code=404, detail="PDF expired or not found.")
    record_pdf_operation("hit", len(pdf_store))
    disposition = "inline" if inline else "attachment"
    return Response(
        content=entry.buffer,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f"{disposition}; filename*=UTF-8''{quote(entry.file_name)}",
            "Cache-Control": "no-store",
        },
    )
