import argparse
import json
import logging
from datetime import datetime, timezone

from .db import session_scope
from .models import Impersonation, LoginAttempt, Session as AuthSession

logger = logging.getLogger(__name__)


def utcnow():
    return datetime.now(timezone.utc)


def parse_iso(value):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def collect_expired(db, now):
    sessions = db.query(AuthSession).filter(AuthSession.expires_at <= now).all()
    expired_session_ids = {session.id for session in sessions}
    # Lapsed overrides whose session is still alive; the rest go with their session.
    impersonations = [
        row
        for row in db.query(Impersonation).filter(Impersonation.expires_at <= now).all()
        if row.session_id not in expired_session_ids
    ]
    attempts = (
        db.query(LoginAttempt)
        .filter(LoginAttempt.locked_until.isnot(None), LoginAttempt.locked_until <= now)
        .all()
    )
    return {"sessions": sessions, "impersonations": impersonations, "login_attempts": attempts}


def purge(db, targets) -> dict:
    deleted = {}
    for key, rows in targets.items():
        for row in rows:
            db.delete(row)
        deleted[key] = len(rows)
    db.commit()
    return deleted


def run_cleanup(dry_run=True, now=None):
    now = now or utcnow()
    with session_scope() as db:
        targets = collect_expired(db, now)
        report = {
            "mode": "dry-run" if dry_run else "apply",
            "cutoff": now.isoformat(),
            "counts": {key: len(rows) for key, rows in targets.items()},
        }
        if not dry_run:
            report["deleted"] = purge(db, targets)
            logger.info("cleanup removed %s", report["deleted"])
        return report


def main(argv=None):
    parser = argparse.ArgumentParser(description="Remove expired sessions, impersonations and login locks.")
    parser.add_argument("--apply", action="store_true", help="Delete rows instead of reporting them.")
    parser.add_argument("--now", type=str, default="", help="Treat this ISO timestamp as the current time.")
    parser.add_argument("--json", action="store_true", help="Print JSON output.")
    args = parser.parse_args(argv)
    now = parse_iso(args.now)
    if args.now and now is None:
        parser.error(f"--now is not an ISO timestamp: {args.now!r}")

    report = run_cleanup(dry_run=not args.apply, now=now)
    if args.json:
        print(json.dumps(report, indent=2))
        return report

    print(f"Cutoff: {report['cutoff']}")
    print(f"Mode: {report['mode']}")
    for key, value in report["counts"].items():
        print(f"  {key}: {value}")
    if "deleted" in report:
        print("Deleted:")
        for key, value in report["deleted"].items():
            print(f"  {key}: {value}")
    return report


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    main()
