# kleanly/cron_tasks.py
from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import text


@contextmanager
def cron_lock(db, name: str):
    """
    Session-level advisory lock so overlapping cron hits skip instead of
    running twice. Yields False when another runner holds it. No-op (always
    True) on databases without advisory locks.
    """
    if db.engine.dialect.name != "postgresql":
        yield True
        return

    key = f"cron:{name}"
    with db.engine.connect() as conn:
        acquired = bool(conn.execute(text("SELECT pg_try_advisory_lock(hashtext(:k))"), {"k": key}).scalar())
        try:
            yield acquired
        finally:
            if acquired:
                conn.execute(text("SELECT pg_advisory_unlock(hashtext(:k))"), {"k": key})
                conn.commit()


def run_hourly(app, db):
    """Sponsorship housekeeping: stale checkout locks and ended paid periods."""
    from kleanly.models import utcnow
    from kleanly.services import make_ledger, make_locks

    now = utcnow()
    app.logger.info("[CRON] hourly tick at %s", now.isoformat())
    results = {}

    try:
        results["locks_expired"] = make_locks().expire_stale(now)
    except Exception:
        db.session.rollback()
        app.logger.exception("[CRON] expire_stale locks failed")

    try:
        results["sponsorships_ended"] = make_ledger().expire_ended(now)
    except Exception:
        db.session.rollback()
        app.logger.exception("[CRON] expire_ended sponsorships failed")

    app.logger.info("[CRON] hourly results %s", results)
    return results


TASKS = {
    "hourly": run_hourly,
}
