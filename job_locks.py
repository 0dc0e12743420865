"""Named database locks that keep background work exclusive across workers."""

import logging
import os
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, OperationalError

from models import db, JobLock

logger = logging.getLogger(__name__)

STALE_LOCK_AFTER = timedelta(minutes=5)


def _worker_id():
    return str(os.getpid())


def acquire_job_lock(lock_name, now=None, stale_after=STALE_LOCK_AFTER):
    """
    Try to take ``lock_name``. Returns True when this worker now holds it.

    A lock older than ``stale_after`` is considered abandoned and taken over.
    """
    now = now or datetime.utcnow()
    worker_id = _worker_id()
    if db.engine.dialect.name == 'sqlite':
        # SQLite doesn't support FOR UPDATE; use insert + fallback update for stale locks.
        lock = db.session.get(JobLock, lock_name)
        if lock is None:
            try:
                db.session.add(JobLock(job_name=lock_name, locked_at=now, locked_by=worker_id))
                db.session.commit()
                return True
            except IntegrityError:
                db.session.rollback()
                lock = db.session.get(JobLock, lock_name)
        if lock and now - lock.locked_at >= stale_after:
            lock.locked_at = now
            lock.locked_by = worker_id
            db.session.commit()
            return True
        if lock:
            logger.info("Lock %s held by %s, skipping", lock_name, lock.locked_by)
        return False

    try:
        lock = db.session.query(JobLock).filter_by(job_name=lock_name).with_for_update(nowait=True).first()
        if lock:
            if now - lock.locked_at < stale_after:
                logger.info("Lock %s held by %s, skipping", lock_name, lock.locked_by)
                db.session.rollback()
                return False
            lock.locked_at = now
            lock.locked_by = worker_id
        else:
            db.session.add(JobLock(job_name=lock_name, locked_at=now, locked_by=worker_id))
        db.session.commit()
        return True
    except (IntegrityError, OperationalError) as exc:
        # Row locked by another worker (nowait) or inserted concurrently.
        db.session.rollback()
        logger.info("Lock %s acquisition failed (worker %s): %s", lock_name, worker_id, exc)
        return False


def release_job_lock(lock_name):
    try:
        lock = db.session.query(JobLock).filter_by(job_name=lock_name).first()
        if lock and lock.locked_by == _worker_id():
            db.session.delete(lock)
            db.session.commit()
    except Exception as exc:
        db.session.rollback()
        logger.error("Error releasing lock %s: %s", lock_name, exc)
