"""At-most-once gate for reminder delivery."""

import logging
import threading
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError

from scheduler_tick import LocalClock

logger = logging.getLogger(__name__)

LEDGER_LOCK_PREFIX = 'notify:'


class MemoryLedgerStore:
    """Process-local ledger store. Thread-safe; used by tests and single-process runs."""

    def __init__(self):
        self._records = {}
        self._guard = threading.Lock()
        self._held = set()

    def contains(self, key):
        with self._guard:
            return key in self._records

    def insert(self, key, sent_at):
        with self._guard:
            if key in self._records:
                return False
            self._records[key] = sent_at
            return True

    def sent_at(self, key):
        with self._guard:
            return self._records.get(key)

    def try_lock(self, key):
        with self._guard:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def unlock(self, key):
        with self._guard:
            self._held.discard(key)


class SqlLedgerStore:
    """Ledger backed by SentNotification rows (unique notification_id)."""

    def insert(self, key, sent_at):
        from models import db, SentNotification

        db.session.add(SentNotification(notification_id=key, sent_at=sent_at))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info("Ledger key %s already recorded, keeping first entry", key)
            return False
        return True

    def contains(self, key):
        from models import SentNotification

        return SentNotification.query.filter_by(notification_id=key).first() is not None

    def sent_at(self, key):
        from models import SentNotification

        row = SentNotification.query.filter_by(notification_id=key).first()
        return row.sent_at if row else None

    def try_lock(self, key):
        from job_locks import acquire_job_lock

        return acquire_job_lock(LEDGER_LOCK_PREFIX + key)

    def unlock(self, key):
        from job_locks import release_job_lock
        from models import db

        # A failed flush inside the held block leaves the session unusable until rolled back.
        db.session.rollback()
        release_job_lock(LEDGER_LOCK_PREFIX + key)


class DeliveryLedger:
    """
    Records which reminder keys were delivered.

    ``mark_sent`` is append-only: recording a key twice keeps the first
    record and returns False instead of raising.
    """

    def __init__(self, store=None, clock=None):
        self.store = store if store is not None else MemoryLedgerStore()
        # sent_at defaults to naive local time from the tick's clock.
        self.clock = clock or LocalClock()

    def is_already_sent(self, key):
        return self.store.contains(key)

    def mark_sent(self, key, sent_at=None):
        return self.store.insert(key, sent_at or self.clock.now())

    def sent_at(self, key):
        return self.store.sent_at(key)

    @contextmanager
    def exclusive(self, key):
        """Hold ``key`` for a check-send-mark sequence; yields False when another worker has it."""
        acquired = self.store.try_lock(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.store.unlock(key)
