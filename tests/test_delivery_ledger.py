import threading
from datetime import datetime

import pytest
from sqlalchemy.exc import IntegrityError

from delivery_ledger import DeliveryLedger, MemoryLedgerStore, SqlLedgerStore
from job_locks import acquire_job_lock, release_job_lock
from models import db, JobLock, SentNotification

KEY = 'block:1-2024-01-01-15'


def test_mark_sent_twice_keeps_first_record():
    ledger = DeliveryLedger()
    first = datetime(2024, 1, 1, 8, 45)
    assert not ledger.is_already_sent(KEY)
    assert ledger.mark_sent(KEY, first) is True
    assert ledger.mark_sent(KEY, datetime(2024, 1, 1, 8, 46)) is False
    assert ledger.is_already_sent(KEY)
    assert ledger.sent_at(KEY) == first


def test_exclusive_blocks_a_second_holder():
    ledger = DeliveryLedger(MemoryLedgerStore())
    with ledger.exclusive(KEY) as first:
        assert first is True
        with ledger.exclusive(KEY) as second:
            assert second is False
        with ledger.exclusive('other-key') as other:
            assert other is True
    with ledger.exclusive(KEY) as again:
        assert again is True


def test_concurrent_marks_record_once():
    ledger = DeliveryLedger()
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(ledger.mark_sent(KEY))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1


def test_sql_ledger_duplicate_insert_is_a_no_op(app_ctx):
    ledger = DeliveryLedger(SqlLedgerStore())
    assert ledger.mark_sent(KEY, datetime(2024, 1, 1, 8, 45)) is True
    assert ledger.mark_sent(KEY, datetime(2024, 1, 1, 8, 46)) is False
    assert SentNotification.query.filter_by(notification_id=KEY).count() == 1
    assert ledger.sent_at(KEY) == datetime(2024, 1, 1, 8, 45)
    assert ledger.is_already_sent(KEY)
    assert not ledger.is_already_sent('block:1-2024-01-02-15')


def test_sql_exclusive_uses_job_lock_rows(app_ctx):
    ledger = DeliveryLedger(SqlLedgerStore())
    with ledger.exclusive(KEY) as acquired:
        assert acquired is True
        assert db.session.get(JobLock, 'notify:' + KEY) is not None
        with ledger.exclusive(KEY) as second:
            assert second is False
    assert db.session.get(JobLock, 'notify:' + KEY) is None


def test_stale_job_lock_is_taken_over(app_ctx):
    assert acquire_job_lock('notification_tick', now=datetime(2024, 1, 1, 8, 0)) is True
    assert acquire_job_lock('notification_tick', now=datetime(2024, 1, 1, 8, 2)) is False
    assert acquire_job_lock('notification_tick', now=datetime(2024, 1, 1, 8, 6)) is True
    release_job_lock('notification_tick')
    assert db.session.get(JobLock, 'notification_tick') is None


class StubClock:
    def __init__(self, value):
        self.value = value

    def now(self):
        return self.value


def test_mark_sent_defaults_to_ledger_clock():
    local_now = datetime(2024, 1, 1, 8, 45)
    ledger = DeliveryLedger(clock=StubClock(local_now))
    ledger.mark_sent(KEY)
    assert ledger.sent_at(KEY) == local_now


def test_key_lock_released_after_failed_flush(app_ctx):
    ledger = DeliveryLedger(SqlLedgerStore())
    with ledger.exclusive(KEY) as acquired:
        assert acquired is True
        db.session.add(SentNotification(notification_id='dup', sent_at=datetime(2024, 1, 1)))
        db.session.add(SentNotification(notification_id='dup', sent_at=datetime(2024, 1, 1)))
        with pytest.raises(IntegrityError):
            db.session.flush()
    assert db.session.get(JobLock, 'notify:' + KEY) is None
    with ledger.exclusive(KEY) as again:
        assert again is True
