import threading
from datetime import date, datetime, time

import pytz

from delivery_ledger import DeliveryLedger
from notification_matcher import SchedulableEntity
from push_transport import STATUS_FAILED, STATUS_STALE
from recurrence import RecurrenceRule
from scheduler_tick import LocalClock, SchedulerTick

DAY = date(2024, 1, 1)
NOW = datetime(2024, 1, 1, 8, 45)


class FakeEntityStore:
    def __init__(self, entities=None, channels=None, missing_checkins=None):
        self.entities = list(entities or [])
        self.channels = channels or {}
        self.missing_checkins = list(missing_checkins or [])
        self.pruned = []

    def list_schedulable_entities(self):
        return list(self.entities)

    def list_channels(self, user_id):
        return [{'endpoint': e, 'keys': {'p256dh': 'p', 'auth': 'a'}} for e in self.channels.get(user_id, [])]

    def prune_channels(self, endpoints):
        self.pruned.extend(endpoints)
        for user_id, endpoints_for_user in self.channels.items():
            self.channels[user_id] = [e for e in endpoints_for_user if e not in endpoints]
        return len(endpoints)

    def users_missing_checkin(self, day_value):
        return list(self.missing_checkins)


def entity(entity_id='block:1', user_id=1, offsets=(15,), start=time(9, 0), rule=None):
    return SchedulableEntity(entity_id, user_id, 'block', 'Standup', DAY, start_time=start,
                             rule=rule, reminder_offsets=list(offsets))


def make_tick(store, transport, ledger=None, **kwargs):
    return SchedulerTick(store, ledger or DeliveryLedger(), transport, **kwargs)


def test_tick_delivers_due_reminder_once(fake_transport):
    store = FakeEntityStore([entity()], {1: ['https://push/a']})
    tick = make_tick(store, fake_transport)
    assert tick.tick(NOW) == ['block:1-2024-01-01-15']
    assert tick.tick(NOW) == []
    assert tick.tick(datetime(2024, 1, 1, 8, 46)) == []
    assert fake_transport.keys == ['block:1-2024-01-01-15']
    assert tick.last_stats['skipped_sent'] == 1
    sent = fake_transport.sent[0]
    assert sent['title'] == 'Block reminder'
    assert sent['data'] == {'url': '/calendario', 'key': 'block:1-2024-01-01-15'}


def test_tick_sends_to_every_channel_of_the_user(fake_transport):
    store = FakeEntityStore([entity()], {1: ['https://push/a', 'https://push/b'], 2: ['https://push/c']})
    make_tick(store, fake_transport).tick(NOW)
    endpoints = [c['endpoint'] for c in fake_transport.sent[0]['channels']]
    assert endpoints == ['https://push/a', 'https://push/b']


def test_failure_on_one_instance_does_not_stop_others(fake_transport):
    fake_transport.raise_for.add('https://push/broken')
    store = FakeEntityStore(
        [entity('block:1', user_id=1), entity('block:2', user_id=2)],
        {1: ['https://push/broken'], 2: ['https://push/ok']},
    )
    tick = make_tick(store, fake_transport)
    assert tick.tick(NOW) == ['block:2-2024-01-01-15']
    assert tick.last_stats['failed'] == 1
    assert tick.last_stats['delivered'] == 1


def test_all_channels_failed_is_retried_next_tick(fake_transport):
    fake_transport.statuses['https://push/a'] = STATUS_FAILED
    store = FakeEntityStore([entity()], {1: ['https://push/a']})
    ledger = DeliveryLedger()
    tick = make_tick(store, fake_transport, ledger)
    assert tick.tick(NOW) == []
    assert not ledger.is_already_sent('block:1-2024-01-01-15')

    fake_transport.statuses.clear()
    assert tick.tick(datetime(2024, 1, 1, 8, 46)) == ['block:1-2024-01-01-15']


def test_partial_success_marks_sent(fake_transport):
    fake_transport.statuses['https://push/a'] = STATUS_FAILED
    store = FakeEntityStore([entity()], {1: ['https://push/a', 'https://push/b']})
    ledger = DeliveryLedger()
    assert make_tick(store, fake_transport, ledger).tick(NOW) == ['block:1-2024-01-01-15']
    assert ledger.is_already_sent('block:1-2024-01-01-15')


def test_stale_channels_are_pruned(fake_transport):
    fake_transport.statuses['https://push/gone'] = STATUS_STALE
    store = FakeEntityStore([entity()], {1: ['https://push/gone', 'https://push/ok']})
    make_tick(store, fake_transport).tick(NOW)
    assert store.pruned == ['https://push/gone']
    assert store.channels[1] == ['https://push/ok']


def test_no_channels_is_not_marked(fake_transport):
    store = FakeEntityStore([entity()], {})
    ledger = DeliveryLedger()
    tick = make_tick(store, fake_transport, ledger)
    assert tick.tick(NOW) == []
    assert tick.last_stats['no_channels'] == 1
    assert fake_transport.sent == []
    assert not ledger.is_already_sent('block:1-2024-01-01-15')


def test_recurring_entity_gets_one_reminder_per_day(fake_transport):
    daily = entity(rule=RecurrenceRule('daily'))
    store = FakeEntityStore([daily], {1: ['https://push/a']})
    tick = make_tick(store, fake_transport)
    tick.tick(NOW)
    tick.tick(datetime(2024, 1, 2, 8, 45))
    assert fake_transport.keys == ['block:1-2024-01-01-15', 'block:1-2024-01-02-15']


def test_checkin_sweep_reminds_users_without_checkin(fake_transport):
    store = FakeEntityStore([], {4: ['https://push/d']}, missing_checkins=[4])
    tick = make_tick(store, fake_transport, checkin_hours=(22, 23))
    assert tick.tick(datetime(2024, 1, 1, 22, 0)) == ['checkin-reminder-4-2024-01-01-22']
    assert tick.tick(datetime(2024, 1, 1, 22, 30)) == []
    assert tick.tick(datetime(2024, 1, 1, 23, 0)) == ['checkin-reminder-4-2024-01-01-23']
    assert tick.tick(datetime(2024, 1, 1, 21, 0)) == []


def test_concurrent_ticks_deliver_each_key_once(fake_transport):
    store = FakeEntityStore(
        [entity('block:%s' % i, user_id=1) for i in range(5)],
        {1: ['https://push/a']},
    )
    ledger = DeliveryLedger()
    ticks = [make_tick(store, fake_transport, ledger) for _ in range(4)]
    barrier = threading.Barrier(len(ticks))

    def run(t):
        barrier.wait()
        t.tick(NOW)

    threads = [threading.Thread(target=run, args=(t,)) for t in ticks]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(fake_transport.keys) == sorted('block:%s-2024-01-01-15' % i for i in range(5))


def test_thread_pool_delivery(fake_transport):
    store = FakeEntityStore(
        [entity('block:%s' % i, user_id=1) for i in range(6)],
        {1: ['https://push/a']},
    )
    tick = make_tick(store, fake_transport, max_workers=3)
    assert len(tick.tick(NOW)) == 6
    assert len(fake_transport.sent) == 6


def test_overlapping_tick_on_same_instance_is_skipped(fake_transport):
    store = FakeEntityStore([entity()], {1: ['https://push/a']})
    tick = make_tick(store, fake_transport)
    tick._running.acquire()
    try:
        assert tick.tick(NOW) == []
    finally:
        tick._running.release()
    assert fake_transport.sent == []


def test_aware_now_is_converted_to_local_zone(fake_transport):
    store = FakeEntityStore([entity()], {1: ['https://push/a']})
    tick = make_tick(store, fake_transport, clock=LocalClock('America/Argentina/Buenos_Aires'))
    utc_now = pytz.utc.localize(datetime(2024, 1, 1, 11, 45))
    assert tick.tick(utc_now) == ['block:1-2024-01-01-15']
