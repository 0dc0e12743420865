from datetime import date, datetime, time

import app as app_module
from entity_store import SqlEntityStore
from models import db, Block, PushSubscription


def add_block(user, notifications, title='Gym'):
    block = Block(
        user_id=user.id,
        title=title,
        day=date(2024, 1, 1),
        start_time=time(9, 0),
        end_time=time(10, 0),
        notifications=notifications,
    )
    db.session.add(block)
    db.session.commit()
    return block


def test_malformed_reminder_config_is_skipped(user, install_tick, fake_transport):
    add_block(user, '{oops', title='Broken')
    add_block(user, '[15]')
    db.session.add(PushSubscription(user_id=user.id, endpoint='https://push/a', p256dh='p', auth='a'))
    db.session.commit()

    entities = SqlEntityStore().list_schedulable_entities()
    assert [e.entity_id for e in entities] == ['block:2']

    install_tick(datetime(2024, 1, 1, 8, 45))
    assert app_module.run_notification_tick() == ['block:2-2024-01-01-15']
    assert fake_transport.keys == ['block:2-2024-01-01-15']


def test_rows_without_reminders_are_not_listed(user):
    add_block(user, None)
    add_block(user, '[]')
    assert SqlEntityStore().list_schedulable_entities() == []
