"""Storage-side collaborators of the scheduler tick, backed by Flask-SQLAlchemy."""

import logging

from models import db, Block, DailyCheckIn, NotificationSetting, PushSubscription, Task
from notification_matcher import InvalidReminderConfig

logger = logging.getLogger(__name__)


def get_or_create_notification_settings(user_id):
    prefs = NotificationSetting.query.filter_by(user_id=user_id).first()
    if not prefs:
        prefs = NotificationSetting(user_id=user_id)
        db.session.add(prefs)
        db.session.commit()
    return prefs


def _muted_user_ids(flag):
    rows = NotificationSetting.query.filter(
        db.or_(NotificationSetting.push_enabled.is_(False), flag.is_(False))
    ).all()
    return {row.user_id for row in rows}


class SqlEntityStore:

    def list_schedulable_entities(self):
        """Blocks and tasks that carry at least one reminder, skipping muted owners."""
        muted = _muted_user_ids(NotificationSetting.reminders_enabled)
        entities = []
        for model in (Block, Task):
            rows = model.query.filter(
                model.notifications.isnot(None),
                model.notifications != '',
                model.notifications != '[]',
            ).all()
            for row in rows:
                if row.user_id in muted:
                    continue
                try:
                    entity = row.to_entity()
                except InvalidReminderConfig as exc:
                    logger.warning("Skipping %s: malformed reminder config (%s)", row.entity_id(), exc)
                    continue
                if entity.reminder_offsets:
                    entities.append(entity)
        return entities

    def list_channels(self, user_id):
        subs = PushSubscription.query.filter_by(user_id=user_id).all()
        return [sub.to_channel() for sub in subs]

    def prune_channels(self, endpoints):
        endpoints = [e for e in (endpoints or []) if e]
        if not endpoints:
            return 0
        deleted = PushSubscription.query.filter(
            PushSubscription.endpoint.in_(endpoints)
        ).delete(synchronize_session=False)
        db.session.commit()
        logger.warning("Removed %s invalid push subscription(s)", deleted)
        return deleted

    def users_missing_checkin(self, day_value):
        """Users with a push subscription and check-in reminders on who have not checked in on ``day_value``."""
        muted = _muted_user_ids(NotificationSetting.checkin_reminders_enabled)
        subscribed = {row.user_id for row in db.session.query(PushSubscription.user_id).distinct()}
        checked_in = {
            row.user_id for row in db.session.query(DailyCheckIn.user_id).filter(DailyCheckIn.day == day_value)
        }
        return sorted(subscribed - checked_in - muted)
