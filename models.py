import json
from datetime import datetime, date

from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash

from recurrence import RecurrenceRule, date_key, parse_exceptions, serialize_exceptions
from notification_matcher import ENTITY_BLOCK, ENTITY_TASK, SchedulableEntity, parse_reminder_offsets

db = SQLAlchemy()


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=True)
    password_hash = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Relationships
    blocks = db.relationship('Block', backref='owner', lazy=True, cascade="all, delete-orphan")
    tasks = db.relationship('Task', backref='owner', lazy=True, cascade="all, delete-orphan")
    checkins = db.relationship('DailyCheckIn', backref='user', lazy=True, cascade="all, delete-orphan")
    push_subscriptions = db.relationship('PushSubscription', backref='user', lazy=True, cascade="all, delete-orphan")
    notification_settings = db.relationship('NotificationSetting', backref='user', lazy=True, cascade="all, delete-orphan")

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)


class RepeatableMixin:
    """
    Recurrence columns shared by blocks and tasks.

    The rule is stored as plain columns (days_of_week as a comma list,
    0=Sunday) and exceptions/notifications as JSON text.
    """
    repeat_kind = db.Column(db.String(20), nullable=True)  # daily | weekly | custom
    repeat_interval = db.Column(db.Integer, nullable=True)
    repeat_days_of_week = db.Column(db.String(20), nullable=True)
    repeat_end_date = db.Column(db.Date, nullable=True)
    repeat_count = db.Column(db.Integer, nullable=True)
    repeat_exceptions = db.Column(db.Text, nullable=True)
    notifications = db.Column(db.Text, nullable=True)

    def recurrence_rule(self):
        return RecurrenceRule(
            kind=self.repeat_kind,
            interval=self.repeat_interval,
            days_of_week=self.repeat_days_of_week,
            end_date=self.repeat_end_date,
            count=self.repeat_count,
        )

    def set_recurrence_rule(self, rule):
        rule = RecurrenceRule.from_dict(rule)
        if not rule.is_recurring:
            self.repeat_kind = None
            self.repeat_interval = None
            self.repeat_days_of_week = None
            self.repeat_end_date = None
            self.repeat_count = None
            return
        self.repeat_kind = rule.kind
        self.repeat_interval = rule.interval
        self.repeat_days_of_week = ','.join(str(d) for d in rule.days_of_week) or None
        self.repeat_end_date = rule.end_date
        self.repeat_count = rule.count

    def exception_dates(self):
        return parse_exceptions(self.repeat_exceptions)

    def add_exceptions(self, days):
        self.repeat_exceptions = serialize_exceptions(self.exception_dates() | set(days or []))

    def reminder_offsets(self):
        return parse_reminder_offsets(self.notifications)

    def set_reminder_offsets(self, offsets):
        offsets = sorted(set(offsets or []))
        self.notifications = json.dumps([{'minutesBefore': m} for m in offsets]) if offsets else None

    def _repeat_dict(self):
        try:
            offsets = self.reminder_offsets()
        except ValueError:
            offsets = []
        return {
            'repeat_rule': self.recurrence_rule().to_dict(),
            'repeat_exceptions': sorted(date_key(d) for d in self.exception_dates()),
            'notifications': [{'minutesBefore': m} for m in offsets],
        }


class Block(RepeatableMixin, db.Model):
    """Time block on the calendar. Times are naive local times in DEFAULT_TIMEZONE."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    day = db.Column(db.Date, nullable=False, default=date.today)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    color = db.Column(db.String(30), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def entity_id(self):
        return f"{ENTITY_BLOCK}:{self.id}"

    def to_entity(self):
        return SchedulableEntity(
            self.entity_id(),
            self.user_id,
            ENTITY_BLOCK,
            self.title,
            self.day,
            start_time=self.start_time,
            rule=self.recurrence_rule(),
            exceptions=self.exception_dates(),
            reminder_offsets=self.reminder_offsets(),
        )

    def to_dict(self):
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'date': self.day.isoformat() if self.day else None,
            'start': self.start_time.strftime('%H:%M') if self.start_time else None,
            'end': self.end_time.strftime('%H:%M') if self.end_time else None,
            'color': self.color,
        }
        data.update(self._repeat_dict())
        return data


class Task(RepeatableMixin, db.Model):
    """Dated task. Tasks without a time are reminded relative to DEFAULT_TASK_TIME."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    day = db.Column(db.Date, nullable=False, default=date.today)
    start_time = db.Column(db.Time, nullable=True)
    priority = db.Column(db.String(10), default='media')  # alta | media | baja
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def entity_id(self):
        return f"{ENTITY_TASK}:{self.id}"

    def to_entity(self):
        return SchedulableEntity(
            self.entity_id(),
            self.user_id,
            ENTITY_TASK,
            self.title,
            self.day,
            start_time=self.start_time,
            rule=self.recurrence_rule(),
            exceptions=self.exception_dates(),
            reminder_offsets=self.reminder_offsets(),
        )

    def to_dict(self):
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'date': self.day.isoformat() if self.day else None,
            'time': self.start_time.strftime('%H:%M') if self.start_time else None,
            'priority': self.priority,
        }
        data.update(self._repeat_dict())
        return data


class DailyCheckIn(db.Model):
    """End-of-day check-in; one per user per day."""
    __table_args__ = (db.UniqueConstraint('user_id', 'day', name='uq_checkin_user_day'),)
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    day = db.Column(db.Date, nullable=False)
    mood = db.Column(db.Integer, nullable=True)
    energy = db.Column(db.Integer, nullable=True)
    note = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'date': self.day.isoformat() if self.day else None,
            'mood': self.mood,
            'energy': self.energy,
            'note': self.note,
        }


class NotificationSetting(db.Model):
    """Per-user notification preferences."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    push_enabled = db.Column(db.Boolean, default=True)
    reminders_enabled = db.Column(db.Boolean, default=True)
    checkin_reminders_enabled = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'push_enabled': self.push_enabled,
            'reminders_enabled': self.reminders_enabled,
            'checkin_reminders_enabled': self.checkin_reminders_enabled,
        }


class PushSubscription(db.Model):
    """Stored Web Push subscriptions for a user (VAPID)."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    endpoint = db.Column(db.String(500), nullable=False, unique=True)
    p256dh = db.Column(db.String(255), nullable=False)
    auth = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_channel(self):
        return {
            'endpoint': self.endpoint,
            'keys': {'p256dh': self.p256dh, 'auth': self.auth},
        }


class SentNotification(db.Model):
    """Delivery ledger: one append-only row per delivered reminder key."""
    id = db.Column(db.Integer, primary_key=True)
    notification_id = db.Column(db.String(255), nullable=False, unique=True)
    sent_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)


class JobLock(db.Model):
    """Named lock row used to keep background work exclusive across workers."""
    job_name = db.Column(db.String(255), primary_key=True)
    locked_at = db.Column(db.DateTime, nullable=False)
    locked_by = db.Column(db.String(100), nullable=True)
