"""Decide which reminders are due on a scheduler tick."""

import json
import logging
from datetime import time, timedelta
from typing import Dict, Iterable, List

from recurrence import RecurrenceRule, date_key, expand_occurrences, parse_date_key, parse_exceptions

logger = logging.getLogger(__name__)

ENTITY_BLOCK = 'block'
ENTITY_TASK = 'task'
ENTITY_CHECKIN = 'checkin'

DEFAULT_TASK_TIME = time(9, 0)
LOOKAHEAD_DAYS = 7
AT_START_GRACE_MINUTES = 5
NEAR_OFFSET_MINUTES = 5
NEAR_MARGIN_MINUTES = 1
FAR_MARGIN_MINUTES = 2
DEFAULT_CHECKIN_HOURS = (22, 23)


class InvalidReminderConfig(ValueError):
    """Raised when an entity's reminder list cannot be parsed."""


def parse_reminder_offsets(raw) -> List[int]:
    """
    Normalize reminder configuration into sorted unique minute offsets.

    Accepts [{"minutesBefore": 15}], [15, 0], their JSON text, or None/empty.
    """
    if raw is None or raw == '':
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise InvalidReminderConfig(f"Reminder config is not valid JSON: {exc}") from exc
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise InvalidReminderConfig(f"Reminder config must be a list, got {type(raw).__name__}")
    offsets = set()
    for entry in raw:
        value = entry.get('minutesBefore', entry.get('minutes_before')) if isinstance(entry, dict) else entry
        if isinstance(value, bool):
            raise InvalidReminderConfig(f"Invalid reminder offset: {value!r}")
        try:
            minutes = int(value)
        except (TypeError, ValueError) as exc:
            raise InvalidReminderConfig(f"Invalid reminder offset: {value!r}") from exc
        if minutes < 0:
            raise InvalidReminderConfig(f"Reminder offset must be >= 0, got {minutes}")
        offsets.add(minutes)
    return sorted(offsets)


def minute_of_day(value) -> int:
    return (value.hour * 60) + value.minute


def format_time_before(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes} min"
    if minutes < 1440:
        hours, mins = divmod(minutes, 60)
        return f"{hours}h {mins}min" if mins else f"{hours}h"
    days = minutes // 1440
    hours = (minutes % 1440) // 60
    return f"{days}d {hours}h" if hours else f"{days}d"


class SchedulableEntity:
    """A block or task as seen by the reminder engine."""

    def __init__(self, entity_id, user_id, kind, title, anchor, start_time=None,
                 rule=None, exceptions=None, reminder_offsets=None):
        self.entity_id = str(entity_id)
        self.user_id = user_id
        self.kind = kind
        self.title = title or ''
        self.anchor = parse_date_key(anchor)
        self.start_time = start_time
        self.rule = RecurrenceRule.from_dict(rule)
        self.exceptions = parse_exceptions(exceptions)
        self.reminder_offsets = list(reminder_offsets or [])

    def effective_start_time(self, default_task_time=DEFAULT_TASK_TIME):
        if self.start_time is not None:
            return self.start_time
        return default_task_time

    def __repr__(self):
        return f"SchedulableEntity({self.entity_id!r}, anchor={self.anchor}, offsets={self.reminder_offsets})"


class ReminderInstance:
    """A reminder that is due now. Its ``key`` is the ledger identity."""

    def __init__(self, entity_id, user_id, occurrence_date, offset_minutes, title, body,
                 kind=ENTITY_BLOCK, key=None):
        self.entity_id = entity_id
        self.user_id = user_id
        self.occurrence_date = occurrence_date
        self.offset_minutes = offset_minutes
        self.title = title
        self.body = body
        self.kind = kind
        self.key = key or reminder_key(entity_id, occurrence_date, offset_minutes)

    def __repr__(self):
        return f"ReminderInstance({self.key!r})"


def reminder_key(entity_id, occurrence_date, offset_minutes) -> str:
    return f"{entity_id}-{date_key(occurrence_date)}-{offset_minutes}"


def checkin_key(user_id, day_value, hour) -> str:
    return f"checkin-reminder-{user_id}-{date_key(day_value)}-{hour}"


def reminder_margin(offset_minutes: int) -> int:
    if offset_minutes <= NEAR_OFFSET_MINUTES:
        return NEAR_MARGIN_MINUTES
    return FAR_MARGIN_MINUTES


def is_reminder_due(now_minute, start_minute, offset_minutes) -> bool:
    """Minute-level due check for one offset of one occurrence happening today."""
    target_minute = start_minute - offset_minutes
    if target_minute < 0:
        return False
    margin = reminder_margin(offset_minutes)
    if offset_minutes == 0:
        # At-start reminders may go out late, up to the grace window after start.
        return target_minute - margin <= now_minute <= start_minute + AT_START_GRACE_MINUTES
    if start_minute < now_minute:
        return False
    return abs(now_minute - target_minute) <= margin


def _reminder_text(entity, offset_minutes):
    label = 'Task' if entity.kind == ENTITY_TASK else 'Block'
    if offset_minutes == 0:
        return f"{label} started", f'Your {label.lower()} "{entity.title}" is starting now'
    return f"{label} reminder", f'In {format_time_before(offset_minutes)} you have scheduled: "{entity.title}"'


def match_entity(now, entity, today, default_task_time=DEFAULT_TASK_TIME) -> List[ReminderInstance]:
    if not entity.reminder_offsets or entity.anchor is None:
        return []
    occurrences = expand_occurrences(
        entity.rule,
        entity.anchor,
        today,
        today + timedelta(days=LOOKAHEAD_DAYS),
        entity.exceptions,
    )
    now_minute = minute_of_day(now)
    start_minute = minute_of_day(entity.effective_start_time(default_task_time))
    due = []
    for occurrence in occurrences:
        if occurrence != today:
            continue
        for offset in entity.reminder_offsets:
            if not is_reminder_due(now_minute, start_minute, offset):
                continue
            title, body = _reminder_text(entity, offset)
            due.append(ReminderInstance(
                entity.entity_id,
                entity.user_id,
                occurrence,
                offset,
                title,
                body,
                kind=entity.kind,
            ))
    return due


def match_due(now, entities: Iterable[SchedulableEntity], today=None,
              default_task_time=DEFAULT_TASK_TIME) -> List[ReminderInstance]:
    """Collect every due reminder across ``entities``, one per key."""
    today = today or now.date()
    seen: Dict[str, ReminderInstance] = {}
    for entity in entities:
        try:
            instances = match_entity(now, entity, today, default_task_time)
        except (AttributeError, TypeError, ValueError) as exc:
            logger.warning("Skipping reminders for %s: %s", getattr(entity, 'entity_id', entity), exc)
            continue
        for instance in instances:
            seen.setdefault(instance.key, instance)
    return list(seen.values())


def match_checkin_due(now, user_ids, today=None, hours=DEFAULT_CHECKIN_HOURS) -> List[ReminderInstance]:
    """One check-in reminder per user while ``now`` is inside the configured hours."""
    today = today or now.date()
    if now.hour not in set(hours or ()):
        return []
    due = []
    for user_id in sorted(set(user_ids or [])):
        due.append(ReminderInstance(
            f"checkin:{user_id}",
            user_id,
            today,
            0,
            'Daily check-in',
            'Take a minute to review your day. Want to do your check-in now?',
            kind=ENTITY_CHECKIN,
            key=checkin_key(user_id, today, now.hour),
        ))
    return due


def parse_checkin_hours(raw, default=DEFAULT_CHECKIN_HOURS):
    if raw is None or raw == '':
        return tuple(default)
    values = raw if isinstance(raw, (list, tuple)) else str(raw).split(',')
    hours = []
    for val in values:
        try:
            hour = int(val)
        except (TypeError, ValueError):
            continue
        if 0 <= hour <= 23:
            hours.append(hour)
    return tuple(sorted(set(hours))) or tuple(default)
