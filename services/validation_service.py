import re
from datetime import date, datetime, time

from notification_matcher import InvalidReminderConfig, parse_reminder_offsets
from recurrence import ALLOWED_KINDS, KIND_NONE, RecurrenceRule

TIME_PATTERN = r"^(?P<hour>\d{1,2})(:(?P<minute>\d{1,2}))?(:(?P<second>\d{1,2}))?(?P<ampm>a|p|am|pm)?$"


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ["1", "true", "yes", "on"]


def parse_time_str(val):
    """Parse 24h or am/pm strings into a time object; return None on failure."""
    if not val:
        return None
    if isinstance(val, time):
        return val
    s = str(val).strip().lower().replace(" ", "")

    m = re.match(TIME_PATTERN, s)
    if not m:
        return None
    try:
        hour = int(m.group("hour"))
        minute = int(m.group("minute") or 0)
        ampm = m.group("ampm")
        if m.group("second") is not None:
            sec_val = int(m.group("second"))
            if not (0 <= sec_val <= 59):
                return None
        if ampm:
            if ampm in ("p", "pm") and hour != 12:
                hour += 12
            if ampm in ("a", "am") and hour == 12:
                hour = 0
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            return None
        return time(hour=hour, minute=minute)
    except (TypeError, ValueError):
        return None


def parse_day_value(raw):
    if isinstance(raw, date):
        return raw
    try:
        return datetime.strptime(str(raw), "%Y-%m-%d").date()
    except (TypeError, ValueError):
        return None


def parse_positive_int(raw, default=None):
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value >= 1 else default


def validate_repeat_rule(raw):
    """
    Strictly validate a repeat rule coming from a request.

    Returns (rule, error). Stored rules are coerced leniently by
    RecurrenceRule; request payloads are rejected instead so bad input
    never reaches the database.
    """
    if raw in (None, '', {}):
        return RecurrenceRule(), None
    if not isinstance(raw, dict):
        return None, 'repeatRule must be an object'
    kind = str(raw.get('kind') or '').strip().lower()
    if kind not in ALLOWED_KINDS or kind == KIND_NONE:
        return None, 'repeatRule.kind must be daily, weekly or custom'
    interval = raw.get('interval', 1)
    if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
        return None, 'repeatRule.interval must be an integer >= 1'
    days = raw.get('daysOfWeek', raw.get('days_of_week'))
    if days is not None:
        if not isinstance(days, list) or any(
            isinstance(d, bool) or not isinstance(d, int) or not 0 <= d <= 6 for d in days
        ):
            return None, 'repeatRule.daysOfWeek must be a list of weekdays 0-6'
    end_raw = raw.get('endDate', raw.get('end_date'))
    if end_raw and not parse_day_value(end_raw):
        return None, 'repeatRule.endDate must be YYYY-MM-DD'
    count = raw.get('count')
    if count is not None and (isinstance(count, bool) or not isinstance(count, int) or count < 1):
        return None, 'repeatRule.count must be an integer >= 1'
    return RecurrenceRule.from_dict(raw), None


def validate_notifications(raw):
    """Returns (offsets, error) for a request's notifications list."""
    try:
        return parse_reminder_offsets(raw), None
    except InvalidReminderConfig as exc:
        return None, str(exc)
