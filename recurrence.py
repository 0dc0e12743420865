"""Recurrence rules and occurrence expansion shared by calendar rendering, reminders and deletes."""

import json
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Set

KIND_NONE = 'none'
KIND_DAILY = 'daily'
KIND_WEEKLY = 'weekly'
KIND_CUSTOM = 'custom'
ALLOWED_KINDS = {KIND_NONE, KIND_DAILY, KIND_WEEKLY, KIND_CUSTOM}

DATE_KEY_FORMAT = '%Y-%m-%d'


def date_key(day_value) -> str:
    return day_value.strftime(DATE_KEY_FORMAT)


def parse_date_key(raw) -> Optional[date]:
    """Parse YYYY-MM-DD (or pass a date through); None when unparsable."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return datetime.strptime(str(raw).strip()[:10], DATE_KEY_FORMAT).date()
    except (TypeError, ValueError):
        return None


def js_weekday(day_value) -> int:
    """Weekday number with 0=Sunday..6=Saturday."""
    return (day_value.weekday() + 1) % 7


def _coerce_positive_int(raw, default=None):
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return max(value, 1)


def _parse_weekdays(raw) -> List[int]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        values = raw
    else:
        values = str(raw).split(',')
    days = []
    for val in values:
        try:
            day = int(val)
        except (TypeError, ValueError):
            continue
        if 0 <= day <= 6:
            days.append(day)
    return sorted(set(days))


def parse_exceptions(raw) -> Set[date]:
    """Accept a list, a JSON array string or a comma string of date keys."""
    if not raw:
        return set()
    values = raw
    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith('['):
            try:
                values = json.loads(text)
            except ValueError:
                values = []
        else:
            values = text.split(',')
    days = set()
    for val in values or []:
        parsed = parse_date_key(val)
        if parsed:
            days.add(parsed)
    return days


def serialize_exceptions(days: Iterable) -> Optional[str]:
    keys = sorted({date_key(d) for d in days if d})
    return json.dumps(keys) if keys else None


class RecurrenceRule:
    """Declarative repeat contract. Construction coerces bad fields instead of rejecting them."""

    def __init__(self, kind=KIND_NONE, interval=1, days_of_week=None, end_date=None, count=None):
        kind = str(kind or KIND_NONE).strip().lower()
        self.kind = kind if kind in ALLOWED_KINDS else KIND_NONE
        self.interval = _coerce_positive_int(interval, default=1)
        self.days_of_week = _parse_weekdays(days_of_week)
        self.end_date = parse_date_key(end_date)
        self.count = _coerce_positive_int(count)

    @classmethod
    def from_dict(cls, raw):
        if isinstance(raw, RecurrenceRule):
            return raw
        if isinstance(raw, str):
            try:
                raw = json.loads(raw) if raw.strip() else None
            except ValueError:
                raw = None
        if not isinstance(raw, dict):
            return cls()
        return cls(
            kind=raw.get('kind'),
            interval=raw.get('interval', 1),
            days_of_week=raw.get('daysOfWeek', raw.get('days_of_week')),
            end_date=raw.get('endDate', raw.get('end_date')),
            count=raw.get('count'),
        )

    @property
    def is_recurring(self):
        return self.kind != KIND_NONE

    def period_days(self):
        """Days covered by one interval step."""
        if self.kind == KIND_WEEKLY:
            return self.interval * 7
        return self.interval

    def copy(self, **changes):
        fields = {
            'kind': self.kind,
            'interval': self.interval,
            'days_of_week': list(self.days_of_week),
            'end_date': self.end_date,
            'count': self.count,
        }
        fields.update(changes)
        return RecurrenceRule(**fields)

    def to_dict(self):
        if not self.is_recurring:
            return None
        data = {'kind': self.kind, 'interval': self.interval}
        if self.days_of_week:
            data['daysOfWeek'] = list(self.days_of_week)
        if self.end_date:
            data['endDate'] = date_key(self.end_date)
        if self.count:
            data['count'] = self.count
        return data

    def __eq__(self, other):
        if not isinstance(other, RecurrenceRule):
            return NotImplemented
        return (
            self.kind == other.kind
            and self.interval == other.interval
            and self.days_of_week == other.days_of_week
            and self.end_date == other.end_date
            and self.count == other.count
        )

    def __repr__(self):
        return (
            f"RecurrenceRule(kind={self.kind!r}, interval={self.interval}, "
            f"days_of_week={self.days_of_week}, end_date={self.end_date}, count={self.count})"
        )


def _matches(rule, anchor, day_value):
    diff_days = (day_value - anchor).days
    if diff_days < 0:
        return False
    if rule.kind in (KIND_DAILY, KIND_CUSTOM):
        return diff_days % rule.interval == 0
    if rule.kind == KIND_WEEKLY:
        allowed = rule.days_of_week or [js_weekday(anchor)]
        if js_weekday(day_value) not in allowed:
            return False
        # Week grouping counts elapsed days from the anchor, not calendar weeks.
        return (diff_days // 7) % rule.interval == 0
    return False


def expand_occurrences(rule, anchor, range_start, range_end, exceptions=None) -> List[date]:
    """Return the ascending occurrence dates of ``rule`` inside [range_start, range_end].

    ``anchor`` is the date the entity was first scheduled on. ``exceptions``
    are dates removed from the series. A ``count`` on the rule caps how many
    dates this call returns, counted from the start of the window.
    """
    rule = RecurrenceRule.from_dict(rule)
    anchor = parse_date_key(anchor)
    range_start = parse_date_key(range_start)
    range_end = parse_date_key(range_end)
    if not anchor or not range_start or not range_end or range_start > range_end:
        return []
    skipped = parse_exceptions(exceptions)

    if not rule.is_recurring:
        if range_start <= anchor <= range_end and anchor not in skipped:
            return [anchor]
        return []

    occurrences = []
    current = max(range_start, anchor)
    while current <= range_end:
        if rule.end_date and current > rule.end_date:
            break
        if _matches(rule, anchor, current) and current not in skipped:
            occurrences.append(current)
            if rule.count and len(occurrences) >= rule.count:
                break
        current += timedelta(days=1)
    return occurrences
