"""Resolve which concrete instances a recurring delete applies to."""

from datetime import timedelta

from recurrence import RecurrenceRule, expand_occurrences, parse_date_key

SCOPE_SINGLE = 'single'
SCOPE_COUNT = 'count'
SCOPE_FUTURE = 'future'
SCOPE_ALL = 'all'
ALLOWED_SCOPES = {SCOPE_SINGLE, SCOPE_COUNT, SCOPE_FUTURE, SCOPE_ALL}

# Extra lookahead on top of count * period so exceptions and sparse weekday
# sets never truncate the result.
SAFETY_MARGIN_DAYS = 30


def deletion_horizon(rule, target_date, count):
    return target_date + timedelta(days=count * rule.period_days() + SAFETY_MARGIN_DAYS)


def resolve_deletion_dates(rule, anchor, target_date, exceptions, scope, count=None):
    """
    Return the dates a delete with ``scope`` removes, or None when the whole
    entity (``all``) or the rest of the series (``future``) goes instead.
    """
    scope = (scope or '').strip().lower()
    if scope not in ALLOWED_SCOPES:
        raise ValueError(f"Unknown delete scope: {scope!r}")
    target_date = parse_date_key(target_date)
    if target_date is None:
        raise ValueError("A valid target date is required")

    if scope in (SCOPE_ALL, SCOPE_FUTURE):
        return None
    if scope == SCOPE_SINGLE:
        return [target_date]

    rule = RecurrenceRule.from_dict(rule)
    if not rule.is_recurring:
        return [target_date]
    try:
        count = max(int(count or 1), 1)
    except (TypeError, ValueError):
        count = 1

    horizon = deletion_horizon(rule, target_date, count)
    occurrences = expand_occurrences(rule, anchor, target_date, horizon, exceptions)
    upcoming = [d for d in occurrences if d >= target_date]
    return upcoming[:count]


def truncate_rule(rule, target_date):
    """Copy of ``rule`` that ends the day before ``target_date``."""
    rule = RecurrenceRule.from_dict(rule)
    target_date = parse_date_key(target_date)
    new_end = target_date - timedelta(days=1)
    if rule.end_date and rule.end_date < new_end:
        new_end = rule.end_date
    return rule.copy(end_date=new_end)
