"""Block and task route handlers: CRUD, range expansion and scoped series deletes."""

from flask import jsonify, request

from deletion_scope import ALLOWED_SCOPES, SCOPE_ALL, SCOPE_FUTURE, resolve_deletion_dates, truncate_rule
from models import db, Block, Task
from recurrence import date_key, expand_occurrences
from services.validation_service import (
    parse_day_value,
    parse_positive_int,
    parse_time_str,
    validate_notifications,
    validate_repeat_rule,
)

ALLOWED_PRIORITIES = {'alta', 'media', 'baja'}
MAX_RANGE_DAYS = 366


def _parse_range():
    """Read ``from``/``to`` query args. Returns (start, end, error)."""
    start_raw = request.args.get('from')
    end_raw = request.args.get('to')
    if not start_raw and not end_raw:
        return None, None, None
    start_day = parse_day_value(start_raw)
    end_day = parse_day_value(end_raw)
    if not start_day or not end_day:
        return None, None, 'from and to must be YYYY-MM-DD'
    if end_day < start_day:
        return None, None, 'to must be on/after from'
    if (end_day - start_day).days > MAX_RANGE_DAYS:
        return None, None, f'Range is limited to {MAX_RANGE_DAYS} days'
    return start_day, end_day, None


def _expanded(rows, start_day, end_day):
    """One entry per concrete occurrence inside the range, ordered by date."""
    occurrences = []
    for row in rows:
        base = row.to_dict()
        for day_value in expand_occurrences(
            row.recurrence_rule(), row.day, start_day, end_day, row.exception_dates()
        ):
            entry = dict(base)
            entry['date'] = date_key(day_value)
            entry['series_date'] = base['date']
            occurrences.append(entry)
    occurrences.sort(key=lambda e: (e['date'], e.get('start') or e.get('time') or ''))
    return occurrences


def _apply_common_fields(row, data, creating):
    """Fields shared by blocks and tasks. Returns an error string or None."""
    if creating or 'title' in data:
        title = str(data.get('title') or '').strip()
        if not title:
            return 'Title is required'
        row.title = title
    if creating or 'date' in data:
        day_value = parse_day_value(data.get('date'))
        if not day_value:
            return 'date must be YYYY-MM-DD'
        row.day = day_value
    if creating or 'repeatRule' in data:
        rule, error = validate_repeat_rule(data.get('repeatRule'))
        if error:
            return error
        row.set_recurrence_rule(rule)
    if creating or 'notifications' in data:
        offsets, error = validate_notifications(data.get('notifications'))
        if error:
            return error
        row.set_reminder_offsets(offsets)
    return None


def _apply_block_fields(block, data, creating=False):
    error = _apply_common_fields(block, data, creating)
    if error:
        return error
    if creating or 'start' in data:
        start = parse_time_str(data.get('start'))
        if not start:
            return 'start must be HH:MM'
        block.start_time = start
    if creating or 'end' in data:
        end = parse_time_str(data.get('end'))
        if not end:
            return 'end must be HH:MM'
        block.end_time = end
    if block.end_time <= block.start_time:
        return 'end must be after start'
    if 'color' in data:
        block.color = str(data.get('color') or '').strip() or None
    return None


def _apply_task_fields(task, data, creating=False):
    error = _apply_common_fields(task, data, creating)
    if error:
        return error
    if 'time' in data:
        raw_time = data.get('time')
        if raw_time in (None, ''):
            task.start_time = None
        else:
            parsed = parse_time_str(raw_time)
            if not parsed:
                return 'time must be HH:MM'
            task.start_time = parsed
    if creating or 'priority' in data:
        priority = str(data.get('priority') or 'media').strip().lower()
        if priority not in ALLOWED_PRIORITIES:
            return 'priority must be alta, media or baja'
        task.priority = priority
    return None


def _collection(model, apply_fields):
    import app as a
    get_current_user = a.get_current_user

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    if request.method == 'GET':
        rows = model.query.filter_by(user_id=user.id).order_by(model.day.asc(), model.id.asc()).all()
        start_day, end_day, error = _parse_range()
        if error:
            return jsonify({'error': error}), 400
        if start_day is None:
            return jsonify([row.to_dict() for row in rows])
        return jsonify(_expanded(rows, start_day, end_day))

    data = request.get_json(silent=True) or {}
    row = model(user_id=user.id)
    error = apply_fields(row, data, creating=True)
    if error:
        return jsonify({'error': error}), 400
    db.session.add(row)
    db.session.commit()
    return jsonify(row.to_dict()), 201


def _detail(model, apply_fields, item_id):
    import app as a
    get_current_user = a.get_current_user

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401
    row = model.query.filter_by(id=item_id, user_id=user.id).first_or_404()

    data = request.get_json(silent=True) or {}
    error = apply_fields(row, data)
    if error:
        db.session.rollback()
        return jsonify({'error': error}), 400
    db.session.commit()
    return jsonify(row.to_dict())


def _delete_series(model, item_id):
    import app as a
    app = a.app
    get_current_user = a.get_current_user

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401
    row = model.query.filter_by(id=item_id, user_id=user.id).first_or_404()

    data = request.get_json(silent=True) or {}
    scope = str(data.get('scope') or SCOPE_ALL).strip().lower()
    if scope not in ALLOWED_SCOPES:
        return jsonify({'error': f"Unknown delete scope: {scope}"}), 400
    rule = row.recurrence_rule()

    if scope == SCOPE_ALL or not rule.is_recurring:
        db.session.delete(row)
        db.session.commit()
        return jsonify({'deleted': True, 'removed_dates': []})

    target = parse_day_value(data.get('instance_date'))
    if not target:
        return jsonify({'error': 'instance_date must be YYYY-MM-DD'}), 400
    count = parse_positive_int(data.get('count'), 1)
    try:
        dates = resolve_deletion_dates(rule, row.day, target, row.exception_dates(), scope, count)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    if scope == SCOPE_FUTURE:
        if target <= row.day:
            db.session.delete(row)
            db.session.commit()
            return jsonify({'deleted': True, 'removed_dates': []})
        row.set_recurrence_rule(truncate_rule(rule, target))
        db.session.commit()
        app.logger.info("Truncated %s at %s", row.entity_id(), date_key(target))
        return jsonify({'deleted': False, 'item': row.to_dict(), 'removed_dates': []})

    row.add_exceptions(dates)
    db.session.commit()
    app.logger.info("Removed %s instance(s) of %s starting %s", len(dates), row.entity_id(), date_key(target))
    return jsonify({
        'deleted': False,
        'item': row.to_dict(),
        'removed_dates': [date_key(d) for d in dates],
    })


def blocks_collection():
    return _collection(Block, _apply_block_fields)


def block_detail(item_id):
    return _detail(Block, _apply_block_fields, item_id)


def block_delete(item_id):
    return _delete_series(Block, item_id)


def tasks_collection():
    return _collection(Task, _apply_task_fields)


def task_detail(item_id):
    return _detail(Task, _apply_task_fields, item_id)


def task_delete(item_id):
    return _delete_series(Task, item_id)
