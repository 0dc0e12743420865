"""Daily check-in handlers. A check-in for the day silences that day's check-in reminder."""

from flask import jsonify, request

from models import db, DailyCheckIn
from services.validation_service import parse_day_value


def _score(raw):
    """Mood/energy are optional 1-5 scores."""
    if raw in (None, ''):
        return None, None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None, 'scores must be integers 1-5'
    if not 1 <= value <= 5:
        return None, 'scores must be integers 1-5'
    return value, None


def checkins():
    import app as a
    get_current_user = a.get_current_user
    now_local = a.now_local

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    if request.method == 'GET':
        rows = DailyCheckIn.query.filter_by(user_id=user.id).order_by(DailyCheckIn.day.desc()).limit(60).all()
        return jsonify([row.to_dict() for row in rows])

    data = request.get_json(silent=True) or {}
    day_value = parse_day_value(data['date']) if data.get('date') else now_local().date()
    if not day_value:
        return jsonify({'error': 'date must be YYYY-MM-DD'}), 400
    mood, error = _score(data.get('mood'))
    if error:
        return jsonify({'error': error}), 400
    energy, error = _score(data.get('energy'))
    if error:
        return jsonify({'error': error}), 400

    row = DailyCheckIn.query.filter_by(user_id=user.id, day=day_value).first()
    created = row is None
    if created:
        row = DailyCheckIn(user_id=user.id, day=day_value)
        db.session.add(row)
    row.mood = mood
    row.energy = energy
    row.note = (str(data.get('note') or '').strip() or None)
    db.session.commit()
    return jsonify(row.to_dict()), 201 if created else 200
