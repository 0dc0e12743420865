"""Notification route handlers: the HTTP-triggered tick, push subscriptions and settings."""

from flask import jsonify, request

from entity_store import get_or_create_notification_settings
from models import db, PushSubscription
from services.validation_service import parse_bool

SETTING_FIELDS = ('push_enabled', 'reminders_enabled', 'checkin_reminders_enabled')


def check_notifications():
    """Run one reminder sweep now. Callable by a cron with the shared key or by a signed-in user."""
    import app as a
    app = a.app
    get_current_user = a.get_current_user
    run_notification_tick = a.run_notification_tick
    get_notification_tick = a.get_notification_tick

    shared_key = app.config.get('API_SHARED_KEY')
    if not (shared_key and request.headers.get('X-API-Key') == shared_key) and not get_current_user():
        return jsonify({'error': 'No user selected'}), 401

    delivered = run_notification_tick()
    stats = dict(get_notification_tick().last_stats)
    return jsonify({'delivered': delivered, 'stats': stats})


def api_push_subscribe():
    import app as a
    app = a.app
    get_current_user = a.get_current_user

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401
    data = request.get_json(silent=True) or {}
    sub = data.get('subscription') or data
    if not isinstance(sub, dict):
        return jsonify({'error': 'Invalid subscription'}), 400
    endpoint = sub.get('endpoint')
    keys = sub.get('keys') or {}
    p256dh = keys.get('p256dh')
    auth = keys.get('auth')
    if not endpoint or not p256dh or not auth:
        app.logger.warning("Push subscribe missing fields: endpoint=%s p256dh=%s auth=%s", bool(endpoint), bool(p256dh), bool(auth))
        return jsonify({'error': 'Invalid subscription'}), 400

    # One row per endpoint; a browser re-subscribing moves to the current user.
    existing = PushSubscription.query.filter_by(endpoint=endpoint).first()
    if existing:
        existing.user_id = user.id
        existing.p256dh = p256dh
        existing.auth = auth
    else:
        db.session.add(PushSubscription(user_id=user.id, endpoint=endpoint, p256dh=p256dh, auth=auth))
    prefs = get_or_create_notification_settings(user.id)
    prefs.push_enabled = True
    db.session.commit()
    app.logger.info("Push subscribe for user %s endpoint %s", user.id, endpoint[:50])
    return jsonify({'status': 'subscribed'})


def api_push_unsubscribe():
    import app as a
    get_current_user = a.get_current_user

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401
    data = request.get_json(silent=True) or {}
    endpoint = data.get('endpoint')
    if not endpoint:
        return jsonify({'error': 'endpoint required'}), 400
    deleted = PushSubscription.query.filter_by(endpoint=endpoint, user_id=user.id).delete()
    db.session.commit()
    return jsonify({'status': 'unsubscribed', 'deleted': deleted})


def api_notification_settings():
    import app as a
    get_current_user = a.get_current_user

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401
    prefs = get_or_create_notification_settings(user.id)
    if request.method == 'GET':
        return jsonify(prefs.to_dict())

    data = request.get_json(silent=True) or {}
    for field in SETTING_FIELDS:
        if field in data:
            setattr(prefs, field, parse_bool(data.get(field), getattr(prefs, field)))
    db.session.commit()
    return jsonify(prefs.to_dict())
