import os

from dotenv import load_dotenv
from flask import Flask, has_app_context, request, jsonify, session

load_dotenv()

from apscheduler.schedulers.background import BackgroundScheduler

from models import db, User
from delivery_ledger import DeliveryLedger, SqlLedgerStore
from entity_store import SqlEntityStore
from job_locks import acquire_job_lock, release_job_lock
from notification_matcher import DEFAULT_TASK_TIME, parse_checkin_hours
from push_transport import WebPushTransport
from scheduler_tick import LocalClock, SchedulerTick
from services import calendar_routes, checkin_routes, notification_routes
from services.validation_service import parse_positive_int, parse_time_str

app = Flask(__name__)
app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///agendo.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
app.config['PERMANENT_SESSION_LIFETIME'] = 365 * 24 * 60 * 60  # 1 year in seconds
app.config['API_SHARED_KEY'] = os.environ.get('API_SHARED_KEY')  # Optional shared key for API callers
app.config['DEFAULT_TIMEZONE'] = os.environ.get('DEFAULT_TIMEZONE', 'America/Argentina/Buenos_Aires')
app.config['VAPID_PUBLIC_KEY'] = os.environ.get('VAPID_PUBLIC_KEY')
app.config['VAPID_PRIVATE_KEY'] = os.environ.get('VAPID_PRIVATE_KEY')
app.config['VAPID_SUBJECT'] = os.environ.get('VAPID_SUBJECT', 'mailto:admin@example.com')
app.config['PUSH_TIMEOUT_SECONDS'] = parse_positive_int(os.environ.get('PUSH_TIMEOUT_SECONDS'), 10)
app.config['NOTIFICATION_TICK_SECONDS'] = parse_positive_int(os.environ.get('NOTIFICATION_TICK_SECONDS'), 60)
app.config['NOTIFICATION_WORKERS'] = parse_positive_int(os.environ.get('NOTIFICATION_WORKERS'), 1)
app.config['CHECKIN_REMINDER_HOURS'] = parse_checkin_hours(os.environ.get('CHECKIN_REMINDER_HOURS'))
app.config['DEFAULT_TASK_TIME'] = parse_time_str(os.environ.get('DEFAULT_TASK_TIME')) or DEFAULT_TASK_TIME

db.init_app(app)
scheduler = None
notification_tick = None

NOTIFICATION_TICK_LOCK = 'notification_tick'


def get_current_user():
    """Resolve the current user from a shared API key + user id header, else fall back to session."""
    # Header-based auth for service callers
    api_key = request.headers.get('X-API-Key')
    api_user_id = request.headers.get('X-User-Id')
    shared_key = app.config.get('API_SHARED_KEY')
    if shared_key and api_key and api_user_id:
        try:
            api_uid_int = int(api_user_id)
        except (TypeError, ValueError):
            api_uid_int = None
        if api_uid_int and api_key == shared_key:
            user = db.session.get(User, api_uid_int)
            if user:
                return user

    # Session-based auth for browser users
    user_id = session.get('user_id')
    if user_id:
        return db.session.get(User, user_id)
    return None


with app.app_context():
    db.create_all()


def now_local():
    return LocalClock(app.config['DEFAULT_TIMEZONE']).now()


def get_notification_tick():
    """Build the scheduler tick once per process from the current config."""
    global notification_tick
    if notification_tick is None:
        workers = app.config.get('NOTIFICATION_WORKERS', 1)
        clock = LocalClock(app.config['DEFAULT_TIMEZONE'])
        notification_tick = SchedulerTick(
            SqlEntityStore(),
            DeliveryLedger(SqlLedgerStore(), clock=clock),
            WebPushTransport.from_config(app.config),
            clock=clock,
            checkin_hours=app.config['CHECKIN_REMINDER_HOURS'],
            default_task_time=app.config['DEFAULT_TASK_TIME'],
            max_workers=workers,
            instance_wrapper=app.app_context if workers > 1 else None,
        )
    return notification_tick


def run_notification_tick(now=None):
    """Run one reminder sweep, exclusive across workers. Returns delivered keys."""
    if not has_app_context():
        with app.app_context():
            return run_notification_tick(now)
    if not acquire_job_lock(NOTIFICATION_TICK_LOCK):
        return []
    try:
        return get_notification_tick().tick(now)
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Error in notification tick: {e}")
        return []
    finally:
        release_job_lock(NOTIFICATION_TICK_LOCK)


_jobs_bootstrapped = False


def _start_scheduler():
    """Start the background scheduler that polls for due reminders."""
    global scheduler
    if os.environ.get('ENABLE_NOTIFICATION_JOBS', '1') != '1':
        return
    if scheduler and scheduler.running:
        return
    # Avoid double-start in Flask debug reloader
    if app.debug and os.environ.get('WERKZEUG_RUN_MAIN') != 'true':
        return
    scheduler = BackgroundScheduler(timezone=app.config.get('DEFAULT_TIMEZONE', 'UTC'))
    # A tick never overlaps the previous one; missed runs collapse into one.
    scheduler.add_job(
        run_notification_tick,
        'interval',
        seconds=app.config['NOTIFICATION_TICK_SECONDS'],
        id='notification_tick',
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    scheduler.start()
    app.logger.info("Notification scheduler started (every %ss)", app.config['NOTIFICATION_TICK_SECONDS'])


def _bootstrap_background_jobs():
    global _jobs_bootstrapped
    if _jobs_bootstrapped and scheduler and scheduler.running:
        return
    _start_scheduler()
    _jobs_bootstrapped = True


# User Selection Routes

@app.route('/api/set-user/<int:user_id>', methods=['POST'])
def set_user(user_id):
    """Set the current user in session"""
    user = db.get_or_404(User, user_id)
    session['user_id'] = user.id
    session.permanent = True  # Make session persistent across browser restarts
    return jsonify({'success': True, 'username': user.username})


@app.route('/api/create-user', methods=['POST'])
def create_user():
    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()

    if not username:
        return jsonify({'error': 'Username is required'}), 400

    if User.query.filter_by(username=username).first():
        return jsonify({'error': 'Username already exists'}), 400

    user = User(username=username, email=(data.get('email') or '').strip() or None)
    if data.get('password'):
        user.set_password(data['password'])
    db.session.add(user)
    db.session.commit()

    # Automatically set as current user
    session['user_id'] = user.id
    session.permanent = True

    return jsonify({'success': True, 'user_id': user.id, 'username': user.username}), 201


@app.route('/api/current-user')
def current_user_info():
    user = get_current_user()
    if user:
        return jsonify({'user_id': user.id, 'username': user.username})
    return jsonify({'user_id': None, 'username': None})


# Calendar: blocks and tasks
app.add_url_rule('/api/blocks', 'blocks_collection', calendar_routes.blocks_collection, methods=['GET', 'POST'])
app.add_url_rule('/api/blocks/<int:item_id>', 'block_detail', calendar_routes.block_detail, methods=['PUT'])
app.add_url_rule('/api/blocks/<int:item_id>/delete', 'block_delete', calendar_routes.block_delete, methods=['POST'])
app.add_url_rule('/api/tasks', 'tasks_collection', calendar_routes.tasks_collection, methods=['GET', 'POST'])
app.add_url_rule('/api/tasks/<int:item_id>', 'task_detail', calendar_routes.task_detail, methods=['PUT'])
app.add_url_rule('/api/tasks/<int:item_id>/delete', 'task_delete', calendar_routes.task_delete, methods=['POST'])

# Daily check-ins
app.add_url_rule('/api/checkins', 'checkins', checkin_routes.checkins, methods=['GET', 'POST'])

# Notifications
app.add_url_rule('/api/notifications/check', 'notifications_check', notification_routes.check_notifications, methods=['POST'])
app.add_url_rule('/api/notifications/subscribe', 'push_subscribe', notification_routes.api_push_subscribe, methods=['POST'])
app.add_url_rule('/api/notifications/unsubscribe', 'push_unsubscribe', notification_routes.api_push_unsubscribe, methods=['POST'])
app.add_url_rule('/api/notifications/settings', 'notification_settings', notification_routes.api_notification_settings, methods=['GET', 'PUT'])


# Start scheduler on process startup (not request-dependent).
# Can be disabled for tooling/tests that only need app context.
if os.environ.get('BOOTSTRAP_JOBS_ON_IMPORT', '1') == '1':
    try:
        _bootstrap_background_jobs()
    except Exception as e:
        app.logger.error(f"Error starting scheduler on startup: {e}")


if __name__ == '__main__':
    app.run(debug=os.environ.get('FLASK_DEBUG') == '1', port=int(os.environ.get('PORT', 5000)))
