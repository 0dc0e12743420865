"""Periodic reminder sweep: match due reminders, gate them through the ledger, deliver."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytz

from notification_matcher import (
    DEFAULT_CHECKIN_HOURS,
    DEFAULT_TASK_TIME,
    match_checkin_due,
    match_due,
)
from push_transport import STATUS_STALE

logger = logging.getLogger(__name__)


class LocalClock:
    """Source of "now" as a naive datetime in the scheduler's time zone."""

    def __init__(self, tz_name='UTC'):
        self.tz = pytz.timezone(tz_name)

    def now(self):
        return datetime.now(self.tz).replace(tzinfo=None)

    def localize(self, value):
        """Aware datetimes are converted into the clock's zone; naive ones are taken as local already."""
        if value.tzinfo is None:
            return value
        return value.astimezone(self.tz).replace(tzinfo=None)


class SchedulerTick:
    """
    One pass of the notification scheduler.

    Collaborators are injected: ``entity_store`` lists entities, channels and
    missing check-ins; ``ledger`` is a DeliveryLedger; ``transport`` sends
    push messages and reports per-channel results.
    """

    def __init__(self, entity_store, ledger, transport, clock=None,
                 checkin_hours=DEFAULT_CHECKIN_HOURS, default_task_time=DEFAULT_TASK_TIME,
                 max_workers=1, instance_wrapper=None):
        self.entity_store = entity_store
        self.ledger = ledger
        self.transport = transport
        self.clock = clock or LocalClock()
        self.checkin_hours = tuple(checkin_hours or ())
        self.default_task_time = default_task_time
        self.max_workers = max(int(max_workers or 1), 1)
        # Optional callable wrapping each per-instance delivery (e.g. to push an app context).
        self.instance_wrapper = instance_wrapper
        self.last_stats = {}
        self._running = threading.Lock()

    def collect_due(self, now):
        today = now.date()
        entities = self.entity_store.list_schedulable_entities()
        due = match_due(now, entities, today, self.default_task_time)
        if now.hour in self.checkin_hours:
            users = self.entity_store.users_missing_checkin(today)
            due.extend(match_checkin_due(now, users, today, self.checkin_hours))
        return entities, due

    def tick(self, now=None):
        """Run one sweep and return the keys delivered during it."""
        if not self._running.acquire(blocking=False):
            logger.info("Notification tick already running, skipping")
            return []
        try:
            now = self.clock.localize(now) if now is not None else self.clock.now()
            stats = {
                'now': now.isoformat(timespec='minutes'),
                'entities': 0,
                'matched': 0,
                'delivered': 0,
                'skipped_sent': 0,
                'skipped_locked': 0,
                'no_channels': 0,
                'failed': 0,
            }
            self.last_stats = stats
            entities, due = self.collect_due(now)
            stats['entities'] = len(entities)
            stats['matched'] = len(due)

            if self.max_workers > 1 and len(due) > 1:
                with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                    outcomes = list(pool.map(lambda inst: self._run_instance(inst, now), due))
            else:
                outcomes = [self._run_instance(inst, now) for inst in due]

            delivered = []
            for instance, outcome in zip(due, outcomes):
                stats[outcome] = stats.get(outcome, 0) + 1
                if outcome == 'delivered':
                    delivered.append(instance.key)

            logger.info(
                "Notification tick now=%s entities=%s matched=%s delivered=%s skipped_sent=%s skipped_locked=%s no_channels=%s failed=%s",
                stats['now'],
                stats['entities'],
                stats['matched'],
                stats['delivered'],
                stats['skipped_sent'],
                stats['skipped_locked'],
                stats['no_channels'],
                stats['failed'],
            )
            return delivered
        finally:
            self._running.release()

    def _run_instance(self, instance, now):
        try:
            if self.instance_wrapper:
                with self.instance_wrapper():
                    return self.deliver(instance, now)
            return self.deliver(instance, now)
        except Exception:
            logger.exception("Error delivering reminder %s", instance.key)
            return 'failed'

    def deliver(self, instance, now):
        """Check-send-mark for one instance. Returns the outcome name used in stats."""
        with self.ledger.exclusive(instance.key) as acquired:
            if not acquired:
                return 'skipped_locked'
            if self.ledger.is_already_sent(instance.key):
                return 'skipped_sent'

            channels = self.entity_store.list_channels(instance.user_id)
            if not channels:
                logger.info("No push channels for user %s, reminder %s not sent", instance.user_id, instance.key)
                return 'no_channels'

            results = self.transport.send(
                channels,
                instance.title,
                instance.body,
                data={'url': '/calendario', 'key': instance.key},
            )
            stale = [r.endpoint for r in results if r.status == STATUS_STALE]
            if stale:
                try:
                    self.entity_store.prune_channels(stale)
                except Exception:
                    logger.exception("Failed to prune %s stale channel(s)", len(stale))

            if not any(r.ok for r in results):
                logger.warning("Reminder %s failed on all %s channel(s); will retry while due", instance.key, len(results))
                return 'failed'
            self.ledger.mark_sent(instance.key, now)
            logger.info("Delivered reminder %s to user %s", instance.key, instance.user_id)
            return 'delivered'
