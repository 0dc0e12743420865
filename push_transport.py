"""Web Push delivery for reminder notifications."""

import json
import logging

from pywebpush import webpush, WebPushException

logger = logging.getLogger(__name__)

STATUS_SENT = 'sent'
STATUS_FAILED = 'failed'
STATUS_STALE = 'stale'

# Subscriptions answering with these statuses are gone for good.
STALE_STATUS_CODES = (404, 410)
PUSH_TTL_SECONDS = 86400


class ChannelResult:
    def __init__(self, endpoint, status, error=None):
        self.endpoint = endpoint
        self.status = status
        self.error = error

    @property
    def ok(self):
        return self.status == STATUS_SENT

    def __repr__(self):
        return f"ChannelResult({self.endpoint!r}, {self.status!r})"


def _short(endpoint):
    return (endpoint or 'unknown')[:50]


class WebPushTransport:
    """Send one payload to a list of subscription channels, reporting per-channel results."""

    def __init__(self, public_key, private_key, subject='mailto:admin@example.com', timeout=10):
        self.public_key = public_key
        self.private_key = private_key
        self.subject = subject if str(subject).startswith('mailto:') else f"mailto:{subject}"
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            config.get('VAPID_PUBLIC_KEY'),
            config.get('VAPID_PRIVATE_KEY'),
            subject=config.get('VAPID_SUBJECT') or 'mailto:admin@example.com',
            timeout=config.get('PUSH_TIMEOUT_SECONDS', 10),
        )

    @property
    def configured(self):
        return bool(self.public_key and self.private_key)

    def send(self, channels, title, body, data=None):
        channels = list(channels or [])
        if not self.configured:
            logger.warning("VAPID keys missing; %s push channel(s) not sent", len(channels))
            return [ChannelResult(c.get('endpoint'), STATUS_FAILED, 'vapid keys missing') for c in channels]

        payload = json.dumps({'title': title, 'body': body or '', 'data': data or {'url': '/'}})
        results = []
        for channel in channels:
            endpoint = channel.get('endpoint')
            try:
                webpush(
                    subscription_info=channel,
                    data=payload,
                    vapid_private_key=self.private_key,
                    vapid_claims={'sub': self.subject},
                    ttl=PUSH_TTL_SECONDS,
                    timeout=self.timeout,
                    # High urgency so reminders arrive on mobile even when the screen is off
                    headers={'Urgency': 'high', 'Topic': 'reminder'},
                )
                results.append(ChannelResult(endpoint, STATUS_SENT))
            except WebPushException as exc:
                status_code = exc.response.status_code if exc.response is not None else None
                if status_code in STALE_STATUS_CODES:
                    logger.warning("Push subscription %s is gone (%s)", _short(endpoint), status_code)
                    results.append(ChannelResult(endpoint, STATUS_STALE, str(status_code)))
                else:
                    if status_code == 401:
                        logger.error("VAPID keys mismatch for subscription %s", _short(endpoint))
                    logger.error("Push send failed for %s: %s", _short(endpoint), exc)
                    results.append(ChannelResult(endpoint, STATUS_FAILED, str(exc)))
            except Exception as exc:
                logger.exception("Push send error for %s", _short(endpoint))
                results.append(ChannelResult(endpoint, STATUS_FAILED, str(exc)))
        sent = sum(1 for r in results if r.ok)
        logger.info("Push results: %s sent, %s failed", sent, len(results) - sent)
        return results
