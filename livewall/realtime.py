"""
In-process change feed.

The store publishes a ``Change`` after every committed write on uploads and
events; live wall displays subscribe per event. Guest fly-in messages travel
on a separate broadcast channel and are never persisted.
"""
import itertools
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from livewall.errors import ValidationError

logger = logging.getLogger(__name__)

INSERT = 'INSERT'
UPDATE = 'UPDATE'
DELETE = 'DELETE'
BROADCAST = 'BROADCAST'

LIVEWALL_MESSAGE = 'livewall_message'


def uploads_channel(event_id):
    return f"uploads:{event_id}"


def event_channel(event_id):
    return f"events:{event_id}"


def broadcast_channel(event_id):
    return f"broadcast:{event_id}"


@dataclass
class Change:
    type: str
    table: str = ''
    new: dict = None
    old: dict = None
    topic: str = ''
    payload: dict = field(default_factory=dict)


class Subscription:
    def __init__(self, feed, channel, token):
        self._feed = feed
        self.channel = channel
        self._token = token
        self.active = True

    def unsubscribe(self):
        if self.active:
            self._feed._remove(self.channel, self._token)
            self.active = False


class ChangeFeed:

    def __init__(self):
        self._subscribers = {}
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)

    def subscribe(self, channel, callback):
        token = next(self._tokens)
        with self._lock:
            self._subscribers.setdefault(channel, {})[token] = callback
        logger.info(f"[REALTIME] Subscribed - channel: {channel}, token: {token}")
        return Subscription(self, channel, token)

    def _remove(self, channel, token):
        with self._lock:
            callbacks = self._subscribers.get(channel, {})
            callbacks.pop(token, None)
            if not callbacks:
                self._subscribers.pop(channel, None)
        logger.info(f"[REALTIME] Unsubscribed - channel: {channel}, token: {token}")

    def subscriber_count(self, channel):
        with self._lock:
            return len(self._subscribers.get(channel, {}))

    def publish(self, channel, change):
        with self._lock:
            callbacks = list(self._subscribers.get(channel, {}).values())
        logger.debug(f"[REALTIME] Publishing {change.type} - channel: {channel}, subscribers: {len(callbacks)}")
        for callback in callbacks:
            try:
                callback(change)
            except Exception as e:
                logger.error(f"[REALTIME] Subscriber failed - channel: {channel}, change: {change.type}, error: {str(e)}")
        return len(callbacks)


# --- BROADCAST MESSAGES ---
MAX_MESSAGE_LENGTH = 200


def send_livewall_message(feed, event_id, message, sender_name=None):
    """
    Broadcast a fly-in message to every live wall of the event.

    Messages are not stored; only displays subscribed right now receive them.
    """
    message = (message or '').strip()
    if not message:
        raise ValidationError('Nachricht darf nicht leer sein')
    if len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Nachricht darf maximal {MAX_MESSAGE_LENGTH} Zeichen lang sein")

    payload = {
        "id": str(uuid.uuid4()),
        "eventId": event_id,
        "message": message,
        "senderName": (sender_name or '').strip() or None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    delivered = feed.publish(
        broadcast_channel(event_id),
        Change(BROADCAST, topic=LIVEWALL_MESSAGE, payload=payload)
    )
    logger.info(f"[REALTIME] Live wall message sent - event_id: {event_id}, displays: {delivered}")
    return payload
