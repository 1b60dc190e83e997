"""
Server-side live wall displays.

Each browser showing a live wall polls ``/api/livewall/<code>/state`` with
its own display id. The id maps to one ``LiveWallDisplay`` that owns the
slideshow state for that screen, listens to the change feed and runs the
advance timer. Displays of the same event do not coordinate.
"""
import logging
import threading
import time

from livewall.errors import StoreError
from livewall.qr import LIVEWALL_QR_SIZE
from livewall.realtime import (
    DELETE, LIVEWALL_MESSAGE, UPDATE, broadcast_channel, event_channel, uploads_channel
)
from livewall.slideshow import (
    INSERTION, SlideshowState, advance, apply_refresh, begin_refresh,
    change_ordering_mode, initial_load, needs_advance_timer, reorder_round,
    should_reorder
)
from livewall.timers import Debouncer, IntervalTimer

logger = logging.getLogger(__name__)

CROSSFADE_DURATION_MS = 1000
MESSAGE_DISPLAY_SECONDS = 31
REFRESH_DEBOUNCE_SECONDS = 0.3
DEFAULT_IMAGE_DISPLAY_DURATION = 10
DEFAULT_BACKGROUND_GRADIENT = 'from-purple-900 via-blue-900 to-indigo-900'
DEFAULT_IDLE_TIMEOUT = 120
IDLE_TEXT = 'Warten auf die ersten Fotos...'
ANONYMOUS = 'Anonym'


def media_view(upload):
    """What a display slot needs to render one upload."""
    if upload is None:
        return None
    file_type = upload.get('file_type') or ''
    challenge = None
    if upload.get('challenge_title') or upload.get('challenge_hashtag'):
        challenge = {"title": upload.get('challenge_title'), "hashtag": upload.get('challenge_hashtag')}
    return {
        "id": upload['id'],
        "fileUrl": upload.get('file_url'),
        "fileType": file_type,
        "isVideo": file_type.startswith('video/'),
        "uploaderName": upload.get('uploader_name') or ANONYMOUS,
        "comment": upload.get('comment'),
        "challenge": challenge,
        "createdAt": upload.get('created_at'),
    }


class LiveWallDisplay:

    def __init__(self, event, store, feed, display_id='default', public_base_url='',
                 debounce_delay=REFRESH_DEBOUNCE_SECONDS,
                 reorder_delay=CROSSFADE_DURATION_MS / 1000, clock=time.monotonic):
        self.event = dict(event)
        self.event_id = event['id']
        self.display_id = display_id
        self.store = store
        self.feed = feed
        self.public_base_url = public_base_url.rstrip('/')
        self.reorder_delay = reorder_delay
        self.clock = clock
        self.last_seen = clock()
        self.stopped = False

        self.state = SlideshowState(ordering_mode=event.get('ordering_mode') or INSERTION)
        self._lock = threading.RLock()
        self._messages = []
        self._subscriptions = []
        self._reorder_pending = False
        self._reorder_timer = None
        self._refresh_debouncer = Debouncer(debounce_delay, self.refresh)
        self._advance_timer = IntervalTimer(
            self.display_duration, self.tick,
            name=f"livewall-{event.get('event_code')}-{display_id}"
        )

    @property
    def display_duration(self):
        return self.event.get('image_display_duration') or DEFAULT_IMAGE_DISPLAY_DURATION

    # --- LIFECYCLE ---
    def start(self):
        self.load()
        self._subscriptions = [
            self.feed.subscribe(uploads_channel(self.event_id), self._on_upload_change),
            self.feed.subscribe(event_channel(self.event_id), self._on_event_change),
            self.feed.subscribe(broadcast_channel(self.event_id), self._on_broadcast),
        ]
        self._sync_advance_timer()
        logger.info(f"[LIVEWALL] Display started - event_id: {self.event_id}, display_id: {self.display_id}, items: {len(self.state.display_queue)}")
        return self

    def stop(self):
        with self._lock:
            if self.stopped:
                return
            self.stopped = True
            reorder_timer = self._reorder_timer
            self._reorder_timer = None
        self._refresh_debouncer.cancel()
        self._advance_timer.stop()
        if reorder_timer is not None:
            reorder_timer.cancel()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        logger.info(f"[LIVEWALL] Display stopped - event_id: {self.event_id}, display_id: {self.display_id}")

    def _sync_advance_timer(self):
        with self._lock:
            run = not self.stopped and not self._reorder_pending and needs_advance_timer(self.state)
        if run:
            self._advance_timer.start()
        else:
            self._advance_timer.stop()

    @property
    def advance_timer_running(self):
        return self._advance_timer.running

    # --- TRANSITIONS ---
    def load(self):
        uploads = self.store.list_uploads(self.event_id, approved_only=True)
        with self._lock:
            self.state = initial_load(self.state, uploads)

    def refresh(self):
        """Refetch approved uploads and merge them into the playing queue."""
        if self.stopped:
            return
        with self._lock:
            self.state = begin_refresh(self.state)
        try:
            fetched = self.store.list_uploads(self.event_id, approved_only=True)
        except StoreError as e:
            logger.error(f"[LIVEWALL] Refresh failed - event_id: {self.event_id}, display_id: {self.display_id}, error: {e.message}")
            with self._lock:
                self.state = apply_refresh(self.state, self.state.source_uploads)
            return
        with self._lock:
            before = len(self.state.display_queue)
            self.state = apply_refresh(self.state, fetched)
            after = len(self.state.display_queue)
        logger.info(f"[LIVEWALL] Refreshed queue - event_id: {self.event_id}, display_id: {self.display_id}, before: {before}, after: {after}")
        self._sync_advance_timer()

    def tick(self):
        """Advance one item; a finished newest-first round pauses for the reorder."""
        with self._lock:
            if self.stopped or self._reorder_pending:
                return
            self.state = advance(self.state)
            if not should_reorder(self.state):
                return
            self._reorder_pending = True
            timer = threading.Timer(self.reorder_delay, self.reorder)
            timer.daemon = True
            self._reorder_timer = timer
        self._advance_timer.stop()
        timer.start()

    def reorder(self):
        with self._lock:
            self._reorder_timer = None
            self._reorder_pending = False
            if self.stopped:
                return
            self.state = reorder_round(self.state)
        logger.info(f"[LIVEWALL] Round reordered - event_id: {self.event_id}, display_id: {self.display_id}")
        self._sync_advance_timer()

    # --- CHANGE FEED ---
    def _on_upload_change(self, change):
        self._refresh_debouncer.trigger()

    def _on_event_change(self, change):
        if change.type == DELETE:
            logger.info(f"[LIVEWALL] Event deleted, stopping display - event_id: {self.event_id}, display_id: {self.display_id}")
            self.stop()
            return
        if change.type != UPDATE or not change.new:
            return

        with self._lock:
            old_duration = self.display_duration
            self.event.update(change.new)
            mode = change.new.get('ordering_mode')
            if mode and mode != self.state.ordering_mode:
                self.state = change_ordering_mode(self.state, mode)
                logger.info(f"[LIVEWALL] Ordering mode changed - event_id: {self.event_id}, mode: {mode}")
            new_duration = self.display_duration

        if new_duration != old_duration:
            if self._advance_timer.running:
                self._advance_timer.restart(new_duration)
            else:
                self._advance_timer.interval = new_duration

    def _on_broadcast(self, change):
        if change.topic != LIVEWALL_MESSAGE:
            return
        with self._lock:
            self._messages.append((self.clock() + MESSAGE_DISPLAY_SECONDS, dict(change.payload)))

    def active_messages(self):
        now = self.clock()
        with self._lock:
            self._messages = [(expires, m) for expires, m in self._messages if expires > now]
            return [m for _, m in self._messages]

    # --- RENDERING ---
    def snapshot(self):
        """Everything the browser needs to render this display right now."""
        self.last_seen = self.clock()
        messages = self.active_messages()
        with self._lock:
            state = self.state
            event = dict(self.event)
        code = event.get('event_code')
        idle = not state.display_queue
        return {
            "eventId": self.event_id,
            "eventCode": code,
            "eventName": event.get('name'),
            "displayId": self.display_id,
            "idle": idle,
            "idleText": IDLE_TEXT if idle else None,
            "slotA": media_view(state.slot_a),
            "slotB": media_view(state.slot_b),
            "showingSlotA": state.showing_slot_a,
            "currentIndex": state.current_index,
            "queueLength": len(state.display_queue),
            "isRefreshing": state.is_refreshing,
            "orderingMode": state.ordering_mode,
            "imageDisplayDuration": self.display_duration,
            "crossfadeDuration": CROSSFADE_DURATION_MS,
            "background": event.get('livewall_background_gradient') or DEFAULT_BACKGROUND_GRADIENT,
            "uploadUrl": f"{self.public_base_url}/event/{code}/upload",
            "qrCodeUrl": f"/api/events/{code}/qr",
            "qrCodeSize": LIVEWALL_QR_SIZE,
            "messages": messages,
            "stopped": self.stopped,
        }


class DisplayRegistry:
    """One running ``LiveWallDisplay`` per (event, display id)."""

    def __init__(self, store, feed, idle_timeout=DEFAULT_IDLE_TIMEOUT, public_base_url='',
                 clock=time.monotonic, display_factory=LiveWallDisplay):
        self.store = store
        self.feed = feed
        self.idle_timeout = idle_timeout
        self.public_base_url = public_base_url
        self.clock = clock
        self.display_factory = display_factory
        self._displays = {}
        self._lock = threading.Lock()

    def get_or_create(self, event, display_id):
        """
        Return the running display for this screen, starting one if needed.

        A display is only registered once it started, so a failed start
        leaves nothing behind and the next poll tries again.
        """
        self.reap_idle()
        key = (event['id'], display_id)
        with self._lock:
            display = self._displays.get(key)
            if display is not None and not display.stopped:
                return display

        display = self.display_factory(
            event, self.store, self.feed, display_id=display_id,
            public_base_url=self.public_base_url, clock=self.clock
        )
        try:
            display.start()
        except Exception:
            display.stop()
            logger.error(f"[LIVEWALL] Display start failed - event_id: {event['id']}, display_id: {display_id}")
            raise

        with self._lock:
            current = self._displays.get(key)
            if current is None or current.stopped:
                self._displays[key] = display
                return display
        # another poll registered this screen while we were loading
        display.stop()
        return current

    def reap_idle(self):
        """Tear down displays that stopped polling. Returns how many were removed."""
        now = self.clock()
        with self._lock:
            stale = [
                key for key, display in self._displays.items()
                if display.stopped or now - display.last_seen > self.idle_timeout
            ]
            removed = [self._displays.pop(key) for key in stale]
        for display in removed:
            display.stop()
        if removed:
            logger.info(f"[LIVEWALL] Reaped idle displays - count: {len(removed)}")
        return len(removed)

    def count(self, event_id=None):
        with self._lock:
            return sum(1 for key in self._displays if event_id is None or key[0] == event_id)

    def stop_all(self):
        with self._lock:
            displays = list(self._displays.values())
            self._displays.clear()
        for display in displays:
            display.stop()
