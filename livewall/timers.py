"""
Timer helpers for the live wall.

Both timers run their callbacks on daemon threads. Callers guard shared state
with their own lock; a callback that raises is logged and the timer keeps its
schedule.
"""
import logging
import threading

logger = logging.getLogger(__name__)


class Debouncer:
    """Collapse a burst of ``trigger()`` calls into one callback run."""

    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self._timer = None
        self._lock = threading.Lock()

    def trigger(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self):
        with self._lock:
            self._timer = None
        try:
            self.callback()
        except Exception as e:
            logger.error(f"[LIVEWALL] Debounced callback failed - error: {str(e)}")

    @property
    def pending(self):
        with self._lock:
            return self._timer is not None

    def cancel(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class IntervalTimer:
    """Call ``callback`` every ``interval`` seconds until stopped."""

    def __init__(self, interval, callback, name='interval-timer'):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._stop_event = None
        self._thread = None
        self._lock = threading.Lock()

    @property
    def running(self):
        with self._lock:
            return self._thread is not None

    def start(self):
        with self._lock:
            if self._thread is not None:
                return
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._run, args=(stop_event, self.interval),
                name=self.name, daemon=True
            )
            self._thread.start()

    def stop(self):
        with self._lock:
            if self._thread is None:
                return
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._stop_event = None
        if thread is not threading.current_thread():
            thread.join(timeout=1)

    def restart(self, interval=None):
        self.stop()
        if interval is not None:
            self.interval = interval
        self.start()

    def _run(self, stop_event, interval):
        while not stop_event.wait(interval):
            try:
                self.callback()
            except Exception as e:
                logger.error(f"[LIVEWALL] Interval callback failed - timer: {self.name}, error: {str(e)}")
