import logging
import threading, time

logger = logging.getLogger(__name__)


class Clock:
    """Calls `tick_fn` every `interval` seconds on a daemon thread."""

    def __init__(self, interval=0.005):
        self.interval = float(interval)
        self.running = False
        self._th = None

    def start(self, tick_fn):
        self.running = True
        spt = self.interval
        def run():
            next_t = time.perf_counter()
            while self.running:
                tick_fn()
                next_t += spt
                sleep = next_t - time.perf_counter()
                if sleep > 0: time.sleep(sleep)
        self._th = threading.Thread(target=run, name="ClockThread", daemon=True); self._th.start()
        logger.debug(f"[Clock] started, interval {spt * 1000:.1f} ms")

    def stop(self):
        self.running = False
        if self._th is not None and self._th is not threading.current_thread():
            self._th.join(timeout=2.0)
        self._th = None
