import threading
from typing import Callable, Dict, Optional, Tuple


class TaskScheduler:
    """
    Deferred callbacks on the device timeline, one per key.
    Scheduling a key again replaces its pending task.
    Nothing runs on its own: `run_due(now)` is called with the device time.
    """

    def __init__(self):
        self._tasks: Dict[str, Tuple[float, Callable[[], None]]] = {}
        self._lock = threading.Lock()

    def schedule(self, key: str, when: float, fn: Callable[[], None]) -> None:
        with self._lock:
            self._tasks[key] = (float(when), fn)

    def cancel(self, key: str) -> bool:
        with self._lock:
            return self._tasks.pop(key, None) is not None

    def due_at(self, key: str) -> Optional[float]:
        with self._lock:
            task = self._tasks.get(key)
            return task[0] if task else None

    def pending(self) -> int:
        with self._lock:
            return len(self._tasks)

    def _pop_next_due(self, now: float):
        with self._lock:
            due = [(when, key) for key, (when, _) in self._tasks.items() if when <= now]
            if not due:
                return None
            _, key = min(due)
            return self._tasks.pop(key)[1]

    def run_due(self, now: float) -> int:
        """Run every task due at `now`, earliest first. Returns how many ran."""
        ran = 0
        while True:
            fn = self._pop_next_due(now)
            if fn is None:
                return ran
            fn()
            ran += 1
