from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable
from typing import Any

logger = logging.getLogger(__name__)


class Debouncer:
    """
    Keyed trailing-edge debounce: only the last call per key within the window runs.

    Used by the post editor autosave. Callbacks run on a timer thread, so anything that
    needs the Flask app must push its own app context.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: dict[Hashable, threading.Timer] = {}

    def delay(self, key: Hashable, fn: Callable[[], Any], seconds: float) -> None:
        with self._lock:
            pending = self._timers.pop(key, None)
            if pending is not None:
                pending.cancel()
            if seconds <= 0:
                run_now = True
            else:
                run_now = False
                timer = threading.Timer(seconds, self._fire, args=(key, fn))
                timer.daemon = True
                self._timers[key] = timer
                timer.start()
        if run_now:
            fn()

    def _fire(self, key: Hashable, fn: Callable[[], Any]) -> None:
        try:
            fn()
        except Exception:
            logger.exception("Debounced call failed (key=%s)", key)
        finally:
            with self._lock:
                current = self._timers.get(key)
                if current is not None and current is threading.current_thread():
                    self._timers.pop(key, None)

    def is_pending(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._timers

    def cancel(self, key: Hashable) -> bool:
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        return True
